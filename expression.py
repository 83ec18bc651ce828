###############################################################################
# Expression language used for transition rates, stop predicates and the
# parameters of the observation process.
#
# The text is parsed with sympy and lowered once into a small tagged tuple
# tree. References are resolved to slots of a flat value vector laid out as
# [t, compartments..., auxiliaries..., parameters...], so evaluating a rate
# during a simulation is a walk over tuples with list indexing.
###############################################################################

import math
import operator
from tokenize import TokenError

import sympy
from sympy.core.relational import Relational
from sympy.logic.boolalg import And, BooleanFalse, BooleanTrue, Not, Or
from sympy.parsing.sympy_parser import convert_xor, parse_expr, standard_transformations

from errors import ModelCompileError


TIME = 't'

_TRANSFORMATIONS = standard_transformations + (convert_xor,)

# Only these names resolve to sympy objects; anything else becomes a Symbol
# and is checked against the declared names.
_GLOBALS = {
    'Symbol': sympy.Symbol,
    'Function': sympy.Function,
    'Integer': sympy.Integer,
    'Float': sympy.Float,
    'Rational': sympy.Rational,
    'exp': sympy.exp,
    'log': sympy.log,
    'sqrt': sympy.sqrt,
    'Abs': sympy.Abs,
    'Min': sympy.Min,
    'Max': sympy.Max,
    'floor': sympy.floor,
    'ceiling': sympy.ceiling,
    'Piecewise': sympy.Piecewise,
    'Eq': sympy.Eq,
    'Ne': sympy.Ne,
    'And': And,
    'Or': Or,
    'Not': Not,
}


def _safe_log(x):
    return math.log(x) if x > 0 else -math.inf


_FUNCTIONS = {
    sympy.exp: math.exp,
    sympy.log: _safe_log,
    sympy.Abs: abs,
    sympy.floor: math.floor,
    sympy.ceiling: math.ceil,
}

_COMPARISONS = {
    '<': operator.lt,
    '<=': operator.le,
    '>': operator.gt,
    '>=': operator.ge,
    '==': operator.eq,
    '!=': operator.ne,
}


class Expression:
    """
    A compiled expression.

    Attributes:
    - text (str): Source text as written by the user.
    - tree (tuple): Tagged tuple tree with slot references.
    - symbols (frozenset): Declared names the expression refers to.
    - is_predicate (bool): True for boolean expressions (stop predicates).
    """

    __slots__ = ('text', 'tree', 'symbols', 'is_predicate')

    def __init__(self, text, tree, symbols, is_predicate):
        self.text = text
        self.tree = tree
        self.symbols = symbols
        self.is_predicate = is_predicate

    def evaluate(self, values):
        return _evaluate(self.tree, values)

    def __getstate__(self):
        return (self.text, self.tree, self.symbols, self.is_predicate)

    def __setstate__(self, state):
        self.text, self.tree, self.symbols, self.is_predicate = state

    def __repr__(self):
        return f"Expression({self.text!r})"


def _split_top(text, sep):
    """Split `text` on `sep` outside of brackets."""
    parts = []
    depth = 0
    start = 0
    i = 0
    while i < len(text):
        ch = text[i]
        if ch in '([':
            depth += 1
        elif ch in ')]':
            depth -= 1
        elif depth == 0 and text.startswith(sep, i):
            parts.append(text[start:i])
            i += len(sep)
            start = i
            continue
        i += 1
    parts.append(text[start:])
    return parts


def _rewrite_logic(text):
    """
    Rewrite C-style '&&' / '||' into '&' / '|' with every operand in brackets,
    since '&' and '|' bind tighter than comparisons in Python syntax:
    'I > 5 && R < 3' becomes '(I > 5) & (R < 3)'.
    """
    out = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch not in '([':
            out.append(ch)
            i += 1
            continue
        depth = 1
        j = i + 1
        while j < len(text) and depth:
            if text[j] in '([':
                depth += 1
            elif text[j] in ')]':
                depth -= 1
            j += 1
        if depth:
            # unbalanced, the parser reports it
            return text
        inner = ', '.join(_rewrite_logic(arg) for arg in _split_top(text[i + 1:j - 1], ','))
        out.append(ch + inner + text[j - 1])
        i = j
    text = ''.join(out)

    alternatives = []
    for alternative in _split_top(text, '||'):
        terms = _split_top(alternative, '&&')
        if len(terms) > 1:
            alternatives.append(' & '.join(f'({term.strip()})' for term in terms))
        else:
            alternatives.append(alternative.strip())
    if len(alternatives) == 1:
        return alternatives[0]
    return ' | '.join(f'({alternative})' for alternative in alternatives)


def sympify_text(text, names):
    """
    Parse `text` into a sympy object, treating every name in `names` as a plain
    symbol. Raises ModelCompileError on syntax errors and undeclared symbols.
    """
    if not isinstance(text, str) or not text.strip():
        raise ModelCompileError(f"Empty or non-string expression: {text!r}")
    if '==' in text or '!=' in text:
        raise ModelCompileError(
            f"Use Eq(a, b) / Ne(a, b) instead of '==' / '!=' in expression {text!r}")
    source = _rewrite_logic(text) if ('&&' in text or '||' in text) else text
    local_dict = {name: sympy.Symbol(name) for name in names}
    try:
        parsed = parse_expr(source, local_dict=local_dict, global_dict=dict(_GLOBALS),
                            transformations=_TRANSFORMATIONS)
        parsed = sympy.sympify(parsed)
    except (SyntaxError, TypeError, ValueError, AttributeError, TokenError, sympy.SympifyError) as err:
        raise ModelCompileError(f"Cannot parse expression {text!r}: {err}") from err

    undeclared = sorted(str(s) for s in parsed.free_symbols if str(s) not in names)
    if undeclared:
        raise ModelCompileError(
            f"Expression {text!r} references undeclared symbol(s): {', '.join(undeclared)}")
    return parsed


def parse_expression(text, names, predicate=False):
    """
    Compile an expression string against an ordered list of declared names.

    Parameters:
    - text (str): The expression, e.g. 'beta*S*I/(S+I+R)' or 'R > 20'.
    - names (list of str): Declared names; the position of a name is its slot in
      the value vector handed to Expression.evaluate.
    - predicate (bool): Require a boolean expression (stop predicate).

    Returns:
    - Expression
    """
    names = list(names)
    slots = {name: i for i, name in enumerate(names)}
    parsed = sympify_text(text, names)

    # sympy Symbols are Boolean too, a bare name is numeric here
    is_boolean = parsed.is_Relational or isinstance(parsed, (And, Or, Not, BooleanTrue, BooleanFalse))
    if predicate and not is_boolean:
        raise ModelCompileError(f"Stop predicate {text!r} is not a boolean condition")
    if not predicate and is_boolean:
        raise ModelCompileError(f"Expression {text!r} is a condition, a numeric value was expected")

    tree = _lower(parsed, slots, text)
    symbols = frozenset(str(s) for s in parsed.free_symbols)
    return Expression(text, tree, symbols, is_boolean)


def _lower(node, slots, text):
    if isinstance(node, BooleanTrue):
        return ('const', True)
    if isinstance(node, BooleanFalse):
        return ('const', False)
    if node.is_Symbol:
        return ('ref', slots[node.name])
    if node.is_Number:
        if not node.is_real or node is sympy.nan:
            raise ModelCompileError(f"Expression {text!r} evaluates to an undefined number ({node})")
        return ('const', float(node))
    if isinstance(node, sympy.Add):
        return ('add', tuple(_lower(arg, slots, text) for arg in node.args))
    if isinstance(node, sympy.Mul):
        return ('mul', tuple(_lower(arg, slots, text) for arg in node.args))
    if isinstance(node, sympy.Pow):
        base, expo = node.args
        return ('pow', _lower(base, slots, text), _lower(expo, slots, text))
    if isinstance(node, sympy.Min):
        return ('min', tuple(_lower(arg, slots, text) for arg in node.args))
    if isinstance(node, sympy.Max):
        return ('max', tuple(_lower(arg, slots, text) for arg in node.args))
    if isinstance(node, sympy.Piecewise):
        return ('piecewise', tuple((_lower(pair.expr, slots, text), _lower(pair.cond, slots, text))
                                   for pair in node.args))
    if isinstance(node, Relational):
        op = _COMPARISONS.get(node.rel_op)
        if op is None:
            raise ModelCompileError(f"Unsupported comparison '{node.rel_op}' in {text!r}")
        return ('cmp', op, _lower(node.lhs, slots, text), _lower(node.rhs, slots, text))
    if isinstance(node, And):
        return ('and', tuple(_lower(arg, slots, text) for arg in node.args))
    if isinstance(node, Or):
        return ('or', tuple(_lower(arg, slots, text) for arg in node.args))
    if isinstance(node, Not):
        return ('not', _lower(node.args[0], slots, text))
    for func, impl in _FUNCTIONS.items():
        if isinstance(node, func):
            return ('func', impl, _lower(node.args[0], slots, text))
    raise ModelCompileError(f"Unsupported construct '{node.func}' in expression {text!r}")


def _evaluate(node, values):
    tag = node[0]
    if tag == 'ref':
        return values[node[1]]
    if tag == 'const':
        return node[1]
    if tag == 'mul':
        result = 1.0
        for child in node[1]:
            result *= _evaluate(child, values)
        return result
    if tag == 'add':
        result = 0.0
        for child in node[1]:
            result += _evaluate(child, values)
        return result
    if tag == 'pow':
        return _evaluate(node[1], values) ** _evaluate(node[2], values)
    if tag == 'func':
        return node[1](_evaluate(node[2], values))
    if tag == 'cmp':
        return node[1](_evaluate(node[2], values), _evaluate(node[3], values))
    if tag == 'and':
        return all(_evaluate(child, values) for child in node[1])
    if tag == 'or':
        return any(_evaluate(child, values) for child in node[1])
    if tag == 'not':
        return not _evaluate(node[1], values)
    if tag == 'piecewise':
        for expr, cond in node[1]:
            if _evaluate(cond, values):
                return _evaluate(expr, values)
        return math.nan
    if tag == 'min':
        return min(_evaluate(child, values) for child in node[1])
    if tag == 'max':
        return max(_evaluate(child, values) for child in node[1])
    raise ValueError(f"Unknown expression node '{tag}'")
