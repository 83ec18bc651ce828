###############################################################################################################
#  This file contains the model compiler: it turns a declarative description of a stochastic compartmental
#  model (compartments, transitions with rate expressions, parameters, auxiliary variables, stop predicate,
#  output grid and observation process) into an immutable EpiModel used by the simulation engine and by the
#  calibration drivers. Example SIR / SEIR definitions are at the bottom and can be extended by the user.
#################################################################################################################

from dataclasses import dataclass

import numpy as np
import pandas as pd
import sympy

from errors import ModelCompileError, ModelRuntimeError
from expression import TIME, parse_expression, sympify_text
from observation_dist import OBS_DISTRIBUTIONS


_EMPTY = ('', '0', 'null', 'none')


@dataclass(frozen=True)
class Transition:
    """
    One transition of the model.

    - name: the transition as written, used in diagnostics.
    - rate: compiled rate expression.
    - consumes: ((slot, count), ...) compartments used up by the transition,
      slots index the value vector.
    - delta: ((slot, change), ...) sparse stoichiometry over compartments and auxiliaries.
    """
    name: str
    rate: object
    consumes: tuple
    delta: tuple


@dataclass(frozen=True)
class ObservationStream:
    name: str
    dist: str
    p1: object
    p2: object = None


@dataclass(frozen=True)
class EpiModel:
    compartments: tuple
    transitions: tuple
    pars: tuple
    aux: tuple = ()
    stop: object = None
    tspan: tuple = None
    obs_process: tuple = ()

    @property
    def names(self):
        """Layout of the value vector: time, compartments, auxiliaries, parameters."""
        return (TIME,) + self.compartments + self.aux + self.pars

    @property
    def state_names(self):
        return self.compartments + self.aux

    @property
    def n_state(self):
        return len(self.compartments) + len(self.aux)

    @property
    def stoichiometry(self):
        """Dense (transitions x compartments+auxiliaries) matrix of state changes."""
        matrix = np.zeros((len(self.transitions), self.n_state))
        for i, tr in enumerate(self.transitions):
            for slot, change in tr.delta:
                matrix[i, slot - 1] = change
        return pd.DataFrame(matrix, columns=list(self.state_names),
                            index=[tr.name for tr in self.transitions])

    def par_values(self, theta):
        """Parameter values in declared order from a dict / Series keyed by name."""
        return _lookup(theta, self.pars, 'parameter')

    def state_values(self, initial_state, initial_aux=None):
        """Compartment and auxiliary values in declared order; auxiliaries default to 0."""
        state = _lookup(initial_state, self.compartments, 'compartment')
        if self.aux:
            if initial_aux is None:
                initial_aux = {name: initial_state[name] for name in self.aux if _has_key(initial_state, name)}
            aux = [float(initial_aux[name]) if _has_key(initial_aux, name) else 0.0 for name in self.aux]
        else:
            aux = []
        return state + aux

    def values(self, t, state, pars):
        """Build the value vector [t, state..., pars...] expressions are evaluated against."""
        return [float(t)] + [float(x) for x in state] + list(pars)


def _has_key(mapping, key):
    try:
        return key in mapping
    except TypeError:
        return False


def _lookup(mapping, keys, kind):
    values = []
    missing = [key for key in keys if not _has_key(mapping, key)]
    if missing:
        raise ModelRuntimeError(f"Missing {kind} value(s): {', '.join(missing)}")
    for key in keys:
        values.append(float(mapping[key]))
    return values


def compile_model(compartments, transitions, pars, aux=None, stop=None, tspan=None, obs_process=None):
    """
    Compile a declarative model.

    Parameters:
    - compartments (list of str): Ordered compartment names.
    - transitions (list): Each either 'source -> rate -> destination' or a
      (source, rate, destination) triple, e.g. 'S + I -> beta*S*I/(S+I+R) -> 2*I'.
      Source and destination are non-negative integer combinations of compartments
      and auxiliaries; the destination may be empty ('', '0' or 'null').
    - pars (list of str): Parameter names.
    - aux (list of str): Auxiliary variables, changed by transitions that name them
      in their source/destination (e.g. a running count of cases).
    - stop (str): Boolean expression over state/auxiliaries/parameters/time; when it
      becomes true after an event the run is Rejected.
    - tspan (list of float): Ascending times at which trajectories are recorded.
    - obs_process (DataFrame or list of dict): Columns 'stream', 'dist', 'p1', 'p2'.

    Returns:
    - EpiModel
    """
    compartments = _names(compartments, 'compartment')
    pars = _names(pars, 'parameter')
    aux = _names(aux or [], 'auxiliary variable')

    declared = list(compartments) + list(aux) + list(pars)
    if TIME in declared:
        raise ModelCompileError(f"'{TIME}' is reserved for time")
    duplicated = sorted({name for name in declared if declared.count(name) > 1})
    if duplicated:
        raise ModelCompileError(f"Names declared more than once: {', '.join(duplicated)}")
    if not compartments:
        raise ModelCompileError("A model needs at least one compartment")

    names = (TIME,) + compartments + aux + pars
    slots = {name: i for i, name in enumerate(names)}

    if not transitions:
        raise ModelCompileError("A model needs at least one transition")
    compiled = tuple(_compile_transition(tr, names, slots, compartments, aux) for tr in transitions)

    stop_expr = None
    if stop is not None:
        stop_expr = parse_expression(stop, names, predicate=True)

    grid = None
    if tspan is not None:
        grid = tuple(float(x) for x in np.atleast_1d(np.asarray(tspan, dtype=float)))
        if len(grid) == 0 or np.any(np.diff(grid) <= 0) or not np.all(np.isfinite(grid)):
            raise ModelCompileError("tspan must be a non-empty, strictly ascending sequence of finite times")

    streams = _compile_obs_process(obs_process, names, compartments, aux)

    return EpiModel(compartments=compartments, transitions=compiled, pars=pars, aux=aux,
                    stop=stop_expr, tspan=grid, obs_process=streams)


def _names(values, kind):
    if isinstance(values, str):
        values = [values]
    names = tuple(values)
    for name in names:
        if not isinstance(name, str) or not name.isidentifier():
            raise ModelCompileError(f"Invalid {kind} name: {name!r}")
    return names


def _split_transition(tr):
    if isinstance(tr, str):
        parts = [part.strip() for part in tr.split('->')]
        if len(parts) != 3:
            raise ModelCompileError(f"Transition {tr!r} must read 'source -> rate -> destination'")
        return tr.strip(), parts
    parts = list(tr)
    if len(parts) != 3:
        raise ModelCompileError(f"Transition {tr!r} must be a (source, rate, destination) triple")
    parts = ['' if part is None else str(part).strip() for part in parts]
    return ' -> '.join(parts), parts


def _multiset(text, names, allowed, label):
    """Parse 'S + 2*I' into {name: count}; empty text gives an empty multiset."""
    if text.lower() in _EMPTY:
        return {}
    parsed = sympy.expand(sympify_text(text, names))
    counts = {}
    for term, coeff in parsed.as_coefficients_dict().items():
        if not term.is_Symbol or str(term) not in allowed:
            raise ModelCompileError(
                f"{label} {text!r} may only combine compartments/auxiliaries, found '{term}'")
        if not coeff.is_Integer or coeff < 0:
            raise ModelCompileError(f"{label} {text!r} needs non-negative integer counts, found {coeff}")
        if coeff > 0:
            counts[str(term)] = int(coeff)
    return counts


def _compile_transition(tr, names, slots, compartments, aux):
    label, (source, rate, dest) = _split_transition(tr)
    allowed = set(compartments) | set(aux)
    src = _multiset(source, names, allowed, 'Source')
    dst = _multiset(dest, names, allowed, 'Destination')
    if not any(name in compartments for name in src):
        raise ModelCompileError(f"Transition {label!r} has an empty source")

    rate_expr = parse_expression(rate, names)

    delta = {}
    for name in set(src) | set(dst):
        change = dst.get(name, 0) - src.get(name, 0)
        if change:
            delta[slots[name]] = change
    consumes = tuple(sorted((slots[name], count) for name, count in src.items() if name in compartments))
    return Transition(name=label, rate=rate_expr, consumes=consumes, delta=tuple(sorted(delta.items())))


def _compile_obs_process(obs_process, names, compartments, aux):
    if obs_process is None:
        return ()
    if isinstance(obs_process, pd.DataFrame):
        rows = obs_process.to_dict('records')
    else:
        rows = [dict(row) for row in obs_process]

    streams = []
    seen = set()
    for row in rows:
        missing = [key for key in ('stream', 'dist', 'p1') if key not in row]
        if missing:
            raise ModelCompileError(f"Observation process row {row} lacks {', '.join(missing)}")
        name = row['stream']
        if not isinstance(name, str) or not name.isidentifier() or name in names:
            raise ModelCompileError(f"Invalid or clashing observed stream name: {name!r}")
        if name in seen:
            raise ModelCompileError(f"Observed stream {name!r} declared more than once")
        seen.add(name)

        dist = str(row['dist']).lower()
        if dist not in OBS_DISTRIBUTIONS:
            raise ModelCompileError(
                f"Unknown observation distribution {dist!r}; choose one of {sorted(OBS_DISTRIBUTIONS)}")
        nparams = OBS_DISTRIBUTIONS[dist][2]

        p2_text = row.get('p2')
        if p2_text is not None and not isinstance(p2_text, str) and pd.isna(p2_text):
            p2_text = None
        if nparams == 2 and p2_text is None:
            raise ModelCompileError(f"Observation distribution {dist!r} of {name!r} needs p1 and p2")
        if nparams == 1 and p2_text is not None:
            raise ModelCompileError(f"Observation distribution {dist!r} of {name!r} takes only p1")

        p1 = parse_expression(str(row['p1']), names)
        p2 = parse_expression(str(p2_text), names) if p2_text is not None else None
        streams.append(ObservationStream(name=name, dist=dist, p1=p1, p2=p2))
    return tuple(streams)


######################################################################################################
#####  Example models #################################################################################

def sir_model(stop=None, tspan=None, obs_process=None, incidence=False):
    """
    Continuous-time stochastic SIR model with frequency-dependent transmission.

    With incidence=True an auxiliary 'cases' counts infections.
    """
    infection = 'S + I -> beta*S*I/(S+I+R) -> 2*I'
    if incidence:
        infection += ' + cases'
    return compile_model(
        compartments=['S', 'I', 'R'],
        transitions=[infection, 'I -> gamma*I -> R'],
        pars=['beta', 'gamma'],
        aux=['cases'] if incidence else None,
        stop=stop, tspan=tspan, obs_process=obs_process,
    )


def seir_model(stop=None, tspan=None, obs_process=None, incidence=False):
    """Continuous-time stochastic SEIR model; 'cases' counts E -> I when incidence=True."""
    onset = 'E -> sigma*E -> I'
    if incidence:
        onset += ' + cases'
    return compile_model(
        compartments=['S', 'E', 'I', 'R'],
        transitions=['S + I -> beta*S*I/(S+E+I+R) -> E + I', onset, 'I -> gamma*I -> R'],
        pars=['beta', 'sigma', 'gamma'],
        aux=['cases'] if incidence else None,
        stop=stop, tspan=tspan, obs_process=obs_process,
    )
