###############################################################################
# Exceptions raised by the model compiler, the simulation engine and the
# calibration drivers
###############################################################################


class ModelCompileError(ValueError):
    """Raised when a model definition cannot be compiled (undeclared symbol,
    empty source, malformed stop predicate or observation process)."""


class ModelRuntimeError(RuntimeError):
    """Raised when a simulation run meets a misspecified model, e.g. a negative
    propensity or a missing parameter value."""


class ABCBudgetError(RuntimeError):
    """Raised when an ABC-SMC generation cannot accept enough particles within
    its simulation budget."""

    def __init__(self, generation, accepted, target, attempts):
        self.generation = generation
        self.accepted = accepted
        self.target = target
        self.attempts = attempts
        super().__init__(
            f"ABC-SMC generation {generation} accepted only {accepted}/{target} particles "
            f"after {attempts} attempts; the tolerance may be too tight or the target "
            f"not identifiable under the priors"
        )
