######################################################################################################
#####  Event-driven simulation of a compiled model  ##################################################
#
# Exact stochastic simulation (Gillespie direct method) with time-varying rates evaluated at event
# times, i.e. rates are held piecewise constant between events. An optional stop predicate rejects
# a run as soon as it becomes true, which lets calibration abandon hopeless simulations early.
######################################################################################################

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from errors import ModelRuntimeError


logger = logging.getLogger(__name__)

COMPLETED = 'Completed'
REJECTED = 'Rejected'


@dataclass
class RunResult:
    """
    Outcome of one simulation run.

    - status: 'Completed' or 'Rejected'.
    - t: final time (the horizon when Completed, the rejection time otherwise).
    - state: final compartment counts.
    - aux: final auxiliary values.
    - trajectory: DataFrame with a 'time' column and one column per compartment /
      auxiliary at the recording grid (None without a grid).
    - n_events: number of events fired.
    """
    status: str
    t: float
    state: np.ndarray
    aux: np.ndarray
    trajectory: pd.DataFrame = None
    n_events: int = 0

    @property
    def completed(self):
        return self.status == COMPLETED

    def final(self, names):
        """Final compartments followed by auxiliaries as a Series indexed by `names`."""
        return pd.Series(np.concatenate([self.state, self.aux]), index=list(names))


def seed_sequence(seed=None):
    """Return a numpy SeedSequence from an int, a SeedSequence, a Generator or None."""
    if isinstance(seed, np.random.SeedSequence):
        return seed
    if isinstance(seed, np.random.Generator):
        return np.random.SeedSequence(int(seed.integers(2**63)))
    return np.random.SeedSequence(seed)


def make_rng(seed=None):
    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(seed_sequence(seed))


def _propensities(transitions, values, t):
    props = []
    total = 0.0
    for tr in transitions:
        feasible = True
        for slot, count in tr.consumes:
            if values[slot] < count:
                feasible = False
                break
        if not feasible:
            props.append(0.0)
            continue
        try:
            rate = float(tr.rate.evaluate(values))
        except (ZeroDivisionError, ValueError, OverflowError, TypeError) as err:
            raise ModelRuntimeError(f"Rate of transition '{tr.name}' cannot be evaluated at t={t}: {err}") from err
        if not rate >= 0 or rate == np.inf:
            raise ModelRuntimeError(
                f"Transition '{tr.name}' has invalid propensity {rate} at t={t}; "
                f"rates must be finite and non-negative")
        props.append(rate)
        total += rate
    return props, total


def _select(props, u):
    """Index of the transition whose cumulative propensity first exceeds u."""
    cumulative = 0.0
    last_positive = 0
    for k, rate in enumerate(props):
        if rate > 0:
            last_positive = k
            cumulative += rate
            if u < cumulative:
                return k
    return last_positive


def gillespie(model, pars, initial_state, t_start=0.0, t_end=None, initial_aux=None, tspan=None,
              rng=None, use_stop=True):
    """
    Simulate one trajectory of a compiled model.

    Parameters:
    - model (EpiModel): Compiled model.
    - pars (dict-like or list): Parameter values keyed by name, or a list in declared order.
    - initial_state (dict-like or list): Compartment values keyed by name (auxiliary values
      may be included), or a list of compartments followed by auxiliaries.
    - t_start (float): Start time.
    - t_end (float): Horizon; defaults to the last grid time.
    - initial_aux (dict-like): Auxiliary initial values (default 0).
    - tspan (sequence): Recording grid; None uses the model's grid, () records nothing.
    - rng (np.random.Generator, int or None): Random stream.
    - use_stop (bool): Whether the model's stop predicate is active.

    Returns:
    - RunResult
    """
    rng = make_rng(rng)
    ncomp = len(model.compartments)
    nstate = model.n_state

    par_values = list(pars) if isinstance(pars, (list, tuple, np.ndarray)) else model.par_values(pars)
    if len(par_values) != len(model.pars):
        raise ModelRuntimeError(f"Expected {len(model.pars)} parameter values, got {len(par_values)}")
    if isinstance(initial_state, (list, tuple, np.ndarray)):
        state = [float(x) for x in initial_state]
        if len(state) == ncomp:
            state += [0.0] * (nstate - ncomp)
        if len(state) != nstate:
            raise ModelRuntimeError(f"Expected {nstate} state values, got {len(state)}")
    else:
        state = model.state_values(initial_state, initial_aux)

    grid = model.tspan if tspan is None else tuple(tspan)
    if t_end is None:
        if not grid:
            raise ValueError("Either t_end or a recording grid is required")
        t_end = grid[-1]
    t_end = float(t_end)
    if t_end < t_start:
        raise ValueError(f"t_end ({t_end}) is before t_start ({t_start})")
    grid = [g for g in (grid or ()) if t_start <= g <= t_end]
    record = len(grid) > 0

    values = [float(t_start)] + state + [float(p) for p in par_values]
    transitions = model.transitions
    stop = model.stop if use_stop else None

    rows = []
    gi = 0
    n_events = 0
    status = COMPLETED

    while True:
        t = values[0]
        props, total = _propensities(transitions, values, t)
        if total <= 0:
            break
        t_next = t + rng.exponential(1.0 / total)
        if t_next > t_end:
            break

        # hold the pre-event state on the grid up to the event
        while record and gi < len(grid) and grid[gi] < t_next:
            rows.append([grid[gi]] + values[1:1 + nstate])
            gi += 1

        k = _select(props, rng.random() * total)
        for slot, change in transitions[k].delta:
            values[slot] += change
        values[0] = t_next
        n_events += 1

        if stop is not None and stop.evaluate(values):
            status = REJECTED
            break

    if status == COMPLETED:
        values[0] = t_end
        fill = values[1:1 + nstate]
    else:
        fill = [np.nan] * nstate
    while record and gi < len(grid):
        rows.append([grid[gi]] + fill)
        gi += 1

    trajectory = None
    if record:
        trajectory = pd.DataFrame(rows, columns=['time'] + list(model.state_names))

    return RunResult(
        status=status,
        t=values[0],
        state=np.array(values[1:1 + ncomp]),
        aux=np.array(values[1 + ncomp:1 + nstate]),
        trajectory=trajectory,
        n_events=n_events,
    )


def _simulate_one(model, pars, initial_state, t_start, t_end, initial_aux, tspan, seed, use_stop):
    return gillespie(model, pars, initial_state, t_start=t_start, t_end=t_end, initial_aux=initial_aux,
                     tspan=tspan, rng=np.random.default_rng(seed), use_stop=use_stop)


def simulate(model, pars, initial_state, nrep=1, t_start=0.0, t_end=None, initial_aux=None, tspan=None,
             use_stop=True, seed=None, n_jobs=1):
    """
    Run `nrep` independent simulations, each on its own random substream.

    The runs are distributed with joblib; results do not depend on n_jobs.

    Returns:
    - list of RunResult
    """
    seeds = seed_sequence(seed).spawn(nrep)
    results = Parallel(n_jobs=n_jobs)(
        delayed(_simulate_one)(model, pars, initial_state, t_start, t_end, initial_aux, tspan, s, use_stop)
        for s in seeds
    )
    n_rejected = sum(not r.completed for r in results)
    logger.debug("Simulated %d runs, %d rejected by the stop predicate", nrep, n_rejected)
    return results
