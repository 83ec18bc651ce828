########################################################################
# This file contains the codes for Approximate Bayesian Computation
# Sequential Monte Carlo (ABC-SMC) over a sequence of tolerances
########################################################################

import logging
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy.special import logsumexp
from scipy.stats import norm
from tqdm import tqdm

from errors import ABCBudgetError
from ssm_prior_draw import check_priors, draw_theta, in_support, log_prior
from state_process import make_rng, seed_sequence


logger = logging.getLogger(__name__)


@dataclass
class ABCSMCState:
    """
    Weighted particle population after one or more ABC-SMC generations.

    The state holds only arrays and lists, so it can be pickled and handed back
    to ABC_SMC (argument prev_state) to run further generations.

    - param_names: parameter names, in the order of the priors.
    - particles: num_particles x num_parameters.
    - weights: normalized importance weights.
    - distances: num_particles x num_statistics absolute distances to the observed statistics.
    - tols: tolerance vector of every generation run so far.
    - ess, accept_rate, n_sims, n_attempts: diagnostics per generation.
    - seed_entropy / seed_spawned: random stream position, so resumed runs are reproducible.
    """
    param_names: list
    particles: np.ndarray
    weights: np.ndarray
    distances: np.ndarray
    tols: list = field(default_factory=list)
    ess: list = field(default_factory=list)
    accept_rate: list = field(default_factory=list)
    n_sims: list = field(default_factory=list)
    n_attempts: list = field(default_factory=list)
    seed_entropy: object = None
    seed_spawn_key: tuple = ()
    seed_spawned: int = 0

    @property
    def generation(self):
        return len(self.tols)

    def to_frame(self):
        """Current population as a DataFrame (one row per particle, plus its weight)."""
        frame = pd.DataFrame(self.particles, columns=self.param_names)
        frame['weight'] = self.weights
        return frame

    def diagnostics(self):
        tols = np.array(self.tols)
        frame = pd.DataFrame({
            'generation': np.arange(1, self.generation + 1),
            'accept_rate': self.accept_rate,
            'n_sims': self.n_sims,
            'n_attempts': self.n_attempts,
            'ESS': self.ess,
        })
        for j in range(tols.shape[1]):
            frame[f'tol_{j + 1}'] = tols[:, j]
        return frame

    def sample(self, n, seed=None):
        """Draw n parameter vectors from the weighted population (with replacement)."""
        rng = make_rng(seed)
        indexes = rng.choice(len(self.weights), size=n, p=self.weights)
        return pd.DataFrame(self.particles[indexes], columns=self.param_names).reset_index(drop=True)


def _history(state, attr):
    return list(getattr(state, attr)) if state is not None else []


def effective_sample_size(weights):
    return 1 / np.sum(np.asarray(weights) ** 2)


def _tolerance_schedule(tols, nstats):
    if tols is None:
        return np.empty((0, nstats))
    tols = np.atleast_2d(np.asarray(tols, dtype=float))
    if tols.shape[1] != nstats:
        raise ValueError(f"Tolerances have {tols.shape[1]} columns but there are {nstats} summary statistics")
    if np.any(tols < 0) or np.any(np.isnan(tols)):
        raise ValueError("Tolerances must be non-negative")
    if np.any(np.diff(tols, axis=0) > 0):
        raise ValueError("Tolerances must be non-increasing across generations")
    return tols


def _kernel_sd(particles, weights):
    """Component-wise Gaussian step: twice the weighted variance of the previous generation."""
    mean = np.average(particles, axis=0, weights=weights)
    var = np.average((particles - mean) ** 2, axis=0, weights=weights)
    sd = np.sqrt(2 * var)
    floor = 1e-8 * np.maximum(1.0, np.abs(mean))
    return np.maximum(sd, floor)


def _abc_candidate(func, priors, names, observed, tol, initial_state, prev_particles, prev_weights, kernel_sd, seed):
    """
    Propose one particle and simulate it.

    Returns (theta, distances, status) where status is 'accepted', 'rejected'
    (outside tolerance or stopped early) or 'prior' (outside prior support, no simulation run).
    """
    rng = np.random.default_rng(seed)
    if prev_particles is None:
        theta = draw_theta(priors, rng)
    else:
        parent = rng.choice(len(prev_weights), p=prev_weights)
        theta = prev_particles[parent] + rng.normal(0.0, kernel_sd)
        if not in_support(priors, theta):
            return theta, None, 'prior'

    stats = func(dict(zip(names, theta)), tol, initial_state, rng)
    if stats is None:
        return theta, None, 'rejected'
    stats = np.atleast_1d(np.asarray(stats, dtype=float))
    if stats.shape != observed.shape:
        raise ValueError(f"func returned {stats.shape[0]} statistics, {observed.shape[0]} expected")
    distances = np.abs(stats - observed)
    accepted = bool(np.all(distances <= tol))
    return theta, distances, 'accepted' if accepted else 'rejected'


def _importance_weights(priors, particles, prev_particles, prev_weights, kernel_sd):
    """prior(theta) / sum_j w_j K(theta | theta_j) for each new particle, normalized."""
    log_weights = np.empty(len(particles))
    log_prev = np.log(prev_weights)
    for i, theta in enumerate(particles):
        log_kernel = np.sum(norm.logpdf(theta, loc=prev_particles, scale=kernel_sd), axis=1)
        log_weights[i] = log_prior(priors, theta) - logsumexp(log_prev + log_kernel)
    log_weights -= np.max(log_weights)
    weights = np.exp(log_weights)
    return weights / np.sum(weights)


def _run_generation(func, priors, names, observed, tol, initial_state, npart, prev, gen_ss,
                    max_attempts, batch_size, n_jobs, generation, show_progress):
    if prev is None:
        prev_particles, prev_weights, kernel_sd = None, None, None
    else:
        prev_particles, prev_weights = prev.particles, prev.weights
        kernel_sd = _kernel_sd(prev_particles, prev_weights)

    particles, distances = [], []
    attempts = 0
    sims = 0
    progress_bar = tqdm(total=npart, desc=f"ABC-SMC generation {generation}", disable=not show_progress)

    while len(particles) < npart:
        if attempts >= max_attempts:
            progress_bar.close()
            raise ABCBudgetError(generation, len(particles), npart, attempts)
        size = min(batch_size, max_attempts - attempts)
        seeds = gen_ss.spawn(size)
        results = Parallel(n_jobs=n_jobs)(
            delayed(_abc_candidate)(func, priors, names, observed, tol, initial_state,
                                    prev_particles, prev_weights, kernel_sd, s)
            for s in seeds
        )
        # candidates are taken in order so the outcome does not depend on n_jobs
        for theta, dist, status in results:
            attempts += 1
            if status != 'prior':
                sims += 1
            if status == 'accepted':
                particles.append(theta)
                distances.append(dist)
                progress_bar.update(1)
                if len(particles) == npart:
                    break
    progress_bar.close()

    particles = np.array(particles)
    distances = np.array(distances)
    if prev is None:
        weights = np.ones(npart) / npart
    else:
        weights = _importance_weights(priors, particles, prev_particles, prev_weights, kernel_sd)
    return particles, weights, distances, attempts, sims


def ABC_SMC(observed, priors, func, initial_state, num_particles=None, tols=None, ptol=None, ngen=None,
            mintols=None, ess_threshold=None, max_attempts=100000, batch_size=None, prev_state=None,
            seed=None, n_jobs=1, show_progress=True):
    """
    Run Approximate Bayesian Computation Sequential Monte Carlo.

    Parameters:
    - observed (array-like): Observed summary statistics.
    - priors (dict): Prior information for each parameter.
    - func (callable): func(pars, tols, initial_state, rng) -> simulated statistics, or None
      when the simulation was stopped early. It wraps the simulation engine; `tols` is the
      current generation's tolerance, so it can tune the model's stop predicate.
    - initial_state (dict-like): Initial state handed to func.
    - num_particles (int): Particles per generation (taken from prev_state when resuming).
    - tols (array-like): One tolerance vector, or a generations x statistics matrix; must be
      non-increasing across generations.
    - ptol (float): Quantile of the current distances used as the next tolerance once `tols`
      is exhausted (adaptive tolerances).
    - ngen (int): Number of generations to run (default: number of rows of tols).
    - mintols (array-like): Lower bound for adaptive tolerances.
    - ess_threshold (float): Stop the sequence once the ESS of a generation falls below it.
    - max_attempts (int): Candidate budget per generation.
    - batch_size (int): Candidates evaluated per parallel batch (default: num_particles).
    - prev_state (ABCSMCState): Population to resume from.
    - seed (int or SeedSequence): Random seed (ignored when resuming).
    - n_jobs (int): Number of joblib workers.
    - show_progress (bool): Whether to show a progress bar.

    Returns:
    - ABCSMCState
    """
    names = check_priors(priors)
    observed = np.atleast_1d(np.asarray(observed, dtype=float))
    nstats = len(observed)
    schedule = _tolerance_schedule(tols, nstats)

    if prev_state is not None:
        if list(prev_state.param_names) != names:
            raise ValueError("prev_state was produced with different parameters")
        if num_particles is not None and num_particles != len(prev_state.weights):
            raise ValueError("num_particles differs from the resumed population")
        num_particles = len(prev_state.weights)
        if len(schedule) and np.any(schedule[0] > prev_state.tols[-1]):
            raise ValueError("Tolerances must be non-increasing relative to the resumed population")
        ss = np.random.SeedSequence(prev_state.seed_entropy, spawn_key=tuple(prev_state.seed_spawn_key),
                                    n_children_spawned=prev_state.seed_spawned)
    else:
        if num_particles is None or num_particles < 1:
            raise ValueError("num_particles must be a positive integer")
        ss = seed_sequence(seed)

    if ngen is None:
        ngen = len(schedule)
    if ngen < 1:
        raise ValueError("Nothing to run: give tols, or ngen together with ptol")
    if ngen > len(schedule) and ptol is None:
        raise ValueError("ngen exceeds the tolerance schedule; give ptol for adaptive tolerances")
    if ptol is not None and not 0 < ptol < 1:
        raise ValueError("ptol must lie in (0, 1)")
    mintols = np.zeros(nstats) if mintols is None else np.broadcast_to(np.asarray(mintols, float), (nstats,))
    batch_size = batch_size or num_particles

    state = prev_state
    for g in range(ngen):
        if g < len(schedule):
            tol = schedule[g]
        elif state is None:
            tol = np.full(nstats, np.inf)
        else:
            tol = np.quantile(state.distances, ptol, axis=0)
            tol = np.maximum(np.minimum(tol, state.tols[-1]), mintols)
            if np.all(tol >= state.tols[-1]):
                logger.info("Adaptive tolerance cannot decrease further; stopping")
                break

        generation = 1 if state is None else state.generation + 1
        gen_ss = ss.spawn(1)[0]
        particles, weights, distances, attempts, sims = _run_generation(
            func, priors, names, observed, tol, initial_state, num_particles, state, gen_ss,
            max_attempts, batch_size, n_jobs, generation, show_progress)

        ess = effective_sample_size(weights)
        state = ABCSMCState(
            param_names=names,
            particles=particles,
            weights=weights,
            distances=distances,
            tols=_history(state, 'tols') + [np.asarray(tol, dtype=float)],
            ess=_history(state, 'ess') + [ess],
            accept_rate=_history(state, 'accept_rate') + [num_particles / attempts],
            n_sims=_history(state, 'n_sims') + [sims],
            n_attempts=_history(state, 'n_attempts') + [attempts],
            seed_entropy=ss.entropy,
            seed_spawn_key=tuple(ss.spawn_key),
            seed_spawned=ss.n_children_spawned,
        )
        logger.info("Generation %d: tol=%s, accepted %d/%d (%.3f), ESS=%.1f",
                    generation, np.round(tol, 4), num_particles, attempts, num_particles / attempts, ess)

        if ess_threshold is not None and ess < ess_threshold:
            warnings.warn(f"ESS ({ess:.1f}) fell below {ess_threshold} at generation {generation}; "
                          f"stopping the tolerance sequence")
            break

    return state
