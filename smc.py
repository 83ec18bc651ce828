################################################
# Code for the bootstrap Particle filter
#############################################

import logging

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy.special import logsumexp

from observation_dist import log_observation_weight
from resampling import resampling_style
from state_process import gillespie, seed_sequence


logger = logging.getLogger(__name__)


def check_observed_data(model, observed_data, t_start):
    """Validate the observation table against the model."""
    if not model.obs_process:
        raise ValueError("The model has no observation process; compile it with obs_process")
    if not isinstance(observed_data, pd.DataFrame) or 'time' not in observed_data.columns:
        raise ValueError("observed_data must be a DataFrame with a 'time' column")
    times = observed_data['time'].to_numpy(dtype=float)
    if len(times) == 0:
        raise ValueError("observed_data is empty")
    if np.any(np.diff(times) <= 0):
        raise ValueError("Observation times must be strictly increasing")
    if times[0] < t_start:
        raise ValueError(f"First observation time {times[0]} is before the start time {t_start}")
    missing = [s.name for s in model.obs_process if s.name not in observed_data.columns]
    if missing:
        raise ValueError(f"observed_data lacks observed stream column(s): {', '.join(missing)}")
    return observed_data.reset_index(drop=True)


def propagate(model, par_values, particles, seeds, t_start, t_end, aux_reset=None):
    """
    Move every particle from t_start to t_end with the simulation engine (no stop predicate).

    Parameters:
    - particles (ndarray): num_particles x (compartments + auxiliaries).
    - seeds (list of SeedSequence): One private substream per particle.
    - aux_reset (ndarray): When given, auxiliaries are reset to these values first.

    Returns:
    - ndarray with the propagated particles.
    """
    ncomp = len(model.compartments)
    moved = np.empty_like(particles)
    for i, (state, seed) in enumerate(zip(particles, seeds)):
        state = state.copy()
        if aux_reset is not None:
            state[ncomp:] = aux_reset
        run = gillespie(model, par_values, state, t_start=t_start, t_end=t_end, tspan=(),
                        rng=np.random.default_rng(seed), use_stop=False)
        moved[i, :ncomp] = run.state
        moved[i, ncomp:] = run.aux
    return moved


def Particle_Filter(model, theta, initial_state, observed_data, num_state_particles, t_start=0.0,
                    initial_aux=None, resampling_method='systematic', reset_aux=False, seed=None, n_jobs=1):
    """
    Run a bootstrap particle filter to estimate the marginal log-likelihood of `theta`.

    Parameters:
    - model (EpiModel): Compiled model with an observation process.
    - theta (dict-like): Model parameters keyed by name.
    - initial_state (dict-like): Initial compartment (and auxiliary) values.
    - observed_data (pd.DataFrame): 'time' column plus one column per observed stream.
    - num_state_particles (int): Number of particles.
    - t_start (float): Time of the initial state.
    - initial_aux (dict-like): Initial auxiliary values.
    - resampling_method (str): Resampling method ('systematic', 'stratified', 'residual', 'multinomial').
    - reset_aux (bool): Reset auxiliaries to their initial values after each observation
      (auxiliaries then count events between observations, e.g. incidence).
    - seed (int or SeedSequence): Random seed.
    - n_jobs (int): Number of joblib workers for the propagation.

    Returns:
    - dict: 'logLike' (estimated marginal log-likelihood), 'incLogLike' (increments per
      observation), 'particle_state' (final unresampled particles), 'weights' (their
      normalized weights, None when the estimate is -inf) and 'time' (last observation time).
    """
    observed_data = check_observed_data(model, observed_data, t_start)
    if num_state_particles < 1:
        raise ValueError("num_state_particles must be positive")
    ss = seed_sequence(seed)
    par_values = model.par_values(theta)
    init = np.asarray(model.state_values(initial_state, initial_aux), dtype=float)
    ncomp = len(model.compartments)
    aux_reset = init[ncomp:].copy() if (reset_aux and model.aux) else None

    # Initialize particles at the initial state
    particles = np.tile(init, (num_state_particles, 1))
    num_timesteps = len(observed_data)
    inc_log_likelihood = np.full(num_timesteps, np.nan)
    streams = [s.name for s in model.obs_process]
    t_prev = float(t_start)
    weights = None

    # Main loop over the observations
    for k, row in enumerate(observed_data.to_dict('records')):
        t_obs = float(row['time'])
        seeds = ss.spawn(num_state_particles + 1)
        reset = aux_reset if k > 0 else None

        if n_jobs == 1:
            particles = propagate(model, par_values, particles, seeds[:-1], t_prev, t_obs, reset)
        else:
            chunks = np.array_split(np.arange(num_state_particles), n_jobs)
            moved = Parallel(n_jobs=n_jobs)(
                delayed(propagate)(model, par_values, particles[idx], [seeds[i] for i in idx], t_prev, t_obs, reset)
                for idx in chunks if len(idx)
            )
            particles = np.vstack(moved)

        # Compute log weights from the observation process
        observation = {name: row[name] for name in streams}
        log_weights = np.array([
            log_observation_weight(model, model.values(t_obs, p, par_values), observation) for p in particles
        ])
        max_log_weight = np.max(log_weights)
        if max_log_weight == -np.inf:
            # No particle is compatible with the observation: zero likelihood
            inc_log_likelihood[k] = -np.inf
            logger.debug("Particle filter degenerate at t=%s: all weights are zero", t_obs)
            return {
                'logLike': -np.inf,
                'incLogLike': inc_log_likelihood,
                'particle_state': particles,
                'weights': None,
                'time': t_obs,
            }

        # Likelihood update: log of the mean weight
        inc_log_likelihood[k] = logsumexp(log_weights) - np.log(num_state_particles)
        weights = np.exp(log_weights - max_log_weight)
        weights /= np.sum(weights)

        # Resample Particles, the last population is returned weighted
        if k < num_timesteps - 1:
            resampled_indices = resampling_style(weights, resampling_method, rng=np.random.default_rng(seeds[-1]))
            particles = particles[resampled_indices]
        t_prev = t_obs

    return {
        'logLike': float(np.sum(inc_log_likelihood)),
        'incLogLike': inc_log_likelihood,
        'particle_state': particles,
        'weights': weights,
        'time': t_prev,
    }
