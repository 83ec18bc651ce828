################################################################################################################
# This file contains the observation distributions linking the simulated state to the observed data.
# Each family provides a log density/mass and a sampler; the parameters p1/p2 are expressions of the
# model state evaluated per particle (see epi_model.compile_model, argument obs_process).
##################################################################################################################

import numpy as np
from scipy.stats import binom, nbinom, poisson, uniform


# Poisson log-likelihood, p1 = rate
def obs_dist_poisson(value, rate, _unused=None):
    if rate < 0:
        return -np.inf
    return poisson.logpmf(value, mu=rate)


# Binomial log-likelihood, p1 = trials, p2 = probability
def obs_dist_binomial(value, trials, prob):
    if trials < 0 or not 0 <= prob <= 1:
        return -np.inf
    return binom.logpmf(value, int(round(trials)), prob)


# Uniform log-likelihood, p1 = lower bound, p2 = upper bound
def obs_dist_uniform(value, lower, upper):
    if upper < lower:
        return -np.inf
    if upper == lower:
        return 0.0 if value == lower else -np.inf
    return uniform.logpdf(value, loc=lower, scale=upper - lower)


# Negative Binomial log-likelihood, p1 = mean, p2 = overdispersion
def obs_dist_negative_binomial(value, mean, overdispersion):
    if mean < 0 or overdispersion <= 0:
        return -np.inf
    return nbinom.logpmf(value, 1 / overdispersion, 1 / (1 + overdispersion * mean))


def _sample_poisson(rng, rate, _unused=None):
    return rng.poisson(max(rate, 0.0))


def _sample_binomial(rng, trials, prob):
    return rng.binomial(int(round(max(trials, 0))), min(max(prob, 0.0), 1.0))


def _sample_uniform(rng, lower, upper):
    return rng.uniform(lower, upper)


def _sample_negative_binomial(rng, mean, overdispersion):
    mean = max(mean, 0.0)
    if overdispersion <= 0:
        # Poisson limit
        return rng.poisson(mean)
    return rng.negative_binomial(1 / overdispersion, 1 / (1 + overdispersion * mean))


# family -> (log density, sampler, number of parameters)
OBS_DISTRIBUTIONS = {
    'poisson': (obs_dist_poisson, _sample_poisson, 1),
    'binomial': (obs_dist_binomial, _sample_binomial, 2),
    'uniform': (obs_dist_uniform, _sample_uniform, 2),
    'nbinom': (obs_dist_negative_binomial, _sample_negative_binomial, 2),
}


def stream_parameters(stream, values):
    """Evaluate p1 (and p2) of an observed stream at the value vector."""
    p1 = float(stream.p1.evaluate(values))
    p2 = float(stream.p2.evaluate(values)) if stream.p2 is not None else None
    return p1, p2


def obs_log_density(stream, value, values):
    """Log density of one observed value given the simulated state."""
    log_density = OBS_DISTRIBUTIONS[stream.dist][0]
    p1, p2 = stream_parameters(stream, values)
    result = log_density(value, p1, p2)
    if np.isnan(result):
        return -np.inf
    return float(result)


def obs_sample(stream, values, rng):
    """Draw one observed value given the simulated state."""
    sampler = OBS_DISTRIBUTIONS[stream.dist][1]
    p1, p2 = stream_parameters(stream, values)
    return sampler(rng, p1, p2)


def log_observation_weight(model, values, observation):
    """
    Sum of the log densities of all observed streams at one observation time.

    Parameters:
    - model (EpiModel): Compiled model with an observation process.
    - values (list): Value vector [t, state..., pars...].
    - observation (dict-like): Observed values keyed by stream name; missing or
      NaN entries are skipped.

    Returns:
    - float: log weight (-inf when the observation is impossible).
    """
    total = 0.0
    for stream in model.obs_process:
        value = observation.get(stream.name, np.nan)
        if value is None or np.isnan(value):
            continue
        total += obs_log_density(stream, value, values)
        if total == -np.inf:
            break
    return total


def observe_state(model, values, rng):
    """Sample every observed stream for one simulated state, returned as {stream: value}."""
    return {stream.name: obs_sample(stream, values, rng) for stream in model.obs_process}
