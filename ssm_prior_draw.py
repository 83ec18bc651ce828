########################################################################################
# This file contains code to handle prior distributions: drawing parameter particles,
# evaluating prior densities and support, and transforming constrained parameters
# (log / logit) for random-walk proposals.
#
# Priors are given as a dictionary, one entry per parameter:
#     {'beta': {'prior': [lower, upper, mean, std, distribution, transform]}}
# where transform ('none', 'log', 'logit') is optional.
##########################################################################################


import numpy as np
from scipy.stats import gamma, invgamma, lognorm, norm, truncnorm, uniform


DISTRIBUTIONS = ('uniform', 'normal', 'truncnorm', 'lognormal', 'gamma', 'invgamma')
TRANSFORMS = ('none', 'log', 'logit')


def prior_info(info):
    """Unpack one prior entry into (lower, upper, mean, std, distribution, transform)."""
    entry = list(info['prior'])
    if len(entry) == 5:
        entry.append('none')
    if len(entry) != 6:
        raise ValueError(f"Prior must be [lower, upper, mean, std, distribution(, transform)], got {entry}")
    lower, upper, mean, std, distribution, trans = entry
    trans = 'none' if trans is None else trans
    if distribution not in DISTRIBUTIONS:
        raise ValueError(f"Unsupported distribution type: {distribution}")
    if trans not in TRANSFORMS:
        raise ValueError(f"Unsupported transformation: {trans}")
    return lower, upper, mean, std, distribution, trans


def check_priors(priors):
    """Validate a priors dictionary and return the parameter names in order."""
    if not priors:
        raise ValueError("At least one prior is required")
    for name, info in priors.items():
        lower, upper, mean, std, distribution, trans = prior_info(info)
        if distribution in ('uniform', 'truncnorm') and not lower < upper:
            raise ValueError(f"Prior of '{name}': lower must be below upper")
        if distribution in ('normal', 'truncnorm', 'lognormal') and not std > 0:
            raise ValueError(f"Prior of '{name}': std must be positive")
        if distribution in ('gamma', 'invgamma') and not (lower > 0 and upper > 0):
            raise ValueError(f"Prior of '{name}': shape (lower) and scale (upper) must be positive")
        if trans == 'logit' and (distribution != 'uniform' or lower < 0 or upper > 1):
            raise ValueError(f"Prior of '{name}': logit transform needs a uniform prior within [0, 1]")
    return list(priors.keys())


#################################################################################
###### Function to transform/ untransform constrain parametres #####################

# Define the logit and inverse logit functions
def logit(x):
    return np.log(x / (1 - x))

def inv_logit(x):
    return 1 / (1 + np.exp(-x))

def transform_theta(theta, priors):
    """
    Apply transformations (log, logit, or none) to theta parameters.

    Parameters:
    - theta: Array of parameter values.
    - priors: Dictionary containing prior information and transformation details.

    Returns:
    - transformed_theta: Array of transformed parameter values.
    """
    theta = np.asarray(theta, dtype=float)
    transformed_theta = np.zeros_like(theta)

    with np.errstate(divide='ignore', invalid='ignore'):
        for i, info in enumerate(priors.values()):
            trans = prior_info(info)[-1]
            if trans == 'log':
                transformed_theta[i] = np.log(theta[i])
            elif trans == 'logit':
                transformed_theta[i] = logit(theta[i])
            else:
                transformed_theta[i] = theta[i]  # No transformation

    return transformed_theta

def untransform_theta(theta, priors):
    """
    Reverse transformations (log, logit, or none) to return theta parameters to their original scale.
    """
    theta = np.asarray(theta, dtype=float)
    untransformed_theta = np.zeros_like(theta)

    with np.errstate(over='ignore'):
        for i, info in enumerate(priors.values()):
            trans = prior_info(info)[-1]
            if trans == 'log':
                untransformed_theta[i] = np.exp(theta[i])
            elif trans == 'logit':
                untransformed_theta[i] = inv_logit(theta[i])
            else:
                untransformed_theta[i] = theta[i]

    return untransformed_theta


def log_jacobian(theta_transformed, priors):
    """
    Log absolute Jacobian of the map from the transformed to the original scale,
    summed over parameters. Adding it to the log prior gives the prior density of
    the transformed parameters.
    """
    total = 0.0
    for value, info in zip(np.asarray(theta_transformed, dtype=float), priors.values()):
        trans = prior_info(info)[-1]
        if trans == 'log':
            total += value
        elif trans == 'logit':
            p = inv_logit(value)
            total += np.log(p) + np.log1p(-p)
    return total


def draw_value(lower, upper, mean, std, distribution, rng):
    """
    Draw a random value from a specified distribution.

    Parameters:
    - lower (float): Lower bound for uniform and truncnorm, shape for gamma and invgamma.
    - upper (float): Upper bound for uniform and truncnorm, scale for gamma and invgamma.
    - mean (float): Mean for normal, truncnorm and (log scale) lognormal distributions.
    - std (float): Standard deviation for normal, truncnorm and (log scale) lognormal distributions.
    - distribution (str): Type of distribution ('uniform', 'normal', 'lognormal', 'gamma', 'invgamma', 'truncnorm').
    - rng (np.random.Generator): Random stream.

    Returns:
    - value (float): Drawn value from the specified distribution.
    """
    if distribution == 'uniform':
        return rng.uniform(lower, upper)
    elif distribution == 'normal':
        return rng.normal(mean, std)
    elif distribution == 'lognormal':
        return rng.lognormal(mean, std)
    elif distribution == 'gamma':
        return gamma.rvs(lower, scale=upper, random_state=rng)
    elif distribution == 'invgamma':
        return invgamma.rvs(lower, scale=upper, random_state=rng)
    elif distribution == 'truncnorm':
        a, b = (lower - mean) / std, (upper - mean) / std
        return truncnorm.rvs(a, b, loc=mean, scale=std, random_state=rng)
    else:
        raise ValueError("Invalid distribution type")


def draw_theta(priors, rng):
    """Draw one parameter vector (original scale) from the priors."""
    return np.array([draw_value(*prior_info(info)[:5], rng) for info in priors.values()])


def log_prior_value(value, lower, upper, mean, std, distribution):
    if distribution == 'uniform':
        return uniform.logpdf(value, loc=lower, scale=upper - lower)
    elif distribution == 'normal':
        return norm.logpdf(value, loc=mean, scale=std)
    elif distribution == 'truncnorm':
        a, b = (lower - mean) / std, (upper - mean) / std
        return truncnorm.logpdf(value, a, b, loc=mean, scale=std)
    elif distribution == 'lognormal':
        return lognorm.logpdf(value, std, scale=np.exp(mean))
    elif distribution == 'gamma':
        return gamma.logpdf(value, lower, scale=upper)
    elif distribution == 'invgamma':
        return invgamma.logpdf(value, lower, scale=upper)
    else:
        raise ValueError(f"Unsupported distribution type: {distribution}")


##################################################################
############ Log Prior ###########################################

def log_prior(priors, theta):
    """
    Compute the log of the prior density of the given parameters (original scale).

    Parameters:
    - priors (dict): Dictionary containing prior information for each parameter.
    - theta (np.array): Parameter values in the order of the priors dictionary.

    Returns:
    - total_log_prior (float): Sum of the log densities, -inf outside the support.
    """
    total_log_prior = 0.0
    for value, info in zip(np.asarray(theta, dtype=float), priors.values()):
        if not np.isfinite(value):
            return -np.inf
        total_log_prior += log_prior_value(value, *prior_info(info)[:5])
        if total_log_prior == -np.inf:
            break
    if np.isnan(total_log_prior):
        return -np.inf
    return float(total_log_prior)


def in_support(priors, theta):
    return np.isfinite(log_prior(priors, theta))
