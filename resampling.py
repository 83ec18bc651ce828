import numpy as np


def resampling_style(weights, name_method, rng=None):
    """ Performs resampling algorithms used by particle filters based on the chosen method.

    Parameters
    ----------
    weights : list-like of float
        Normalized weights (summing to one).
    name_method : str
        Name of the resampling method to be used. Should be one of: 'residual', 'stratified', 'systematic', 'multinomial'.
    rng : np.random.Generator, optional
        Random stream used for the draws.

    Returns
    -------
    indexes : ndarray of ints
        Array of indexes into the weights defining the resample. i.e. the index of the zeroth resample is indexes[0], etc.

    Raises
    ------
    ValueError
        If the specified resampling method is not recognized or the weights are not a distribution.

    References
    ----------
        Copyright 2015 Roger R Labbe Jr.
        FilterPy library.
        http://github.com/rlabbe/filterpy

    """
    if rng is None:
        rng = np.random.default_rng()
    weights = np.asarray(weights, dtype=float)
    N = len(weights)
    if N == 0 or np.any(weights < 0) or not np.isclose(np.sum(weights), 1.0):
        raise ValueError("Resampling needs non-negative weights summing to one")

    if name_method == 'residual':
        # take int(N*w) copies of each weight, which ensures particles with the
        # same weight are drawn uniformly
        num_copies = np.floor(N * weights).astype(int)
        indexes = np.repeat(np.arange(N), num_copies)
        k = len(indexes)
        if k == N:
            return indexes

        # use multinormal resample on the residual to fill up the rest. This
        # maximizes the variance of the samples
        residual = N * weights - num_copies  # get fractional part
        residual /= np.sum(residual)  # normalize
        cumulative_sum = np.cumsum(residual)
        cumulative_sum[-1] = 1.  # avoid round-off errors: ensures sum is exactly one
        return np.concatenate([indexes, np.searchsorted(cumulative_sum, rng.random(N - k), side='right')])

    elif name_method == 'stratified':
        # make N subdivisions, and chose a random position within each one
        positions = (rng.random(N) + np.arange(N)) / N

    elif name_method == 'systematic':
        # make N subdivisions, and choose positions with a consistent random offset
        positions = (rng.random() + np.arange(N)) / N

    elif name_method == 'multinomial':
        positions = rng.random(N)

    else:
        raise ValueError("Unknown resampling method. Please choose one of: 'residual', 'stratified', 'systematic', 'multinomial'.")

    cumulative_sum = np.cumsum(weights)
    cumulative_sum[-1] = 1.  # avoid round-off errors: ensures sum is exactly one
    return np.searchsorted(cumulative_sum, positions, side='right')
