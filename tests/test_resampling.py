import numpy as np
import pytest

from resampling import resampling_style


METHODS = ['residual', 'stratified', 'systematic', 'multinomial']


@pytest.mark.parametrize('method', METHODS)
def test_indexes_are_valid(method):
    rng = np.random.default_rng(0)
    weights = rng.random(50)
    weights /= weights.sum()
    indexes = resampling_style(weights, method, rng=rng)
    assert len(indexes) == 50
    assert indexes.min() >= 0 and indexes.max() < 50


@pytest.mark.parametrize('method', METHODS)
def test_zero_weight_is_never_drawn(method):
    weights = np.array([0.0, 0.5, 0.0, 0.5, 0.0])
    for seed in range(20):
        indexes = resampling_style(weights, method, rng=np.random.default_rng(seed))
        assert set(indexes) <= {1, 3}


@pytest.mark.parametrize('method', METHODS)
def test_degenerate_weights(method):
    weights = np.zeros(10)
    weights[4] = 1.0
    indexes = resampling_style(weights, method, rng=np.random.default_rng(1))
    assert (indexes == 4).all()


def test_systematic_keeps_proportions():
    weights = np.array([0.25, 0.25, 0.5])
    indexes = resampling_style(weights, 'systematic', rng=np.random.default_rng(3))
    counts = np.bincount(indexes, minlength=3)
    # systematic resampling is within one copy of N * w
    assert np.all(np.abs(counts - 3 * weights) < 1)


def test_residual_takes_integer_copies():
    weights = np.array([0.5, 0.3, 0.2])
    indexes = resampling_style(weights, 'residual', rng=np.random.default_rng(4))
    counts = np.bincount(indexes, minlength=3)
    assert len(indexes) == 3
    assert counts[0] >= 1


def test_unknown_method():
    with pytest.raises(ValueError, match='Unknown resampling method'):
        resampling_style([0.5, 0.5], 'bogus')


@pytest.mark.parametrize('weights', [[0.2, 0.2], [-0.5, 1.5], []])
def test_weights_must_be_a_distribution(weights):
    with pytest.raises(ValueError, match='summing to one'):
        resampling_style(weights, 'systematic')
