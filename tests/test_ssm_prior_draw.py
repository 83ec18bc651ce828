import numpy as np
import pytest
from scipy.stats import gamma, lognorm, norm

from ssm_prior_draw import (check_priors, draw_theta, in_support, inv_logit, log_jacobian, log_prior,
                            logit, prior_info, transform_theta, untransform_theta)


PRIORS = {
    'beta': {'prior': [0, 2, 0, 0, 'uniform', 'log']},
    'rho': {'prior': [0, 1, 0, 0, 'uniform', 'logit']},
    'sigma': {'prior': [0, 0, 0.5, 0.2, 'normal']},
    'kappa': {'prior': [2.0, 0.5, 0, 0, 'gamma', 'log']},
}


def test_prior_info_defaults_transform():
    assert prior_info(PRIORS['sigma'])[-1] == 'none'
    assert check_priors(PRIORS) == ['beta', 'rho', 'sigma', 'kappa']


@pytest.mark.parametrize('priors, message', [
    ({'a': {'prior': [0, 1, 0, 0]}}, 'Prior must be'),
    ({'a': {'prior': [0, 1, 0, 0, 'cauchy']}}, 'Unsupported distribution'),
    ({'a': {'prior': [0, 1, 0, 0, 'uniform', 'sqrt']}}, 'Unsupported transformation'),
    ({'a': {'prior': [1, 0, 0, 0, 'uniform']}}, 'lower must be below upper'),
    ({'a': {'prior': [0, 0, 0, 0, 'normal']}}, 'std must be positive'),
    ({'a': {'prior': [0, 1, 0, 0, 'gamma']}}, 'must be positive'),
    ({'a': {'prior': [0, 2, 0, 0, 'uniform', 'logit']}}, 'logit'),
    ({}, 'At least one prior'),
])
def test_check_priors_errors(priors, message):
    with pytest.raises(ValueError, match=message):
        check_priors(priors)


def test_transform_roundtrip():
    theta = np.array([0.7, 0.2, -0.3, 1.5])
    transformed = transform_theta(theta, PRIORS)
    np.testing.assert_allclose(transformed, [np.log(0.7), logit(0.2), -0.3, np.log(1.5)])
    np.testing.assert_allclose(untransform_theta(transformed, PRIORS), theta)


def test_log_jacobian():
    z = np.array([np.log(0.7), logit(0.2), -0.3, np.log(1.5)])
    expected = np.log(0.7) + np.log(0.2 * 0.8) + np.log(1.5)
    assert log_jacobian(z, PRIORS) == pytest.approx(expected)
    assert inv_logit(logit(0.2)) == pytest.approx(0.2)


def test_log_prior_density():
    theta = np.array([0.7, 0.2, -0.3, 1.5])
    expected = np.log(0.5) + 0.0 + norm.logpdf(-0.3, 0.5, 0.2) + gamma.logpdf(1.5, 2.0, scale=0.5)
    assert log_prior(PRIORS, theta) == pytest.approx(expected)


def test_lognormal_prior_is_on_log_scale():
    priors = {'a': {'prior': [0, 0, 0.1, 0.4, 'lognormal']}}
    assert log_prior(priors, [2.0]) == pytest.approx(lognorm.logpdf(2.0, 0.4, scale=np.exp(0.1)))
    assert log_prior(priors, [-1.0]) == -np.inf


def test_support():
    assert in_support(PRIORS, [0.7, 0.2, -0.3, 1.5])
    assert not in_support(PRIORS, [2.5, 0.2, -0.3, 1.5])
    assert not in_support(PRIORS, [0.7, 0.2, np.nan, 1.5])
    assert not in_support(PRIORS, [0.7, 0.2, -0.3, -1.0])


def test_draws_respect_support():
    rng = np.random.default_rng(42)
    priors = dict(PRIORS, tau={'prior': [0.0, 1.0, 0.5, 2.0, 'truncnorm']},
                  nu={'prior': [3.0, 2.0, 0, 0, 'invgamma']})
    draws = np.array([draw_theta(priors, rng) for _ in range(500)])
    assert draws.shape == (500, 6)
    assert all(in_support(priors, row) for row in draws)
    assert draws[:, 0].mean() == pytest.approx(1.0, abs=0.1)
    assert draws[:, 2].mean() == pytest.approx(0.5, abs=0.05)


def test_draws_are_reproducible():
    first = draw_theta(PRIORS, np.random.default_rng(3))
    second = draw_theta(PRIORS, np.random.default_rng(3))
    np.testing.assert_array_equal(first, second)
