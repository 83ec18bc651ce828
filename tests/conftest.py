import numpy as np
import pandas as pd
import pytest
from scipy.stats import binom

from epi_model import compile_model, sir_model


# Pure death process X -> 0 at rate mu*X, observed exactly: X(t) given X(s) is
# Binomial(X(s), exp(-mu (t - s))), which gives a closed-form likelihood.
DEATH_X0 = 20
DEATH_OBS = pd.DataFrame({'time': [1.0, 2.0, 3.0], 'Xobs': [18, 16, 15]})


def death_loglike(mu, observed=DEATH_OBS, x0=DEATH_X0):
    previous, t_prev, total = x0, 0.0, 0.0
    for t, x in zip(observed['time'], observed['Xobs']):
        total += binom.logpmf(x, previous, np.exp(-mu * (t - t_prev)))
        previous, t_prev = x, t
    return total


@pytest.fixture
def death_model():
    return compile_model(
        compartments=['X'],
        transitions=['X -> mu*X -> 0'],
        pars=['mu'],
        obs_process=[{'stream': 'Xobs', 'dist': 'binomial', 'p1': 'X', 'p2': '1'}],
    )


@pytest.fixture
def death_observations():
    return DEATH_OBS.copy()


@pytest.fixture
def sir():
    return sir_model(tspan=np.arange(0, 51))


@pytest.fixture
def sir_initial():
    return {'S': 99, 'I': 1, 'R': 0}


@pytest.fixture
def sir_pars():
    return {'beta': 0.5, 'gamma': 0.25}
