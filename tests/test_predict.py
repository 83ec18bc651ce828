import numpy as np
import pandas as pd
import pytest

from conftest import DEATH_X0
from epi_model import compile_model
from pmmh import PMCMC, window
from predict import predict


def test_forecast_from_chain_draws(death_model, death_observations):
    chain = PMCMC(death_model, death_observations, {'mu': {'prior': [0, 1, 0, 0, 'uniform']}},
                  {'X': DEATH_X0}, num_state_particles=50, niter=30, init_theta={'mu': 0.1},
                  proposal_cov=[[0.03 ** 2]], seed=5, show_progress=False)
    draws = window(chain, burnin=10, thin=2)
    forecast = predict(death_model, draws, [3.0, 4.0, 6.0], {'X': DEATH_X0},
                       observed_data=death_observations, num_state_particles=50, seed=8)

    assert list(forecast.columns) == ['draw', 'time', 'X', 'Xobs']
    assert len(forecast) == len(draws) * 3
    # every forecast starts from a state compatible with the last observation
    assert (forecast.loc[forecast['time'] == 3.0, 'X'] == 15).all()
    for _, trajectory in forecast.groupby('draw'):
        assert (np.diff(trajectory['X']) <= 0).all()
    # exact observation process
    assert (forecast['Xobs'] == forecast['X']).all()


def test_forecast_is_reproducible(death_model, death_observations):
    draws = pd.DataFrame({'mu': [0.08, 0.1, 0.12]})
    first = predict(death_model, draws, [4.0, 5.0], {'X': DEATH_X0}, observed_data=death_observations, seed=1)
    second = predict(death_model, draws, [4.0, 5.0], {'X': DEATH_X0}, observed_data=death_observations, seed=1)
    pd.testing.assert_frame_equal(first, second)


def test_forecast_without_observations():
    model = compile_model(
        compartments=['S', 'I', 'R'],
        transitions=['S + I -> beta*S*I/(S+I+R) -> 2*I + cases', 'I -> gamma*I -> R'],
        pars=['beta', 'gamma', 'rho'],
        aux=['cases'],
        obs_process=[{'stream': 'reported', 'dist': 'binomial', 'p1': 'cases', 'p2': 'rho'}],
    )
    model_pars = pd.DataFrame({'beta': [0.4, 0.6], 'gamma': [0.2, 0.2], 'weight': [0.5, 0.5]})
    forecast = predict(model, model_pars, np.arange(1.0, 11.0), {'S': 95, 'I': 5, 'R': 0},
                       const_pars={'rho': 0.5}, reset_aux=True, seed=2)
    assert list(forecast.columns) == ['draw', 'time', 'S', 'I', 'R', 'cases', 'reported']
    assert forecast['draw'].unique().tolist() == [0, 1]
    assert ((forecast[['S', 'I', 'R']].sum(axis=1)) == 100).all()
    assert (forecast['reported'] <= forecast['cases']).all()


def test_observation_columns_can_be_left_out(death_model):
    forecast = predict(death_model, pd.DataFrame({'mu': [0.1]}), [1.0, 2.0], {'X': DEATH_X0},
                       observe=False, seed=0)
    assert list(forecast.columns) == ['draw', 'time', 'X']


def test_zero_likelihood_draws_are_skipped(death_model, death_observations):
    draws = pd.DataFrame({'mu': [0.1, 5.0]})
    with pytest.warns(UserWarning, match='zero likelihood'):
        forecast = predict(death_model, draws, [4.0], {'X': DEATH_X0}, observed_data=death_observations,
                           num_state_particles=60, seed=3)
    assert forecast['draw'].tolist() == [0]


@pytest.mark.parametrize('future_times, message', [
    ([2.0, 4.0], 'must not start before'),
    ([5.0, 4.0], 'ascending'),
    ([], 'ascending'),
])
def test_future_times_are_checked(death_model, death_observations, future_times, message):
    with pytest.raises(ValueError, match=message):
        predict(death_model, pd.DataFrame({'mu': [0.1]}), future_times, {'X': DEATH_X0},
                observed_data=death_observations)
