import numpy as np
import pandas as pd
import pytest
from joblib import parallel_backend

from epi_model import compile_model, seir_model, sir_model
from errors import ModelRuntimeError
from state_process import COMPLETED, REJECTED, gillespie, simulate


def test_sir_scenario_is_reproducible(sir, sir_initial, sir_pars):
    first = gillespie(sir, sir_pars, sir_initial, t_end=50, rng=2024)
    second = gillespie(sir, sir_pars, sir_initial, t_end=50, rng=2024)

    assert first.status == COMPLETED
    assert first.t == 50
    assert first.n_events == second.n_events
    pd.testing.assert_frame_equal(first.trajectory, second.trajectory)
    np.testing.assert_array_equal(first.state, second.state)

    traj = first.trajectory
    assert traj['time'].tolist() == list(np.arange(0, 51, dtype=float))
    assert (traj[['S', 'I', 'R']].sum(axis=1) == 100).all()
    assert traj.iloc[0][['S', 'I', 'R']].tolist() == [99, 1, 0]


def test_sir_scenario_usually_ends_without_infectives(sir, sir_initial, sir_pars):
    runs = simulate(sir, sir_pars, sir_initial, nrep=200, t_end=50, seed=7)
    final_infectives = np.array([run.trajectory['I'].iloc[-1] for run in runs])
    assert all(run.completed for run in runs)
    assert np.mean(final_infectives == 0) > 0.6


@pytest.mark.parametrize('seed', range(20))
def test_conservation_and_event_bound(seed):
    model = seir_model(tspan=np.linspace(0, 100, 41))
    run = gillespie(model, {'beta': 0.8, 'sigma': 0.5, 'gamma': 0.3},
                    {'S': 60, 'E': 0, 'I': 3, 'R': 0}, rng=seed)
    totals = run.trajectory[['S', 'E', 'I', 'R']].sum(axis=1)
    assert (totals == 63).all()
    # each individual moves S -> E -> I -> R at most once
    assert run.n_events <= 3 * 63
    assert run.state.sum() == 63


def test_no_event_possible_completes_at_horizon(sir, sir_pars):
    run = gillespie(sir, sir_pars, {'S': 100, 'I': 0, 'R': 0}, t_start=0, t_end=50, rng=1)
    assert run.status == COMPLETED
    assert run.n_events == 0
    assert run.t == 50
    assert run.trajectory['S'].eq(100).all()


def test_stop_predicate_rejects_early(sir_initial, sir_pars):
    model = sir_model(stop='R > 20', tspan=np.arange(0, 51))
    outcomes = []
    for seed in range(40):
        stopped = gillespie(model, sir_pars, sir_initial, rng=seed)
        full = gillespie(model, sir_pars, sir_initial, rng=seed, use_stop=False)
        outcomes.append(stopped.status)
        # at most one infection and one recovery per individual, stopped or not
        assert stopped.n_events <= full.n_events <= 2 * 100
        if stopped.status == REJECTED:
            # the rejected run is the prefix of the full one: the full run exceeds the bound too
            assert stopped.state[2] == 21
            assert full.state[2] > 20
            assert stopped.t < 50
            assert stopped.trajectory['R'].isna().iloc[-1]
        else:
            assert full.state[2] <= 20
            np.testing.assert_array_equal(stopped.state, full.state)
    assert REJECTED in outcomes and COMPLETED in outcomes


def test_trajectory_holds_previous_state_between_events(sir, sir_pars):
    grid = np.linspace(0, 50, 501)
    run = gillespie(sir, sir_pars, {'S': 95, 'I': 5, 'R': 0}, tspan=grid, rng=3)
    traj = run.trajectory
    assert len(traj) == len(grid)
    # S can only decrease and R only increase, by at most the number of events
    assert (np.diff(traj['S']) <= 0).all()
    assert (np.diff(traj['R']) >= 0).all()
    assert traj['S'].iloc[-1] == run.state[0]


def test_time_varying_rate_evaluated_at_events():
    # transmission switched off at t = 5: once an event happens after t = 5 the
    # rate is zero, so at most one infection can land after the switch
    model = compile_model(
        compartments=['S', 'I', 'R'],
        transitions=['S + I -> Piecewise((beta, t < 5), (0, True))*S*I/(S+I+R) -> 2*I + cases',
                     'I -> gamma*I -> R'],
        pars=['beta', 'gamma'],
        aux=['cases'],
        tspan=np.arange(0, 31),
    )
    for seed in range(20):
        run = gillespie(model, {'beta': 2.0, 'gamma': 0.1}, {'S': 95, 'I': 5, 'R': 0}, rng=seed)
        cases = run.trajectory['cases'].to_numpy()
        assert cases[-1] - cases[5] <= 1


def test_negative_propensity_names_the_transition():
    model = compile_model(['S', 'I'], ['S -> beta - 1 -> I'], ['beta'])
    with pytest.raises(ModelRuntimeError, match='S -> beta - 1 -> I'):
        gillespie(model, {'beta': 0.5}, {'S': 10, 'I': 0}, t_end=10, rng=0)


def test_infeasible_transition_does_not_fire():
    # a constant rate would drain S below zero without the source check
    model = compile_model(['S', 'I'], ['S -> 5 -> I'], ['beta'])
    run = gillespie(model, {'beta': 0.0}, {'S': 3, 'I': 0}, t_end=100, rng=0)
    assert run.state.tolist() == [0, 3]
    assert run.n_events == 3


def test_missing_horizon():
    model = sir_model()
    with pytest.raises(ValueError, match='t_end'):
        gillespie(model, {'beta': 0.5, 'gamma': 0.25}, {'S': 9, 'I': 1, 'R': 0})


def test_simulate_independent_of_n_jobs(sir, sir_initial, sir_pars):
    serial = simulate(sir, sir_pars, sir_initial, nrep=6, t_end=50, seed=11)
    with parallel_backend('threading'):
        parallel = simulate(sir, sir_pars, sir_initial, nrep=6, t_end=50, seed=11, n_jobs=2)
    for a, b in zip(serial, parallel):
        pd.testing.assert_frame_equal(a.trajectory, b.trajectory)
    # substreams differ between runs
    assert len({tuple(run.trajectory['R']) for run in serial}) > 1
