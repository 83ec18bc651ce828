########################################################################
# Posterior predictive simulation: for every retained parameter draw, sample
# a latent state from a final particle filter pass and simulate forward over
# a future time grid, optionally through the observation process
########################################################################

import logging
import warnings

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from tqdm import tqdm

from observation_dist import observe_state
from smc import Particle_Filter
from state_process import gillespie, seed_sequence


logger = logging.getLogger(__name__)


def _forecast_one(model, pars, initial_state, observed_data, future_times, num_state_particles, t_start,
                  initial_aux, observe, reset_aux, resampling_method, seed):
    """Forecast trajectory for one parameter draw, None when the filter gives a zero likelihood."""
    filter_ss, state_ss, sim_ss = seed_sequence(seed).spawn(3)
    ncomp = len(model.compartments)
    init = np.asarray(model.state_values(initial_state, initial_aux), dtype=float)

    if observed_data is not None:
        PF_results = Particle_Filter(
            model, pars, initial_state, observed_data, num_state_particles, t_start=t_start,
            initial_aux=initial_aux, resampling_method=resampling_method, reset_aux=reset_aux, seed=filter_ss
        )
        if PF_results['weights'] is None:
            return None
        # Sample one latent state proportionally to its final weight
        chosen = np.random.default_rng(state_ss).choice(len(PF_results['weights']), p=PF_results['weights'])
        state = PF_results['particle_state'][chosen].copy()
        t_now = PF_results['time']
    else:
        state = init.copy()
        t_now = float(t_start)

    rng = np.random.default_rng(sim_ss)
    par_values = model.par_values(pars)
    rows = []
    for t_next in future_times:
        if reset_aux and model.aux:
            state[ncomp:] = init[ncomp:]
        run = gillespie(model, par_values, state, t_start=t_now, t_end=t_next, tspan=(), rng=rng,
                        use_stop=False)
        state = np.concatenate([run.state, run.aux])
        row = {'time': t_next}
        row.update(zip(model.state_names, state))
        if observe and model.obs_process:
            row.update(observe_state(model, model.values(t_next, state, par_values), rng))
        rows.append(row)
        t_now = t_next
    return rows


def predict(model, draws, future_times, initial_state, observed_data=None, num_state_particles=100,
            t_start=0.0, initial_aux=None, const_pars=None, observe=True, reset_aux=False,
            resampling_method='systematic', seed=None, n_jobs=1, show_progress=False):
    """
    Simulate forecast trajectories, one per parameter draw.

    Parameters:
    - model (EpiModel): Compiled model.
    - draws (pd.DataFrame): Parameter draws, e.g. window(chain, burnin, thin) or
      ABCSMCState.sample(n); columns that are not model parameters are ignored.
    - future_times (array-like): Ascending forecast times, not before the last observation.
    - initial_state (dict-like): Initial state of the fit.
    - observed_data (pd.DataFrame): Observations; when given, each forecast starts from a
      state sampled from a particle filter run at the last observation time, otherwise it
      starts from initial_state at t_start.
    - num_state_particles (int): Particles of the particle filter.
    - const_pars (dict): Values of model parameters absent from draws.
    - observe (bool): Add one sampled column per observed stream.
    - reset_aux (bool): Reset auxiliaries at every forecast time (incidence counting).
    - seed (int): Random seed.
    - n_jobs (int): Number of joblib workers.

    Returns:
    - pd.DataFrame: columns 'draw', 'time', compartments, auxiliaries and observed streams.
    """
    future_times = np.atleast_1d(np.asarray(future_times, dtype=float))
    if len(future_times) == 0 or np.any(np.diff(future_times) <= 0):
        raise ValueError("future_times must be a non-empty ascending grid")
    t_first = float(observed_data['time'].iloc[-1]) if observed_data is not None else float(t_start)
    if future_times[0] < t_first:
        raise ValueError(f"future_times must not start before {t_first}")

    const_pars = dict(const_pars or {})
    pars_list = []
    for _, row in draws.iterrows():
        pars = dict(const_pars)
        pars.update({name: row[name] for name in model.pars if name in row.index})
        pars_list.append(pars)

    seeds = seed_sequence(seed).spawn(len(pars_list))
    forecasts = Parallel(n_jobs=n_jobs)(
        delayed(_forecast_one)(model, pars, initial_state, observed_data, future_times, num_state_particles,
                               t_start, initial_aux, observe, reset_aux, resampling_method, s)
        for pars, s in tqdm(list(zip(pars_list, seeds)), desc="Forecast", disable=not show_progress)
    )

    frames = []
    skipped = 0
    for i, rows in enumerate(forecasts):
        if rows is None:
            skipped += 1
            continue
        frame = pd.DataFrame(rows)
        frame.insert(0, 'draw', i)
        frames.append(frame)
    if skipped:
        warnings.warn(f"{skipped} draw(s) gave a zero likelihood estimate and were left out of the forecast")
    if not frames:
        raise ValueError("No draw could be forecast")
    logger.info("Forecast %d trajectories over %d times", len(frames), len(future_times))
    return pd.concat(frames, ignore_index=True)
