########################################################################
# This file contains the codes for the Particle Marginal Metropolis-Hastings
# (PMCMC) driver: a random-walk Metropolis-Hastings chain over the parameters
# whose likelihood is the unbiased estimate of the bootstrap particle filter
############################################################################

import copy
import logging
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from tqdm import tqdm

from smc import Particle_Filter, check_observed_data
from ssm_prior_draw import (check_priors, draw_theta, log_jacobian, log_prior, transform_theta,
                            untransform_theta)
from state_process import make_rng


logger = logging.getLogger(__name__)


@dataclass
class ChainState:
    """
    State of a PMCMC chain.

    - theta / loglike / log_prior: current parameters (original scale), their cached
      log-likelihood estimate and log prior density. The estimate is only replaced
      when a proposal is accepted.
    - trace / loglike_trace / accepted: history, one entry per iteration (the trace
      also holds the initial value).
    - proposal_cov: covariance of the random walk on the transformed scale.
    - adapt_n / adapt_mean / adapt_m2: running moments of the transformed chain.
    - rng_state: state of the chain's random generator, used to resume.
    """
    param_names: list
    theta: np.ndarray
    loglike: float
    log_prior: float
    proposal_cov: np.ndarray
    trace: list = field(default_factory=list)
    loglike_trace: list = field(default_factory=list)
    accepted: list = field(default_factory=list)
    adapt_n: int = 0
    adapt_mean: np.ndarray = None
    adapt_m2: np.ndarray = None
    rng_state: dict = None

    @property
    def iteration(self):
        return len(self.accepted)

    @property
    def acceptance_rate(self):
        return float(np.mean(self.accepted)) if self.accepted else np.nan

    def to_frame(self):
        frame = pd.DataFrame(np.array(self.trace), columns=self.param_names)
        frame.insert(0, 'iteration', np.arange(len(self.trace)))
        frame['logLike'] = self.loglike_trace
        frame['accepted'] = [False] + list(self.accepted)
        return frame


def window(chain, burnin=0, thin=1):
    """
    Draws retained after removing the first `burnin` iterations and keeping every
    `thin`-th iteration, as a DataFrame of parameters plus 'logLike'.
    """
    if burnin < 0 or thin < 1:
        raise ValueError("burnin must be >= 0 and thin >= 1")
    frame = chain.to_frame()
    frame = frame.iloc[burnin:].iloc[::thin]
    return frame[list(chain.param_names) + ['logLike']].reset_index(drop=True)


def _update_moments(chain, phi):
    """Welford update of the running mean / scatter matrix of the transformed chain."""
    chain.adapt_n += 1
    delta = phi - chain.adapt_mean
    chain.adapt_mean = chain.adapt_mean + delta / chain.adapt_n
    chain.adapt_m2 = chain.adapt_m2 + np.outer(delta, phi - chain.adapt_mean)


def _proposal_step(chain, rng, adapt, adapt_start, adapt_mix):
    d = len(chain.param_names)
    cov = chain.proposal_cov
    if adapt and chain.adapt_n >= adapt_start and rng.random() >= adapt_mix:
        # Adaptive component, scaled empirical covariance plus a small jitter
        empirical = chain.adapt_m2 / (chain.adapt_n - 1)
        cov = (2.38 ** 2 / d) * empirical + 1e-10 * np.eye(d)
    return rng.multivariate_normal(np.zeros(d), cov)


def PMCMC(model, observed_data, priors, initial_state, num_state_particles, niter, init_theta=None,
          fixed=False, const_pars=None, proposal_cov=None, adapt=True, adapt_start=100, adapt_mix=0.05,
          prev_chain=None, t_start=0.0, initial_aux=None, resampling_method='systematic', reset_aux=False,
          max_init_tries=100, seed=None, n_jobs=1, show_progress=True):
    """
    Run a particle marginal Metropolis-Hastings chain.

    Parameters:
    - model (EpiModel): Compiled model with an observation process.
    - observed_data (pd.DataFrame): 'time' column plus observed stream columns.
    - priors (dict): Prior information for each inferred parameter; the optional
      transform ('log' / 'logit') sets the scale of the random walk.
    - initial_state (dict-like): Initial compartment (and auxiliary) values.
    - num_state_particles (int): Particles of the particle filter.
    - niter (int): Iterations to run (added to prev_chain when resuming).
    - init_theta (dict-like): Initial parameters; drawn from the priors when None.
    - fixed (bool): Keep the parameters at their initial value and only re-estimate the
      likelihood, to study the variance of the estimator.
    - const_pars (dict): Values of model parameters that are not inferred.
    - proposal_cov (ndarray): Initial random-walk covariance (transformed scale).
    - adapt (bool): Use the adaptive mixture proposal after `adapt_start` iterations.
    - adapt_mix (float): Weight of the non-adaptive component of the mixture.
    - prev_chain (ChainState): Chain to extend.
    - t_start, initial_aux, resampling_method, reset_aux: passed to the particle filter.
    - max_init_tries (int): Prior draws tried to find a starting point with non-zero likelihood.
    - seed (int): Random seed (ignored when resuming).
    - n_jobs (int): Number of joblib workers for the particle filter.
    - show_progress (bool): Whether to show a progress bar.

    Returns:
    - ChainState
    """
    names = check_priors(priors)
    const_pars = dict(const_pars or {})
    unknown = [name for name in names if name not in model.pars]
    if unknown:
        raise ValueError(f"Priors given for parameters the model does not declare: {', '.join(unknown)}")
    missing = [name for name in model.pars if name not in names and name not in const_pars]
    if missing:
        raise ValueError(f"No prior or constant value for model parameter(s): {', '.join(missing)}")
    if adapt and adapt_start < 2:
        raise ValueError("adapt_start must be at least 2 to estimate the proposal covariance")
    if not 0 <= adapt_mix <= 1:
        raise ValueError("adapt_mix must lie in [0, 1]")
    observed_data = check_observed_data(model, observed_data, t_start)
    d = len(names)

    def estimate_loglike(theta, rng):
        pars = dict(const_pars)
        pars.update(zip(names, theta))
        PF_results = Particle_Filter(
            model, pars, initial_state, observed_data, num_state_particles, t_start=t_start,
            initial_aux=initial_aux, resampling_method=resampling_method, reset_aux=reset_aux,
            seed=int(rng.integers(2**63)), n_jobs=n_jobs
        )
        return PF_results['logLike']

    if prev_chain is not None:
        if list(prev_chain.param_names) != names:
            raise ValueError("prev_chain was produced with different parameters")
        chain = copy.deepcopy(prev_chain)
        # rebuild the same kind of bit generator the chain was run with
        bit_generator = getattr(np.random, chain.rng_state['bit_generator'])()
        bit_generator.state = chain.rng_state
        rng = np.random.Generator(bit_generator)
    else:
        rng = make_rng(seed)
        if init_theta is not None:
            theta = np.array([float(init_theta[name]) for name in names])
            lp = log_prior(priors, theta)
            if not np.isfinite(lp):
                raise ValueError("init_theta lies outside the prior support")
            ll = estimate_loglike(theta, rng)
            if not fixed and not np.isfinite(ll):
                raise ValueError("init_theta gives a zero likelihood estimate")
        elif fixed:
            raise ValueError("fixed=True needs init_theta")
        else:
            for _ in range(max_init_tries):
                theta = draw_theta(priors, rng)
                lp = log_prior(priors, theta)
                ll = estimate_loglike(theta, rng)
                if np.isfinite(ll):
                    break
            else:
                raise RuntimeError(
                    f"No prior draw with a non-zero likelihood estimate in {max_init_tries} tries; "
                    f"give init_theta or increase num_state_particles")

        if proposal_cov is None:
            proposal_cov = np.eye(d) * 0.1 ** 2 / d
        proposal_cov = np.atleast_2d(np.asarray(proposal_cov, dtype=float))
        if proposal_cov.shape != (d, d):
            raise ValueError(f"proposal_cov must be {d} x {d}")
        chain = ChainState(
            param_names=names, theta=theta, loglike=ll, log_prior=lp, proposal_cov=proposal_cov,
            trace=[theta], loglike_trace=[ll], adapt_mean=np.zeros(d), adapt_m2=np.zeros((d, d)),
        )
        _update_moments(chain, transform_theta(theta, priors))

    phi = transform_theta(chain.theta, priors)
    log_jac = log_jacobian(phi, priors)
    n_accepted = 0

    for _ in tqdm(range(niter), desc="PMCMC Progress", disable=not show_progress):
        if fixed:
            # Repeated likelihood estimates at the same parameters
            chain.loglike = estimate_loglike(chain.theta, rng)
            chain.trace.append(chain.theta)
            chain.loglike_trace.append(chain.loglike)
            chain.accepted.append(False)
            continue

        phi_proposal = phi + _proposal_step(chain, rng, adapt, adapt_start, adapt_mix)
        theta_proposal = untransform_theta(phi_proposal, priors)
        log_prior_proposal = log_prior(priors, theta_proposal)

        accept = False
        # Outside the prior support: rejected without running the filter
        if np.isfinite(log_prior_proposal):
            loglike_proposal = estimate_loglike(theta_proposal, rng)
            if np.isfinite(loglike_proposal):
                log_jac_proposal = log_jacobian(phi_proposal, priors)
                ratio = (loglike_proposal - chain.loglike
                         + log_prior_proposal + log_jac_proposal
                         - chain.log_prior - log_jac)
                accept = np.log(rng.random()) < ratio

        if accept:
            chain.theta = theta_proposal
            chain.loglike = loglike_proposal
            chain.log_prior = log_prior_proposal
            phi, log_jac = phi_proposal, log_jac_proposal
            n_accepted += 1
        # on rejection the cached likelihood estimate is kept as it is
        chain.trace.append(chain.theta)
        chain.loglike_trace.append(chain.loglike)
        chain.accepted.append(bool(accept))
        _update_moments(chain, phi)

    chain.rng_state = rng.bit_generator.state

    if not fixed:
        logger.info("PMCMC: %d iterations, acceptance rate %.3f over this run (%.3f overall)",
                    niter, n_accepted / max(niter, 1), chain.acceptance_rate)
        if niter > 0 and n_accepted == 0:
            warnings.warn("No proposal was accepted; consider a smaller proposal_cov or more particles")
    else:
        estimates = np.array(chain.loglike_trace[-niter:]) if niter else np.array([])
        finite = estimates[np.isfinite(estimates)]
        if len(finite) > 1:
            logger.info("Log-likelihood estimates at fixed parameters: mean %.3f, variance %.3f",
                        finite.mean(), finite.var(ddof=1))
    return chain
