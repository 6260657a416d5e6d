"""Metropolis-within-Gibbs sampler for hazard regression coefficients.

Coefficients of each hazard are updated one coordinate at a time. The
candidate for coordinate m is drawn from the Gaussian conditional of the
prior N(0, c (X'X)^-1) given the other coordinates, so the proposal does not
depend on the current value of coordinate m (an independence proposal).
Baseline hazards and frailties stay fixed throughout.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Tuple

import numpy as np
from scipy.stats import norm

from scr_dic.data import Hazard, HAZARDS
from scr_dic.likelihood import HazardLikelihood

logger = logging.getLogger("scr_dic.sampler")


class SingularDesignError(np.linalg.LinAlgError):
    """The cross-product matrix of a selected covariate subset is not invertible."""


def prior_covariance(design: np.ndarray, c: float) -> np.ndarray:
    """Prior covariance c * (X'X)^-1 of the coefficients of one subset.

    Args:
        design: Covariate matrix restricted to the selected columns, shape (n, p)
        c: Positive scale hyperparameter

    Returns:
        Symmetric (p, p) covariance matrix; (0, 0) for an empty subset

    Raises:
        SingularDesignError: If X does not have full column rank
    """
    X = np.asarray(design, dtype=float)
    p = X.shape[1]
    if p == 0:
        return np.empty((0, 0))

    rank = np.linalg.matrix_rank(X)
    if rank < p:
        raise SingularDesignError(
            f"Design matrix with {p} columns has rank {rank}; X'X is singular"
        )
    try:
        sigma = c * np.linalg.inv(X.T @ X)
    except np.linalg.LinAlgError as e:
        raise SingularDesignError(f"X'X could not be inverted: {e}") from e

    return 0.5 * (sigma + sigma.T)


class ConditionalProposal:
    """Gaussian full conditionals of a fixed prior covariance.

    For p > 1 the conditional of coordinate m given the others has

        mean = S[m, -m] S[-m, -m]^-1 theta[-m]
        var  = S[m, m] - S[m, -m] S[-m, -m]^-1 S[-m, m]

    The regression weights and standard deviations only depend on the
    covariance, so they are computed once per subset. For p == 1 the
    proposal is N(0, S[0, 0]).

    Args:
        sigma: Prior covariance matrix, shape (p, p)
    """

    def __init__(self, sigma: np.ndarray):
        self.sigma = np.asarray(sigma, dtype=float)
        p = self.sigma.shape[0]
        self.others: List[np.ndarray] = []
        self.weights: List[np.ndarray] = []
        self.sd = np.empty(p)

        for m in range(p):
            others = np.flatnonzero(np.arange(p) != m)
            if others.size == 0:
                weights = np.empty(0)
                var = self.sigma[m, m]
            else:
                V12 = self.sigma[m, others]
                weights = np.linalg.solve(self.sigma[np.ix_(others, others)], V12)
                var = self.sigma[m, m] - V12 @ weights
            if not np.isfinite(var) or var <= 0:
                raise SingularDesignError(
                    f"Conditional prior variance of coordinate {m} is {var}"
                )
            self.others.append(others)
            self.weights.append(weights)
            self.sd[m] = np.sqrt(var)

    @property
    def dim(self) -> int:
        return int(self.sd.size)

    def moments(self, m: int, theta: np.ndarray) -> Tuple[float, float]:
        """Proposal mean and standard deviation for coordinate m."""
        if self.weights[m].size == 0:
            return 0.0, float(self.sd[m])
        return float(self.weights[m] @ theta[self.others[m]]), float(self.sd[m])


def metropolis_update(
    rng: np.random.Generator,
    likelihood: HazardLikelihood,
    proposal: ConditionalProposal,
    beta: np.ndarray,
    m: int,
    current_loglik: float,
) -> Tuple[bool, float]:
    """Propose and accept/reject a new value for coordinate m in place.

    The log acceptance ratio is

        logL(new) - logL(old) + log q(new) - log q(old)

    with q the conditional proposal density. Only coordinate m changes; on
    rejection it reverts to its previous value.

    Args:
        rng: Random generator owned by the current grid cell
        likelihood: Hazard log-likelihood evaluator
        proposal: Conditional proposal for this subset
        beta: Current coefficient vector, modified in place
        m: Coordinate to update
        current_loglik: logL(beta) before the update

    Returns:
        Tuple of (accepted, log-likelihood of beta after the step)
    """
    mean, sd = proposal.moments(m, beta)
    old = beta[m]
    new = rng.normal(mean, sd)

    beta[m] = new
    new_loglik = likelihood(beta)
    alpha = (
        new_loglik - current_loglik
        + norm.logpdf(new, mean, sd) - norm.logpdf(old, mean, sd)
    )

    if np.log(rng.uniform(0.0, 1.0)) <= alpha:
        return True, new_loglik

    # NaN alpha (overflow in exp) ends up here as well
    beta[m] = old
    return False, current_loglik


@dataclass
class CoefficientChain:
    """Draws of one hazard's coefficients.

    Attributes:
        hazard: Hazard component
        draws: Coefficient draws, shape (B, p); row 0 is the zero start
        accepted: Acceptance indicators, shape (B, p); row 0 is unused
    """
    hazard: Hazard
    draws: np.ndarray
    accepted: np.ndarray

    @property
    def acceptance_rate(self) -> float:
        if self.accepted.shape[0] < 2 or self.accepted.shape[1] == 0:
            return float("nan")
        return float(self.accepted[1:].mean())


@dataclass
class ChainResult:
    """Output of one sampler run for a subset triple.

    Attributes:
        chains: Coefficient chains of the hazards with a regression term
        trace: Joint log-likelihood per iteration, shape (B,)
    """
    chains: Dict[Hazard, CoefficientChain]
    trace: np.ndarray

    @property
    def n_iter(self) -> int:
        return int(self.trace.size)


def run_sampler(
    rng: np.random.Generator,
    likelihoods: Mapping[Hazard, HazardLikelihood],
    proposals: Mapping[Hazard, ConditionalProposal],
    n_iter: int,
) -> ChainResult:
    """Run B iterations of the systematic-scan coefficient sampler.

    All coefficients start at zero. Each iteration copies the previous draw,
    sweeps the coordinates of hazard 1, then 2, then 3, and records the
    summed log-likelihood of the three hazards. Hazards without a regression
    term have no chain and add their constant baseline term to the trace.

    Args:
        rng: Random generator owned by the current grid cell
        likelihoods: Log-likelihood evaluator per hazard
        proposals: Conditional proposal per hazard with a regression term
        n_iter: Number of iterations B (>= 2)

    Returns:
        ChainResult with per-hazard chains and the joint log-likelihood trace
    """
    if n_iter < 2:
        raise ValueError(f"n_iter must be >= 2, got {n_iter}")

    present = [hz for hz in HAZARDS if likelihoods[hz].n_coefficients > 0]
    absent_loglik = sum(likelihoods[hz].baseline_loglik for hz in HAZARDS if hz not in present)

    chains = {
        hz: CoefficientChain(
            hazard=hz,
            draws=np.zeros((n_iter, likelihoods[hz].n_coefficients)),
            accepted=np.zeros((n_iter, likelihoods[hz].n_coefficients), dtype=np.int8),
        )
        for hz in present
    }
    current = {hz: likelihoods[hz](chains[hz].draws[0]) for hz in present}

    trace = np.empty(n_iter)
    trace[0] = absent_loglik + sum(current.values())

    for b in range(1, n_iter):
        for hz in present:
            chain = chains[hz]
            beta = chain.draws[b - 1].copy()
            loglik = current[hz]
            for m in range(beta.size):
                accepted, loglik = metropolis_update(
                    rng, likelihoods[hz], proposals[hz], beta, m, loglik
                )
                chain.accepted[b, m] = accepted
            chain.draws[b] = beta
            current[hz] = loglik

        trace[b] = absent_loglik + sum(current.values())

    if logger.isEnabledFor(logging.DEBUG):
        rates = ", ".join(f"{hz.label}={chains[hz].acceptance_rate:.2f}" for hz in present)
        logger.debug(f"Sampler finished {n_iter} iterations | acceptance {rates or 'n/a'}")

    return ChainResult(chains=chains, trace=trace)
