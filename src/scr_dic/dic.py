"""Deviance Information Criterion from a coefficient chain.

    A   = sum_k logL_k(posterior mean beta_k)
    pD  = -2 * mean(trace) + 2 * A
    DIC = -2 * A + 2 * pD

Both the trace mean and the posterior means use the later half of the
chain: 1-based iterations ceil(B/2)..B.
"""
from __future__ import annotations
import math
from dataclasses import dataclass, field
from typing import Dict, Mapping, Tuple

import numpy as np

from scr_dic.data import Hazard, HAZARDS
from scr_dic.likelihood import HazardLikelihood
from scr_dic.sampler import ChainResult


@dataclass(frozen=True)
class DICValue:
    """DIC of one subset triple, with its components.

    Attributes:
        dic: Deviance information criterion (lower is better)
        p_d: Effective number of parameters
        plugin_loglik: Joint log-likelihood at the posterior-mean coefficients (A)
        mean_loglik: Mean joint log-likelihood over the post-burn-in trace
        subset_sizes: Number of coefficients per hazard
        acceptance: Metropolis acceptance rate per hazard label
        posterior_means: Post-burn-in coefficient means per hazard label
    """
    dic: float
    p_d: float
    plugin_loglik: float
    mean_loglik: float
    subset_sizes: Tuple[int, int, int]
    acceptance: Dict[str, float] = field(default_factory=dict)
    posterior_means: Dict[str, Tuple[float, ...]] = field(default_factory=dict)

    @property
    def is_finite(self) -> bool:
        return bool(np.isfinite(self.dic))


def burn_in_window(n_iter: int) -> slice:
    """Post-burn-in rows of a chain of length n_iter (0-based slice).

    Example:
        >>> burn_in_window(4)
        slice(1, 4, None)
    """
    if n_iter < 2:
        raise ValueError(f"n_iter must be >= 2, got {n_iter}")
    return slice(math.ceil(n_iter / 2) - 1, n_iter)


def posterior_means(chain: ChainResult) -> Dict[Hazard, np.ndarray]:
    """Componentwise post-burn-in mean of each present hazard's draws."""
    window = burn_in_window(chain.n_iter)
    return {hz: c.draws[window].mean(axis=0) for hz, c in chain.chains.items()}


def compute_dic(
    chain: ChainResult,
    likelihoods: Mapping[Hazard, HazardLikelihood],
) -> DICValue:
    """Compute DIC from a finished sampler run.

    Args:
        chain: Sampler output with per-hazard draws and the joint trace
        likelihoods: Log-likelihood evaluator per hazard (same subsets as chain)

    Returns:
        DICValue for the subset triple

    Example:
        >>> chain = run_sampler(rng, likelihoods, proposals, n_iter=4)
        >>> compute_dic(chain, likelihoods).dic
        812.4
    """
    window = burn_in_window(chain.n_iter)
    means = posterior_means(chain)

    plugin = float(sum(likelihoods[hz](means.get(hz)) for hz in HAZARDS))
    mean_loglik = float(np.mean(chain.trace[window]))
    p_d = -2.0 * mean_loglik + 2.0 * plugin
    dic = -2.0 * plugin + 2.0 * p_d

    return DICValue(
        dic=dic,
        p_d=p_d,
        plugin_loglik=plugin,
        mean_loglik=mean_loglik,
        subset_sizes=tuple(likelihoods[hz].n_coefficients for hz in HAZARDS),
        acceptance={hz.label: c.acceptance_rate for hz, c in chain.chains.items()},
        posterior_means={hz.label: tuple(float(v) for v in m) for hz, m in means.items()},
    )
