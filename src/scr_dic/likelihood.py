"""Partial log-likelihood of one hazard component.

One evaluator covers all three hazards of the semi-competing-risks model;
the hazards differ only in risk set, event indicator and exposure time:

    hazard 1: all subjects,     event I1,         time Y1
    hazard 2: subjects I1 = 0,  event I2*(1-I1),  time Y2
    hazard 3: subjects I1 = 1,  event I2*I1,      time Y2 - Y1

For coefficients beta the contribution is

    sum_i d_i * eta_i - sum_i w_i * exp(eta_i) * sum_j D_ij * exp(lam_j)

with eta = X beta, w the frailties and D_ij the exposure of subject i in
baseline interval j.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

import numpy as np

from scr_dic.data import BaselineHazard, Hazard, HAZARDS, SubjectData


@dataclass(frozen=True)
class HazardComponent:
    """Risk set, event indicator and exposure time of one hazard.

    Attributes:
        hazard: Which hazard component this is
        risk_set: Boolean mask over subjects, shape (n,)
        events: Event indicator restricted to the risk set
        times: Exposure time restricted to the risk set
        frailty: Frailties restricted to the risk set
    """
    hazard: Hazard
    risk_set: np.ndarray
    events: np.ndarray
    times: np.ndarray
    frailty: np.ndarray


def hazard_component(subjects: SubjectData, hazard: Hazard) -> HazardComponent:
    """Build the risk set and event definition for one hazard."""
    i1, i2 = subjects.i1, subjects.i2

    if hazard is Hazard.NON_TERMINAL:
        mask = np.ones(subjects.n_subjects, dtype=bool)
        events = i1
        times = subjects.y1
    elif hazard is Hazard.TERMINAL_ONLY:
        mask = i1 == 0
        events = i2 * (1 - i1)
        times = subjects.y2
    elif hazard is Hazard.TERMINAL_AFTER:
        mask = i1 == 1
        events = i2 * i1
        times = subjects.y2 - subjects.y1
    else:
        raise ValueError(f"Unknown hazard: {hazard!r}")

    return HazardComponent(
        hazard=hazard,
        risk_set=mask,
        events=np.asarray(events[mask], dtype=float),
        times=np.maximum(np.asarray(times[mask], dtype=float), 0.0),
        frailty=np.asarray(subjects.frailty[mask], dtype=float),
    )


class HazardLikelihood:
    """Log partial likelihood of one hazard for a fixed covariate subset.

    The baseline part does not depend on the coefficients, so the frailty
    weighted cumulative baseline hazard of every subject in the risk set is
    computed once at construction.

    Args:
        component: Risk set / event / time definition of the hazard
        baseline: Fixed piecewise baseline hazard
        design: Covariate matrix over all subjects restricted to the selected
            columns, shape (n, p). None or zero columns means the hazard has no
            regression term.

    Example:
        >>> comp = hazard_component(subjects, Hazard.NON_TERMINAL)
        >>> lik = HazardLikelihood(comp, baselines[Hazard.NON_TERMINAL], X[:, [0, 2]])
        >>> lik(np.zeros(2)) == lik.baseline_loglik
        True
    """

    def __init__(
        self,
        component: HazardComponent,
        baseline: BaselineHazard,
        design: Optional[np.ndarray] = None,
    ):
        self.component = component
        self.baseline = baseline
        if design is None:
            design = np.empty((component.risk_set.size, 0))
        self.design = np.asarray(design, dtype=float)[component.risk_set]
        self.weighted_cumhaz = component.frailty * baseline.cumulative_hazard(component.times)
        self.baseline_loglik = float(-np.sum(self.weighted_cumhaz))

    @property
    def hazard(self) -> Hazard:
        return self.component.hazard

    @property
    def n_coefficients(self) -> int:
        return int(self.design.shape[1])

    def __call__(self, beta: Optional[np.ndarray] = None) -> float:
        """Evaluate log L(beta); with no regression term beta is ignored."""
        if self.n_coefficients == 0:
            return self.baseline_loglik
        beta = np.atleast_1d(np.asarray(beta, dtype=float))
        if beta.shape[0] != self.n_coefficients:
            raise ValueError(
                f"{self.hazard.label}: expected {self.n_coefficients} coefficients, "
                f"got {beta.shape[0]}"
            )
        eta = self.design @ beta
        return float(
            np.dot(self.component.events, eta)
            - np.dot(self.weighted_cumhaz, np.exp(eta))
        )


def build_likelihoods(
    subjects: SubjectData,
    baselines: Mapping[Hazard, BaselineHazard],
    subsets: Mapping[Hazard, np.ndarray],
) -> Dict[Hazard, HazardLikelihood]:
    """Build one evaluator per hazard for the given covariate subsets.

    Args:
        subjects: Subject records
        baselines: Baseline hazard per hazard component
        subsets: Selected covariate column indices per hazard (may be empty)

    Returns:
        Dictionary mapping each hazard to its HazardLikelihood
    """
    return {
        hz: HazardLikelihood(
            hazard_component(subjects, hz),
            baselines[hz],
            subjects.covariates[:, np.asarray(subsets[hz], dtype=int)],
        )
        for hz in HAZARDS
    }


def joint_loglik(
    likelihoods: Mapping[Hazard, HazardLikelihood],
    betas: Mapping[Hazard, Optional[np.ndarray]],
) -> float:
    """Sum of the three hazard log-likelihoods."""
    return float(sum(lik(betas.get(hz)) for hz, lik in likelihoods.items()))
