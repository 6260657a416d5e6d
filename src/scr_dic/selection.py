"""Covariate-subset selection and the skip plan of the threshold grid.

The skip decision depends only on the inclusion probabilities and the
threshold values, so the whole grid is planned before any sampler runs.
The plan records, for every cell, whether a DIC value is produced, which
evaluated cell holds the value for the same subset triple, and which unique
subset triples actually need a sampler run.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np

from scr_dic.data import Hazard, HAZARDS

logger = logging.getLogger("scr_dic.selection")

CellIndex = Tuple[int, int, int]
SubsetKey = Tuple[int, ...]
TripleKey = Tuple[SubsetKey, SubsetKey, SubsetKey]


class SkipPolicy(str, Enum):
    """How the controller decides that a grid cell needs no new sampler run.

    Attributes:
        LEGACY: Compare the number of selected covariates with the count last
            evaluated on the same axis (slice / row / cell). Two different
            subsets of equal size count as unchanged.
        EXACT: Skip only when the actual subset (pair, triple) was already
            evaluated.
    """
    LEGACY = "legacy"
    EXACT = "exact"


def threshold_grid(start: float = 0.05, stop: float = 0.90, step: float = 0.05) -> np.ndarray:
    """Ordered threshold values from start to stop inclusive.

    Values are rounded to 10 decimals so that e.g. 0.15 compares as 0.15
    against inclusion probabilities.

    Example:
        >>> threshold_grid().size
        18
    """
    if step <= 0:
        raise ValueError(f"step must be positive, got {step}")
    if stop < start:
        raise ValueError(f"stop ({stop}) must not be below start ({start})")
    n = int(np.floor((stop - start) / step + 1e-9)) + 1
    return np.round(start + step * np.arange(n), 10)


def always_included_columns(n_columns: int, inc: int) -> np.ndarray:
    """Indices of the trailing `inc` covariates that skip thresholding."""
    return np.arange(n_columns - inc, n_columns, dtype=int)


def select_covariates(
    probabilities: np.ndarray,
    threshold: float,
    always_included: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Select covariate columns whose inclusion probability exceeds a threshold.

    Args:
        probabilities: Inclusion probability per selectable covariate
        threshold: Threshold tau; a covariate is selected when P > tau
        always_included: Column indices appended regardless of tau

    Returns:
        Ascending array of unique column indices

    Example:
        >>> select_covariates(np.array([0.2, 0.7, 0.9]), 0.5, np.array([3, 4]))
        array([1, 2, 3, 4])
    """
    probabilities = np.asarray(probabilities, dtype=float)
    selected = np.flatnonzero(probabilities > threshold)
    if always_included is not None and len(always_included):
        selected = np.union1d(selected, np.asarray(always_included, dtype=int))
    return selected.astype(int)


@dataclass(frozen=True)
class CellPlan:
    """Planned outcome of one grid cell.

    Attributes:
        index: (g, h, l) threshold indices
        evaluate: True if the cell reports a DIC value, False if skipped
        source: Index of the evaluated cell with the same subset triple, or
            None if that triple is never evaluated
        scope: For skipped cells, "row" when the whole tau_2 row was skipped,
            otherwise "cell"
    """
    index: CellIndex
    evaluate: bool
    source: Optional[CellIndex]
    scope: str = "cell"


@dataclass
class GridPlan:
    """Fully resolved skip plan of a threshold grid.

    Attributes:
        thresholds: Threshold values per hazard axis
        subsets: Selected column indices per hazard and threshold index
        policy: Skip policy used to build the plan
        slices: One entry per tau_1 index; None when the whole slice is
            skipped, else a len(tau_2) x len(tau_3) nested list of CellPlan
        slice_sources: For skipped slices, the evaluated slice with the same
            hazard-1 subset (or None)
        sources: Unique subset triple -> first cell that evaluates it
    """
    thresholds: Dict[Hazard, np.ndarray]
    subsets: Dict[Hazard, List[np.ndarray]]
    policy: SkipPolicy
    slices: List[Optional[List[List[CellPlan]]]] = field(default_factory=list)
    slice_sources: Dict[int, Optional[int]] = field(default_factory=dict)
    sources: Dict[TripleKey, CellIndex] = field(default_factory=dict)

    @property
    def shape(self) -> Tuple[int, int, int]:
        return tuple(len(self.thresholds[hz]) for hz in HAZARDS)

    def triple_key(self, index: CellIndex) -> TripleKey:
        return tuple(
            tuple(int(i) for i in self.subsets[hz][k])
            for hz, k in zip(HAZARDS, index)
        )

    def subset_triple(self, index: CellIndex) -> Dict[Hazard, np.ndarray]:
        """Selected columns per hazard for a cell."""
        return {hz: self.subsets[hz][k] for hz, k in zip(HAZARDS, index)}

    def source_of(self, index: CellIndex) -> Optional[CellIndex]:
        """Evaluated cell holding the DIC for this cell's subset triple."""
        return self.sources.get(self.triple_key(index))

    def evaluations(self, g: Optional[int] = None) -> List[CellIndex]:
        """Cells that need a sampler run, in grid order (optionally one slice)."""
        cells = sorted(self.sources.values())
        if g is None:
            return cells
        return [idx for idx in cells if idx[0] == g]

    def cell(self, index: CellIndex) -> Optional[CellPlan]:
        g, h, l = index
        if self.slices[g] is None:
            return None
        return self.slices[g][h][l]


def _cardinalities(probabilities: np.ndarray, thresholds: np.ndarray) -> np.ndarray:
    return np.array([int(np.sum(probabilities > tau)) for tau in thresholds])


def plan_grid(
    probabilities: Mapping[Hazard, np.ndarray],
    thresholds: Mapping[Hazard, np.ndarray],
    always_included: np.ndarray,
    policy: SkipPolicy = SkipPolicy.LEGACY,
) -> GridPlan:
    """Resolve the skip decision of every grid cell.

    Args:
        probabilities: Inclusion probabilities per hazard
        thresholds: Threshold values per hazard axis
        always_included: Trailing always-included column indices (may be empty)
        policy: SkipPolicy.LEGACY or SkipPolicy.EXACT

    Returns:
        GridPlan with one entry per tau_1 index

    Example:
        >>> taus = {hz: threshold_grid() for hz in HAZARDS}
        >>> plan = plan_grid(probs, taus, np.array([5, 6]), SkipPolicy.EXACT)
        >>> len(plan.evaluations()) <= 18 ** 3
        True
    """
    policy = SkipPolicy(policy)
    thresholds = {hz: np.asarray(thresholds[hz], dtype=float) for hz in HAZARDS}
    subsets = {
        hz: [select_covariates(probabilities[hz], tau, always_included) for tau in thresholds[hz]]
        for hz in HAZARDS
    }
    plan = GridPlan(thresholds=thresholds, subsets=subsets, policy=policy)

    if policy is SkipPolicy.LEGACY:
        _plan_legacy(plan, probabilities)
    else:
        _plan_exact(plan)

    n_cells = int(np.prod(plan.shape))
    logger.info(
        f"Grid plan ({policy.value}): {len(plan.sources)} sampler runs for {n_cells} cells, "
        f"{sum(s is None for s in plan.slices)} of {len(plan.slices)} tau_1 slices skipped"
    )
    return plan


def _plan_legacy(plan: GridPlan, probabilities: Mapping[Hazard, np.ndarray]) -> None:
    """Cardinality-based skipping; counters persist across all three loops."""
    n1, n2, n3 = plan.shape
    card = {hz: _cardinalities(probabilities[hz], plan.thresholds[hz]) for hz in HAZARDS}
    last1 = last2 = last3 = None
    first_slice: Dict[SubsetKey, int] = {}
    skipped_rows = set()
    hidden = 0

    for g in range(n1):
        key1 = tuple(int(i) for i in plan.subsets[Hazard.NON_TERMINAL][g])
        if card[Hazard.NON_TERMINAL][g] == last1:
            plan.slices.append(None)
            plan.slice_sources[g] = first_slice.get(key1)
            continue
        last1 = card[Hazard.NON_TERMINAL][g]
        first_slice.setdefault(key1, g)

        rows = []
        for h in range(n2):
            if card[Hazard.TERMINAL_ONLY][h] == last2:
                rows.append([None] * n3)
                skipped_rows.add((g, h))
                continue
            last2 = card[Hazard.TERMINAL_ONLY][h]

            row = []
            for l in range(n3):
                if card[Hazard.TERMINAL_AFTER][l] == last3:
                    row.append(None)
                    continue
                last3 = card[Hazard.TERMINAL_AFTER][l]
                idx = (g, h, l)
                source = plan.sources.setdefault(plan.triple_key(idx), idx)
                row.append(CellPlan(index=idx, evaluate=True, source=source))
            rows.append(row)

        plan.slices.append(rows)

    # Skipped cells are filled once every evaluated triple is known, so a
    # skipped cell can point at an evaluation further down the grid.
    for g, rows in enumerate(plan.slices):
        if rows is None:
            continue
        for h, row in enumerate(rows):
            row_skipped = (g, h) in skipped_rows
            for l, cell in enumerate(row):
                if cell is not None:
                    continue
                idx = (g, h, l)
                source = plan.source_of(idx)
                if source is None:
                    hidden += 1
                row[l] = CellPlan(
                    index=idx,
                    evaluate=False,
                    source=source,
                    scope="row" if row_skipped else "cell",
                )

    if hidden:
        logger.warning(
            f"Cardinality-based skipping hid {hidden} cells whose covariate subsets "
            f"were never evaluated; use SkipPolicy.EXACT to evaluate them"
        )


def _plan_exact(plan: GridPlan) -> None:
    """Skip slices, rows and cells whose actual subsets were already evaluated."""
    n1, n2, n3 = plan.shape
    seen_slices: Dict[SubsetKey, int] = {}
    seen_rows = set()

    for g in range(n1):
        key1 = tuple(int(i) for i in plan.subsets[Hazard.NON_TERMINAL][g])
        if key1 in seen_slices:
            plan.slices.append(None)
            plan.slice_sources[g] = seen_slices[key1]
            continue
        seen_slices[key1] = g

        rows = []
        for h in range(n2):
            key2 = tuple(int(i) for i in plan.subsets[Hazard.TERMINAL_ONLY][h])
            row_skipped = (key1, key2) in seen_rows
            seen_rows.add((key1, key2))

            row = []
            for l in range(n3):
                idx = (g, h, l)
                key = plan.triple_key(idx)
                if key in plan.sources:
                    row.append(CellPlan(
                        index=idx,
                        evaluate=False,
                        source=plan.sources[key],
                        scope="row" if row_skipped else "cell",
                    ))
                else:
                    plan.sources[key] = idx
                    row.append(CellPlan(index=idx, evaluate=True, source=idx))
            rows.append(row)

        plan.slices.append(rows)
