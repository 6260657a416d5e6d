"""Grid search of DIC over inclusion-probability thresholds.

For each (tau_1, tau_2, tau_3) combination the covariate subsets of the three
hazards are selected, the regression coefficients are re-fitted with the
Metropolis-within-Gibbs sampler, and the DIC of the fit is recorded. The
result has one element per tau_1 value: a matrix of cells over (tau_2, tau_3)
or a whole-slice skip marker.

Cells are tagged values:
- DICValue: evaluated (or memoized from an identical subset triple)
- Skipped: not evaluated, duplicate_of points at the cell with the same subsets
- Failed: the sampler could not run (e.g. singular design matrix)
- Cancelled: the run was cancelled before the cell was evaluated
"""
from __future__ import annotations
import logging
import threading
import warnings
from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from scr_dic.config import DICSearchConfig, SamplerConfig
from scr_dic.data import (
    BaselineHazard,
    Hazard,
    HAZARDS,
    InputValidationError,
    SubjectData,
    validate_inputs,
)
from scr_dic.dic import DICValue, compute_dic
from scr_dic.likelihood import build_likelihoods
from scr_dic.logging_config import ProgressLogger, capture_warnings, log_performance
from scr_dic.sampler import ConditionalProposal, SingularDesignError, prior_covariance, run_sampler
from scr_dic.selection import (
    CellIndex,
    GridPlan,
    always_included_columns,
    plan_grid,
    threshold_grid,
)
from scr_dic.timing import Timer


@dataclass(frozen=True)
class Skipped:
    """Cell skipped by the memoization policy.

    Attributes:
        duplicate_of: Evaluated cell with the same subset triple, if any
        scope: "cell", "row" (whole tau_2 row) or "slice" (whole tau_1 slice)
    """
    duplicate_of: Optional[CellIndex] = None
    scope: str = "cell"


@dataclass(frozen=True)
class Failed:
    """Cell whose sampler run raised a numerical error."""
    error: str


@dataclass(frozen=True)
class Cancelled:
    """Cell not evaluated because the search was cancelled."""


Cell = Union[DICValue, Skipped, Failed, Cancelled]


@dataclass
class SliceResult:
    """Cells of one tau_1 slice, indexed [h][l]."""
    g: int
    threshold: float
    cells: List[List[Cell]]

    def __getitem__(self, index: Tuple[int, int]) -> Cell:
        h, l = index
        return self.cells[h][l]


@dataclass(frozen=True)
class SkippedSlice:
    """Whole tau_1 slice skipped; duplicate_of is the slice it repeats."""
    g: int
    threshold: float
    duplicate_of: Optional[int] = None


@dataclass
class DICGrid:
    """Result of a grid search.

    Attributes:
        plan: Skip plan the search executed
        slices: One SliceResult or SkippedSlice per tau_1 value
        outcomes: Sampler outcome per evaluated source cell
        seed: Base seed the per-cell random streams were derived from
        cancelled: True if the search stopped before evaluating every cell
    """
    plan: GridPlan
    slices: List[Union[SliceResult, SkippedSlice]]
    outcomes: Dict[CellIndex, Union[DICValue, Failed]] = field(default_factory=dict)
    seed: Optional[int] = None
    cancelled: bool = False

    def __len__(self) -> int:
        return len(self.slices)

    def __getitem__(self, g: int) -> Union[SliceResult, SkippedSlice]:
        return self.slices[g]

    def __iter__(self) -> Iterator[Union[SliceResult, SkippedSlice]]:
        return iter(self.slices)

    @property
    def thresholds(self) -> Dict[Hazard, np.ndarray]:
        return self.plan.thresholds

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.plan.shape

    def cell(self, g: int, h: int, l: int) -> Cell:
        """Cell at (g, h, l); cells of a skipped slice report scope "slice"."""
        entry = self.slices[g]
        if isinstance(entry, SkippedSlice):
            return Skipped(duplicate_of=self.plan.source_of((g, h, l)), scope="slice")
        return entry.cells[h][l]

    def resolve(self, g: int, h: int, l: int) -> Optional[DICValue]:
        """DIC value of a cell, following memoized duplicates."""
        cell = self.cell(g, h, l)
        if isinstance(cell, DICValue):
            return cell
        if isinstance(cell, Skipped) and cell.duplicate_of is not None:
            outcome = self.outcomes.get(cell.duplicate_of)
            if isinstance(outcome, DICValue):
                return outcome
        return None

    @property
    def failed_cells(self) -> List[CellIndex]:
        """Cells reported as Failed, in grid order."""
        return [
            (g, h, l)
            for g, h, l in np.ndindex(*self.shape)
            if isinstance(self.cell(g, h, l), Failed)
        ]

    def to_array(self, resolve_skipped: bool = False) -> np.ndarray:
        """DIC values as a float array of shape (n_tau1, n_tau2, n_tau3).

        Args:
            resolve_skipped: Fill skipped cells with the DIC of the cell they
                duplicate; otherwise skipped cells are NaN

        Returns:
            Array with NaN for skipped, failed and cancelled cells
        """
        out = np.full(self.shape, np.nan)
        for g, h, l in np.ndindex(*self.shape):
            value = self.resolve(g, h, l) if resolve_skipped else self.cell(g, h, l)
            if isinstance(value, DICValue):
                out[g, h, l] = value.dic
        return out

    def to_frame(self) -> pd.DataFrame:
        """Long-format table with one row per grid cell.

        Columns: g, h, l, tau1, tau2, tau3, status, dic, p_d, resolved_dic,
        duplicate_of, p1, p2, p3, subset1, subset2, subset3, error.
        """
        rows = []
        taus = [self.thresholds[hz] for hz in HAZARDS]
        for g, h, l in np.ndindex(*self.shape):
            cell = self.cell(g, h, l)
            subsets = self.plan.subset_triple((g, h, l))
            resolved = self.resolve(g, h, l)
            row = {
                "g": g,
                "h": h,
                "l": l,
                "tau1": float(taus[0][g]),
                "tau2": float(taus[1][h]),
                "tau3": float(taus[2][l]),
                "status": _status(cell),
                "dic": cell.dic if isinstance(cell, DICValue) else np.nan,
                "p_d": cell.p_d if isinstance(cell, DICValue) else np.nan,
                "resolved_dic": resolved.dic if resolved is not None else np.nan,
                "duplicate_of": (
                    str(cell.duplicate_of)
                    if isinstance(cell, Skipped) and cell.duplicate_of is not None
                    else None
                ),
                "error": cell.error if isinstance(cell, Failed) else None,
            }
            for k, hz in enumerate(HAZARDS, start=1):
                row[f"p{k}"] = int(len(subsets[hz]))
                row[f"subset{k}"] = " ".join(str(i) for i in subsets[hz])
            rows.append(row)
        return pd.DataFrame(rows)

    def best(self) -> Optional[dict]:
        """Evaluated cell with the smallest finite DIC.

        Returns:
            Dict with index, thresholds, DIC, pD and selected columns per
            hazard, or None if no cell has a finite DIC
        """
        best_idx, best_value = None, None
        for idx, outcome in sorted(self.outcomes.items()):
            if isinstance(outcome, DICValue) and outcome.is_finite:
                if best_value is None or outcome.dic < best_value.dic:
                    best_idx, best_value = idx, outcome
        if best_idx is None:
            return None

        subsets = self.plan.subset_triple(best_idx)
        return {
            "index": best_idx,
            "thresholds": tuple(float(self.thresholds[hz][k]) for hz, k in zip(HAZARDS, best_idx)),
            "dic": best_value.dic,
            "p_d": best_value.p_d,
            "subsets": {hz.label: [int(i) for i in subsets[hz]] for hz in HAZARDS},
        }

    def counts(self) -> Dict[str, int]:
        """Number of cells per status."""
        out = {"value": 0, "skipped": 0, "failed": 0, "cancelled": 0}
        for g, h, l in np.ndindex(*self.shape):
            out[_status(self.cell(g, h, l))] += 1
        return out

    def to_legacy(self) -> list:
        """Nested lists in the original output layout.

        Skipped slices are "skip", skipped rows contain "skip", skipped cells
        "Skip", failed and cancelled cells NaN.
        """
        out = []
        for entry in self.slices:
            if isinstance(entry, SkippedSlice):
                out.append("skip")
                continue
            matrix = []
            for row in entry.cells:
                values = []
                for cell in row:
                    if isinstance(cell, DICValue):
                        values.append(cell.dic)
                    elif isinstance(cell, Skipped):
                        values.append("skip" if cell.scope == "row" else "Skip")
                    else:
                        values.append(float("nan"))
                matrix.append(values)
            out.append(matrix)
        return out


def _status(cell: Cell) -> str:
    if isinstance(cell, DICValue):
        return "value"
    if isinstance(cell, Skipped):
        return "skipped"
    if isinstance(cell, Failed):
        return "failed"
    return "cancelled"


def cell_rng(seed: int, subsets: Mapping[Hazard, np.ndarray]) -> np.random.Generator:
    """Random generator private to one subset triple.

    The stream depends only on the base seed and the selected columns, so a
    subset triple gets the same DIC whichever cell, order or worker
    evaluates it.
    """
    entropy = [int(seed)]
    for hz in HAZARDS:
        cols = [int(i) for i in subsets[hz]]
        entropy.extend([hz.value, len(cols), *cols])
    return np.random.default_rng(np.random.SeedSequence(entropy))


def evaluate_subsets(
    subjects: SubjectData,
    baselines: Mapping[Hazard, BaselineHazard],
    subsets: Mapping[Hazard, np.ndarray],
    c: float,
    n_iter: int,
    seed: int,
) -> Union[DICValue, Failed]:
    """Fit the coefficients of one subset triple and compute its DIC.

    Singular designs are reported as Failed so the rest of the grid can
    complete.
    """
    try:
        proposals = {
            hz: ConditionalProposal(
                prior_covariance(subjects.covariates[:, subsets[hz]], c)
            )
            for hz in HAZARDS
            if len(subsets[hz]) > 0
        }
    except SingularDesignError as e:
        return Failed(error=str(e))

    likelihoods = build_likelihoods(subjects, baselines, subsets)
    chain = run_sampler(cell_rng(seed, subsets), likelihoods, proposals, n_iter)
    return compute_dic(chain, likelihoods)


def _evaluate_cell(subjects, baselines, subsets, idx: CellIndex, sampler: SamplerConfig, seed: int):
    """Evaluate one cell and collect the distinct warning messages it raised.

    Warnings are returned with the outcome instead of being shown, so cells
    run in joblib workers report them to the parent's warning counter just
    like cells run in-process.
    """
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        outcome = evaluate_subsets(subjects, baselines, subsets, sampler.c, sampler.n_iter, seed)
    messages = list(dict.fromkeys(str(w.message) for w in caught))
    return idx, outcome, messages


def run_grid_search_for(
    subjects: SubjectData,
    baselines: Mapping[Hazard, BaselineHazard],
    probabilities: Mapping[Hazard, np.ndarray],
    config: Optional[DICSearchConfig] = None,
    logger: Optional[logging.Logger] = None,
    cancel_event: Optional[threading.Event] = None,
) -> DICGrid:
    """Run the DIC grid search over the three threshold axes.

    Steps:
    1. Validate inputs (fails the whole call on mismatch)
    2. Plan the grid: select subsets and resolve skipped cells up front
    3. For each tau_1 slice, run the sampler for every new subset triple
       (sequentially or with joblib) and record DIC / Failed outcomes
    4. Assemble per-slice matrices of tagged cells

    Python warnings raised while evaluating a cell are collected per cell
    (also inside joblib workers) and counted by the search logger.

    Args:
        subjects: Subject records
        baselines: Fixed baseline hazard per hazard component
        probabilities: Inclusion probabilities per hazard component
        config: Search configuration (defaults to DICSearchConfig())
        logger: Logger (defaults to "scr_dic.grid")
        cancel_event: Optional flag checked between cells (sequential) or
            between tau_1 slices (parallel); remaining cells become Cancelled

    Returns:
        DICGrid with one entry per tau_1 threshold

    Example:
        >>> subjects, baselines, probs = simulate_example(n=100)
        >>> cfg = DICSearchConfig(sampler=SamplerConfig(n_iter=4, seed=1), grid=GridConfig(inc=2))
        >>> grid = run_grid_search_for(subjects, baselines, probs, cfg)
        >>> len(grid)
        18
    """
    if logger is None:
        logger = logging.getLogger("scr_dic.grid")
    if config is None:
        config = DICSearchConfig()

    sampler, grid_cfg, execution = config.sampler, config.grid, config.execution

    validate_inputs(subjects, baselines, probabilities, sampler.c, sampler.n_iter, grid_cfg.inc)

    seed = sampler.seed
    if seed is None:
        seed = int(np.random.SeedSequence().generate_state(1)[0])
        logger.info(f"No seed configured, using seed={seed}")

    taus = threshold_grid(grid_cfg.tau_start, grid_cfg.tau_stop, grid_cfg.tau_step)
    thresholds = {hz: taus for hz in HAZARDS}
    always = always_included_columns(subjects.n_covariates, grid_cfg.inc)
    plan = plan_grid(probabilities, thresholds, always, grid_cfg.skip_policy)

    logger.info(
        f"DIC grid search: {subjects.n_subjects} subjects, {subjects.n_covariates} covariates "
        f"(inc={grid_cfg.inc}), B={sampler.n_iter}, c={sampler.c}, {execution}"
    )

    outcomes: Dict[CellIndex, Union[DICValue, Failed]] = {}
    cancelled = False
    progress = ProgressLogger(logger, total=len(taus), desc="Grid search over tau_1")

    with Timer(logger, "DIC grid search"), capture_warnings(logger) as warning_counter:
        parallel = (
            Parallel(n_jobs=execution.n_jobs, verbose=execution.verbose, backend=execution.backend)
            if execution.is_parallel() else None
        )
        for g, tau1 in enumerate(taus):
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break

            logger.info(f"Grid search on tau_1={tau1:.2f} started")
            tasks = plan.evaluations(g)

            with Timer(logger, f"tau_1={tau1:.2f}", quiet=True):
                if parallel is not None and len(tasks) > 1:
                    results = parallel(
                        delayed(_evaluate_cell)(
                            subjects, baselines, plan.subset_triple(idx), idx, sampler, seed
                        )
                        for idx in tasks
                    )
                else:
                    results = []
                    for idx in tasks:
                        if cancel_event is not None and cancel_event.is_set():
                            cancelled = True
                            break
                        results.append(_evaluate_cell(
                            subjects, baselines, plan.subset_triple(idx), idx, sampler, seed
                        ))

            for idx, outcome, messages in results:
                outcomes[idx] = outcome
                for message in messages:
                    warning_counter.record(f"cell {idx}: {message}")
                if isinstance(outcome, Failed):
                    logger.warning(
                        f"Cell (tau_1={tau1:.2f}, tau_2={taus[idx[1]]:.2f}, "
                        f"tau_3={taus[idx[2]]:.2f}) failed: {outcome.error}"
                    )

            finite = [o.dic for _, o, _ in results if isinstance(o, DICValue) and o.is_finite]
            log_performance(
                logger,
                f"tau_1={tau1:.2f} completed",
                evaluated=len(results),
                failed=sum(isinstance(o, Failed) for _, o, _ in results),
                min_dic=round(min(finite), 4) if finite else None,
            )
            progress.update(1, metrics={"evaluated": len(results)})

            if cancelled:
                break

    if cancelled:
        logger.warning("Grid search cancelled; unevaluated cells are marked Cancelled")

    grid = DICGrid(
        plan=plan,
        slices=_assemble(plan, outcomes),
        outcomes=outcomes,
        seed=seed,
        cancelled=cancelled,
    )

    counts = grid.counts()
    log_performance(logger, "Grid search summary", **counts)
    if grid.failed_cells:
        logger.warning(f"{len(grid.failed_cells)} cells failed: {grid.failed_cells}")
    return grid


def _assemble(
    plan: GridPlan,
    outcomes: Mapping[CellIndex, Union[DICValue, Failed]],
) -> List[Union[SliceResult, SkippedSlice]]:
    """Turn the plan and sampler outcomes into per-slice cell matrices."""
    taus1 = plan.thresholds[Hazard.NON_TERMINAL]
    slices = []
    for g, rows in enumerate(plan.slices):
        if rows is None:
            slices.append(SkippedSlice(g=g, threshold=float(taus1[g]), duplicate_of=plan.slice_sources.get(g)))
            continue

        cells = []
        for row in rows:
            out_row = []
            for cell_plan in row:
                if not cell_plan.evaluate:
                    out_row.append(Skipped(duplicate_of=cell_plan.source, scope=cell_plan.scope))
                elif cell_plan.source in outcomes:
                    out_row.append(outcomes[cell_plan.source])
                else:
                    out_row.append(Cancelled())
            cells.append(out_row)
        slices.append(SliceResult(g=g, threshold=float(taus1[g]), cells=cells))
    return slices


def run_grid_search(
    pct1: Sequence[float],
    pct2: Sequence[float],
    pct3: Sequence[float],
    covariates,
    y1,
    y2,
    i1,
    i2,
    baselines: Union[Mapping[Hazard, BaselineHazard], Sequence],
    frailty,
    c: float,
    n_iter: int,
    inc: int = 0,
    *,
    config: Optional[DICSearchConfig] = None,
    seed: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
    cancel_event: Optional[threading.Event] = None,
) -> DICGrid:
    """Array-level entry point mirroring the original function signature.

    Args:
        pct1, pct2, pct3: Inclusion probabilities per hazard, each of length
            ncol(covariates) - inc
        covariates: Subject covariate matrix; the last `inc` columns are
            always included
        y1, y2, i1, i2: Event times and indicators
        baselines: Mapping Hazard -> BaselineHazard, or a sequence of three
            BaselineHazard / (split_points, log_heights) pairs
        frailty: Posterior-mean frailty per subject
        c: Prior covariance scale
        n_iter: Sampler iterations B (>= 2)
        inc: Number of always-included trailing covariates
        config: Optional base configuration; c, n_iter, inc and seed given
            here override its values
        seed: Base random seed
        logger: Optional logger
        cancel_event: Optional cooperative cancellation flag

    Returns:
        DICGrid with one entry per tau_1 threshold
    """
    base = config if config is not None else DICSearchConfig()
    try:
        config = replace(
            base,
            sampler=SamplerConfig(
                n_iter=n_iter, c=c, seed=seed if seed is not None else base.sampler.seed
            ),
            grid=replace(base.grid, inc=inc),
        )
    except (TypeError, ValueError) as e:
        raise InputValidationError(f"Invalid grid-search arguments: {e}") from e

    subjects = SubjectData.from_arrays(covariates, y1=y1, y2=y2, i1=i1, i2=i2, frailty=frailty)
    probabilities = {
        Hazard.NON_TERMINAL: np.asarray(pct1, dtype=float),
        Hazard.TERMINAL_ONLY: np.asarray(pct2, dtype=float),
        Hazard.TERMINAL_AFTER: np.asarray(pct3, dtype=float),
    }
    return run_grid_search_for(
        subjects,
        _coerce_baselines(baselines),
        probabilities,
        config=config,
        logger=logger,
        cancel_event=cancel_event,
    )


def _coerce_baselines(baselines) -> Dict[Hazard, BaselineHazard]:
    if isinstance(baselines, Mapping):
        missing = [hz.label for hz in HAZARDS if hz not in baselines]
        if missing:
            raise InputValidationError(f"Missing baseline hazards for {', '.join(missing)}")
        items = [baselines[hz] for hz in HAZARDS]
    else:
        items = list(baselines)
        if len(items) != len(HAZARDS):
            raise InputValidationError(f"Expected 3 baseline hazards, got {len(items)}")
    return {
        hz: item if isinstance(item, BaselineHazard) else BaselineHazard(*item)
        for hz, item in zip(HAZARDS, items)
    }
