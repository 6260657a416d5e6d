"""
Integration tests for the DIC grid search.

Runs the documented example (n=100, 7 covariates, inc=2, B=4) through the
whole grid and checks the result contract, memoization, reproducibility and
per-cell error isolation.
"""
import dataclasses
import warnings
import threading

import pytest
import numpy as np

from scr_dic.config import (
    DICSearchConfig,
    ExecutionConfig,
    ExecutionMode,
    GridConfig,
    SamplerConfig,
)
from scr_dic.data import HAZARDS, Hazard, InputValidationError, simulate_example
from scr_dic.dic import DICValue
from scr_dic.grid import (
    Cancelled,
    Failed,
    SkippedSlice,
    SliceResult,
    Skipped,
    cell_rng,
    run_grid_search,
    run_grid_search_for,
)
from scr_dic.likelihood import build_likelihoods
from scr_dic import grid as grid_module
from scr_dic.selection import SkipPolicy

# Mark all tests in this file as integration tests
pytestmark = pytest.mark.integration


def _config(policy=SkipPolicy.LEGACY, seed=11, inc=2, execution=None):
    return DICSearchConfig(
        sampler=SamplerConfig(n_iter=4, c=5.0, seed=seed),
        grid=GridConfig(inc=inc, skip_policy=policy),
        execution=execution or ExecutionConfig(),
    )


@pytest.fixture(scope="module")
def example_inputs():
    return simulate_example(n=100, n_covariates=7, seed=1)


@pytest.fixture(scope="module")
def legacy_grid(example_inputs):
    return run_grid_search_for(*example_inputs, config=_config(SkipPolicy.LEGACY))


@pytest.fixture(scope="module")
def exact_grid(example_inputs):
    return run_grid_search_for(*example_inputs, config=_config(SkipPolicy.EXACT))


class TestEndToEnd:
    """Result contract of the documented example."""

    def test_eighteen_slices_of_eighteen_by_eighteen(self, legacy_grid):
        assert len(legacy_grid) == 18
        for entry in legacy_grid:
            if isinstance(entry, SkippedSlice):
                continue
            assert isinstance(entry, SliceResult)
            assert len(entry.cells) == 18
            assert all(len(row) == 18 for row in entry.cells)

    def test_values_are_finite(self, legacy_grid):
        values = [
            cell for entry in legacy_grid if isinstance(entry, SliceResult)
            for row in entry.cells for cell in row if isinstance(cell, DICValue)
        ]
        assert values
        assert all(np.isfinite(v.dic) and np.isfinite(v.p_d) for v in values)
        assert legacy_grid.failed_cells == []
        assert not legacy_grid.cancelled

    def test_cells_are_values_or_skipped(self, legacy_grid):
        for g, h, l in np.ndindex(*legacy_grid.shape):
            assert isinstance(legacy_grid.cell(g, h, l), (DICValue, Skipped))

    def test_first_cell_evaluated(self, legacy_grid):
        """The first cell of the grid always gets a sampler run."""
        assert isinstance(legacy_grid[0][0, 0], DICValue)

    def test_skipped_slice_reported_per_cell(self, legacy_grid):
        assert isinstance(legacy_grid[1], SkippedSlice)
        cell = legacy_grid.cell(1, 0, 0)
        assert isinstance(cell, Skipped)
        assert cell.scope == "slice"
        assert cell.duplicate_of == (0, 0, 0)


class TestMemoization:
    """Cells inducing the same subset triple share one DIC."""

    def test_exact_equal_triples_equal_values(self, exact_grid):
        values = exact_grid.to_array(resolve_skipped=True)
        by_key = {}
        for idx in np.ndindex(*exact_grid.shape):
            by_key.setdefault(exact_grid.plan.triple_key(idx), set()).add(values[idx])
        assert all(len(v) == 1 for v in by_key.values())
        assert np.isfinite(values).all()

    def test_exact_runs_each_triple_once(self, exact_grid):
        keys = {exact_grid.plan.triple_key(idx) for idx in np.ndindex(*exact_grid.shape)}
        assert len(exact_grid.outcomes) == len(keys)

    def test_legacy_equal_triples_equal_values(self, legacy_grid):
        values = legacy_grid.to_array(resolve_skipped=True)
        by_key = {}
        for idx in np.ndindex(*legacy_grid.shape):
            if np.isfinite(values[idx]):
                by_key.setdefault(legacy_grid.plan.triple_key(idx), set()).add(values[idx])
        assert all(len(v) == 1 for v in by_key.values())

    def test_policies_agree_on_shared_triples(self, legacy_grid, exact_grid):
        """Per-triple random streams make values independent of the skip policy."""
        legacy = legacy_grid.to_array(resolve_skipped=True)
        exact = exact_grid.to_array(resolve_skipped=True)
        mask = np.isfinite(legacy)
        assert mask.any()
        np.testing.assert_array_equal(legacy[mask], exact[mask])


class TestReproducibility:
    """Same inputs and seed give identical grids."""

    def test_idempotent(self, example_inputs, legacy_grid):
        again = run_grid_search_for(*example_inputs, config=_config(SkipPolicy.LEGACY))
        np.testing.assert_array_equal(again.to_array(), legacy_grid.to_array())
        assert again.to_legacy() == legacy_grid.to_legacy()

    def test_different_seed_changes_values(self, example_inputs, legacy_grid):
        other = run_grid_search_for(*example_inputs, config=_config(SkipPolicy.LEGACY, seed=12))
        assert not np.array_equal(
            other.to_array(), legacy_grid.to_array(), equal_nan=True
        )

    def test_parallel_matches_sequential(self, example_inputs, legacy_grid):
        execution = ExecutionConfig(mode=ExecutionMode.MULTIPROCESSING, n_jobs=2)
        parallel = run_grid_search_for(
            *example_inputs, config=_config(SkipPolicy.LEGACY, execution=execution)
        )
        np.testing.assert_array_equal(parallel.to_array(), legacy_grid.to_array())

    def test_cell_rng_depends_on_subsets_only(self):
        subsets = {hz: np.array([0, 2]) for hz in HAZARDS}
        same = {hz: np.array([0, 2]) for hz in HAZARDS}
        other = {**subsets, Hazard.TERMINAL_AFTER: np.array([0, 3])}
        assert cell_rng(5, subsets).random() == cell_rng(5, same).random()
        assert cell_rng(5, subsets).random() != cell_rng(5, other).random()
        assert cell_rng(5, subsets).random() != cell_rng(6, subsets).random()

    def test_seed_drawn_when_missing(self, example_inputs):
        grid = run_grid_search_for(*example_inputs, config=_config(seed=None))
        assert isinstance(grid.seed, int)


class TestDegenerate:
    """inc=0 with all-zero probabilities: every hazard has an empty subset."""

    @pytest.fixture(scope="class")
    def degenerate(self, example_inputs):
        subjects, baselines, _ = example_inputs
        probabilities = {hz: np.zeros(subjects.n_covariates) for hz in HAZARDS}
        grid = run_grid_search_for(subjects, baselines, probabilities, config=_config(inc=0))
        return subjects, baselines, grid

    def test_single_evaluation(self, degenerate):
        _, _, grid = degenerate
        assert list(grid.outcomes) == [(0, 0, 0)]

    def test_baseline_only_dic(self, degenerate):
        subjects, baselines, grid = degenerate
        empty = {hz: np.array([], dtype=int) for hz in HAZARDS}
        baseline = sum(
            lik.baseline_loglik for lik in build_likelihoods(subjects, baselines, empty).values()
        )
        value = grid.cell(0, 0, 0)
        assert value.dic == pytest.approx(-2.0 * baseline)
        assert value.p_d == pytest.approx(0.0, abs=1e-8)

    def test_replicated_when_resolved(self, degenerate):
        _, _, grid = degenerate
        values = grid.to_array(resolve_skipped=True)
        assert np.all(values == values[0, 0, 0])

    def test_legacy_layout(self, degenerate):
        _, _, grid = degenerate
        legacy = grid.to_legacy()
        assert len(legacy) == 18
        assert legacy[1:] == ["skip"] * 17
        first = legacy[0]
        assert isinstance(first[0][0], float)
        assert first[0][1:] == ["Skip"] * 17
        assert first[1] == ["skip"] * 18


class TestErrorIsolation:
    """Per-cell failures and cancellation do not abort the search."""

    def test_singular_design_becomes_failed(self, example_inputs):
        subjects, baselines, probabilities = example_inputs
        X = subjects.covariates.copy()
        X[:, 6] = X[:, 5]
        collinear = dataclasses.replace(subjects, covariates=X)

        grid = run_grid_search_for(collinear, baselines, probabilities, config=_config())

        assert grid.failed_cells
        assert all(isinstance(o, Failed) for o in grid.outcomes.values())
        assert "singular" in grid.cell(*grid.failed_cells[0]).error
        assert grid.best() is None
        assert np.isnan(grid.to_array()).all()

    def test_cancel_before_start(self, example_inputs):
        event = threading.Event()
        event.set()
        grid = run_grid_search_for(*example_inputs, config=_config(), cancel_event=event)

        assert grid.cancelled
        assert grid.outcomes == {}
        assert isinstance(grid.cell(0, 0, 0), Cancelled)
        assert grid.counts()["value"] == 0

    def test_invalid_probability_length(self, example_inputs):
        subjects, baselines, probabilities = example_inputs
        bad = {**probabilities, Hazard.TERMINAL_ONLY: np.array([0.5, 0.5])}
        with pytest.raises(InputValidationError, match="haz2"):
            run_grid_search_for(subjects, baselines, bad, config=_config())


class TestResultHelpers:
    """to_frame, best and the flat entry point."""

    def test_to_frame(self, legacy_grid):
        df = legacy_grid.to_frame()
        assert len(df) == 18 ** 3
        assert {"tau1", "tau2", "tau3", "status", "dic", "resolved_dic", "p1", "subset1"} <= set(df.columns)
        assert set(df["status"]) <= {"value", "skipped"}
        assert (df["status"] == "value").sum() == legacy_grid.counts()["value"]

    def test_best_is_minimum(self, legacy_grid):
        best = legacy_grid.best()
        assert best["dic"] == pytest.approx(np.nanmin(legacy_grid.to_array()))
        g, h, l = best["index"]
        assert best["thresholds"][0] == pytest.approx(legacy_grid.thresholds[Hazard.NON_TERMINAL][g])
        assert set(best["subsets"]) == {"haz1", "haz2", "haz3"}
        assert {5, 6} <= set(best["subsets"]["haz1"])

    def test_flat_entry_point_matches(self, example_inputs, legacy_grid):
        subjects, baselines, probabilities = example_inputs
        grid = run_grid_search(
            probabilities[Hazard.NON_TERMINAL],
            probabilities[Hazard.TERMINAL_ONLY],
            probabilities[Hazard.TERMINAL_AFTER],
            subjects.covariates,
            subjects.y1,
            subjects.y2,
            subjects.i1,
            subjects.i2,
            [(baselines[hz].split_points, baselines[hz].log_heights) for hz in HAZARDS],
            subjects.frailty,
            c=5.0,
            n_iter=4,
            inc=2,
            seed=11,
        )
        np.testing.assert_array_equal(grid.to_array(), legacy_grid.to_array())

    def test_wrong_number_of_baselines(self, example_inputs):
        subjects, baselines, probabilities = example_inputs
        with pytest.raises(InputValidationError, match="Expected 3 baseline hazards, got 2"):
            run_grid_search(
                probabilities[Hazard.NON_TERMINAL],
                probabilities[Hazard.TERMINAL_ONLY],
                probabilities[Hazard.TERMINAL_AFTER],
                subjects.covariates,
                subjects.y1,
                subjects.y2,
                subjects.i1,
                subjects.i2,
                [baselines[hz] for hz in HAZARDS[:2]],
                subjects.frailty,
                c=5.0,
                n_iter=4,
                inc=2,
            )

    def test_missing_baseline_in_mapping(self, example_inputs):
        subjects, baselines, probabilities = example_inputs
        partial = {hz: baselines[hz] for hz in HAZARDS[1:]}
        with pytest.raises(InputValidationError, match="haz1"):
            run_grid_search(
                probabilities[Hazard.NON_TERMINAL],
                probabilities[Hazard.TERMINAL_ONLY],
                probabilities[Hazard.TERMINAL_AFTER],
                subjects.covariates,
                subjects.y1,
                subjects.y2,
                subjects.i1,
                subjects.i2,
                partial,
                subjects.frailty,
                c=5.0,
                n_iter=4,
                inc=2,
            )


def _warning_evaluator(subjects, baselines, subsets, c, n_iter, seed):
    warnings.warn("overflow encountered in exp", RuntimeWarning)
    warnings.warn("overflow encountered in exp", RuntimeWarning)
    return DICValue(dic=1.0, p_d=0.0, plugin_loglik=0.0, mean_loglik=0.0, subset_sizes=(0, 0, 0))


class TestWarningCollection:
    """Warnings raised while evaluating a cell reach the search logger."""

    def test_cell_returns_its_warnings(self, example_inputs, monkeypatch):
        monkeypatch.setattr(grid_module, "evaluate_subsets", _warning_evaluator)
        subjects, baselines, _ = example_inputs
        subsets = {hz: np.array([5, 6]) for hz in HAZARDS}

        idx, outcome, messages = grid_module._evaluate_cell(
            subjects, baselines, subsets, (0, 0, 0), SamplerConfig(n_iter=4, seed=1), 1
        )

        assert idx == (0, 0, 0)
        assert isinstance(outcome, DICValue)
        assert messages == ["overflow encountered in exp"]

    def test_warnings_counted_once_per_evaluation(self, example_inputs, monkeypatch, caplog):
        monkeypatch.setattr(grid_module, "evaluate_subsets", _warning_evaluator)
        config = DICSearchConfig(
            sampler=SamplerConfig(n_iter=4, seed=3),
            grid=GridConfig(tau_step=0.4, inc=2, skip_policy=SkipPolicy.EXACT),
        )

        with caplog.at_level("INFO", logger="scr_dic.grid"):
            grid = run_grid_search_for(*example_inputs, config=config)

        numerical = [r for r in caplog.records if "[NUMERICAL] cell" in r.getMessage()]
        assert len(numerical) == len(grid.outcomes)
        assert f"Warning summary: numerical={len(grid.outcomes)}" in caplog.text
