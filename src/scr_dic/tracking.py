"""MLflow tracking of DIC grid searches.

A tracked search records its configuration as parameters, the per-slice
minimum DIC as a stepped metric, the overall summary metrics, and the
long-format grid CSV as an artifact. MLflow failures never abort a search;
results are always persisted to CSV first.
"""
from __future__ import annotations
import os
import json
import logging
import tempfile
from typing import Dict, Any, Optional
import mlflow
import mlflow.exceptions
import numpy as np

from scr_dic.data import Hazard

EXPERIMENT_NAME = "scr_dic"


def start_run(run_name: str, tags: Dict[str, str] | None = None, tracking_uri: Optional[str] = None):
    """Start an MLflow run under the scr_dic experiment.

    Args:
        run_name: Name identifier for this run
        tags: Optional key-value tags to attach to the run
        tracking_uri: Optional tracking URI (e.g. data/outputs/sample/mlruns)

    Returns:
        Active MLflow run context manager

    Example:
        >>> with start_run("dic_grid_sample", tags={"skip_policy": "legacy"}):
        ...     pass
    """
    if tracking_uri is not None:
        mlflow.set_tracking_uri(tracking_uri)
    mlflow.set_experiment(EXPERIMENT_NAME)
    return mlflow.start_run(run_name=run_name, tags=tags)


def flatten_params(params: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten a nested config dict into dotted MLflow parameter names.

    Example:
        >>> flatten_params({"sampler": {"n_iter": 4, "c": 5.0}})
        {'sampler.n_iter': 4, 'sampler.c': 5.0}
    """
    flat = {}
    for k, v in params.items():
        key = f"{prefix}{k}"
        if isinstance(v, dict):
            flat.update(flatten_params(v, prefix=f"{key}."))
        else:
            flat[key] = v
    return flat


def log_dict(name: str, d: Dict[str, Any]):
    """Log a dictionary as a JSON artifact of the current run."""
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, f"{name}.json")
        with open(path, "w") as f:
            json.dump(d, f, indent=2, default=str)
        mlflow.log_artifact(path)


# ============================================================================
# Safe MLflow Wrappers with Graceful Degradation
# ============================================================================


def safe_log_metrics(
    metrics: Dict[str, float],
    step: Optional[int] = None,
    logger: Optional[logging.Logger] = None
) -> bool:
    """Log metrics to MLflow, warning instead of raising on failure.

    Non-finite values are dropped since MLflow rejects NaN in some stores.

    Returns:
        True if logging succeeded, False if it failed
    """
    metrics = {k: float(v) for k, v in metrics.items() if v is not None and np.isfinite(v)}
    try:
        mlflow.log_metrics(metrics, step=step)
        return True
    except mlflow.exceptions.MlflowException as e:
        if logger:
            logger.warning(
                f"MLflow metrics logging failed: {e}",
                extra={"category": "mlflow_error"}
            )
        return False


def safe_log_params(
    params: Dict[str, Any],
    logger: Optional[logging.Logger] = None
) -> bool:
    """Log (flattened) parameters to MLflow, warning on failure.

    Returns:
        True if logging succeeded, False if it failed

    Example:
        >>> safe_log_params(config.to_dict(), logger=logger)
        True
    """
    try:
        mlflow.log_params({k: str(v) for k, v in flatten_params(params).items()})
        return True
    except mlflow.exceptions.MlflowException as e:
        if logger:
            logger.warning(
                f"MLflow params logging failed: {e}",
                extra={"category": "mlflow_error"}
            )
        return False


def safe_log_artifact(
    path: str,
    logger: Optional[logging.Logger] = None
) -> bool:
    """Log a file artifact to MLflow, warning on failure.

    Returns:
        True if logging succeeded, False if it failed
    """
    if not os.path.exists(path):
        if logger:
            logger.warning(f"Artifact not found, skipping: {path}")
        return False

    try:
        mlflow.log_artifact(path)
        return True
    except mlflow.exceptions.MlflowException as e:
        if logger:
            logger.warning(
                f"MLflow artifact logging failed for {path}: {e}",
                extra={"category": "mlflow_error"}
            )
        return False


def grid_summary_metrics(grid) -> Dict[str, float]:
    """Summary metrics of a finished DICGrid.

    Example:
        >>> grid_summary_metrics(grid)
        {'n_value': 61.0, 'n_skipped': 5771.0, 'n_failed': 0.0, 'n_cancelled': 0.0,
         'n_sampler_runs': 42.0, 'best_dic': 811.9, 'best_p_d': 6.2}
    """
    counts = grid.counts()
    metrics = {f"n_{k}": float(v) for k, v in counts.items()}
    metrics["n_sampler_runs"] = float(len(grid.outcomes))
    best = grid.best()
    if best is not None:
        metrics["best_dic"] = float(best["dic"])
        metrics["best_p_d"] = float(best["p_d"])
    return metrics


def log_grid_search(
    grid,
    config_dict: Dict[str, Any],
    csv_path: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> bool:
    """Log a finished grid search to the active MLflow run.

    Args:
        grid: DICGrid result
        config_dict: DICSearchConfig.to_dict() of the run
        csv_path: Long-format grid CSV to attach, if written
        logger: Optional logger for warnings

    Returns:
        True if every MLflow call succeeded
    """
    ok = safe_log_params(config_dict, logger=logger)
    ok &= safe_log_params({"seed_used": grid.seed}, logger=logger)

    arr = grid.to_array(resolve_skipped=True)
    taus1 = grid.thresholds[Hazard.NON_TERMINAL]
    for g in range(arr.shape[0]):
        finite = arr[g][np.isfinite(arr[g])]
        if finite.size:
            ok &= safe_log_metrics(
                {"slice_min_dic": float(finite.min()), "tau1": float(taus1[g])},
                step=g,
                logger=logger,
            )

    ok &= safe_log_metrics(grid_summary_metrics(grid), logger=logger)
    if csv_path is not None:
        ok &= safe_log_artifact(csv_path, logger=logger)
    best = grid.best()
    if best is not None:
        try:
            log_dict("best_cell", best)
        except mlflow.exceptions.MlflowException as e:
            if logger:
                logger.warning(f"MLflow best-cell logging failed: {e}")
            ok = False
    return bool(ok)
