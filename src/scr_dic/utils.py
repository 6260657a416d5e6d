from __future__ import annotations
import os
import json
import datetime as dt
import pandas as pd
from typing import Literal

# Run type for distinguishing sample vs production runs
RunType = Literal["sample", "production", "experiment"]


def ensure_dir(path: str):
    """Create directory (and parents) if it doesn't exist.

    Example:
        >>> ensure_dir("data/outputs/sample/artifacts")
    """
    os.makedirs(path, exist_ok=True)


def versioned_name(base: str, run_type: RunType = None) -> str:
    """Generate timestamped filename for versioning.

    Args:
        base: Base filename without extension
        run_type: Optional run type to prefix filename

    Returns:
        Versioned name in format "[runtype_]base_YYYYMMDD_HHMMSS"

    Example:
        >>> versioned_name("dic_grid", run_type="sample")
        'sample_dic_grid_20250123_143052'
    """
    ts = dt.datetime.now().strftime("%Y%m%d_%H%M%S")
    if run_type:
        return f"{run_type}_{base}_{ts}"
    return f"{base}_{ts}"


def get_output_paths(run_type: RunType = "sample", base: str = "data/outputs") -> dict:
    """Get standardized output directory paths for a given run type.

    Args:
        run_type: Type of run ("sample", "production", "experiment")
        base: Root of all output directories

    Returns:
        Dictionary with keys:
        - base_dir: Root output directory for this run type
        - artifacts: DIC grid CSVs, legacy JSON and best-cell summaries
        - inputs: Simulated or copied model inputs
        - logs: Log files
        - mlruns: Directory for MLflow tracking

    Example:
        >>> get_output_paths("production")["artifacts"]
        'data/outputs/production/artifacts'
    """
    base_dir = os.path.join(base, run_type)

    paths = {
        "base_dir": base_dir,
        "artifacts": os.path.join(base_dir, "artifacts"),
        "inputs": os.path.join(base_dir, "inputs"),
        "logs": os.path.join(base_dir, "logs"),
        "mlruns": os.path.join(base_dir, "mlruns"),
    }

    for path in paths.values():
        ensure_dir(path)

    return paths


def save_dic_grid(grid, outdir: str, name: str = "dic_grid") -> dict:
    """Persist a DICGrid as a long-format CSV plus the legacy nested layout.

    Args:
        grid: DICGrid result
        outdir: Output directory
        name: Base filename

    Returns:
        Dictionary with paths "csv", "legacy" and (if any cell has a finite
        DIC) "best"

    Example:
        >>> paths = save_dic_grid(grid, "data/outputs/sample/artifacts")
        >>> paths["csv"]
        'data/outputs/sample/artifacts/dic_grid.csv'
    """
    ensure_dir(outdir)
    paths = {}

    df: pd.DataFrame = grid.to_frame()
    paths["csv"] = os.path.join(outdir, f"{name}.csv")
    df.to_csv(paths["csv"], index=False)

    paths["legacy"] = os.path.join(outdir, f"{name}_legacy.json")
    with open(paths["legacy"], "w") as f:
        # NaN is written as the JSON extension token NaN
        json.dump(grid.to_legacy(), f)

    best = grid.best()
    if best is not None:
        paths["best"] = os.path.join(outdir, f"{name}_best.json")
        with open(paths["best"], "w") as f:
            json.dump(best, f, indent=2)

    return paths
