"""Data model, input loading and boundary validation for the DIC grid search.

Holds the per-subject semi-competing-risks records, the fixed piecewise
baseline hazards for the three hazard components, and the checks that run
once at the interface boundary before any sampling starts.
"""
from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

# Expected subject columns
Y1_COL = "y1"
I1_COL = "i1"
Y2_COL = "y2"
I2_COL = "i2"
FRAILTY_COL = "frailty"
SUBJECT_COLS = [Y1_COL, I1_COL, Y2_COL, I2_COL, FRAILTY_COL]

logger = logging.getLogger("scr_dic.data")


class InputValidationError(ValueError):
    """Raised when grid-search inputs are inconsistent (fails the whole call)."""


class Hazard(int, Enum):
    """The three hazard components of the semi-competing-risks model.

    Attributes:
        NON_TERMINAL: Hazard of the non-terminal event
        TERMINAL_ONLY: Hazard of death without a prior non-terminal event
        TERMINAL_AFTER: Hazard of death after the non-terminal event
    """
    NON_TERMINAL = 1
    TERMINAL_ONLY = 2
    TERMINAL_AFTER = 3

    @property
    def label(self) -> str:
        return f"haz{self.value}"


HAZARDS = (Hazard.NON_TERMINAL, Hazard.TERMINAL_ONLY, Hazard.TERMINAL_AFTER)


@dataclass(frozen=True)
class SubjectData:
    """Column-wise subject records, immutable for the duration of a run.

    Attributes:
        y1: Non-terminal event (or censoring) times, shape (n,)
        i1: Non-terminal event indicators (1 = event), shape (n,)
        y2: Terminal event (or censoring) times, shape (n,)
        i2: Terminal event indicators (1 = death), shape (n,)
        frailty: Posterior-mean frailties, shape (n,)
        covariates: Covariate matrix, shape (n, n_covariates)
        covariate_names: Optional column names for reporting
    """
    y1: np.ndarray
    i1: np.ndarray
    y2: np.ndarray
    i2: np.ndarray
    frailty: np.ndarray
    covariates: np.ndarray
    covariate_names: Tuple[str, ...] = field(default=())

    @property
    def n_subjects(self) -> int:
        return int(self.y1.shape[0])

    @property
    def n_covariates(self) -> int:
        return int(self.covariates.shape[1])

    @classmethod
    def from_arrays(
        cls,
        covariates,
        y1,
        y2,
        i1,
        i2,
        frailty,
        covariate_names: Optional[Sequence[str]] = None,
    ) -> "SubjectData":
        """Build subject data from array-likes, coercing dtypes.

        Shapes are checked later by validate_inputs so that every mismatch is
        reported at the same boundary.
        """
        X = np.asarray(covariates, dtype=float)
        if X.ndim == 1:
            X = X.reshape(-1, 1)
        names = tuple(covariate_names) if covariate_names is not None else tuple(
            f"x{j + 1}" for j in range(X.shape[1])
        )
        return cls(
            y1=np.asarray(y1, dtype=float).ravel(),
            i1=np.asarray(i1, dtype=float).ravel(),
            y2=np.asarray(y2, dtype=float).ravel(),
            i2=np.asarray(i2, dtype=float).ravel(),
            frailty=np.asarray(frailty, dtype=float).ravel(),
            covariates=X,
            covariate_names=names,
        )


@dataclass(frozen=True)
class BaselineHazard:
    """Piecewise-constant baseline hazard for one hazard component.

    Attributes:
        split_points: Ordered split points, length J+2, starting at 0
        log_heights: Log hazard heights on the J+1 intervals
    """
    split_points: np.ndarray
    log_heights: np.ndarray

    def __post_init__(self):
        s = np.atleast_1d(np.asarray(self.split_points, dtype=float))
        lam = np.atleast_1d(np.asarray(self.log_heights, dtype=float))
        object.__setattr__(self, "split_points", s)
        object.__setattr__(self, "log_heights", lam)

        if s.size < 2:
            raise InputValidationError(
                f"Baseline hazard needs at least 2 split points, got {s.size}"
            )
        if s.size != lam.size + 1:
            raise InputValidationError(
                f"Expected {s.size - 1} log-heights for {s.size} split points, "
                f"got {lam.size}"
            )
        if s[0] != 0.0:
            raise InputValidationError(f"First split point must be 0, got {s[0]}")
        if np.any(np.diff(s) <= 0):
            raise InputValidationError("Split points must be strictly increasing")
        if not (np.all(np.isfinite(s)) and np.all(np.isfinite(lam))):
            raise InputValidationError("Split points and log-heights must be finite")

    @property
    def n_intervals(self) -> int:
        return int(self.log_heights.size)

    def exposure(self, times: np.ndarray) -> np.ndarray:
        """Time spent by each subject inside each baseline interval.

        Args:
            times: Follow-up times, shape (n,)

        Returns:
            Array of shape (n, n_intervals) with
            max(0, min(t_i, s_{j+1}) - s_j)
        """
        t = np.asarray(times, dtype=float)[:, None]
        lower = self.split_points[:-1][None, :]
        upper = self.split_points[1:][None, :]
        return np.maximum(0.0, np.minimum(t, upper) - lower)

    def cumulative_hazard(self, times: np.ndarray) -> np.ndarray:
        """Baseline cumulative hazard at each time, shape (n,)."""
        return self.exposure(times) @ np.exp(self.log_heights)

    def to_dict(self) -> dict:
        return {
            "split_points": self.split_points.tolist(),
            "log_heights": self.log_heights.tolist(),
        }


def load_data(file_path: str) -> pd.DataFrame:
    """Load subject records from CSV or pickle file.

    Args:
        file_path: Path to input file (CSV or pickle)

    Returns:
        DataFrame with the subject columns (y1, i1, y2, i2, frailty) and
        covariate columns

    Raises:
        FileNotFoundError: If file_path does not exist
        ValueError: If file format is not supported

    Example:
        >>> df = load_data("data/inputs/sample/subjects.csv")
        >>> df.shape
        (100, 12)
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Data file not found: {file_path}")

    suffix = file_path.suffix.lower()

    if suffix == '.csv':
        logger.info(f"Loading CSV data from {file_path}")
        df = pd.read_csv(file_path)
    elif suffix in ['.pkl', '.pickle']:
        logger.info(f"Loading pickle data from {file_path}")
        df = pd.read_pickle(file_path)
    else:
        raise ValueError(
            f"Unsupported file format: {suffix}. "
            f"Supported formats: .csv, .pkl, .pickle"
        )

    logger.info(f"Loaded {len(df):,} records with {len(df.columns)} columns")
    return df


def split_subjects(
    df: pd.DataFrame,
    covariate_cols: Optional[List[str]] = None
) -> SubjectData:
    """Extract subject records from a DataFrame.

    Args:
        df: DataFrame containing SUBJECT_COLS and covariate columns
        covariate_cols: Covariate columns in model order. Defaults to every
            column not in SUBJECT_COLS, in file order. The always-included
            covariates must be the last ones.

    Returns:
        SubjectData instance

    Raises:
        InputValidationError: If required subject columns are missing
    """
    missing = [col for col in SUBJECT_COLS if col not in df.columns]
    if missing:
        raise InputValidationError(f"Missing subject columns: {missing}")

    if covariate_cols is None:
        covariate_cols = [col for col in df.columns if col not in SUBJECT_COLS]
    if not covariate_cols:
        raise InputValidationError("No covariate columns found")

    return SubjectData.from_arrays(
        covariates=df[covariate_cols].to_numpy(dtype=float),
        y1=df[Y1_COL].to_numpy(),
        y2=df[Y2_COL].to_numpy(),
        i1=df[I1_COL].to_numpy(),
        i2=df[I2_COL].to_numpy(),
        frailty=df[FRAILTY_COL].to_numpy(),
        covariate_names=covariate_cols,
    )


def subjects_to_frame(subjects: SubjectData) -> pd.DataFrame:
    """Inverse of split_subjects, used to persist simulated inputs."""
    df = pd.DataFrame(subjects.covariates, columns=list(subjects.covariate_names))
    df.insert(0, FRAILTY_COL, subjects.frailty)
    df.insert(0, I2_COL, subjects.i2.astype(int))
    df.insert(0, Y2_COL, subjects.y2)
    df.insert(0, I1_COL, subjects.i1.astype(int))
    df.insert(0, Y1_COL, subjects.y1)
    return df


def load_model_inputs(
    path: str
) -> Tuple[Dict[Hazard, np.ndarray], Dict[Hazard, BaselineHazard]]:
    """Load inclusion probabilities and baseline hazards from JSON.

    Expected layout::

        {
          "probabilities": {"1": [...], "2": [...], "3": [...]},
          "baselines": {
            "1": {"split_points": [...], "log_heights": [...]},
            ...
          }
        }

    Args:
        path: Path to the JSON file

    Returns:
        Tuple of (probabilities by hazard, baseline hazards by hazard)
    """
    with open(path) as f:
        data = json.load(f)

    try:
        probabilities = {
            hz: np.asarray(data["probabilities"][str(hz.value)], dtype=float)
            for hz in HAZARDS
        }
        baselines = {
            hz: BaselineHazard(**data["baselines"][str(hz.value)])
            for hz in HAZARDS
        }
    except KeyError as e:
        raise InputValidationError(f"Model inputs missing key: {e}") from e

    return probabilities, baselines


def save_model_inputs(
    path: str,
    probabilities: Mapping[Hazard, np.ndarray],
    baselines: Mapping[Hazard, BaselineHazard],
) -> None:
    """Write model inputs in the layout read by load_model_inputs."""
    data = {
        "probabilities": {
            str(hz.value): np.asarray(probabilities[hz], dtype=float).tolist()
            for hz in HAZARDS
        },
        "baselines": {str(hz.value): baselines[hz].to_dict() for hz in HAZARDS},
    }
    with open(path, "w") as f:
        json.dump(data, f, indent=2)


def validate_inputs(
    subjects: SubjectData,
    baselines: Mapping[Hazard, BaselineHazard],
    probabilities: Mapping[Hazard, np.ndarray],
    c: float,
    n_iter: int,
    inc: int,
) -> None:
    """Fail fast on inconsistent inputs before any sampling begins.

    Args:
        subjects: Subject records
        baselines: Baseline hazard per hazard component
        probabilities: Inclusion probabilities per hazard component
        c: Prior covariance scale (must be positive)
        n_iter: Number of sampler iterations B (must be >= 2)
        inc: Number of trailing always-included covariates

    Raises:
        InputValidationError: On any dimension or value mismatch
    """
    errors = []
    n = subjects.n_subjects

    for name in ("y2", "i1", "i2", "frailty"):
        size = getattr(subjects, name).shape[0]
        if size != n:
            errors.append(f"{name} has length {size}, expected {n} (length of y1)")
    if subjects.covariates.ndim != 2 or subjects.covariates.shape[0] != n:
        errors.append(
            f"covariate matrix has shape {subjects.covariates.shape}, expected ({n}, p)"
        )

    for name in ("i1", "i2"):
        values = getattr(subjects, name)
        if not np.all(np.isin(values, (0.0, 1.0))):
            errors.append(f"{name} must contain only 0/1 indicators")

    for name in ("y1", "y2", "frailty"):
        values = getattr(subjects, name)
        if not np.all(np.isfinite(values)) or np.any(values < 0):
            errors.append(f"{name} must be finite and non-negative")
    if not np.all(np.isfinite(subjects.covariates)):
        errors.append("covariate matrix contains non-finite values")

    if not isinstance(inc, (int, np.integer)) or inc < 0 or inc > subjects.n_covariates:
        errors.append(f"inc must be an integer in [0, {subjects.n_covariates}], got {inc}")
    if not isinstance(n_iter, (int, np.integer)) or n_iter < 2:
        errors.append(f"n_iter (B) must be an integer >= 2, got {n_iter}")
    if not np.isfinite(c) or c <= 0:
        errors.append(f"c must be positive, got {c}")

    expected = subjects.n_covariates - inc if isinstance(inc, (int, np.integer)) else None
    for hz in HAZARDS:
        if hz not in probabilities:
            errors.append(f"missing inclusion probabilities for {hz.label}")
            continue
        probs = np.asarray(probabilities[hz], dtype=float)
        if probs.ndim != 1:
            errors.append(f"{hz.label} probabilities must be one-dimensional")
        elif expected is not None and probs.size != expected:
            errors.append(
                f"{hz.label} probabilities have length {probs.size}, "
                f"expected ncol(covariates) - inc = {expected}"
            )
        if np.any(~np.isfinite(probs)) or np.any((probs < 0) | (probs > 1)):
            errors.append(f"{hz.label} probabilities must lie in [0, 1]")
        if hz not in baselines:
            errors.append(f"missing baseline hazard for {hz.label}")

    if errors:
        raise InputValidationError("Invalid grid-search inputs:\n  " + "\n  ".join(errors))

    if np.any((subjects.i1 == 1) & (subjects.y2 < subjects.y1)):
        logger.warning("Some subjects have y2 < y1 after a non-terminal event; "
                       "their gap times are clipped to zero exposure")

    _warn_uncovered_follow_up(subjects, baselines)


def _warn_uncovered_follow_up(
    subjects: SubjectData,
    baselines: Mapping[Hazard, BaselineHazard]
) -> None:
    """Exposure past the last split point does not enter the likelihood."""
    follow_up = {
        Hazard.NON_TERMINAL: subjects.y1,
        Hazard.TERMINAL_ONLY: subjects.y2[subjects.i1 == 0],
        Hazard.TERMINAL_AFTER: (subjects.y2 - subjects.y1)[subjects.i1 == 1],
    }
    for hz, times in follow_up.items():
        if times.size and times.max() > baselines[hz].split_points[-1]:
            logger.warning(
                f"{hz.label}: max follow-up {times.max():.3f} exceeds last split point "
                f"{baselines[hz].split_points[-1]:.3f}; later exposure is ignored"
            )


def simulate_example(
    n: int = 100,
    n_covariates: int = 7,
    seed: int = 1,
) -> Tuple[SubjectData, Dict[Hazard, BaselineHazard], Dict[Hazard, np.ndarray]]:
    """Simulate the documented semi-competing-risks example data set.

    Uniform non-terminal times on (0, 100), fair-coin indicators, terminal
    times offset by a further uniform (0, 100) gap after a non-terminal event,
    standard-normal covariates and Gamma(1, 1) frailties. Baseline hazards
    end at the largest relevant observed time and the inclusion
    probabilities are the fixed example values for five selectable covariates
    (so inc = n_covariates - 5).

    Args:
        n: Number of subjects
        n_covariates: Total number of covariate columns (>= 5)
        seed: Random seed

    Returns:
        Tuple of (subjects, baselines, probabilities)

    Example:
        >>> subjects, baselines, probs = simulate_example(n=100, seed=1)
        >>> subjects.covariates.shape
        (100, 7)
    """
    if n_covariates < 5:
        raise ValueError(f"n_covariates must be >= 5, got {n_covariates}")

    rng = np.random.default_rng(seed)
    y1 = rng.uniform(0, 100, size=n)
    i1 = rng.binomial(1, 0.5, size=n)
    y2 = np.where(i1 == 1, y1 + rng.uniform(0, 100, size=n), y1)
    i2 = rng.binomial(1, 0.5, size=n)
    X = rng.standard_normal((n, n_covariates))
    frailty = rng.gamma(shape=1.0, scale=1.0, size=n)

    subjects = SubjectData.from_arrays(X, y1=y1, y2=y2, i1=i1, i2=i2, frailty=frailty)

    # Guard against a draw with no subjects in a branch
    max1 = float(y1[i1 == 1].max()) if np.any(i1 == 1) else float(y1.max())
    max2 = float(y2[i1 == 0].max()) if np.any(i1 == 0) else float(y2.max())
    max3 = float(y2[i1 == 1].max()) if np.any(i1 == 1) else float(y2.max())

    baselines = {
        Hazard.NON_TERMINAL: BaselineHazard([0.0, 3.0, 5.0, max(max1, 5.5)], [-1.0, -3.0, 0.0]),
        Hazard.TERMINAL_ONLY: BaselineHazard([0.0, 1.0, max(max2, 1.5)], [0.0, -2.0]),
        Hazard.TERMINAL_AFTER: BaselineHazard([0.0, max3], [-2.0]),
    }
    probabilities = {
        Hazard.NON_TERMINAL: np.array([0.2, 0.4, 0.7, 0.8, 0.5]),
        Hazard.TERMINAL_ONLY: np.array([0.02, 0.06, 0.1, 0.5, 0.7]),
        Hazard.TERMINAL_AFTER: np.array([0.85, 0.87, 0.3, 0.45, 0.51]),
    }
    return subjects, baselines, probabilities
