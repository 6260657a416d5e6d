"""Configuration for the DIC grid search.

This module provides configuration for:
- the coefficient sampler (iterations B, prior scale c, random seed)
- the threshold grid (threshold range, always-included covariates, skip policy)
- execution mode (sequential, or joblib multiprocessing across tau_1 slices)
"""
from __future__ import annotations
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional
import os
import json
import logging
import multiprocessing

from scr_dic.selection import SkipPolicy

logger = logging.getLogger("scr_dic.config")


class ExecutionMode(str, Enum):
    """Execution mode for the grid search.

    Attributes:
        SEQUENTIAL: Evaluate every grid cell in the calling process (default)
        MULTIPROCESSING: Evaluate the cells of each tau_1 slice in parallel
            with joblib
    """
    SEQUENTIAL = "sequential"
    MULTIPROCESSING = "mp"


@dataclass
class ExecutionConfig:
    """Configuration for execution mode and parallelization.

    Attributes:
        mode: Execution mode (sequential, mp)
        n_jobs: Number of parallel jobs. -1 means use all cores, 1 means sequential
        verbose: Verbosity level for joblib (0=silent, 10=progress bar, 50=detailed)
        backend: Joblib backend ('loky', 'threading', 'multiprocessing')

    Example:
        >>> # Default configuration (sequential)
        >>> config = ExecutionConfig()

        >>> # Multiprocessing with all cores
        >>> config = ExecutionConfig(mode=ExecutionMode.MULTIPROCESSING, n_jobs=-1)
    """
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    n_jobs: int = 1
    verbose: int = 0
    backend: str = "loky"

    def __post_init__(self):
        """Validate and normalize configuration."""
        if isinstance(self.mode, str):
            self.mode = ExecutionMode(self.mode)

        if self.n_jobs == -1:
            self.n_jobs = multiprocessing.cpu_count()
        elif self.n_jobs < 1:
            raise ValueError(f"n_jobs must be -1 or positive, got {self.n_jobs}")

        # Sequential mode always runs in-process
        if self.mode == ExecutionMode.SEQUENTIAL:
            self.n_jobs = 1

    def is_parallel(self) -> bool:
        """Check if parallel execution is enabled.

        Returns:
            True if execution mode supports parallelism and n_jobs > 1

        Example:
            >>> ExecutionConfig(mode=ExecutionMode.MULTIPROCESSING, n_jobs=4).is_parallel()
            True
        """
        return self.mode != ExecutionMode.SEQUENTIAL and self.n_jobs > 1

    def __str__(self) -> str:
        return (
            f"ExecutionConfig(mode={self.mode.value}, "
            f"n_jobs={self.n_jobs}, "
            f"parallel={self.is_parallel()})"
        )


def create_execution_config(
    mode: Optional[str] = None,
    n_jobs: int = -1,
    verbose: int = 0
) -> ExecutionConfig:
    """Factory function to create ExecutionConfig from CLI-style arguments.

    Args:
        mode: Execution mode string ('sequential', 'mp'). None means sequential.
        n_jobs: Number of parallel jobs (-1 = all cores)
        verbose: Joblib verbosity level

    Returns:
        ExecutionConfig instance

    Example:
        >>> config = create_execution_config(mode='mp', n_jobs=4)
        >>> config.is_parallel()
        True
    """
    execution_mode = ExecutionMode.SEQUENTIAL if mode is None else ExecutionMode(mode)
    return ExecutionConfig(mode=execution_mode, n_jobs=n_jobs, verbose=verbose)


# ============================================================================
# Sampler Configuration
# ============================================================================

@dataclass
class SamplerConfig:
    """Settings of the Metropolis-within-Gibbs coefficient sampler.

    Attributes:
        n_iter: Number of iterations B per grid cell
        c: Prior covariance scale
        seed: Base random seed; None draws one at run start
    """
    n_iter: int = 100
    """Number of iterations B per grid cell.

    Valid range: [2, inf)
    The later half (iterations ceil(B/2)..B) is used for DIC.
    """

    c: float = 5.0
    """Scale of the prior covariance c * (X'X)^-1.

    Should match the value that controlled sparsity in the variable
    selection run that produced the inclusion probabilities.
    """

    seed: Optional[int] = None
    """Base seed. Each subset triple gets its own stream derived from it,
    so results do not depend on evaluation order or execution mode."""

    def __post_init__(self):
        if self.n_iter < 2:
            raise ValueError(f"n_iter must be >= 2, got {self.n_iter}")
        if self.c <= 0:
            raise ValueError(f"c must be positive, got {self.c}")

    @classmethod
    def for_environment(cls, run_type: str) -> "SamplerConfig":
        """Sampler settings for a run type.

        Args:
            run_type: One of "sample", "production", "experiment"

        Example:
            >>> SamplerConfig.for_environment("production").n_iter
            2000
        """
        if run_type == "production":
            return cls(n_iter=2000)
        elif run_type == "experiment":
            return cls(n_iter=500)
        else:  # sample or default
            return cls()


# ============================================================================
# Grid Configuration
# ============================================================================

@dataclass
class GridConfig:
    """Threshold grid and covariate-subset settings.

    Attributes:
        tau_start: Smallest threshold
        tau_stop: Largest threshold (inclusive)
        tau_step: Threshold spacing
        inc: Number of trailing covariates always included
        skip_policy: How repeated subsets are skipped
    """
    tau_start: float = 0.05
    tau_stop: float = 0.90
    tau_step: float = 0.05
    """Default grid 0.05, 0.10, ..., 0.90 (18 values per axis)."""

    inc: int = 0
    """Number of trailing covariate columns left out of selection."""

    skip_policy: SkipPolicy = SkipPolicy.LEGACY
    """LEGACY compares subset sizes along each axis, EXACT compares subsets."""

    def __post_init__(self):
        if isinstance(self.skip_policy, str):
            self.skip_policy = SkipPolicy(self.skip_policy)
        if self.inc < 0:
            raise ValueError(f"inc must be >= 0, got {self.inc}")


# ============================================================================
# Master Configuration
# ============================================================================

@dataclass
class DICSearchConfig:
    """Master configuration for the DIC grid search.

    Attributes:
        sampler: Coefficient sampler configuration
        grid: Threshold grid configuration
        execution: Execution mode and parallelization configuration
        run_type: Type of run ("sample", "production", "experiment")
        tracking: Whether to log the run to MLflow
        description: Optional description of this configuration

    Example:
        >>> config = DICSearchConfig.for_run_type("production")
        >>> config.sampler.n_iter
        2000
        >>> config.save("configs/production.json")
        >>> loaded = DICSearchConfig.load("configs/production.json")
    """
    sampler: SamplerConfig = field(default_factory=SamplerConfig)
    grid: GridConfig = field(default_factory=GridConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)

    run_type: str = "sample"
    """Type of run: 'sample', 'production', or 'experiment'."""

    tracking: bool = False
    """Log parameters, summary metrics and the grid CSV to MLflow."""

    description: str = ""

    @classmethod
    def for_run_type(cls, run_type: str) -> "DICSearchConfig":
        """Create configuration for a specific run type.

        Production runs use longer chains and evaluate tau_1 slices on all
        cores.
        """
        if run_type == "production":
            exec_config = ExecutionConfig(mode=ExecutionMode.MULTIPROCESSING, n_jobs=-1)
        else:
            exec_config = ExecutionConfig()

        return cls(
            sampler=SamplerConfig.for_environment(run_type),
            execution=exec_config,
            run_type=run_type
        )

    def to_dict(self) -> dict:
        """Convert configuration to dictionary for serialization.

        Example:
            >>> DICSearchConfig().to_dict()['grid']['skip_policy']
            'legacy'
        """
        def _dataclass_to_dict(obj):
            if hasattr(obj, '__dataclass_fields__'):
                return {
                    k: _dataclass_to_dict(v)
                    for k, v in obj.__dict__.items()
                }
            elif isinstance(obj, Enum):
                return obj.value
            else:
                return obj

        return _dataclass_to_dict(self)

    def save(self, path: str) -> None:
        """Save configuration to JSON file."""
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info(f"Configuration saved to {path}")

    @classmethod
    def load(cls, path: str) -> "DICSearchConfig":
        """Load configuration from JSON file.

        Args:
            path: Path to input JSON file

        Returns:
            DICSearchConfig instance
        """
        with open(path) as f:
            data = json.load(f)

        return cls(
            sampler=SamplerConfig(**data['sampler']),
            grid=GridConfig(**data['grid']),
            execution=ExecutionConfig(**data['execution']),
            run_type=data.get('run_type', 'sample'),
            tracking=data.get('tracking', False),
            description=data.get('description', '')
        )
