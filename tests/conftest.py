"""Pytest configuration and shared fixtures for the DIC grid search tests.

Provides the simulated documented example (100 subjects, 7 covariates, two of
them always included), small hand-checkable data sets, and MLflow isolation.
"""
import pytest
import numpy as np

from scr_dic.config import DICSearchConfig, GridConfig, SamplerConfig
from scr_dic.data import BaselineHazard, Hazard, SubjectData, simulate_example


@pytest.fixture(scope="session")
def example():
    """Simulated documented example.

    Returns:
        Tuple of (subjects, baselines, probabilities)
    """
    return simulate_example(n=100, n_covariates=7, seed=1)


@pytest.fixture
def example_subjects(example):
    return example[0]


@pytest.fixture
def example_baselines(example):
    return example[1]


@pytest.fixture
def example_probabilities(example):
    return example[2]


@pytest.fixture
def fast_config():
    """Short-chain configuration for end-to-end runs (B=4, inc=2)."""
    return DICSearchConfig(
        sampler=SamplerConfig(n_iter=4, c=5.0, seed=11),
        grid=GridConfig(inc=2),
    )


@pytest.fixture
def tiny_subjects():
    """Four subjects covering every hazard branch.

    Subjects 0 and 1 have a non-terminal event (hazard 3 risk set),
    subjects 2 and 3 do not (hazard 2 risk set).
    """
    return SubjectData.from_arrays(
        covariates=np.array([[1.0, 0.5], [-1.0, 2.0], [0.5, -0.5], [2.0, 1.0]]),
        y1=np.array([1.0, 2.0, 3.0, 4.0]),
        y2=np.array([2.5, 2.0, 3.0, 5.0]),
        i1=np.array([1, 1, 0, 0]),
        i2=np.array([1, 0, 1, 0]),
        frailty=np.array([1.0, 2.0, 0.5, 1.0]),
    )


@pytest.fixture
def flat_baselines():
    """Unit-rate single-interval baselines ending at 10."""
    return {hz: BaselineHazard([0.0, 10.0], [0.0]) for hz in Hazard}


@pytest.fixture
def temp_artifacts_dir(tmp_path):
    """Create temporary directory for test artifacts.

    Args:
        tmp_path: Pytest temporary directory fixture

    Returns:
        Path: Temporary artifacts directory
    """
    artifacts_dir = tmp_path / "artifacts"
    artifacts_dir.mkdir(exist_ok=True)
    return artifacts_dir


@pytest.fixture(autouse=True)
def cleanup_mlflow_runs():
    """Reset the MLflow tracking URI after each test.

    Ensures tests don't interfere with each other's MLflow tracking.
    """
    import mlflow
    yield
    if mlflow.active_run() is not None:
        mlflow.end_run()
    mlflow.set_tracking_uri(None)
