"""
Shared pytest fixtures for ERPower tests.
"""

import numpy as np
import pandas as pd
import pytest

from erpower.core.config import SimulationConfig
from erpower.stats.data_generation import simulate_sample

from tests.config import SEED, SMALL_PRESENT_N, SMALL_SUBJECT_N


def pytest_configure(config):
    config.addinivalue_line("markers", "lme: tests of the mixed-model solver")
    config.addinivalue_line("markers", "slow: long-running tests")


@pytest.fixture
def default_config():
    """Published design: 50 subjects, 5 actors, 10 presentations."""
    return SimulationConfig()


@pytest.fixture
def small_config():
    """Fast design: 20 subjects, 5 actors, 4 presentations (20 trials per condition)."""
    return SimulationConfig(subject_n=SMALL_SUBJECT_N, present_n=SMALL_PRESENT_N)


@pytest.fixture
def small_dataset(small_config):
    """One complete sample of the fast design."""
    return simulate_sample(small_config, 1, np.random.default_rng(SEED))


@pytest.fixture
def full_dataset(default_config):
    """One complete sample of the published design."""
    return simulate_sample(default_config, 443, np.random.default_rng(SEED))


@pytest.fixture
def rng():
    return np.random.default_rng(SEED)


def _model_output(p_values, condition="A - B", model_type="LME", tag="32%"):
    """Synthetic model-output rows, one sample per p-value."""
    n = len(p_values)
    return pd.DataFrame(
        {
            "emotion": [condition] * n,
            "estimate": np.ones(n),
            "SE": np.ones(n),
            "df": np.full(n, 40.0),
            "lower.CL": np.zeros(n),
            "upper.CL": np.full(n, 2.0),
            "t.ratio": np.ones(n),
            "p.value": p_values,
            "inCL": pd.array([True] * n, dtype="boolean"),
            "modelProblem": ["none" if pd.notna(p) else "did-not-converge" for p in p_values],
            "modelType": [model_type] * n,
            "caseDeletionPct": [tag] * n,
            "sample": [f"{i + 1:04d}" for i in range(n)],
        }
    )


@pytest.fixture
def make_model_output():
    """Factory for synthetic model-output frames."""
    return _model_output
