"""Core components for the ERPower pipeline.

Re-exports the foundational building blocks:

- ``SimulationConfig`` and the canonical column names.
- ``TrialDataset`` and ``compute_missingness_weights``.
- ``MissingnessInducer``, ``InductionResult`` and ``count_trials``.
- ``ModelOutputExtractor``.
- ``SampleRunner``, ``BatchRunner`` and their result containers.
- ``compute_power`` and ``power_table``.
"""

from .config import SimulationConfig
from .dataset import TrialDataset, compute_missingness_weights
from .missingness import InductionResult, MissingnessInducer, count_trials
from .extraction import ModelOutputExtractor
from .simulation import BatchResult, BatchRunner, CaseDeletionRun, SampleResult, SampleRunner
from .results import compute_power, power_table

__all__ = [
    # Configuration and data
    "SimulationConfig",
    "TrialDataset",
    "compute_missingness_weights",
    # Missingness
    "MissingnessInducer",
    "InductionResult",
    "count_trials",
    # Extraction and running
    "ModelOutputExtractor",
    "SampleRunner",
    "BatchRunner",
    "CaseDeletionRun",
    "SampleResult",
    "BatchResult",
    # Power
    "compute_power",
    "power_table",
]
