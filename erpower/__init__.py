"""ERPower - ERP missing-data simulation.

Simulates trial-level ERP mean amplitudes with known effects, induces
missing trials under several case-deletion percentages, and compares how
well linear mixed-effects models and repeated-measures ANOVA recover the
population values, including a power analysis.

Example:
    >>> from erpower import ERPower
    >>>
    >>> model = ERPower(subject_n=50)
    >>> model.set_parallel(True)
    >>> model.find_power(sample_n=100, case_deletion_pct=32)
"""

from importlib.metadata import version as _get_version

from .core.config import SimulationConfig
from .core.dataset import TrialDataset
from .core.missingness import InductionResult, MissingnessInducer, count_trials
from .core.results import compute_power, power_table
from .core.simulation import BatchResult, BatchRunner, SampleRunner
from .model import ERPower
from .progress import PrintReporter, ProgressReporter, SimulationCancelled, TqdmReporter
from .stats.mixed_models import DefaultModelFitter, ModelFitter

__version__ = _get_version("ERPower")

__all__ = [
    "ERPower",
    "SimulationConfig",
    "TrialDataset",
    "MissingnessInducer",
    "InductionResult",
    "count_trials",
    "SampleRunner",
    "BatchRunner",
    "BatchResult",
    "compute_power",
    "power_table",
    "ModelFitter",
    "DefaultModelFitter",
    "SimulationCancelled",
    "ProgressReporter",
    "PrintReporter",
    "TqdmReporter",
]
