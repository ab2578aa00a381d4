"""
CSV input and output for ERPower.

Sample files follow the ``Sample{ID}-MeanAmpOutput.csv`` naming scheme;
batch outputs are written as ``sampleN{n}_subN{m}_modelOutput.csv`` and
``sampleN{n}_subN{m}_trialCount.csv``.
"""

import re
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

import pandas as pd

from ..core.config import SUBJECT_COL, SimulationConfig
from ..core.dataset import TrialDataset

__all__ = []

SAMPLE_FILE_PATTERN = re.compile(r"Sample(\d+)-MeanAmpOutput\.csv$")

PathLike = Union[str, Path]


def sample_filename(sample_id: str) -> str:
    return f"Sample{sample_id}-MeanAmpOutput.csv"


def parse_sample_id(path: PathLike) -> str:
    """Extract the sample ID from a ``Sample{ID}-MeanAmpOutput.csv`` file name.

    Raises:
        ValueError: If the file name does not follow the scheme.
    """
    match = SAMPLE_FILE_PATTERN.search(Path(path).name)
    if match is None:
        raise ValueError(f"Cannot parse sample ID from '{Path(path).name}'; expected 'Sample{{ID}}-MeanAmpOutput.csv'")
    return match.group(1)


def load_sample(path: PathLike, config: Optional[SimulationConfig] = None, sample_id: Optional[str] = None) -> TrialDataset:
    """Load one sample CSV as a validated ``TrialDataset``.

    Subject and actor IDs are read as strings so zero padding survives.

    Args:
        path: CSV file.
        config: Settings to validate labels and trial counts against.
        sample_id: Override for the ID parsed from the file name.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Sample file not found: {path}")
    sample_id = sample_id if sample_id is not None else parse_sample_id(path)
    data = pd.read_csv(path, dtype={SUBJECT_COL: str, "subjectID": str, "ACTOR": str, "actorID": str})
    return TrialDataset.from_frame(sample_id, data, config)


def iter_sample_files(folder: PathLike) -> List[Path]:
    """Sample CSV files in *folder*, sorted by sample ID."""
    files = [p for p in Path(folder).iterdir() if SAMPLE_FILE_PATTERN.search(p.name)]
    return sorted(files, key=lambda p: parse_sample_id(p))


def load_samples(folder: PathLike, config: Optional[SimulationConfig] = None) -> Iterator[TrialDataset]:
    """Yield every sample in *folder* in sample-ID order."""
    files = iter_sample_files(folder)
    if not files:
        raise FileNotFoundError(f"No 'Sample*-MeanAmpOutput.csv' files in {folder}")
    for path in files:
        yield load_sample(path, config)


def write_sample(dataset: TrialDataset, folder: PathLike) -> Path:
    """Write a sample as ``Sample{ID}-MeanAmpOutput.csv``."""
    folder = Path(folder)
    folder.mkdir(parents=True, exist_ok=True)
    path = folder / sample_filename(dataset.sample_id)
    dataset.copy_data().to_csv(path, index=False, na_rep="")
    return path


def output_prefix(sample_n: int, subject_n: int) -> str:
    return f"sampleN{sample_n}_subN{subject_n}"


def write_outputs(
    folder: PathLike,
    model_output: pd.DataFrame,
    trial_counts: pd.DataFrame,
    sample_n: int,
    subject_n: int,
    failures: Optional[pd.DataFrame] = None,
) -> Dict[str, Path]:
    """Write batch outputs as CSV (missing values as empty fields).

    Returns:
        Mapping of ``"model_output"``, ``"trial_counts"`` and, when any
        sample failed, ``"failures"`` to the written paths.
    """
    folder = Path(folder)
    folder.mkdir(parents=True, exist_ok=True)
    prefix = output_prefix(sample_n, subject_n)

    paths = {
        "model_output": folder / f"{prefix}_modelOutput.csv",
        "trial_counts": folder / f"{prefix}_trialCount.csv",
    }
    model_output.to_csv(paths["model_output"], index=False, na_rep="")
    trial_counts.to_csv(paths["trial_counts"], index=False, na_rep="")
    if failures is not None and len(failures):
        paths["failures"] = folder / f"{prefix}_failures.csv"
        failures.to_csv(paths["failures"], index=False)
    return paths


def read_model_output(path: PathLike) -> pd.DataFrame:
    """Read a model-output CSV back, keeping sample IDs and tags as strings."""
    output = pd.read_csv(path, dtype={"sample": str, "caseDeletionPct": str, "emotion": str})
    output["inCL"] = output["inCL"].astype("boolean")
    return output
