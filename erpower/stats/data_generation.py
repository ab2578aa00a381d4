"""
Trial-level ERP amplitude generator.

Synthesizes population samples from the additive amplitude model

    amplitude = emotion_mean[e] + emotion_slope * (presentNumber - 1)
                + actor_intercept[a] + subject_intercept[s] + age_effect[age]
                + trial_deviation + noise

with all values in microvolts. Actor intercepts are drawn once per sample
around fixed actor means; half the subjects (randomized) belong to each age
group. Every subject sees every condition x actor x presentation once, so
each subject x condition cell holds ``actor_n * present_n`` trials.
"""

from typing import Iterator, Optional

import numpy as np
import pandas as pd

from ..core.config import (
    ACTOR_COL,
    AGE_COL,
    AMPLITUDE_COL,
    EMOTION_COL,
    PRESENT_COL,
    SUBJECT_COL,
    SimulationConfig,
)
from ..core.dataset import TrialDataset


def _assign_age_groups(config: SimulationConfig, rng: np.random.Generator) -> np.ndarray:
    """Randomized age labels, half per group (the odd subject goes to the older group)."""
    n_older = config.subject_n - config.subject_n // 2
    labels = np.array([config.older_label] * n_older + [config.younger_label] * (config.subject_n - n_older))
    return rng.permutation(labels)


def simulate_sample(config: SimulationConfig, sample_id, rng: Optional[np.random.Generator] = None) -> TrialDataset:
    """Generate one complete population sample.

    Args:
        config: Design dimensions and population parameters.
        sample_id: Sample identifier (integers are zero-padded to 4 digits).
        rng: Random generator (fresh entropy when omitted).

    Returns:
        TrialDataset with no missing amplitudes.
    """
    rng = rng if rng is not None else np.random.default_rng()
    subject_n, actor_n, present_n = config.subject_n, config.actor_n, config.present_n
    emotion_n = config.emotion_n

    actor_intercepts = rng.normal(np.asarray(config.actor_means, dtype=float), config.actor_sd)
    ages = _assign_age_groups(config, rng)
    age_offsets = np.array([config.age_effects[label] for label in ages])
    subject_intercepts = rng.normal(0.0, config.subject_sd, size=subject_n)

    # Full design grid: subject x emotion x actor x presentation
    s_idx, e_idx, a_idx, p_idx = (
        grid.ravel() for grid in np.meshgrid(np.arange(subject_n), np.arange(emotion_n), np.arange(actor_n), np.arange(present_n), indexing="ij")
    )
    n_trials = len(s_idx)

    emotion_means = np.asarray(config.emotion_means, dtype=float)
    amplitude = (
        emotion_means[e_idx]
        + config.emotion_slope * p_idx
        + actor_intercepts[a_idx]
        + subject_intercepts[s_idx]
        + age_offsets[s_idx]
        + rng.normal(0.0, config.trial_sd, size=n_trials)
        + rng.normal(0.0, config.noise_sd, size=n_trials)
    )

    width = max(2, len(str(subject_n)))
    subject_ids = np.array([f"{i + 1:0{width}d}" for i in range(subject_n)])
    data = pd.DataFrame(
        {
            SUBJECT_COL: subject_ids[s_idx],
            AGE_COL: ages[s_idx],
            EMOTION_COL: np.asarray(config.emotion_labels)[e_idx],
            ACTOR_COL: (a_idx + 1).astype(str),
            PRESENT_COL: p_idx + 1,
            AMPLITUDE_COL: amplitude,
        }
    )
    return TrialDataset.from_frame(sample_id, data, config)


def simulate_samples(
    config: SimulationConfig,
    sample_n: int,
    sample_start: int = 1,
    seed: Optional[int] = None,
) -> Iterator[TrialDataset]:
    """Yield *sample_n* population samples with IDs ``"0001"``, ``"0002"``, ...

    Sample ``i`` is drawn from a generator seeded with ``seed + 4 * i``
    (``seed`` defaults to the config's run-level seed).

    Args:
        config: Simulation settings.
        sample_n: Number of samples.
        sample_start: ID of the first sample.
        seed: Run-level seed override.
    """
    if sample_n < 1:
        raise ValueError(f"sample_n must be >= 1, got {sample_n}")
    seed = config.seed if seed is None else seed
    for sample_number in range(sample_start, sample_start + sample_n):
        sample_seed = seed + 4 * sample_number if seed is not None else None
        yield simulate_sample(config, sample_number, np.random.default_rng(sample_seed))
