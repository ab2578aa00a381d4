"""
Sample and batch runners.

``SampleRunner`` drives one sample through the population fit and every
case-deletion percentage. ``BatchRunner`` repeats that for many samples,
sequentially or with joblib, and records samples that fail.
"""

import warnings
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..stats.mixed_models import DefaultModelFitter
from .config import AGE_COL, AMPLITUDE_COL, EMOTION_COL, POPULATION_TAG, SUBJECT_COL, SimulationConfig
from .dataset import TrialDataset, compute_missingness_weights
from .extraction import OUTPUT_COLUMNS, ModelOutputExtractor
from .missingness import InductionResult, MissingnessInducer

MODEL_OUTPUT_COLUMNS = OUTPUT_COLUMNS + ["caseDeletionPct", "sample"]
TRIAL_COUNT_COLUMNS = [SUBJECT_COL, EMOTION_COL, "trialN", "caseDeletionPct", "sample"]
FAILURE_COLUMNS = ["sample", "error", "message"]


def format_case_deletion_pct(pct) -> str:
    """Tag for a case-deletion percentage (``6 -> "6%"``, ``12.5 -> "12.5%"``)."""
    if isinstance(pct, str):
        return pct if pct.endswith("%") or pct == POPULATION_TAG else f"{pct}%"
    return f"{float(pct):g}%"


def sample_seed(seed: Optional[int], index: int, offset: int = 0) -> Optional[int]:
    """Per-sample seed ``seed + 4 * index + offset`` (``None`` stays ``None``).

    Offset 0 seeds data generation and offset 1 seeds missingness
    induction, so the two streams of one sample never coincide.
    """
    return seed + 4 * index + offset if seed is not None else None


@dataclass
class CaseDeletionRun:
    """Inputs prepared for one sample and case-deletion percentage.

    Attributes:
        case_deletion_pct: Percentage of low-count subjects.
        induction: Missingness induction outcome.
        lme_data: Full mutated trial-level data, low-count subjects included.
        anova_data: Subject x condition averages without low-count subjects.
    """

    case_deletion_pct: float
    induction: InductionResult
    lme_data: pd.DataFrame
    anova_data: pd.DataFrame

    @property
    def tag(self) -> str:
        return format_case_deletion_pct(self.case_deletion_pct)


@dataclass
class SampleResult:
    """Model-output and trial-count rows of one sample."""

    sample_id: str
    model_output: pd.DataFrame
    trial_counts: pd.DataFrame


@dataclass
class BatchResult:
    """Accumulated rows of a batch plus its failure manifest.

    Attributes:
        model_output: Model-output rows of every successful sample.
        trial_counts: Trial-count rows of every successful sample.
        failures: One row per failed sample (``sample, error, message``).
        n_samples_attempted: Samples the batch tried to run.
    """

    model_output: pd.DataFrame
    trial_counts: pd.DataFrame
    failures: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=FAILURE_COLUMNS))
    n_samples_attempted: int = 0

    @property
    def n_failed(self) -> int:
        return len(self.failures)

    @property
    def failed_samples(self) -> List[str]:
        return list(self.failures["sample"])


class SampleRunner:
    """Fit LME and ANOVA models to one sample under every case-deletion percentage.

    Args:
        config: Simulation settings.
        fitter: ``ModelFitter``; defaults to ``DefaultModelFitter`` with the
            config's sum-coded factors and confidence level.
    """

    def __init__(self, config: SimulationConfig, fitter: Any = None):
        self.config = config
        self.fitter = fitter if fitter is not None else DefaultModelFitter(sum_coded=config.sum_coded, conf_level=config.conf_level)
        self.inducer = MissingnessInducer(config)
        self.extractor = ModelOutputExtractor(config, self.fitter)

    @staticmethod
    def average_trials(data: pd.DataFrame, exclude_subjects: Sequence[str] = ()) -> pd.DataFrame:
        """Average amplitudes per subject, condition and age group.

        Missing amplitudes are ignored; subjects in *exclude_subjects* are
        removed first and cells with no remaining trials are dropped.
        """
        kept = data[~data[SUBJECT_COL].isin(list(exclude_subjects))]
        kept = kept[kept[AMPLITUDE_COL].notna()]
        averaged = kept.groupby([SUBJECT_COL, EMOTION_COL, AGE_COL], observed=True, sort=True)[AMPLITUDE_COL].mean()
        return averaged.reset_index()

    def fit_and_extract(self, lme_data: pd.DataFrame, anova_data: pd.DataFrame, tag: str) -> pd.DataFrame:
        """Fit both models and return their tagged output rows (LME first)."""
        lme = self.fitter.fit_lme(lme_data, self.config.lme_formula)
        anova = self.fitter.fit_anova(anova_data, subject=SUBJECT_COL, dv=AMPLITUDE_COL, between=[AGE_COL], within=EMOTION_COL)
        output = pd.concat(
            [self.extractor.extract(lme, "LME"), self.extractor.extract(anova, "ANOVA")],
            ignore_index=True,
        )
        output["caseDeletionPct"] = tag
        return output

    def run_case_deletion(
        self,
        dataset: TrialDataset,
        case_deletion_pct: float,
        rng: np.random.Generator,
        weighted: Optional[pd.DataFrame] = None,
    ) -> CaseDeletionRun:
        """Induce missingness and prepare the LME and ANOVA inputs."""
        induction = self.inducer.induce(dataset, case_deletion_pct, rng, weighted=weighted)
        return CaseDeletionRun(
            case_deletion_pct=case_deletion_pct,
            induction=induction,
            lme_data=induction.data,
            anova_data=self.average_trials(induction.data, exclude_subjects=induction.low_count_subjects),
        )

    def run(
        self,
        dataset: TrialDataset,
        case_deletion_pcts: Optional[Sequence[float]] = None,
        rng: Optional[np.random.Generator] = None,
        progress=None,
    ) -> SampleResult:
        """Run the population fit and every case-deletion percentage.

        Percentages are processed in order; duplicates are fitted again.
        Exceptions raised by a fit propagate.

        Args:
            dataset: Complete population sample.
            case_deletion_pcts: Percentages to run (default: from config).
            rng: Random generator for missingness induction.
            progress: Optional ``ProgressReporter`` advanced once per fit pair.

        Returns:
            SampleResult with rows tagged by sample ID.
        """
        pcts = self.config.case_deletion_pcts if case_deletion_pcts is None else tuple(case_deletion_pcts)
        rng = rng if rng is not None else np.random.default_rng()

        population = dataset.copy_data()
        outputs = [self.fit_and_extract(population, self.average_trials(population), POPULATION_TAG)]
        counts = []
        if progress is not None:
            progress.advance(1)

        weighted = compute_missingness_weights(population, self.config)
        for pct in pcts:
            run = self.run_case_deletion(dataset, pct, rng, weighted=weighted)
            outputs.append(self.fit_and_extract(run.lme_data, run.anova_data, run.tag))
            trial_counts = run.induction.trial_counts.copy()
            trial_counts["caseDeletionPct"] = run.tag
            counts.append(trial_counts)
            if progress is not None:
                progress.advance(1)

        model_output = pd.concat(outputs, ignore_index=True)
        model_output["sample"] = dataset.sample_id
        if counts:
            trial_counts = pd.concat(counts, ignore_index=True)
        else:
            trial_counts = pd.DataFrame(columns=TRIAL_COUNT_COLUMNS[:-1])
        trial_counts["sample"] = dataset.sample_id
        return SampleResult(
            sample_id=dataset.sample_id,
            model_output=model_output[MODEL_OUTPUT_COLUMNS],
            trial_counts=trial_counts[TRIAL_COUNT_COLUMNS],
        )


def _run_one_sample(
    config: SimulationConfig,
    fitter: Any,
    dataset: TrialDataset,
    seed: Optional[int],
) -> Tuple[str, Any]:
    """Run one sample, returning ``("ok", SampleResult)`` or ``("failed", (id, error, message))``."""
    try:
        runner = SampleRunner(config, fitter)
        return "ok", runner.run(dataset, rng=np.random.default_rng(seed))
    except Exception as e:
        return "failed", (dataset.sample_id, type(e).__name__, str(e))


class BatchRunner:
    """Run many samples and collect their rows.

    Args:
        config: Simulation settings (the run-level seed included).
        fitter: ``ModelFitter`` passed to every ``SampleRunner``.
        parallel: Process samples with joblib.
        n_cores: Worker processes for the parallel path.
        max_failed_samples: Share of failed samples above which a warning
            recommends checking the data.
    """

    def __init__(
        self,
        config: SimulationConfig,
        fitter: Any = None,
        parallel: bool = False,
        n_cores: int = 1,
        max_failed_samples: float = 0.1,
    ):
        self.config = config
        self.fitter = fitter if fitter is not None else DefaultModelFitter(sum_coded=config.sum_coded, conf_level=config.conf_level)
        self.parallel = parallel
        self.n_cores = n_cores
        self.max_failed_samples = max_failed_samples

    @property
    def runs_per_sample(self) -> int:
        return 1 + len(self.config.case_deletion_pcts)

    def _seeds(self, n: int) -> List[Optional[int]]:
        return [sample_seed(self.config.seed, i, offset=1) for i in range(n)]

    def _run_sequential(self, datasets, seeds, progress, cancel_check) -> List[Tuple[str, Any]]:
        from ..progress import SimulationCancelled

        outcomes = []
        for dataset, seed in zip(datasets, seeds):
            if cancel_check is not None and cancel_check():
                raise SimulationCancelled("Simulation cancelled by user")
            outcomes.append(_run_one_sample(self.config, self.fitter, dataset, seed))
            if progress is not None:
                progress.advance(self.runs_per_sample)
        return outcomes

    def _run_parallel(self, datasets, seeds, progress, cancel_check) -> List[Tuple[str, Any]]:
        from ..progress import SimulationCancelled

        try:
            from joblib import Parallel, delayed
        except ImportError:
            warnings.warn("joblib not available, continuing with sequential processing.", stacklevel=3)
            return self._run_sequential(datasets, seeds, progress, cancel_check)

        outcomes: List[Tuple[str, Any]] = []
        try:
            generator = Parallel(
                n_jobs=self.n_cores,
                backend="loky",
                verbose=0,
                return_as="generator",
            )(delayed(_run_one_sample)(self.config, self.fitter, dataset, seed) for dataset, seed in zip(datasets, seeds))
            for outcome in generator:
                if cancel_check is not None and cancel_check():
                    raise SimulationCancelled("Simulation cancelled by user")
                outcomes.append(outcome)
                if progress is not None:
                    progress.advance(self.runs_per_sample)
            return outcomes
        except Exception as e:
            if isinstance(e, SimulationCancelled):
                raise
            warnings.warn(f"Parallel execution failed ({e}). Falling back to sequential.", stacklevel=3)
            done = len(outcomes)
            return outcomes + self._run_sequential(datasets[done:], seeds[done:], progress, cancel_check)

    def run(
        self,
        datasets: Sequence[TrialDataset],
        progress=None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> BatchResult:
        """Run every dataset through ``SampleRunner``.

        Sample ``i`` of the batch draws its missingness from a generator
        seeded with ``seed + 4 * i + 1``, so sequential and parallel runs
        give identical rows.

        Args:
            datasets: Population samples.
            progress: Optional ``ProgressReporter``.
            cancel_check: Callable returning ``True`` to cancel.

        Returns:
            BatchResult.

        Raises:
            RuntimeError: If every sample fails.
            SimulationCancelled: If *cancel_check* requests cancellation.
        """
        datasets = list(datasets)
        if not datasets:
            raise ValueError("No datasets to run")

        seeds = self._seeds(len(datasets))
        if self.parallel and self.n_cores > 1 and len(datasets) > 1:
            outcomes = self._run_parallel(datasets, seeds, progress, cancel_check)
        else:
            outcomes = self._run_sequential(datasets, seeds, progress, cancel_check)

        results = [value for status, value in outcomes if status == "ok"]
        failures = pd.DataFrame([value for status, value in outcomes if status == "failed"], columns=FAILURE_COLUMNS)

        if not results:
            details = "; ".join(f"{row.sample}: {row.error}: {row.message}" for row in failures.itertuples())
            raise RuntimeError(f"All samples failed ({details})")

        n_failed = len(failures)
        if n_failed:
            failed_pct = n_failed / len(datasets)
            message = f"{n_failed} of {len(datasets)} samples failed ({failed_pct:.1%}): " + ", ".join(
                f"{row.sample} ({row.error}: {row.message})" for row in failures.itertuples()
            )
            if failed_pct > self.max_failed_samples:
                message += " - check data/model specification"
            warnings.warn(message, stacklevel=2)

        model_output = pd.concat([r.model_output for r in results], ignore_index=True)
        trial_counts = pd.concat([r.trial_counts for r in results], ignore_index=True)
        _warn_model_problems(model_output)

        return BatchResult(
            model_output=model_output,
            trial_counts=trial_counts,
            failures=failures,
            n_samples_attempted=len(datasets),
        )


def _warn_model_problems(model_output: pd.DataFrame, threshold: float = 0.10):
    """Warn when more than *threshold* of LME fits were flagged."""
    lme = model_output[model_output["modelType"] == "LME"]
    if len(lme) == 0:
        return
    # One block of label rows per fit; a repeated percentage is a separate fit
    fit_id = (lme["emotion"] == lme["emotion"].iloc[0]).cumsum()
    lme = lme.groupby(fit_id.to_numpy(), sort=False).first()
    flagged = lme["modelProblem"] != "none"
    rate = flagged.mean()
    if rate > threshold:
        breakdown = lme.loc[flagged, "modelProblem"].value_counts().to_dict()
        warnings.warn(
            f"{int(flagged.sum())}/{len(lme)} LME fits were flagged ({rate:.1%}): {breakdown}. "
            "Flagged fits count as non-detections in the power calculation.",
            stacklevel=3,
        )
