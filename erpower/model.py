"""
ERPower facade.

Wires the generator, batch runner and power calculation together behind a
small chainable API.
"""

import multiprocessing as mp
from pathlib import Path
from typing import Any, List, Optional, Sequence, Union

import pandas as pd

from .core.config import SimulationConfig
from .core.dataset import TrialDataset
from .core.results import compute_power, power_table
from .core.simulation import BatchResult, BatchRunner
from .stats.data_generation import simulate_samples
from .utils.validators import (
    _validate_alpha,
    _validate_case_deletion_pcts,
    _validate_numeric_parameter,
    _validate_parallel_settings,
    _validate_seed,
)


class ERPower:
    """ERP missing-data simulation: LME vs. repeated-measures ANOVA.

    Args:
        config: Simulation settings; keyword *settings* override single
            fields (e.g. ``ERPower(subject_n=30)``).

    Example:
        >>> model = ERPower(subject_n=50)
        >>> model.set_seed(20210329).set_parallel(True, n_cores=4)
        >>> model.find_power(sample_n=100, case_deletion_pct=32)
    """

    def __init__(self, config: Optional[SimulationConfig] = None, **settings):
        if config is None:
            config = SimulationConfig(**settings)
        elif settings:
            config = config.replace(**settings)
        self.config = config
        self.fitter: Any = None

        self.parallel = False
        self.n_cores = max(1, (mp.cpu_count() or 1) // 2)
        self.max_failed_samples = 0.1

        self.last_result: Optional[BatchResult] = None

    # =========================================================================
    # Configuration methods
    # =========================================================================

    def set_seed(self, seed: Optional[int] = None):
        """Set the run-level random seed (``None`` for fresh entropy).

        Returns:
            self: For method chaining.
        """
        _validate_seed(seed).raise_if_invalid()
        self.config = self.config.replace(seed=seed)
        return self

    def set_alpha(self, alpha: float):
        """Set the significance level used by ``find_power``."""
        _validate_alpha(alpha).raise_if_invalid()
        self.config = self.config.replace(alpha=float(alpha))
        return self

    def set_case_deletion(self, pcts: Sequence[float]):
        """Set the case-deletion percentages, processed in the given order."""
        result = _validate_case_deletion_pcts(tuple(pcts))
        result.raise_if_invalid()
        for warning in result.warnings:
            print(f"Warning: {warning}")
        self.config = self.config.replace(case_deletion_pcts=tuple(pcts))
        return self

    def set_parallel(self, enable: bool = True, n_cores: Optional[int] = None):
        """Enable or disable parallel processing of samples.

        Requires ``joblib``; falls back to sequential processing with a
        warning if it is unavailable.

        Args:
            enable: Process samples in parallel.
            n_cores: Worker processes. Defaults to ``cpu_count // 2``.

        Returns:
            self: For method chaining.
        """
        _validate_parallel_settings(enable, n_cores).raise_if_invalid()
        if enable is False:
            self.parallel, self.n_cores = False, 1
            return self

        try:
            import joblib  # noqa: F401
        except ImportError:
            print("Warning: joblib not available. Install with: pip install joblib")
            print("Warning: Continuing with sequential processing.")
            self.parallel = False
            return self

        self.parallel = True
        if n_cores is not None:
            self.n_cores = n_cores
        return self

    def set_max_failed_samples(self, percentage: float):
        """Share of failed samples (0-1) above which the batch warning escalates."""
        _validate_numeric_parameter(percentage, "max_failed_samples", min_val=0, max_val=1).raise_if_invalid()
        self.max_failed_samples = float(percentage)
        return self

    def set_fitter(self, fitter: Any):
        """Use a custom ``ModelFitter`` instead of the default solvers."""
        from .stats.mixed_models import ModelFitter

        if not isinstance(fitter, ModelFitter):
            raise TypeError(f"fitter must implement the ModelFitter protocol, got {type(fitter).__name__}")
        self.fitter = fitter
        return self

    # =========================================================================
    # Running
    # =========================================================================

    def simulate(self, sample_n: int, sample_start: int = 1, folder: Optional[Union[str, Path]] = None) -> List[TrialDataset]:
        """Generate *sample_n* population samples, optionally writing them as CSV."""
        datasets = list(simulate_samples(self.config, sample_n, sample_start=sample_start))
        if folder is not None:
            from .utils.data_io import write_sample

            for dataset in datasets:
                write_sample(dataset, folder)
        return datasets

    def run(
        self,
        datasets: Optional[Sequence[TrialDataset]] = None,
        sample_n: Optional[int] = None,
        input_folder: Optional[Union[str, Path]] = None,
        output_folder: Optional[Union[str, Path]] = None,
        progress_callback=None,
        cancel_check=None,
    ) -> BatchResult:
        """Run the LME/ANOVA comparison over a batch of samples.

        Samples come from *datasets*, from the CSV files in *input_folder*,
        or are simulated (*sample_n* of them), in that order of preference.

        Args:
            datasets: Population samples.
            sample_n: Samples to simulate when no datasets are given.
            input_folder: Folder of ``Sample{ID}-MeanAmpOutput.csv`` files.
            output_folder: Where to write the model-output, trial-count and
                failure CSVs.
            progress_callback: ``None`` for a console ``PrintReporter``,
                ``False`` to disable, or a callable ``(current, total)``.
            cancel_check: Optional callable returning ``True`` to abort.

        Returns:
            BatchResult.
        """
        from .progress import PrintReporter, ProgressReporter, compute_total_runs

        if datasets is None:
            if input_folder is not None:
                from .utils.data_io import load_samples

                datasets = list(load_samples(input_folder, self.config))
            elif sample_n is not None:
                datasets = self.simulate(sample_n)
            else:
                raise ValueError("Provide datasets, an input_folder, or sample_n")
        datasets = list(datasets)

        if progress_callback is None:
            effective_cb = PrintReporter()
        elif progress_callback is False:
            effective_cb = None
        else:
            effective_cb = progress_callback

        reporter = None
        if effective_cb is not None:
            reporter = ProgressReporter(compute_total_runs(len(datasets), len(self.config.case_deletion_pcts)), effective_cb)
            reporter.start()

        runner = BatchRunner(
            self.config,
            fitter=self.fitter,
            parallel=self.parallel,
            n_cores=self.n_cores,
            max_failed_samples=self.max_failed_samples,
        )
        result = runner.run(datasets, progress=reporter, cancel_check=cancel_check)

        if reporter is not None:
            reporter.finish()

        if output_folder is not None:
            from .utils.data_io import write_outputs

            write_outputs(
                output_folder,
                result.model_output,
                result.trial_counts,
                sample_n=result.n_samples_attempted,
                subject_n=self.config.subject_n,
                failures=result.failures,
            )

        self.last_result = result
        return result

    def find_power(
        self,
        sample_n: Optional[int] = None,
        condition: str = "A - B",
        model_type: str = "LME",
        case_deletion_pct="32%",
        datasets: Optional[Sequence[TrialDataset]] = None,
        print_results: bool = True,
        return_results: bool = False,
        progress_callback=None,
        cancel_check=None,
    ):
        """Estimate power to detect *condition* for one model and percentage.

        Runs a batch (unless *datasets* is ``None`` and a previous batch
        exists with no *sample_n* given) and divides detections by the
        number of samples attempted.

        Returns:
            float or None: Power in percent when *return_results* is ``True``.
        """
        if datasets is not None or sample_n is not None or self.last_result is None:
            if datasets is None and sample_n is None:
                raise ValueError("Provide sample_n or datasets")
            if progress_callback is None and not print_results:
                progress_callback = False
            self.run(datasets=datasets, sample_n=sample_n, progress_callback=progress_callback, cancel_check=cancel_check)

        result = self.last_result
        power = compute_power(
            result.model_output,
            condition=condition,
            model_type=model_type,
            case_deletion_pct=case_deletion_pct,
            sample_n=result.n_samples_attempted,
            alpha=self.config.alpha,
        )

        if print_results:
            print(f"\n{'=' * 80}")
            print("ERP MISSING-DATA SIMULATION RESULTS")
            print(f"{'=' * 80}")
            print(f"Samples: {result.n_samples_attempted} ({result.n_failed} failed), subjects per sample: {self.config.subject_n}")
            print(f"Power for '{condition}' ({model_type}, {case_deletion_pct}): {power:.1f}%")
            print()
            print(self.summary(condition=condition).to_string(index=False))

        return power if return_results else None

    def summary(self, condition: str = "A - B") -> pd.DataFrame:
        """Power, coverage and model-problem rate of the last batch."""
        if self.last_result is None:
            raise RuntimeError("No batch has been run yet")
        return power_table(
            self.last_result.model_output,
            sample_n=self.last_result.n_samples_attempted,
            condition=condition,
            alpha=self.config.alpha,
            case_deletion_pcts=self.config.case_deletion_pcts,
        )
