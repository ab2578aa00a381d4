"""Unit tests for erpower.core.simulation: sample and batch runners."""

import numpy as np
import pandas as pd
import pytest

from erpower.core.simulation import (
    FAILURE_COLUMNS,
    MODEL_OUTPUT_COLUMNS,
    TRIAL_COUNT_COLUMNS,
    BatchRunner,
    SampleRunner,
    _warn_model_problems,
    format_case_deletion_pct,
    sample_seed,
)
from erpower.core.dataset import TrialDataset
from erpower.progress import ProgressReporter, SimulationCancelled
from erpower.stats.data_generation import simulate_sample
from tests.config import ROWS_PER_SAMPLE, SEED


def _broken_dataset(dataset, sample_id="0002"):
    """Copy of *dataset* where the first subject has no condition-B trials."""
    data = dataset.copy_data()
    first = data["SUBJECTID"].min()
    data = data[~((data["SUBJECTID"] == first) & (data["emotion"] == "B"))].reset_index(drop=True)
    return TrialDataset(sample_id, data)


class TestHelpers:
    @pytest.mark.parametrize("pct, tag", [(0, "0%"), (6, "6%"), (12.5, "12.5%"), (32.0, "32%"), ("11", "11%"), ("Pop.", "Pop.")])
    def test_format_case_deletion_pct(self, pct, tag):
        assert format_case_deletion_pct(pct) == tag

    def test_sample_seed(self):
        assert sample_seed(100, 0) == 100
        assert sample_seed(100, 3, offset=1) == 113
        assert sample_seed(None, 3) is None


class TestAverageTrials:
    def test_population_average(self, small_dataset, small_config):
        averaged = SampleRunner.average_trials(small_dataset.copy_data())
        assert list(averaged.columns) == ["SUBJECTID", "emotion", "age", "meanAmpNC"]
        assert len(averaged) == small_config.subject_n * small_config.emotion_n

    def test_ignores_missing_and_excluded(self, small_dataset):
        data = small_dataset.copy_data()
        first = data["SUBJECTID"].min()
        cell = (data["SUBJECTID"] == first) & (data["emotion"] == "A")
        expected = data.loc[cell, "meanAmpNC"].iloc[1:].mean()
        data.loc[cell[cell].index[0], "meanAmpNC"] = np.nan

        averaged = SampleRunner.average_trials(data)
        row = averaged[(averaged["SUBJECTID"] == first) & (averaged["emotion"] == "A")]
        assert row["meanAmpNC"].iloc[0] == pytest.approx(expected)

        excluded = SampleRunner.average_trials(data, exclude_subjects=[first])
        assert first not in set(excluded["SUBJECTID"])


class TestSampleRunner:
    """One sample through the population fit and every percentage."""

    def test_rows_per_sample(self, small_dataset, small_config):
        result = SampleRunner(small_config).run(small_dataset, rng=np.random.default_rng(SEED))
        output = result.model_output
        assert len(output) == ROWS_PER_SAMPLE
        assert list(output.columns) == MODEL_OUTPUT_COLUMNS
        assert list(pd.unique(output["caseDeletionPct"])) == ["Pop.", "0%", "6%", "11%", "32%"]
        assert (output["sample"] == "0001").all()

    @pytest.mark.lme
    def test_published_design(self, full_dataset, default_config):
        # 50 subjects with 50 trials per condition, four percentages
        result = SampleRunner(default_config).run(full_dataset, rng=np.random.default_rng(SEED))
        output = result.model_output
        assert len(output) == ROWS_PER_SAMPLE
        assert list(pd.unique(output["caseDeletionPct"])) == ["Pop.", "0%", "6%", "11%", "32%"]
        assert (output["sample"] == "0443").all()
        assert len(result.trial_counts) == 4 * default_config.subject_n * default_config.emotion_n
        assert result.trial_counts["trialN"].max() <= default_config.emotion_trial_n

    def test_block_layout(self, small_dataset, small_config):
        output = SampleRunner(small_config).run(small_dataset, rng=np.random.default_rng(SEED)).model_output
        block = output.iloc[:6]
        assert list(block["modelType"]) == ["LME"] * 3 + ["ANOVA"] * 3
        assert list(block["emotion"]) == ["A", "B", "A - B"] * 2

    def test_anova_never_flagged(self, small_dataset, small_config):
        output = SampleRunner(small_config).run(small_dataset, rng=np.random.default_rng(SEED)).model_output
        anova = output[output["modelType"] == "ANOVA"]
        assert (anova["modelProblem"] == "none").all()
        assert anova["p.value"].notna().all()

    def test_trial_counts(self, small_dataset, small_config):
        result = SampleRunner(small_config).run(small_dataset, rng=np.random.default_rng(SEED))
        counts = result.trial_counts
        assert list(counts.columns) == TRIAL_COUNT_COLUMNS
        assert len(counts) == len(small_config.case_deletion_pcts) * small_config.subject_n * small_config.emotion_n
        assert "Pop." not in set(counts["caseDeletionPct"])

    def test_no_percentages(self, small_dataset, small_config):
        result = SampleRunner(small_config).run(small_dataset, case_deletion_pcts=(), rng=np.random.default_rng(SEED))
        assert len(result.model_output) == 6
        assert len(result.trial_counts) == 0
        assert list(result.trial_counts.columns) == TRIAL_COUNT_COLUMNS

    def test_duplicate_percentages_fitted_twice(self, small_dataset, small_config):
        result = SampleRunner(small_config).run(small_dataset, case_deletion_pcts=(6, 6), rng=np.random.default_rng(SEED))
        assert (result.model_output["caseDeletionPct"] == "6%").sum() == 12

    def test_reproducible(self, small_dataset, small_config):
        runner = SampleRunner(small_config)
        first = runner.run(small_dataset, rng=np.random.default_rng(SEED)).model_output
        second = runner.run(small_dataset, rng=np.random.default_rng(SEED)).model_output
        pd.testing.assert_frame_equal(first, second)

    def test_progress_advances_once_per_fit_pair(self, small_dataset, small_config):
        calls = []
        progress = ProgressReporter(5, lambda current, total: calls.append(current), update_every=1)
        SampleRunner(small_config).run(small_dataset, rng=np.random.default_rng(SEED), progress=progress)
        assert calls == [1, 2, 3, 4, 5]

    def test_dataset_unchanged(self, small_dataset, small_config):
        before = small_dataset.copy_data()
        SampleRunner(small_config).run(small_dataset, rng=np.random.default_rng(SEED))
        pd.testing.assert_frame_equal(small_dataset.copy_data(), before)

    def test_missing_cell_raises(self, small_dataset, small_config):
        with pytest.raises(ValueError):
            SampleRunner(small_config).run(_broken_dataset(small_dataset), rng=np.random.default_rng(SEED))


class TestCaseDeletionInputs:
    """The ANOVA loses low-count subjects, the LME keeps every subject."""

    def test_row_counts_at_32_percent(self, full_dataset, default_config):
        run = SampleRunner(default_config).run_case_deletion(full_dataset, 32, np.random.default_rng(SEED))
        assert run.tag == "32%"
        assert len(run.induction.low_count_subjects) == 16
        assert len(run.anova_data) == (50 - 16) * 2
        assert len(run.lme_data) == 5000
        assert run.lme_data["SUBJECTID"].nunique() == 50
        assert not set(run.induction.low_count_subjects) & set(run.anova_data["SUBJECTID"])


class TestBatchRunner:
    """Batch execution, failure manifest and seeding."""

    def test_rows_accumulate(self, small_config):
        datasets = [simulate_sample(small_config, i, np.random.default_rng(SEED + i)) for i in (1, 2)]
        batch = BatchRunner(small_config).run(datasets)
        assert len(batch.model_output) == 2 * ROWS_PER_SAMPLE
        assert list(pd.unique(batch.model_output["sample"])) == ["0001", "0002"]
        assert batch.n_failed == 0
        assert batch.n_samples_attempted == 2

    def test_failed_sample_recorded(self, small_dataset, small_config):
        broken = _broken_dataset(small_dataset)
        with pytest.warns(UserWarning, match="1 of 2 samples failed"):
            batch = BatchRunner(small_config).run([small_dataset, broken])
        assert list(batch.failures.columns) == FAILURE_COLUMNS
        assert batch.failed_samples == ["0002"]
        assert batch.failures["error"].iloc[0] == "ValueError"
        assert set(batch.model_output["sample"]) == {"0001"}

    def test_high_failure_share_recommends_check(self, small_dataset, small_config):
        broken = _broken_dataset(small_dataset)
        with pytest.warns(UserWarning, match="check data/model specification"):
            BatchRunner(small_config, max_failed_samples=0.1).run([small_dataset, broken])

    def test_all_failed(self, small_dataset, small_config):
        with pytest.raises(RuntimeError, match="All samples failed"):
            BatchRunner(small_config).run([_broken_dataset(small_dataset)])

    def test_no_datasets(self, small_config):
        with pytest.raises(ValueError, match="No datasets"):
            BatchRunner(small_config).run([])

    def test_cancel(self, small_dataset, small_config):
        with pytest.raises(SimulationCancelled):
            BatchRunner(small_config).run([small_dataset], cancel_check=lambda: True)

    def test_seeded_batches_identical(self, small_dataset, small_config):
        first = BatchRunner(small_config).run([small_dataset]).model_output
        second = BatchRunner(small_config).run([small_dataset]).model_output
        pd.testing.assert_frame_equal(first, second)

    def test_runs_per_sample(self, default_config):
        assert BatchRunner(default_config).runs_per_sample == 5


class TestModelProblemWarning:
    """The flagged-fit rate counts every LME fit once."""

    def _output(self, problems):
        rows = []
        for tag, problem in zip(["Pop.", "6%", "6%"], problems):
            for model_type in ("LME", "ANOVA"):
                for label in ("A", "B", "A - B"):
                    rows.append(
                        {
                            "emotion": label,
                            "modelProblem": problem if model_type == "LME" else "none",
                            "modelType": model_type,
                            "caseDeletionPct": tag,
                            "sample": "0001",
                        }
                    )
        return pd.DataFrame(rows)

    def test_repeated_percentage_counted_per_fit(self):
        with pytest.warns(UserWarning, match=r"1/3 LME fits were flagged"):
            _warn_model_problems(self._output(["none", "singular-fit", "none"]))

    def test_below_threshold(self, recwarn):
        _warn_model_problems(self._output(["none"] * 3), threshold=0.10)
        assert len(recwarn) == 0
