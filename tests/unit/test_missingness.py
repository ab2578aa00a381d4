"""Unit tests for erpower.core.missingness: induction and trial counting."""

import numpy as np
import pandas as pd
import pytest

from erpower.core.missingness import MissingnessInducer, count_trials
from tests.config import SEED


class TestCountTrials:
    """Test the per-subject, per-condition trial counter."""

    def test_complete_sample_counts_every_trial(self, full_dataset, default_config):
        counts = count_trials(full_dataset.copy_data(), default_config.emotion_labels)
        assert len(counts) == default_config.subject_n * default_config.emotion_n
        assert (counts["trialN"] == default_config.emotion_trial_n).all()

    def test_columns_and_order(self, small_dataset, small_config):
        counts = count_trials(small_dataset.copy_data(), small_config.emotion_labels)
        assert list(counts.columns) == ["SUBJECTID", "emotion", "trialN"]
        assert list(counts["emotion"][:2]) == ["A", "B"]
        assert list(counts["SUBJECTID"]) == sorted(counts["SUBJECTID"])

    def test_zero_counts_included(self, small_dataset, small_config):
        data = small_dataset.copy_data()
        first = data["SUBJECTID"].min()
        data.loc[(data["SUBJECTID"] == first) & (data["emotion"] == "B"), "meanAmpNC"] = np.nan
        counts = count_trials(data, small_config.emotion_labels)
        row = counts[(counts["SUBJECTID"] == first) & (counts["emotion"] == "B")]
        assert int(row["trialN"].iloc[0]) == 0


class TestCaseDeletionN:
    @pytest.mark.parametrize("pct, expected", [(0, 0), (6, 3), (11, 6), (32, 16), (100, 50)])
    def test_rounds_up(self, default_config, pct, expected):
        assert MissingnessInducer(default_config).case_deletion_n(pct, 50) == expected


class TestInduce:
    """Properties of a single induction."""

    @pytest.mark.parametrize("pct", [6, 11, 32])
    def test_low_count_subjects_below_threshold(self, full_dataset, default_config, pct):
        result = MissingnessInducer(default_config).induce(full_dataset, pct, np.random.default_rng(SEED))
        counts = result.trial_counts
        for subject in result.low_count_subjects:
            subject_counts = counts.loc[counts["SUBJECTID"] == subject, "trialN"]
            assert (subject_counts < default_config.min_trials).any()

    @pytest.mark.parametrize("pct", [0, 6, 11, 32])
    def test_other_subjects_keep_threshold(self, full_dataset, default_config, pct):
        result = MissingnessInducer(default_config).induce(full_dataset, pct, np.random.default_rng(SEED))
        counts = result.trial_counts
        others = counts[~counts["SUBJECTID"].isin(result.low_count_subjects)]
        assert (others["trialN"] >= default_config.min_trials).all()

    def test_low_count_subject_number(self, full_dataset, default_config):
        result = MissingnessInducer(default_config).induce(full_dataset, 11, np.random.default_rng(SEED))
        assert len(result.low_count_subjects) == 6
        assert len(set(result.low_count_subjects)) == 6
        assert set(result.low_count_subjects) <= set(full_dataset.subjects)

    def test_all_subjects_low_count_at_100(self, small_dataset, small_config):
        result = MissingnessInducer(small_config).induce(small_dataset, 100, np.random.default_rng(SEED))
        assert sorted(result.low_count_subjects) == small_dataset.subjects

    def test_trial_counts_match_data(self, full_dataset, default_config):
        result = MissingnessInducer(default_config).induce(full_dataset, 32, np.random.default_rng(SEED))
        recount = count_trials(result.data, default_config.emotion_labels)
        pd.testing.assert_frame_equal(result.trial_counts, recount)

    def test_dataset_not_mutated(self, full_dataset, default_config):
        MissingnessInducer(default_config).induce(full_dataset, 32, np.random.default_rng(SEED))
        assert full_dataset.copy_data()["meanAmpNC"].notna().all()

    def test_only_amplitudes_change(self, full_dataset, default_config):
        result = MissingnessInducer(default_config).induce(full_dataset, 32, np.random.default_rng(SEED))
        original = full_dataset.copy_data()
        assert list(result.data.columns) == list(original.columns)
        pd.testing.assert_frame_equal(result.data.drop(columns="meanAmpNC"), original.drop(columns="meanAmpNC"))
        kept = result.data["meanAmpNC"].notna()
        np.testing.assert_array_equal(result.data.loc[kept, "meanAmpNC"], original.loc[kept, "meanAmpNC"])

    def test_reproducible_with_seed(self, full_dataset, default_config):
        inducer = MissingnessInducer(default_config)
        first = inducer.induce(full_dataset, 11, np.random.default_rng(SEED))
        second = inducer.induce(full_dataset, 11, np.random.default_rng(SEED))
        assert first.low_count_subjects == second.low_count_subjects
        pd.testing.assert_frame_equal(first.data, second.data)

    def test_later_presentations_go_missing_more_often(self, full_dataset, default_config):
        result = MissingnessInducer(default_config).induce(full_dataset, 32, np.random.default_rng(SEED))
        missing = result.data[result.data["meanAmpNC"].isna()]
        late_share = (missing["presentNumber"] > default_config.present_n / 2).mean()
        assert late_share > 0.5

    @pytest.mark.parametrize("pct", [-1, 100.5])
    def test_percentage_out_of_range(self, small_dataset, small_config, pct):
        with pytest.raises(ValueError, match="case_deletion_pct"):
            MissingnessInducer(small_config).induce(small_dataset, pct, np.random.default_rng(SEED))

    def test_zero_weight_age_group_cannot_fill_draw(self, small_dataset, small_config):
        config = small_config.replace(age_weight_younger=1.0)
        with pytest.raises(ValueError, match="positive age weight"):
            MissingnessInducer(config).induce(small_dataset, 100, np.random.default_rng(SEED))

    def test_single_age_group_fills_configured_draw(self, small_dataset, small_config):
        config = small_config.replace(age_weight_younger=1.0, case_deletion_pcts=(50,))
        result = MissingnessInducer(config).induce(small_dataset, 50, np.random.default_rng(SEED))
        ages = small_dataset.copy_data().groupby("SUBJECTID")["age"].first()
        assert len(result.low_count_subjects) == 10
        assert set(ages[result.low_count_subjects]) == {config.younger_label}

    def test_extreme_presentation_share_still_draws(self, small_dataset, small_config):
        config = small_config.replace(present_weight_late=0.99)
        result = MissingnessInducer(config).induce(small_dataset, 0, np.random.default_rng(SEED))
        assert result.data["meanAmpNC"].isna().any()


class TestZeroPercentCharacteristic:
    """0 % case deletion still induces missing trials.

    No subject is forced below the threshold, but every subject draws a
    random number of missing trials in [0, threshold] per condition.
    """

    def test_zero_percent_still_drops_trials(self, full_dataset, default_config):
        result = MissingnessInducer(default_config).induce(full_dataset, 0, np.random.default_rng(SEED))
        assert result.low_count_subjects == []
        assert result.data["meanAmpNC"].isna().sum() > 0
        assert (result.trial_counts["trialN"] < default_config.emotion_trial_n).any()
        assert (result.trial_counts["trialN"] >= default_config.min_trials).all()
