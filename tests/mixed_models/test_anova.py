"""Tests for the mixed-design ANOVA (erpower.stats.anova)."""

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from erpower.stats.anova import anova_emmeans, fit_mixed_anova
from tests.config import SEED


def _averages(n_older=6, n_younger=4, seed=SEED):
    """Subject x condition averages with an unbalanced age split."""
    rng = np.random.default_rng(seed)
    rows = []
    n = n_older + n_younger
    for s in range(n):
        age = "older" if s < n_older else "younger"
        subject_mean = rng.normal(0, 2)
        for emotion, shift in (("A", 1.0), ("B", -1.0)):
            rows.append((f"{s + 1:02d}", emotion, age, subject_mean + shift + rng.normal()))
    frame = pd.DataFrame(rows, columns=["SUBJECTID", "emotion", "age", "meanAmpNC"])
    frame["emotion"] = pd.Categorical(frame["emotion"], categories=["A", "B"])
    return frame


class TestWithinOnly:
    """Without between factors the contrast is a paired t-test."""

    def test_contrast_matches_paired_t(self):
        data = _averages()
        fit = fit_mixed_anova(data, subject="SUBJECTID", dv="meanAmpNC", within="emotion")
        table = anova_emmeans(fit, "emotion")

        a = data[data["emotion"] == "A"].sort_values("SUBJECTID")["meanAmpNC"].to_numpy()
        b = data[data["emotion"] == "B"].sort_values("SUBJECTID")["meanAmpNC"].to_numpy()
        t_stat, p_value = stats.ttest_rel(a, b)

        row = table.contrasts.iloc[0]
        assert row["contrast"] == "A - B"
        assert row["estimate"] == pytest.approx(np.mean(a - b))
        assert row["SE"] == pytest.approx(np.std(a - b, ddof=1) / np.sqrt(len(a)))
        assert row["df"] == len(a) - 1
        assert row["t.ratio"] == pytest.approx(t_stat)
        assert row["p.value"] == pytest.approx(p_value)

    def test_condition_means(self):
        data = _averages()
        fit = fit_mixed_anova(data, subject="SUBJECTID", dv="meanAmpNC", within="emotion")
        table = anova_emmeans(fit, "emotion")
        expected = data.groupby("emotion", observed=True)["meanAmpNC"].mean()
        np.testing.assert_allclose(table.emmeans["estimate"], expected.to_numpy())
        assert table.levels == ["A", "B"]


class TestMixedDesign:
    """Between factor crossed with the within factor."""

    def test_condition_means_weight_cells_equally(self):
        data = _averages(n_older=7, n_younger=3)
        fit = fit_mixed_anova(data, subject="SUBJECTID", dv="meanAmpNC", between=["age"], within="emotion")
        table = anova_emmeans(fit, "emotion")

        cell_means = data.groupby(["age", "emotion"], observed=True)["meanAmpNC"].mean().unstack()
        expected = cell_means.mean(axis=0)
        np.testing.assert_allclose(table.emmeans["estimate"], expected[["A", "B"]].to_numpy())

    def test_residual_df(self):
        data = _averages(n_older=7, n_younger=3)
        fit = fit_mixed_anova(data, subject="SUBJECTID", dv="meanAmpNC", between=["age"], within="emotion")
        assert fit.df_error == 10 - 2
        assert fit.n_subjects == 10
        assert list(fit.cell_sizes) == [7, 3]
        assert (anova_emmeans(fit, "emotion").emmeans["df"] == 8).all()

    def test_contrast_se_from_pooled_covariance(self):
        data = _averages(n_older=7, n_younger=3)
        fit = fit_mixed_anova(data, subject="SUBJECTID", dv="meanAmpNC", between=["age"], within="emotion")

        wide = data.pivot(index="SUBJECTID", columns="emotion", values="meanAmpNC")
        ages = data.groupby("SUBJECTID")["age"].first()
        diff = wide["A"] - wide["B"]
        groups = [diff[ages == level] for level in ("older", "younger")]
        pooled_var = sum(((g - g.mean()) ** 2).sum() for g in groups) / (len(diff) - 2)
        expected_se = 0.5 * np.sqrt(pooled_var * sum(1 / len(g) for g in groups))

        row = anova_emmeans(fit, "emotion").contrasts.iloc[0]
        assert row["estimate"] == pytest.approx(0.5 * sum(g.mean() for g in groups))
        assert row["SE"] == pytest.approx(expected_se)

    def test_between_factor_means(self):
        data = _averages()
        fit = fit_mixed_anova(data, subject="SUBJECTID", dv="meanAmpNC", between=["age"], within="emotion")
        table = anova_emmeans(fit, "age")
        assert table.levels == ["older", "younger"]
        assert list(table.contrasts["contrast"]) == ["older - younger"]


class TestAnovaErrors:
    def test_missing_cell(self):
        data = _averages().iloc[1:]
        with pytest.raises(ValueError, match="missing a 'emotion' cell"):
            fit_mixed_anova(data, subject="SUBJECTID", dv="meanAmpNC", between=["age"], within="emotion")

    def test_missing_dv(self):
        data = _averages()
        data.loc[0, "meanAmpNC"] = np.nan
        with pytest.raises(ValueError, match="missing values"):
            fit_mixed_anova(data, subject="SUBJECTID", dv="meanAmpNC", within="emotion")

    def test_missing_column(self):
        with pytest.raises(ValueError, match="Missing ANOVA columns"):
            fit_mixed_anova(_averages(), subject="SUBJECTID", dv="amplitude", within="emotion")

    def test_within_required(self):
        with pytest.raises(ValueError, match="within-subject factor"):
            fit_mixed_anova(_averages(), subject="SUBJECTID", dv="meanAmpNC")

    def test_between_factor_varies_within_subject(self):
        data = _averages()
        data.loc[0, "age"] = "younger"
        with pytest.raises(ValueError, match="varies within subjects"):
            fit_mixed_anova(data, subject="SUBJECTID", dv="meanAmpNC", between=["age"], within="emotion")

    def test_not_enough_subjects(self):
        data = _averages(n_older=1, n_younger=1)
        with pytest.raises(ValueError, match="Not enough subjects"):
            fit_mixed_anova(data, subject="SUBJECTID", dv="meanAmpNC", between=["age"], within="emotion")

    def test_unknown_factor(self):
        fit = fit_mixed_anova(_averages(), subject="SUBJECTID", dv="meanAmpNC", within="emotion")
        with pytest.raises(ValueError, match="not a factor"):
            anova_emmeans(fit, "age")

    def test_duplicates_averaged_with_warning(self):
        data = _averages()
        doubled = pd.concat([data, data], ignore_index=True)
        with pytest.warns(UserWarning, match="aggregating"):
            fit = fit_mixed_anova(doubled, subject="SUBJECTID", dv="meanAmpNC", within="emotion")
        reference = fit_mixed_anova(data, subject="SUBJECTID", dv="meanAmpNC", within="emotion")
        np.testing.assert_allclose(fit.cell_means, reference.cell_means)
