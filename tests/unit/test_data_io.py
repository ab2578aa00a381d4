"""Unit tests for erpower.utils.data_io: sample and output CSV files."""

import numpy as np
import pandas as pd
import pytest

from erpower.core.dataset import TrialDataset
from erpower.utils.data_io import (
    iter_sample_files,
    load_sample,
    load_samples,
    output_prefix,
    parse_sample_id,
    read_model_output,
    sample_filename,
    write_outputs,
    write_sample,
)


class TestFileNames:
    def test_sample_filename(self):
        assert sample_filename("0443") == "Sample0443-MeanAmpOutput.csv"

    def test_parse_sample_id(self, tmp_path):
        assert parse_sample_id(tmp_path / "Sample0443-MeanAmpOutput.csv") == "0443"

    def test_parse_sample_id_bad_name(self):
        with pytest.raises(ValueError, match="Cannot parse sample ID"):
            parse_sample_id("sample_443.csv")

    def test_output_prefix(self):
        assert output_prefix(1000, 50) == "sampleN1000_subN50"


class TestSampleFiles:
    """Samples written to disk load back unchanged."""

    def test_write_then_load(self, small_dataset, small_config, tmp_path):
        path = write_sample(small_dataset, tmp_path)
        assert path.name == "Sample0001-MeanAmpOutput.csv"

        loaded = load_sample(path, small_config)
        original = small_dataset.copy_data()
        assert loaded.sample_id == "0001"
        assert loaded.subjects == small_dataset.subjects
        pd.testing.assert_frame_equal(loaded.copy_data().drop(columns="meanAmpNC"), original.drop(columns="meanAmpNC"))
        np.testing.assert_allclose(loaded.copy_data()["meanAmpNC"], original["meanAmpNC"], rtol=1e-12)

    def test_missing_amplitudes_written_as_empty(self, small_dataset, tmp_path):
        data = small_dataset.copy_data()
        data.loc[0, "meanAmpNC"] = np.nan
        path = write_sample(TrialDataset("0007", data), tmp_path)
        first_row = path.read_text().splitlines()[1]
        assert first_row.endswith(",")
        assert np.isnan(load_sample(path).copy_data().loc[0, "meanAmpNC"])

    def test_interface_column_names_accepted(self, small_dataset, small_config, tmp_path):
        renamed = small_dataset.copy_data().rename(columns={"SUBJECTID": "subjectID", "ACTOR": "actorID", "meanAmpNC": "amplitude"})
        path = tmp_path / "Sample0002-MeanAmpOutput.csv"
        renamed.to_csv(path, index=False)
        loaded = load_sample(path, small_config)
        assert loaded.subjects == small_dataset.subjects
        assert "meanAmpNC" in loaded.copy_data().columns

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_sample(tmp_path / "Sample0001-MeanAmpOutput.csv")

    def test_folder_iteration_sorted(self, small_dataset, tmp_path):
        data = small_dataset.copy_data()
        for sample_id in ("0003", "0001", "0002"):
            write_sample(TrialDataset(sample_id, data), tmp_path)
        (tmp_path / "notes.csv").write_text("x\n1\n")

        assert [p.name[:10] for p in iter_sample_files(tmp_path)] == ["Sample0001", "Sample0002", "Sample0003"]
        assert [d.sample_id for d in load_samples(tmp_path)] == ["0001", "0002", "0003"]

    def test_empty_folder(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="No 'Sample"):
            list(load_samples(tmp_path))


class TestOutputs:
    def test_write_and_read_model_output(self, make_model_output, tmp_path):
        output = make_model_output([0.01, np.nan])
        counts = pd.DataFrame({"SUBJECTID": ["01"], "emotion": ["A"], "trialN": [50], "caseDeletionPct": ["0%"], "sample": ["0001"]})
        paths = write_outputs(tmp_path / "out", output, counts, sample_n=2, subject_n=50)

        assert paths["model_output"].name == "sampleN2_subN50_modelOutput.csv"
        assert paths["trial_counts"].name == "sampleN2_subN50_trialCount.csv"
        assert "failures" not in paths

        back = read_model_output(paths["model_output"])
        assert list(back["sample"]) == ["0001", "0002"]
        assert list(back["caseDeletionPct"]) == ["32%", "32%"]
        assert np.isnan(back["p.value"].iloc[1])
        assert back["inCL"].dtype == "boolean"

    def test_failure_manifest_written(self, make_model_output, tmp_path):
        failures = pd.DataFrame({"sample": ["0002"], "error": ["ValueError"], "message": ["bad"]})
        paths = write_outputs(tmp_path, make_model_output([0.01]), pd.DataFrame(), 2, 50, failures=failures)
        assert paths["failures"].name == "sampleN2_subN50_failures.csv"
        assert "0002" in paths["failures"].read_text()
