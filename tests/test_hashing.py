"""
Tests for input hashing, metadata sidecars and cache validation.
"""

import pytest

from imd_crime.hashing import (
    describe_inputs,
    hash_dict,
    hash_file,
    hash_file_set,
    sidecar_path,
    validate_cache,
    write_metadata_sidecar,
)
from imd_crime.io_utils import read_json


@pytest.fixture
def crime_files(tmp_path):
    paths = []
    for month in ("2019-01", "2019-02"):
        path = tmp_path / f"{month}-metropolitan-street.csv"
        path.write_text(f"Month,LSOA code\n{month},E01000001\n")
        paths.append(path)
    return paths


class TestHashing:

    def test_hash_file_is_stable(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_text("x")
        assert hash_file(path) == hash_file(path)
        assert len(hash_file(path)) == 64

    def test_hash_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            hash_file(tmp_path / "absent.csv")

    def test_file_set_ignores_order(self, crime_files):
        assert hash_file_set(crime_files) == hash_file_set(list(reversed(crime_files)))

    def test_file_set_changes_with_content(self, crime_files):
        before = hash_file_set(crime_files)
        crime_files[0].write_text("Month,LSOA code\n2019-01,E01000002\n")
        assert hash_file_set(crime_files) != before

    def test_hash_dict_ignores_key_order(self):
        assert hash_dict({"a": 1, "b": [1, 2]}) == hash_dict({"b": [1, 2], "a": 1})
        assert hash_dict({"a": 1}) != hash_dict({"a": 2})

    def test_describe_inputs_flags_missing(self, tmp_path, crime_files):
        described = describe_inputs({
            "crime": crime_files,
            "boundaries": tmp_path / "absent.gpkg",
        })
        assert described["crime"]["n_files"] == 2
        assert described["crime"]["hash"] is not None
        assert described["boundaries"]["missing"] is True
        assert described["boundaries"]["hash"] is None


class TestMetadataSidecar:

    @pytest.fixture
    def output(self, tmp_path):
        path = tmp_path / "imd_recomputed.csv"
        path.write_text("lsoa_code,imd_recomputed\n")
        return path

    def test_sidecar_contents(self, tmp_path, output, crime_files):
        path = write_metadata_sidecar(
            output, {"crime": crime_files}, {"decimals": 3}, run_id="run_1",
            extra={"n_areas": 4}, metadata_dir=tmp_path / "metadata",
        )
        assert path == sidecar_path(output, tmp_path / "metadata")
        assert path.name == "imd_recomputed_metadata.json"

        metadata = read_json(path)
        assert metadata["run_id"] == "run_1"
        assert metadata["config_digest"] == hash_dict({"decimals": 3})
        assert metadata["inputs"]["crime"]["n_files"] == 2
        assert metadata["extra"] == {"n_areas": 4}
        assert "python" in metadata["versions"]

    def test_cache_valid_until_inputs_change(self, tmp_path, output, crime_files):
        metadata_dir = tmp_path / "metadata"
        inputs, config = {"crime": crime_files}, {"decimals": 3}
        write_metadata_sidecar(output, inputs, config, "run_1", metadata_dir=metadata_dir)

        assert validate_cache(output, inputs, config, metadata_dir=metadata_dir)
        assert not validate_cache(output, inputs, {"decimals": 2}, metadata_dir=metadata_dir)

        crime_files[1].write_text("changed\n")
        assert not validate_cache(output, inputs, config, metadata_dir=metadata_dir)

    def test_cache_invalid_without_output(self, tmp_path, crime_files):
        assert not validate_cache(
            tmp_path / "missing.csv", {"crime": crime_files}, {}, metadata_dir=tmp_path,
        )
