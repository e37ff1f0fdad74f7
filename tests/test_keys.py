"""
Tests for declared key mapping and area key resolution.
"""

import pandas as pd
import pytest

from imd_crime.diagnostics import Diagnostics, KeyMismatch
from imd_crime.keys import AreaKeyIndex, KeyMapping, KeyMappingError, normalize_area_ids


class TestNormalizeAreaIds:

    def test_strips_whitespace(self):
        ids = normalize_area_ids(pd.Series([" E01000001", "E01000002 "]))
        assert ids.tolist() == ["E01000001", "E01000002"]

    def test_empty_becomes_na(self):
        ids = normalize_area_ids(pd.Series(["E01000001", "", None]))
        assert ids.isna().tolist() == [False, True, True]

    def test_string_dtype(self):
        ids = normalize_area_ids(pd.Series(["E01000001"], dtype="object"))
        assert ids.dtype == "string"


class TestKeyMapping:

    @pytest.fixture
    def mapping(self, params):
        return KeyMapping.from_config(params)

    def test_from_config(self, mapping):
        assert mapping.canonical == "lsoa_code"
        assert mapping.anchor == "boundaries"
        assert mapping.spec("deprivation").key == "LSOA code (2011)"

    def test_canonicalize_renames_key_and_columns(self, mapping):
        raw = pd.DataFrame({
            "LSOA code (2011)": ["E01000001"],
            "Local Authority District code (2019)": ["E09000001"],
            "Local Authority District name (2019)": ["City of London"],
            "Index of Multiple Deprivation (IMD) Score": [12.345],
            "Unrelated": [1],
        })
        out = mapping.canonicalize(raw, "deprivation")
        assert list(out.columns) == ["lsoa_code", "district_code", "district_name", "imd_score", "Unrelated"]
        assert out["lsoa_code"].dtype == "string"

    def test_missing_declared_key_raises(self, mapping):
        raw = pd.DataFrame({"lsoa11cd": ["E01000001"]})
        with pytest.raises(KeyMappingError, match="declared key column"):
            mapping.canonicalize(raw, "boundaries")

    def test_missing_declared_column_raises(self, mapping):
        raw = pd.DataFrame({"LSOA code (2011)": ["E01000001"]})
        with pytest.raises(KeyMappingError, match="missing declared columns"):
            mapping.canonicalize(raw, "deprivation")

    def test_undeclared_source_raises(self, mapping):
        with pytest.raises(KeyMappingError, match="No key declared"):
            mapping.spec("census")

    def test_anchor_must_be_declared(self, params):
        params["keys"]["anchor"] = "census"
        with pytest.raises(KeyMappingError):
            KeyMapping.from_config(params)


class TestAreaKeyIndex:

    def test_rejects_duplicates(self):
        with pytest.raises(ValueError, match="Duplicate"):
            AreaKeyIndex(["E01000001", "E01000001"])

    def test_rejects_nulls(self):
        with pytest.raises(ValueError, match="null"):
            AreaKeyIndex(["E01000001", None])

    def test_position_and_contains(self):
        index = AreaKeyIndex(["E01000002", "E01000001"])
        assert len(index) == 2
        assert index.position("E01000001") == 1
        assert "E01000002" in index
        mask = index.contains(pd.Series(["E01000001", "E01999999", None]))
        assert mask.tolist() == [True, False, False]

    def test_resolve_counts_and_records_mismatch(self):
        index = AreaKeyIndex(["E01000001", "E01000002", "E01000003"])
        sources = {
            "deprivation": pd.DataFrame({"lsoa_code": ["E01000001", "E01000002", "E01000003"]}),
            "scores": pd.DataFrame({"lsoa_code": ["E01000001", "E01000002", "W01000001", "W01000001"]}),
        }
        diagnostics = Diagnostics()

        plan = index.resolve("lsoa_code", sources, diagnostics=diagnostics)

        clean = plan.sources["deprivation"]
        assert (clean.n_matched, clean.n_unmatched, clean.n_missing) == (3, 0, 0)

        scores = plan.sources["scores"]
        assert scores.n_keys == 3
        assert scores.n_matched == 2
        assert scores.n_unmatched == 1
        assert scores.n_missing == 1
        assert scores.n_duplicates == 1
        assert scores.unmatched_examples == ["W01000001"]

        assert plan.mismatched_sources == ["scores"]
        assert len(diagnostics.key_mismatches) == 1
        assert isinstance(diagnostics.key_mismatches[0], KeyMismatch)
        assert diagnostics.key_mismatches[0].source == "scores"

    def test_resolve_requires_canonical_key(self):
        index = AreaKeyIndex(["E01000001"])
        with pytest.raises(KeyMappingError):
            index.resolve("lsoa_code", {"scores": pd.DataFrame({"code": ["E01000001"]})})
