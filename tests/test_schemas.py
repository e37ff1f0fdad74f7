"""
Tests for joined-table schema validation and validated merges.
"""

import numpy as np
import pandas as pd
import pytest

from conftest import DOMAINS, make_grid
from imd_crime.schemas import (
    SchemaError,
    count_column_specs,
    ensure_area_id_dtype,
    get_schema,
    validate_joined,
    validate_merge,
    validate_schema,
)


@pytest.fixture
def joined(grid_2x2):
    gdf = grid_2x2.copy()
    gdf["imd_score"] = [10.0, 20.0, np.nan, 5.5]
    for d in DOMAINS:
        gdf[d] = 1.0
    gdf["is_complete"] = True
    gdf["count_burglary"] = pd.array([0, 3, 1, 2], dtype="Int64")
    return gdf


class TestValidateJoined:

    def test_valid_table_passes(self, joined):
        validate_joined(joined)

    def test_missing_domain_column(self, joined):
        with pytest.raises(SchemaError, match="Missing column: health"):
            validate_joined(joined.drop(columns=["health"]))

    def test_duplicate_keys(self, joined):
        joined.loc[1, "lsoa_code"] = joined.loc[0, "lsoa_code"]
        with pytest.raises(SchemaError, match="duplicate"):
            validate_joined(joined)

    def test_null_count_rejected(self, joined):
        joined["count_burglary"] = pd.array([0, None, 1, 2], dtype="Int64")
        with pytest.raises(SchemaError, match="count_burglary"):
            validate_joined(joined)

    def test_negative_count_rejected(self, joined):
        joined["count_burglary"] = pd.array([0, -1, 1, 2], dtype="Int64")
        with pytest.raises(SchemaError, match="below min"):
            validate_joined(joined)

    def test_float_count_rejected(self, joined):
        joined["count_burglary"] = [0.0, 1.0, 2.0, 3.0]
        with pytest.raises(SchemaError, match="expected Int64"):
            validate_joined(joined)

    def test_empty_table_rejected(self, joined):
        with pytest.raises(SchemaError, match="at least 1 rows"):
            validate_joined(joined.iloc[0:0])


class TestHelpers:

    def test_count_specs_only_for_count_columns(self, joined):
        names = [spec.name for spec in count_column_specs(joined)]
        assert names == ["count_burglary"]

    def test_non_raising_mode(self):
        errors = validate_schema(pd.DataFrame({"x": [1]}), get_schema("index"), raise_on_error=False)
        assert any("lsoa_code" in e for e in errors)

    def test_unknown_schema(self):
        with pytest.raises(KeyError):
            get_schema("wards")

    def test_ensure_area_id_dtype(self):
        df = ensure_area_id_dtype(pd.DataFrame({"lsoa_code": ["E01000001", None]}))
        assert df["lsoa_code"].dtype == "string"


class TestValidateMerge:

    def test_duplicate_right_keys(self):
        left = make_grid(2, 1)
        right = pd.DataFrame({"lsoa_code": [left.loc[0, "lsoa_code"]] * 2, "x": [1, 2]})
        with pytest.raises(ValueError, match="deprivation"):
            validate_merge(left, right, on="lsoa_code", context="deprivation")

    def test_left_join_keeps_unmatched(self):
        left = make_grid(2, 1)
        right = pd.DataFrame({"lsoa_code": [left.loc[0, "lsoa_code"]], "x": [1.0]})
        merged = validate_merge(left, right, on="lsoa_code")
        assert len(merged) == 2
        assert merged["x"].isna().sum() == 1
