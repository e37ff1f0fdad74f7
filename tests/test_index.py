"""
Tests for the weighted-sum recomputation of the deprivation index.
"""

import math

import numpy as np
import pandas as pd
import pytest

from conftest import DOMAINS, uniform_scores
from imd_crime.diagnostics import Diagnostics, IncompleteRecord
from imd_crime.index import (
    STANDARD_WEIGHTS,
    AreaRecord,
    IndexRecomputer,
    ReferenceComparison,
    WeightSpec,
    round_half_up,
)


@pytest.fixture
def recomputer():
    return IndexRecomputer()


@pytest.fixture
def record():
    return {
        "income": 0.52,
        "employment": 1.37,
        "education": 12.9,
        "health": 3.14,
        "crime": 48.2,
        "barriers": 27.5,
        "living_environment": 61.03,
    }


class TestWeightSpec:

    def test_standard_sums_to_one(self):
        spec = WeightSpec.standard()
        assert math.fsum(spec.effective(d) for d in DOMAINS) == pytest.approx(1.0, abs=1e-9)
        assert spec.domains == DOMAINS

    @pytest.mark.parametrize("domain", DOMAINS)
    def test_excluding_any_domain_sums_to_one(self, domain):
        spec = WeightSpec.excluding(domain)
        assert abs(math.fsum(spec.effective(d) for d in DOMAINS) - 1.0) <= 1e-9
        assert spec.effective(domain) == 0.0
        assert spec.excluded == domain

    def test_excluding_redistributes_pro_rata(self):
        spec = WeightSpec.excluding("crime")
        remainder = 1.0 - STANDARD_WEIGHTS["crime"]
        assert spec.effective("income") == STANDARD_WEIGHTS["income"] / remainder
        assert spec.weights["income"].raw_weight == 0.225
        assert spec.effective("income") / spec.effective("education") == pytest.approx(0.225 / 0.135)

    def test_bad_weights_rejected(self):
        with pytest.raises(ValueError, match="sum to"):
            WeightSpec.standard({"income": 0.5, "employment": 0.4})

    def test_unknown_domain(self):
        with pytest.raises(KeyError):
            WeightSpec.excluding("transport")

    def test_to_dict(self):
        out = WeightSpec.excluding("crime").to_dict()
        assert out["excluded"] == "crime"
        assert out["weights"]["crime"]["effective"] == 0.0


class TestCompute:

    def test_uniform_scores_recompute_exactly(self, recomputer):
        assert recomputer.compute(uniform_scores(10.0)) == 10.0

    def test_uniform_scores_excluding_crime_exactly(self, recomputer):
        assert recomputer.recompute_excluding(uniform_scores(10.0), "crime") == 10.0

    def test_matches_hand_sum(self, recomputer, record):
        expected = sum(record[d] * STANDARD_WEIGHTS[d] for d in DOMAINS)
        assert recomputer.compute(record) == pytest.approx(expected, rel=1e-12)

    def test_order_independent(self, recomputer, record):
        reversed_record = dict(reversed(list(record.items())))
        reversed_weights = dict(reversed(list(STANDARD_WEIGHTS.items())))
        spec = WeightSpec.standard(reversed_weights)
        assert recomputer.compute(reversed_record, spec) == recomputer.compute(record)

    def test_linear(self, recomputer, record):
        doubled = {d: 2 * v for d, v in record.items()}
        assert recomputer.compute(doubled) == pytest.approx(2 * recomputer.compute(record), rel=1e-12)

        shifted = {d: v + 1.0 for d, v in record.items()}
        assert recomputer.compute(shifted) == pytest.approx(recomputer.compute(record) + 1.0, rel=1e-12)

    def test_excluded_domain_has_no_effect(self, recomputer, record):
        changed = dict(record, crime=-999.0)
        assert recomputer.recompute_excluding(changed, "crime") == recomputer.recompute_excluding(record, "crime")

    @pytest.mark.parametrize("missing", [None, float("nan")])
    def test_missing_score_is_incomplete(self, recomputer, record, missing):
        record = dict(record, health=missing, lsoa_code="E01000001")
        with pytest.raises(IncompleteRecord) as excinfo:
            recomputer.compute(record)
        assert excinfo.value.missing_domains == ["health"]
        assert excinfo.value.area_id == "E01000001"

    def test_area_record(self, recomputer, record):
        row = {"lsoa_code": "E01000001", "imd_score": 21.5, "count_burglary": 3, **record}
        area = AreaRecord.from_row(row)
        assert area.is_complete
        assert area.counts == {"count_burglary": 3}
        assert recomputer.compute(area) == recomputer.compute(record)


class TestCompareToReference:

    def test_idempotent_on_rounded_values(self, recomputer):
        for value in (0.5, 10.0, 21.456, 7.1234567):
            rounded = float(round_half_up(value, 3))
            assert recomputer.compare_to_reference(rounded, rounded) == ReferenceComparison(True, 0.0)

    def test_rounds_half_up(self, recomputer):
        assert recomputer.compare_to_reference(2.0005, 2.001).match
        assert recomputer.compare_to_reference(12.3445, 12.345).match

    def test_signed_delta(self, recomputer):
        above = recomputer.compare_to_reference(10.0004, 9.999)
        assert not above.match
        assert above.delta == 0.001

        below = recomputer.compare_to_reference(9.9984, 9.999)
        assert below.delta == -0.001

    def test_decimals_override(self, recomputer):
        assert recomputer.compare_to_reference(1.04, 1.0, decimals=1).match


class TestFrameHelpers:

    @pytest.fixture
    def joined(self, record):
        rows = [
            {"lsoa_code": "E01000001", **uniform_scores(10.0), "imd_score": 10.0},
            {"lsoa_code": "E01000002", **record, "imd_score": 0.0},
            {"lsoa_code": "E01000003", **dict(record, income=np.nan), "imd_score": 5.0},
        ]
        return pd.DataFrame(rows)

    def test_recompute_frame(self, recomputer, joined):
        diagnostics = Diagnostics()
        out = recomputer.recompute_frame(joined, diagnostics=diagnostics)

        assert out.loc[0, "imd_recomputed"] == 10.0
        assert out.loc[0, "imd_recomputed_excl_crime"] == 10.0
        assert np.isnan(out.loc[2, "imd_recomputed"])
        assert np.isnan(out.loc[2, "imd_recomputed_excl_crime"])
        assert len(out) == 3
        assert diagnostics.incomplete_areas == ["E01000003"]
        assert "imd_recomputed" not in joined.columns

    def test_compare_frame_skips_incomplete(self, recomputer, joined):
        out = recomputer.recompute_frame(joined)
        comparison = recomputer.compare_frame(out)
        assert comparison["lsoa_code"].tolist() == ["E01000001", "E01000002"]
        assert comparison["reference_match"].tolist() == [True, False]

    def test_summarize_reference(self, recomputer):
        diagnostics = Diagnostics()
        comparisons = [
            ReferenceComparison(True, 0.0),
            ReferenceComparison(True, 0.0),
            ReferenceComparison(False, 0.001),
            ReferenceComparison(False, -0.001),
            ReferenceComparison(False, 0.002),
        ]
        summary = recomputer.summarize_reference(comparisons, diagnostics=diagnostics)

        assert summary["n_compared"] == 5
        assert summary["n_mismatch"] == 3
        assert summary["mismatch_rate"] == pytest.approx(0.6)
        assert summary["n_last_place"] == 2
        assert summary["max_abs_delta"] == pytest.approx(0.002)
        assert len(diagnostics.reference_mismatches) == 1
        assert diagnostics.reference_mismatches[0].n_last_place == 2

    def test_summarize_all_matching(self, recomputer):
        diagnostics = Diagnostics()
        summary = recomputer.summarize_reference([ReferenceComparison(True, 0.0)], diagnostics=diagnostics)
        assert summary["mismatch_rate"] == 0.0
        assert diagnostics.reference_mismatches == []


class TestFromConfig:

    def test_reads_weights_and_decimals(self, params):
        params["index"]["decimals"] = 2
        recomputer = IndexRecomputer.from_config(params)
        assert recomputer.decimals == 2
        assert recomputer.compute(uniform_scores(10.0)) == 10.0
