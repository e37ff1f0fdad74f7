"""
Recomputation of the Index of Multiple Deprivation from its domain scores.

The composite is the weighted sum of the seven exponentially transformed
domain scores. A partial index drops one domain (crime, when the index is
used to explain crime) and redistributes its weight pro rata:

    effective[d] = raw[d] / (1 - raw[excluded])    for d != excluded
    effective[excluded] = 0

Every domain is always visited, including a zero-weight one, so the full and
partial formulas stay structurally identical. Sums use math.fsum so the
result does not depend on domain order.

Recomputed values are compared with the published score after rounding to
its published precision. A minority of areas differ by one unit in the last
decimal place; that discrepancy is measured and reported, never corrected.
"""

import math
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from imd_crime.diagnostics import Diagnostics, IncompleteRecord, ReferenceMismatch
from imd_crime.io_utils import load_params

DOMAINS = [
    "income",
    "employment",
    "education",
    "health",
    "crime",
    "barriers",
    "living_environment",
]

# Published as 22.5 / 22.5 / 13.5 / 13.5 / 9.3 / 9.3 / 9.3 per cent; the
# last three share the remaining 28% equally.
STANDARD_WEIGHTS: Dict[str, float] = {
    "income": 0.225,
    "employment": 0.225,
    "education": 0.135,
    "health": 0.135,
    "crime": 0.28 / 3,
    "barriers": 0.28 / 3,
    "living_environment": 0.28 / 3,
}

WEIGHT_TOLERANCE = 1e-9
DEFAULT_DECIMALS = 3


def _load_index_config() -> dict:
    """Load the index section of params.yml."""
    return load_params().get("index", {})


# =============================================================================
# Weights
# =============================================================================

@dataclass(frozen=True)
class DomainWeight:
    raw_weight: float
    effective_weight: float


@dataclass(frozen=True)
class WeightSpec:
    """Ordered domain -> (raw, effective) weights for one recomputation."""
    weights: Dict[str, DomainWeight]
    excluded: Optional[str] = None

    def __post_init__(self):
        total = math.fsum(w.effective_weight for w in self.weights.values())
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            raise ValueError(f"Effective weights sum to {total!r}, expected 1.0")

    @classmethod
    def standard(cls, raw_weights: Optional[Mapping[str, float]] = None) -> "WeightSpec":
        """Full-index spec: effective weight == raw weight for every domain."""
        raw = dict(raw_weights if raw_weights is not None else STANDARD_WEIGHTS)
        return cls({d: DomainWeight(float(w), float(w)) for d, w in raw.items()})

    @classmethod
    def excluding(cls, domain: str, raw_weights: Optional[Mapping[str, float]] = None) -> "WeightSpec":
        """Partial-index spec with `domain` dropped and its weight redistributed."""
        raw = dict(raw_weights if raw_weights is not None else STANDARD_WEIGHTS)
        if domain not in raw:
            raise KeyError(f"Unknown domain '{domain}'. Domains: {list(raw)}")

        remainder = 1.0 - float(raw[domain])
        if remainder <= 0:
            raise ValueError(f"Cannot exclude '{domain}': it carries all the weight")

        weights = {}
        for d, w in raw.items():
            effective = 0.0 if d == domain else float(w) / remainder
            weights[d] = DomainWeight(float(w), effective)
        return cls(weights, excluded=domain)

    @property
    def domains(self) -> List[str]:
        return list(self.weights)

    def effective(self, domain: str) -> float:
        return self.weights[domain].effective_weight

    def to_dict(self) -> Dict[str, Any]:
        return {
            "excluded": self.excluded,
            "weights": {
                d: {"raw": w.raw_weight, "effective": w.effective_weight}
                for d, w in self.weights.items()
            },
        }


# =============================================================================
# Records and comparisons
# =============================================================================

@dataclass(frozen=True)
class AreaRecord:
    """One area's published and derived index inputs."""
    area_id: str
    sub_scores: Dict[str, Optional[float]]
    district_code: Optional[str] = None
    district_name: Optional[str] = None
    reference: Optional[float] = None
    counts: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Mapping[str, Any], key: str = "lsoa_code",
                 domains: Sequence[str] = DOMAINS, reference_column: str = "imd_score") -> "AreaRecord":
        reference = row.get(reference_column)
        return cls(
            area_id=str(row[key]),
            sub_scores={d: row.get(d) for d in domains},
            district_code=row.get("district_code"),
            district_name=row.get("district_name"),
            reference=None if _is_missing(reference) else float(reference),
            counts={k: int(v) for k, v in row.items() if str(k).startswith("count_") and not _is_missing(v)},
        )

    @property
    def missing_domains(self) -> List[str]:
        return [d for d, v in self.sub_scores.items() if _is_missing(v)]

    @property
    def is_complete(self) -> bool:
        return not self.missing_domains


@dataclass(frozen=True)
class ReferenceComparison:
    match: bool
    delta: float


def _is_missing(value: Any) -> bool:
    if value is None or value is pd.NA:
        return True
    try:
        return math.isnan(value)
    except TypeError:
        return False


def round_half_up(value: float, decimals: int = DEFAULT_DECIMALS) -> Decimal:
    """
    Round on the shortest decimal representation of `value`, halves away from zero.

    2.0005 rounds to 2.001 even though the nearest binary double lies just
    below 2.0005, which matches how the published tables round.
    """
    quantum = Decimal(1).scaleb(-decimals)
    return Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP)


# =============================================================================
# Recomputation
# =============================================================================

class IndexRecomputer:
    """
    Weighted-sum calculator for the full and partial composite index.

    Args:
        raw_weights: Domain weights (standard IMD weights by default)
        decimals: Published precision of the reference score
        logger: Optional JSONL logger
    """

    def __init__(
        self,
        raw_weights: Optional[Mapping[str, float]] = None,
        decimals: int = DEFAULT_DECIMALS,
        logger=None,
    ):
        self.raw_weights = dict(raw_weights if raw_weights is not None else STANDARD_WEIGHTS)
        self.decimals = decimals
        self.logger = logger
        self.standard_spec = WeightSpec.standard(self.raw_weights)

    @classmethod
    def from_config(cls, params: Optional[dict] = None, logger=None) -> "IndexRecomputer":
        config = (params or {}).get("index") if params is not None else _load_index_config()
        config = config or {}
        return cls(
            raw_weights=config.get("weights"),
            decimals=config.get("decimals", DEFAULT_DECIMALS),
            logger=logger,
        )

    @staticmethod
    def _scores(record: Union[AreaRecord, Mapping[str, Any]]) -> Mapping[str, Any]:
        return record.sub_scores if isinstance(record, AreaRecord) else record

    def compute(self, record: Union[AreaRecord, Mapping[str, Any]], weight_spec: Optional[WeightSpec] = None) -> float:
        """
        Weighted sum of every domain score in `weight_spec`.

        Raises:
            IncompleteRecord: If any domain score is missing or NaN
        """
        spec = weight_spec or self.standard_spec
        scores = self._scores(record)

        missing = [d for d in spec.domains if _is_missing(scores.get(d))]
        if missing:
            area_id = record.area_id if isinstance(record, AreaRecord) else scores.get("lsoa_code")
            raise IncompleteRecord(area_id, missing)

        return math.fsum(float(scores[d]) * spec.effective(d) for d in spec.domains)

    def recompute_excluding(self, record: Union[AreaRecord, Mapping[str, Any]], domain: str) -> float:
        """Composite with `domain` dropped and its weight redistributed."""
        return self.compute(record, WeightSpec.excluding(domain, self.raw_weights))

    def compare_to_reference(
        self,
        computed: float,
        reference: float,
        decimals: Optional[int] = None,
    ) -> ReferenceComparison:
        """
        Round `computed` to the published precision and compare.

        Returns:
            ReferenceComparison with exact-equality `match` and the signed
            delta (rounded computed - reference) at that precision
        """
        decimals = self.decimals if decimals is None else decimals
        rounded = round_half_up(computed, decimals)
        published = round_half_up(reference, decimals)
        delta = rounded - published
        return ReferenceComparison(match=delta == 0, delta=float(delta))

    # -------------------------------------------------------------------------
    # Table-level helpers
    # -------------------------------------------------------------------------

    def recompute_frame(
        self,
        joined: pd.DataFrame,
        exclude: Iterable[str] = ("crime",),
        key: str = "lsoa_code",
        diagnostics: Optional[Diagnostics] = None,
    ) -> pd.DataFrame:
        """
        Add `imd_recomputed` and `imd_recomputed_excl_<domain>` columns.

        Incomplete areas stay in the table with NaN derived values and are
        recorded as IncompleteRecord conditions.
        """
        specs = {"imd_recomputed": self.standard_spec}
        for domain in exclude:
            specs[f"imd_recomputed_excl_{domain}"] = WeightSpec.excluding(domain, self.raw_weights)

        values: Dict[str, List[float]] = {col: [] for col in specs}
        incomplete: List[str] = []
        for row in joined[[key] + list(self.raw_weights)].to_dict("records"):
            try:
                computed = {col: self.compute(row, spec) for col, spec in specs.items()}
            except IncompleteRecord as condition:
                incomplete.append(str(row[key]))
                computed = {col: np.nan for col in specs}
                if self.logger:
                    self.logger.debug(str(condition), extra={"missing": condition.missing_domains})
            for col, value in computed.items():
                values[col].append(value)

        result = joined.copy()
        for col in specs:
            result[col] = np.asarray(values[col], dtype="float64")

        if incomplete:
            if diagnostics is not None:
                diagnostics.record_incomplete(incomplete)
            if self.logger:
                self.logger.warning(
                    f"{len(incomplete)} incomplete areas left out of recomputation",
                    extra={"examples": incomplete[:5]},
                )
        return result

    def compare_frame(
        self,
        frame: pd.DataFrame,
        computed_column: str = "imd_recomputed",
        reference_column: str = "imd_score",
        key: str = "lsoa_code",
    ) -> pd.DataFrame:
        """
        Per-area reference comparison for rows with both values present.

        Returns:
            DataFrame with the key, `reference_match` and `reference_delta`
        """
        rows = frame.loc[frame[computed_column].notna() & frame[reference_column].notna()]
        comparisons = [
            self.compare_to_reference(c, r)
            for c, r in zip(rows[computed_column], rows[reference_column])
        ]
        return pd.DataFrame({
            key: rows[key].astype("string").to_numpy(),
            "reference_match": np.array([c.match for c in comparisons], dtype=bool),
            "reference_delta": np.array([c.delta for c in comparisons], dtype="float64"),
        })

    def summarize_reference(
        self,
        comparisons: Sequence[ReferenceComparison],
        column: str = "imd_recomputed",
        diagnostics: Optional[Diagnostics] = None,
    ) -> Dict[str, Any]:
        """
        Mismatch rate of recomputed values against the published reference.

        A non-zero rate is recorded as a ReferenceMismatch; the values
        themselves are left as computed.
        """
        last_place = 10.0 ** -self.decimals
        n = len(comparisons)
        n_match = sum(1 for c in comparisons if c.match)
        abs_deltas = [abs(c.delta) for c in comparisons]
        n_last_place = sum(1 for d in abs_deltas if math.isclose(d, last_place, rel_tol=1e-9))

        summary = {
            "column": column,
            "n_compared": n,
            "n_match": n_match,
            "n_mismatch": n - n_match,
            "mismatch_rate": (n - n_match) / n if n else 0.0,
            "n_last_place": n_last_place,
            "max_abs_delta": max(abs_deltas) if abs_deltas else 0.0,
        }

        if summary["n_mismatch"]:
            condition = ReferenceMismatch(column, n, summary["n_mismatch"], n_last_place)
            if diagnostics is not None:
                diagnostics.record_reference_mismatch(condition)
            if self.logger:
                self.logger.warning(str(condition), extra=condition.to_dict())
        elif self.logger:
            self.logger.info(f"{column}: all {n} recomputed values match the reference")

        return summary
