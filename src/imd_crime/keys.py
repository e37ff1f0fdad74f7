"""
Area key resolution across heterogeneous sources.

Every source names the LSOA code differently ("LSOA11CD", "LSOA code (2011)",
"LSOA code", ...). The mapping from source to key column is declared in
params.yml and validated here at join time; nothing is inferred from column
names. The geometry-bearing source anchors the canonical key set.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

import pandas as pd

from imd_crime.diagnostics import Diagnostics, KeyMismatch
from imd_crime.io_utils import load_params

DEFAULT_CANONICAL_KEY = "lsoa_code"


class KeyMappingError(Exception):
    """Raised when a source does not carry its declared key column."""
    pass


def normalize_area_ids(values: pd.Series) -> pd.Series:
    """Area codes as stripped strings; empty strings become NA."""
    ids = values.astype("string").str.strip()
    return ids.mask(ids.eq("").fillna(False))


@dataclass(frozen=True)
class SourceSpec:
    """Declared key column and column renames for one source."""
    name: str
    key: str
    columns: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class KeyMapping:
    """Declared mapping from source name to its key column."""
    canonical: str
    anchor: str
    sources: Dict[str, SourceSpec]

    @classmethod
    def from_config(cls, params: Optional[dict] = None) -> "KeyMapping":
        """Build the mapping from the `keys` and `sources` sections of params.yml."""
        if params is None:
            params = load_params()
        keys_cfg = params.get("keys", {})
        sources = {
            name: SourceSpec(name=name, key=spec["key"], columns=dict(spec.get("columns") or {}))
            for name, spec in params.get("sources", {}).items()
        }
        anchor = keys_cfg.get("anchor", "boundaries")
        if anchor not in sources:
            raise KeyMappingError(f"Anchor source '{anchor}' has no declared key")
        return cls(
            canonical=keys_cfg.get("canonical", DEFAULT_CANONICAL_KEY),
            anchor=anchor,
            sources=sources,
        )

    def spec(self, source: str) -> SourceSpec:
        if source not in self.sources:
            raise KeyMappingError(
                f"No key declared for source '{source}'. Declared: {sorted(self.sources)}"
            )
        return self.sources[source]

    def canonicalize(self, frame: pd.DataFrame, source: str) -> pd.DataFrame:
        """
        Rename the source's declared key column to the canonical key and
        apply its declared column renames. Undeclared columns are kept.

        Raises:
            KeyMappingError: If the declared key column is absent
        """
        spec = self.spec(source)
        if spec.key not in frame.columns:
            raise KeyMappingError(
                f"Source '{source}' has no declared key column '{spec.key}'. "
                f"Columns: {list(frame.columns)[:10]}"
            )
        missing = [c for c in spec.columns if c not in frame.columns]
        if missing:
            raise KeyMappingError(f"Source '{source}' missing declared columns: {missing}")

        renamed = frame.rename(columns={spec.key: self.canonical, **spec.columns})
        renamed[self.canonical] = normalize_area_ids(renamed[self.canonical])
        return renamed


@dataclass(frozen=True)
class SourceMatch:
    """Key alignment of one source against the anchor key set."""
    source: str
    n_keys: int
    n_matched: int
    n_unmatched: int
    n_missing: int
    n_duplicates: int
    unmatched_examples: List[str] = field(default_factory=list)

    @property
    def has_mismatch(self) -> bool:
        return self.n_unmatched > 0 or self.n_missing > 0


@dataclass(frozen=True)
class JoinPlan:
    """Per-source matched/unmatched key counts against the anchor."""
    key: str
    anchor: str
    n_anchor_keys: int
    sources: Dict[str, SourceMatch]

    @property
    def mismatched_sources(self) -> List[str]:
        return [name for name, match in self.sources.items() if match.has_mismatch]

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "anchor": self.anchor,
            "n_anchor_keys": self.n_anchor_keys,
            "sources": {
                name: {
                    "n_keys": m.n_keys,
                    "n_matched": m.n_matched,
                    "n_unmatched": m.n_unmatched,
                    "n_missing": m.n_missing,
                    "n_duplicates": m.n_duplicates,
                }
                for name, m in self.sources.items()
            },
        }


class AreaKeyIndex:
    """
    Canonical mapping from area code to its row in the geometry source.

    Built from the anchor (the area boundaries) and used to check every
    other source, or every event, against the same key set.
    """

    def __init__(self, area_ids: Iterable[str], key: str = DEFAULT_CANONICAL_KEY, anchor: str = "boundaries"):
        ids = normalize_area_ids(pd.Series(list(area_ids), dtype="object"))
        if ids.isna().any():
            raise ValueError(f"{int(ids.isna().sum())} null area ids in anchor source '{anchor}'")
        duplicated = ids[ids.duplicated()]
        if len(duplicated):
            raise ValueError(
                f"Duplicate area ids in anchor source '{anchor}': {list(duplicated.unique()[:5])}"
            )
        self.key = key
        self.anchor = anchor
        self._positions: Dict[str, int] = {area_id: i for i, area_id in enumerate(ids)}

    @classmethod
    def from_frame(cls, anchor: pd.DataFrame, key: str = DEFAULT_CANONICAL_KEY, anchor_name: str = "boundaries") -> "AreaKeyIndex":
        return cls(anchor[key], key=key, anchor=anchor_name)

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, area_id) -> bool:
        return area_id in self._positions

    @property
    def area_ids(self) -> List[str]:
        return list(self._positions)

    def position(self, area_id: str) -> int:
        """Row of `area_id` in the anchor source."""
        return self._positions[area_id]

    def contains(self, values: pd.Series) -> pd.Series:
        """Boolean mask of which values resolve to an anchor area."""
        return normalize_area_ids(values).isin(list(self._positions)).fillna(False).astype(bool)

    def match(self, source: str, frame: pd.DataFrame, key: Optional[str] = None) -> SourceMatch:
        """Compare one source's keys (already canonicalized) against the anchor."""
        key = key or self.key
        ids = normalize_area_ids(frame[key]).dropna()
        unique_ids = set(ids)
        anchor_ids = set(self._positions)
        unmatched = sorted(unique_ids - anchor_ids)
        return SourceMatch(
            source=source,
            n_keys=len(unique_ids),
            n_matched=len(unique_ids & anchor_ids),
            n_unmatched=len(unmatched),
            n_missing=len(anchor_ids - unique_ids),
            n_duplicates=int(ids.duplicated().sum()),
            unmatched_examples=unmatched[:5],
        )

    def resolve(
        self,
        key: str,
        sources: Mapping[str, pd.DataFrame],
        diagnostics: Optional[Diagnostics] = None,
        logger=None,
    ) -> JoinPlan:
        """
        Check every source's keys against the anchor key set.

        A source with unmatched or missing keys yields a KeyMismatch, which
        is recorded and logged but never raised: joins proceed as left joins
        on the anchor, so every retained area keeps its geometry.

        Args:
            key: Canonical key column present in every source
            sources: Source name -> canonicalized frame
            diagnostics: Optional diagnostics collector
            logger: Optional JSONL logger

        Returns:
            JoinPlan with per-source match counts
        """
        matches = {}
        for name, frame in sources.items():
            if key not in frame.columns:
                raise KeyMappingError(f"Source '{name}' has no canonical key column '{key}'")
            match = self.match(name, frame, key)
            matches[name] = match

            if match.has_mismatch:
                condition = KeyMismatch(
                    name, match.n_unmatched, match.n_missing, match.unmatched_examples
                )
                if diagnostics is not None:
                    diagnostics.record_key_mismatch(condition)
                if logger:
                    logger.warning(str(condition), extra=condition.to_dict())

        plan = JoinPlan(key=key, anchor=self.anchor, n_anchor_keys=len(self), sources=matches)
        if logger:
            logger.log_join_stats(plan.to_dict())
        return plan
