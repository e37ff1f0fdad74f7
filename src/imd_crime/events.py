"""
Per-area event counts.

Street-level crime records are grouped by area code and category. Every
area in the key index gets a count for every category (0 when it has no
events); records whose area code does not resolve are dropped from the
counts but tallied, so the accounting always adds up.
"""

import re
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Union

import pandas as pd

from imd_crime.diagnostics import Diagnostics
from imd_crime.keys import AreaKeyIndex, normalize_area_ids

ALL_CRIME = "all-crime"


@dataclass(frozen=True)
class EventRecord:
    """One raw event: area code, category slug and reporting month."""
    area_id: Optional[str]
    category: str
    period: Optional[str] = None


def category_slug(category: str) -> str:
    """'Violence and sexual offences' -> 'violence-and-sexual-offences'."""
    return re.sub(r"[^a-z0-9]+", "-", str(category).strip().lower()).strip("-")


def count_column(category: str) -> str:
    """Count column name for a category: 'anti-social-behaviour' -> 'count_anti_social_behaviour'."""
    return "count_" + category_slug(category).replace("-", "_")


def events_to_frame(events: Iterable[EventRecord]) -> pd.DataFrame:
    """Convert EventRecords to the tabular form the aggregator works on."""
    return pd.DataFrame(
        [asdict(e) for e in events],
        columns=["area_id", "category", "period"],
    )


class EventAggregator:
    """
    Groups events by area and category against a fixed key index.

    Args:
        key_index: Canonical area key set
        area_col: Column holding the (canonical) area code in event tables
        category_col: Column holding the category
        diagnostics: Optional collector for dropped-event totals
    """

    def __init__(
        self,
        key_index: AreaKeyIndex,
        area_col: Optional[str] = None,
        category_col: str = "category",
        diagnostics: Optional[Diagnostics] = None,
    ):
        self.key_index = key_index
        self.area_col = area_col or key_index.key
        self.category_col = category_col
        self.diagnostics = diagnostics
        self.dropped_events: Dict[str, int] = {}

    def _as_frame(self, events: Union[pd.DataFrame, Iterable[EventRecord]]) -> pd.DataFrame:
        if isinstance(events, pd.DataFrame):
            return events
        frame = events_to_frame(events)
        return frame.rename(columns={"area_id": self.area_col})

    def _record_dropped(self, events: pd.DataFrame) -> None:
        """Tally unresolved events once each, under their own category."""
        for category, n in events[self.category_col].map(category_slug).value_counts(sort=False).items():
            self.dropped_events[category] = self.dropped_events.get(category, 0) + int(n)
            if self.diagnostics is not None:
                self.diagnostics.record_dropped_events(category, int(n))

    def aggregate(
        self,
        events: Union[pd.DataFrame, Iterable[EventRecord]],
        category: str,
        record_dropped: bool = True,
    ) -> pd.Series:
        """
        Count events of one category per area.

        Args:
            events: Event table (or EventRecords) with area and category columns
            category: Category name or slug; `all-crime` counts every category
            record_dropped: Tally unresolved events of this pass

        Returns:
            Int64 Series indexed by area id, covering every indexed area,
            named after the count column
        """
        frame = self._as_frame(events)
        slug = category_slug(category)

        if slug == ALL_CRIME:
            selected = frame
        else:
            selected = frame[frame[self.category_col].map(category_slug) == slug]

        ids = normalize_area_ids(selected[self.area_col])
        resolved = self.key_index.contains(ids)
        if record_dropped:
            self._record_dropped(selected[~resolved.to_numpy()])

        counts = ids[resolved].astype(object).value_counts()
        index = pd.Index(self.key_index.area_ids, name=self.key_index.key)
        return (
            counts.reindex(index, fill_value=0)
            .astype("Int64")
            .rename(count_column(slug))
        )

    def aggregate_all(
        self,
        events: Union[pd.DataFrame, Iterable[EventRecord]],
        categories: Sequence[str],
        include_all: bool = False,
    ) -> pd.DataFrame:
        """
        Wide count table: the key plus one `count_<category>` column each.

        Args:
            events: Event table (or EventRecords)
            categories: Categories to count
            include_all: Also add `count_all_crime` over every category

        Returns:
            DataFrame with one row per indexed area
        """
        frame = self._as_frame(events)
        wanted: List[str] = [category_slug(c) for c in categories]
        if include_all and ALL_CRIME not in wanted:
            wanted.append(ALL_CRIME)

        columns = [self.aggregate(frame, c, record_dropped=False) for c in wanted]

        # each unresolved event is dropped once, however many columns it feeds
        if ALL_CRIME in wanted:
            counted = frame
        else:
            counted = frame[frame[self.category_col].map(category_slug).isin(wanted)]
        ids = normalize_area_ids(counted[self.area_col])
        self._record_dropped(counted[~self.key_index.contains(ids).to_numpy()])

        if columns:
            table = pd.concat(columns, axis=1)
        else:
            table = pd.DataFrame(index=pd.Index(self.key_index.area_ids, name=self.key_index.key))

        table = table.reset_index()
        table[self.key_index.key] = table[self.key_index.key].astype("string")
        return table

    def summary(self) -> dict:
        """Dropped-event totals per category."""
        return {
            "dropped_events": dict(self.dropped_events),
            "n_dropped_events": sum(self.dropped_events.values()),
        }
