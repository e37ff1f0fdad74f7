"""
Areal join engine.

Selects the small areas lying within a buffered outer boundary, then attaches
attribute tables (deprivation scores, transformed domain scores, event counts)
with ordered left joins anchored on the geometry source.

Point-to-area assignment for events without an area code follows the
hardened pattern: `within` first, then nearest with a maximum distance,
with the distance distribution logged and a hard failure beyond threshold.
"""

from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd

from imd_crime.io_utils import load_params
from imd_crime.keys import DEFAULT_CANONICAL_KEY
from imd_crime.qa import assert_crs_not_none, crs_info, safe_reproject
from imd_crime.schemas import validate_merge

DEFAULT_PLANAR_EPSG = 27700
DEFAULT_BUFFER_DISTANCE = 300.0

# Domain sub-score columns, in the published order
DOMAIN_COLUMNS = [
    "income",
    "employment",
    "education",
    "health",
    "crime",
    "barriers",
    "living_environment",
]


class SpatialJoinError(Exception):
    """Raised when a spatial join fails validation."""
    pass


def _load_join_config() -> dict:
    """Load CRS, area selection and spatial join settings from params.yml."""
    params = load_params()
    return {
        "planar_epsg": params.get("crs", {}).get("planar_epsg", DEFAULT_PLANAR_EPSG),
        "buffer_distance": params.get("area_selection", {}).get("buffer_distance", DEFAULT_BUFFER_DISTANCE),
        **params.get("spatial_join", {}),
    }


@dataclass(frozen=True)
class SelectionStats:
    """Outcome of the containment filter."""
    n_input: int
    n_selected: int
    buffer_distance: float
    epsg: int

    @property
    def n_dropped(self) -> int:
        return self.n_input - self.n_selected

    def to_dict(self) -> dict:
        return {**asdict(self), "n_dropped": self.n_dropped}


class ArealJoinEngine:
    """
    Builds the joined areal table.

    Args:
        key: Canonical area key column
        planar_epsg: Planar CRS all geometry work happens in
        buffer_distance: Default outer-boundary buffer in CRS units
        logger: Optional JSONL logger
    """

    def __init__(
        self,
        key: str = DEFAULT_CANONICAL_KEY,
        planar_epsg: Optional[int] = None,
        buffer_distance: Optional[float] = None,
        logger=None,
    ):
        config = _load_join_config() if planar_epsg is None or buffer_distance is None else {}
        self.key = key
        self.planar_epsg = planar_epsg if planar_epsg is not None else config["planar_epsg"]
        self.buffer_distance = (
            float(buffer_distance) if buffer_distance is not None else float(config["buffer_distance"])
        )
        self.logger = logger
        self.last_selection: Optional[SelectionStats] = None

    def select_areas(
        self,
        all_areas: gpd.GeoDataFrame,
        outer_boundary: gpd.GeoDataFrame,
        buffer_distance: Optional[float] = None,
    ) -> gpd.GeoDataFrame:
        """
        Keep every area whose geometry lies within the buffered outer boundary.

        Both inputs are reprojected to the planar CRS first. The outer
        boundary is dissolved into one shape before buffering, so a boundary
        supplied as several parts still selects as one region.

        Args:
            all_areas: All candidate area boundaries (must carry a CRS)
            outer_boundary: Outer region boundary (must carry a CRS)
            buffer_distance: Buffer in CRS units; defaults to the engine's

        Returns:
            Selected areas in the planar CRS, sorted by key

        Raises:
            CRSError: If either input has no CRS
        """
        if buffer_distance is None:
            buffer_distance = self.buffer_distance

        areas = safe_reproject(all_areas, self.planar_epsg, "all_areas")
        boundary = safe_reproject(outer_boundary, self.planar_epsg, "outer_boundary")

        region = boundary.geometry.union_all().buffer(buffer_distance)
        selected = areas[areas.geometry.within(region)].copy()
        selected = selected.sort_values(self.key, kind="mergesort").reset_index(drop=True)

        self.last_selection = SelectionStats(
            n_input=len(areas),
            n_selected=len(selected),
            buffer_distance=float(buffer_distance),
            epsg=self.planar_epsg,
        )
        if self.logger:
            self.logger.info(
                f"Selected {len(selected)} of {len(areas)} areas within "
                f"{buffer_distance:g} of the outer boundary",
                extra={"n_dropped": self.last_selection.n_dropped},
            )
            self.logger.log_crs_info(crs_info(selected))

        return selected

    def attach_attributes(
        self,
        areal_subset: gpd.GeoDataFrame,
        attribute_tables: Sequence[Tuple[str, pd.DataFrame]],
        key: Optional[str] = None,
        required_columns: Optional[Sequence[str]] = None,
    ) -> gpd.GeoDataFrame:
        """
        Left-join attribute tables onto the selected areas, in order.

        A column already present from an earlier join (or the boundaries) is
        excluded from later tables, so later joins never overwrite. Areas
        without a match keep nulls; `is_complete` is False for any area with
        a null in `required_columns` (the seven domain sub-scores by default).

        Args:
            areal_subset: Selected areas (anchor)
            attribute_tables: Ordered (source name, canonicalized frame) pairs
            key: Canonical key column (defaults to the engine's)
            required_columns: Columns an area needs to count as complete

        Returns:
            GeoDataFrame with one row per selected area

        Raises:
            ValueError: If a table has duplicate keys
        """
        key = key or self.key
        required = list(required_columns) if required_columns is not None else DOMAIN_COLUMNS

        joined = areal_subset.copy()
        for source, table in attribute_tables:
            new_cols = [c for c in table.columns if c != key and c not in joined.columns]
            skipped = [c for c in table.columns if c != key and c in joined.columns]
            if skipped and self.logger:
                self.logger.debug(f"{source}: skipping columns already joined", extra={"columns": skipped})

            joined = validate_merge(
                joined,
                table[[key] + new_cols],
                on=key,
                how="left",
                validate="one_to_one",
                context=source,
            )

        joined = gpd.GeoDataFrame(joined, geometry=areal_subset.geometry.name, crs=areal_subset.crs)

        present = [c for c in required if c in joined.columns]
        absent = [c for c in required if c not in joined.columns]
        if absent:
            joined["is_complete"] = False
        else:
            joined["is_complete"] = joined[present].notna().all(axis=1)

        if self.logger:
            self.logger.log_join_stats({
                "n_areas": len(joined),
                "n_complete": int(joined["is_complete"].sum()),
                "n_incomplete": int((~joined["is_complete"]).sum()),
                "sources": [s for s, _ in attribute_tables],
                "absent_required_columns": absent,
            })

        return joined.sort_values(key, kind="mergesort").reset_index(drop=True)

    def attach_counts(
        self,
        joined: gpd.GeoDataFrame,
        counts: pd.DataFrame,
        key: Optional[str] = None,
    ) -> gpd.GeoDataFrame:
        """
        Merge per-area event counts; areas absent from `counts` get 0.

        Args:
            joined: Joined areal table
            counts: Frame with the key and one or more `count_*` columns

        Returns:
            Joined table with integer (Int64) count columns
        """
        key = key or self.key
        count_cols = [c for c in counts.columns if c != key and c not in joined.columns]
        result = validate_merge(
            joined, counts[[key] + count_cols], on=key, how="left",
            validate="one_to_one", context="event_counts",
        )
        for col in count_cols:
            result[col] = result[col].fillna(0).astype("Int64")
        return gpd.GeoDataFrame(result, geometry=joined.geometry.name, crs=joined.crs)


# =============================================================================
# Point -> area assignment
# =============================================================================

def locate_events(
    points: gpd.GeoDataFrame,
    areas: gpd.GeoDataFrame,
    area_id_col: str = DEFAULT_CANONICAL_KEY,
    max_distance: Optional[float] = None,
    max_unmatched_rate: Optional[float] = None,
    planar_epsg: int = DEFAULT_PLANAR_EPSG,
) -> Tuple[gpd.GeoDataFrame, Dict]:
    """
    Assign each point the id of the area containing it.

    1. Assert CRS and reproject both inputs to the planar CRS
    2. sjoin(within) first
    3. Unmatched points -> sjoin_nearest within `max_distance`
    4. Points still unmatched keep a null area id

    Args:
        points: Event points
        areas: Area polygons with `area_id_col`
        area_id_col: Area id column to copy onto the points
        max_distance: Maximum nearest-join distance (default from params.yml)
        max_unmatched_rate: Fail if more than this share stays unmatched
        planar_epsg: Planar CRS for distances

    Returns:
        Tuple of (points with `area_id_col`, stats dictionary)

    Raises:
        SpatialJoinError: If too many points stay unmatched
    """
    if max_distance is None or max_unmatched_rate is None:
        config = _load_join_config()
        if max_distance is None:
            max_distance = config.get("max_distance_m", 500)
        if max_unmatched_rate is None:
            max_unmatched_rate = config.get("max_unmatched_rate", 0.01)

    assert_crs_not_none(points, "points input")
    assert_crs_not_none(areas, "areas input")

    points_proj = safe_reproject(points, planar_epsg, "points").copy()
    areas_proj = safe_reproject(areas, planar_epsg, "areas")[[area_id_col, "geometry"]]
    if area_id_col in points_proj.columns:
        points_proj = points_proj.drop(columns=[area_id_col])

    points_proj["_original_idx"] = np.arange(len(points_proj))

    stats = {
        "total_points": len(points_proj),
        "matched_within": 0,
        "matched_nearest": 0,
        "unmatched": 0,
        "max_distance_used": 0.0,
        "mean_distance": None,
        "p95_distance": None,
    }

    within = gpd.sjoin(points_proj, areas_proj, how="inner", predicate="within")
    # A point on a shared edge falls within neither polygon; one exactly
    # inside two overlapping slivers keeps the first match.
    within = within.drop_duplicates("_original_idx")
    stats["matched_within"] = len(within)

    assigned = pd.Series(pd.NA, index=points_proj["_original_idx"], dtype="string")
    assigned.loc[within["_original_idx"].to_numpy()] = within[area_id_col].astype("string").to_numpy()

    unmatched = points_proj[~points_proj["_original_idx"].isin(within["_original_idx"])]
    if len(unmatched) > 0:
        nearest = gpd.sjoin_nearest(
            unmatched,
            areas_proj,
            how="left",
            distance_col="_join_distance",
            max_distance=max_distance,
        ).drop_duplicates("_original_idx")

        found = nearest[area_id_col].notna()
        distances = nearest.loc[found, "_join_distance"]
        if len(distances) > 0:
            stats["max_distance_used"] = float(distances.max())
            stats["mean_distance"] = float(distances.mean())
            stats["p95_distance"] = float(np.percentile(distances, 95))

        stats["matched_nearest"] = int(found.sum())
        assigned.loc[nearest.loc[found, "_original_idx"].to_numpy()] = (
            nearest.loc[found, area_id_col].astype("string").to_numpy()
        )

    stats["unmatched"] = int(assigned.isna().sum())
    if stats["total_points"] and stats["unmatched"] / stats["total_points"] > max_unmatched_rate:
        raise SpatialJoinError(
            f"Too many unmatched points: {stats['unmatched']} "
            f"({stats['unmatched'] / stats['total_points']:.1%})"
        )

    result = points_proj.drop(columns=["_original_idx"])
    result[area_id_col] = assigned.to_numpy()
    return result, stats


def log_join_stats(stats: Dict, logger=None) -> None:
    """Log point-to-area join statistics (prints if no logger is given)."""
    msg = (
        f"Spatial join stats: "
        f"{stats['total_points']} total, "
        f"{stats['matched_within']} within, "
        f"{stats['matched_nearest']} nearest, "
        f"{stats['unmatched']} unmatched"
    )
    if stats.get("max_distance_used"):
        msg += f" | max_dist={stats['max_distance_used']:.1f}"
    if stats.get("p95_distance"):
        msg += f", p95_dist={stats['p95_distance']:.1f}"

    if logger:
        logger.info(msg, extra={"join_stats": stats})
    else:
        print(msg)


def incomplete_area_ids(joined: pd.DataFrame, key: str = DEFAULT_CANONICAL_KEY) -> List[str]:
    """Area ids flagged incomplete by attach_attributes."""
    return joined.loc[~joined["is_complete"].astype(bool), key].astype(str).tolist()
