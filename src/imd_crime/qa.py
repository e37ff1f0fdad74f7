"""
Quality assurance utilities for geospatial data.

CRS mismatches are hard errors: geometries are only ever reprojected with
to_crs(), never relabelled with set_crs(). Bounds sanity checks catch
swapped axes or unprojected coordinates before any planar operation.
"""

from typing import Optional, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
from pyproj import CRS

from imd_crime.io_utils import load_params


# British National Grid extent for Great Britain (metres)
BNG_EPSG = 27700
BNG_BOUNDS = {"x_min": 0.0, "x_max": 700000.0, "y_min": 0.0, "y_max": 1300000.0}


def _load_bounds_config() -> dict:
    """Load bounds check configuration from params.yml."""
    return load_params().get("bounds_checks", {})


# =============================================================================
# CRS Validation
# =============================================================================

class CRSError(Exception):
    """Raised when CRS validation fails."""
    pass


class BoundsError(Exception):
    """Raised when bounds validation fails."""
    pass


def assert_crs_not_none(gdf: gpd.GeoDataFrame, context: str = "") -> None:
    """
    Assert that the GeoDataFrame has a CRS set.

    Raises:
        CRSError: If CRS is None
    """
    if gdf.crs is None:
        msg = "GeoDataFrame has no CRS set"
        if context:
            msg = f"{msg} ({context})"
        raise CRSError(msg)


def get_crs_epsg(gdf: gpd.GeoDataFrame) -> Optional[int]:
    """Get the EPSG code of a GeoDataFrame's CRS (None if unset or unidentifiable)."""
    if gdf.crs is None:
        return None
    return gdf.crs.to_epsg()


def safe_reproject(
    gdf: gpd.GeoDataFrame,
    target_epsg: int,
    context: str = "",
) -> gpd.GeoDataFrame:
    """
    Reproject a GeoDataFrame to the target CRS.

    Args:
        gdf: GeoDataFrame to reproject
        target_epsg: Target EPSG code
        context: Optional context string for error message

    Returns:
        Reprojected GeoDataFrame (the input itself if already in target CRS)

    Raises:
        CRSError: If source CRS is None
    """
    assert_crs_not_none(gdf, context)

    target_crs = CRS.from_epsg(target_epsg)
    if gdf.crs.equals(target_crs):
        return gdf

    return gdf.to_crs(target_crs)


def crs_info(gdf: gpd.GeoDataFrame) -> dict:
    """Summarise the CRS and extent of a GeoDataFrame for logging."""
    return {
        "epsg": get_crs_epsg(gdf),
        "is_projected": bool(gdf.crs.is_projected) if gdf.crs is not None else None,
        "bounds": [float(v) for v in gdf.total_bounds] if len(gdf) else None,
        "n_features": len(gdf),
    }


# =============================================================================
# Bounds Validation
# =============================================================================

def get_bounds(gdf: gpd.GeoDataFrame) -> Tuple[float, float, float, float]:
    """Get bounds of a GeoDataFrame as (minx, miny, maxx, maxy)."""
    return tuple(gdf.total_bounds)


def check_bounds_bng(
    gdf: gpd.GeoDataFrame,
    x_min: float = BNG_BOUNDS["x_min"],
    x_max: float = BNG_BOUNDS["x_max"],
    y_min: float = BNG_BOUNDS["y_min"],
    y_max: float = BNG_BOUNDS["y_max"],
    context: str = "",
) -> bool:
    """
    Check that bounds are plausible for Great Britain in EPSG:27700.

    Raises:
        BoundsError: If bounds are outside expected range
    """
    minx, miny, maxx, maxy = get_bounds(gdf)

    errors = []
    if minx < x_min or maxx > x_max:
        errors.append(f"Easting out of range: [{minx}, {maxx}] not in [{x_min}, {x_max}]")
    if miny < y_min or maxy > y_max:
        errors.append(f"Northing out of range: [{miny}, {maxy}] not in [{y_min}, {y_max}]")

    if errors:
        msg = f"EPSG:{BNG_EPSG} bounds check failed: " + "; ".join(errors)
        if context:
            msg = f"{msg} ({context})"
        raise BoundsError(msg)

    return True


def validate_bounds(gdf: gpd.GeoDataFrame, context: str = "") -> bool:
    """
    Validate bounds based on the GeoDataFrame's CRS.

    British National Grid gets the GB extent check (overridable in
    params.yml under bounds_checks.epsg_27700); other CRSs only need finite
    bounds.

    Raises:
        CRSError: If CRS is None
        BoundsError: If bounds are outside expected range
    """
    assert_crs_not_none(gdf, context)

    if get_crs_epsg(gdf) == BNG_EPSG:
        config = {**BNG_BOUNDS, **_load_bounds_config().get("epsg_27700", {})}
        return check_bounds_bng(gdf, context=context, **config)

    bounds = get_bounds(gdf)
    if not all(np.isfinite(bounds)):
        raise BoundsError(f"Non-finite bounds: {bounds} ({context})")
    return True


# =============================================================================
# Geometry Validation
# =============================================================================

def assert_all_valid(gdf: gpd.GeoDataFrame, context: str = "") -> None:
    """
    Assert all geometries are present and valid.

    Raises:
        ValueError: If any geometry is missing or invalid
    """
    invalid_mask = gdf.geometry.isna() | ~gdf.geometry.is_valid
    if invalid_mask.any():
        msg = f"{int(invalid_mask.sum())} missing or invalid geometries found"
        if context:
            msg = f"{msg} ({context})"
        raise ValueError(msg)


# =============================================================================
# Data Quality Summaries
# =============================================================================

def compute_na_rates(df: pd.DataFrame) -> dict[str, float]:
    """Compute the NA rate (0-1) of every column."""
    if len(df) == 0:
        return {c: 0.0 for c in df.columns}
    return (df.isna().sum() / len(df)).to_dict()
