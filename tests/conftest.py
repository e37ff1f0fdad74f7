"""
Shared synthetic geographies.

All fixtures are square grids in British National Grid (EPSG:27700) around
central London, so no data files are needed.
"""

import copy

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import box

ORIGIN_X = 530000.0
ORIGIN_Y = 180000.0
CELL = 1000.0

DOMAINS = [
    "income",
    "employment",
    "education",
    "health",
    "crime",
    "barriers",
    "living_environment",
]

TEST_PARAMS = {
    "crs": {"planar_epsg": 27700},
    "area_selection": {"buffer_distance": 300},
    "keys": {"canonical": "lsoa_code", "anchor": "boundaries"},
    "sources": {
        "boundaries": {"key": "LSOA11CD", "columns": {"LSOA11NM": "lsoa_name"}},
        "deprivation": {
            "key": "LSOA code (2011)",
            "columns": {
                "Local Authority District code (2019)": "district_code",
                "Local Authority District name (2019)": "district_name",
                "Index of Multiple Deprivation (IMD) Score": "imd_score",
            },
        },
        "transformed_scores": {
            "key": "LSOA code (2011)",
            "columns": {f"{d} transformed": d for d in DOMAINS},
        },
        "crime": {
            "key": "LSOA code",
            "columns": {
                "Crime type": "category",
                "Month": "period",
                "Longitude": "longitude",
                "Latitude": "latitude",
            },
        },
    },
    "join_order": ["deprivation", "transformed_scores"],
    "index": {
        "reference_column": "imd_score",
        "decimals": 3,
        "exclude_domains": ["crime"],
        "weights": {
            "income": 0.225,
            "employment": 0.225,
            "education": 0.135,
            "health": 0.135,
            "crime": 0.28 / 3,
            "barriers": 0.28 / 3,
            "living_environment": 0.28 / 3,
        },
    },
    "events": {
        "categories": ["burglary", "violence-and-sexual-offences", "anti-social-behaviour"],
        "include_all_crime": True,
        "period": {"start": "2019-01", "end": "2019-12"},
    },
    "spatial_join": {"max_distance_m": 500, "max_unmatched_rate": 0.01},
    "contiguity": {"rule": "queen"},
    "regression": {
        "method": "full",
        "alpha": 0.05,
        "min_observations": 10,
        "models": [
            {"outcome": "count_burglary", "predictor": "imd_recomputed_excl_crime"},
            {"outcome": "count_all_crime", "predictor": "imd_recomputed_excl_crime"},
        ],
    },
}


def area_code(i: int) -> str:
    return f"E01{i:06d}"


def cell(col: int, row: int, size: float = CELL):
    """Square polygon at grid position (col, row)."""
    x0 = ORIGIN_X + col * size
    y0 = ORIGIN_Y + row * size
    return box(x0, y0, x0 + size, y0 + size)


def make_grid(n_cols: int, n_rows: int, key: str = "lsoa_code", start: int = 0) -> gpd.GeoDataFrame:
    """n_cols x n_rows touching squares, codes numbered row by row."""
    records = []
    i = start
    for row in range(n_rows):
        for col in range(n_cols):
            records.append({key: area_code(i), "geometry": cell(col, row)})
            i += 1
    gdf = gpd.GeoDataFrame(records, geometry="geometry", crs="EPSG:27700")
    gdf[key] = gdf[key].astype("string")
    return gdf


def add_areas(gdf: gpd.GeoDataFrame, cells, key: str = "lsoa_code", start: int = 900) -> gpd.GeoDataFrame:
    """Append squares at the given (col, row) positions."""
    extra = gpd.GeoDataFrame(
        [{key: area_code(start + k), "geometry": cell(c, r)} for k, (c, r) in enumerate(cells)],
        geometry="geometry",
        crs=gdf.crs,
    )
    combined = pd.concat([gdf, extra], ignore_index=True)
    combined[key] = combined[key].astype("string")
    return gpd.GeoDataFrame(combined, geometry="geometry", crs=gdf.crs)


def uniform_scores(value: float = 10.0) -> dict:
    return {d: value for d in DOMAINS}


@pytest.fixture
def params():
    return copy.deepcopy(TEST_PARAMS)


@pytest.fixture
def grid_2x2():
    return make_grid(2, 2)


@pytest.fixture
def grid_3x3():
    return make_grid(3, 3)


@pytest.fixture
def rng():
    return np.random.default_rng(20190101)
