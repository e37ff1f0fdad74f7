"""
I/O utilities: atomic writes and thin readers over pandas/geopandas.

All outputs are written to a temp file in the target directory and then
renamed over the target, so a failed run never leaves a half-written table.
GeoParquet is the internal format for joined areal tables.
"""

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

import geopandas as gpd
import pandas as pd
import yaml

from imd_crime.paths import PARAMS_PATH


# =============================================================================
# Atomic Write Utilities
# =============================================================================

@contextmanager
def atomic_write(
    target_path: Union[str, Path],
    mode: str = "w",
    suffix: Optional[str] = None,
):
    """
    Context manager for atomic file writes.

    Writes to a temporary file first, then atomically renames to target.
    If an exception occurs, the temp file is cleaned up and target unchanged.

    Args:
        target_path: Final destination path
        mode: File mode ('w' for text, 'wb' for binary)
        suffix: Optional suffix for temp file (e.g., '.json')

    Yields:
        File handle for writing
    """
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)

    if suffix is None:
        suffix = target_path.suffix or ".tmp"

    fd, temp_path = tempfile.mkstemp(
        suffix=suffix,
        prefix=f".{target_path.stem}_",
        dir=target_path.parent,
    )
    temp_path = Path(temp_path)

    try:
        os.close(fd)

        with open(temp_path, mode, encoding=None if "b" in mode else "utf-8") as f:
            yield f

        temp_path.replace(target_path)

    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


def _atomic_replace(target_path: Path, writer: Callable[[Path], None]) -> None:
    """Run `writer` against a temp path beside the target, then rename it into place."""
    target_path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(
        suffix=target_path.suffix.lower(),
        prefix=f".{target_path.stem}_",
        dir=target_path.parent,
    )
    os.close(fd)
    temp_path = Path(temp_path)

    try:
        writer(temp_path)
        temp_path.replace(target_path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


def atomic_write_df(
    df: pd.DataFrame,
    target_path: Union[str, Path],
    **kwargs,
) -> None:
    """
    Atomically write a DataFrame to CSV or Parquet (format from extension).

    Args:
        df: DataFrame to write
        target_path: Destination path (.csv or .parquet)
        **kwargs: Additional arguments passed to to_csv/to_parquet
    """
    target_path = Path(target_path)
    suffix = target_path.suffix.lower()

    if suffix == ".parquet":
        _atomic_replace(target_path, lambda p: df.to_parquet(p, **kwargs))
    elif suffix == ".csv":
        _atomic_replace(target_path, lambda p: df.to_csv(p, **kwargs))
    else:
        raise ValueError(f"Unsupported format: {suffix}")


def atomic_write_gdf(
    gdf: gpd.GeoDataFrame,
    target_path: Union[str, Path],
    **kwargs,
) -> None:
    """
    Atomically write a GeoDataFrame to GeoParquet, GeoJSON or GeoPackage.

    Args:
        gdf: GeoDataFrame to write
        target_path: Destination path (.parquet, .geojson, .gpkg)
        **kwargs: Additional arguments passed to writer
    """
    target_path = Path(target_path)
    suffix = target_path.suffix.lower()

    if suffix == ".parquet":
        _atomic_replace(target_path, lambda p: gdf.to_parquet(p, **kwargs))
    elif suffix == ".geojson":
        _atomic_replace(target_path, lambda p: gdf.to_file(p, driver="GeoJSON", **kwargs))
    elif suffix == ".gpkg":
        _atomic_replace(target_path, lambda p: gdf.to_file(p, driver="GPKG", **kwargs))
    else:
        raise ValueError(f"Unsupported geo format: {suffix}")


def atomic_write_json(
    data: Any,
    target_path: Union[str, Path],
    **kwargs,
) -> None:
    """Atomically write JSON data (indented, non-serialisable values stringified)."""
    kwargs.setdefault("indent", 2)
    kwargs.setdefault("default", str)

    with atomic_write(target_path, mode="w", suffix=".json") as f:
        json.dump(data, f, **kwargs)


# =============================================================================
# Read Utilities
# =============================================================================

def read_yaml(path: Union[str, Path]) -> dict:
    """Read a YAML file."""
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def read_json(path: Union[str, Path]) -> Any:
    """Read a JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_params(path: Optional[Union[str, Path]] = None) -> dict:
    """Load the project parameters (configs/params.yml by default)."""
    return read_yaml(path or PARAMS_PATH)


def read_gdf(
    path: Union[str, Path],
    **kwargs,
) -> gpd.GeoDataFrame:
    """
    Read a GeoDataFrame from GeoParquet, GeoJSON, GeoPackage or Shapefile.

    Args:
        path: Path to geo file
        **kwargs: Additional arguments passed to reader

    Returns:
        GeoDataFrame
    """
    path = Path(path)

    if path.suffix.lower() == ".parquet":
        return gpd.read_parquet(path, **kwargs)
    return gpd.read_file(path, **kwargs)


def read_df(
    path: Union[str, Path],
    **kwargs,
) -> pd.DataFrame:
    """
    Read a DataFrame from CSV or Parquet.

    Args:
        path: Path to data file
        **kwargs: Additional arguments passed to reader

    Returns:
        DataFrame
    """
    path = Path(path)
    suffix = path.suffix.lower()

    if suffix == ".parquet":
        return pd.read_parquet(path, **kwargs)
    elif suffix == ".csv":
        return pd.read_csv(path, **kwargs)
    else:
        raise ValueError(f"Unsupported format: {suffix}")


def read_sheet(
    path: Union[str, Path],
    sheet_name: Union[str, int] = 0,
    **kwargs,
) -> pd.DataFrame:
    """Read one sheet of a spreadsheet workbook (.xlsx via openpyxl)."""
    return pd.read_excel(path, sheet_name=sheet_name, engine="openpyxl", **kwargs)


def read_events(
    paths: Iterable[Union[str, Path]],
    usecols: Optional[list] = None,
) -> pd.DataFrame:
    """
    Read and concatenate street-level crime CSVs (one file per force and month).

    Args:
        paths: CSV files to read, in any order
        usecols: Optional subset of columns to keep

    Returns:
        Single DataFrame with a fresh RangeIndex
    """
    frames = [pd.read_csv(p, usecols=usecols) for p in sorted(Path(p) for p in paths)]
    if not frames:
        raise FileNotFoundError("No event files matched")
    return pd.concat(frames, ignore_index=True)
