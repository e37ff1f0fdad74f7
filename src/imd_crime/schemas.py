"""
Schema validation for the joined areal table and derived outputs.

Schema drift is an immediate local failure: the joined table is validated
(columns, dtypes, NA rules, value ranges) before anything is written.
The area key is always a pandas string column, unique and non-null.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union

import geopandas as gpd
import pandas as pd


# =============================================================================
# Schema Definition
# =============================================================================

@dataclass
class ColumnSpec:
    """Specification for a single column."""
    name: str
    dtype: Optional[str] = None  # "string", "Int64", "float64", "bool", "geometry"
    nullable: bool = True
    unique: bool = False
    allowed_values: Optional[Set[Any]] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None


@dataclass
class Schema:
    """Schema specification for a DataFrame or GeoDataFrame."""
    name: str
    columns: List[ColumnSpec]
    required_columns: List[str] = field(default_factory=list)
    min_rows: int = 0

    def __post_init__(self):
        if not self.required_columns:
            self.required_columns = [c.name for c in self.columns if not c.nullable]


class SchemaError(Exception):
    """Raised when schema validation fails."""
    pass


# =============================================================================
# Predefined Schemas
# =============================================================================

AREA_KEY = ColumnSpec("lsoa_code", dtype="string", nullable=False, unique=True)

DOMAIN_SPECS = [
    ColumnSpec(name, dtype="float64", nullable=True)
    for name in (
        "income", "employment", "education", "health",
        "crime", "barriers", "living_environment",
    )
]

# Selected boundaries
AREAS_SCHEMA = Schema(
    name="areas",
    columns=[
        AREA_KEY,
        ColumnSpec("geometry", dtype="geometry", nullable=False),
    ],
    min_rows=1,
)

# Joined areal table (after attribute and count joins)
JOINED_SCHEMA = Schema(
    name="joined",
    columns=[
        AREA_KEY,
        ColumnSpec("geometry", dtype="geometry", nullable=False),
        ColumnSpec("imd_score", dtype="float64", nullable=True),
        *DOMAIN_SPECS,
        ColumnSpec("is_complete", dtype="bool", nullable=False),
    ],
    min_rows=1,
)

# Reference comparison output
INDEX_SCHEMA = Schema(
    name="index",
    columns=[
        AREA_KEY,
        ColumnSpec("imd_recomputed", dtype="float64", nullable=True),
        ColumnSpec("reference_delta", dtype="float64", nullable=True),
    ],
    min_rows=1,
)


# =============================================================================
# Validation Functions
# =============================================================================

def _dtype_errors(df: pd.DataFrame, spec: ColumnSpec) -> List[str]:
    col = df[spec.name]
    if spec.dtype == "geometry":
        if not isinstance(df, gpd.GeoDataFrame):
            return [f"Expected GeoDataFrame for geometry column {spec.name}"]
    elif spec.dtype == "Int64":
        if not pd.api.types.is_integer_dtype(col):
            return [f"Column {spec.name}: expected Int64, got {col.dtype}"]
    elif spec.dtype == "float64":
        if not pd.api.types.is_float_dtype(col):
            return [f"Column {spec.name}: expected float64, got {col.dtype}"]
    elif spec.dtype == "string":
        if not (pd.api.types.is_string_dtype(col) or pd.api.types.is_object_dtype(col)):
            return [f"Column {spec.name}: expected string, got {col.dtype}"]
    elif spec.dtype == "bool":
        if not pd.api.types.is_bool_dtype(col):
            return [f"Column {spec.name}: expected bool, got {col.dtype}"]
    return []


def validate_column(df: pd.DataFrame, spec: ColumnSpec) -> List[str]:
    """
    Validate a single column against its specification.

    Returns:
        List of error messages (empty if valid)
    """
    if spec.name not in df.columns:
        return [f"Missing column: {spec.name}"]

    errors = []
    if spec.dtype is not None:
        errors.extend(_dtype_errors(df, spec))

    col = df[spec.name]

    if not spec.nullable and col.isna().any():
        errors.append(f"Column {spec.name}: {int(col.isna().sum())} NA values not allowed")

    if spec.unique and col.duplicated().any():
        errors.append(f"Column {spec.name}: {int(col.duplicated().sum())} duplicate values not allowed")

    if spec.allowed_values is not None:
        invalid = ~col.isin(spec.allowed_values) & col.notna()
        if invalid.any():
            errors.append(f"Column {spec.name}: invalid values {list(col[invalid].unique()[:5])}")

    if spec.min_value is not None and ((col < spec.min_value) & col.notna()).any():
        errors.append(f"Column {spec.name}: values below min {spec.min_value}")

    if spec.max_value is not None and ((col > spec.max_value) & col.notna()).any():
        errors.append(f"Column {spec.name}: values above max {spec.max_value}")

    return errors


def validate_schema(
    df: Union[pd.DataFrame, gpd.GeoDataFrame],
    schema: Schema,
    context: str = "",
    raise_on_error: bool = True,
) -> List[str]:
    """
    Validate a DataFrame against a schema.

    Args:
        df: DataFrame to validate
        schema: Schema specification
        context: Optional context for error messages
        raise_on_error: If True, raise SchemaError on validation failure

    Returns:
        List of error messages (empty if valid)

    Raises:
        SchemaError: If raise_on_error=True and validation fails
    """
    errors = []
    ctx = f" ({context})" if context else ""

    if len(df) < schema.min_rows:
        errors.append(f"Expected at least {schema.min_rows} rows, got {len(df)}{ctx}")

    missing = set(schema.required_columns) - set(df.columns)
    if missing:
        errors.append(f"Missing required columns: {sorted(missing)}{ctx}")

    for col_spec in schema.columns:
        if col_spec.name in missing:
            continue
        errors.extend(validate_column(df, col_spec))

    if errors and raise_on_error:
        raise SchemaError(f"Schema validation failed for '{schema.name}':\n" + "\n".join(errors))

    return errors


def count_column_specs(df: pd.DataFrame) -> List[ColumnSpec]:
    """Count columns (`count_*`) must be non-null, non-negative integers."""
    return [
        ColumnSpec(c, dtype="Int64", nullable=False, min_value=0)
        for c in df.columns if c.startswith("count_")
    ]


def validate_joined(df: gpd.GeoDataFrame, context: str = "joined") -> None:
    """Validate the joined areal table including its count columns."""
    schema = Schema(
        name=JOINED_SCHEMA.name,
        columns=JOINED_SCHEMA.columns + count_column_specs(df),
        min_rows=JOINED_SCHEMA.min_rows,
    )
    validate_schema(df, schema, context=context)


def ensure_area_id_dtype(df: pd.DataFrame, key: str = "lsoa_code") -> pd.DataFrame:
    """Return a copy with the area key as pandas string dtype."""
    if key in df.columns:
        df = df.copy()
        df[key] = df[key].astype("string")
    return df


# =============================================================================
# Merge Validation
# =============================================================================

def validate_merge(
    left: pd.DataFrame,
    right: pd.DataFrame,
    on: Union[str, List[str]],
    how: str = "left",
    validate: str = "one_to_one",
    context: str = "",
) -> pd.DataFrame:
    """
    Perform a merge with cardinality validation.

    Raises:
        ValueError: If merge validation fails (e.g. duplicate keys)
    """
    try:
        return pd.merge(left, right, on=on, how=how, validate=validate)
    except pd.errors.MergeError as e:
        raise ValueError(f"Merge validation failed ({context}): {e}") from e


SCHEMAS: Dict[str, Schema] = {
    "areas": AREAS_SCHEMA,
    "joined": JOINED_SCHEMA,
    "index": INDEX_SCHEMA,
}


def get_schema(name: str) -> Schema:
    """Get a registered schema by name."""
    if name not in SCHEMAS:
        raise KeyError(f"Unknown schema: {name}. Available: {list(SCHEMAS.keys())}")
    return SCHEMAS[name]
