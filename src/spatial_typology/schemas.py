"""
Schema validation for typology output tables.

Outputs are validated (columns, dtypes, NA rules, ranges) before they are
written, so schema drift fails the run instead of reaching a map or report.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import pandas as pd

from spatial_typology.errors import TypologyError


# =============================================================================
# Schema Definition
# =============================================================================

@dataclass
class ColumnSpec:
    """Specification for a single column."""
    name: str
    dtype: Optional[str] = None  # "int", "float", "bool" or "str"
    nullable: bool = True
    unique: bool = False
    allowed_values: Optional[Set[Any]] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None


@dataclass
class Schema:
    """Schema specification for a DataFrame."""
    name: str
    columns: List[ColumnSpec]
    required_columns: List[str] = field(default_factory=list)
    min_rows: int = 0

    def __post_init__(self):
        if not self.required_columns:
            self.required_columns = [c.name for c in self.columns]


class SchemaError(TypologyError):
    """Raised when schema validation fails."""
    pass


# =============================================================================
# Output Schemas
# =============================================================================

UNIT_TYPOLOGY_SCHEMA = Schema(
    name="unit_typology",
    columns=[
        ColumnSpec("cluster_id", dtype="int", nullable=False, min_value=1),
        ColumnSpec("cluster_label", dtype="str", nullable=False),
        ColumnSpec("distance_to_centroid", dtype="float", nullable=True, min_value=0),
        ColumnSpec("is_atypical", dtype="bool", nullable=False),
    ],
    min_rows=1,
)

PROFILE_SCHEMA = Schema(
    name="typology_profiles",
    columns=[
        ColumnSpec("cluster_id", dtype="int", nullable=False, unique=True, min_value=1),
        ColumnSpec("cluster_label", dtype="str", nullable=False, unique=True),
        ColumnSpec("n_units", dtype="int", nullable=False, min_value=1),
    ],
    min_rows=1,
)

K_SCORES_SCHEMA = Schema(
    name="k_selection_scores",
    columns=[
        ColumnSpec("k", dtype="int", nullable=False, unique=True, min_value=1),
        ColumnSpec("inertia", dtype="float", nullable=False, min_value=0),
        ColumnSpec("silhouette_score", dtype="float", nullable=True, min_value=-1, max_value=1),
        ColumnSpec("min_cluster_size", dtype="int", nullable=False, min_value=1),
        ColumnSpec("n_singletons", dtype="int", nullable=False, min_value=0),
    ],
    min_rows=1,
)


# =============================================================================
# Validation Functions
# =============================================================================

_DTYPE_CHECKS = {
    "int": pd.api.types.is_integer_dtype,
    "float": pd.api.types.is_float_dtype,
    "bool": pd.api.types.is_bool_dtype,
    "str": lambda col: pd.api.types.is_object_dtype(col) or pd.api.types.is_string_dtype(col),
}


def validate_column(df: pd.DataFrame, spec: ColumnSpec) -> List[str]:
    """
    Validate a single column against its specification.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    col_name = spec.name

    if col_name not in df.columns:
        errors.append(f"Missing column: {col_name}")
        return errors

    col = df[col_name]

    if spec.dtype is not None and not _DTYPE_CHECKS[spec.dtype](col):
        errors.append(f"Column {col_name}: expected {spec.dtype}, got {col.dtype}")

    if not spec.nullable and col.isna().any():
        errors.append(f"Column {col_name}: {int(col.isna().sum())} NA values not allowed")

    if spec.unique and col.duplicated().any():
        errors.append(f"Column {col_name}: {int(col.duplicated().sum())} duplicate values not allowed")

    if spec.allowed_values is not None:
        invalid = ~col.isin(spec.allowed_values) & col.notna()
        if invalid.any():
            errors.append(f"Column {col_name}: invalid values {list(col[invalid].unique()[:5])}")

    if spec.min_value is not None and ((col < spec.min_value) & col.notna()).any():
        errors.append(f"Column {col_name}: values below min {spec.min_value}")

    if spec.max_value is not None and ((col > spec.max_value) & col.notna()).any():
        errors.append(f"Column {col_name}: values above max {spec.max_value}")

    return errors


def validate_schema(
    df: pd.DataFrame,
    schema: Schema,
    context: str = "",
    raise_on_error: bool = True,
) -> List[str]:
    """
    Validate a DataFrame against a schema.

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
        if col_spec.name in df.columns:
            errors.extend(validate_column(df, col_spec))

    if errors and raise_on_error:
        raise SchemaError(f"Schema validation failed for '{schema.name}':\n" + "\n".join(errors))

    return errors


SCHEMAS: Dict[str, Schema] = {
    schema.name: schema
    for schema in (UNIT_TYPOLOGY_SCHEMA, PROFILE_SCHEMA, K_SCORES_SCHEMA)
}


def get_schema(name: str) -> Schema:
    """Get a registered schema by name."""
    if name not in SCHEMAS:
        raise KeyError(f"Unknown schema: {name}. Available: {list(SCHEMAS.keys())}")
    return SCHEMAS[name]
