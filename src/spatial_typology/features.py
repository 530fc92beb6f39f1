"""
Feature matrix builder.

Projects input records (a DataFrame, a GeoDataFrame, or an iterable of
mappings) onto a fixed, ordered list of numeric feature columns. Geometry and
every other attribute are dropped. Row order is preserved: every downstream
vector (labels, distances) aligns positionally with ``FeatureMatrix.values``.
"""

from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from spatial_typology.errors import FeatureColumnError, InvalidParameterError, ShapeMismatchError

DEFAULT_FEATURES = ("impervious", "slope", "crossing")

NAN_POLICIES = ("raise", "median")


def readonly_array(values) -> np.ndarray:
    """Return a float64 copy of ``values`` that cannot be written to."""
    values = np.array(values, dtype=np.float64, copy=True)
    values.setflags(write=False)
    return values


@dataclass(frozen=True)
class FeatureMatrix:
    """Rows of named numeric features, one row per spatial unit."""
    unit_ids: Tuple[Any, ...]
    feature_names: Tuple[str, ...]
    values: np.ndarray

    def __post_init__(self):
        values = readonly_array(self.values)
        if values.ndim != 2:
            raise ShapeMismatchError(f"Feature matrix must be 2-D, got shape {values.shape}")
        if values.shape[0] != len(self.unit_ids):
            raise ShapeMismatchError(
                f"{len(self.unit_ids)} unit ids for {values.shape[0]} rows"
            )
        if values.shape[1] != len(self.feature_names):
            raise ShapeMismatchError(
                f"{len(self.feature_names)} feature names for {values.shape[1]} columns"
            )
        object.__setattr__(self, "unit_ids", tuple(self.unit_ids))
        object.__setattr__(self, "feature_names", tuple(self.feature_names))
        object.__setattr__(self, "values", values)

    @property
    def n_rows(self) -> int:
        return self.values.shape[0]

    @property
    def n_features(self) -> int:
        return self.values.shape[1]

    def to_frame(self) -> pd.DataFrame:
        """Return the matrix as a DataFrame indexed by unit id."""
        return pd.DataFrame(
            self.values,
            columns=list(self.feature_names),
            index=pd.Index(self.unit_ids, name="unit_id"),
        )


def _as_frame(records: Union[pd.DataFrame, Iterable[Mapping[str, Any]]]) -> pd.DataFrame:
    if isinstance(records, pd.DataFrame):
        return records
    return pd.DataFrame.from_records(list(records))


def build_feature_matrix(
    records: Union[pd.DataFrame, Iterable[Mapping[str, Any]]],
    feature_names: Sequence[str] = DEFAULT_FEATURES,
    id_column: Optional[str] = None,
    nan_policy: str = "raise",
) -> FeatureMatrix:
    """
    Build a ``FeatureMatrix`` from input records.

    Args:
        records: Unit table; GeoDataFrames are accepted and their geometry ignored
        feature_names: Ordered feature columns to extract
        id_column: Column holding unit identifiers; the frame index when None
        nan_policy: "raise" rejects missing values, "median" fills each column
            with its median

    Returns:
        FeatureMatrix with rows in input order

    Raises:
        FeatureColumnError: Missing, non-numeric or non-finite feature columns,
            empty input, or duplicate unit ids
        InvalidParameterError: Unknown nan_policy
    """
    if nan_policy not in NAN_POLICIES:
        raise InvalidParameterError(f"nan_policy must be one of {NAN_POLICIES}, got {nan_policy!r}")

    feature_names = list(feature_names)
    if not feature_names:
        raise FeatureColumnError("At least one feature column is required")
    if len(set(feature_names)) != len(feature_names):
        raise FeatureColumnError(f"Duplicate feature names: {feature_names}")

    df = _as_frame(records)
    if len(df) == 0:
        raise FeatureColumnError("No records to build a feature matrix from")

    missing = [c for c in feature_names if c not in df.columns]
    if missing:
        raise FeatureColumnError(f"Missing feature columns: {missing}")

    non_numeric = [
        c for c in feature_names
        if not pd.api.types.is_numeric_dtype(df[c]) or pd.api.types.is_bool_dtype(df[c])
    ]
    if non_numeric:
        raise FeatureColumnError(f"Non-numeric feature columns: {non_numeric}")

    if id_column is None:
        unit_ids = list(df.index)
    else:
        if id_column not in df.columns:
            raise FeatureColumnError(f"Missing id column: {id_column}")
        unit_ids = df[id_column].tolist()
    if len(set(unit_ids)) != len(unit_ids):
        raise FeatureColumnError("Unit ids must be unique")

    raw = df[feature_names].astype("float64")

    nan_counts = raw.isna().sum()
    if nan_counts.sum() > 0:
        if nan_policy == "raise":
            raise FeatureColumnError(
                f"Missing values in features: {nan_counts[nan_counts > 0].to_dict()}"
            )
        medians = raw.median()
        all_missing = medians[medians.isna()].index.tolist()
        if all_missing:
            raise FeatureColumnError(f"Features with no observed values: {all_missing}")
        raw = raw.fillna(medians)

    values = raw.to_numpy()
    if not np.isfinite(values).all():
        bad = [c for c, ok in zip(feature_names, np.isfinite(values).all(axis=0)) if not ok]
        raise FeatureColumnError(f"Non-finite values in features: {bad}")

    return FeatureMatrix(unit_ids=tuple(unit_ids), feature_names=tuple(feature_names), values=values)


def missing_value_counts(
    records: Union[pd.DataFrame, Iterable[Mapping[str, Any]]],
    feature_names: Sequence[str],
) -> dict:
    """Count missing values per requested feature (absent columns are skipped)."""
    df = _as_frame(records)
    present: List[str] = [c for c in feature_names if c in df.columns]
    counts = df[present].isna().sum()
    return {c: int(n) for c, n in counts.items() if n > 0}
