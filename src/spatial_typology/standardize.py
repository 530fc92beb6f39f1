"""
Z-score standardization with retained, invertible parameters.

Uses the sample standard deviation (ddof=1), the pandas default. A column with
zero variance cannot be rescaled and raises ``DegenerateFeatureError`` instead
of being silently divided; so does a single-row matrix, whose sample variance
is undefined.
"""

from dataclasses import dataclass
from typing import Sequence, Tuple, Union

import numpy as np
import pandas as pd

from spatial_typology.errors import DegenerateFeatureError, ShapeMismatchError
from spatial_typology.features import FeatureMatrix, readonly_array

DDOF = 1


@dataclass(frozen=True)
class StandardizationParams:
    """Per-feature mean and sample standard deviation."""
    feature_names: Tuple[str, ...]
    mean: np.ndarray
    scale: np.ndarray

    def __post_init__(self):
        mean = readonly_array(self.mean)
        scale = readonly_array(self.scale)
        if mean.shape != (len(self.feature_names),) or scale.shape != mean.shape:
            raise ShapeMismatchError(
                f"Expected {len(self.feature_names)} means and scales, "
                f"got {mean.shape} and {scale.shape}"
            )
        if not (scale > 0).all():
            bad = [f for f, s in zip(self.feature_names, scale) if not s > 0]
            raise DegenerateFeatureError(bad)
        object.__setattr__(self, "feature_names", tuple(self.feature_names))
        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "scale", scale)

    @property
    def n_features(self) -> int:
        return len(self.feature_names)

    def _check_width(self, values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=np.float64)
        if values.ndim == 1:
            values = values.reshape(1, -1)
        if values.ndim != 2 or values.shape[1] != self.n_features:
            raise ShapeMismatchError(
                f"Expected {self.n_features} columns {list(self.feature_names)}, "
                f"got shape {values.shape}"
            )
        return values

    def transform(self, values: np.ndarray) -> np.ndarray:
        """Apply ``(x - mean) / std`` column-wise."""
        values = self._check_width(values)
        return (values - self.mean) / self.scale

    def inverse_transform(self, values: np.ndarray) -> np.ndarray:
        """Map standardized values back to original units: ``z * std + mean``."""
        values = self._check_width(values)
        return values * self.scale + self.mean

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {"feature": list(self.feature_names), "mean": self.mean, "std": self.scale}
        )


def fit_params(
    values: Union[np.ndarray, pd.DataFrame],
    feature_names: Sequence[str],
) -> StandardizationParams:
    """
    Compute standardization parameters for a 2-D matrix.

    Raises:
        ShapeMismatchError: Matrix is not 2-D, is empty, or disagrees with
            ``feature_names``
        DegenerateFeatureError: Any column has zero (or undefined) variance
    """
    values = np.asarray(values, dtype=np.float64)
    if values.ndim != 2 or values.shape[0] < 1 or values.shape[1] < 1:
        raise ShapeMismatchError(f"Need a non-empty 2-D matrix, got shape {values.shape}")
    if values.shape[1] != len(feature_names):
        raise ShapeMismatchError(
            f"{len(feature_names)} feature names for {values.shape[1]} columns"
        )

    if values.shape[0] <= DDOF:
        raise DegenerateFeatureError(
            feature_names,
            f"Sample variance is undefined for {values.shape[0]} row(s): {list(feature_names)}",
        )

    mean = values.mean(axis=0)
    scale = values.std(axis=0, ddof=DDOF)

    # constant columns are found from the range: rounding in the mean can
    # leave them with a tiny non-zero std
    constant = values.max(axis=0) == values.min(axis=0)
    degenerate = [f for f, c, s in zip(feature_names, constant, scale) if c or not s > 0]
    if degenerate:
        raise DegenerateFeatureError(degenerate)

    return StandardizationParams(feature_names=tuple(feature_names), mean=mean, scale=scale)


def standardize(matrix: FeatureMatrix) -> Tuple[np.ndarray, StandardizationParams]:
    """
    Standardize a feature matrix to zero mean and unit sample variance.

    Returns:
        - standardized: Read-only array with the same shape as ``matrix.values``
        - params: Parameters that invert the transform
    """
    params = fit_params(matrix.values, matrix.feature_names)
    standardized = params.transform(matrix.values)
    standardized.setflags(write=False)
    return standardized, params
