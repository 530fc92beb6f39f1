"""
Tests for z-score standardization.

Validates:
- Standardized columns have mean 0 and sample std 1
- Inverse transform reproduces the original matrix
- Zero-variance and single-row inputs raise DegenerateFeatureError
- Parameters are immutable and shape-checked
"""

import numpy as np
import pandas as pd
import pytest

from spatial_typology.errors import DegenerateFeatureError, ShapeMismatchError
from spatial_typology.features import FeatureMatrix
from spatial_typology.standardize import StandardizationParams, fit_params, standardize


def make_matrix(values, names=None):
    values = np.asarray(values, dtype=float)
    if values.ndim == 1:
        values = values.reshape(-1, 1)
    if names is None:
        names = [f"f{i}" for i in range(values.shape[1])]
    return FeatureMatrix(
        unit_ids=tuple(range(values.shape[0])),
        feature_names=tuple(names),
        values=values,
    )


@pytest.fixture
def random_matrix():
    """Columns on very different scales."""
    rng = np.random.default_rng(42)
    values = np.column_stack([
        rng.uniform(0, 1, 50),
        rng.normal(8, 3, 50),
        rng.poisson(20, 50).astype(float),
    ])
    return make_matrix(values, ["impervious", "slope", "crossing"])


# =============================================================================
# Test Class: Moments
# =============================================================================

class TestMoments:
    """Standardized columns are centred and unit-scaled."""

    def test_zero_mean(self, random_matrix):
        z, _ = standardize(random_matrix)
        np.testing.assert_allclose(z.mean(axis=0), 0.0, atol=1e-12)

    def test_unit_sample_std(self, random_matrix):
        z, _ = standardize(random_matrix)
        np.testing.assert_allclose(z.std(axis=0, ddof=1), 1.0, rtol=1e-12)

    def test_scale_is_sample_std(self, random_matrix):
        """Scale matches pandas' default (ddof=1) standard deviation."""
        _, params = standardize(random_matrix)
        expected = pd.DataFrame(random_matrix.values).std().to_numpy()
        np.testing.assert_allclose(params.scale, expected, rtol=1e-12)

    def test_shape_preserved(self, random_matrix):
        z, params = standardize(random_matrix)
        assert z.shape == random_matrix.values.shape
        assert params.feature_names == random_matrix.feature_names


# =============================================================================
# Test Class: Round Trip
# =============================================================================

class TestRoundTrip:
    """Inverse transform with the same parameters restores the input."""

    def test_inverse_restores_matrix(self, random_matrix):
        z, params = standardize(random_matrix)
        np.testing.assert_allclose(
            params.inverse_transform(z), random_matrix.values, rtol=1e-12, atol=1e-12
        )

    def test_transform_matches_standardize(self, random_matrix):
        z, params = standardize(random_matrix)
        np.testing.assert_array_equal(params.transform(random_matrix.values), z)

    def test_single_vector_accepted(self, random_matrix):
        """A 1-D vector is treated as one row."""
        _, params = standardize(random_matrix)
        restored = params.inverse_transform(np.zeros(3))
        np.testing.assert_allclose(restored[0], params.mean)

    def test_width_mismatch(self, random_matrix):
        _, params = standardize(random_matrix)
        with pytest.raises(ShapeMismatchError):
            params.transform(np.zeros((4, 2)))
        with pytest.raises(ShapeMismatchError):
            params.inverse_transform(np.zeros((1, 5)))


# =============================================================================
# Test Class: Degenerate Features
# =============================================================================

class TestDegenerateFeatures:
    """Zero variance is a precondition violation."""

    def test_constant_column(self):
        """[1, 1, 1, 1] cannot be standardized."""
        with pytest.raises(DegenerateFeatureError) as excinfo:
            standardize(make_matrix([1, 1, 1, 1], ["crossing"]))
        assert excinfo.value.features == ["crossing"]

    def test_only_constant_columns_reported(self):
        values = np.array([[0.2, 5.0, 3.0], [0.4, 5.0, 1.0], [0.9, 5.0, 2.0]])
        with pytest.raises(DegenerateFeatureError) as excinfo:
            standardize(make_matrix(values, ["impervious", "slope", "crossing"]))
        assert excinfo.value.features == ["slope"]

    def test_constant_column_with_rounding(self):
        """A constant that is not exactly representable is still degenerate."""
        with pytest.raises(DegenerateFeatureError):
            standardize(make_matrix([0.1] * 7))

    def test_tiny_scale_column_accepted(self):
        """A column that varies on a very small scale is not degenerate."""
        z, params = standardize(make_matrix([0.0, 1e-16, 2e-16, 3e-16]))
        assert params.scale[0] > 0
        np.testing.assert_allclose(z.std(axis=0, ddof=1), 1.0, rtol=1e-9)

    def test_large_offset_column_accepted(self):
        """Small variation on a large offset is not degenerate."""
        _, params = standardize(make_matrix([1e7, 1e7 + 1e-8, 1e7 + 2e-8]))
        assert params.scale[0] > 0

    def test_single_row(self):
        """Sample variance of one row is undefined."""
        with pytest.raises(DegenerateFeatureError):
            standardize(make_matrix([[0.5, 3.0]]))

    def test_params_reject_zero_scale(self):
        with pytest.raises(DegenerateFeatureError):
            StandardizationParams(("a", "b"), mean=[0.0, 0.0], scale=[1.0, 0.0])

    def test_empty_matrix(self):
        with pytest.raises(ShapeMismatchError):
            fit_params(np.zeros((0, 2)), ["a", "b"])


# =============================================================================
# Test Class: Immutability
# =============================================================================

class TestImmutability:
    """Derived values are read-only."""

    def test_standardized_read_only(self, random_matrix):
        z, _ = standardize(random_matrix)
        with pytest.raises(ValueError):
            z[0, 0] = 1.0

    def test_params_read_only(self, random_matrix):
        _, params = standardize(random_matrix)
        with pytest.raises(ValueError):
            params.mean[0] = 1.0
        with pytest.raises(AttributeError):
            params.scale = np.ones(3)

    def test_params_frame(self, random_matrix):
        _, params = standardize(random_matrix)
        df = params.to_frame()
        assert list(df.columns) == ["feature", "mean", "std"]
        assert df["feature"].tolist() == ["impervious", "slope", "crossing"]
