"""
Error taxonomy for the typology core.

Every error is raised synchronously before or during a pure in-memory
computation; none of them is retryable. K-means hitting its iteration cap is
not an error and is reported on the result instead.
"""

from typing import Sequence


class TypologyError(Exception):
    """Base class for all typology errors."""
    pass


class ShapeMismatchError(TypologyError):
    """Raised when cooperating inputs disagree on row or column counts."""
    pass


class InvalidParameterError(TypologyError):
    """Raised when k, restarts, iteration caps or config values are out of range."""
    pass


class FeatureColumnError(TypologyError):
    """Raised when an input feature column is missing, non-numeric or non-finite."""
    pass


class DegenerateFeatureError(TypologyError):
    """Raised when a feature column has zero variance and cannot be standardized."""
    
    def __init__(self, features: Sequence[str], message: str = ""):
        self.features = list(features)
        if not message:
            message = f"Zero-variance feature(s) cannot be standardized: {self.features}"
        super().__init__(message)
