"""
Per-unit fit scoring.

Distance from each standardized row to its assigned centroid. Large values
flag units that are atypical for the group they were put in.
"""

import numpy as np

from spatial_typology.errors import InvalidParameterError, ShapeMismatchError
from spatial_typology.interpret import cluster_sizes


def distance_to_centroid(
    standardized: np.ndarray,
    assignment: np.ndarray,
    centroids: np.ndarray,
) -> np.ndarray:
    """
    Euclidean distance, in standardized space, from each row to its centroid.

    Args:
        standardized: (n_rows, n_features) matrix that was clustered
        assignment: 1-based cluster id per row
        centroids: (k, n_features); row i is cluster i + 1

    Returns:
        (n_rows,) array of non-negative distances, aligned with the rows
    """
    X = np.asarray(standardized, dtype=np.float64)
    centroids = np.asarray(centroids, dtype=np.float64)
    assignment = np.asarray(assignment)

    if X.ndim != 2 or centroids.ndim != 2:
        raise ShapeMismatchError(
            f"Expected 2-D matrix and centroids, got {X.shape} and {centroids.shape}"
        )
    if X.shape[1] != centroids.shape[1]:
        raise ShapeMismatchError(
            f"Matrix has {X.shape[1]} features but centroids have {centroids.shape[1]}"
        )
    if assignment.shape != (X.shape[0],):
        raise ShapeMismatchError(
            f"Assignment of shape {assignment.shape} does not match {X.shape[0]} rows"
        )
    cluster_sizes(assignment, centroids.shape[0])

    diff = X - centroids[assignment.astype(np.int64) - 1]
    return np.sqrt((diff ** 2).sum(axis=1))


def flag_atypical_units(
    distances: np.ndarray,
    assignment: np.ndarray,
    quantile: float = 0.95,
) -> np.ndarray:
    """
    Mark rows whose distance exceeds their own cluster's distance quantile.

    Singleton clusters never flag their member.
    """
    if not 0 < quantile <= 1:
        raise InvalidParameterError(f"quantile must be in (0, 1], got {quantile!r}")
    distances = np.asarray(distances, dtype=np.float64)
    assignment = np.asarray(assignment)
    if distances.shape != assignment.shape:
        raise ShapeMismatchError(
            f"{distances.shape[0]} distances for {assignment.shape[0]} assignments"
        )

    flags = np.zeros(distances.shape, dtype=bool)
    for cluster_id in np.unique(assignment):
        members = assignment == cluster_id
        if members.sum() < 2:
            continue
        cutoff = np.quantile(distances[members], quantile)
        flags[members] = distances[members] > cutoff
    return flags
