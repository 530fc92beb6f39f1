"""
Cluster-count selection (elbow method).

Runs the K-means engine once per candidate k with the same restart policy and
exposes the (k, inertia) curve. Choosing k from the curve is left to the
caller; ``detect_elbow`` offers two documented automatic rules.

Candidates are evaluated in ascending k. Each candidate gets one extra
warm-start run seeded from the best centroids of the next smaller candidate,
grown to k centroids by farthest-row seeding. Lloyd iterations never increase
inertia, so the returned curve is non-increasing in k.
"""

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.metrics import calinski_harabasz_score, silhouette_score

from spatial_typology.errors import InvalidParameterError
from spatial_typology.kmeans import (
    DEFAULT_MAX_ITER,
    DEFAULT_TOL,
    ClusteringResult,
    as_matrix,
    cluster,
    squared_distances,
    validate_k,
)

ELBOW_METHODS = ("chord", "second_difference")


def validate_candidates(X: np.ndarray, k_values: Sequence[int]) -> List[int]:
    """Reject the whole candidate list before any clustering starts."""
    k_values = list(k_values)
    if not k_values:
        raise InvalidParameterError("At least one candidate k is required")
    checked = [validate_k(X, k) for k in k_values]
    if len(set(checked)) != len(checked):
        raise InvalidParameterError(f"Duplicate candidate k values: {k_values}")
    return checked


def extend_centroids(X: np.ndarray, centroids: np.ndarray, k: int) -> np.ndarray:
    """Grow a centroid set to k rows, each new one at the row farthest from all others."""
    grown = [np.asarray(c, dtype=np.float64) for c in centroids]
    closest = squared_distances(X, np.asarray(grown)).min(axis=1)
    while len(grown) < k:
        idx = int(np.argmax(closest))
        grown.append(X[idx].copy())
        closest = np.minimum(closest, ((X - X[idx]) ** 2).sum(axis=1))
    return np.vstack(grown)


def fit_k_range(
    matrix,
    k_values: Sequence[int],
    restarts: int = 10,
    seed: int = 0,
    max_iter: int = DEFAULT_MAX_ITER,
    tol: float = DEFAULT_TOL,
    n_jobs: int = 1,
) -> Dict[int, ClusteringResult]:
    """
    Cluster once per candidate k.

    Returns:
        Mapping k -> ClusteringResult, in the caller's candidate order
    """
    X = as_matrix(matrix)
    k_values = validate_candidates(X, k_values)

    fits: Dict[int, ClusteringResult] = {}
    previous: Optional[ClusteringResult] = None
    for k in sorted(k_values):
        warm = None
        if previous is not None:
            warm = extend_centroids(X, previous.centroids, k)
        fits[k] = cluster(
            X, k,
            restarts=restarts,
            seed=seed,
            max_iter=max_iter,
            tol=tol,
            n_jobs=n_jobs,
            init_centroids=warm,
        )
        previous = fits[k]

    return {k: fits[k] for k in k_values}


def compute_elbow_curve(
    matrix,
    k_values: Sequence[int],
    restarts: int = 10,
    seed: int = 0,
    max_iter: int = DEFAULT_MAX_ITER,
    tol: float = DEFAULT_TOL,
    n_jobs: int = 1,
) -> List[Tuple[int, float]]:
    """Return [(k, inertia), ...] in the caller's candidate order."""
    fits = fit_k_range(matrix, k_values, restarts, seed, max_iter, tol, n_jobs)
    return [(k, result.inertia) for k, result in fits.items()]


def score_fits(matrix, fits: Dict[int, ClusteringResult]) -> pd.DataFrame:
    """
    Tabulate diagnostics for already-fitted candidates.

    Silhouette and Calinski-Harabasz are only defined for 2 <= k < n_rows;
    outside that range they are NaN.
    """
    X = as_matrix(matrix)
    n_rows = X.shape[0]

    rows = []
    for k, result in fits.items():
        sizes = result.sizes()
        if 2 <= k < n_rows:
            sil = float(silhouette_score(X, result.assignment))
            ch = float(calinski_harabasz_score(X, result.assignment))
        else:
            sil = np.nan
            ch = np.nan
        rows.append({
            "k": k,
            "inertia": result.inertia,
            "silhouette_score": sil,
            "calinski_harabasz_score": ch,
            "min_cluster_size": int(sizes.min()),
            "max_cluster_size": int(sizes.max()),
            "n_singletons": int((sizes == 1).sum()),
            "converged": result.converged,
            "n_iter": result.n_iter,
        })

    return pd.DataFrame(rows)


def score_k_range(
    matrix,
    k_values: Sequence[int],
    restarts: int = 10,
    seed: int = 0,
    max_iter: int = DEFAULT_MAX_ITER,
    tol: float = DEFAULT_TOL,
    n_jobs: int = 1,
) -> pd.DataFrame:
    """Fit every candidate and return one diagnostics row per k."""
    fits = fit_k_range(matrix, k_values, restarts, seed, max_iter, tol, n_jobs)
    return score_fits(matrix, fits)


def detect_elbow(curve: Sequence[Tuple[int, float]], method: str = "chord") -> int:
    """
    Pick an elbow k from a (k, inertia) curve.

    Rules:
        chord: scale k and inertia to [0, 1] and return the k lying farthest
            below the straight line from the first to the last point.
        second_difference: return the k maximising
            inertia[i-1] - 2 * inertia[i] + inertia[i+1]; assumes evenly
            spaced candidates.

    Curves with fewer than three points, a flat curve, or no point below the
    chord return the smallest k. Ties go to the smaller k.
    """
    if method not in ELBOW_METHODS:
        raise InvalidParameterError(f"method must be one of {ELBOW_METHODS}, got {method!r}")
    if not curve:
        raise InvalidParameterError("Cannot detect an elbow on an empty curve")

    points = sorted((int(k), float(v)) for k, v in curve)
    ks = np.array([k for k, _ in points], dtype=np.float64)
    inertia = np.array([v for _, v in points], dtype=np.float64)

    if len(points) < 3:
        return int(ks[0])

    if method == "second_difference":
        second = inertia[:-2] - 2 * inertia[1:-1] + inertia[2:]
        return int(ks[int(np.argmax(second)) + 1])

    span = inertia.max() - inertia.min()
    if span == 0:
        return int(ks[0])
    x = (ks - ks[0]) / (ks[-1] - ks[0])
    y = (inertia - inertia.min()) / span
    chord = y[0] + (y[-1] - y[0]) * x
    gap = chord - y
    best = int(np.argmax(gap))
    if gap[best] <= 0:
        return int(ks[0])
    return int(ks[best])
