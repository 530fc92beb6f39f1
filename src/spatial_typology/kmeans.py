"""
K-means clustering (Lloyd's algorithm) with k-means++ seeding and restarts.

Each restart:
1. Seeds k centroids with k-means++ from its own generator, spawned from
   ``SeedSequence(seed)``, so restart r sees the same stream in any run order
2. Assigns every row to the nearest centroid (ties -> lowest cluster id)
3. Refills empty clusters with the row farthest from its centroid, taken from
   a cluster that still has more than one member
4. Moves each centroid to the mean of its rows
5. Stops when no assignment changes, when the total squared centroid shift
   is <= tol, or at max_iter (recorded as converged=False, not an error)

The restart with the lowest inertia wins; an exact tie goes to the lowest
restart index. Cluster ids in the returned assignment are 1..k and carry no
meaning outside the run that produced them.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from spatial_typology.errors import InvalidParameterError, ShapeMismatchError
from spatial_typology.features import readonly_array

DEFAULT_MAX_ITER = 300
DEFAULT_TOL = 1e-10


@dataclass(frozen=True)
class ClusteringResult:
    """Best partition found across restarts."""
    assignment: np.ndarray
    centroids: np.ndarray
    inertia: float
    n_iter: int
    converged: bool
    restart: int

    def __post_init__(self):
        assignment = np.array(self.assignment, dtype=np.int64, copy=True)
        assignment.setflags(write=False)
        object.__setattr__(self, "assignment", assignment)
        object.__setattr__(self, "centroids", readonly_array(self.centroids))
        object.__setattr__(self, "inertia", float(self.inertia))

    @property
    def k(self) -> int:
        return self.centroids.shape[0]

    @property
    def cluster_ids(self) -> np.ndarray:
        return np.arange(1, self.k + 1)

    def sizes(self) -> np.ndarray:
        """Row count per cluster id, in id order."""
        return np.bincount(self.assignment, minlength=self.k + 1)[1:]

    def as_tuple(self) -> Tuple[np.ndarray, np.ndarray, float]:
        return self.assignment, self.centroids, self.inertia


@dataclass(frozen=True)
class _RunOutcome:
    labels: np.ndarray
    centroids: np.ndarray
    inertia: float
    n_iter: int
    converged: bool


# =============================================================================
# Validation
# =============================================================================

def _is_int(value) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, (bool, np.bool_))


def _require_int(value, name: str, minimum: int) -> int:
    if not _is_int(value) or value < minimum:
        raise InvalidParameterError(f"{name} must be an integer >= {minimum}, got {value!r}")
    return int(value)


def as_matrix(matrix) -> np.ndarray:
    """Coerce to a finite, non-empty, read-only 2-D float64 array."""
    X = np.asarray(matrix, dtype=np.float64)
    if X.ndim != 2 or X.shape[0] == 0 or X.shape[1] == 0:
        raise ShapeMismatchError(f"Need a non-empty 2-D matrix, got shape {X.shape}")
    if not np.isfinite(X).all():
        raise InvalidParameterError("Matrix contains NaN or infinite values")
    X = readonly_array(X)
    return X


def validate_k(X: np.ndarray, k) -> int:
    """
    Check that k clusters can be formed from the rows of X.

    k may not exceed the number of distinct rows: with fewer distinct points
    than clusters one cluster is always empty.
    """
    k = _require_int(k, "k", 1)
    n_rows = X.shape[0]
    if k > n_rows:
        raise InvalidParameterError(f"k={k} exceeds number of rows ({n_rows})")
    n_distinct = np.unique(X, axis=0).shape[0]
    if k > n_distinct:
        raise InvalidParameterError(
            f"k={k} exceeds number of distinct rows ({n_distinct})"
        )
    return k


# =============================================================================
# Lloyd iterations
# =============================================================================

def squared_distances(X: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """(n_rows, k) matrix of squared Euclidean distances."""
    diff = X[:, np.newaxis, :] - centroids[np.newaxis, :, :]
    return (diff ** 2).sum(axis=2)


def kmeans_plus_plus(X: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    """Choose k initial centroids by D^2 sampling."""
    n_rows = X.shape[0]
    centroids = np.empty((k, X.shape[1]), dtype=np.float64)

    first = int(rng.integers(n_rows))
    centroids[0] = X[first]
    closest = ((X - X[first]) ** 2).sum(axis=1)

    for j in range(1, k):
        total = closest.sum()
        if total > 0:
            idx = int(rng.choice(n_rows, p=closest / total))
        else:
            idx = int(rng.integers(n_rows))
        centroids[j] = X[idx]
        closest = np.minimum(closest, ((X - X[idx]) ** 2).sum(axis=1))

    return centroids


def _fill_empty_clusters(X: np.ndarray, labels: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    k = centroids.shape[0]
    counts = np.bincount(labels, minlength=k)
    empty = np.flatnonzero(counts == 0)
    if empty.size == 0:
        return labels

    labels = labels.copy()
    dist = ((X - centroids[labels]) ** 2).sum(axis=1)
    for j in empty:
        # only rows whose cluster keeps at least one member may move
        candidates = np.where(counts[labels] > 1, dist, -1.0)
        row = int(np.argmax(candidates))
        counts[labels[row]] -= 1
        labels[row] = j
        counts[j] = 1
        dist[row] = 0.0
    return labels


def _cluster_means(X: np.ndarray, labels: np.ndarray, k: int) -> np.ndarray:
    counts = np.bincount(labels, minlength=k)
    sums = np.zeros((k, X.shape[1]), dtype=np.float64)
    np.add.at(sums, labels, X)
    return sums / counts[:, np.newaxis]


def lloyd(
    X: np.ndarray,
    init_centroids: np.ndarray,
    max_iter: int = DEFAULT_MAX_ITER,
    tol: float = DEFAULT_TOL,
) -> _RunOutcome:
    """Refine ``init_centroids`` until assignments settle or max_iter is hit."""
    k = init_centroids.shape[0]
    centroids = np.array(init_centroids, dtype=np.float64, copy=True)
    labels: Optional[np.ndarray] = None
    converged = False

    n_iter = 0
    for n_iter in range(1, max_iter + 1):
        new_labels = np.argmin(squared_distances(X, centroids), axis=1)
        new_labels = _fill_empty_clusters(X, new_labels, centroids)
        new_centroids = _cluster_means(X, new_labels, k)

        shift = float(((new_centroids - centroids) ** 2).sum())
        stable = labels is not None and np.array_equal(new_labels, labels)
        labels, centroids = new_labels, new_centroids

        if stable or shift <= tol:
            converged = True
            break

    inertia = float(((X - centroids[labels]) ** 2).sum())
    return _RunOutcome(labels, centroids, inertia, n_iter, converged)


# =============================================================================
# Public entry point
# =============================================================================

def cluster(
    matrix,
    k: int,
    restarts: int = 10,
    seed: int = 0,
    max_iter: int = DEFAULT_MAX_ITER,
    tol: float = DEFAULT_TOL,
    n_jobs: int = 1,
    init_centroids: Optional[np.ndarray] = None,
) -> ClusteringResult:
    """
    Partition the rows of ``matrix`` into k clusters.

    Args:
        matrix: (n_rows, n_features) array, normally standardized
        k: Number of clusters, 1 <= k <= number of distinct rows
        restarts: Number of k-means++ seeded runs
        seed: Non-negative integer governing centroid initialization only
        max_iter: Iteration cap per run
        tol: Convergence threshold on the total squared centroid shift
        n_jobs: Threads used to run restarts; does not change the result
        init_centroids: Optional (k, n_features) start evaluated as one extra
            run after the seeded restarts

    Returns:
        ClusteringResult with 1-based cluster ids

    Raises:
        InvalidParameterError: Bad k, restarts, seed, max_iter, tol or n_jobs
        ShapeMismatchError: Matrix not 2-D, or init_centroids of the wrong shape
    """
    X = as_matrix(matrix)
    k = validate_k(X, k)
    restarts = _require_int(restarts, "restarts", 1)
    max_iter = _require_int(max_iter, "max_iter", 1)
    n_jobs = _require_int(n_jobs, "n_jobs", 1)
    seed = _require_int(seed, "seed", 0)
    if not tol >= 0:
        raise InvalidParameterError(f"tol must be >= 0, got {tol!r}")

    if init_centroids is not None:
        init_centroids = np.asarray(init_centroids, dtype=np.float64)
        if init_centroids.shape != (k, X.shape[1]):
            raise ShapeMismatchError(
                f"init_centroids must have shape {(k, X.shape[1])}, got {init_centroids.shape}"
            )

    seeds = np.random.SeedSequence(seed).spawn(restarts)

    def run(r: int) -> _RunOutcome:
        rng = np.random.default_rng(seeds[r])
        return lloyd(X, kmeans_plus_plus(X, k, rng), max_iter, tol)

    if n_jobs == 1 or restarts == 1:
        outcomes: List[_RunOutcome] = [run(r) for r in range(restarts)]
    else:
        with ThreadPoolExecutor(max_workers=min(n_jobs, restarts)) as executor:
            # map yields in submission order whatever the completion order
            outcomes = list(executor.map(run, range(restarts)))

    if init_centroids is not None:
        outcomes.append(lloyd(X, init_centroids, max_iter, tol))

    best = min(range(len(outcomes)), key=lambda r: (outcomes[r].inertia, r))
    winner = outcomes[best]

    return ClusteringResult(
        assignment=winner.labels + 1,
        centroids=winner.centroids,
        inertia=winner.inertia,
        n_iter=winner.n_iter,
        converged=winner.converged,
        restart=best,
    )
