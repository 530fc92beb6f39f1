"""
Typology pipeline: records -> feature matrix -> standardized matrix ->
k curve -> clustering -> profiles -> distances.

Each stage returns an immutable value that is passed explicitly to the next;
nothing is read from module state. Configuration comes from the ``typology``
and ``random_seeds`` sections of ``configs/params.yml``.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from spatial_typology.errors import InvalidParameterError, ShapeMismatchError
from spatial_typology.features import (
    DEFAULT_FEATURES,
    NAN_POLICIES,
    FeatureMatrix,
    build_feature_matrix,
    missing_value_counts,
)
from spatial_typology.interpret import ClusterProfile, interpret_clusters, profiles_to_frame
from spatial_typology.kmeans import DEFAULT_MAX_ITER, DEFAULT_TOL, ClusteringResult, cluster
from spatial_typology.logging_utils import JSONLLogger
from spatial_typology.scoring import distance_to_centroid, flag_atypical_units
from spatial_typology.selection import ELBOW_METHODS, detect_elbow, fit_k_range, score_fits
from spatial_typology.standardize import StandardizationParams, standardize

DEFAULT_SEED = 12345


# =============================================================================
# Configuration
# =============================================================================

@dataclass(frozen=True)
class TypologyConfig:
    """Validated settings for one typology run."""
    features: Tuple[str, ...] = DEFAULT_FEATURES
    id_column: Optional[str] = None
    nan_policy: str = "raise"
    k_range: Tuple[int, ...] = (2, 3, 4, 5, 6, 7, 8)
    k: Optional[int] = None
    elbow_method: str = "chord"
    restarts: int = 10
    max_iter: int = DEFAULT_MAX_ITER
    tol: float = DEFAULT_TOL
    n_jobs: int = 1
    seed: int = DEFAULT_SEED
    compute_distances: bool = True
    atypical_quantile: float = 0.95
    top_features: int = 3
    input: Optional[str] = None

    def __post_init__(self):
        if not self.features:
            raise InvalidParameterError("typology.features must list at least one column")
        if self.nan_policy not in NAN_POLICIES:
            raise InvalidParameterError(f"typology.nan_policy must be one of {NAN_POLICIES}")
        if self.elbow_method not in ELBOW_METHODS:
            raise InvalidParameterError(f"typology.elbow_method must be one of {ELBOW_METHODS}")
        if not self.k_range and self.k is None:
            raise InvalidParameterError("typology.k_range is empty and typology.k is not set")
        for name in ("restarts", "max_iter", "n_jobs", "top_features"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise InvalidParameterError(f"typology.{name} must be a positive integer, got {value!r}")
        if not 0 < self.atypical_quantile <= 1:
            raise InvalidParameterError("typology.atypical_quantile must be in (0, 1]")
        object.__setattr__(self, "features", tuple(self.features))
        object.__setattr__(self, "k_range", tuple(self.k_range))

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "TypologyConfig":
        """Build from the parsed params.yml, falling back to defaults for absent keys."""
        typology = config.get("typology", {}) or {}
        seed = (config.get("random_seeds", {}) or {}).get("clustering", DEFAULT_SEED)
        defaults = cls.__dataclass_fields__

        def get(key):
            return typology.get(key, defaults[key].default)

        return cls(
            features=tuple(get("features") or ()),
            id_column=get("id_column"),
            nan_policy=get("nan_policy"),
            k_range=tuple(get("k_range") or ()),
            k=get("k"),
            elbow_method=get("elbow_method"),
            restarts=get("restarts"),
            max_iter=get("max_iter"),
            tol=float(get("tol")),
            n_jobs=get("n_jobs"),
            seed=seed,
            compute_distances=bool(get("compute_distances")),
            atypical_quantile=float(get("atypical_quantile")),
            top_features=get("top_features"),
            input=get("input"),
        )

    def input_path(self, root: Path) -> Path:
        """Configured unit table path; relative paths are taken from ``root``."""
        if not self.input:
            raise InvalidParameterError("typology.input is not set in params.yml")
        path = Path(self.input)
        if not path.is_absolute():
            path = Path(root) / path
        return path


# =============================================================================
# Result
# =============================================================================

@dataclass(frozen=True)
class TypologyResult:
    """Everything one run produced, aligned with the input row order."""
    feature_matrix: FeatureMatrix
    params: StandardizationParams
    standardized: np.ndarray
    k_scores: pd.DataFrame
    selected_k: int
    k_source: str
    clustering: ClusteringResult
    profiles: List[ClusterProfile]
    distances: Optional[np.ndarray]

    @property
    def k_curve(self) -> List[Tuple[int, float]]:
        return [(int(k), float(v)) for k, v in zip(self.k_scores["k"], self.k_scores["inertia"])]

    @property
    def assignment(self) -> np.ndarray:
        return self.clustering.assignment

    def profile_frame(self) -> pd.DataFrame:
        return profiles_to_frame(self.profiles)

    def standardized_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            self.standardized,
            columns=list(self.feature_matrix.feature_names),
            index=pd.Index(self.feature_matrix.unit_ids, name="unit_id"),
        )


# =============================================================================
# Stages
# =============================================================================

def prepare_feature_matrix(
    records: pd.DataFrame,
    config: TypologyConfig,
    logger: JSONLLogger,
) -> Tuple[FeatureMatrix, np.ndarray, StandardizationParams]:
    """Build and standardize the feature matrix."""
    logger.info(f"Preparing feature matrix with features {list(config.features)}...")

    missing = missing_value_counts(records, config.features)
    if missing:
        logger.warning(f"Found missing values in features: {missing} (nan_policy={config.nan_policy})")

    matrix = build_feature_matrix(
        records,
        feature_names=config.features,
        id_column=config.id_column,
        nan_policy=config.nan_policy,
    )
    standardized, params = standardize(matrix)

    logger.info(f"Feature matrix shape: {matrix.values.shape}")
    logger.info(f"Feature means (after scaling): {standardized.mean(axis=0).mean():.4f}")
    logger.info(f"Feature stds (after scaling): {standardized.std(axis=0, ddof=1).mean():.4f}")

    return matrix, standardized, params


def usable_candidates(
    standardized: np.ndarray,
    k_range: Tuple[int, ...],
    logger: JSONLLogger,
) -> List[int]:
    """Drop candidate k values that the data cannot support."""
    n_distinct = np.unique(standardized, axis=0).shape[0]
    usable = []
    for k in k_range:
        if k > n_distinct:
            logger.warning(f"Skipping K={k}: exceeds number of distinct units ({n_distinct})")
            continue
        usable.append(k)
    return usable


def select_k(
    k_scores: pd.DataFrame,
    config: TypologyConfig,
    logger: JSONLLogger,
) -> Tuple[int, str]:
    """Fixed k from config if set, otherwise the elbow of the inertia curve."""
    if config.k is not None:
        logger.info(f"Using configured K={config.k}")
        return int(config.k), "config"

    curve = list(zip(k_scores["k"].astype(int), k_scores["inertia"].astype(float)))
    best_k = detect_elbow(curve, config.elbow_method)
    logger.info(f"Selected K={best_k} by {config.elbow_method} elbow rule")
    return best_k, config.elbow_method


def fit_candidates(
    standardized: np.ndarray,
    candidates: List[int],
    config: TypologyConfig,
) -> Dict[int, ClusteringResult]:
    """Fit every candidate K with the configured restart policy."""
    return fit_k_range(
        standardized, candidates,
        restarts=config.restarts,
        seed=config.seed,
        max_iter=config.max_iter,
        tol=config.tol,
        n_jobs=config.n_jobs,
    )


def final_clustering(
    standardized: np.ndarray,
    k: int,
    fits: Dict[int, ClusteringResult],
    config: TypologyConfig,
) -> ClusteringResult:
    """
    Clustering delivered for the selected K.

    A K already on the candidate curve reuses that fit, so the delivered
    partition has exactly the inertia reported for K. A fixed K outside the
    candidates is clustered on its own.
    """
    if k in fits:
        return fits[k]
    return cluster(
        standardized, k,
        restarts=config.restarts,
        seed=config.seed,
        max_iter=config.max_iter,
        tol=config.tol,
        n_jobs=config.n_jobs,
    )


def run_typology(
    records: pd.DataFrame,
    config: TypologyConfig,
    logger: JSONLLogger,
) -> TypologyResult:
    """
    Run the full typology pipeline on a unit table.

    Args:
        records: One row per spatial unit with the configured feature columns
        config: Run settings
        logger: Run logger

    Returns:
        TypologyResult aligned with the row order of ``records``
    """
    matrix, standardized, params = prepare_feature_matrix(records, config, logger)

    candidates = usable_candidates(standardized, config.k_range, logger)
    if not candidates and config.k is None:
        raise InvalidParameterError(
            f"No candidate K in {list(config.k_range)} fits {matrix.n_rows} units"
        )

    fits: Dict[int, ClusteringResult] = {}
    if candidates:
        logger.info(f"Evaluating K in {candidates} ({config.restarts} restarts each)...")
        fits = fit_candidates(standardized, candidates, config)
        k_scores = score_fits(standardized, fits)
        for row in k_scores.itertuples():
            logger.info(f"  K={row.k}: inertia={row.inertia:.4f}, "
                        f"silhouette={row.silhouette_score:.4f}, min size={row.min_cluster_size}")
    else:
        k_scores = pd.DataFrame(columns=["k", "inertia"])
    logger.log_k_curve(list(zip(k_scores["k"], k_scores["inertia"])))

    best_k, k_source = select_k(k_scores, config, logger)

    if best_k in fits:
        logger.info(f"Using the K={best_k} fit from the candidate curve as the final clustering")
    else:
        logger.info(f"Fitting final K-Means with K={best_k}...")
    result = final_clustering(standardized, best_k, fits, config)
    if not result.converged:
        logger.warning(f"K-Means stopped at max_iter={config.max_iter} without converging")

    sizes = result.sizes()
    logger.info(f"Final cluster sizes: {dict(zip(result.cluster_ids.tolist(), sizes.tolist()))}")
    logger.info(f"Final inertia: {result.inertia:.6f} (restart {result.restart}, {result.n_iter} iterations)")

    profiles = interpret_clusters(result.centroids, params, result.assignment, config.top_features)
    for profile in profiles:
        logger.info(f"  {profile.label} ({profile.size} units): {list(profile.distinguishing_features)}")

    distances = None
    if config.compute_distances:
        distances = distance_to_centroid(standardized, result.assignment, result.centroids)
        distances.setflags(write=False)

    return TypologyResult(
        feature_matrix=matrix,
        params=params,
        standardized=standardized,
        k_scores=k_scores,
        selected_k=best_k,
        k_source=k_source,
        clustering=result,
        profiles=profiles,
        distances=distances,
    )


def build_output_frame(
    records: pd.DataFrame,
    result: TypologyResult,
    atypical_quantile: float = 0.95,
) -> pd.DataFrame:
    """
    Return a copy of ``records`` enriched with the run's per-unit outputs.

    Adds cluster_id, cluster_label, distance_to_centroid and is_atypical.
    Geometry, when present, is carried through unchanged.
    """
    if len(records) != result.feature_matrix.n_rows:
        raise ShapeMismatchError(
            f"{len(records)} records for a result over {result.feature_matrix.n_rows} rows"
        )

    out = records.copy()
    assignment = result.assignment
    out["cluster_id"] = assignment.astype(np.int64)
    out["cluster_label"] = [f"Type_{c}" for c in assignment]

    if result.distances is not None:
        out["distance_to_centroid"] = result.distances
        out["is_atypical"] = flag_atypical_units(result.distances, assignment, atypical_quantile)
    else:
        out["distance_to_centroid"] = np.nan
        out["is_atypical"] = False

    return out
