"""
Quality checks on a finished typology run.

- Partition is total and disjoint: one id in 1..K per unit
- No empty clusters
- Distances are finite and non-negative
- Profiles agree with the partition (sizes, count)
- Re-running the clustering with the same inputs is bit-identical
"""

from typing import Any, Dict

import numpy as np

from spatial_typology.hashing import hash_array
from spatial_typology.logging_utils import JSONLLogger
from spatial_typology.pipeline import (
    TypologyConfig,
    TypologyResult,
    final_clustering,
    fit_candidates,
)


def validate_typology(
    result: TypologyResult,
    logger: JSONLLogger,
    min_cluster_size: int = 1,
) -> Dict[str, Any]:
    """
    Validate clustering output.

    Hard failures set ``passed`` to False; clusters smaller than
    ``min_cluster_size`` (but non-empty) only log a warning.
    """
    logger.info("Validating typology output...")

    qa_stats: Dict[str, Any] = {}
    passed = True

    assignment = result.assignment
    k = result.clustering.k
    n_rows = result.feature_matrix.n_rows

    qa_stats["row_count"] = n_rows
    if assignment.shape != (n_rows,):
        logger.error(f"Assignment covers {assignment.shape[0]} rows, expected {n_rows}")
        passed = False

    invalid = np.setdiff1d(np.unique(assignment), np.arange(1, k + 1))
    qa_stats["invalid_cluster_ids"] = invalid.tolist()
    if invalid.size > 0:
        logger.error(f"Found invalid cluster_id values: {invalid.tolist()}")
        passed = False

    sizes = np.bincount(assignment, minlength=k + 1)[1:]
    qa_stats["cluster_sizes"] = {int(i + 1): int(n) for i, n in enumerate(sizes)}

    min_size = int(sizes.min()) if sizes.size else 0
    qa_stats["min_cluster_size"] = min_size
    if min_size == 0:
        logger.error("Found cluster with 0 members!")
        passed = False
    elif min_size < min_cluster_size:
        logger.warning(f"Cluster with only {min_size} members (threshold: {min_cluster_size})")

    profile_sizes = {p.cluster_id: p.size for p in result.profiles}
    qa_stats["profiles_match_partition"] = profile_sizes == qa_stats["cluster_sizes"]
    if not qa_stats["profiles_match_partition"]:
        logger.error("Cluster profile sizes disagree with the assignment")
        passed = False

    if result.distances is not None:
        distances = result.distances
        bad = int((~np.isfinite(distances) | (distances < 0)).sum())
        qa_stats["invalid_distances"] = bad
        if bad > 0:
            logger.error(f"Found {bad} negative or non-finite distances!")
            passed = False
        qa_stats["max_distance"] = float(distances.max())

    qa_stats["converged"] = bool(result.clustering.converged)
    if not result.clustering.converged:
        logger.warning("Final clustering hit the iteration cap before converging")

    qa_stats["passed"] = passed
    logger.info(f"QA validation {'PASSED' if passed else 'FAILED'}")

    return qa_stats


def verify_reproducibility(
    result: TypologyResult,
    config: TypologyConfig,
    logger: JSONLLogger,
) -> bool:
    """
    Re-run the candidate fits and the final clustering, then compare
    assignments, centroids and inertia bit for bit.
    """
    logger.info("Verifying reproducibility...")

    candidates = [int(k) for k in result.k_scores["k"]]
    fits = fit_candidates(result.standardized, candidates, config) if candidates else {}
    rerun = final_clustering(result.standardized, result.selected_k, fits, config)
    original = result.clustering

    matches = (
        hash_array(rerun.assignment) == hash_array(original.assignment)
        and hash_array(rerun.centroids) == hash_array(original.centroids)
        and rerun.inertia == original.inertia
    )

    if matches:
        logger.info("Reproducibility check PASSED: identical cluster assignments")
    else:
        logger.error("Reproducibility check FAILED: different cluster assignments")

    return matches
