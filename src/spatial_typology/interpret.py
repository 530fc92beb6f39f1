"""
Cluster interpretation.

Maps standardized centroids back to original feature units and builds one
profile per cluster. A standardized centroid coordinate is the z-score of the
cluster mean against the whole dataset, so the largest absolute coordinates
are the features that set a cluster apart.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import numpy as np
import pandas as pd

from spatial_typology.errors import ShapeMismatchError
from spatial_typology.standardize import StandardizationParams


@dataclass(frozen=True)
class ClusterProfile:
    """Centroid of one cluster in original and standardized units."""
    cluster_id: int
    size: int
    values: Dict[str, float]
    z_values: Dict[str, float]
    distinguishing_features: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def label(self) -> str:
        return f"Type_{self.cluster_id}"


def cluster_sizes(assignment: np.ndarray, k: int) -> np.ndarray:
    """Row count per cluster id 1..k."""
    assignment = np.asarray(assignment)
    if assignment.ndim != 1:
        raise ShapeMismatchError(f"Assignment must be 1-D, got shape {assignment.shape}")
    if assignment.size and (assignment.min() < 1 or assignment.max() > k):
        raise ShapeMismatchError(
            f"Assignment ids must lie in 1..{k}, "
            f"got range {assignment.min()}..{assignment.max()}"
        )
    return np.bincount(assignment.astype(np.int64), minlength=k + 1)[1:]


def distinguishing_features(
    z_centroid: np.ndarray,
    feature_names: Tuple[str, ...],
    top_n: int = 3,
) -> Tuple[str, ...]:
    """
    Top features by absolute z-score, labelled "(high)" or "(low)".

    Ties keep feature order; exact zeros are never reported.
    """
    order = sorted(range(len(feature_names)), key=lambda i: -abs(z_centroid[i]))
    top = []
    for i in order[:top_n]:
        z = z_centroid[i]
        if z == 0:
            continue
        direction = "high" if z > 0 else "low"
        top.append(f"{feature_names[i]} ({direction})")
    return tuple(top)


def interpret_clusters(
    centroids: np.ndarray,
    params: StandardizationParams,
    assignment: np.ndarray,
    top_n: int = 3,
) -> List[ClusterProfile]:
    """
    Build one ``ClusterProfile`` per cluster.

    Args:
        centroids: (k, n_features) standardized centroids; row i is cluster i + 1
        params: Parameters used to standardize the clustered matrix
        assignment: 1-based cluster id per row, used for cluster sizes
        top_n: Number of distinguishing features per cluster

    Raises:
        ShapeMismatchError: Centroid width differs from the parameter count, or
            the assignment references a cluster outside 1..k
    """
    centroids = np.asarray(centroids, dtype=np.float64)
    if centroids.ndim != 2 or centroids.shape[1] != params.n_features:
        raise ShapeMismatchError(
            f"Centroids of shape {centroids.shape} do not match "
            f"{params.n_features} standardization parameters"
        )

    k = centroids.shape[0]
    sizes = cluster_sizes(assignment, k)
    original = params.inverse_transform(centroids)

    profiles = []
    for i in range(k):
        profiles.append(ClusterProfile(
            cluster_id=i + 1,
            size=int(sizes[i]),
            values=dict(zip(params.feature_names, original[i].tolist())),
            z_values=dict(zip(params.feature_names, centroids[i].tolist())),
            distinguishing_features=distinguishing_features(
                centroids[i], params.feature_names, top_n
            ),
        ))
    return profiles


def profiles_to_frame(profiles: List[ClusterProfile]) -> pd.DataFrame:
    """One row per cluster: id, label, size, original-unit and z-score centroid."""
    rows = []
    for profile in profiles:
        row = {
            "cluster_id": profile.cluster_id,
            "cluster_label": profile.label,
            "n_units": profile.size,
        }
        row.update(profile.values)
        row.update({f"{name}_z": z for name, z in profile.z_values.items()})
        row["distinguishing_features"] = "; ".join(profile.distinguishing_features)
        rows.append(row)

    return pd.DataFrame(rows).sort_values("cluster_id").reset_index(drop=True)
