#!/usr/bin/env python3
"""
01_build_typology.py

Build the spatial unit typology (K-means clustering) from precomputed unit features.

- Read the unit feature table (impervious, slope, crossing, ...)
- Standardize features (z-score, sample std)
- Evaluate K over typology.k_range and record the inertia (elbow) curve
- Use typology.k if set, otherwise the automatic elbow rule
- Fit the final clustering, profile clusters in original units,
  score each unit's distance to its cluster centre
- QA: partition totality, no empty clusters, non-negative distances, reproducibility

Outputs:
- data/processed/typology/unit_typology.parquet/csv
- data/processed/typology/unit_typology.geojson (only when the input has geometry)
- data/processed/typology/typology_profiles.csv
- data/processed/typology/k_selection_scores.csv
- data/processed/typology/feature_matrix_standardized.csv
- data/processed/metadata/unit_typology_metadata.json (provenance sidecar)
"""

import geopandas as gpd

from spatial_typology.hashing import hash_dict, write_metadata_sidecar
from spatial_typology.io_utils import atomic_write_df, atomic_write_gdf, read_units, read_yaml
from spatial_typology.logging_utils import get_logger
from spatial_typology.paths import PARAMS_FILE, PROJECT_ROOT, TYPOLOGY_DIR, ensure_dirs_exist
from spatial_typology.pipeline import TypologyConfig, build_output_frame, run_typology
from spatial_typology.qa import validate_typology, verify_reproducibility
from spatial_typology.schemas import (
    K_SCORES_SCHEMA,
    PROFILE_SCHEMA,
    UNIT_TYPOLOGY_SCHEMA,
    validate_schema,
)


# =============================================================================
# Constants
# =============================================================================

OUTPUT_UNITS = TYPOLOGY_DIR / "unit_typology.parquet"
OUTPUT_UNITS_CSV = TYPOLOGY_DIR / "unit_typology.csv"
OUTPUT_GEOJSON = TYPOLOGY_DIR / "unit_typology.geojson"
OUTPUT_PROFILES = TYPOLOGY_DIR / "typology_profiles.csv"
OUTPUT_K_SCORES = TYPOLOGY_DIR / "k_selection_scores.csv"
OUTPUT_FEATURE_MATRIX = TYPOLOGY_DIR / "feature_matrix_standardized.csv"


# =============================================================================
# Main
# =============================================================================

def main():
    """Main entry point."""
    with get_logger("01_build_typology") as logger:
        logger.info("Starting 01_build_typology.py")

        raw_config = read_yaml(PARAMS_FILE)
        logger.log_config(raw_config, hash_dict(raw_config))

        try:
            config = TypologyConfig.from_dict(raw_config)
            logger.info(f"K range: {list(config.k_range)}")
            logger.info(f"Fixed K: {config.k}")
            logger.info(f"Random seed: {config.seed}")
            logger.info(f"Features: {list(config.features)}")

            input_path = config.input_path(PROJECT_ROOT)
            logger.log_inputs({"unit_features": str(input_path)})

            records = read_units(input_path)
            logger.info(f"Loaded unit features: {len(records)} units, {len(records.columns)} columns")

            result = run_typology(records, config, logger)

            repro_ok = verify_reproducibility(result, config, logger)
            qa_stats = validate_typology(result, logger)
            qa_stats["reproducibility_verified"] = repro_ok

            df_units = build_output_frame(records, result, config.atypical_quantile)
            df_profiles = result.profile_frame()
            df_scores = result.k_scores

            validate_schema(df_units, UNIT_TYPOLOGY_SCHEMA, context="unit typology")
            validate_schema(df_profiles, PROFILE_SCHEMA, context="profiles")
            if len(df_scores) > 0:
                validate_schema(df_scores, K_SCORES_SCHEMA, context="k scores")

            ensure_dirs_exist()

            # 1. Unit assignments (tabular; geometry goes to GeoJSON only)
            is_geo = isinstance(df_units, gpd.GeoDataFrame)
            df_table = df_units.drop(columns=df_units.geometry.name) if is_geo else df_units
            atomic_write_df(df_table, OUTPUT_UNITS)
            atomic_write_df(df_table, OUTPUT_UNITS_CSV, index=False)
            logger.info(f"Wrote: {OUTPUT_UNITS}")

            # 2. Map-ready GeoJSON
            if is_geo:
                atomic_write_gdf(df_units, OUTPUT_GEOJSON)
                logger.info(f"Wrote: {OUTPUT_GEOJSON}")

            # 3. Profiles, K scores, standardized matrix
            atomic_write_df(df_profiles, OUTPUT_PROFILES, index=False)
            atomic_write_df(df_scores, OUTPUT_K_SCORES, index=False)
            atomic_write_df(result.standardized_frame(), OUTPUT_FEATURE_MATRIX)
            logger.info(f"Wrote: {OUTPUT_PROFILES}, {OUTPUT_K_SCORES}, {OUTPUT_FEATURE_MATRIX}")

            outputs = {
                "unit_typology_parquet": str(OUTPUT_UNITS),
                "unit_typology_csv": str(OUTPUT_UNITS_CSV),
                "typology_profiles": str(OUTPUT_PROFILES),
                "k_selection_scores": str(OUTPUT_K_SCORES),
                "feature_matrix_standardized": str(OUTPUT_FEATURE_MATRIX),
            }
            if is_geo:
                outputs["unit_typology_geojson"] = str(OUTPUT_GEOJSON)
            logger.log_outputs(outputs)

            metrics = {
                "selected_k": result.selected_k,
                "k_source": result.k_source,
                "inertia": result.clustering.inertia,
                "converged": result.clustering.converged,
                "n_iter": result.clustering.n_iter,
                "n_units": result.feature_matrix.n_rows,
                "features_used": list(result.feature_matrix.feature_names),
                "random_seed": config.seed,
                "qa_stats": qa_stats,
            }
            logger.log_metrics(metrics)

            write_metadata_sidecar(
                output_path=OUTPUT_UNITS,
                inputs={"unit_features": str(input_path)},
                config=raw_config,
                run_id=logger.run_id,
                extra={
                    **metrics,
                    "k_curve": [{"k": k, "inertia": v} for k, v in result.k_curve],
                    "standardization": result.params.to_frame().to_dict(orient="records"),
                    "distinguishing_features": {
                        p.label: list(p.distinguishing_features) for p in result.profiles
                    },
                },
            )

            if not qa_stats["passed"] or not repro_ok:
                raise RuntimeError("Typology QA failed; see log for details")

            logger.info("=" * 70)
            logger.info("Spatial Typology Summary:")
            logger.info(f"  Selected K: {result.selected_k} ({result.k_source})")
            logger.info(f"  Inertia: {result.clustering.inertia:.4f}")
            logger.info(f"  Units: {result.feature_matrix.n_rows}")
            logger.info(f"  Cluster sizes: {qa_stats['cluster_sizes']}")
            for profile in result.profiles:
                values = ", ".join(f"{name}={v:.3g}" for name, v in profile.values.items())
                logger.info(f"  {profile.label}: {values}")
            logger.info("=" * 70)
            logger.info("NOTE: Cluster ids are arbitrary per run; name types from their profiles.")
            logger.info("SUCCESS: Built spatial typology")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
