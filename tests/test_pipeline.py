"""
Tests for the end-to-end typology pipeline, output assembly and QA.

Validates:
- Config parsing from params.yml and rejection of bad settings
- Recovery of three planted unit types with automatic K selection
- Fixed K, skipped candidates, degenerate features
- Output table columns, geometry passthrough, schema validation
- QA checks and the bit-identical reproducibility check
- Structured log output
"""

import dataclasses
import json

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest

from spatial_typology.errors import DegenerateFeatureError, InvalidParameterError, ShapeMismatchError
from spatial_typology.io_utils import read_yaml
from spatial_typology.kmeans import cluster
from spatial_typology.logging_utils import JSONLLogger
from spatial_typology.paths import PARAMS_FILE
from spatial_typology.pipeline import (
    DEFAULT_SEED,
    TypologyConfig,
    build_output_frame,
    run_typology,
)
from spatial_typology.qa import validate_typology, verify_reproducibility
from spatial_typology.schemas import (
    K_SCORES_SCHEMA,
    PROFILE_SCHEMA,
    UNIT_TYPOLOGY_SCHEMA,
    SchemaError,
    get_schema,
    validate_schema,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def logger(tmp_path):
    log = JSONLLogger("test_pipeline", log_dir=tmp_path, console=False)
    yield log
    log.close()


@pytest.fixture
def units():
    """
    Thirty units of three planted types, ten each:
    - urban core: high impervious cover
    - hillside: steep slope
    - junction: many crossings
    """
    rng = np.random.default_rng(123)
    centres = [(0.9, 2.0, 4.0), (0.1, 20.0, 4.0), (0.1, 2.0, 40.0)]
    noise = np.array([0.01, 0.2, 0.4])
    rows = []
    for centre in centres:
        rows.append(np.array(centre) + rng.normal(size=(10, 3)) * noise)
    values = np.vstack(rows)
    return pd.DataFrame({
        "unit_id": [f"U{i:03d}" for i in range(30)],
        "impervious": values[:, 0],
        "slope": values[:, 1],
        "crossing": values[:, 2],
    })


@pytest.fixture
def config():
    return TypologyConfig(
        id_column="unit_id",
        k_range=(1, 2, 3, 4, 5, 6),
        restarts=5,
        seed=2024,
    )


@pytest.fixture
def result(units, config, logger):
    return run_typology(units, config, logger)


def planted_groups():
    return {frozenset(range(0, 10)), frozenset(range(10, 20)), frozenset(range(20, 30))}


def partition(assignment):
    return {frozenset(np.flatnonzero(assignment == c).tolist()) for c in np.unique(assignment)}


# =============================================================================
# Test Class: Configuration
# =============================================================================

class TestTypologyConfig:
    """Settings parsed from params.yml."""

    def test_from_params_file(self):
        cfg = TypologyConfig.from_dict(read_yaml(PARAMS_FILE))
        assert cfg.features == ("impervious", "slope", "crossing")
        assert cfg.k_range == (2, 3, 4, 5, 6, 7, 8)
        assert cfg.k is None
        assert cfg.seed == 12345
        assert cfg.elbow_method == "chord"

    def test_defaults_for_empty_config(self):
        cfg = TypologyConfig.from_dict({})
        assert cfg.seed == DEFAULT_SEED
        assert cfg.restarts == 10
        assert cfg.nan_policy == "raise"

    def test_overrides(self):
        cfg = TypologyConfig.from_dict({
            "random_seeds": {"clustering": 7},
            "typology": {"k": 4, "k_range": [], "features": ["slope"]},
        })
        assert cfg.seed == 7
        assert cfg.k == 4
        assert cfg.features == ("slope",)

    @pytest.mark.parametrize("overrides", [
        {"elbow_method": "gap"},
        {"nan_policy": "drop"},
        {"restarts": 0},
        {"max_iter": -5},
        {"n_jobs": True},
        {"atypical_quantile": 0.0},
        {"k_range": (), "k": None},
        {"features": ()},
    ])
    def test_rejects_bad_settings(self, overrides):
        with pytest.raises(InvalidParameterError):
            TypologyConfig(**overrides)

    def test_null_features_rejected(self):
        """`features: null` in params.yml is a config error, not a TypeError."""
        with pytest.raises(InvalidParameterError, match="features"):
            TypologyConfig.from_dict({"typology": {"features": None}})

    def test_input_path_relative_to_root(self, tmp_path):
        cfg = TypologyConfig(input="data/units.csv")
        assert cfg.input_path(tmp_path) == tmp_path / "data" / "units.csv"

    def test_input_path_absolute_kept(self, tmp_path):
        cfg = TypologyConfig(input=str(tmp_path / "units.csv"))
        assert cfg.input_path("/elsewhere") == tmp_path / "units.csv"

    def test_missing_input_rejected(self, tmp_path):
        with pytest.raises(InvalidParameterError, match="typology.input"):
            TypologyConfig().input_path(tmp_path)


# =============================================================================
# Test Class: Pipeline Run
# =============================================================================

class TestRunTypology:
    """Full run on planted types."""

    def test_elbow_selects_three(self, result):
        assert result.selected_k == 3
        assert result.k_source == "chord"

    def test_planted_types_recovered(self, result):
        assert partition(result.assignment) == planted_groups()

    def test_profiles_in_original_units(self, result):
        by_impervious = max(result.profiles, key=lambda p: p.values["impervious"])
        assert by_impervious.size == 10
        assert by_impervious.values["impervious"] == pytest.approx(0.9, abs=0.02)
        assert by_impervious.distinguishing_features[0] == "impervious (high)"

    def test_k_curve_covers_candidates(self, result):
        assert [k for k, _ in result.k_curve] == [1, 2, 3, 4, 5, 6]
        inertias = [v for _, v in result.k_curve]
        assert all(b <= a * (1 + 1e-12) for a, b in zip(inertias, inertias[1:]))

    def test_distances_present(self, result):
        assert result.distances.shape == (30,)
        assert (result.distances >= 0).all()
        assert not result.distances.flags.writeable

    def test_standardized_frame(self, result):
        df = result.standardized_frame()
        assert df.index.name == "unit_id"
        assert df.index[0] == "U000"
        np.testing.assert_allclose(df.mean().to_numpy(), 0.0, atol=1e-12)

    def test_deterministic(self, units, config, logger):
        a = run_typology(units, config, logger)
        b = run_typology(units, config, logger)
        np.testing.assert_array_equal(a.assignment, b.assignment)
        assert a.clustering.inertia == b.clustering.inertia
        pd.testing.assert_frame_equal(a.k_scores, b.k_scores)

    def test_fixed_k(self, units, logger):
        cfg = TypologyConfig(id_column="unit_id", k_range=(2, 3), k=2, restarts=3, seed=1)
        res = run_typology(units, cfg, logger)
        assert res.selected_k == 2
        assert res.k_source == "config"
        assert res.clustering.k == 2

    def test_fixed_k_without_candidates(self, units, logger):
        cfg = TypologyConfig(id_column="unit_id", k_range=(), k=3, restarts=3, seed=1)
        res = run_typology(units, cfg, logger)
        assert res.k_scores.empty
        assert partition(res.assignment) == planted_groups()

    def test_candidates_above_unit_count_skipped(self, units, logger):
        small = units.iloc[[0, 10, 20, 21]].reset_index(drop=True)
        cfg = TypologyConfig(id_column="unit_id", k_range=(2, 3, 4, 5, 6), restarts=3, seed=1)
        res = run_typology(small, cfg, logger)
        assert res.k_scores["k"].tolist() == [2, 3, 4]
        log_text = logger.log_file.read_text()
        assert "Skipping K=5" in log_text

    def test_no_usable_candidate(self, units, logger):
        cfg = TypologyConfig(id_column="unit_id", k_range=(5, 6), restarts=2, seed=1)
        with pytest.raises(InvalidParameterError):
            run_typology(units.iloc[:3], cfg, logger)

    def test_degenerate_feature(self, units, config, logger):
        units["crossing"] = 7.0
        with pytest.raises(DegenerateFeatureError) as excinfo:
            run_typology(units, config, logger)
        assert excinfo.value.features == ["crossing"]

    def test_final_fit_matches_curve(self, result):
        """The delivered partition has the inertia reported for the selected K."""
        assert result.clustering.inertia == dict(result.k_curve)[result.selected_k]

    def test_final_fit_no_worse_than_standalone_clustering(self, logger):
        """Unstructured data: the candidate fit is kept, never a costlier refit."""
        rng = np.random.default_rng(0)
        values = rng.normal(size=(30, 3))
        records = pd.DataFrame(values, columns=["impervious", "slope", "crossing"])
        cfg = TypologyConfig(k_range=(2, 3, 4, 5, 6), k=5, restarts=3, seed=0)
        res = run_typology(records, cfg, logger)
        standalone = cluster(res.standardized, 5, restarts=3, seed=0)
        assert res.clustering.inertia == dict(res.k_curve)[5]
        assert res.clustering.inertia <= standalone.inertia

    def test_distances_optional(self, units, logger):
        cfg = TypologyConfig(id_column="unit_id", k=3, k_range=(), compute_distances=False,
                             restarts=3, seed=1)
        res = run_typology(units, cfg, logger)
        assert res.distances is None


# =============================================================================
# Test Class: Output Frame
# =============================================================================

class TestOutputFrame:
    """Per-unit output table."""

    def test_columns_added(self, units, result):
        out = build_output_frame(units, result)
        for col in ("cluster_id", "cluster_label", "distance_to_centroid", "is_atypical"):
            assert col in out.columns
        assert out["cluster_label"].tolist() == [f"Type_{c}" for c in out["cluster_id"]]
        assert out["unit_id"].tolist() == units["unit_id"].tolist()

    def test_source_unchanged(self, units, result):
        before = units.copy()
        build_output_frame(units, result)
        pd.testing.assert_frame_equal(units, before)

    def test_geometry_passthrough(self, units, config, logger):
        geo = gpd.GeoDataFrame(
            units,
            geometry=gpd.points_from_xy(np.arange(30.0), np.zeros(30)),
            crs="EPSG:4326",
        )
        res = run_typology(geo, config, logger)
        out = build_output_frame(geo, res)
        assert isinstance(out, gpd.GeoDataFrame)
        assert out.crs == geo.crs
        assert out.geometry.equals(geo.geometry)

    def test_without_distances(self, units, logger):
        cfg = TypologyConfig(id_column="unit_id", k=3, k_range=(), compute_distances=False,
                             restarts=3, seed=1)
        res = run_typology(units, cfg, logger)
        out = build_output_frame(units, res)
        assert out["distance_to_centroid"].isna().all()
        assert not out["is_atypical"].any()
        validate_schema(out, UNIT_TYPOLOGY_SCHEMA)

    def test_length_mismatch(self, units, result):
        with pytest.raises(ShapeMismatchError):
            build_output_frame(units.iloc[:5], result)

    def test_outputs_match_schemas(self, units, result):
        assert validate_schema(build_output_frame(units, result), UNIT_TYPOLOGY_SCHEMA) == []
        assert validate_schema(result.profile_frame(), PROFILE_SCHEMA) == []
        assert validate_schema(result.k_scores, K_SCORES_SCHEMA) == []


# =============================================================================
# Test Class: QA
# =============================================================================

class TestQA:
    """Post-run validation."""

    def test_valid_run_passes(self, result, logger):
        stats = validate_typology(result, logger)
        assert stats["passed"]
        assert stats["cluster_sizes"] == {1: 10, 2: 10, 3: 10}
        assert stats["invalid_cluster_ids"] == []
        assert stats["profiles_match_partition"]
        assert stats["invalid_distances"] == 0

    def test_profile_mismatch_fails(self, result, logger):
        broken = dataclasses.replace(result, profiles=result.profiles[:2])
        assert not validate_typology(broken, logger)["passed"]

    def test_small_cluster_only_warns(self, result, logger):
        stats = validate_typology(result, logger, min_cluster_size=20)
        assert stats["passed"]
        assert "Cluster with only 10 members" in logger.log_file.read_text()

    def test_reproducible(self, result, config, logger):
        assert verify_reproducibility(result, config, logger)

    def test_reproducible_with_fixed_k_outside_candidates(self, units, logger):
        cfg = TypologyConfig(id_column="unit_id", k_range=(2, 3), k=4, restarts=3, seed=1)
        res = run_typology(units, cfg, logger)
        assert res.selected_k == 4
        assert verify_reproducibility(res, cfg, logger)

    def test_reproducibility_detects_change(self, result, config, logger):
        other = cluster(result.standardized, 2, restarts=2, seed=0)
        tampered = dataclasses.replace(result, clustering=other)
        assert not verify_reproducibility(tampered, config, logger)


# =============================================================================
# Test Class: Logging
# =============================================================================

class TestLogging:
    """Structured JSONL output of a run."""

    def test_log_records_are_json(self, result, logger):
        lines = logger.log_file.read_text().splitlines()
        records = [json.loads(line) for line in lines]
        assert all(r["run_id"] == logger.run_id for r in records)
        assert records[0]["extra"]["versions"]["numpy"] == np.__version__

    def test_k_curve_logged(self, result, logger):
        records = [json.loads(line) for line in logger.log_file.read_text().splitlines()]
        curves = [r for r in records if r["message"] == "K curve recorded"]
        assert len(curves) == 1
        assert [p["k"] for p in curves[0]["extra"]["k_curve"]] == [1, 2, 3, 4, 5, 6]

    def test_close_is_idempotent(self, tmp_path):
        log = JSONLLogger("test_close", log_dir=tmp_path, console=False)
        log.close()
        log.close()
        assert log.log_file.read_text().count("Logger closing") == 1


# =============================================================================
# Test Class: Schemas
# =============================================================================

class TestSchemas:
    """Output schema registry and failures."""

    def test_registry(self):
        assert get_schema("unit_typology") is UNIT_TYPOLOGY_SCHEMA
        assert get_schema("k_selection_scores") is K_SCORES_SCHEMA
        with pytest.raises(KeyError):
            get_schema("unknown_table")

    def test_invalid_cluster_id_rejected(self, units, result):
        out = build_output_frame(units, result)
        out.loc[0, "cluster_id"] = 0
        with pytest.raises(SchemaError, match="below min"):
            validate_schema(out, UNIT_TYPOLOGY_SCHEMA, context="unit typology")

    def test_errors_returned_without_raising(self, units, result):
        out = build_output_frame(units, result).drop(columns=["is_atypical"])
        errors = validate_schema(out, UNIT_TYPOLOGY_SCHEMA, raise_on_error=False)
        assert any("is_atypical" in e for e in errors)
