#!/usr/bin/env python3
"""
Unit tests for the searchlight sweep.

Tests degenerate-column filtering, location masking, result ordering,
parallel execution and the end-to-end pipeline on synthetic data.
"""

import logging

import numpy as np
import pytest

from ridgelight.analysis.mvpa.conditioning import condition_features, prepare_regressors
from ridgelight.analysis.mvpa.neighbors import SearchlightRecord, write_searchlight_stream
from ridgelight.analysis.mvpa.ridge import FoldDefinition
from ridgelight.analysis.mvpa.searchlight import (
    AnalysisSettings,
    drop_degenerate_columns,
    evaluate_searchlight,
    extract_features,
    filter_by_location_mask,
    run_searchlight,
    run_searchlight_analysis,
)
from ridgelight.config import load_config

RUN_LENGTH = 20
N_RUNS = 4


@pytest.fixture
def folds():
    """Leave-one-run-out over four runs."""
    return FoldDefinition.from_tables(
        training=[[1, 2, 3], [0, 2, 3], [0, 1, 3], [0, 1, 2]],
        test=[[0], [1], [2], [3]],
    )


@pytest.fixture
def synthetic():
    """Locations 0-4 carry the regressor, 5-9 are noise, 10-11 are constant."""
    rng = np.random.default_rng(21)
    n_trials = RUN_LENGTH * N_RUNS
    regressor = rng.standard_normal((n_trials, 1))
    weights = rng.uniform(0.5, 1.5, size=(1, 5))
    signal = regressor @ weights + 0.7 * rng.standard_normal((n_trials, 5))
    noise = rng.standard_normal((n_trials, 5))
    constant = np.full((n_trials, 2), 4.0)
    features = np.hstack([signal, noise, constant])
    return features, regressor


@pytest.fixture
def records():
    return [
        SearchlightRecord(center=2, members=(0, 1, 2, 3, 4), location_id=300),
        SearchlightRecord(center=7, members=(5, 6, 7, 8, 9), location_id=100),
        SearchlightRecord(center=10, members=(10, 11), location_id=200),
    ]


def _conditioned(features, regressor):
    return (
        condition_features(features, RUN_LENGTH, None, N_RUNS),
        prepare_regressors(regressor, RUN_LENGTH, None, N_RUNS),
    )


class TestFeatureSelection:
    def test_extract_features(self):
        runs = [np.arange(12, dtype=float).reshape(3, 4), np.ones((2, 4))]
        blocks = extract_features(runs, (3, 1))
        np.testing.assert_array_equal(blocks[0], [[3, 1], [7, 5], [11, 9]])
        assert blocks[1].shape == (2, 2)

    def test_extract_rejects_out_of_range(self):
        with pytest.raises(ValueError, match="outside activity columns"):
            extract_features([np.ones((3, 4))], (4,))

    def test_degenerate_columns_use_pooled_runs(self):
        run_a = np.array([[0.0, 1.0, 0.0], [0.0, -1.0, 0.0004]])
        run_b = np.array([[0.0, 0.5, 0.0004], [0.0, 0.5, 0.0004]])
        blocks, keep = drop_degenerate_columns([run_a, run_b], epsilon=1e-3)
        # Column 2 sums to 0.0012 only when pooled across runs
        np.testing.assert_array_equal(keep, [False, True, True])
        assert blocks[0].shape == (2, 2)

    def test_all_degenerate_scores_zero(self, synthetic, records, folds):
        feature_runs, regressor_runs = _conditioned(*synthetic)
        stats, n_features = evaluate_searchlight(
            records[2].members, feature_runs, regressor_runs, folds, AnalysisSettings(),
        )
        assert n_features == 0
        np.testing.assert_array_equal(stats, [0.0])


class TestLocationMask:
    def test_no_mask_passes_everything(self, records):
        assert list(filter_by_location_mask(records, None)) == records

    def test_threshold(self, records):
        mask = np.zeros(400)
        mask[300] = 0.5
        mask[100] = 0.49
        mask[200] = 1.0
        kept = list(filter_by_location_mask(records, mask, threshold=0.5))
        assert [r.location_id for r in kept] == [300, 200]

    def test_excluded_centers_logged_as_warning(self, records, caplog):
        mask = np.ones(400)
        mask[100] = 0.0
        with caplog.at_level(logging.WARNING, logger="ridgelight.analysis.mvpa.searchlight"):
            kept = list(filter_by_location_mask(records, mask))
        assert len(kept) == 2
        assert any(
            rec.levelno == logging.WARNING and "excluded 1" in rec.getMessage()
            for rec in caplog.records
        )

    def test_mask_too_small(self, records):
        with pytest.raises(ValueError, match="outside location mask"):
            list(filter_by_location_mask(records, np.ones(150)))


class TestRunSearchlight:
    def test_signal_beats_noise(self, synthetic, records, folds):
        feature_runs, regressor_runs = _conditioned(*synthetic)
        result = run_searchlight(feature_runs, regressor_runs, records, folds)

        np.testing.assert_array_equal(result.location_ids, [100, 200, 300])
        noise_z, zero_z, signal_z = result.accuracy[0]
        assert signal_z > 3.0
        assert signal_z > noise_z
        assert zero_z == 0.0
        np.testing.assert_array_equal(result.n_features, [5, 0, 5])

    def test_reversed_stream_gives_same_output(self, synthetic, records, folds):
        feature_runs, regressor_runs = _conditioned(*synthetic)
        forward = run_searchlight(feature_runs, regressor_runs, records, folds)
        backward = run_searchlight(feature_runs, regressor_runs, records[::-1], folds)

        assert np.all(np.diff(forward.location_ids) > 0)
        np.testing.assert_array_equal(forward.location_ids, backward.location_ids)
        np.testing.assert_allclose(forward.accuracy, backward.accuracy)

    def test_location_mask_drops_columns(self, synthetic, records, folds):
        feature_runs, regressor_runs = _conditioned(*synthetic)
        mask = np.ones(400)
        mask[300] = 0.0
        result = run_searchlight(
            feature_runs, regressor_runs, records, folds, location_mask=mask,
        )
        np.testing.assert_array_equal(result.location_ids, [100, 200])

    def test_parallel_matches_sequential(self, synthetic, records, folds):
        feature_runs, regressor_runs = _conditioned(*synthetic)
        sequential = run_searchlight(feature_runs, regressor_runs, records, folds)
        parallel = run_searchlight(
            feature_runs, regressor_runs, records, folds,
            settings=AnalysisSettings(n_jobs=2, chunk_size=1),
        )
        np.testing.assert_array_equal(parallel.location_ids, sequential.location_ids)
        np.testing.assert_allclose(parallel.accuracy, sequential.accuracy)

    def test_multiple_variables(self, synthetic, records, folds):
        features, regressor = synthetic
        rng = np.random.default_rng(5)
        regressors = np.hstack([regressor, rng.standard_normal(regressor.shape)])
        feature_runs, regressor_runs = _conditioned(features, regressors)
        result = run_searchlight(
            feature_runs, regressor_runs, records, folds, variable_names=["model", "random"],
        )
        assert result.accuracy.shape == (2, 3)
        assert result.accuracy[0, 2] > result.accuracy[1, 2]

    def test_too_few_test_trials(self, synthetic, records):
        feature_runs, regressor_runs = _conditioned(*synthetic)
        short = [r[:3] for r in regressor_runs]
        short_features = [f[:3] for f in feature_runs]
        folds = FoldDefinition.from_tables([[0, 1]], [[2]])
        with pytest.raises(ValueError, match="test trials"):
            run_searchlight(short_features, short, records, folds)


class TestRunSearchlightAnalysis:
    def test_constant_member_is_dropped(self):
        """1 variable, 3 runs of 4 trials, train on runs 1-2, test on run 3."""
        rng = np.random.default_rng(3)
        features = np.column_stack([rng.standard_normal(12), np.full(12, 2.5)])
        regressor = rng.standard_normal(12)
        folds = FoldDefinition.from_tables([[1, 2]], [[3]], index_base=1)
        record = SearchlightRecord(center=0, members=(0, 1), location_id=17)

        result = run_searchlight_analysis(
            features, regressor, [record], folds, run_length=4, n_runs=3,
        )
        assert result.accuracy.shape == (1, 1)
        assert np.isfinite(result.accuracy[0, 0])
        np.testing.assert_array_equal(result.n_features, [1])

    def test_trial_mask_applied(self, synthetic, records, folds):
        features, regressor = synthetic
        mask = np.zeros((RUN_LENGTH, N_RUNS), dtype=bool)
        mask[:3, 1] = True
        result = run_searchlight_analysis(
            features, regressor, records, folds, run_length=RUN_LENGTH, trial_mask=mask,
        )
        assert result.accuracy[0, 2] > 3.0

    def test_nuisance_regression_removes_confound(self, folds):
        rng = np.random.default_rng(31)
        n_trials = RUN_LENGTH * N_RUNS
        confound = rng.standard_normal((n_trials, 1))
        regressor = confound + 0.3 * rng.standard_normal((n_trials, 1))
        features = confound @ rng.uniform(0.5, 1.5, size=(1, 5))
        features = features + 0.7 * rng.standard_normal((n_trials, 5))
        record = [SearchlightRecord(center=0, members=(0, 1, 2, 3, 4), location_id=0)]

        baseline = run_searchlight_analysis(
            features, regressor, record, folds, run_length=RUN_LENGTH,
        )
        cleaned = run_searchlight_analysis(
            features, regressor, record, folds, run_length=RUN_LENGTH, nuisance=confound,
        )
        assert baseline.accuracy[0, 0] > 3.0
        assert cleaned.accuracy[0, 0] < baseline.accuracy[0, 0] / 2

    def test_regressor_row_mismatch(self, synthetic, records, folds):
        features, regressor = synthetic
        with pytest.raises(ValueError, match="Regressors have"):
            run_searchlight_analysis(
                features, regressor[:-1], records, folds, run_length=RUN_LENGTH,
            )

    def test_stream_file_and_outputs(self, tmp_path, synthetic, records, folds):
        features, regressor = synthetic
        lookup = np.arange(12) * 50
        stream = [
            SearchlightRecord(r.center, r.members, int(lookup[r.center])) for r in records
        ]
        stream_path = write_searchlight_stream(tmp_path / "sl.bin", lookup, stream)

        result = run_searchlight_analysis(
            features, regressor, stream_path, folds,
            run_length=RUN_LENGTH,
            output_path=tmp_path / "out" / "accuracy.npz",
            volume_shape=(10, 10, 10),
        )

        np.testing.assert_array_equal(result.location_ids, [100, 350, 500])
        assert (tmp_path / "out" / "accuracy.npz").exists()
        assert (tmp_path / "out" / "results.json").exists()
        assert (tmp_path / "out" / "searchlight_summary.tsv").exists()
        assert (tmp_path / "out" / "accuracy_var1.nii.gz").exists()

    def test_location_outside_map_grid_writes_nothing(self, tmp_path, synthetic, folds):
        features, regressor = synthetic
        record = [SearchlightRecord(center=0, members=(0, 1, 2, 3, 4), location_id=200000)]

        with pytest.raises(ValueError, match="outside volume"):
            run_searchlight_analysis(
                features, regressor, record, folds,
                run_length=RUN_LENGTH,
                output_path=tmp_path / "out" / "accuracy.npz",
                volume_shape=(53, 63, 46),
            )
        assert not (tmp_path / "out").exists()

    def test_stream_error_writes_nothing(self, tmp_path, synthetic, records, folds):
        features, regressor = synthetic
        stream_path = write_searchlight_stream(tmp_path / "sl.bin", np.arange(12), records)
        stream_path.write_bytes(stream_path.read_bytes()[:-2])

        with pytest.raises(OSError):
            run_searchlight_analysis(
                features, regressor, stream_path, folds,
                run_length=RUN_LENGTH,
                output_path=tmp_path / "out" / "accuracy.npz",
            )
        assert not (tmp_path / "out").exists()


class TestAnalysisSettings:
    def test_from_default_config(self):
        settings = AnalysisSettings.from_config(load_config())
        assert settings.degenerate_epsilon == 1e-3
        assert settings.mask_threshold == 0.5
        assert settings.perfect_correlation == "clip"
        assert settings.n_jobs == 1
        assert settings.index_base == 1
