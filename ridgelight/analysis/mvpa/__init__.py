"""
MVPA (Multi-Voxel Pattern Analysis) module.

Searchlight decoding of trial-wise model variables with run-wise
cross-validated ridge regression (empirical shrinkage after Xue et al.,
2010), scored as the sample-size-scaled Fisher z of the prediction
correlation.

Public API:
    load_activity: Load the trials x locations activity matrix.
    load_regressors: Load trial-wise model variables.
    condition_features: Split activity into runs, mask and z-score.
    prepare_regressors: Split and mask regressors like the activity.
    remove_nuisance: Project nuisance covariates out of both.
    read_searchlight_stream: Decode a binary searchlight stream.
    write_searchlight_stream: Encode searchlights in the stream layout.
    build_searchlight_neighbors: Spherical searchlights from a brain mask.
    FoldDefinition: Fixed train/test partition of runs.
    cross_validate: Cross-validated Fisher z for one feature set.
    run_searchlight: Sweep conditioned data over all searchlights.
    run_searchlight_analysis: Full pipeline from raw trial data.
    save_results: Persist accuracy matrix, summary table and JSON.
"""

from ridgelight.analysis.mvpa.aggregate import (
    AccuracyAggregator,
    SearchlightResult,
    accuracy_to_volume,
    load_results,
    save_accuracy_maps,
    save_results,
)
from ridgelight.analysis.mvpa.conditioning import (
    condition_features,
    prepare_regressors,
    remove_nuisance,
)
from ridgelight.analysis.mvpa.data_loader import (
    load_activity,
    load_location_mask,
    load_regressors,
    load_trial_mask,
)
from ridgelight.analysis.mvpa.neighbors import (
    SearchlightRecord,
    SearchlightStreamError,
    build_searchlight_neighbors,
    read_searchlight_stream,
    write_searchlight_stream,
)
from ridgelight.analysis.mvpa.ridge import FoldDefinition, cross_validate, fisher_z
from ridgelight.analysis.mvpa.searchlight import (
    AnalysisSettings,
    run_searchlight,
    run_searchlight_analysis,
)

__all__ = [
    "load_activity",
    "load_regressors",
    "load_trial_mask",
    "load_location_mask",
    "condition_features",
    "prepare_regressors",
    "remove_nuisance",
    "SearchlightRecord",
    "SearchlightStreamError",
    "read_searchlight_stream",
    "write_searchlight_stream",
    "build_searchlight_neighbors",
    "FoldDefinition",
    "cross_validate",
    "fisher_z",
    "AnalysisSettings",
    "run_searchlight",
    "run_searchlight_analysis",
    "AccuracyAggregator",
    "SearchlightResult",
    "save_results",
    "load_results",
    "accuracy_to_volume",
    "save_accuracy_maps",
]
