"""
Searchlight MVPA with cross-validated empirical ridge regression.

Walks the searchlight definitions once, restricts the conditioned activity
to each searchlight's members, drops degenerate member columns, and scores
the regressors with run-wise cross-validation. Searchlights are independent,
so the sweep can be spread across worker processes.
"""

import logging
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from ridgelight.analysis.mvpa.aggregate import (
    AccuracyAggregator,
    SearchlightResult,
    accuracy_volumes,
    save_results,
    write_accuracy_maps,
)
from ridgelight.analysis.mvpa.conditioning import (
    check_run_alignment,
    condition_features,
    prepare_regressors,
    remove_nuisance,
)
from ridgelight.analysis.mvpa.neighbors import (
    SearchlightRecord,
    SearchlightStreamReader,
    read_searchlight_stream,
)
from ridgelight.analysis.mvpa.ridge import (
    DEFAULT_R_CLIP,
    FoldDefinition,
    check_fold_sizes,
    cross_validate,
)
from ridgelight.config import get_config_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisSettings:
    """Tunable parameters of the searchlight sweep."""

    degenerate_epsilon: float = 1e-3
    mask_threshold: float = 0.5
    perfect_correlation: str = "clip"
    r_clip: float = DEFAULT_R_CLIP
    n_jobs: int = 1
    chunk_size: int = 500
    log_every: int = 5000
    index_base: int = 1
    byte_order: str = "little"

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "AnalysisSettings":
        defaults = cls()
        return cls(
            degenerate_epsilon=float(get_config_value(
                config, "searchlight.degenerate_epsilon", defaults.degenerate_epsilon)),
            mask_threshold=float(get_config_value(
                config, "searchlight.mask_threshold", defaults.mask_threshold)),
            perfect_correlation=get_config_value(
                config, "ridge.perfect_correlation", defaults.perfect_correlation),
            r_clip=float(get_config_value(config, "ridge.r_clip", defaults.r_clip)),
            n_jobs=int(get_config_value(config, "execution.n_jobs", defaults.n_jobs)),
            chunk_size=int(get_config_value(config, "execution.chunk_size", defaults.chunk_size)),
            log_every=int(get_config_value(config, "execution.log_every", defaults.log_every)),
            index_base=int(get_config_value(config, "stream.index_base", defaults.index_base)),
            byte_order=get_config_value(config, "stream.byte_order", defaults.byte_order),
        )


def filter_by_location_mask(
    records: Iterable[SearchlightRecord],
    location_mask: Optional[np.ndarray],
    threshold: float = 0.5,
) -> Iterator[SearchlightRecord]:
    """Yield only searchlights whose center passes the inclusion mask.

    With no mask every searchlight is yielded.
    """
    if location_mask is None:
        yield from records
        return

    location_mask = np.asarray(location_mask, dtype=float).reshape(-1)
    n_skipped = 0
    for record in records:
        if record.location_id >= location_mask.size:
            raise ValueError(
                f"Location id {record.location_id} outside location mask of "
                f"{location_mask.size} values"
            )
        if location_mask[record.location_id] < threshold:
            n_skipped += 1
            continue
        yield record

    if n_skipped:
        logger.warning("Location mask excluded %d searchlight centers", n_skipped)


def extract_features(
    feature_runs: List[np.ndarray],
    members: Sequence[int],
) -> List[np.ndarray]:
    """Restrict every run's activity to the searchlight's member columns."""
    idx = np.asarray(members, dtype=np.int64)
    n_columns = feature_runs[0].shape[1]
    if idx.size and (idx.min() < 0 or idx.max() >= n_columns):
        raise ValueError(
            f"Searchlight member outside activity columns 0..{n_columns - 1}"
        )
    return [run[:, idx] for run in feature_runs]


def drop_degenerate_columns(
    blocks: List[np.ndarray],
    epsilon: float = 1e-3,
) -> Tuple[List[np.ndarray], np.ndarray]:
    """Drop columns whose summed absolute value over all runs is <= epsilon.

    Returns:
        (filtered_blocks, keep) where keep is the boolean column mask.
    """
    summed = sum(np.abs(block).sum(axis=0) for block in blocks)
    keep = np.asarray(summed > epsilon)
    return [block[:, keep] for block in blocks], keep


def evaluate_searchlight(
    members: Sequence[int],
    feature_runs: List[np.ndarray],
    regressor_runs: List[np.ndarray],
    folds: FoldDefinition,
    settings: AnalysisSettings,
) -> Tuple[np.ndarray, int]:
    """Cross-validated Fisher z for one searchlight.

    Returns:
        (statistics, n_features). A searchlight with no usable columns
        scores zero for every variable.
    """
    blocks = extract_features(feature_runs, members)
    blocks, keep = drop_degenerate_columns(blocks, settings.degenerate_epsilon)
    n_features = int(keep.sum())

    if n_features == 0:
        return np.zeros(regressor_runs[0].shape[1]), 0

    stats = cross_validate(
        blocks, regressor_runs, folds,
        perfect_correlation=settings.perfect_correlation,
        r_clip=settings.r_clip,
    )
    return stats, n_features


def _evaluate_chunk(
    chunk: List[Tuple[int, SearchlightRecord]],
    feature_runs: List[np.ndarray],
    regressor_runs: List[np.ndarray],
    folds: FoldDefinition,
    settings: AnalysisSettings,
) -> List[Tuple[int, int, np.ndarray, int]]:
    """Worker entry point: evaluate a batch of (sequence, record) pairs."""
    results = []
    for sequence, record in chunk:
        stats, n_features = evaluate_searchlight(
            record.members, feature_runs, regressor_runs, folds, settings,
        )
        results.append((sequence, record.location_id, stats, n_features))
    return results


def _chunks(items: List[Any], size: int) -> Iterator[List[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def run_searchlight(
    feature_runs: List[np.ndarray],
    regressor_runs: List[np.ndarray],
    records: Iterable[SearchlightRecord],
    folds: FoldDefinition,
    location_mask: Optional[np.ndarray] = None,
    settings: Optional[AnalysisSettings] = None,
    variable_names: Optional[Sequence[str]] = None,
) -> SearchlightResult:
    """Score every searchlight and return location-sorted accuracies.

    Args:
        feature_runs: Conditioned per-run activity (trials x locations).
        regressor_runs: Conditioned per-run regressors (trials x variables).
        records: Searchlight definitions, consumed once in order.
        folds: Train/test partition of runs.
        location_mask: Optional flat inclusion values over the volume.
        settings: Sweep parameters; defaults if None.
        variable_names: Names of the regressor variables.

    Returns:
        SearchlightResult with columns sorted by center location id.
    """
    settings = settings or AnalysisSettings()
    check_run_alignment(feature_runs, regressor_runs)
    check_fold_sizes(regressor_runs, folds)

    n_variables = regressor_runs[0].shape[1]
    aggregator = AccuracyAggregator(n_variables, variable_names)
    included = filter_by_location_mask(records, location_mask, settings.mask_threshold)

    logger.info(
        "Searchlight sweep: %d variables, %d folds, n_jobs=%d",
        n_variables, folds.n_folds, settings.n_jobs,
    )

    if settings.n_jobs > 1:
        # Decode all definitions before dispatch; workers never touch the stream
        work = list(enumerate(included))
        logger.info(
            "Dispatching %d searchlights to %d workers", len(work), settings.n_jobs,
        )
        with ProcessPoolExecutor(max_workers=settings.n_jobs) as executor:
            futures = [
                executor.submit(
                    _evaluate_chunk, chunk, feature_runs, regressor_runs, folds, settings,
                )
                for chunk in _chunks(work, max(settings.chunk_size, 1))
            ]
            next_report = settings.log_every
            for future in as_completed(futures):
                for sequence, location_id, stats, n_features in future.result():
                    aggregator.add(sequence, location_id, stats, n_features)
                if settings.log_every and len(aggregator) >= next_report:
                    logger.info("  Searchlights completed: %d/%d", len(aggregator), len(work))
                    while next_report <= len(aggregator):
                        next_report += settings.log_every
    else:
        for sequence, record in enumerate(included):
            stats, n_features = evaluate_searchlight(
                record.members, feature_runs, regressor_runs, folds, settings,
            )
            aggregator.add(sequence, record.location_id, stats, n_features)
            if settings.log_every and (sequence + 1) % settings.log_every == 0:
                logger.info("  Searchlights completed: %d", sequence + 1)

    result = aggregator.finalize()

    n_zero = int(np.sum(result.n_features == 0))
    if n_zero:
        logger.warning(
            "%d of %d searchlights had no usable features and scored zero",
            n_zero, result.n_searchlights,
        )
    for name, row in zip(result.variable_names, result.accuracy):
        if row.size:
            logger.info(
                "Variable %s: mean z %.3f, max z %.3f over %d searchlights",
                name, float(np.mean(row)), float(np.max(row)), row.size,
            )
    return result


def _iter_stream(path: Path, settings: AnalysisSettings) -> Iterator[SearchlightRecord]:
    with SearchlightStreamReader(
        path, index_base=settings.index_base, byte_order=settings.byte_order,
    ) as reader:
        yield from reader


def run_searchlight_analysis(
    features: np.ndarray,
    regressors: np.ndarray,
    searchlights: Union[str, Path, Iterable[SearchlightRecord]],
    folds: FoldDefinition,
    run_length: int,
    n_runs: Optional[int] = None,
    trial_mask: Optional[np.ndarray] = None,
    nuisance: Optional[np.ndarray] = None,
    location_mask: Optional[np.ndarray] = None,
    settings: Optional[AnalysisSettings] = None,
    variable_names: Optional[Sequence[str]] = None,
    output_path: Optional[Path] = None,
    volume_shape: Optional[Sequence[int]] = None,
    affine: Optional[np.ndarray] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> SearchlightResult:
    """Run the full searchlight pipeline from raw trial data.

    Conditions the activity, prepares the regressors, optionally removes
    nuisance covariates, sweeps the searchlights and, if ``output_path`` is
    given, saves the results (plus NIfTI maps when ``volume_shape`` is
    given). Nothing is written unless the whole sweep succeeds and every
    location id fits ``volume_shape``.

    Args:
        features: (n_trials, n_locations) activity.
        regressors: (n_trials, n_variables) model variables.
        searchlights: Stream file path or an iterable of records.
        folds: Train/test partition of runs.
        run_length: Trials per run.
        n_runs: Expected run count; inferred from the trial count if None.
        trial_mask: Exclusion mask (True = excluded), see
            conditioning.normalize_trial_mask().
        nuisance: Optional (n_trials, n_nuisance) covariates.
        location_mask: Optional flat inclusion values over the volume.
        settings: Sweep parameters.
        variable_names: Names of the regressor variables.
        output_path: Where to save the accuracy matrix (.mat or .npz).
        volume_shape: Image dimensions for NIfTI accuracy maps.
        affine: Affine for the NIfTI maps.
        metadata: Extra entries for results.json.
    """
    settings = settings or AnalysisSettings()
    features = np.asarray(features, dtype=float)
    regressors = np.asarray(regressors, dtype=float)
    if regressors.ndim == 1:
        regressors = regressors[:, np.newaxis]

    if regressors.shape[0] != features.shape[0]:
        raise ValueError(
            f"Regressors have {regressors.shape[0]} rows but activity has "
            f"{features.shape[0]} trials"
        )

    feature_runs = condition_features(features, run_length, trial_mask, n_runs)
    regressor_runs = prepare_regressors(regressors, run_length, trial_mask, len(feature_runs))

    if nuisance is not None:
        nuisance = np.asarray(nuisance, dtype=float)
        if nuisance.shape[0] != features.shape[0]:
            raise ValueError(
                f"Nuisance matrix has {nuisance.shape[0]} rows but activity has "
                f"{features.shape[0]} trials"
            )
        feature_runs, regressor_runs = remove_nuisance(
            feature_runs, regressor_runs, nuisance, run_length, trial_mask,
        )

    if isinstance(searchlights, (str, Path)):
        if settings.n_jobs > 1:
            location_ids, records = read_searchlight_stream(
                searchlights, index_base=settings.index_base, byte_order=settings.byte_order,
            )
            if len(location_ids) != features.shape[1]:
                logger.warning(
                    "Stream lists %d locations but activity has %d columns",
                    len(location_ids), features.shape[1],
                )
        else:
            records = _iter_stream(Path(searchlights), settings)
    else:
        records = searchlights

    result = run_searchlight(
        feature_runs, regressor_runs, records, folds,
        location_mask=location_mask,
        settings=settings,
        variable_names=variable_names,
    )

    if output_path is not None:
        output_path = Path(output_path)
        # Scatter into the volume first so a grid mismatch writes nothing
        volumes = accuracy_volumes(result, volume_shape) if volume_shape is not None else None
        save_results(result, output_path, metadata=metadata)
        if volumes is not None:
            write_accuracy_maps(volumes, output_path.parent, affine=affine)

    return result
