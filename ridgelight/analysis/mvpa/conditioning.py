"""
Run-wise conditioning of trial activity and model regressors.

Splits trial-by-location activity and trial-by-variable regressors into
per-run blocks, drops excluded trials, z-scores activity within each run,
and optionally projects nuisance covariates out of both.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)


def _infer_n_runs(n_trials: int, run_length: int) -> int:
    if run_length < 1:
        raise ValueError(f"run_length must be positive, got {run_length}")
    if n_trials % run_length != 0:
        raise ValueError(
            f"{n_trials} trials is not a whole number of runs of length {run_length}"
        )
    return n_trials // run_length


def normalize_trial_mask(
    trial_mask: Optional[np.ndarray],
    run_length: int,
    n_runs: int,
) -> np.ndarray:
    """Coerce a trial exclusion mask to a (run_length, n_runs) bool grid.

    Accepts either the grid itself or a flat array in trial order (run 1's
    trials first). ``True``/1 marks an excluded trial. ``None`` excludes
    nothing.

    Raises:
        ValueError: If the mask does not hold exactly one entry per trial.
    """
    if trial_mask is None:
        return np.zeros((run_length, n_runs), dtype=bool)

    mask = np.asarray(trial_mask)
    if mask.shape == (run_length, n_runs):
        return mask.astype(bool)
    if mask.size != run_length * n_runs or (mask.ndim > 1 and 1 not in mask.shape):
        raise ValueError(
            f"Trial mask of shape {mask.shape} does not match "
            f"{run_length} trials x {n_runs} runs"
        )
    return mask.reshape(-1).astype(bool).reshape((run_length, n_runs), order="F")


def split_runs(
    matrix: np.ndarray,
    run_length: int,
    trial_mask: Optional[np.ndarray] = None,
    n_runs: Optional[int] = None,
) -> List[np.ndarray]:
    """Split a trials x columns matrix into per-run blocks of retained trials.

    Args:
        matrix: Array with one row per trial (1-D input is treated as a
            single column).
        run_length: Trials per run.
        trial_mask: Exclusion mask, see normalize_trial_mask().
        n_runs: Expected run count. If given, the trial count must equal
            run_length * n_runs.

    Returns:
        List of 2-D float arrays, one per run, excluded trials removed.
        Each block is a copy.
    """
    matrix = np.asarray(matrix, dtype=float)
    if matrix.ndim == 1:
        matrix = matrix[:, np.newaxis]
    if matrix.ndim != 2:
        raise ValueError(f"Expected a 2-D trials x columns matrix, got shape {matrix.shape}")

    n_trials = matrix.shape[0]
    if n_runs is None:
        n_runs = _infer_n_runs(n_trials, run_length)
    elif n_trials != run_length * n_runs:
        raise ValueError(
            f"Matrix has {n_trials} trials, expected run_length x n_runs = "
            f"{run_length} x {n_runs} = {run_length * n_runs}"
        )

    excluded = normalize_trial_mask(trial_mask, run_length, n_runs)

    blocks = []
    for run in range(n_runs):
        block = matrix[run * run_length:(run + 1) * run_length]
        blocks.append(block[~excluded[:, run]].copy())
    return blocks


def zscore_run(block: np.ndarray) -> np.ndarray:
    """Center each column and scale non-constant columns to unit SD.

    Uses the sample standard deviation (ddof=1). Zero-variance columns are
    only centered.
    """
    centered = block - block.mean(axis=0)
    if block.shape[0] < 2:
        return centered
    sd = centered.std(axis=0, ddof=1)
    scale = np.where(sd > 0, sd, 1.0)
    return centered / scale


def condition_features(
    features: np.ndarray,
    run_length: int,
    trial_mask: Optional[np.ndarray] = None,
    n_runs: Optional[int] = None,
) -> List[np.ndarray]:
    """Split activity into runs, drop excluded trials, z-score within run.

    Args:
        features: (n_trials, n_locations) activity matrix.
        run_length: Trials per run.
        trial_mask: Exclusion mask, True marks an excluded trial.
        n_runs: Expected run count (validated against the trial count).

    Returns:
        List of conditioned (n_retained, n_locations) arrays, one per run.
    """
    blocks = split_runs(features, run_length, trial_mask, n_runs)
    conditioned = [zscore_run(block) for block in blocks]

    logger.info(
        "Conditioned activity: %d runs, %d locations, retained trials per run: %s",
        len(conditioned), conditioned[0].shape[1] if conditioned else 0,
        [b.shape[0] for b in conditioned],
    )
    return conditioned


def prepare_regressors(
    regressors: np.ndarray,
    run_length: int,
    trial_mask: Optional[np.ndarray] = None,
    n_runs: Optional[int] = None,
) -> List[np.ndarray]:
    """Split and mask trial-wise regressors exactly like the activity."""
    return split_runs(regressors, run_length, trial_mask, n_runs)


@dataclass(frozen=True)
class NuisanceProjector:
    """Residualizes targets against one run's nuisance covariates."""

    nuisance: np.ndarray
    pseudo_inverse: np.ndarray

    @classmethod
    def from_block(cls, nuisance: np.ndarray) -> "NuisanceProjector":
        nuisance = np.asarray(nuisance, dtype=float)
        return cls(nuisance=nuisance, pseudo_inverse=np.linalg.pinv(nuisance))

    def residualize(self, target: np.ndarray) -> np.ndarray:
        """Return target minus its projection onto the nuisance space."""
        return target - self.nuisance @ (self.pseudo_inverse @ target)


def remove_nuisance(
    feature_runs: List[np.ndarray],
    regressor_runs: List[np.ndarray],
    nuisance: np.ndarray,
    run_length: int,
    trial_mask: Optional[np.ndarray] = None,
) -> Tuple[List[np.ndarray], List[np.ndarray]]:
    """Project nuisance variance out of conditioned activity and regressors.

    The nuisance matrix is split and masked with the same run design as the
    activity. Inputs are not modified.

    Returns:
        (feature_runs, regressor_runs) with nuisance-explainable variance
        removed run by run.
    """
    n_runs = len(feature_runs)
    nuisance_runs = split_runs(nuisance, run_length, trial_mask, n_runs)

    cleaned_features = []
    cleaned_regressors = []
    for run, (feat, reg, nuis) in enumerate(zip(feature_runs, regressor_runs, nuisance_runs)):
        if not feat.shape[0] == reg.shape[0] == nuis.shape[0]:
            raise ValueError(
                f"Run {run + 1}: activity, regressor and nuisance blocks have "
                f"{feat.shape[0]}, {reg.shape[0]} and {nuis.shape[0]} trials"
            )
        projector = NuisanceProjector.from_block(nuis)
        cleaned_features.append(projector.residualize(feat))
        cleaned_regressors.append(projector.residualize(reg))

    logger.info(
        "Removed %d nuisance regressors from %d runs",
        nuisance_runs[0].shape[1] if nuisance_runs else 0, n_runs,
    )
    return cleaned_features, cleaned_regressors


def check_run_alignment(
    feature_runs: List[np.ndarray],
    regressor_runs: List[np.ndarray],
) -> None:
    """Raise ValueError unless activity and regressor runs line up trial for trial."""
    if len(feature_runs) != len(regressor_runs):
        raise ValueError(
            f"{len(feature_runs)} activity runs but {len(regressor_runs)} regressor runs"
        )
    for run, (feat, reg) in enumerate(zip(feature_runs, regressor_runs)):
        if feat.shape[0] != reg.shape[0]:
            raise ValueError(
                f"Run {run + 1}: {feat.shape[0]} activity trials but "
                f"{reg.shape[0]} regressor trials after masking"
            )
