"""
Cross-validated ridge regression with empirical shrinkage.

Each fold fits OLS on the training runs, estimates a per-variable ridge
factor from the training residuals and OLS coefficients (Xue et al., 2010),
refits, predicts the test runs and scores each variable by the
sample-size-scaled Fisher z of the prediction correlation. Fold scores are
averaged.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_R_CLIP = 1e-7


@dataclass(frozen=True)
class FoldDefinition:
    """Fixed train/test partition of runs.

    Row ``i`` of ``training`` and row ``i`` of ``test`` form fold ``i``.
    Run indices are 0-based.
    """

    training: Tuple[Tuple[int, ...], ...]
    test: Tuple[Tuple[int, ...], ...]

    def __post_init__(self):
        if len(self.training) != len(self.test):
            raise ValueError(
                f"Fold tables differ in length: {len(self.training)} training rows, "
                f"{len(self.test)} test rows"
            )
        if not self.training:
            raise ValueError("Fold definition has no folds")
        for i, (train, test) in enumerate(zip(self.training, self.test)):
            if not train or not test:
                raise ValueError(f"Fold {i + 1} has an empty training or test group")

    @classmethod
    def from_tables(
        cls,
        training: Sequence[Sequence[int]],
        test: Sequence[Sequence[int]],
        index_base: int = 0,
    ) -> "FoldDefinition":
        """Build from nested integer tables, e.g. numpy arrays or YAML lists."""
        return cls(
            training=tuple(tuple(int(r) - index_base for r in row) for row in training),
            test=tuple(tuple(int(r) - index_base for r in row) for row in test),
        )

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "FoldDefinition":
        """Build from the ``folds`` section (run numbers start at 1)."""
        folds = config["folds"]
        return cls.from_tables(folds["training"], folds["test"], index_base=1)

    @property
    def n_folds(self) -> int:
        return len(self.training)

    def validate(self, n_runs: int) -> None:
        """Raise ValueError if any run index falls outside 0..n_runs-1."""
        for name, table in (("training", self.training), ("test", self.test)):
            for i, row in enumerate(table):
                bad = [r for r in row if not 0 <= r < n_runs]
                if bad:
                    raise ValueError(
                        f"Fold {i + 1} {name} runs {bad} outside 0..{n_runs - 1}"
                    )

    def __iter__(self):
        return iter(zip(self.training, self.test))


def add_intercept(X: np.ndarray) -> np.ndarray:
    """Append a constant column."""
    return np.hstack([X, np.ones((X.shape[0], 1))])


def fit_ols(X: np.ndarray, Y: np.ndarray) -> np.ndarray:
    """Least-squares coefficients via pseudo-inverse (rank-deficient safe)."""
    return np.linalg.pinv(X) @ Y


def shrinkage_factors(X: np.ndarray, Y: np.ndarray, betas: np.ndarray) -> np.ndarray:
    """Per-variable ridge factor k from an OLS fit (Xue et al., 2010).

    k = p * (RSS / (n - 1)) / sum(beta ** 2), with p the number of model
    columns and n the number of training trials. Variables whose OLS
    coefficients are all zero get k = 0.
    """
    n, p = X.shape
    residuals = Y - X @ betas
    error_variance = np.sum(residuals ** 2, axis=0) / (n - 1)
    beta_power = np.sum(betas ** 2, axis=0)

    k = np.zeros(Y.shape[1])
    nonzero = beta_power > 0
    k[nonzero] = p * error_variance[nonzero] / beta_power[nonzero]
    return k


def fit_ridge(X: np.ndarray, Y: np.ndarray, k: np.ndarray) -> np.ndarray:
    """Refit each variable as pinv(X'X + k_j I) X'Y_j.

    The intercept column is penalized like any other column.
    """
    k = np.broadcast_to(np.asarray(k, dtype=float), (Y.shape[1],))
    XtX = X.T @ X
    XtY = X.T @ Y
    identity = np.eye(X.shape[1])

    betas = np.empty((X.shape[1], Y.shape[1]))
    for j, k_j in enumerate(k):
        betas[:, j] = np.linalg.pinv(XtX + k_j * identity) @ XtY[:, j]
    return betas


def column_correlations(predicted: np.ndarray, actual: np.ndarray) -> np.ndarray:
    """Pearson r between matching columns.

    Columns where either side has zero variance carry no linear
    information and get r = 0.
    """
    pc = predicted - predicted.mean(axis=0)
    ac = actual - actual.mean(axis=0)
    denom = np.sqrt(np.sum(pc ** 2, axis=0) * np.sum(ac ** 2, axis=0))

    r = np.zeros(predicted.shape[1])
    valid = denom > 0
    r[valid] = np.sum(pc * ac, axis=0)[valid] / denom[valid]
    return r


def fisher_z(
    r,
    n: int,
    perfect_correlation: str = "clip",
    r_clip: float = DEFAULT_R_CLIP,
):
    """Sample-size-scaled Fisher z: 0.5 * ln((1 + r) / (1 - r)) * sqrt(n - 3).

    Args:
        r: Correlation(s).
        n: Number of test trials the correlation was computed over.
        perfect_correlation: 'clip' clamps |r| to 1 - r_clip; 'raise'
            raises ValueError when |r| > 1 - r_clip.
        r_clip: Distance from +/-1 treated as a perfect correlation.

    Returns:
        float for scalar input, ndarray otherwise.
    """
    if perfect_correlation not in ("clip", "raise"):
        raise ValueError(f"Unknown perfect_correlation policy: {perfect_correlation!r}")
    if n <= 3:
        raise ValueError(f"Fisher z needs more than 3 samples, got n={n}")

    r_arr = np.asarray(r, dtype=float)
    limit = 1.0 - r_clip
    perfect = np.abs(r_arr) > limit
    if np.any(perfect):
        if perfect_correlation == "raise":
            raise ValueError(
                f"Correlation of {r_arr[perfect].ravel()[0]:.10g} makes the Fisher "
                f"transform undefined"
            )
        r_arr = np.clip(r_arr, -limit, limit)

    z = np.arctanh(r_arr) * np.sqrt(n - 3)
    if np.ndim(z) == 0:
        return float(z)
    return z


def stack_runs(blocks: List[np.ndarray], runs: Sequence[int]) -> np.ndarray:
    return np.vstack([blocks[r] for r in runs])


def check_fold_sizes(regressor_runs: List[np.ndarray], folds: FoldDefinition) -> None:
    """Fail fast if any fold's test set is too small for the Fisher transform."""
    folds.validate(len(regressor_runs))
    for i, (train_runs, test_runs) in enumerate(folds):
        n_train = sum(regressor_runs[r].shape[0] for r in train_runs)
        n_test = sum(regressor_runs[r].shape[0] for r in test_runs)
        if n_test <= 3:
            raise ValueError(
                f"Fold {i + 1} has {n_test} test trials; at least 4 are required"
            )
        if n_train < 2:
            raise ValueError(
                f"Fold {i + 1} has {n_train} training trials; at least 2 are required"
            )
        logger.debug(
            "Fold %d: runs %s -> %s, %d training / %d test trials",
            i + 1, list(train_runs), list(test_runs), n_train, n_test,
        )


def fold_scores(
    feature_runs: List[np.ndarray],
    regressor_runs: List[np.ndarray],
    folds: FoldDefinition,
    shrinkage: Optional[np.ndarray] = None,
    perfect_correlation: str = "clip",
    r_clip: float = DEFAULT_R_CLIP,
) -> np.ndarray:
    """Fisher z per fold and variable, shape (n_folds, n_variables).

    Args:
        feature_runs: Per-run (n_trials, n_features) searchlight activity.
        regressor_runs: Per-run (n_trials, n_variables) targets.
        folds: Train/test partition of runs.
        shrinkage: Fixed per-variable ridge factors. If None, estimated
            per fold from the OLS fit.
    """
    n_variables = regressor_runs[0].shape[1]
    scores = np.zeros((folds.n_folds, n_variables))

    for i, (train_runs, test_runs) in enumerate(folds):
        X_train = add_intercept(stack_runs(feature_runs, train_runs))
        Y_train = stack_runs(regressor_runs, train_runs)

        if shrinkage is None:
            ols = fit_ols(X_train, Y_train)
            k = shrinkage_factors(X_train, Y_train, ols)
        else:
            k = shrinkage
        betas = fit_ridge(X_train, Y_train, k)

        X_test = add_intercept(stack_runs(feature_runs, test_runs))
        Y_test = stack_runs(regressor_runs, test_runs)
        predicted = X_test @ betas

        r = column_correlations(predicted, Y_test)
        scores[i] = fisher_z(r, X_test.shape[0], perfect_correlation, r_clip)

    return scores


def cross_validate(
    feature_runs: List[np.ndarray],
    regressor_runs: List[np.ndarray],
    folds: FoldDefinition,
    shrinkage: Optional[np.ndarray] = None,
    perfect_correlation: str = "clip",
    r_clip: float = DEFAULT_R_CLIP,
) -> np.ndarray:
    """Mean Fisher z across folds, one value per regressor variable."""
    scores = fold_scores(
        feature_runs, regressor_runs, folds,
        shrinkage=shrinkage,
        perfect_correlation=perfect_correlation,
        r_clip=r_clip,
    )
    return scores.mean(axis=0)
