"""
MVPA data loading utilities.

Reads trial activity, regressor and mask inputs from MATLAB, NumPy,
delimited-text and NIfTI files, and validates them against the run design
before any computation starts.
"""

import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

import nibabel as nib
import numpy as np
import pandas as pd
from scipy import io as sio

logger = logging.getLogger(__name__)

NIFTI_SUFFIXES = (".nii", ".nii.gz")


def _is_nifti(path: Path) -> bool:
    return path.name.endswith(NIFTI_SUFFIXES)


def _require_file(path: Union[str, Path], kind: str) -> Path:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"{kind} not found: {path}")
    return path


def load_matrix(
    path: Union[str, Path],
    key: Optional[str] = None,
) -> Tuple[np.ndarray, Optional[List[str]]]:
    """Load a numeric matrix and, for delimited text, its column names.

    Supported formats:
        .mat        variable ``key`` (or the only variable in the file)
        .npz        array ``key`` (or the only array in the file)
        .npy        the stored array
        .csv/.tsv   numeric columns, header row gives the names
        other       whitespace-delimited text (numpy.loadtxt)

    Returns:
        (matrix, column_names); column_names is None except for csv/tsv.
    """
    path = _require_file(path, "Matrix file")
    suffix = path.suffix.lower()

    if suffix == ".mat":
        data = {k: v for k, v in sio.loadmat(path).items() if not k.startswith("__")}
        return _select(data, key, path), None

    if suffix == ".npz":
        with np.load(path, allow_pickle=False) as npz:
            data = {k: npz[k] for k in npz.files}
        return _select(data, key, path), None

    if suffix == ".npy":
        return np.load(path, allow_pickle=False), None

    if suffix in (".csv", ".tsv"):
        df = pd.read_csv(path, sep="\t" if suffix == ".tsv" else ",")
        numeric = df.select_dtypes(include=[np.number])
        dropped = [c for c in df.columns if c not in numeric.columns]
        if dropped:
            logger.info("Ignoring non-numeric columns in %s: %s", path.name, dropped)
        return numeric.to_numpy(dtype=float), [str(c) for c in numeric.columns]

    return np.loadtxt(path, ndmin=2), None


def _select(data: dict, key: Optional[str], path: Path) -> np.ndarray:
    if key is not None:
        if key not in data:
            raise KeyError(f"{path}: no variable named '{key}' (found {sorted(data)})")
        return np.asarray(data[key])
    if len(data) != 1:
        raise KeyError(f"{path}: expected a single variable, found {sorted(data)}")
    return np.asarray(next(iter(data.values())))


def load_activity(
    path: Union[str, Path],
    run_length: int,
    n_runs: int,
) -> np.ndarray:
    """Load the trials x locations ``features`` matrix and check its size.

    Raises:
        FileNotFoundError: If the file does not exist.
        KeyError: If a .mat/.npz file has no ``features`` record.
        ValueError: If the trial count is not run_length * n_runs.
    """
    path = Path(path)
    key = "features" if path.suffix.lower() in (".mat", ".npz") else None
    features, _ = load_matrix(path, key=key)
    features = np.asarray(features, dtype=float)

    if features.ndim != 2:
        raise ValueError(f"{path}: features must be 2-D, got shape {features.shape}")
    expected = run_length * n_runs
    if features.shape[0] != expected:
        raise ValueError(
            f"{path}: {features.shape[0]} trials, expected {run_length} x {n_runs} = {expected}"
        )

    logger.info(
        "Loaded activity %s: %d trials x %d locations",
        path.name, features.shape[0], features.shape[1],
    )
    return features


def load_regressors(
    path: Union[str, Path],
    n_trials: int,
    key: Optional[str] = None,
) -> Tuple[np.ndarray, List[str]]:
    """Load a trials x variables regressor matrix.

    Returns:
        (regressors, variable_names). Names come from the csv/tsv header,
        otherwise ``var1``, ``var2``, ...
    """
    matrix, names = load_matrix(path, key=key)
    matrix = np.asarray(matrix, dtype=float)
    if matrix.ndim == 1:
        matrix = matrix[:, np.newaxis]
    # A single regressor saved as a row vector
    if matrix.shape[0] == 1 and matrix.shape[1] == n_trials:
        matrix = matrix.T

    if matrix.shape[0] != n_trials:
        raise ValueError(
            f"{path}: {matrix.shape[0]} regressor rows but activity has {n_trials} trials"
        )
    if names is None:
        names = [f"var{i + 1}" for i in range(matrix.shape[1])]

    logger.info("Loaded %d regressor(s) from %s: %s", matrix.shape[1], Path(path).name, names)
    return matrix, names


def load_trial_mask(path: Union[str, Path], key: Optional[str] = None) -> np.ndarray:
    """Load a 0/1 trial exclusion mask (1 = excluded)."""
    matrix, _ = load_matrix(path, key=key)
    mask = np.asarray(matrix)
    values = np.unique(mask)
    if not np.all(np.isin(values, (0, 1))):
        raise ValueError(f"{path}: trial mask must contain only 0/1, found {values[:5]}")
    logger.info("Loaded trial mask %s: %d excluded trials", Path(path).name, int(mask.sum()))
    return mask.astype(bool)


def load_location_mask(
    path: Union[str, Path],
    n_voxels: Optional[int] = None,
    byte_order: str = "little",
    threshold: float = 0.5,
) -> np.ndarray:
    """Load a per-volume-location inclusion mask as a flat float array.

    NIfTI volumes are flattened in column-major order so that indices match
    searchlight location ids. Any other file is read as raw float32 values.
    ``threshold`` only sets the included count that gets logged; filtering
    happens in the sweep.
    """
    path = _require_file(path, "Location mask")

    if _is_nifti(path):
        img = nib.load(str(path))
        values = np.asarray(img.get_fdata(), dtype=float).ravel(order="F")
    else:
        values = np.fromfile(path, dtype="<f4" if byte_order == "little" else ">f4").astype(float)

    if n_voxels is not None and values.size != n_voxels:
        raise ValueError(
            f"{path}: location mask has {values.size} values, volume has {n_voxels}"
        )

    logger.info(
        "Loaded location mask %s: %d of %d locations at or above %g",
        path.name, int(np.sum(values >= threshold)), values.size, threshold,
    )
    return values


def load_analysis_mask(path: Union[str, Path]) -> Tuple[np.ndarray, np.ndarray]:
    """Load a NIfTI brain mask for building searchlights.

    Returns:
        (mask_data, affine) with mask_data as a bool array.
    """
    path = _require_file(path, "Brain mask")
    img = nib.load(str(path))
    data = np.asarray(img.get_fdata()) > 0
    logger.info("Loaded brain mask %s: shape %s, %d voxels", path.name, data.shape, int(data.sum()))
    return data, img.affine
