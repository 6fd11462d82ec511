"""
Accuracy aggregation and persistence for searchlight results.

Collects per-searchlight statistics in enumeration order, sorts them by
center location once the sweep is finished, and writes the accuracy
matrix, a summary table and optional NIfTI maps.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import nibabel as nib
import numpy as np
import pandas as pd
from scipy import io as sio

logger = logging.getLogger(__name__)


@dataclass
class SearchlightResult:
    """Location-sorted searchlight statistics.

    Attributes:
        accuracy: (n_variables, n_searchlights) mean Fisher z, columns in
            ascending location_ids order.
        order: Permutation from enumeration order to sorted order;
            column ``i`` came from the ``order[i]``-th enumerated searchlight.
        location_ids: Center location id of each column (ascending).
        n_features: Usable member columns per searchlight after degenerate
            filtering (0 for searchlights reported as zero).
        variable_names: One name per regressor variable.
    """

    accuracy: np.ndarray
    order: np.ndarray
    location_ids: np.ndarray
    n_features: np.ndarray
    variable_names: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.variable_names:
            self.variable_names = [f"var{i + 1}" for i in range(self.accuracy.shape[0])]

    @property
    def n_searchlights(self) -> int:
        return self.accuracy.shape[1]

    def to_dataframe(self) -> pd.DataFrame:
        """One row per searchlight: location, feature count, z per variable."""
        df = pd.DataFrame({
            "location_id": self.location_ids,
            "enumeration_index": self.order,
            "n_features": self.n_features,
        })
        for name, row in zip(self.variable_names, self.accuracy):
            df[f"z_{name}"] = row
        return df


class AccuracyAggregator:
    """Ordered collection of per-searchlight statistics.

    Entries are keyed by enumeration sequence number, so results may arrive
    in any order (e.g. from parallel workers). Sorting by location id
    happens once, in finalize().
    """

    def __init__(self, n_variables: int, variable_names: Optional[Sequence[str]] = None):
        self.n_variables = n_variables
        self.variable_names = list(variable_names) if variable_names else []
        self._entries: Dict[int, Tuple[int, np.ndarray, int]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def add(
        self,
        sequence: int,
        location_id: int,
        statistics: np.ndarray,
        n_features: int,
    ) -> None:
        if sequence in self._entries:
            raise ValueError(f"Searchlight {sequence} was already recorded")
        statistics = np.asarray(statistics, dtype=float).reshape(-1)
        if statistics.shape[0] != self.n_variables:
            raise ValueError(
                f"Searchlight {sequence}: {statistics.shape[0]} statistics for "
                f"{self.n_variables} variables"
            )
        self._entries[sequence] = (int(location_id), statistics, int(n_features))

    def finalize(self) -> SearchlightResult:
        """Sort collected searchlights by ascending center location id."""
        sequences = sorted(self._entries)
        location_ids = np.array([self._entries[s][0] for s in sequences], dtype=np.int64)
        n_features = np.array([self._entries[s][2] for s in sequences], dtype=np.int64)
        if sequences:
            accuracy = np.column_stack([self._entries[s][1] for s in sequences])
        else:
            accuracy = np.zeros((self.n_variables, 0))

        order = np.argsort(location_ids, kind="stable")

        return SearchlightResult(
            accuracy=accuracy[:, order],
            order=order,
            location_ids=location_ids[order],
            n_features=n_features[order],
            variable_names=list(self.variable_names),
        )


def save_results(
    result: SearchlightResult,
    output_path: Union[str, Path],
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Path]:
    """Write the accuracy matrix plus summary files next to it.

    ``.mat`` output holds ``accuracy``, ``voxelIdx`` (1-based permutation)
    and ``location_ids``; any other suffix is written as ``.npz`` with
    ``accuracy``, ``order``, ``location_ids`` and ``n_features``. A
    ``results.json`` summary and ``searchlight_summary.tsv`` table are
    written in the same directory.

    Returns:
        Dict of written file paths keyed by kind.
    """
    output_path = Path(output_path)
    output_dir = output_path.parent
    output_dir.mkdir(parents=True, exist_ok=True)

    if output_path.suffix == ".mat":
        sio.savemat(output_path, {
            "accuracy": result.accuracy,
            "voxelIdx": result.order + 1,
            "location_ids": result.location_ids,
            "n_features": result.n_features,
            "variable_names": np.array(result.variable_names, dtype=object),
        })
    else:
        output_path = output_path.with_suffix(".npz")
        np.savez(
            output_path,
            accuracy=result.accuracy,
            order=result.order,
            location_ids=result.location_ids,
            n_features=result.n_features,
            variable_names=np.array(result.variable_names),
        )

    table_path = output_dir / "searchlight_summary.tsv"
    result.to_dataframe().to_csv(table_path, sep="\t", index=False)

    summary = {
        "n_searchlights": result.n_searchlights,
        "n_zero_searchlights": int(np.sum(result.n_features == 0)),
        "variables": {
            name: {
                "mean_z": float(np.mean(row)) if row.size else None,
                "max_z": float(np.max(row)) if row.size else None,
                "min_z": float(np.min(row)) if row.size else None,
            }
            for name, row in zip(result.variable_names, result.accuracy)
        },
        "accuracy_file": output_path.name,
    }
    if metadata:
        summary["analysis"] = metadata
    json_path = output_dir / "results.json"
    with open(json_path, "w") as f:
        json.dump(summary, f, indent=2)

    logger.info("Saved searchlight results to %s", output_dir)
    return {"accuracy": output_path, "table": table_path, "summary": json_path}


def load_results(path: Union[str, Path]) -> SearchlightResult:
    """Read results written by save_results()."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Results file not found: {path}")

    if path.suffix == ".mat":
        data = sio.loadmat(path)
        names = [str(np.squeeze(n)) for n in np.ravel(data.get("variable_names", []))]
        return SearchlightResult(
            accuracy=np.atleast_2d(data["accuracy"]),
            order=np.ravel(data["voxelIdx"]).astype(np.int64) - 1,
            location_ids=np.ravel(data["location_ids"]).astype(np.int64),
            n_features=np.ravel(data["n_features"]).astype(np.int64),
            variable_names=names,
        )

    with np.load(path, allow_pickle=False) as data:
        return SearchlightResult(
            accuracy=data["accuracy"],
            order=data["order"],
            location_ids=data["location_ids"],
            n_features=data["n_features"],
            variable_names=[str(n) for n in data["variable_names"]],
        )


def accuracy_to_volume(
    result: SearchlightResult,
    volume_shape: Sequence[int],
    variable: int = 0,
    fill_value: float = 0.0,
) -> np.ndarray:
    """Scatter one variable's statistics into a 3-D volume.

    Location ids are column-major flat indices, matching how the
    searchlight stream addresses the volume.
    """
    volume_shape = tuple(int(d) for d in volume_shape)
    n_voxels = int(np.prod(volume_shape))
    if result.n_searchlights and result.location_ids.max() >= n_voxels:
        raise ValueError(
            f"Location id {result.location_ids.max()} outside volume of shape {volume_shape}"
        )

    flat = np.full(n_voxels, fill_value, dtype=float)
    flat[result.location_ids] = result.accuracy[variable]
    return flat.reshape(volume_shape, order="F")


def accuracy_volumes(
    result: SearchlightResult,
    volume_shape: Sequence[int],
) -> Dict[str, np.ndarray]:
    """Scatter every variable into its own volume, keyed by variable name."""
    return {
        name: accuracy_to_volume(result, volume_shape, variable=i)
        for i, name in enumerate(result.variable_names)
    }


def write_accuracy_maps(
    volumes: Dict[str, np.ndarray],
    output_dir: Union[str, Path],
    affine: Optional[np.ndarray] = None,
) -> List[Path]:
    """Write one ``accuracy_<variable>.nii.gz`` map per volume."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    if affine is None:
        affine = np.eye(4)

    paths = []
    for name, volume in volumes.items():
        img = nib.Nifti1Image(volume.astype(np.float32), affine)
        path = output_dir / f"accuracy_{name}.nii.gz"
        nib.save(img, path)
        paths.append(path)
        logger.info("Saved accuracy map: %s", path)
    return paths


def save_accuracy_maps(
    result: SearchlightResult,
    volume_shape: Sequence[int],
    output_dir: Union[str, Path],
    affine: Optional[np.ndarray] = None,
) -> List[Path]:
    """Write one ``accuracy_<variable>.nii.gz`` map per regressor variable.

    All volumes are built before anything is written, so a location id
    outside the volume leaves ``output_dir`` untouched.
    """
    return write_accuracy_maps(accuracy_volumes(result, volume_shape), output_dir, affine)
