"""
Searchlight neighborhood definitions.

Reads and writes the binary searchlight stream and builds spherical
neighborhoods from a brain mask.

Stream layout (int32 throughout):
    n_locations, location_id * n_locations      lookup table
    then, until end of file, one record per searchlight:
    n_members, center, member * n_members

``center`` and ``member`` are positions in the lookup table, which are also
the column positions of the activity matrix. Location ids are
column-major (Fortran order) flat indices into the image volume. Positions
and ids are stored 1-based by default.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List, Optional, Tuple, Union

import numpy as np
from scipy.spatial import cKDTree

logger = logging.getLogger(__name__)

INT_BYTES = 4


class SearchlightStreamError(OSError):
    """Raised when the searchlight stream is truncated or inconsistent."""


@dataclass(frozen=True)
class SearchlightRecord:
    """One searchlight: center and member positions (0-based) plus the
    center's global location id."""

    center: int
    members: Tuple[int, ...]
    location_id: int


def _int32_dtype(byte_order: str) -> np.dtype:
    return np.dtype("<i4" if byte_order == "little" else ">i4")


class SearchlightStreamReader:
    """Sequential reader for a searchlight stream file.

    Use as a context manager; iterating yields SearchlightRecord objects in
    file order::

        with SearchlightStreamReader(path) as reader:
            lookup = reader.location_ids
            for record in reader:
                ...
    """

    def __init__(
        self,
        path: Union[str, Path],
        index_base: int = 1,
        byte_order: str = "little",
    ):
        self.path = Path(path)
        self.index_base = index_base
        self.dtype = _int32_dtype(byte_order)
        self._fh: Optional[BinaryIO] = None
        self.location_ids: Optional[np.ndarray] = None

    def __enter__(self) -> "SearchlightStreamReader":
        if not self.path.exists():
            raise FileNotFoundError(f"Searchlight stream not found: {self.path}")
        self._fh = open(self.path, "rb")
        try:
            n_locations = int(self._read_ints(1, allow_eof=False)[0])
            if n_locations < 0:
                raise SearchlightStreamError(
                    f"{self.path}: negative lookup table length {n_locations}"
                )
            ids = self._read_ints(n_locations, allow_eof=False)
        except Exception:
            self.close()
            raise
        self.location_ids = ids.astype(np.int64) - self.index_base
        logger.info(
            "Opened searchlight stream %s: %d analyzed locations",
            self.path, n_locations,
        )
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def _read_ints(self, count: int, allow_eof: bool) -> Optional[np.ndarray]:
        """Read ``count`` int32 values.

        Returns None only when ``allow_eof`` is set and the file ends exactly
        here; any partial read raises SearchlightStreamError.
        """
        n_bytes = count * INT_BYTES
        data = self._fh.read(n_bytes)
        if allow_eof and len(data) == 0:
            return None
        if len(data) != n_bytes:
            raise SearchlightStreamError(
                f"{self.path}: truncated stream, wanted {n_bytes} bytes, got {len(data)}"
            )
        return np.frombuffer(data, dtype=self.dtype)

    def __iter__(self) -> Iterator[SearchlightRecord]:
        if self._fh is None:
            raise SearchlightStreamError("Stream is not open; use it as a context manager")

        n_locations = len(self.location_ids)
        while True:
            header = self._read_ints(1, allow_eof=True)
            if header is None:
                return
            n_members = int(header[0])
            if n_members < 0:
                raise SearchlightStreamError(f"{self.path}: negative member count {n_members}")

            center = int(self._read_ints(1, allow_eof=False)[0]) - self.index_base
            members = self._read_ints(n_members, allow_eof=False).astype(np.int64) - self.index_base

            if not 0 <= center < n_locations:
                raise SearchlightStreamError(
                    f"{self.path}: center {center} outside lookup table of {n_locations}"
                )
            if n_members and (members.min() < 0 or members.max() >= n_locations):
                raise SearchlightStreamError(
                    f"{self.path}: member index outside lookup table of {n_locations}"
                )

            yield SearchlightRecord(
                center=center,
                members=tuple(int(m) for m in members),
                location_id=int(self.location_ids[center]),
            )


def read_searchlight_stream(
    path: Union[str, Path],
    index_base: int = 1,
    byte_order: str = "little",
) -> Tuple[np.ndarray, List[SearchlightRecord]]:
    """Decode a whole searchlight stream.

    Returns:
        (location_ids, records): 0-based lookup table and the records in
        file order.
    """
    with SearchlightStreamReader(path, index_base=index_base, byte_order=byte_order) as reader:
        records = list(reader)
        location_ids = reader.location_ids
    logger.info("Read %d searchlights from %s", len(records), path)
    return location_ids, records


def write_searchlight_stream(
    path: Union[str, Path],
    location_ids: Iterable[int],
    records: Iterable[SearchlightRecord],
    index_base: int = 1,
    byte_order: str = "little",
) -> Path:
    """Write a lookup table and records in the stream layout."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    dtype = _int32_dtype(byte_order)

    location_ids = np.asarray(list(location_ids), dtype=np.int64)
    n_records = 0
    with open(path, "wb") as f:
        f.write(np.array([len(location_ids)], dtype=dtype).tobytes())
        f.write((location_ids + index_base).astype(dtype).tobytes())
        for record in records:
            members = np.asarray(record.members, dtype=np.int64) + index_base
            header = np.array([len(members), record.center + index_base], dtype=dtype)
            f.write(header.tobytes())
            f.write(members.astype(dtype).tobytes())
            n_records += 1

    logger.info("Wrote %d searchlights (%d locations) to %s", n_records, len(location_ids), path)
    return path


def build_searchlight_neighbors(
    mask: np.ndarray,
    radius: float = 2.0,
    voxel_size: Optional[Tuple[float, float, float]] = None,
) -> Tuple[np.ndarray, List[SearchlightRecord]]:
    """Build spherical searchlights over every voxel of a 3-D mask.

    Args:
        mask: 3-D array; nonzero voxels are analyzed locations.
        radius: Sphere radius, in voxels unless voxel_size is given (then
            in the same units as voxel_size, e.g. mm).
        voxel_size: Optional voxel dimensions for anisotropic grids.

    Returns:
        (location_ids, records): the column-major flat indices of the
        analyzed voxels in ascending order, and one record per voxel whose
        members are all analyzed voxels within the radius (itself included).
    """
    mask = np.asarray(mask)
    if mask.ndim != 3:
        raise ValueError(f"Mask must be 3-D, got shape {mask.shape}")

    coords = np.argwhere(mask != 0)
    if len(coords) == 0:
        raise ValueError("Mask contains no voxels")
    flat = np.ravel_multi_index(coords.T, mask.shape, order="F")
    order = np.argsort(flat, kind="stable")
    coords = coords[order]
    location_ids = flat[order].astype(np.int64)

    scaled = coords.astype(float)
    if voxel_size is not None:
        scaled = scaled * np.asarray(voxel_size, dtype=float)

    tree = cKDTree(scaled)
    neighborhoods = tree.query_ball_point(scaled, r=radius)

    records = [
        SearchlightRecord(
            center=i,
            members=tuple(sorted(members)),
            location_id=int(location_ids[i]),
        )
        for i, members in enumerate(neighborhoods)
    ]

    sizes = [len(r.members) for r in records]
    logger.info(
        "Built %d searchlights, radius %.2f, members per searchlight %d-%d (mean %.1f)",
        len(records), radius,
        min(sizes) if sizes else 0, max(sizes) if sizes else 0,
        float(np.mean(sizes)) if sizes else 0.0,
    )
    return location_ids, records
