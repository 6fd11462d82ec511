#!/usr/bin/env python3
"""
Build a binary searchlight stream from a brain mask.

Every in-mask voxel becomes a searchlight center; its members are the
in-mask voxels within the sphere radius. The lookup table lists the
analyzed voxels in ascending column-major volume order, which is also the
column order expected in the activity matrix.

Usage:
    uv run python scripts/build_searchlight_neighbors.py \
        --mask /data/sub-01/gm_mask.nii.gz \
        --output /data/sub-01/searchlights.bin \
        --radius 3

    # Radius in mm using the mask's voxel size:
    uv run python scripts/build_searchlight_neighbors.py \
        --mask ... --output ... --radius 6 --radius-mm
"""

import argparse
import logging
import sys
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from ridgelight.analysis.mvpa.data_loader import load_analysis_mask
from ridgelight.analysis.mvpa.neighbors import (
    build_searchlight_neighbors,
    write_searchlight_stream,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="Build spherical searchlights from a NIfTI brain mask"
    )
    parser.add_argument("--mask", type=Path, required=True, help="NIfTI brain mask")
    parser.add_argument("--output", type=Path, required=True, help="Output stream file")
    parser.add_argument(
        "--radius", type=float, default=2.0,
        help="Sphere radius in voxels (default: 2.0)",
    )
    parser.add_argument(
        "--radius-mm", action="store_true",
        help="Interpret --radius in mm using the mask's voxel size",
    )
    parser.add_argument(
        "--index-base", type=int, choices=[0, 1], default=1,
        help="Index base written to the stream (default: 1)",
    )
    args = parser.parse_args()

    if not args.mask.exists():
        logger.error("Mask not found: %s", args.mask)
        sys.exit(1)

    mask, affine = load_analysis_mask(args.mask)
    voxel_size = None
    if args.radius_mm:
        voxel_size = tuple(float(v) for v in np.sqrt((affine[:3, :3] ** 2).sum(axis=0)))
        logger.info("Voxel size (mm): %s", voxel_size)

    location_ids, records = build_searchlight_neighbors(
        mask, radius=args.radius, voxel_size=voxel_size,
    )
    write_searchlight_stream(args.output, location_ids, records, index_base=args.index_base)

    ids_path = args.output.with_suffix(".locations.txt")
    np.savetxt(ids_path, location_ids + args.index_base, fmt="%d")
    logger.info("Saved location lookup table: %s", ids_path)


if __name__ == "__main__":
    main()
