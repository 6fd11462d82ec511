#!/usr/bin/env python3
"""
Searchlight ridge-regression MVPA runner for trial-wise fMRI activity.

Decodes one or more trial-wise model variables from every searchlight with
run-wise cross-validated ridge regression and writes the location-sorted
Fisher z accuracy matrix.

Usage:
    uv run python scripts/run_searchlight_analysis.py \
        --features /data/sub-01/trial_features.mat \
        --regressors /data/sub-01/model_regressors.tsv \
        --searchlights /data/sub-01/searchlights.bin \
        --output /data/sub-01/mvpa/accuracy.mat \
        --trial-mask /data/sub-01/excluded_trials.txt

    # Study config (run design, folds) and 4 worker processes:
    uv run python scripts/run_searchlight_analysis.py \
        --features ... --regressors ... --searchlights ... --output ... \
        --config configs/study.yaml --n-jobs 4 --reference-img mean_func.nii.gz
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

import nibabel as nib
import numpy as np

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from ridgelight.analysis.mvpa.data_loader import (
    load_activity,
    load_location_mask,
    load_matrix,
    load_regressors,
    load_trial_mask,
)
from ridgelight.analysis.mvpa.neighbors import SearchlightStreamError
from ridgelight.analysis.mvpa.ridge import FoldDefinition
from ridgelight.analysis.mvpa.searchlight import AnalysisSettings, run_searchlight_analysis
from ridgelight.config import ConfigurationError, load_config, merge_configs, validate_config

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def apply_overrides(config, args):
    """Merge command-line flags over the loaded configuration."""
    overrides = {}
    if args.run_length is not None:
        overrides.setdefault("design", {})["run_length"] = args.run_length
    if args.n_runs is not None:
        overrides.setdefault("design", {})["n_runs"] = args.n_runs
    if args.n_jobs is not None:
        overrides.setdefault("execution", {})["n_jobs"] = args.n_jobs
    if args.perfect_correlation is not None:
        overrides.setdefault("ridge", {})["perfect_correlation"] = args.perfect_correlation
    if not overrides:
        return config
    config = merge_configs(config, overrides)
    validate_config(config)
    return config


def write_design_description(config, args, output_path):
    """Write a human-readable description of the searchlight analysis."""
    folds = config["folds"]
    lines = [
        "ANALYSIS DESCRIPTION",
        "====================",
        f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "Analysis: Searchlight MVPA (cross-validated empirical ridge regression)",
        "",
        "DATA SOURCE",
        "-----------",
        f"Activity: {args.features}",
        f"Regressors: {args.regressors}",
        f"Searchlights: {args.searchlights}",
        f"Trial mask: {args.trial_mask or 'none'}",
        f"Nuisance regressors: {args.nuisance or 'none'}",
        f"Location mask: {args.location_mask or 'none (all locations)'}",
        "",
        "DESIGN",
        "------",
        f"- Run length: {config['design']['run_length']} trials",
        f"- Runs: {config['design']['n_runs']}",
        "- Activity z-scored within run over retained trials",
        "",
        "CROSS-VALIDATION",
        "----------------",
    ]
    for i, (train, test) in enumerate(zip(folds["training"], folds["test"])):
        lines.append(f"- Fold {i + 1}: train runs {train}, test runs {test}")
    lines.extend([
        "",
        "MODEL",
        "-----",
        "- OLS via pseudo-inverse, then ridge refit with per-variable",
        "  shrinkage k = p * residual variance / sum(beta^2) (Xue et al., 2010)",
        "- Score: Fisher z of prediction correlation x sqrt(n_test - 3),",
        "  averaged over folds",
        f"- |r| = 1 policy: {config['ridge']['perfect_correlation']}",
        f"- Degenerate column threshold: {config['searchlight']['degenerate_epsilon']}",
    ])
    output_path.write_text("\n".join(lines))
    logger.info("Saved design description: %s", output_path)


def main():
    parser = argparse.ArgumentParser(
        description="Searchlight MVPA with cross-validated empirical ridge regression"
    )
    parser.add_argument(
        "--features", type=Path, required=True,
        help="Activity file with a trials x locations 'features' matrix (.mat/.npz/.npy)",
    )
    parser.add_argument(
        "--regressors", type=Path, required=True,
        help="Trial-wise model variables (.tsv/.csv with header, .npy, .mat, .txt)",
    )
    parser.add_argument(
        "--searchlights", type=Path, required=True,
        help="Binary searchlight stream (see build_searchlight_neighbors.py)",
    )
    parser.add_argument(
        "--output", type=Path, required=True,
        help="Accuracy output file (.mat or .npz); summaries go alongside",
    )
    parser.add_argument(
        "--config", type=Path, default=None,
        help="Study YAML merged over the packaged defaults",
    )
    parser.add_argument(
        "--trial-mask", type=Path, default=None,
        help="0/1 trial exclusion mask (1 = excluded), run_length x n_runs or flat",
    )
    parser.add_argument(
        "--nuisance", type=Path, default=None,
        help="Optional trials x covariates nuisance matrix",
    )
    parser.add_argument(
        "--location-mask", type=Path, default=None,
        help="Optional volume inclusion mask (float32 binary or NIfTI)",
    )
    parser.add_argument(
        "--reference-img", type=Path, default=None,
        help="NIfTI whose grid and affine are used to write accuracy maps",
    )
    parser.add_argument("--run-length", type=int, default=None, help="Trials per run")
    parser.add_argument("--n-runs", type=int, default=None, help="Number of runs")
    parser.add_argument(
        "--n-jobs", type=int, default=None,
        help="Worker processes for the searchlight sweep",
    )
    parser.add_argument(
        "--perfect-correlation", choices=["clip", "raise"], default=None,
        help="Handling of |r| = 1 in the Fisher transform",
    )

    args = parser.parse_args()

    try:
        config = apply_overrides(load_config(args.config), args)
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        sys.exit(1)

    for path, label in (
        (args.features, "Activity file"),
        (args.regressors, "Regressor file"),
        (args.searchlights, "Searchlight stream"),
    ):
        if not path.exists():
            logger.error("%s not found: %s", label, path)
            sys.exit(1)

    run_length = config["design"]["run_length"]
    n_runs = config["design"]["n_runs"]
    settings = AnalysisSettings.from_config(config)
    folds = FoldDefinition.from_config(config)

    # Maps are only written on the grid of an explicit reference image
    volume_shape = None
    affine = None
    if args.reference_img is not None:
        ref = nib.load(str(args.reference_img))
        volume_shape = list(ref.shape[:3])
        affine = ref.affine

    # Raw float32 masks carry no grid, so they are sized against the
    # reference image or, failing that, the configured volume
    mask_voxels = None
    if volume_shape is not None:
        mask_voxels = int(np.prod(volume_shape))
    elif args.location_mask and not str(args.location_mask).endswith((".nii", ".nii.gz")):
        mask_voxels = int(np.prod(config["volume"]["shape"]))

    try:
        features = load_activity(args.features, run_length, n_runs)
        regressors, variable_names = load_regressors(args.regressors, features.shape[0])
        trial_mask = load_trial_mask(args.trial_mask) if args.trial_mask else None
        nuisance = load_matrix(args.nuisance)[0] if args.nuisance else None
        location_mask = None
        if args.location_mask:
            location_mask = load_location_mask(
                args.location_mask,
                n_voxels=mask_voxels,
                byte_order=settings.byte_order,
                threshold=settings.mask_threshold,
            )

        metadata = {
            "features": str(args.features),
            "regressors": str(args.regressors),
            "searchlights": str(args.searchlights),
            "trial_mask": str(args.trial_mask) if args.trial_mask else None,
            "nuisance": str(args.nuisance) if args.nuisance else None,
            "location_mask": str(args.location_mask) if args.location_mask else None,
            "run_length": run_length,
            "n_runs": n_runs,
            "folds": config["folds"],
            "perfect_correlation": settings.perfect_correlation,
            "n_jobs": settings.n_jobs,
            "timestamp": datetime.now().isoformat(),
        }

        result = run_searchlight_analysis(
            features=features,
            regressors=regressors,
            searchlights=args.searchlights,
            folds=folds,
            run_length=run_length,
            n_runs=n_runs,
            trial_mask=trial_mask,
            nuisance=nuisance,
            location_mask=location_mask,
            settings=settings,
            variable_names=variable_names,
            output_path=args.output,
            volume_shape=volume_shape,
            affine=affine,
            metadata=metadata,
        )
    except (FileNotFoundError, KeyError, ValueError, SearchlightStreamError) as exc:
        logger.error("Analysis failed: %s", exc)
        sys.exit(1)

    with open(args.output.parent / "analysis_config.json", "w") as f:
        json.dump(config, f, indent=2)
    write_design_description(config, args, args.output.parent / "design_description.txt")

    logger.info(
        "Done: %d searchlights x %d variables -> %s",
        result.n_searchlights, len(result.variable_names), args.output,
    )


if __name__ == "__main__":
    main()
