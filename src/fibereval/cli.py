"""
fibereval Command-Line Interface

Scores candidate tractograms against a peak image (anchor-constrained
plausibility) and fits streamline weights to peak images.
"""

import argparse
import sys
import json
import logging
from pathlib import Path
from typing import List, Optional

from . import __version__
from .utils.logger import FiberEvalLogger, get_logger, log_decision


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fibereval",
        description="fibereval: Tractogram Plausibility Scoring against Diffusion Peak Images",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Score candidates after fitting an anchor tractogram
  fibereval score -a anchor.trk -p peaks.nii.gz -c candidates/ -o results/

  # Greedy selection with reference masks for evaluation
  fibereval score -p peaks.nii.gz -c candidates/ -o results/ --greedy-add \\
      --reference-mask-folders masks/ --reference-peaks-folders ref_peaks/

  # Fit streamline weights to a peak image
  fibereval fit -p peaks.nii.gz -t tracts.trk -o fitted/ --regu MSM --lambda 0.1
        """
    )

    parser.add_argument('--version', action='version', version=f'fibereval {__version__}')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--debug', action='store_true', help='Debug mode')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Score command (anchor-constrained plausibility)
    score_parser = subparsers.add_parser('score', help='Score candidate tracts')
    score_parser.add_argument('--anchor', '-a', help='Anchor tracts in one tractogram file')
    score_parser.add_argument('--peaks', '-p', help='Input peak image')
    score_parser.add_argument('--candidates', '-c', help='Folder containing candidate tracts')
    score_parser.add_argument('--output', '-o', help='Output folder')
    score_parser.add_argument('--config', help='Run configuration JSON')
    score_parser.add_argument('--reference-mask-folders', nargs='+', default=None,
                              help='Folder(s) or file(s) with reference tract masks')
    score_parser.add_argument('--reference-peaks-folders', nargs='+', default=None,
                              help='Folder(s) or file(s) with reference peak images')
    score_parser.add_argument('--mask', help='Scoring is only performed inside the mask image')
    score_parser.add_argument('--greedy-add', action='store_true', default=None,
                              help='Add candidates one after the other in a greedy scheme')
    score_parser.add_argument('--lambda', dest='lambda_', type=float, default=None,
                              help='Modifier for regularization (default: 0.1)')
    score_parser.add_argument('--filter-outliers', action='store_true', default=None,
                              help='Second optimization run with a 99%% quantile weight bound')
    score_parser.add_argument('--regu', default=None,
                              help='MSM, Variance, VoxelVariance, Lasso, GroupLasso, '
                                   'GroupVariance, NONE (default)')
    score_parser.add_argument('--use-num-streamlines', action='store_true', default=None,
                              help="Don't fit candidates, use the number of streamlines as score")
    score_parser.add_argument('--use-weights', action='store_true', default=None,
                              help="Don't fit candidates, use the first streamline weight as score")
    score_parser.add_argument('--filter-zero-weights', action='store_true', default=None,
                              help='Remove streamlines with weight 0 from candidates')
    score_parser.add_argument('--flipx', action='store_true', default=None, help='Flip peaks along x-axis')
    score_parser.add_argument('--flipy', action='store_true', default=None, help='Flip peaks along y-axis')
    score_parser.add_argument('--flipz', action='store_true', default=None, help='Flip peaks along z-axis')
    score_parser.add_argument('--n-jobs', type=int, default=None,
                              help='Threads for greedy candidate fits (default: 1)')
    score_parser.add_argument('--resample-mask', action='store_true', default=None,
                              help='Resample the mask onto the peak image grid')

    # Fit command
    fit_parser = subparsers.add_parser('fit', help='Fit streamline weights to a peak image')
    fit_parser.add_argument('--peaks', '-p', required=True, help='Input peak image')
    fit_parser.add_argument('--tractograms', '-t', nargs='+', required=True,
                            help='Tractogram file(s) or folder(s)')
    fit_parser.add_argument('--output', '-o', required=True, help='Output folder')
    fit_parser.add_argument('--mask', help='Fit is only performed inside the mask image')
    fit_parser.add_argument('--regu', default='NONE', help='Regularization (default: NONE)')
    fit_parser.add_argument('--lambda', dest='lambda_', type=float, default=0.1,
                            help='Modifier for regularization (default: 0.1)')
    fit_parser.add_argument('--filter-outliers', action='store_true',
                            help='Second optimization run with a 99%% quantile weight bound')
    fit_parser.add_argument('--per-bundle', action='store_true',
                            help='One weight per tractogram instead of one per streamline')
    fit_parser.add_argument('--filter-zero-weights', action='store_true',
                            help='Remove streamlines with weight 0 before saving')
    fit_parser.add_argument('--flipx', action='store_true', help='Flip peaks along x-axis')
    fit_parser.add_argument('--flipy', action='store_true', help='Flip peaks along y-axis')
    fit_parser.add_argument('--flipz', action='store_true', help='Flip peaks along z-axis')
    fit_parser.add_argument('--max-iterations', type=int, default=1000,
                            help='Optimizer iteration limit (default: 1000)')

    return parser


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    # Setup logging
    log_level = logging.DEBUG if args.debug else (logging.INFO if args.verbose else logging.WARNING)
    log_dir = Path(args.output) if getattr(args, 'output', None) else None
    run_logger = FiberEvalLogger(level=log_level, log_dir=log_dir, file=log_dir is not None)
    logger = run_logger.get_logger()

    # Execute command
    try:
        if args.command == 'score':
            run_score(args)
        elif args.command == 'fit':
            run_fit(args)
        else:
            parser.print_help()
            sys.exit(1)

        logger.info("Command completed successfully")

    except Exception as e:
        logger.error(f"Error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        run_logger.close()


def run_score(args):
    """Anchor-constrained plausibility scoring of candidate tracts"""
    from .pipeline.config import build_config
    from .pipeline.plausibility import AnchorConstrainedPlausibility

    logger = get_logger()
    logger.info("=" * 80)
    logger.info("ANCHOR CONSTRAINED PLAUSIBILITY")
    logger.info("=" * 80)

    overrides = {
        'anchor': args.anchor,
        'peaks': args.peaks,
        'candidates': args.candidates,
        'output': args.output,
        'mask': args.mask,
        'reference_mask_folders': args.reference_mask_folders,
        'reference_peaks_folders': args.reference_peaks_folders,
        'greedy': args.greedy_add,
        'lambda_': args.lambda_,
        'regularization': args.regu,
        'filter_outliers': args.filter_outliers,
        'use_weights': args.use_weights,
        'use_num_streamlines': args.use_num_streamlines,
        'filter_zero_weights': args.filter_zero_weights,
        'flip_x': args.flipx,
        'flip_y': args.flipy,
        'flip_z': args.flipz,
        'n_jobs': args.n_jobs,
        'resample_mask': args.resample_mask,
        'verbose': True if (args.verbose or args.debug) else None,
    }
    config = build_config(args.config, overrides)

    logger.info(f"Peaks: {config.peaks}")
    logger.info(f"Candidates: {config.candidates}")
    logger.info(f"Output: {config.output}")
    logger.info(f"Mode: {config.mode.value}")

    pipeline = AnchorConstrainedPlausibility(config, logger=get_logger("pipeline"))
    result = pipeline.run()

    logger.info(f"Scored {len(result.scores)} bundles, results in {result.output_dir}")


def run_fit(args):
    """Fit streamline weights to a peak image"""
    from .data.io import (
        TRACTOGRAM_EXTENSIONS, list_files, load_bundle, load_mask,
        load_peak_field, save_bundle, save_peak_field
    )
    from .fitting.engine import LinearFitEngine

    logger = get_logger()
    logger.info("=" * 80)
    logger.info("STREAMLINE WEIGHT FITTING")
    logger.info("=" * 80)

    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)

    peak_field = load_peak_field(args.peaks)
    if args.flipx or args.flipy or args.flipz:
        peak_field = peak_field.flip(args.flipx, args.flipy, args.flipz)

    mask = load_mask(args.mask) if args.mask else None

    bundles = []
    for entry in args.tractograms:
        for path in list_files(entry, TRACTOGRAM_EXTENSIONS):
            bundles.append(load_bundle(path))
    logger.info(f"Loaded {len(bundles)} tractograms")

    engine = LinearFitEngine(
        regularization=args.regu,
        lambda_=args.lambda_,
        filter_outliers=args.filter_outliers,
        fit_per_fiber=not args.per_bundle,
        max_iterations=args.max_iterations,
        verbose=args.verbose or args.debug,
        logger=get_logger("fit")
    )

    log_decision(
        decision_id="FIT",
        component="cli.fit",
        decision=f"Fitting {len(bundles)} tractograms with {engine.regularization.value} regularization",
        rationale="User requested streamline weight fitting",
        parameters={
            'lambda': engine.lambda_,
            'fit_per_fiber': engine.fit_per_fiber,
            'filter_outliers': engine.filter_outliers,
        },
        output_file=output_dir / "decision_log.md"
    )

    result = engine.fit(peak_field, bundles, mask)

    reference = (peak_field.shape, peak_field.affine)
    for bundle in result.bundles:
        if args.filter_zero_weights:
            bundle = bundle.filter_by_weights(0)
        bundle.color_by_weights()
        save_bundle(bundle, output_dir / f"{bundle.name or 'bundle'}_fitted.trk", reference)

    save_peak_field(result.underexplained_field, output_dir / "underexplained.nii.gz")
    save_peak_field(result.overexplained_field, output_dir / "overexplained.nii.gz")

    summary = {
        'rmse': result.rmse,
        'num_covered_directions': result.num_covered_directions,
        'num_observations': result.num_observations,
        'regularization': result.regularization.value,
        'lambda': result.lambda_,
        'converged': result.converged,
        'message': result.message,
        'bundles': [
            {
                'name': bundle.name,
                'num_fibers': bundle.num_fibers,
                'weight_sum': bundle.total_weight(),
                'rms_diff': float(rms_diff),
            }
            for bundle, rms_diff in zip(result.bundles, result.rms_diff_per_bundle)
        ],
    }
    with open(output_dir / "fit_summary.json", 'w') as f:
        json.dump(summary, f, indent=2)

    logger.info(f"RMSE: {result.rmse:.5g}")
    logger.info(f"Saved fitted tractograms and residuals to {output_dir}")


if __name__ == '__main__':
    main()
