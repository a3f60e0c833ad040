"""
Main entry point for seeded stereo correlation

Runs the low-resolution and full-resolution correlation stages on the
inputs sharing an output prefix.
"""

import argparse
import logging
import sys

from stereo_corr.errors import StereoCorrelationError
from stereo_corr.pipeline import StereoCorrelationPipeline
from stereo_corr.utils.config_manager import ConfigManager
from stereo_corr.utils.logging_config import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Seeded multi-resolution stereo correlation"
    )

    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file"
    )

    parser.add_argument(
        "--out-prefix",
        type=str,
        required=True,
        help="Prefix of the input images, masks and all outputs"
    )

    parser.add_argument(
        "--seed-mode",
        type=int,
        choices=[0, 1, 2, 3],
        help="Seed mode (overrides the configuration file)"
    )

    parser.add_argument(
        "--threads",
        type=int,
        help="Number of correlation threads"
    )

    parser.add_argument(
        "--log-level",
        type=str,
        help="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    parser.add_argument(
        "--log-file",
        type=str,
        help="Also write the log to this file"
    )

    stages = parser.add_mutually_exclusive_group()
    stages.add_argument(
        "--low-res-only",
        action="store_true",
        help="Stop after the low-resolution stage"
    )
    stages.add_argument(
        "--skip-low-res",
        action="store_true",
        help="Reuse existing low-resolution products"
    )

    return parser


def main(argv=None):
    """Main entry point for the correlation pipeline."""
    args = build_parser().parse_args(argv)

    # Load configuration
    try:
        config = ConfigManager(args.config)
        log_params = config.get_logging_params()
        setup_logging(args.log_level or log_params.get('level', 'INFO'),
                      args.log_file or log_params.get('file'))
        settings = config.get_correlation_settings(
            seed_mode=args.seed_mode,
            threads=args.threads,
            compute_low_res_only=True if args.low_res_only else None,
            skip_low_res=True if args.skip_low_res else None,
        )
    except (StereoCorrelationError, FileNotFoundError) as e:
        print(f"Error loading configuration: {e}")
        return 1

    logger = logging.getLogger(__name__)
    logger.info(f"Loaded configuration from: {config.config_path}")

    try:
        result = StereoCorrelationPipeline(settings, args.out_prefix).run()
    except StereoCorrelationError as e:
        logger.error(f"Correlation failed: {e}")
        return 1

    logger.info(f"Stages run: {', '.join(result.stages_run)}")
    if result.output_path:
        logger.info(f"Disparity written to {result.output_path} ({result.tiles_processed} tiles)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
