#!/usr/bin/env python3
"""
genome2gem Command-Line Interface

Batch reconstruction of draft genome-scale metabolic models from the genome
assemblies in ``<data-dir>/raw``, followed by memote quality scoring.

Configuration precedence (lowest to highest): built-in defaults, ``--config``
file, ``GENOME2GEM_*`` environment variables, command-line options.

Exit codes:
    0    success (under --failure-policy isolate, also when some samples failed)
    1    pipeline failure
    2    configuration error
    130  interrupted
"""

import argparse
import sys
import logging
from pathlib import Path

from . import __version__, utils, config
from .config import ConfigurationError
from .pipeline import Pipeline, PipelineError

logger = logging.getLogger(__name__)

LOG_FILE_NAME = "genome2gem.log"


def build_parser() -> argparse.ArgumentParser:
    """Argument parser for the ``genome2gem`` command."""
    parser = argparse.ArgumentParser(
        prog='genome2gem',
        description='genome2gem: genome assemblies to quality-scored metabolic models',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # CarveMe models for every assembly in data/raw
  genome2gem --data-dir data --method carveme

  # CarveMe with gap-filling on two media from a media database
  genome2gem --data-dir data --method carveme --media-db media.tsv --media M9,LB

  # CarveMe models annotated from the BiGG universal model
  genome2gem --data-dir data --method carveme --annotate

  # gapseq models on gapseq's default medium, 8 CPU units
  genome2gem --data-dir data --method gapseq --max-cpus 8

Notes:
  - Assemblies must end in .fna or .fasta; the sample id is the file name
    up to the first ".f" (A.fna -> A, x.final.fasta -> x)
  - Results are written next to raw/: genes/, <method>_models/,
    model_qualities/, db_stats.txt and a run summary (TSV + HTML)
        """
    )

    parser.add_argument(
        '--data-dir',
        type=Path,
        default=None,
        help='Directory containing raw/ with the assemblies (default: data)'
    )

    # Not restricted with choices: the pipeline driver reports unknown methods
    parser.add_argument(
        '--method',
        type=str,
        default=None,
        help='Model building strategy: carveme or gapseq (default: carveme)'
    )

    parser.add_argument(
        '--media-db',
        type=Path,
        default=None,
        help='Growth media database (CarveMe media TSV, or gapseq medium CSV)'
    )

    parser.add_argument(
        '--media',
        type=str,
        default=None,
        help='Comma-separated media names used by CarveMe for gap-filling'
    )

    parser.add_argument(
        '--annotate',
        action='store_true',
        default=None,
        help='Annotate CarveMe models from the universal reaction database'
    )

    parser.add_argument(
        '--config',
        type=Path,
        default=None,
        help='YAML or JSON configuration file'
    )

    parser.add_argument(
        '--max-cpus',
        type=int,
        default=None,
        help='Total CPU units shared by running tasks (default: all CPUs)'
    )

    parser.add_argument(
        '--failure-policy',
        choices=list(config.FAILURE_POLICIES),
        default=None,
        help='abort: stop on the first failed task; '
             'isolate: let the other samples finish (default: abort)'
    )

    parser.add_argument(
        '--keep-intermediates',
        action='store_true',
        default=None,
        help='Keep the work/ scratch directory'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=None,
        help='Logging verbosity (default: INFO)'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'genome2gem {__version__}'
    )

    return parser


def load_configuration(args: argparse.Namespace) -> config.PipelineConfig:
    """Merge defaults, config file, environment and command-line options."""
    if args.config is not None:
        cfg = config.load_config_from_file(args.config)
    else:
        cfg = config.get_default_config()

    env_overrides = config.load_config_from_env()
    if env_overrides:
        cfg = cfg.update(**env_overrides)

    cli_overrides = {
        'data_dir': args.data_dir,
        'method': args.method,
        'media_db': args.media_db,
        'media': args.media,
        'annotate': args.annotate,
        'max_cpus': args.max_cpus,
        'failure_policy': args.failure_policy,
        'keep_intermediates': args.keep_intermediates,
        'log_level': args.log_level,
    }
    return cfg.update(**{k: v for k, v in cli_overrides.items() if v is not None})


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        cfg = load_configuration(args)
    except (ConfigurationError, TypeError, ValueError, FileNotFoundError) as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        return 2

    # Only log to a file once the data directory exists
    log_file = None
    if cfg.data_dir.is_dir():
        log_file = str(cfg.data_dir / LOG_FILE_NAME)
    utils.setup_logging(log_level=cfg.log_level, log_file=log_file)

    print("=" * 80)
    print("genome2gem Pipeline")
    print("=" * 80)
    print(f"Data directory: {cfg.data_dir}")
    print(f"Method: {cfg.method}")
    print(f"Media database: {cfg.media_db or '-'}")
    print(f"Media: {cfg.media or '-'}")
    print(f"Annotate: {cfg.annotate}")
    print(f"Max CPUs: {cfg.max_cpus}")
    print(f"Failure policy: {cfg.failure_policy}")
    print("=" * 80)
    print()

    try:
        result = Pipeline(cfg).run()
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\n\nPipeline interrupted by user", file=sys.stderr)
        return 130
    except PipelineError as e:
        logger.error(f"Pipeline failed: {e}")
        if log_file:
            print(f"\nError: Pipeline failed. Check log file: {log_file}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error(f"Pipeline failed with error: {e}", exc_info=True)
        return 1

    if result.failures:
        failed = sorted({f.sample_id for f in result.failures if f.sample_id})
        print(f"\nCompleted with failed samples: {', '.join(failed)}", file=sys.stderr)

    return 0


if __name__ == '__main__':
    sys.exit(main())
