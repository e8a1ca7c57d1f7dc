"""
Command line entry point for the Immich library migration.
"""
import argparse
import json
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv

from immich_migration.config import MigrationConfig
from immich_migration.exceptions import ConfigurationError, MigrationError
from immich_migration.orchestrator import MigrationOrchestrator
from immich_migration.utils.logging_config import setup_logging
from immich_migration.utils.state_manager import CheckpointStore, StepKind

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='immich-migrate',
        description='Migrate one user\'s legacy library (assets, tags, stacks, albums) to Immich',
    )
    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )
    parser.add_argument(
        '--steps',
        nargs='+',
        metavar='STEP',
        help='Steps to run, by name or number (overrides intended_steps), '
             'e.g. --steps create_tags assets'
    )
    parser.add_argument(
        '--clear-problems',
        action='store_true',
        help='Clear problem assets and stacks from the progress file so they are retried, then exit'
    )
    parser.add_argument(
        '--status',
        action='store_true',
        help='Print progress statistics for the selected user and exit'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Override the configured logging level'
    )
    return parser


def load_config(config_path: str) -> MigrationConfig:
    """Load configuration, turning validation failures into ConfigurationError."""
    try:
        return MigrationConfig.from_yaml(config_path, validate=True)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run the migration command.

    Returns:
        Process exit code: 0 on success, 1 on failure or interruption
    """
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        # Logging is not configured yet
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(
        log_file=config.logging.file,
        level=args.log_level or config.logging.level,
        enable_json=config.logging.json,
    )

    try:
        store = CheckpointStore(config.progress_file)

        if args.status:
            record = store.load()
            print(json.dumps(CheckpointStore.get_statistics(record), indent=2))
            return 0

        if args.clear_problems:
            record = store.load()
            CheckpointStore.clear_problems(record)
            store.save(record)
            return 0

        steps = None
        if args.steps:
            try:
                steps = [StepKind.parse(s) for s in args.steps]
            except ValueError as e:
                raise ConfigurationError(str(e)) from e

        orchestrator = MigrationOrchestrator(config, store=store)
        summary = orchestrator.run(steps)
    except MigrationError as e:
        logger.error(f"❌ Migration stopped: {e}")
        logger.error("Progress has been saved; re-run the same command to resume")
        return 1
    except KeyboardInterrupt:
        logger.warning("Migration interrupted by user; progress has been saved")
        return 1

    incomplete = [name for name, state in summary['steps'].items() if state != 'completed']
    if incomplete:
        logger.info(f"Steps not yet completed: {', '.join(incomplete)}")
    logger.info("✅ Migration run finished")
    return 0


if __name__ == '__main__':
    sys.exit(main())
