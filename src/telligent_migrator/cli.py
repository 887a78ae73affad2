"""
Command-line interface for the Telligent migration tool.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import TYPE_CHECKING

from .config import Settings, load_category_mapping
from .exceptions import ConfigurationError, MigrationError
from .orchestrator import TelligentMigrator
from .source import LegacySource, SqlAlchemyDatabase, create_source_engine
from .state import IdentityMapper
from .utils import load_object, setup_logging

if TYPE_CHECKING:
    from .orchestrator import MigrationResult
    from .protocols import TargetPlatform

logger: logging.Logger = logging.getLogger(__name__)


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Migrate a Telligent community into a discussion platform. "
        "Database credentials are read from DB_HOST, DB_PORT, DB_USERNAME, DB_PASSWORD and DB_NAME."
    )

    _ = parser.add_argument(
        "--target",
        help="Factory of the target platform as 'module:callable', called with the settings "
        "(default: TARGET_FACTORY environment variable)",
    )

    _ = parser.add_argument(
        "--category-mapping",
        type=Path,
        help="JSON file mapping forums to categories (default: CATEGORY_MAPPING environment variable)",
    )

    _ = parser.add_argument(
        "--file-base-dir", type=Path, help="Root of the Telligent file store (default: FILE_BASE_DIR)"
    )

    _ = parser.add_argument(
        "--state-db", help="SQLAlchemy URL of the migration state database (default: STATE_DB_URL)"
    )

    _ = parser.add_argument("--batch-size", type=int, help="Rows per source query (default: BATCH_SIZE or 1000)")

    _ = parser.add_argument(
        "--verbose", "-v", action="count", default=0, help="Increase console verbosity (-v info, -vv debug)"
    )

    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> Settings:
    """Environment settings with command line overrides applied."""
    settings = Settings.from_env().with_overrides(
        target_factory=args.target,
        category_mapping_path=args.category_mapping,
        file_base_dir=args.file_base_dir,
        state_db_url=args.state_db,
        batch_size=args.batch_size,
    )
    if settings.batch_size < 1:
        msg = f"Batch size must be positive, got {settings.batch_size}"
        raise ConfigurationError(msg)
    return settings


def create_target(settings: Settings) -> TargetPlatform:
    if not settings.target_factory:
        msg = "No target platform configured, use --target or TARGET_FACTORY"
        raise ConfigurationError(msg)

    factory = load_object(settings.target_factory)
    if not callable(factory):
        msg = f"Target factory '{settings.target_factory}' is not callable"
        raise ConfigurationError(msg)
    return factory(settings)


def build_migrator(settings: Settings) -> TelligentMigrator:
    """Wire source, state and target together."""
    category_mapping = None
    ignored_forum_ids: frozenset[int] = frozenset()
    if settings.category_mapping_path is not None:
        category_mapping = load_category_mapping(settings.category_mapping_path)
        ignored_forum_ids = category_mapping.ignored_forum_ids

    target = create_target(settings)
    source = LegacySource(SqlAlchemyDatabase(create_source_engine(settings)), ignored_forum_ids=ignored_forum_ids)
    identity = IdentityMapper.from_url(settings.state_db_url)

    return TelligentMigrator(
        source,
        target,
        identity,
        file_base_dir=settings.file_base_dir,
        category_mapping=category_mapping,
        batch_size=settings.batch_size,
    )


def print_report(result: MigrationResult) -> None:
    print("\nMigration report")
    print(f"  Status: {'success' if result.success else 'completed with errors'}")

    stats = asdict(result.stats)
    errors = stats.pop("errors")
    for key, value in stats.items():
        print(f"  {key.replace('_', ' ').capitalize()}: {value}")

    if errors:
        print(f"  Errors ({len(errors)}):")
        for error in errors:
            print(f"    - {error}")


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)
    setup_logging(verbosity=args.verbose)

    try:
        settings = load_settings(args)
        migrator = build_migrator(settings)

        # Execute migration
        result = migrator.migrate()

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")  # noqa: TRY400 - no traceback for user errors
        sys.exit(1)
    except MigrationError:
        logger.exception("Migration failed")
        sys.exit(1)

    print_report(result)
    sys.exit(0 if result.success else 1)
