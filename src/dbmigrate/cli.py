"""
Command-line front end for Vertica to PostgreSQL migrations.

Usage:
    dbmigrate list-tables
    dbmigrate migrate-table --table CATEGORY --batch-size 500
    dbmigrate migrate-all --dry-run
    dbmigrate validate

    # Resume a table from a batch boundary:
    dbmigrate migrate-table -t ORDERS --start-offset 20000

Environment:
    VERTICA_USERNAME / VERTICA_PASSWORD: Source credentials (override the file)
    POSTGRES_USERNAME / POSTGRES_PASSWORD: Target credentials (override the file)
    LOGFIRE_TOKEN: Forward logs to Logfire (optional)
"""

import argparse
import asyncio
import sys
from typing import Optional

from .config.logfire_config import configure_logging, get_logger
from .config.settings import MigrationSettings, load_settings
from .services.migration.errors import MigrationError
from .services.migration.events import EventEmitter, EventKind, MigrationEvent
from .services.migration.models import TableMigrationResult
from .services.migration.orchestrator import MigrationOrchestrator, MigrationStatus

logger = get_logger(__name__)

DEFAULT_CONFIG = "config/migrations/vertica-to-postgresql.yaml"


def _print_event(event: MigrationEvent) -> None:
    data = event.data
    if event.kind == EventKind.PROGRESS and event.message == "batch_completed":
        print(
            f"  Batch {data['offset_start'] + 1}-{data['offset_end']}: "
            f"{data['migrated_rows']}/{data['total_rows']} rows migrated"
        )
    elif event.kind == EventKind.DIAGNOSTIC and event.message == "column_skipped":
        print(f"  Warning: column {data['column']} has no target column in {data['target_table']}, skipped")


def print_result(result: TableMigrationResult, verbose: bool = False) -> None:
    """Print totals and errors for one table."""
    print(f"\n{result.source_table} -> {result.target_table}")
    print(f"  Total rows:    {result.total_rows}")
    if result.dry_run:
        print("  Dry run: no data read or written")
    else:
        print(f"  Migrated rows: {result.migrated_rows}")
        print(f"  Failed rows:   {result.failed_rows}")
    if result.cancelled:
        print("  Cancelled before completion")
    print(f"  Errors:        {result.error_count}")

    for message in result.error_summary(verbose=verbose):
        print(f"    - {message}")


def _orchestrator(settings: MigrationSettings, verbose: bool) -> MigrationOrchestrator:
    events = EventEmitter()
    if verbose:
        events.subscribe(_print_event)
    else:
        events.on(EventKind.DIAGNOSTIC, _print_event)
    return MigrationOrchestrator(settings, events=events)


def cmd_list_tables(settings: MigrationSettings, args: argparse.Namespace) -> int:
    if args.discover:
        tables = asyncio.run(_orchestrator(settings, args.verbose).list_source_tables(args.schema))
        print(f"Tables in source schema {args.schema or settings.source.default_schema}:\n")
        for index, table in enumerate(tables, start=1):
            print(f"{index:2}. {table}")
        return 0

    print("Available tables for migration:\n")
    for index, table in enumerate(settings.tables, start=1):
        disabled = "" if table.enabled else "  (disabled)"
        print(f"{index:2}. {table.source_table:<25} -> {table.target_table}{disabled}")
    print("\nUse: dbmigrate migrate-table --table <table_name>")
    return 0


def cmd_migrate_table(settings: MigrationSettings, args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(settings, args.verbose)

    print(f"Starting migration: {args.table}")
    if args.dry_run:
        print("\n*** DRY RUN MODE - No data will be read or written ***\n")

    result = asyncio.run(
        orchestrator.migrate_table(
            args.table,
            dry_run=args.dry_run,
            batch_size=args.batch_size,
            start_offset=args.start_offset,
        )
    )
    print_result(result, verbose=args.verbose)
    return 0


def cmd_migrate_all(settings: MigrationSettings, args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(settings, args.verbose)
    tables = settings.enabled_tables()

    print(f"Starting migration of {len(tables)} tables...")
    if args.dry_run:
        print("\n*** DRY RUN MODE - No data will be read or written ***\n")

    progress = asyncio.run(orchestrator.migrate_all(dry_run=args.dry_run))

    for table in tables:
        if table.source_table in orchestrator.results:
            print_result(orchestrator.results[table.source_table], verbose=args.verbose)

    failed = progress.failed_tables
    print("\n" + "=" * 60)
    print("Migration Summary")
    print("=" * 60)
    print(f"Successful: {len(orchestrator.results)} tables")
    print(f"Failed:     {len(failed)} tables")
    print(f"Total:      {len(tables)} tables")
    print(f"Rows:       {progress.migrated_rows}/{progress.total_rows} migrated, {progress.failed_rows} failed")

    for name in failed:
        for message in progress.tables[name].errors:
            print(f"  - {name}: {message}")

    if progress.status != MigrationStatus.COMPLETED:
        print("\nSome migrations did not complete. Check the logs above.")
        return 1
    return 0


def cmd_validate(settings: MigrationSettings, args: argparse.Namespace) -> int:
    problems = settings.problems()
    if problems:
        print("Configuration validation failed:")
        for problem in problems:
            print(f"  - {problem}")
        return 1
    print("Configuration is valid")

    print("Testing database connections...")
    results = asyncio.run(_orchestrator(settings, args.verbose).test_connections())
    for side, database in (("source", settings.source), ("target", settings.target)):
        status = "OK" if results.get(side) else "FAILED"
        print(f"  {database.type} ({side}): {status}")

    if not all(results.values()):
        return 1
    print("All validations passed!")
    return 0


COMMANDS = {
    "list-tables": cmd_list_tables,
    "migrate-table": cmd_migrate_table,
    "migrate-all": cmd_migrate_all,
    "validate": cmd_validate,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dbmigrate",
        description="Migrate table data from Vertica to PostgreSQL",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("-c", "--config", default=DEFAULT_CONFIG, help="Configuration file path")
        sub.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    list_tables = subparsers.add_parser("list-tables", help="List tables available for migration")
    add_common(list_tables)
    list_tables.add_argument("--discover", action="store_true", help="Query the source database instead")
    list_tables.add_argument("--schema", default=None, help="Source schema for --discover")

    migrate_table = subparsers.add_parser("migrate-table", help="Migrate one table")
    add_common(migrate_table)
    migrate_table.add_argument("-t", "--table", required=True, help="Source table to migrate")
    migrate_table.add_argument("-b", "--batch-size", type=int, default=None, help="Rows per batch")
    migrate_table.add_argument("-d", "--dry-run", action="store_true", help="Count rows and check schemas only")
    migrate_table.add_argument("--start-offset", type=int, default=0, help="Resume from this row offset")

    migrate_all = subparsers.add_parser("migrate-all", help="Migrate every enabled table")
    add_common(migrate_all)
    migrate_all.add_argument("-b", "--batch-size", type=int, default=None, help="Rows per batch")
    migrate_all.add_argument("-d", "--dry-run", action="store_true", help="Count rows and check schemas only")

    validate = subparsers.add_parser("validate", help="Validate configuration and test connections")
    add_common(validate)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
        configure_logging("DEBUG" if args.verbose else settings.settings.log_level)

        batch_size = getattr(args, "batch_size", None)
        if batch_size is not None:
            if batch_size <= 0:
                print("Error: --batch-size must be greater than 0")
                return 1
            settings.settings = settings.settings.model_copy(update={"batch_size": batch_size})

        return COMMANDS[args.command](settings, args)

    except MigrationError as e:
        print(f"Error: {e}")
        if args.verbose and e.details:
            print(f"Details: {e.details}")
        return 1
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130
    except Exception as e:
        logger.exception("cli_command_failed")
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
