"""Command line interface for the migration runner."""

import argparse
import logging
import sys

from .config import get_settings
from .exceptions import ConfigurationError
from .models.migration import MigrationStatus
from .models.script import Script
from .orchestrator import MigrationRunner, validate_script

logger = logging.getLogger(__name__)


def main():
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Salesforce data migration - move records between orgs and CSV files"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Run migration
    run_parser = subparsers.add_parser("run", help="Run a migration script")
    run_parser.add_argument("--config", required=True, help="Path to export.json or its directory")
    run_parser.add_argument("--output-dir", help="Directory for reports (default from settings)")
    run_parser.add_argument("--simulation", action="store_true", help="Simulate without changes")
    run_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # Validate script
    validate_parser = subparsers.add_parser("validate", help="Validate a migration script")
    validate_parser.add_argument("--config", required=True, help="Path to export.json or its directory")
    validate_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    args = parser.parse_args()

    # Set up logging
    settings = get_settings()
    log_level = logging.DEBUG if getattr(args, "verbose", False) else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if args.command == "run":
        sys.exit(run_migration(args))
    elif args.command == "validate":
        sys.exit(run_validation(args))
    else:
        parser.print_help()


def run_migration(args) -> int:
    """Run a migration from a script file."""
    try:
        script = Script.from_file(args.config)
    except ConfigurationError as e:
        print(f"Error: {e}")
        return 2

    if args.simulation:
        script.simulation_mode = True

    runner = MigrationRunner(script, script_path=args.config, output_dir=args.output_dir)
    result = runner.run_migration()

    print("\n" + "=" * 60)
    print("MIGRATION COMPLETE")
    print("=" * 60)
    print(f"Status: {result.status.value}")
    for summary in result.object_sets:
        print(f"Object set {summary.index}: {summary.status.value}")
        print(f"  Query order:  {', '.join(summary.query_order)}")
        if summary.delete_order:
            print(f"  Delete order: {', '.join(summary.delete_order)}")
        print(f"  Update order: {', '.join(summary.update_order)}")
        for task in summary.tasks:
            print(f"  {task.object_name:<30} {task.operation:<10} inserted={task.inserted} "
                  f"updated={task.updated} deleted={task.deleted} failed={task.failed}")
    print(f"Records Processed: {result.total_processed}")
    print(f"Failed: {result.total_failed}")
    for error in result.errors:
        print(f"Error: {error['error']}")
    if result.completed_at and result.started_at:
        print(f"Duration: {(result.completed_at - result.started_at).total_seconds():.2f} seconds")

    return 0 if result.status == MigrationStatus.COMPLETED else 1


def run_validation(args) -> int:
    """Validate a script without connecting to any org."""
    print("\n=== Validating Script ===")
    try:
        script = Script.from_file(args.config)
        warnings = validate_script(script)
    except ConfigurationError as e:
        print(f"\nInvalid script: {e}")
        return 1

    for warning in warnings:
        print(f"  - {warning}")
    for object_set in script.object_sets:
        print(f"\nObject set {object_set.index}:")
        for obj in object_set.active_objects:
            marker = " (auto-added)" if obj.is_auto_added else ""
            print(f"  {obj.name:<30} {obj.operation.value:<10} externalId={obj.external_id or '-'}{marker}")

    print("\nScript is valid!")
    return 0


if __name__ == "__main__":
    main()
