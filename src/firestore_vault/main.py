"""
firestore-vault command line entrypoint
Backup, restore, migrate, clear and verify a multi-tenant Firestore project and its Firebase Auth users.
"""

import argparse
import asyncio
import sys
from typing import Any, Awaitable, Callable, Optional, Sequence
import structlog

from .infrastructure.config import Settings, load_settings
from .infrastructure.errors import VaultError
from .infrastructure.firestore_client import create_stores
from .infrastructure.monitoring import configure_logging, write_metrics_file
from .models.schemas import (
    BackupReport,
    ClearReport,
    InspectionReport,
    MigrationSummary,
    RestoreReport,
)
from .orchestration.backup_orchestrator import (
    ALL_STEPS,
    FIRESTORE_STEP,
    BackupOrchestrator,
    find_latest_unit,
    list_units,
)
from .tools.batch_executor import BatchedMutationExecutor
from .tools.clear_tool import OwnerScopedClearTool
from .tools.collection_migrator import CollectionMigrator
from .tools.owner_inspector import OwnerInspector

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_ERROR = 1


def build_parser() -> argparse.ArgumentParser:
    shared = argparse.ArgumentParser(add_help=False)
    shared.add_argument("--dry-run", "-d", action="store_true",
                        help="Plan and count every write without committing anything")
    shared.add_argument("--force", "-f", action="store_true",
                        help="Skip the confirmation prompt of destructive commands")
    shared.add_argument("--production", "-p", action="store_true",
                        help="Do not load emulator settings from .env.local")
    shared.add_argument("--backups-dir", help="Directory holding backup units (default: BACKUPS_DIR)")
    shared.add_argument("--metrics-file", help="Write Prometheus metrics to this file when done")

    parser = argparse.ArgumentParser(
        prog="firestore-vault",
        description="Backup, restore, migrate and clear Firestore data and Firebase Auth users")
    commands = parser.add_subparsers(dest="command", required=True)

    backup = commands.add_parser("backup", parents=[shared],
                                 help="Back up auth users, Firestore and rules into a new unit")
    backup.add_argument("output_dir", nargs="?", help="Unit directory (default: a new timestamped one)")
    backup.add_argument("--step", dest="steps", action="append", choices=ALL_STEPS,
                        help="Only run this step (repeatable)")

    restore = commands.add_parser("restore", parents=[shared], help="Restore a backup unit")
    restore.add_argument("unit_dir", help="Backup unit directory")
    restore.add_argument("--step", dest="steps", action="append", choices=ALL_STEPS,
                         help="Only run this step (repeatable)")
    restore.add_argument("--collection", dest="collections", action="append",
                         help="Collection to restore (repeatable, default: the owner collection)")

    latest = commands.add_parser("restore-latest", parents=[shared],
                                 help="Restore the newest backup unit")
    latest.add_argument("--list", dest="list_only", action="store_true",
                        help="List available backup units and exit")
    latest.add_argument("--collection", dest="collections", action="append",
                        help="Collection to restore (repeatable, default: the owner collection)")

    export = commands.add_parser("export-firestore", parents=[shared],
                                 help="Export only the Firestore document tree")
    export.add_argument("output_dir", nargs="?", help="Unit directory (default: a new timestamped one)")

    import_ = commands.add_parser("import-firestore", parents=[shared],
                                  help="Import a Firestore export directory")
    import_.add_argument("firestore_dir", help="Directory containing collections/<name>.json")
    import_.add_argument("--collection", dest="collections", action="append",
                         help="Collection to import (repeatable, default: the owner collection)")

    migrate = commands.add_parser("migrate", parents=[shared],
                                  help="Move root collections under their owner documents")
    migrate.add_argument("--delete-old", action="store_true",
                         help="Delete the originals once their copies are committed")

    commands.add_parser("clear", parents=[shared],
                        help="Delete every owner-scoped subcollection (asks for confirmation)")

    verify = commands.add_parser("verify", parents=[shared],
                                 help="Inspect owner documents and their subcollections")
    verify.add_argument("--owner", dest="owners", action="append",
                        help="Only inspect this owner id (repeatable)")
    return parser


def prompt_operator(prompt: str) -> Optional[str]:
    try:
        return input(prompt)
    except EOFError:
        return None


def print_backup_summary(report: BackupReport, failed: bool = False) -> None:
    print(f"\nBackup {'failed' if failed else 'completed'}")
    print(f"  Directory:   {report.directory}")
    print(f"  Project:     {report.project_id}")
    if report.auth_backup:
        print(f"  Auth users:  {report.auth_backup.total_users}")
    if report.firestore_backup:
        print(f"  Collections: {report.firestore_backup.total_collections}")
        print(f"  Documents:   {report.firestore_backup.total_documents}")
    if report.rules_backup:
        print(f"  Rules files: {report.rules_backup.files_backed_up}")


def print_restore_summary(report: RestoreReport, failed: bool = False) -> None:
    def status(step) -> str:
        if step.skipped:
            return "skipped"
        if step.success:
            return "ok"
        return f"FAILED ({step.error})" if step.error else "not run"

    outcome = "failed" if failed else "finished"
    print(f"\nRestore {'dry run ' if report.dry_run else ''}{outcome}: {report.backup_directory}")
    print(f"  Auth users:  {report.auth_restore.total_users} {status(report.auth_restore)}")
    print(f"  Documents:   {report.firestore_restore.documents_written} "
          f"{status(report.firestore_restore)}")
    print(f"  Rules files: {report.rules_restore.rules_restored} {status(report.rules_restore)}")


def print_migration_summary(summary: MigrationSummary) -> None:
    print(f"\nMigration {'dry run ' if summary.dry_run else ''}summary")
    for record in summary.records:
        line = (f"  {record.collection}: {record.migrated}/{record.total} migrated, "
                f"{record.errors} errors")
        if summary.delete_originals:
            line += f", {record.deleted} deleted"
        if record.failed:
            line += f" FAILED ({record.error})"
        print(line)


def print_clear_summary(report: ClearReport, failed: bool = False) -> None:
    if report.cancelled:
        print("\nClear cancelled, nothing was deleted")
        return
    outcome = "failed" if failed or report.failed else "finished"
    print(f"\nClear {'dry run ' if report.dry_run else ''}{outcome}")
    for path, stats in report.stats.items():
        print(f"  {path}: {stats.documents_deleted} documents, "
              f"{stats.subcollections_deleted} subcollections")
    print(f"  Total: {report.deleted}/{report.planned} documents deleted across "
          f"{report.owners} owners")


def print_inspection_summary(report: InspectionReport) -> None:
    print(f"\nVerification of '{report.owner_collection}'")
    print(f"  Top-level collections: {', '.join(report.top_level_collections) or '(none)'}")
    if not report.owner_collection_listed:
        print(f"  WARNING: '{report.owner_collection}' is not among the listed collections")
    for owner in report.owners:
        kind = "container only" if owner.container_only else f"{len(owner.field_names)} fields"
        counts = ", ".join(f"{name}: {count}" for name, count in owner.subcollections.items())
        print(f"  {owner.id} ({kind}) {counts or 'no subcollections'}")
    for owner_id in report.missing_owners:
        print(f"  {owner_id} NOT FOUND")
    print(f"  Total: {len(report.owners)} owners, {report.total_documents} documents, "
          f"{len(report.container_only_owners)} container-only")


async def run_reported(action: Awaitable[Any], print_summary: Callable[..., None]) -> Any:
    """Await ``action`` and print its summary, also from the partial report of a failed run"""
    try:
        report = await action
    except VaultError as e:
        if e.report is not None:
            print_summary(e.report, failed=True)
        raise
    print_summary(report)
    return report


async def run_command(args: argparse.Namespace, config: Settings) -> int:
    store, auth_store = create_stores(config)
    orchestrator = BackupOrchestrator(store, auth_store, config)

    if args.command == "backup":
        await run_reported(orchestrator.run_backup(args.output_dir, steps=args.steps or ALL_STEPS),
                           print_backup_summary)
        return EXIT_OK

    if args.command == "export-firestore":
        await run_reported(orchestrator.run_backup(args.output_dir, steps=(FIRESTORE_STEP,)),
                           print_backup_summary)
        return EXIT_OK

    if args.command == "restore":
        report = await run_reported(
            orchestrator.run_restore(args.unit_dir, dry_run=args.dry_run,
                                     steps=args.steps or ALL_STEPS,
                                     collection_names=args.collections),
            print_restore_summary)
        return EXIT_OK if report.success else EXIT_ERROR

    if args.command == "restore-latest":
        if args.list_only:
            units = list_units(config.backups_path, config.BACKUP_PREFIX)
            if not units:
                print(f"No backup units found in {config.backups_path}")
            for unit in units:
                print(f"  {unit.name}  ({unit.created_at.isoformat()})")
            return EXIT_OK
        latest = find_latest_unit(config.backups_path, config.BACKUP_PREFIX)
        if latest is None:
            print(f"No backup units found in {config.backups_path}", file=sys.stderr)
            return EXIT_ERROR
        logger.info("Restoring latest backup unit", directory=str(latest))
        report = await run_reported(
            orchestrator.run_restore(latest, dry_run=args.dry_run,
                                     collection_names=args.collections),
            print_restore_summary)
        return EXIT_OK if report.success else EXIT_ERROR

    if args.command == "import-firestore":
        result = await orchestrator.importer(args.dry_run).restore_unit(
            args.firestore_dir, args.collections)
        print(f"\nImport {'dry run ' if args.dry_run else ''}finished: {result.written} documents, "
              f"{result.with_subcollections} with subcollections")
        return EXIT_OK

    if args.command == "migrate":
        migrator = CollectionMigrator(store, orchestrator.executor(args.dry_run),
                                      owner_collection=config.OWNER_COLLECTION,
                                      owner_field=config.OWNER_FIELD,
                                      batch_limit=config.BATCH_LIMIT)
        summary = await migrator.migrate_all(config.MIGRATION_COLLECTIONS,
                                             delete_originals=args.delete_old)
        print_migration_summary(summary)
        return EXIT_ERROR if summary.failed_collections else EXIT_OK

    if args.command == "clear":
        tool = OwnerScopedClearTool(
            store,
            lambda dry_run: BatchedMutationExecutor(store, config.BATCH_LIMIT, dry_run=dry_run),
            confirmation_phrase=config.CONFIRMATION_PHRASE)
        if not args.dry_run and not args.force:
            print(f"\nWARNING: this deletes {', '.join(config.CLEAR_SUBCOLLECTIONS)} under every "
                  f"{config.OWNER_COLLECTION} document in project {store.project_id}")
        await run_reported(
            tool.clear_owner_scoped(config.OWNER_COLLECTION, config.CLEAR_SUBCOLLECTIONS,
                                    dry_run=args.dry_run, force=args.force,
                                    confirm=prompt_operator),
            print_clear_summary)
        return EXIT_OK

    if args.command == "verify":
        report = await OwnerInspector(store).inspect(config.OWNER_COLLECTION, args.owners)
        print_inspection_summary(report)
        return EXIT_ERROR if report.missing_owners else EXIT_OK

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_settings(production=args.production)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_ERROR
    if args.backups_dir:
        config = config.model_copy(update={"BACKUPS_DIR": args.backups_dir})
    configure_logging(config)

    try:
        return asyncio.run(run_command(args, config))
    except VaultError as e:
        logger.error("Command failed", command=args.command, error=str(e),
                     error_type=type(e).__name__, context=e.context)
        print(f"\nError: {e}", file=sys.stderr)
        return EXIT_ERROR
    except Exception as e:
        logger.exception("Command failed unexpectedly", command=args.command)
        print(f"\nError: {e}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        if args.metrics_file:
            write_metrics_file(args.metrics_file)


if __name__ == "__main__":
    sys.exit(main())
