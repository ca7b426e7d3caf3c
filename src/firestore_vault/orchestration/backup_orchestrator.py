"""
Backup/Restore Orchestrator - Coordinates the auth, Firestore and rules steps
Implements the full workflow Auth -> Firestore -> Rules for one timestamped backup unit
"""

import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union
import structlog

from ..infrastructure.config import Settings, settings
from ..infrastructure.errors import MissingArtifactError, StepFailedError
from ..infrastructure.firestore_client import AuthStore, DocumentStore
from ..infrastructure.monitoring import run_tracer
from ..models.schemas import (
    AuthRestoreInfo,
    BackupUnit,
    BackupReport,
    FirestoreBackupInfo,
    FirestoreRestoreInfo,
    RestoreReport,
    RulesRestoreInfo,
)
from ..tools.auth_backup import AuthBackupTool
from ..tools.backup_files import write_json
from ..tools.batch_executor import BatchedMutationExecutor
from ..tools.rules_backup import RulesBackupTool
from ..tools.tree_exporter import DocumentTreeExporter
from ..tools.tree_importer import DocumentTreeImporter
from ..tools.value_marshaler import format_timestamp

logger = structlog.get_logger()

AUTH_STEP = "auth"
FIRESTORE_STEP = "firestore"
RULES_STEP = "rules"
ALL_STEPS = (AUTH_STEP, FIRESTORE_STEP, RULES_STEP)

UNIT_SUFFIX_PATTERN = r"(\d{4}-\d{2}-\d{2})_(\d{2})-(\d{2})-(\d{2})-(\d{3})Z"


def unit_name(now: datetime, prefix: str = settings.BACKUP_PREFIX) -> str:
    """``firebase-backup-2024-01-01_12-00-00-000Z`` for a UTC instant"""
    now = now.astimezone(timezone.utc)
    return f"{prefix}{now.year:04d}-{now:%m-%d_%H-%M-%S}-{now.microsecond // 1000:03d}Z"


def parse_unit_name(name: str, prefix: str = settings.BACKUP_PREFIX) -> Optional[datetime]:
    match = re.fullmatch(re.escape(prefix) + UNIT_SUFFIX_PATTERN, name)
    if not match:
        return None
    date, hours, minutes, seconds, millis = match.groups()
    try:
        parsed = datetime.strptime(f"{date} {hours}:{minutes}:{seconds}", "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return None
    return parsed.replace(microsecond=int(millis) * 1000, tzinfo=timezone.utc)


def list_units(backups_root: Union[str, Path], prefix: str = settings.BACKUP_PREFIX) -> List[BackupUnit]:
    """Backup units under ``backups_root``, newest first; unparsable names are ignored"""
    backups_root = Path(backups_root)
    if not backups_root.is_dir():
        return []
    units = []
    for entry in backups_root.iterdir():
        if not entry.is_dir():
            continue
        created_at = parse_unit_name(entry.name, prefix)
        if created_at is not None:
            units.append(BackupUnit(path=entry, created_at=created_at))
    # Equal timestamps: greatest directory name first
    units.sort(key=lambda unit: (unit.created_at, unit.name), reverse=True)
    return units


def find_latest_unit(backups_root: Union[str, Path],
                     prefix: str = settings.BACKUP_PREFIX) -> Optional[Path]:
    units = list_units(backups_root, prefix)
    return units[0].path if units else None


class BackupOrchestrator:
    """
    Runs the backup and restore workflows over one backup unit directory:

        <unit>/auth/       users.json, metadata.json
        <unit>/firestore/  collections/<name>.json, metadata.json, statistics.json
        <unit>/rules/      *.rules, metadata.json
    """

    def __init__(self, store: DocumentStore, auth_store: AuthStore, config: Settings = settings):
        self.store = store
        self.auth_store = auth_store
        self.config = config
        project_id = config.project_id or store.project_id

        self.exporter = DocumentTreeExporter(store, page_size=config.EXPORT_PAGE_SIZE)
        self.auth_tool = AuthBackupTool(auth_store, project_id,
                                        backup_version=config.BACKUP_VERSION,
                                        emulator=config.uses_emulator,
                                        page_size=config.AUTH_PAGE_SIZE)
        self.rules_tool = RulesBackupTool(config.PROJECT_ROOT, config.RULES_FILES,
                                          project_id=project_id,
                                          backup_version=config.BACKUP_VERSION)

    @property
    def project_id(self) -> str:
        return self.config.project_id or self.store.project_id

    def executor(self, dry_run: bool) -> BatchedMutationExecutor:
        return BatchedMutationExecutor(self.store, self.config.BATCH_LIMIT, dry_run=dry_run)

    def importer(self, dry_run: bool) -> DocumentTreeImporter:
        return DocumentTreeImporter(self.store, self.executor(dry_run), self.config.BATCH_LIMIT)

    async def run_backup(self, output_dir: Optional[Union[str, Path]] = None,
                         steps: Sequence[str] = ALL_STEPS) -> BackupReport:
        """Export the selected steps into a new unit directory and write ``backup-report.json``"""
        now = datetime.now(timezone.utc)
        unit_dir = Path(output_dir) if output_dir else self.config.backups_path / unit_name(
            now, self.config.BACKUP_PREFIX)
        unit_dir.mkdir(parents=True, exist_ok=True)

        trace_id = f"backup_{unit_dir.name}"
        run_tracer.start_trace(trace_id, "backup", directory=str(unit_dir),
                               project_id=self.project_id, steps=list(steps))

        report = BackupReport(timestamp=format_timestamp(now), project_id=self.project_id,
                              backup_version=self.config.BACKUP_VERSION,
                              directory=str(unit_dir))
        try:
            if AUTH_STEP in steps:
                report.auth_backup = await self._traced(
                    trace_id, AUTH_STEP, lambda: self.auth_tool.export(unit_dir / "auth"))
            if FIRESTORE_STEP in steps:
                summary = await self._traced(
                    trace_id, FIRESTORE_STEP,
                    lambda: self.exporter.export_all(unit_dir / "firestore",
                                                     backup_version=self.config.BACKUP_VERSION))
                report.firestore_backup = FirestoreBackupInfo(
                    directory=summary.directory,
                    total_collections=summary.total_collections,
                    total_documents=summary.total_documents)
            if RULES_STEP in steps:
                report.rules_backup = await self._traced(
                    trace_id, RULES_STEP, lambda: self.rules_tool.export(unit_dir / "rules"))
        except StepFailedError as e:
            run_tracer.end_trace(trace_id, "failed", failed_step=e.step, error=str(e))
            e.report = report
            raise

        report.timestamp = format_timestamp(datetime.now(timezone.utc))
        write_json(unit_dir / "backup-report.json", report.to_json_dict())
        run_tracer.end_trace(trace_id, "success", directory=str(unit_dir))
        return report

    async def run_restore(self, unit_dir: Union[str, Path], dry_run: bool = False,
                          steps: Sequence[str] = ALL_STEPS,
                          collection_names: Optional[Sequence[str]] = None) -> RestoreReport:
        """Restore the selected steps from ``unit_dir`` and write ``restore-report.json``.

        Missing step directories are skipped. A failing step aborts a live
        restore; in dry-run mode it is recorded and the next step still runs.
        """
        unit_dir = Path(unit_dir)
        if not unit_dir.is_dir():
            raise MissingArtifactError(unit_dir)

        report = RestoreReport(timestamp=format_timestamp(datetime.now(timezone.utc)),
                               backup_directory=str(unit_dir), dry_run=dry_run)
        trace_id = f"restore_{unit_dir.name}"
        run_tracer.start_trace(trace_id, "restore", directory=str(unit_dir), dry_run=dry_run,
                               steps=list(steps))

        handlers = {
            AUTH_STEP: (report.auth_restore, self._restore_auth),
            FIRESTORE_STEP: (report.firestore_restore, self._restore_firestore),
            RULES_STEP: (report.rules_restore, self._restore_rules),
        }
        for step in ALL_STEPS:
            info, handler = handlers[step]
            if step not in steps:
                info.skipped = True
                continue
            try:
                ran = await self._traced(
                    trace_id, step, lambda: handler(unit_dir, info, dry_run, collection_names))
            except StepFailedError as e:
                info.success = False
                info.error = str(e.original_exception)
                if not dry_run:
                    write_json(unit_dir / "restore-report.json", report.to_json_dict())
                    run_tracer.end_trace(trace_id, "failed", failed_step=step, error=info.error)
                    e.report = report
                    raise
                logger.warning("Dry run: step failed, continuing", step=step, error=info.error)
                continue
            if ran:
                info.success = True
            else:
                info.skipped = True

        write_json(unit_dir / "restore-report.json", report.to_json_dict())
        run_tracer.end_trace(trace_id, "success" if report.success else "failed",
                             dry_run=dry_run)
        return report

    async def _traced(self, trace_id: str, step: str, action: Callable[[], Awaitable[Any]]) -> Any:
        started = time.time()
        try:
            result = await action()
        except Exception as e:
            run_tracer.add_trace_step(trace_id, step, "failed", time.time() - started, error=str(e))
            raise StepFailedError(step, e) from e
        # Restore handlers return False when their directory is absent
        status = "skipped" if result is False else "success"
        run_tracer.add_trace_step(trace_id, step, status, time.time() - started)
        return result

    async def _restore_auth(self, unit_dir: Path, info: AuthRestoreInfo, dry_run: bool,
                            collection_names: Optional[Sequence[str]]) -> bool:
        users_file = unit_dir / "auth" / "users.json"
        if not users_file.is_file():
            logger.warning("Auth backup not found, skipping", path=str(users_file))
            return False
        info.users_file = str(users_file)
        result = await self.auth_tool.restore(users_file, dry_run=dry_run)
        info.total_users = result.total
        info.imported = result.imported
        info.errors = result.errors
        return True

    async def _restore_firestore(self, unit_dir: Path, info: FirestoreRestoreInfo, dry_run: bool,
                                 collection_names: Optional[Sequence[str]]) -> bool:
        firestore_dir = unit_dir / "firestore"
        collections_dir = firestore_dir / "collections"
        if not collections_dir.is_dir():
            logger.warning("Firestore backup not found, skipping", path=str(collections_dir))
            return False
        info.collections_dir = str(collections_dir)
        info.total_collections = len(list(collections_dir.glob("*.json")))
        result = await self.importer(dry_run).restore_unit(firestore_dir, collection_names)
        info.documents_written = result.written
        return True

    async def _restore_rules(self, unit_dir: Path, info: RulesRestoreInfo, dry_run: bool,
                             collection_names: Optional[Sequence[str]]) -> bool:
        rules_dir = unit_dir / "rules"
        if not rules_dir.is_dir():
            logger.warning("Rules backup not found, skipping", path=str(rules_dir))
            return False
        info.rules_dir = str(rules_dir)
        info.rules_restored = await self.rules_tool.restore(rules_dir, dry_run=dry_run)
        return True


__all__ = [
    'ALL_STEPS',
    'BackupOrchestrator',
    'unit_name',
    'parse_unit_name',
    'list_units',
    'find_latest_unit',
]
