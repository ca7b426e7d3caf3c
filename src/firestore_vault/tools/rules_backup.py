"""
Security rules backup and restore
Rules files are copied verbatim between the project root and a backup unit
"""

import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Sequence, Union
import structlog

from ..infrastructure.config import settings
from ..infrastructure.errors import MissingArtifactError
from ..models.schemas import RulesBackupInfo, RulesFileInfo
from .backup_files import write_json
from .value_marshaler import format_timestamp

logger = structlog.get_logger()


def metadata_key(file_name: str) -> str:
    """``firestore.rules`` -> ``firestoreRules``"""
    stem = Path(file_name).stem
    return f"{stem}Rules"


class RulesBackupTool:

    def __init__(self, project_root: Union[str, Path] = settings.PROJECT_ROOT,
                 rule_files: Sequence[str] = tuple(settings.RULES_FILES),
                 project_id: str = "", backup_version: str = settings.BACKUP_VERSION):
        self.project_root = Path(project_root)
        self.rule_files = list(rule_files)
        self.project_id = project_id
        self.backup_version = backup_version

    async def export(self, backup_dir: Union[str, Path]) -> RulesBackupInfo:
        backup_dir = Path(backup_dir)
        backup_dir.mkdir(parents=True, exist_ok=True)

        files: Dict[str, RulesFileInfo] = {}
        copied = 0
        for name in self.rule_files:
            source = self.project_root / name
            info = RulesFileInfo(path=str(source.resolve()))
            if source.is_file():
                content = source.read_text(encoding="utf-8")
                (backup_dir / name).write_text(content, encoding="utf-8")
                info.exists = True
                info.size = len(content)
                copied += 1
                logger.info("Rules file backed up", file=name, size=info.size)
            else:
                logger.warning("Rules file not found, skipping", file=str(source))
            files[metadata_key(name)] = info

        metadata = {
            "timestamp": format_timestamp(datetime.now(timezone.utc)),
            "projectId": self.project_id,
            "backupVersion": self.backup_version,
        }
        metadata.update({key: info.to_json_dict() for key, info in files.items()})
        write_json(backup_dir / "metadata.json", metadata)

        return RulesBackupInfo(
            directory=str(backup_dir),
            firestore_rules=files.get("firestoreRules"),
            storage_rules=files.get("storageRules"),
            files_backed_up=copied,
        )

    async def restore(self, backup_dir: Union[str, Path], dry_run: bool = False) -> int:
        """Copy rules files back into the project root; returns how many were restored.

        An existing target is first saved as ``<target>.backup.<epoch-ms>``.
        """
        backup_dir = Path(backup_dir)
        if not backup_dir.is_dir():
            raise MissingArtifactError(backup_dir)

        restored = 0
        for name in self.rule_files:
            source = backup_dir / name
            if not source.is_file():
                logger.warning("Rules file not in backup, skipping", file=name)
                continue
            target = self.project_root / name
            if dry_run:
                logger.info("Dry run: would restore rules file", file=name, target=str(target))
                restored += 1
                continue
            if target.exists():
                saved = target.with_name(f"{target.name}.backup.{int(time.time() * 1000)}")
                shutil.copyfile(target, saved)
                logger.info("Saved existing rules file", file=str(saved))
            shutil.copyfile(source, target)
            restored += 1
            logger.info("Rules file restored", file=name, target=str(target))

        return restored
