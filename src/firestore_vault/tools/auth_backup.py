"""
Authentication user backup and restore
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import List, Union
import structlog
from firebase_admin import exceptions as firebase_exceptions

from ..infrastructure.config import settings
from ..infrastructure.errors import MissingArtifactError, VaultError
from ..infrastructure.firestore_client import AuthStore
from ..infrastructure.monitoring import metrics_collector
from ..models.schemas import AuthBackupInfo, AuthRestoreResult, UserBackup
from .backup_files import read_json, write_json
from .value_marshaler import format_timestamp

logger = structlog.get_logger()

# Firebase Auth accepts at most this many users per import call
IMPORT_BATCH_SIZE = 1000


class AuthBackupTool:

    def __init__(self, auth_store: AuthStore, project_id: str,
                 backup_version: str = settings.BACKUP_VERSION,
                 emulator: bool = False, page_size: int = settings.AUTH_PAGE_SIZE):
        self.auth_store = auth_store
        self.project_id = project_id
        self.backup_version = backup_version
        self.emulator = emulator
        self.page_size = page_size

    async def export(self, backup_dir: Union[str, Path]) -> AuthBackupInfo:
        """Write ``users.json`` and ``metadata.json`` into ``backup_dir``"""
        backup_dir = Path(backup_dir)
        users = await self.auth_store.list_users(page_size=self.page_size)
        logger.info("Fetched auth users", total_users=len(users))

        write_json(backup_dir / "users.json", [user.to_json_dict() for user in users])
        write_json(backup_dir / "metadata.json", {
            "timestamp": format_timestamp(datetime.now(timezone.utc)),
            "totalUsers": len(users),
            "projectId": self.project_id,
            "backupVersion": self.backup_version,
        })

        with_claims = sum(1 for user in users if user.custom_claims)
        logger.info("Auth backup completed", directory=str(backup_dir),
                    total_users=len(users), with_custom_claims=with_claims)
        metrics_collector.record_documents("auth", "exported", len(users))
        return AuthBackupInfo(directory=str(backup_dir), total_users=len(users))

    @staticmethod
    def load_users(users_file: Union[str, Path]) -> List[UserBackup]:
        raw = read_json(users_file)
        if not isinstance(raw, list):
            raise VaultError("Users backup must contain a JSON array",
                             context={"path": str(users_file)})
        return [UserBackup.model_validate(item) for item in raw]

    async def restore(self, users_file: Union[str, Path], dry_run: bool = False) -> AuthRestoreResult:
        """Restore users from ``users.json``.

        Against the emulator each user is created, or updated when it already
        exists. Against production users are imported in batches without
        password hashes, so restored users must reset their passwords.
        """
        users_file = Path(users_file)
        if not users_file.is_file():
            raise MissingArtifactError(users_file)
        users = self.load_users(users_file)
        result = AuthRestoreResult(total=len(users))
        logger.info("Restoring auth users", total_users=len(users), dry_run=dry_run,
                    emulator=self.emulator)

        if dry_run:
            for index, user in enumerate(users, start=1):
                logger.info("Dry run: would restore user", position=index, user=user.label,
                            disabled=user.disabled)
            result.imported = len(users)
            result.claims_set = sum(1 for user in users if user.custom_claims)
            return result

        if self.emulator:
            for user in users:
                try:
                    await self.auth_store.upsert_user(user)
                    result.imported += 1
                except (firebase_exceptions.FirebaseError, ValueError) as e:
                    logger.error("Failed to restore user", uid=user.uid, error=str(e))
                    result.errors += 1
        else:
            total_batches = -(-len(users) // IMPORT_BATCH_SIZE)
            for start in range(0, len(users), IMPORT_BATCH_SIZE):
                batch = users[start:start + IMPORT_BATCH_SIZE]
                logger.info("Importing user batch", batch=start // IMPORT_BATCH_SIZE + 1,
                            total_batches=total_batches, users=len(batch))
                success, failure = await self.auth_store.import_users(batch)
                result.imported += success
                result.errors += failure

        for user in users:
            if not user.custom_claims:
                continue
            try:
                await self.auth_store.set_custom_claims(user.uid, user.custom_claims)
                result.claims_set += 1
            except (firebase_exceptions.FirebaseError, ValueError) as e:
                logger.warning("Failed to set custom claims", uid=user.uid, error=str(e))

        metrics_collector.record_documents("auth", "imported", result.imported)
        logger.info("Auth restore completed", imported=result.imported,
                    errors=result.errors, claims_set=result.claims_set)
        if result.errors:
            logger.warning("Some users failed to restore", errors=result.errors)
        return result
