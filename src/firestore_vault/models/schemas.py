"""
Data models for backup units, reports and run results
On-disk JSON uses camelCase keys; Python attributes stay snake_case
"""

from pydantic import BaseModel, Field, ConfigDict
from typing import Dict, List, Optional, Any
from datetime import datetime
from pathlib import Path
from enum import Enum

from ..infrastructure.errors import PartialCommitError


class MigrationState(str, Enum):
    PENDING = "pending"
    COPYING = "copying"
    DELETING = "deleting"
    DONE = "done"
    FAILED = "failed"


class ClearState(str, Enum):
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    DRY_RUN_PREVIEW = "dry_run_preview"
    EXECUTING = "executing"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CamelModel(BaseModel):
    """Base for models serialized with camelCase keys"""
    model_config = ConfigDict(populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# Store records


class StoredDocument(BaseModel):
    """A document read from the store.

    ``data`` is None when the document has no fields of its own and only
    exists as the parent of subcollections.
    """
    id: str
    path: str
    data: Optional[Dict[str, Any]] = None
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None

    @property
    def exists(self) -> bool:
        return self.data is not None


class WriteOperation(BaseModel):
    op: str  # "set" or "delete"
    path: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def set(cls, path: str, data: Dict[str, Any]) -> "WriteOperation":
        return cls(op="set", path=path, data=data)

    @classmethod
    def delete(cls, path: str) -> "WriteOperation":
        return cls(op="delete", path=path)


class CommitFailure(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    index: int
    commit_number: int
    path: str
    error: str
    cause: Optional[BaseException] = Field(default=None, exclude=True, repr=False)


class MutationResult(BaseModel):
    applied: int = 0
    commits: int = 0
    commit_sizes: List[int] = Field(default_factory=list)
    failures: List[CommitFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        if self.failures:
            failure = self.failures[0]
            raise PartialCommitError(failure.index, failure.commit_number, failure.path,
                                     original_exception=failure.cause)


class BackupUnit(BaseModel):
    path: Path
    created_at: datetime

    @property
    def name(self) -> str:
        return self.path.name


# Document tree


class DocumentBackup(BaseModel):
    """One exported document with its nested subcollections"""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    create_time: Optional[str] = Field(default=None, alias="createTime")
    update_time: Optional[str] = Field(default=None, alias="updateTime")
    subcollections: Optional[Dict[str, List["DocumentBackup"]]] = None

    @property
    def has_subcollections(self) -> bool:
        return bool(self.subcollections)

    def count_documents(self) -> int:
        """This document plus everything nested under it"""
        total = 1
        for documents in (self.subcollections or {}).values():
            total += sum(doc.count_documents() for doc in documents)
        return total

    def to_backup_dict(self) -> Dict[str, Any]:
        # Key order matches the files written by earlier backup versions
        result: Dict[str, Any] = {"id": self.id, "data": self.data}
        if self.create_time is not None:
            result["createTime"] = self.create_time
        if self.update_time is not None:
            result["updateTime"] = self.update_time
        if self.subcollections:
            result["subcollections"] = {
                name: [doc.to_backup_dict() for doc in documents]
                for name, documents in self.subcollections.items()
            }
        return result


DocumentBackup.model_rebuild()


class CollectionStats(CamelModel):
    name: str
    document_count: int = Field(default=0, alias="documentCount")
    subcollection_count: int = Field(default=0, alias="subcollectionCount")


class FirestoreExportSummary(CamelModel):
    directory: str
    collections: List[CollectionStats] = Field(default_factory=list)
    total_documents: int = Field(default=0, alias="totalDocuments")

    @property
    def total_collections(self) -> int:
        return len(self.collections)


class ImportResult(BaseModel):
    written: int = 0
    with_subcollections: int = 0

    def merge(self, other: "ImportResult") -> None:
        self.written += other.written
        self.with_subcollections += other.with_subcollections


# Authentication users


class ProviderBackup(CamelModel):
    uid: str
    provider_id: str = Field(alias="providerId")
    email: Optional[str] = None
    display_name: Optional[str] = Field(default=None, alias="displayName")
    photo_url: Optional[str] = Field(default=None, alias="photoURL")
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")


class UserMetadataBackup(CamelModel):
    creation_time: Optional[str] = Field(default=None, alias="creationTime")
    last_sign_in_time: Optional[str] = Field(default=None, alias="lastSignInTime")
    last_refresh_time: Optional[str] = Field(default=None, alias="lastRefreshTime")


class UserBackup(CamelModel):
    """An authentication user as stored in ``auth/users.json``"""
    uid: str
    email: Optional[str] = None
    email_verified: bool = Field(default=False, alias="emailVerified")
    display_name: Optional[str] = Field(default=None, alias="displayName")
    photo_url: Optional[str] = Field(default=None, alias="photoURL")
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")
    disabled: bool = False
    metadata: UserMetadataBackup = Field(default_factory=UserMetadataBackup)
    custom_claims: Optional[Dict[str, Any]] = Field(default=None, alias="customClaims")
    provider_data: List[ProviderBackup] = Field(default_factory=list, alias="providerData")

    @property
    def label(self) -> str:
        return self.email or self.uid


class AuthRestoreResult(BaseModel):
    total: int = 0
    imported: int = 0
    errors: int = 0
    claims_set: int = 0


# Security rules


class RulesFileInfo(CamelModel):
    exists: bool = False
    size: int = 0
    path: str = ""


# Migration


class MigrationRecord(BaseModel):
    """Counters for one source collection"""
    collection: str
    total: int = 0
    migrated: int = 0
    errors: int = 0
    deleted: int = 0
    state: MigrationState = MigrationState.PENDING
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.state == MigrationState.FAILED


class MigrationSummary(BaseModel):
    records: List[MigrationRecord] = Field(default_factory=list)
    delete_originals: bool = False
    dry_run: bool = False

    @property
    def total(self) -> int:
        return sum(r.total for r in self.records)

    @property
    def migrated(self) -> int:
        return sum(r.migrated for r in self.records)

    @property
    def errors(self) -> int:
        return sum(r.errors for r in self.records)

    @property
    def deleted(self) -> int:
        return sum(r.deleted for r in self.records)

    @property
    def failed_collections(self) -> List[str]:
        return [r.collection for r in self.records if r.failed]


# Clear


class DeletionStats(BaseModel):
    documents_deleted: int = 0
    subcollections_deleted: int = 0


class ClearReport(BaseModel):
    state: ClearState
    dry_run: bool = False
    owners: int = 0
    planned: int = 0
    deleted: int = 0
    stats: Dict[str, DeletionStats] = Field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.state == ClearState.CANCELLED

    @property
    def failed(self) -> bool:
        return self.state == ClearState.FAILED


# Post-restore inspection


class OwnerInspection(BaseModel):
    """What one owner document looks like after a restore"""
    id: str
    exists: bool = False
    field_names: List[str] = Field(default_factory=list)
    subcollections: Dict[str, int] = Field(default_factory=dict)

    @property
    def container_only(self) -> bool:
        return not self.exists and bool(self.subcollections)


class InspectionReport(BaseModel):
    owner_collection: str
    top_level_collections: List[str] = Field(default_factory=list)
    owners: List[OwnerInspection] = Field(default_factory=list)
    missing_owners: List[str] = Field(default_factory=list)

    @property
    def owner_collection_listed(self) -> bool:
        return self.owner_collection in self.top_level_collections

    @property
    def container_only_owners(self) -> List[str]:
        return [owner.id for owner in self.owners if owner.container_only]

    @property
    def total_documents(self) -> int:
        return sum(sum(owner.subcollections.values()) for owner in self.owners)


# Orchestrator reports


class AuthBackupInfo(CamelModel):
    directory: str
    total_users: int = Field(default=0, alias="totalUsers")


class FirestoreBackupInfo(CamelModel):
    directory: str
    total_collections: int = Field(default=0, alias="totalCollections")
    total_documents: int = Field(default=0, alias="totalDocuments")


class RulesBackupInfo(CamelModel):
    directory: str
    firestore_rules: Optional[RulesFileInfo] = Field(default=None, alias="firestoreRules")
    storage_rules: Optional[RulesFileInfo] = Field(default=None, alias="storageRules")
    files_backed_up: int = Field(default=0, alias="filesBackedUp")


class BackupReport(CamelModel):
    """Contents of ``backup-report.json``"""
    timestamp: str
    project_id: str = Field(alias="projectId")
    backup_version: str = Field(alias="backupVersion")
    directory: str = Field(exclude=True)
    auth_backup: Optional[AuthBackupInfo] = Field(default=None, alias="authBackup")
    firestore_backup: Optional[FirestoreBackupInfo] = Field(default=None, alias="firestoreBackup")
    rules_backup: Optional[RulesBackupInfo] = Field(default=None, alias="rulesBackup")


class AuthRestoreInfo(CamelModel):
    users_file: str = Field(default="", alias="usersFile")
    total_users: int = Field(default=0, alias="totalUsers")
    imported: int = 0
    errors: int = 0
    success: bool = False
    skipped: bool = False
    error: Optional[str] = None


class FirestoreRestoreInfo(CamelModel):
    collections_dir: str = Field(default="", alias="collectionsDir")
    total_collections: int = Field(default=0, alias="totalCollections")
    documents_written: int = Field(default=0, alias="documentsWritten")
    success: bool = False
    skipped: bool = False
    error: Optional[str] = None


class RulesRestoreInfo(CamelModel):
    rules_dir: str = Field(default="", alias="rulesDir")
    rules_restored: int = Field(default=0, alias="rulesRestored")
    success: bool = False
    skipped: bool = False
    error: Optional[str] = None


class RestoreReport(CamelModel):
    """Contents of ``restore-report.json``"""
    timestamp: str
    backup_directory: str = Field(alias="backupDirectory")
    dry_run: bool = Field(default=False, alias="dryRun")
    auth_restore: AuthRestoreInfo = Field(default_factory=AuthRestoreInfo, alias="authRestore")
    firestore_restore: FirestoreRestoreInfo = Field(
        default_factory=FirestoreRestoreInfo, alias="firestoreRestore")
    rules_restore: RulesRestoreInfo = Field(default_factory=RulesRestoreInfo, alias="rulesRestore")

    @property
    def success(self) -> bool:
        steps = [self.auth_restore, self.firestore_restore, self.rules_restore]
        return all(step.success or step.skipped for step in steps)


__all__ = [
    'MigrationState',
    'ClearState',
    'StoredDocument',
    'WriteOperation',
    'CommitFailure',
    'MutationResult',
    'BackupUnit',
    'DocumentBackup',
    'CollectionStats',
    'FirestoreExportSummary',
    'ImportResult',
    'ProviderBackup',
    'UserMetadataBackup',
    'UserBackup',
    'AuthRestoreResult',
    'RulesFileInfo',
    'MigrationRecord',
    'MigrationSummary',
    'DeletionStats',
    'ClearReport',
    'OwnerInspection',
    'InspectionReport',
    'AuthBackupInfo',
    'FirestoreBackupInfo',
    'RulesBackupInfo',
    'BackupReport',
    'AuthRestoreInfo',
    'FirestoreRestoreInfo',
    'RulesRestoreInfo',
    'RestoreReport',
]
