"""
Collection Migrator
Moves legacy root collections under their owners: ``{source}/{id}`` becomes
``{owner_collection}/{owner}/{source}/{id}``
"""

from typing import List, Sequence
import structlog
from google.api_core import exceptions as gcp_exceptions

from ..infrastructure.config import FIRESTORE_BATCH_LIMIT, settings
from ..infrastructure.errors import OwnerFieldMissingError, VaultError
from ..infrastructure.firestore_client import DocumentStore
from ..infrastructure.monitoring import metrics_collector
from ..models.schemas import MigrationRecord, MigrationState, MigrationSummary, WriteOperation
from .batch_executor import BatchedMutationExecutor

logger = structlog.get_logger()

# Directories first so parent references stay valid within one owner
DEFAULT_SOURCES = ("directories", "documents", "quizzes")


class CollectionMigrator:

    def __init__(self, store: DocumentStore, executor: BatchedMutationExecutor,
                 owner_collection: str = settings.OWNER_COLLECTION,
                 owner_field: str = settings.OWNER_FIELD,
                 batch_limit: int = FIRESTORE_BATCH_LIMIT):
        self.store = store
        self.executor = executor
        self.owner_collection = owner_collection
        self.owner_field = owner_field
        self.batch_limit = min(batch_limit, FIRESTORE_BATCH_LIMIT)

    def target_path(self, owner: str, source: str, document_id: str) -> str:
        return f"{self.owner_collection}/{owner}/{source}/{document_id}"

    async def migrate(self, source: str, delete_originals: bool = False) -> MigrationRecord:
        """Copy one source collection; delete the originals only after every copy committed"""
        record = MigrationRecord(collection=source)
        await self._migrate_into(record, delete_originals)
        return record

    async def _migrate_into(self, record: MigrationRecord, delete_originals: bool) -> None:
        source = record.collection
        documents = await self.store.stream_documents(source)
        record.total = len(documents)
        logger.info("Migrating collection", collection=source, documents=record.total,
                    dry_run=self.executor.dry_run)

        if not documents:
            record.state = MigrationState.DONE
            return

        record.state = MigrationState.COPYING
        copies: List[WriteOperation] = []
        originals: List[str] = []
        for doc in documents:
            owner = doc.data.get(self.owner_field) if doc.data else None
            if not owner:
                error = OwnerFieldMissingError(source, doc.id, self.owner_field)
                logger.warning("Skipping document without owner", **error.context)
                record.errors += 1
                continue
            copies.append(WriteOperation.set(self.target_path(str(owner), source, doc.id), doc.data))
            originals.append(doc.path)

        for start in range(0, len(copies), self.batch_limit):
            mutation = await self.executor.apply(copies[start:start + self.batch_limit])
            mutation.raise_for_failures()
            record.migrated += mutation.applied
        metrics_collector.record_documents("migrator", "migrated", record.migrated)
        metrics_collector.record_documents("migrator", "skipped", record.errors)

        if delete_originals and originals:
            record.state = MigrationState.DELETING
            logger.info("Deleting migrated originals", collection=source, documents=len(originals))
            deletes = [WriteOperation.delete(path) for path in originals]
            for start in range(0, len(deletes), self.batch_limit):
                mutation = await self.executor.apply(deletes[start:start + self.batch_limit])
                mutation.raise_for_failures()
                record.deleted += mutation.applied
            metrics_collector.record_documents("migrator", "deleted", record.deleted)

        record.state = MigrationState.DONE
        logger.info("Collection migrated", collection=source, total=record.total,
                    migrated=record.migrated, errors=record.errors, deleted=record.deleted)

    async def migrate_all(self, sources: Sequence[str] = DEFAULT_SOURCES,
                          delete_originals: bool = False) -> MigrationSummary:
        """Migrate each source in order; a failed collection does not stop the others"""
        summary = MigrationSummary(delete_originals=delete_originals,
                                   dry_run=self.executor.dry_run)
        for source in sources:
            record = MigrationRecord(collection=source)
            try:
                await self._migrate_into(record, delete_originals)
            except (VaultError, gcp_exceptions.GoogleAPICallError) as e:
                logger.error("Collection migration failed", collection=source,
                             state=record.state.value, migrated=record.migrated,
                             deleted=record.deleted, error=str(e))
                record.state = MigrationState.FAILED
                record.error = str(e)
            summary.records.append(record)

        logger.info("Migration finished", total=summary.total, migrated=summary.migrated,
                    errors=summary.errors, deleted=summary.deleted,
                    failed=summary.failed_collections)
        return summary
