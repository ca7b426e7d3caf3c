"""
Document Tree Importer
Writes exported DocumentBackup trees back into the store, parents before children
"""

from pathlib import Path
from typing import List, Optional, Sequence, Union
import structlog

from ..infrastructure.config import FIRESTORE_BATCH_LIMIT, settings
from ..infrastructure.errors import MissingArtifactError, VaultError
from ..infrastructure.firestore_client import DocumentStore
from ..infrastructure.monitoring import metrics_collector
from ..models.schemas import DocumentBackup, ImportResult, WriteOperation
from .backup_files import read_json
from .batch_executor import BatchedMutationExecutor
from .value_marshaler import from_portable

logger = structlog.get_logger()


class DocumentTreeImporter:
    """Restores document trees page by page.

    A page of documents is committed before any of their subcollections
    are touched, so a child is never written without its parent. Writes
    are full overwrites by id, which makes a re-run safe.
    """

    def __init__(self, store: DocumentStore, executor: BatchedMutationExecutor,
                 batch_limit: int = FIRESTORE_BATCH_LIMIT):
        self.store = store
        self.executor = executor
        self.batch_limit = min(batch_limit, FIRESTORE_BATCH_LIMIT)

    async def import_collection(self, documents: Sequence[DocumentBackup],
                                target_path: str) -> ImportResult:
        result = ImportResult()
        total_pages = -(-len(documents) // self.batch_limit)

        for start in range(0, len(documents), self.batch_limit):
            page = documents[start:start + self.batch_limit]
            logger.info("Importing page", collection=target_path,
                        page=start // self.batch_limit + 1, total_pages=total_pages,
                        documents=len(page))

            operations = [
                WriteOperation.set(f"{target_path}/{doc.id}", from_portable(doc.data, self.store))
                for doc in page
            ]
            mutation = await self.executor.apply(operations)
            mutation.raise_for_failures()
            result.written += len(page)
            metrics_collector.record_documents("importer", "written", len(page))

            for doc in page:
                if not doc.has_subcollections:
                    continue
                result.with_subcollections += 1
                for name, children in doc.subcollections.items():
                    logger.debug("Importing subcollection",
                                 path=f"{target_path}/{doc.id}/{name}", documents=len(children))
                    result.merge(await self.import_collection(
                        children, f"{target_path}/{doc.id}/{name}"))

        return result

    async def restore_unit(self, backup_dir: Union[str, Path],
                           collection_names: Optional[Sequence[str]] = None) -> ImportResult:
        """Restore collections from a firestore export directory.

        Defaults to the owner collection; every requested collection file
        must be present.
        """
        backup_dir = Path(backup_dir)
        collections_dir = backup_dir / "collections"
        if not collections_dir.is_dir():
            raise MissingArtifactError(collections_dir)

        names = list(collection_names or [settings.OWNER_COLLECTION])
        files = [collections_dir / f"{name}.json" for name in names]
        missing = [path for path in files if not path.is_file()]
        if missing:
            raise MissingArtifactError(missing[0])

        total = ImportResult()
        for name, path in zip(names, files):
            documents = self._load_collection(path)
            logger.info("Restoring collection", collection=name, documents=len(documents),
                        dry_run=self.executor.dry_run)
            result = await self.import_collection(documents, name)
            logger.info("Collection restored", collection=name, written=result.written,
                        with_subcollections=result.with_subcollections)
            total.merge(result)
        return total

    @staticmethod
    def _load_collection(path: Path) -> List[DocumentBackup]:
        raw = read_json(path)
        if not isinstance(raw, list):
            raise VaultError("Collection backup must contain a JSON array",
                             context={"path": str(path)})
        return [DocumentBackup.model_validate(item) for item in raw]
