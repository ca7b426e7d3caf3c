"""
Document Tree Exporter
Walks collections recursively and produces portable DocumentBackup trees
"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional, Union
import structlog

from ..infrastructure.config import settings
from ..infrastructure.firestore_client import DocumentStore
from ..infrastructure.monitoring import metrics_collector
from ..models.schemas import CollectionStats, DocumentBackup, FirestoreExportSummary
from .backup_files import write_json
from .value_marshaler import format_timestamp, to_portable

logger = structlog.get_logger()


async def gather_or_cancel(*aws: Awaitable[Any]) -> List[Any]:
    """``asyncio.gather`` that cancels the remaining awaitables on the first failure.

    The cancelled tasks are awaited before the original exception is re-raised.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class DocumentTreeExporter:
    """Exports collections, their documents and every nested subcollection.

    Documents are fetched in pages of ``page_size`` running concurrently;
    the next page starts only after the whole previous page finished.
    """

    def __init__(self, store: DocumentStore, page_size: int = 50):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.store = store
        self.page_size = page_size

    async def export_collection(self, collection_path: str) -> List[DocumentBackup]:
        document_ids = await self.store.list_document_ids(collection_path)
        logger.info("Exporting collection", collection=collection_path,
                    documents=len(document_ids))

        documents: List[DocumentBackup] = []
        for start in range(0, len(document_ids), self.page_size):
            page = document_ids[start:start + self.page_size]
            results = await gather_or_cancel(
                *(self.export_document(f"{collection_path}/{doc_id}") for doc_id in page))
            documents.extend(doc for doc in results if doc is not None)

            if start + self.page_size < len(document_ids):
                logger.debug("Export progress", collection=collection_path,
                             processed=start + len(page), total=len(document_ids))

        return documents

    async def export_document(self, document_path: str) -> Optional[DocumentBackup]:
        """Export one document; None if it has neither fields nor subcollections"""
        subcollection_ids, stored = await gather_or_cancel(
            self.store.list_collection_ids(document_path),
            self.store.get_document(document_path),
        )

        if not stored.exists and not subcollection_ids:
            logger.warning("Document vanished during export, skipping", path=document_path)
            metrics_collector.record_documents("exporter", "skipped")
            return None

        backup = DocumentBackup(id=stored.id, data=to_portable(stored.data or {}))
        if stored.exists:
            if stored.create_time is not None:
                backup.create_time = format_timestamp(stored.create_time)
            if stored.update_time is not None:
                backup.update_time = format_timestamp(stored.update_time)

        if subcollection_ids:
            subcollections: Dict[str, List[DocumentBackup]] = {}
            for name in subcollection_ids:
                subcollections[name] = await self.export_collection(f"{document_path}/{name}")
            backup.subcollections = subcollections

        metrics_collector.record_documents("exporter", "exported")
        return backup

    async def export_all(self, backup_dir: Union[str, Path],
                         backup_version: str = settings.BACKUP_VERSION) -> FirestoreExportSummary:
        """Export every top-level collection into ``backup_dir``.

        Writes ``collections/<name>.json``, ``metadata.json`` and
        ``statistics.json``.
        """
        backup_dir = Path(backup_dir)
        collections_dir = backup_dir / "collections"
        collections_dir.mkdir(parents=True, exist_ok=True)

        collection_names = await self.store.list_collection_ids()
        logger.info("Found top-level collections", count=len(collection_names),
                    collections=collection_names)

        summary = FirestoreExportSummary(directory=str(backup_dir))
        for name in collection_names:
            documents = await self.export_collection(name)
            write_json(collections_dir / f"{name}.json",
                       [doc.to_backup_dict() for doc in documents])

            stats = CollectionStats(
                name=name,
                document_count=sum(doc.count_documents() for doc in documents),
                subcollection_count=sum(1 for doc in documents if doc.has_subcollections),
            )
            summary.collections.append(stats)
            summary.total_documents += stats.document_count
            logger.info("Collection exported", collection=name,
                        documents=stats.document_count)

        write_json(backup_dir / "metadata.json", {
            "timestamp": format_timestamp(datetime.now(timezone.utc)),
            "projectId": self.store.project_id,
            "databaseId": self.store.database_id,
            "backupVersion": backup_version,
            "collections": collection_names,
            "totalDocuments": summary.total_documents,
        })
        write_json(backup_dir / "statistics.json", {
            "collections": [stats.to_json_dict() for stats in summary.collections],
            "totalDocuments": summary.total_documents,
        })

        logger.info("Firestore export completed", directory=str(backup_dir),
                    collections=len(collection_names),
                    total_documents=summary.total_documents)
        return summary
