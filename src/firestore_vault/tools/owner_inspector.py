"""
Owner Inspector
Read-only check of the owner collection after a restore: which owner documents
exist, which are containers without fields, and how many documents each
owner-scoped subcollection holds
"""

from typing import List, Optional, Sequence
import structlog

from ..infrastructure.config import settings
from ..infrastructure.firestore_client import DocumentStore
from ..models.schemas import InspectionReport, OwnerInspection

logger = structlog.get_logger()


class OwnerInspector:

    def __init__(self, store: DocumentStore):
        self.store = store

    async def inspect_owner(self, owner_collection: str, owner_id: str) -> OwnerInspection:
        document_path = f"{owner_collection}/{owner_id}"
        stored = await self.store.get_document(document_path)
        inspection = OwnerInspection(id=owner_id, exists=stored.exists,
                                     field_names=sorted(stored.data or {}))

        for name in await self.store.list_collection_ids(document_path):
            document_ids = await self.store.list_document_ids(f"{document_path}/{name}")
            inspection.subcollections[name] = len(document_ids)

        if inspection.container_only:
            logger.warning("Owner document has no fields, only subcollections",
                           path=document_path, subcollections=list(inspection.subcollections))
        return inspection

    async def inspect(self, owner_collection: str = settings.OWNER_COLLECTION,
                      owner_ids: Optional[Sequence[str]] = None) -> InspectionReport:
        """Inspect every owner document, or only ``owner_ids`` when given.

        Requested ids with neither fields nor subcollections are reported as
        missing instead of inspected.
        """
        report = InspectionReport(owner_collection=owner_collection,
                                  top_level_collections=await self.store.list_collection_ids())
        listed = await self.store.list_document_ids(owner_collection)
        if not report.owner_collection_listed and listed:
            logger.warning("Owner collection has documents but is not listed",
                           collection=owner_collection, documents=len(listed))

        targets: List[str] = list(owner_ids) if owner_ids else listed
        for owner_id in targets:
            inspection = await self.inspect_owner(owner_collection, owner_id)
            if not inspection.exists and not inspection.subcollections:
                report.missing_owners.append(owner_id)
                continue
            report.owners.append(inspection)

        logger.info("Inspection finished", collection=owner_collection,
                    owners=len(report.owners), missing=len(report.missing_owners),
                    container_only=len(report.container_only_owners),
                    documents=report.total_documents)
        return report
