"""
Destructive Clear Tool
Deletes the owner-scoped subcollections under every owner document, behind a confirmation gate
"""

import asyncio
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import structlog

from ..infrastructure.config import settings
from ..infrastructure.errors import PartialCommitError
from ..infrastructure.firestore_client import DocumentStore
from ..infrastructure.monitoring import metrics_collector
from ..models.schemas import ClearReport, ClearState, DeletionStats, WriteOperation
from .batch_executor import BatchedMutationExecutor

logger = structlog.get_logger()

ExecutorFactory = Callable[[bool], BatchedMutationExecutor]


class OwnerScopedClearTool:
    """Plans every delete first, shows the plan, then asks before touching anything.

    ``force`` skips the question and ``dry_run`` replaces it with a preview
    that runs the same batches without committing them.
    """

    def __init__(self, store: DocumentStore, executor_factory: ExecutorFactory,
                 confirmation_phrase: str = settings.CONFIRMATION_PHRASE):
        self.store = store
        self.executor_factory = executor_factory
        self.confirmation_phrase = confirmation_phrase

    async def plan_collection(self, collection_path: str) -> Tuple[List[WriteOperation], DeletionStats]:
        """Deletes for a collection, nested subcollections before their parent document"""
        operations: List[WriteOperation] = []
        stats = DeletionStats()
        for doc_id in await self.store.list_document_ids(collection_path):
            document_path = f"{collection_path}/{doc_id}"
            for name in await self.store.list_collection_ids(document_path):
                nested_ops, nested_stats = await self.plan_collection(f"{document_path}/{name}")
                operations.extend(nested_ops)
                stats.documents_deleted += nested_stats.documents_deleted
                stats.subcollections_deleted += 1 + nested_stats.subcollections_deleted
            operations.append(WriteOperation.delete(document_path))
            stats.documents_deleted += 1
        return operations, stats

    async def plan(self, owner_collection: str,
                   subcollection_names: Sequence[str]) -> Tuple[List[WriteOperation], Dict[str, DeletionStats], int]:
        operations: List[WriteOperation] = []
        stats: Dict[str, DeletionStats] = {}
        owner_ids = await self.store.list_document_ids(owner_collection)
        for owner_id in owner_ids:
            for name in subcollection_names:
                path = f"{owner_collection}/{owner_id}/{name}"
                path_ops, path_stats = await self.plan_collection(path)
                if not path_ops:
                    continue
                operations.extend(path_ops)
                stats[path] = path_stats
        return operations, stats, len(owner_ids)

    def _transition(self, report: ClearReport, state: ClearState) -> None:
        logger.debug("Clear state change", previous=report.state.value, state=state.value)
        report.state = state

    async def clear_owner_scoped(self, owner_collection: str = settings.OWNER_COLLECTION,
                                 subcollection_names: Sequence[str] = tuple(settings.CLEAR_SUBCOLLECTIONS),
                                 dry_run: bool = False, force: bool = False,
                                 confirm: Optional[Callable[[str], Optional[str]]] = None) -> ClearReport:
        operations, stats, owners = await self.plan(owner_collection, subcollection_names)

        for path, path_stats in stats.items():
            logger.info("Planned deletion", path=path,
                        documents=path_stats.documents_deleted,
                        subcollections=path_stats.subcollections_deleted)
        logger.warning("Clear preview", owners=owners, subcollections=list(subcollection_names),
                       operations=len(operations), dry_run=dry_run, force=force)

        report = ClearReport(state=ClearState.AWAITING_CONFIRMATION, dry_run=dry_run,
                             owners=owners, planned=len(operations), stats=stats)

        if dry_run:
            self._transition(report, ClearState.DRY_RUN_PREVIEW)
        elif force:
            self._transition(report, ClearState.CONFIRMED)
        else:
            prompt = f'Type "{self.confirmation_phrase}" to confirm: '
            # confirm may block on stdin
            answer = await asyncio.to_thread(confirm, prompt) if confirm else None
            if answer is None or answer.strip() != self.confirmation_phrase:
                self._transition(report, ClearState.CANCELLED)
                logger.info("Clear cancelled, nothing deleted")
                return report
            self._transition(report, ClearState.CONFIRMED)

        if not dry_run:
            self._transition(report, ClearState.EXECUTING)
        mutation = await self.executor_factory(dry_run).apply(operations)
        report.deleted = mutation.applied
        metrics_collector.record_documents("clear", "deleted", mutation.applied)
        try:
            mutation.raise_for_failures()
        except PartialCommitError as e:
            self._transition(report, ClearState.FAILED)
            logger.error("Clear aborted", deleted=report.deleted, planned=report.planned,
                         error=str(e))
            e.report = report
            raise

        self._transition(report, ClearState.DONE)
        logger.info("Clear finished", deleted=report.deleted, dry_run=dry_run,
                    commits=mutation.commits)
        return report
