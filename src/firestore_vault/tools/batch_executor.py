"""
Batched Mutation Executor
Splits write and delete operations into store-sized batches and commits them in order
"""

import time
from collections import Counter
from typing import Sequence
import structlog

from ..infrastructure.config import FIRESTORE_BATCH_LIMIT
from ..infrastructure.firestore_client import DocumentStore
from ..infrastructure.monitoring import metrics_collector
from ..models.schemas import CommitFailure, MutationResult, WriteOperation

logger = structlog.get_logger()


class BatchedMutationExecutor:
    """Commits operations sequentially in batches of at most ``batch_limit``.

    The first failing commit stops the run; the operations before it stay
    committed and nothing after it is sent. In dry-run mode the same batches
    are built and counted but never sent to the store.
    """

    def __init__(self, store: DocumentStore, batch_limit: int = FIRESTORE_BATCH_LIMIT,
                 dry_run: bool = False):
        if batch_limit <= 0:
            raise ValueError("batch_limit must be positive")
        if batch_limit > FIRESTORE_BATCH_LIMIT:
            logger.warning("Batch limit above store maximum, clamping",
                           requested=batch_limit, limit=FIRESTORE_BATCH_LIMIT)
        self.store = store
        self.batch_limit = min(batch_limit, FIRESTORE_BATCH_LIMIT)
        self.dry_run = dry_run

    async def apply(self, operations: Sequence[WriteOperation]) -> MutationResult:
        result = MutationResult()
        operations = list(operations)
        total_commits = -(-len(operations) // self.batch_limit)

        for start in range(0, len(operations), self.batch_limit):
            chunk = operations[start:start + self.batch_limit]
            commit_number = start // self.batch_limit + 1
            op_counts = Counter(op.op for op in chunk)
            started = time.time()

            if self.dry_run:
                logger.info("Dry run: would commit batch",
                            commit=commit_number, total_commits=total_commits,
                            size=len(chunk), **op_counts)
            else:
                try:
                    await self.store.commit(chunk)
                except Exception as e:
                    metrics_collector.record_commit(len(chunk), op_counts, self.dry_run,
                                                    "failed", time.time() - started)
                    logger.error("Batch commit failed, aborting remaining batches",
                                 commit=commit_number, total_commits=total_commits,
                                 index=start, path=chunk[0].path, error=str(e))
                    result.failures.append(CommitFailure(
                        index=start, commit_number=commit_number, path=chunk[0].path,
                        error=str(e), cause=e))
                    return result
                logger.debug("Batch committed", commit=commit_number,
                             total_commits=total_commits, size=len(chunk))

            metrics_collector.record_commit(len(chunk), op_counts, self.dry_run,
                                            "success", time.time() - started)
            result.applied += len(chunk)
            result.commits += 1
            result.commit_sizes.append(len(chunk))

        return result
