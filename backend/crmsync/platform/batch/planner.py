"""Splits an operation stream into changeset-sized batches."""

from typing import Iterable, List, Optional

from crmsync.core.logging import ContextualLogger
from crmsync.core.logging import logger as default_logger
from crmsync.platform.batch.types import Operation, OperationBatch

# Hard limit of sub-requests per $batch call.
MAX_BATCH_OPERATIONS = 1000
MIN_BATCH_OPERATIONS = 10


def clamp_batch_size(max_operations: int) -> int:
    """Keep a configured batch size within 10..1000."""
    return min(max(max_operations, MIN_BATCH_OPERATIONS), MAX_BATCH_OPERATIONS)


def _runs(operations: Iterable[Operation]) -> List[List[Operation]]:
    """Group contiguous operations sharing a non-empty group label."""
    runs: List[List[Operation]] = []
    for op in operations:
        if runs and op.group is not None and runs[-1][-1].group == op.group:
            runs[-1].append(op)
        else:
            runs.append([op])
    return runs


def plan_batches(
    operations: Iterable[Operation],
    max_operations: int = MAX_BATCH_OPERATIONS,
    logger: Optional[ContextualLogger] = None,
) -> List[OperationBatch]:
    """Pack operations into batches of at most ``max_operations``.

    Input order is preserved. A run of contiguous operations with the same
    group label is never split across batches unless the run alone exceeds the
    limit, in which case it is chunked and a warning is logged.

    Args:
        operations: Operations in submission order
        max_operations: Batch size limit (clamped to 10..1000)
        logger: Optional contextual logger

    Returns:
        Batches with operations numbered 1..n
    """
    log = logger or default_logger
    limit = clamp_batch_size(max_operations)
    batches: List[OperationBatch] = []
    current: List[Operation] = []

    for run in _runs(operations):
        if len(run) > limit:
            log.warning(
                f"Group '{run[0].group}' has {len(run)} operations, more than the batch "
                f"limit of {limit}; it will be split across batches"
            )
            if current:
                batches.append(OperationBatch.of(current))
                current = []
            for start in range(0, len(run), limit):
                batches.append(OperationBatch.of(run[start : start + limit]))
            continue

        if len(current) + len(run) > limit:
            batches.append(OperationBatch.of(current))
            current = []
        current.extend(run)

    if current:
        batches.append(OperationBatch.of(current))
    return batches
