"""Interpretation of $batch responses into BatchExecutionResult values."""

import math
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import List, Mapping, Optional

from crmsync.core.logging import ContextualLogger
from crmsync.core.logging import logger as default_logger
from crmsync.platform.batch.types import BatchExecutionResult
from crmsync.platform.crm.odata import THROTTLING_ERROR_CODES

THROTTLING_STATUS_CODES = frozenset({429, 502, 503, 504})
PRECONDITION_FAILED = 412

# Longest advisory delay honoured; larger values are clamped.
MAX_RETRY_AFTER_SECONDS = 24 * 60 * 60

_STATUS_LINE = re.compile(r"HTTP/1\.[01]\s+(\d{3})")


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Parse a Retry-After header (delta-seconds or HTTP-date) into seconds.

    Args:
        value: Raw header value
        now: Reference time for HTTP-date values (defaults to current UTC time)

    Returns:
        Seconds to wait, clamped to 0..MAX_RETRY_AFTER_SECONDS, or None when the
        header is absent, unparseable, negative or not finite
    """
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds) or seconds < 0:
            return None
        return min(seconds, MAX_RETRY_AFTER_SECONDS)
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at is None:
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return min(max((retry_at - now).total_seconds(), 0.0), MAX_RETRY_AFTER_SECONDS)


def is_throttling_response(status_code: int, body: str) -> bool:
    """Return True for rate-limit/overload statuses or service-protection codes."""
    if status_code in THROTTLING_STATUS_CODES:
        return True
    lowered = body.lower()
    return any(code in lowered for code in THROTTLING_ERROR_CODES)


def extract_sub_statuses(body: str) -> List[int]:
    """Return the sub-response status codes in the order they appear."""
    return [int(m.group(1)) for m in _STATUS_LINE.finditer(body)]


def interpret_batch_response(
    status_code: int,
    headers: Mapping[str, str],
    body: str,
    operation_count: int,
    logger: Optional[ContextualLogger] = None,
) -> BatchExecutionResult:
    """Turn a raw $batch response into a BatchExecutionResult.

    Classification:
    - 429/502/503/504 or a service-protection code in the body -> throttled,
      no per-operation parsing
    - any other non-2xx -> permanent failure with the body as error message
    - 2xx -> one status line per sub-response; 2xx and 412 count as success

    A response with fewer status lines than operations is treated as truncated:
    the trailing operations without a status are marked failed so the batch is
    replayed instead of silently dropping them.

    Args:
        status_code: Top-level HTTP status
        headers: Response headers (case-insensitive mapping recommended)
        body: Response body text
        operation_count: Number of operations submitted
        logger: Optional contextual logger

    Returns:
        BatchExecutionResult for this attempt
    """
    logger = logger or default_logger.with_context(component="batch_response_interpreter")

    if is_throttling_response(status_code, body):
        retry_after = None
        if status_code in THROTTLING_STATUS_CODES:
            retry_after = parse_retry_after(headers.get("Retry-After"))
        return BatchExecutionResult.throttled(
            f"HTTP {status_code} throttled or service protection limit reached.",
            retry_after=retry_after,
            status_code=status_code,
        )

    if not 200 <= status_code < 300:
        logger.error(f"Batch HTTP {status_code}: {body}")
        return BatchExecutionResult.permanent_failure(
            f"HTTP {status_code}: {body}", status_code=status_code
        )

    statuses = extract_sub_statuses(body)
    if len(statuses) < operation_count:
        logger.warning(
            f"Batch parsing: {len(statuses)} sub-statuses for {operation_count} operations. "
            "Truncated response? Unmatched operations are marked failed."
        )

    success = 0
    failed: List[int] = []
    for index in range(operation_count):
        if index >= len(statuses):
            failed.append(index)
            continue
        sub_status = statuses[index]
        if 200 <= sub_status < 300 or sub_status == PRECONDITION_FAILED:
            success += 1
        else:
            failed.append(index)

    error_message = None
    if failed:
        error_message = f"Some operations failed: {','.join(map(str, failed))}"

    return BatchExecutionResult(
        is_success=not failed,
        success_count=success,
        failed_indices=tuple(failed),
        error_message=error_message,
        status_code=status_code,
    )
