"""Serialization of operations into a multipart $batch request.

A batch holds exactly one changeset so the remote store applies every
sub-request atomically. Sub-requests keep input order; their position is what
correlates response status lines back to operations.
"""

import hashlib
import json
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional, Sequence

from crmsync.core.exceptions import MissingAlternateKeyError
from crmsync.core.logging import ContextualLogger
from crmsync.core.logging import logger as default_logger
from crmsync.platform.batch.types import Operation, RoutingRules
from crmsync.platform.crm.odata import format_key_segment

CRLF = "\r\n"
DEBUG_BODY_LIMIT = 2000

# Namespace for boundary identifiers derived from request content.
_BOUNDARY_NAMESPACE = uuid.UUID("6f1c9e53-3f0b-4c1e-9d7a-2b0e8f4c5a11")


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def serialize_payload(payload) -> str:
    """Serialize an operation payload as compact JSON, keeping field order."""
    return json.dumps(dict(payload), default=_json_default, ensure_ascii=False)


@dataclass(frozen=True)
class BatchRequest:
    """Wire-level $batch request body and its boundary."""

    body: str
    boundary: str
    changeset_boundary: str

    @property
    def content_type(self) -> str:
        return f"multipart/mixed; boundary={self.boundary}"


class BatchRequestBuilder:
    """Builds one $batch envelope per list of operations."""

    def __init__(
        self,
        web_api_url: str,
        routing_rules: Optional[RoutingRules] = None,
        debug: bool = False,
        logger: Optional[ContextualLogger] = None,
    ):
        """Initialize the builder.

        Args:
            web_api_url: Root of the web API (.../api/data/v9.2)
            routing_rules: Alternate-key configuration per collection
            debug: Log every sub-request with its (truncated) body
            logger: Optional contextual logger
        """
        self.web_api_url = web_api_url.rstrip("/")
        self.routing_rules = routing_rules or RoutingRules()
        self.debug = debug
        self.logger = logger or default_logger.with_context(component="batch_request_builder")

    def validate(self, operations: Sequence[Operation]) -> None:
        """Fail fast if any operation lacks a required alternate key.

        Raises:
            MissingAlternateKeyError: For the first offending operation
        """
        for op in operations:
            key_field = self.routing_rules.alternate_key_for(op.collection)
            if key_field is not None and op.payload.get(key_field) is None:
                self.logger.error(
                    f"Alternate key '{key_field}' missing for collection '{op.collection}' "
                    f"in payload: {serialize_payload(op.payload)[:DEBUG_BODY_LIMIT]}"
                )
                raise MissingAlternateKeyError(op.collection, key_field, dict(op.payload))

    def target_for(self, op: Operation) -> tuple:
        """Return (method, url) for an operation.

        Alternate-key collections are upserted with PATCH on ``collection(key=value)``;
        other collections are created with POST on the collection itself.
        """
        key_field = self.routing_rules.alternate_key_for(op.collection)
        if key_field is None:
            return "POST", f"{self.web_api_url}/{op.collection}"
        segment = format_key_segment(key_field, op.payload[key_field])
        return "PATCH", f"{self.web_api_url}/{op.collection}({segment})"

    def build(self, operations: Sequence[Operation]) -> BatchRequest:
        """Build the multipart body for a list of operations.

        Boundaries are derived from the sub-request content, so the same input
        always yields byte-identical output.

        Args:
            operations: Operations in submission order

        Returns:
            BatchRequest with body and boundary

        Raises:
            MissingAlternateKeyError: If an operation lacks a required alternate key
        """
        self.validate(operations)

        parts: List[str] = []
        for position, op in enumerate(operations, start=1):
            content_id = op.sequence or position
            method, url = self.target_for(op)
            body = serialize_payload(op.payload)
            parts.append(
                CRLF.join(
                    [
                        "Content-Type: application/http",
                        "Content-Transfer-Encoding: binary",
                        f"Content-ID: {content_id}",
                        "",
                        f"{method} {url} HTTP/1.1",
                        "Content-Type: application/json; charset=utf-8",
                        "",
                        body,
                        "",
                    ]
                )
            )
            if self.debug:
                truncated = (
                    body if len(body) <= DEBUG_BODY_LIMIT else body[:DEBUG_BODY_LIMIT] + " ..."
                )
                self.logger.info(f"[Batch] op#{content_id}: {method} {url} Body={truncated}")

        digest = hashlib.sha256(CRLF.join(parts).encode("utf-8")).hexdigest()
        changeset = f"changeset_{uuid.uuid5(_BOUNDARY_NAMESPACE, 'changeset:' + digest)}"
        boundary = f"batch_{uuid.uuid5(_BOUNDARY_NAMESPACE, 'batch:' + digest)}"

        lines = [
            f"--{boundary}",
            f"Content-Type: multipart/mixed; boundary={changeset}",
            "",
        ]
        for part in parts:
            lines.append(f"--{changeset}")
            lines.append(part)
        lines.append(f"--{changeset}--")
        lines.append(f"--{boundary}--")
        lines.append("")

        return BatchRequest(body=CRLF.join(lines), boundary=boundary, changeset_boundary=changeset)
