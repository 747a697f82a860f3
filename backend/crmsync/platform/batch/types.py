"""Value types for batch execution.

Operations are the unit of work handed to the batch core; results are the
immutable outcome of one submission attempt.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple


@dataclass(frozen=True)
class Operation:
    """One logical write against the remote store.

    Attributes:
        collection: Target entity set, e.g. "msdyn_workorders"
        payload: Ordered field -> value mapping serialized as the JSON body
        sequence: 1-based position inside its batch (Content-ID); 0 until planned
        group: Optional label; contiguous operations sharing a group stay in one batch
    """

    collection: str
    payload: Mapping[str, Any]
    sequence: int = 0
    group: Optional[str] = None


@dataclass(frozen=True)
class OperationBatch:
    """An ordered group of operations submitted as one changeset."""

    operations: Tuple[Operation, ...]

    @classmethod
    def of(cls, operations: Iterable[Operation]) -> "OperationBatch":
        """Number operations 1..n in submission order."""
        return cls(
            operations=tuple(replace(op, sequence=i) for i, op in enumerate(operations, start=1))
        )

    def __len__(self) -> int:
        return len(self.operations)

    def __iter__(self):
        return iter(self.operations)


@dataclass(frozen=True)
class RoutingRules:
    """Per-collection addressing rules.

    Collections listed in ``alternate_keys`` are upserted by alternate key
    (PATCH ``collection(key=value)``); every other collection is created with a
    plain POST.
    """

    alternate_keys: Mapping[str, str] = field(default_factory=dict)

    def alternate_key_for(self, collection: str) -> Optional[str]:
        """Return the alternate-key field of a collection, if configured."""
        key = self.alternate_keys.get(collection)
        return key if key and key.strip() else None


@dataclass(frozen=True)
class BatchExecutionResult:
    """Outcome of one batch submission attempt.

    Immutable: derive variants with ``dataclasses.replace``.
    """

    is_success: bool
    is_throttled: bool = False
    success_count: int = 0
    failed_indices: Tuple[int, ...] = ()
    error_message: Optional[str] = None
    retry_after: Optional[float] = None
    status_code: Optional[int] = None

    def __post_init__(self):
        if self.is_success and self.is_throttled:
            raise ValueError("A batch result cannot be both successful and throttled")
        # Accept any sequence from callers but store a tuple.
        object.__setattr__(self, "failed_indices", tuple(self.failed_indices))

    @property
    def has_failed_indices(self) -> bool:
        return len(self.failed_indices) > 0

    @property
    def is_complete_success(self) -> bool:
        """True when every sub-operation succeeded."""
        return self.is_success and not self.failed_indices

    @classmethod
    def empty_success(cls) -> "BatchExecutionResult":
        """Result for a batch with nothing to send."""
        return cls(is_success=True)

    @classmethod
    def throttled(
        cls,
        message: str,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None,
    ) -> "BatchExecutionResult":
        """Batch-level failure caused by throttling; no per-operation detail."""
        return cls(
            is_success=False,
            is_throttled=True,
            error_message=message,
            retry_after=retry_after,
            status_code=status_code,
        )

    @classmethod
    def permanent_failure(
        cls, message: str, status_code: Optional[int] = None
    ) -> "BatchExecutionResult":
        """Non-retryable failure of the whole batch."""
        return cls(is_success=False, error_message=message, status_code=status_code)

    @classmethod
    def max_attempts_reached(cls) -> "BatchExecutionResult":
        """Placeholder returned when no attempt ever produced a result."""
        return cls(is_success=False, error_message="Max attempts reached or unknown error.")


@dataclass(frozen=True)
class IdentifierLookup:
    """A bulk identifier resolution request for one collection.

    Attributes:
        collection: Entity set queried on a cache miss, e.g. "accounts"
        key_field: Business-key column, e.g. "dc_idstructure"
        id_field: Column holding the remote identifier, e.g. "accountid"
        keys: Business-key values to resolve (duplicates allowed)
        numeric: Embed values unquoted in the query filter
    """

    collection: str
    key_field: str
    id_field: str
    keys: Sequence[str] = ()
    numeric: bool = False

    def with_keys(self, keys: Iterable[Any]) -> "IdentifierLookup":
        return replace(self, keys=tuple(str(k) for k in keys))


def distinct_keys(keys: Iterable[Any]) -> List[str]:
    """Stringify, drop blanks and de-duplicate while keeping first-seen order."""
    seen: Dict[str, None] = {}
    for key in keys:
        if key is None:
            continue
        value = str(key).strip()
        if value and value not in seen:
            seen[value] = None
    return list(seen)
