"""Batch module for crmsync.

Provides:
- Operation / OperationBatch: units of work and their changeset grouping
- BatchExecutionResult: immutable outcome of one submission attempt
- RoutingRules: alternate-key addressing per collection
- IdentifierLookup: bulk identifier resolution request
"""

from .types import (
    BatchExecutionResult,
    IdentifierLookup,
    Operation,
    OperationBatch,
    RoutingRules,
)

__all__ = [
    "BatchExecutionResult",
    "IdentifierLookup",
    "Operation",
    "OperationBatch",
    "RoutingRules",
]
