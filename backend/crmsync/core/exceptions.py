"""Shared exceptions module."""

from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from crmsync.platform.batch.types import BatchExecutionResult


class MissingAlternateKeyError(Exception):
    """Raised when an operation lacks the alternate key its collection requires.

    This is a configuration error: it is raised before any network call and is
    never retried.
    """

    def __init__(
        self,
        collection: str,
        key_field: str,
        payload: Optional[Dict[str, Any]] = None,
    ):
        """Create a new MissingAlternateKeyError instance.

        Args:
        ----
            collection (str): The target collection of the offending operation.
            key_field (str): The alternate-key field that was missing or null.
            payload (Optional[Dict[str, Any]]): The offending payload, for logging.

        """
        self.collection = collection
        self.key_field = key_field
        self.payload = payload or {}
        super().__init__(
            f"Alternate key '{key_field}' is missing or null for collection '{collection}'"
        )


class BatchExecutionError(Exception):
    """Raised when a batch reaches a terminal failure after the retry policy gave up."""

    def __init__(self, result: "BatchExecutionResult", message: Optional[str] = None):
        """Create a new BatchExecutionError instance.

        Args:
        ----
            result (BatchExecutionResult): The final result returned by the retry policy.
            message (Optional[str]): Optional override of the error message.

        """
        self.result = result
        super().__init__(
            message
            or (
                f"CRM batch failed. Throttled={result.is_throttled}, "
                f"Error={result.error_message or 'n/a'}"
            )
        )


class BatchCancelledError(Exception):
    """Raised when a cancellation signal is observed between or during attempts."""

    pass


class TokenAcquisitionError(Exception):
    """Raised when the identity endpoint does not return a usable access token."""

    def __init__(self, status_code: Optional[int], detail: str):
        """Create a new TokenAcquisitionError instance.

        Args:
        ----
            status_code (Optional[int]): HTTP status of the token response, if any.
            detail (str): Response body or reason.

        """
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Token request failed: {status_code} - {detail}")
