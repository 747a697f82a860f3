"""Contextual logging for the CRM sync core.

Every component logs through a ContextualLogger so that batch, collection and
attempt dimensions travel with each record without being repeated in messages.
"""

import logging
import sys
from typing import Any, MutableMapping, Optional, Tuple

from crmsync.core.config import settings


class _DimensionFormatter(logging.Formatter):
    """Appends the record's context dimensions as ``[key=value ...]``."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        dimensions = getattr(record, "dimensions", None)
        if dimensions:
            rendered = " ".join(f"{k}={v}" for k, v in dimensions.items())
            message = f"{message} [{rendered}]"
        return message


class ContextualLogger(logging.LoggerAdapter):
    """Logger adapter carrying a dictionary of context dimensions."""

    def __init__(self, logger: logging.Logger, dimensions: Optional[dict] = None):
        super().__init__(logger, {})
        self.dimensions = dict(dimensions or {})

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping]:
        extra = dict(kwargs.get("extra") or {})
        extra["dimensions"] = {**self.dimensions, **extra.get("dimensions", {})}
        kwargs["extra"] = extra
        return msg, kwargs

    def with_context(self, **dimensions: Any) -> "ContextualLogger":
        """Return a child logger with additional dimensions.

        Args:
            **dimensions: Key/value pairs rendered on every record

        Returns:
            New ContextualLogger sharing the underlying logger
        """
        return ContextualLogger(self.logger, {**self.dimensions, **dimensions})


class LoggerConfigurator:
    """Builds the root crmsync logger once per process."""

    _configured = False

    @classmethod
    def configure_logger(cls, name: str, level: Optional[str] = None) -> ContextualLogger:
        """Create (or reuse) a configured logger.

        Args:
            name: Logger name
            level: Optional level override; defaults to settings.LOG_LEVEL

        Returns:
            ContextualLogger wrapping the named logger
        """
        base = logging.getLogger(name)
        if not cls._configured:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(
                _DimensionFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
            base.addHandler(handler)
            base.propagate = False
            cls._configured = True
        base.setLevel((level or settings.LOG_LEVEL).upper())
        return ContextualLogger(base)


logger = LoggerConfigurator.configure_logger("crmsync")
