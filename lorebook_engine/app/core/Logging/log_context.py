"""
Lightweight logging context helpers for propagating activation identifiers.

Usage:

    from lorebook_engine.app.core.Logging.log_context import log_context, new_activation_id

    with log_context(activation_id=new_activation_id(), conversation_id=chat_id) as log:
        log.info("Scanning world info")
        ...

The context manager both contextualizes the base logger (so nested logs inherit
the fields) and returns a bound logger for convenience.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator
import uuid

from loguru import logger


def new_activation_id() -> str:
    """Return a new opaque activation identifier (hex)."""
    return uuid.uuid4().hex


@contextmanager
def log_context(**fields: Any) -> Iterator[Any]:
    """Context manager that sets structured logging fields and yields a bound logger.

    Fields whose value is None are dropped.
    """
    clean = {k: v for k, v in fields.items() if v is not None}
    with logger.contextualize(**clean):
        bound = logger.bind(**clean)
        yield bound
