# world_info_exceptions.py
# Description: Exception classes for card normalization, the world book store and activation
#
# Imports
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from loguru import logger

#######################################################################################################################
#
# Error Codes
#######################################################################################################################

class WorldInfoErrorCode(Enum):
    """Standardized error codes for the world-info module."""

    # Card import (CARD_xxx)
    CARD_UNRECOGNIZED_SCHEMA = "CARD_001"

    # Entries (ENTRY_xxx)
    ENTRY_INVALID = "ENTRY_001"
    ENTRY_DUPLICATE_ID = "ENTRY_002"
    ENTRY_NOT_FOUND = "ENTRY_003"

    # Books (BOOK_xxx)
    BOOK_NOT_FOUND = "BOOK_001"
    BOOK_CONFLICT = "BOOK_002"

#######################################################################################################################
#
# Base Exception Class
#######################################################################################################################

class WorldInfoError(Exception):
    """
    Base exception class for all world-info errors.
    Carries a code and structured details for logging.
    """

    def __init__(
        self,
        code: WorldInfoErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(message)

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for structured logging."""
        return {
            "error_code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
            "cause": str(self.cause) if self.cause else None,
            "cause_type": type(self.cause).__name__ if self.cause else None,
        }

    def log(self, level: str = "error"):
        """
        Log the exception with full context.

        Args:
            level: Log level (debug, info, warning, error, critical)
        """
        logger.bind(**self.to_log_dict()).log(
            level.upper(), f"World-info error: {self.code.value} - {self.message}"
        )

#######################################################################################################################
#
# Specific Exception Classes
#######################################################################################################################

class UnrecognizedSchema(WorldInfoError):
    """A card document matches none of the known shapes. Import is aborted."""

    def __init__(self, message: str, details: Optional[Dict] = None, cause: Optional[Exception] = None):
        super().__init__(
            code=WorldInfoErrorCode.CARD_UNRECOGNIZED_SCHEMA,
            message=message,
            details=details,
            cause=cause,
        )


class InvalidEntry(WorldInfoError):
    """
    A single entry has rules that cannot be matched.

    During activation this is never raised: the entry is neutralized and the
    error is logged and recorded on the plan.
    """

    def __init__(
        self,
        message: str,
        entry_id: Optional[Union[int, str]] = None,
        book: Optional[str] = None,
        reasons: Optional[List[str]] = None,
    ):
        details: Dict[str, Any] = {"entry_id": entry_id, "book": book}
        if reasons:
            details["reasons"] = list(reasons)
        self.entry_id = entry_id
        self.book = book
        self.reasons = list(reasons or [])
        super().__init__(
            code=WorldInfoErrorCode.ENTRY_INVALID,
            message=message,
            details=details,
        )


class DuplicateEntryError(WorldInfoError):
    """An edit would give two entries of one book the same id."""

    def __init__(self, book: str, entry_id: Union[int, str]):
        self.book = book
        self.entry_id = entry_id
        super().__init__(
            code=WorldInfoErrorCode.ENTRY_DUPLICATE_ID,
            message=f"Entry id {entry_id!r} already exists in book '{book}'",
            details={"book": book, "entry_id": entry_id},
        )


class EntryNotFoundError(WorldInfoError):
    def __init__(self, book: str, entry_id: Union[int, str]):
        self.book = book
        self.entry_id = entry_id
        super().__init__(
            code=WorldInfoErrorCode.ENTRY_NOT_FOUND,
            message=f"Entry {entry_id!r} not found in book '{book}'",
            details={"book": book, "entry_id": entry_id},
        )


class BookNotFoundError(WorldInfoError):
    def __init__(self, name: str, scope: Optional[str] = None):
        self.name = name
        self.scope = scope
        super().__init__(
            code=WorldInfoErrorCode.BOOK_NOT_FOUND,
            message=f"World book '{name}' not found" + (f" in {scope} scope" if scope else ""),
            details={"name": name, "scope": scope},
        )


class BookConflictError(WorldInfoError):
    def __init__(self, name: str, scope: Optional[str] = None):
        self.name = name
        self.scope = scope
        super().__init__(
            code=WorldInfoErrorCode.BOOK_CONFLICT,
            message=f"World book '{name}' already exists" + (f" in {scope} scope" if scope else ""),
            details={"name": name, "scope": scope},
        )


class RecursionLimitReached(Warning):
    """Informational: recursive scanning stopped at the configured round cap."""

    def __init__(self, limit: int, rounds_run: int):
        self.limit = limit
        self.rounds_run = rounds_run
        super().__init__(
            f"Recursive scanning stopped after {limit} recursive round(s); "
            f"further triggers were not evaluated"
        )


__all__ = [
    "WorldInfoErrorCode",
    "WorldInfoError",
    "UnrecognizedSchema",
    "InvalidEntry",
    "DuplicateEntryError",
    "EntryNotFoundError",
    "BookNotFoundError",
    "BookConflictError",
    "RecursionLimitReached",
]
