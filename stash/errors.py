"""Exceptions raised by the Stash service layer."""

from __future__ import annotations


class StashError(Exception):
    """Base class for every error the services raise on purpose."""


class ValidationError(StashError):
    """Raised when a URL or argument fails validation."""


class DuplicateError(StashError):
    """
    Raised when an active bookmark already exists for a URL.

    The existing record is attached so callers can fall back to it; the
    store's idempotent ``add`` does exactly that.
    """

    def __init__(self, existing) -> None:
        self.existing = existing
        super().__init__(f"Bookmark already exists for {existing.url}")


class NotFoundError(StashError):
    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Bookmark not found: {record_id}")


class RemoteUnavailableError(StashError):
    """Raised when the remote record backend cannot be reached or refuses a call."""


class ConflictError(StashError):
    """Raised when unresolved divergent edits block an operation."""

    def __init__(self, count: int) -> None:
        self.count = count
        super().__init__(f"{count} unresolved conflicts")


class ImportParseError(StashError):
    """Raised for a malformed import file or a malformed entry inside one."""

    def __init__(self, message: str, line: int | None = None) -> None:
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)
