"""Error taxonomy.

Every failure surfaced to a caller is a :class:`ReadPrepError`. The CLI turns
these into a one-line message and a non-zero exit code.
"""

from __future__ import annotations

from typing import Any, Optional


class ReadPrepError(RuntimeError):
    """Base class for all readprep failures."""


class IngestionError(ReadPrepError):
    """Raised when a source is unreadable, corrupt, or holds malformed records."""

    def __init__(self, message: str, *, source: Optional[str] = None, record: Optional[str] = None) -> None:
        super().__init__(message)
        self.source = source
        self.record = record


class SchemaError(ReadPrepError):
    """Raised when stored data is not an additive evolution of the current schema."""

    def __init__(self, message: str, *, source: Optional[str] = None, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.source = source
        self.field = field


class ConfigurationError(ReadPrepError):
    """Raised for invalid or contradictory pipeline options, before any work starts."""

    def __init__(self, message: str, *, option: Optional[str] = None) -> None:
        super().__init__(message)
        self.option = option


class StageError(ReadPrepError):
    """Raised when a pipeline stage fails; aborts the whole run."""

    def __init__(self, message: str, *, stage: str, record: Optional[str] = None) -> None:
        full = f"Stage '{stage}' failed: {message}"
        if record is not None:
            full += f" (record: {record})"
        super().__init__(full)
        self.stage = stage
        self.record = record


class TransformError(ReadPrepError):
    """Raised by a collection action when a user function throws.

    ``item`` is the element being processed when the function failed, if known.
    """

    def __init__(self, message: str, *, item: Any = None) -> None:
        super().__init__(message)
        self.item = item
