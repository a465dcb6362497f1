# services/docflow-service/docflow/core/errors.py
from __future__ import annotations


class DocflowError(Exception):
    """Base class for errors raised by the docflow engine."""


class SchemaError(DocflowError):
    """A schema declaration or view marker could not be understood."""


class InvalidInstructionError(DocflowError):
    """A field instruction opcode is malformed."""

    def __init__(self, field: str, opcode: str) -> None:
        super().__init__(f"Invalid instruction {opcode!r} for field {field!r}")
        self.field = field
        self.opcode = opcode


class CancelThenRetryError(DocflowError):
    """
    Raised when a synthetic action asked to be cancelled and retried later.
    Only the retry scheduler is expected to catch it.
    """

    def __init__(self, event_id: str, message: str = "") -> None:
        super().__init__(message or f"Action {event_id} requested cancel-then-retry")
        self.event_id = event_id
