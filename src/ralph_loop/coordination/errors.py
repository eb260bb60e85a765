"""Error taxonomy for coordination operations.

Every fatal condition carries one human-readable message plus optional
structured details, so the CLI can render it as a single JSON document.
"""

from __future__ import annotations

from typing import Any


class CoordinationError(Exception):
    """Base class for fatal coordination failures."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details) if details else {}

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidInputError(CoordinationError):
    """Malformed step id, unsafe path, or bad flag value. Raised before any I/O."""


class StorageError(CoordinationError):
    """Unexpected filesystem failure while reading or writing coordination files."""


class CorruptionError(CoordinationError):
    """A document that must be valid could not be parsed."""


class StepNotFoundError(CoordinationError):
    """Step file does not exist."""


class StateNotInitializedError(CoordinationError):
    """Ledger does not exist in the coordination directory."""


class StateExistsError(CoordinationError):
    """Ledger already exists where a new one was requested."""


class StepLockedError(CoordinationError):
    """Step lock file is already held by another participant."""


class StepUnavailableError(CoordinationError):
    """Step is already owned or finished."""


class LockTimeoutError(CoordinationError):
    """Bounded wait for a mutex elapsed."""


class IterationLimitError(CoordinationError):
    """Iteration counter already reached the configured maximum."""


class OwnershipError(CoordinationError):
    """Caller is not the participant that owns the step."""


class LockMissingError(CoordinationError):
    """Step lock is absent, so the step was never properly claimed."""
