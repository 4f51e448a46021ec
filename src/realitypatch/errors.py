"""Typed failures surfaced to the request layer.

Quota denial and ambiguous assignment matches are ordinary outcomes and are
returned as values; only faults live here.
"""


class RealityPatchError(Exception):
    """Base class for failures the HTTP layer maps to a structured error."""

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, retryable: bool | None = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class MalformedInputError(RealityPatchError):
    """Request is missing required fields or carries unusable values."""

    status_code = 400
    retryable = False


class PersistenceError(RealityPatchError):
    """Record store unreachable or write rejected."""

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return 503 if self.retryable else 500


class VersionConflictError(PersistenceError):
    """Conditional write lost against a concurrent update of the same record."""

    retryable = True


class GenerationError(RealityPatchError):
    """The language-model call failed."""

    status_code = 502
    retryable = True
