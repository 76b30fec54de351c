"""
Compliance error hierarchy.

Validation and domain errors are final: the caller made a mistake or the
business rules rejected the request. ``ConcurrencyConflictError`` and
``StorageUnavailableError`` are retryable by the caller with backoff; nothing
in this package retries on its own.
"""


class ComplianceError(Exception):
    """Base class for every error raised by the compliance core."""

    retryable = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(ComplianceError):
    """Malformed input, e.g. a missing field or an inverted date range."""


class InvalidTransitionError(ValidationError):
    """A lifecycle transition that the state machine does not allow."""


class NotFoundError(ComplianceError):
    """A referenced driver, infringement or record does not exist in the organization."""


class DuplicateRecordError(ComplianceError):
    """A uniqueness rule was violated."""


class DuplicateRestRecordError(DuplicateRecordError):
    """A rest record already exists for the driver and date."""


class DuplicateAppealError(DuplicateRecordError):
    """The infringement already has an open appeal."""


class InvalidDeltaError(ComplianceError):
    """A points posting would take the effective balance below the floor."""


class AlreadyResolvedError(ComplianceError):
    """The infringement has already been resolved."""


class ConcurrencyConflictError(ComplianceError):
    """A conditional write lost the race against another request."""

    retryable = True


class StorageUnavailableError(ComplianceError):
    """The database timed out or could not be reached."""

    retryable = True
