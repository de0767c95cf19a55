# Overview: Error taxonomy shared by services, routes and the CLI.

from __future__ import annotations


class BackofficeError(Exception):
    """Base class for every error the core surfaces to callers."""

    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"error": str(self), "type": type(self).__name__}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(BackofficeError):
    """400-level input problem."""

    status_code = 400


class NotFoundError(BackofficeError):
    """Referenced document, product, store or party is absent."""

    status_code = 404


class InvalidReferenceError(NotFoundError):
    """A ledger posting references an unknown product or store."""


class InvalidStateTransitionError(BackofficeError):
    """The document's current state does not allow the requested operation."""

    status_code = 409


class AlreadyConvertedError(InvalidStateTransitionError):
    """The source has nothing left to convert into the requested target type."""


class RemainingQuantityExceededError(InvalidStateTransitionError):
    """Requested quantities exceed what remains on the source document."""


class DuplicatePostingError(BackofficeError):
    """
    Ledger idempotency key collision.

    Carries the entry that already holds the key so retries can treat the
    collision as a no-op.
    """

    status_code = 409

    def __init__(self, message: str, entry=None, details: dict | None = None):
        super().__init__(message, details)
        self.entry = entry


class AlreadyPaidError(BackofficeError):
    """Commission payout attempted twice."""

    status_code = 409


class ConcurrentModificationError(BackofficeError):
    """Optimistic lock conflict; the caller should retry the whole operation."""

    status_code = 409


class PersistenceTimeoutError(BackofficeError):
    """The database did not answer (or grant a lock) within the configured bound."""

    status_code = 503
