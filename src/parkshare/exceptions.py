"""Custom exception hierarchy for parkshare."""

from __future__ import annotations


class ParkShareError(Exception):
    """Base exception for all parkshare errors."""


class ParkShareConfigError(ParkShareError):
    """Invalid or missing configuration."""


class ParkShareValidationError(ParkShareError):
    """Input failed validation.  Not retryable; the caller must fix the input."""

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


class ParkSharePermissionError(ParkShareError):
    """Caller is not allowed to perform the operation (e.g. not the owner)."""


class ParkShareNotFoundError(ParkShareError):
    """Requested document does not exist."""

    def __init__(
        self,
        message: str,
        *,
        collection: str = "",
        doc_id: str = "",
    ) -> None:
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(message)


class ParkShareConflictError(ParkShareError):
    """Operation lost against concurrent or existing state.

    Retryable after a fresh read.  Never retried automatically for claims.
    """


class ParkShareTransactionConflictError(ParkShareConflictError):
    """A document read inside a transaction changed before commit."""


class ActiveLeavingSoonSpotError(ParkShareConflictError):
    """The owner already holds an active Leaving Soon spot."""

    def __init__(self, owner_id: str, spot_id: str = "") -> None:
        self.owner_id = owner_id
        self.spot_id = spot_id
        super().__init__("You already have an active Leaving Soon pin.")


class ParkShareExpiredError(ParkShareError):
    """Spot lease has elapsed.  Terminal for that spot."""

    def __init__(self, spot_id: str, expires_at: int) -> None:
        self.spot_id = spot_id
        self.expires_at = expires_at
        super().__init__(f"Spot {spot_id} expired at {expires_at}")


class ParkShareTransientStoreError(ParkShareError):
    """Backend hiccup (timeout, unavailable).  Retry with backoff."""


class ParkShareTransportError(ParkShareError):
    """Notification delivery failure (network, non-2xx, broker)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)
