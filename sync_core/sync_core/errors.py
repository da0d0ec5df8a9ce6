"""Error taxonomy shared by the control plane and the data plane.

Every error carries a stable ``kind`` string that the HTTP layer renders
as ``{"error": kind, "detail": message}`` so callers can branch on it
without parsing messages.  ``retryable`` tells a caller whether repeating
the same request later may succeed.
"""

from __future__ import annotations


class TenantSyncError(Exception):
    """Base exception for all tenant synchronization errors."""

    kind: str = "tenant_sync_error"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.kind.replace("_", " "))

    @property
    def detail(self) -> str:
        return str(self)


# ---------------------------------------------------------------------------
# Signature errors (client errors, never retried)
# ---------------------------------------------------------------------------


class SignatureError(TenantSyncError):
    """Base class for webhook signature failures."""

    kind = "signature_error"
    status_code = 401


class MalformedSignatureError(SignatureError):
    """The signature header is missing or does not carry ``t`` and ``v1``."""

    kind = "malformed_signature"
    status_code = 400


class StaleSignatureError(SignatureError):
    """The signed timestamp is outside the accepted tolerance window."""

    kind = "stale_signature"


class InvalidSignatureError(SignatureError):
    """No supplied signature matches the recomputed HMAC."""

    kind = "invalid_signature"


# ---------------------------------------------------------------------------
# Validation errors
# ---------------------------------------------------------------------------


class MalformedEnvelopeError(TenantSyncError):
    """The webhook body is not a JSON envelope with an event type."""

    kind = "malformed_envelope"
    status_code = 400


class DuplicateSubdomainError(TenantSyncError):
    kind = "duplicate_subdomain"
    status_code = 409

    def __init__(self, subdomain: str) -> None:
        self.subdomain = subdomain
        super().__init__(f"Subdomain '{subdomain}' is already taken")


class IllegalTransitionError(TenantSyncError):
    """A lifecycle transition was requested from a state that does not allow it."""

    kind = "illegal_transition"
    status_code = 409

    def __init__(self, current: str, transition: str) -> None:
        self.current = current
        self.transition = transition
        super().__init__(f"Cannot apply '{transition}' to a tenant in state '{current}'")


class TenantNotFoundError(TenantSyncError):
    kind = "tenant_not_found"
    status_code = 404

    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f"Tenant '{reference}' not found")


# ---------------------------------------------------------------------------
# Transient and fatal infrastructure errors
# ---------------------------------------------------------------------------


class DeliveryFailureError(TenantSyncError):
    """A single webhook delivery attempt did not get a 2xx response."""

    kind = "delivery_failure"
    status_code = 502
    retryable = True


class DataPlaneError(TenantSyncError):
    """The data-plane Command API rejected or failed a forwarded command."""

    kind = "data_plane_error"
    status_code = 502

    def __init__(self, message: str, *, status_code: int | None = None, kind: str | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        if kind is not None:
            self.kind = kind


class StoreUnavailableError(TenantSyncError):
    """The durable store could not be reached; the whole request must be retried."""

    kind = "store_unavailable"
    status_code = 503
    retryable = True


class ConcurrentModificationError(TenantSyncError):
    """A record kept changing underneath a guarded update."""

    kind = "concurrent_modification"
    status_code = 409
    retryable = True
