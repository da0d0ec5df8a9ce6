"""Timestamped HMAC-SHA256 signatures for webhook envelopes.

The header format is ``t=<unix_ts>,v1=<hex_digest>`` where the digest is
computed over ``"<unix_ts>." + payload``.  Binding the timestamp into the
signed material means a captured request can only be replayed inside the
tolerance window.  Several ``v1`` entries may be present while a secret is
being rotated; any one of them matching is sufficient.

All functions are pure and safe to call concurrently.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass

from sync_core.errors import (
    InvalidSignatureError,
    MalformedSignatureError,
    StaleSignatureError,
)

SIGNATURE_HEADER = "x-webhook-signature"
EVENT_HEADER = "x-webhook-event"
DELIVERY_ID_HEADER = "x-webhook-id"

DEFAULT_TOLERANCE_SECONDS = 300

_SCHEME = "v1"


@dataclass(frozen=True)
class SignatureHeader:
    """Parsed contents of a signature header."""

    timestamp: int
    signatures: tuple[str, ...]


def _as_bytes(value: bytes | str) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def compute_signature(payload: bytes | str, secret: bytes | str, timestamp: int) -> str:
    """Return the hex HMAC-SHA256 of ``"<timestamp>." + payload``."""
    signed = str(timestamp).encode("ascii") + b"." + _as_bytes(payload)
    return hmac.new(_as_bytes(secret), signed, hashlib.sha256).hexdigest()


def sign(payload: bytes | str, secret: bytes | str, timestamp: int) -> str:
    """Build the signature header value for *payload* at *timestamp*."""
    return f"t={timestamp},{_SCHEME}={compute_signature(payload, secret, timestamp)}"


def parse_signature_header(header: str | None) -> SignatureHeader:
    """Parse ``t=...,v1=...`` into a :class:`SignatureHeader`.

    Raises
    ------
    MalformedSignatureError
        If the header is empty, lacks a timestamp or ``v1`` entry, or the
        timestamp is not an integer.
    """
    if not header:
        raise MalformedSignatureError("Missing signature header")

    timestamp: str | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == _SCHEME and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise MalformedSignatureError("Signature header must contain t= and v1= entries")
    try:
        ts = int(timestamp)
    except ValueError:
        raise MalformedSignatureError("Signature timestamp is not an integer") from None
    return SignatureHeader(timestamp=ts, signatures=tuple(signatures))


def verify(
    payload: bytes | str,
    header: str | None,
    secret: bytes | str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    *,
    now: int | None = None,
) -> bool:
    """Verify a signature header against *payload*.

    Returns ``True`` when verification succeeds.  Every failure raises one
    of :class:`MalformedSignatureError`, :class:`StaleSignatureError` or
    :class:`InvalidSignatureError` so the caller can report a precise
    reason.  ``now`` defaults to the current epoch second.
    """
    parsed = parse_signature_header(header)

    current = int(time.time()) if now is None else now
    if abs(current - parsed.timestamp) > tolerance_seconds:
        raise StaleSignatureError(
            f"Signature timestamp {parsed.timestamp} is outside the {tolerance_seconds}s tolerance"
        )

    expected = compute_signature(payload, secret, parsed.timestamp).encode("ascii")
    # Check every candidate so the comparison time does not depend on position.
    matched = False
    for candidate in parsed.signatures:
        if hmac.compare_digest(expected, candidate.encode("utf-8")):
            matched = True
    if not matched:
        raise InvalidSignatureError("Signature does not match payload")
    return True
