"""Subdomain derivation and validation."""

from __future__ import annotations

import re

_SUBDOMAIN_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


def subdomain_from_email(email: str) -> str:
    """Derive a subdomain from the local part of *email*.

    ``"Jane.Doe+crm@example.com"`` becomes ``"janedoecrm"``.

    Raises
    ------
    ValueError
        If the local part has no alphanumeric characters.
    """
    local = email.split("@", 1)[0].lower()
    candidate = _NON_ALNUM_RE.sub("", local)[:63]
    if not candidate:
        raise ValueError(f"Cannot derive a subdomain from email {email!r}")
    return candidate


def normalize_subdomain(subdomain: str) -> str:
    """Lower-case and validate an explicitly requested subdomain.

    Raises
    ------
    ValueError
        If the value is not a valid DNS label.
    """
    value = subdomain.strip().lower()
    if not _SUBDOMAIN_RE.match(value):
        raise ValueError(f"Invalid subdomain {subdomain!r}: use 1-63 lowercase letters, digits or hyphens")
    return value


def resolve_subdomain(email: str, subdomain: str | None) -> str:
    return normalize_subdomain(subdomain) if subdomain else subdomain_from_email(email)
