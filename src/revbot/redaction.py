"""Helpers that keep personal data out of log lines."""

import hashlib


def fingerprint(value: str) -> str:
    """Return a short non-reversible tag for an email or other identifier."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]
