"""Shared utility functions for Techne."""

from __future__ import annotations

import hashlib

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token estimate (chars / 4), never negative."""
    return len(text) // CHARS_PER_TOKEN


def fingerprint(content: str | bytes) -> str:
    """SHA-256 hex digest of file content.

    Text is hashed as UTF-8 so the same file read back as str or bytes
    yields the same fingerprint.
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()
