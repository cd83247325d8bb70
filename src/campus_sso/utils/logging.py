"""Log-safe rendering of secrets."""

from __future__ import annotations


def mask_sensitive(value: str | None, keep_chars: int = 4) -> str:
    """Return *value* with everything after the first *keep_chars* masked.

    >>> mask_sensitive("abcdef123456", 4)
    'abcd****'
    """
    if not value:
        return "<empty>"
    if len(value) <= keep_chars:
        return "*" * len(value)
    return value[:keep_chars] + "****"
