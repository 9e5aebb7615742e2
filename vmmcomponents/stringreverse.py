"""Reverse a NUL-terminated string held in a fixed-size dataport."""

from __future__ import annotations

STRING_REVERSE_BUFSIZE = 8192
"""Size of the source and destination dataports, in bytes."""


def reverse_dataport_string(src: bytes, size: int = STRING_REVERSE_BUFSIZE) -> bytes:
    """Return the string in ``src`` reversed and NUL-terminated.

    The string ends at the first NUL byte, or after ``size - 1`` bytes so
    that the terminator still fits in a buffer of ``size`` bytes.
    """
    if size < 1:
        raise ValueError("buffer size must be at least 1")
    limit = bytes(src[:size - 1])
    nul = limit.find(b"\0")
    text = limit if nul < 0 else limit[:nul]
    return text[::-1] + b"\0"