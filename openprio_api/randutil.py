"""Random strings for passcodes and access tokens."""

from __future__ import annotations

import secrets
import string

ALPHANUMERIC = string.ascii_lowercase + string.ascii_uppercase + string.digits
DIGITS = string.digits


def string_with_charset(length: int, charset: str) -> str:
    """Return ``length`` characters drawn uniformly at random from ``charset``."""
    if length < 0:
        raise ValueError("length must not be negative")
    if length and not charset:
        raise ValueError("charset must not be empty")
    return "".join(secrets.choice(charset) for _ in range(length))


def random_string(length: int) -> str:
    """Return a random string of ASCII letters and digits."""
    return string_with_charset(length, ALPHANUMERIC)


def random_number(length: int) -> str:
    """Return a random string of decimal digits."""
    return string_with_charset(length, DIGITS)