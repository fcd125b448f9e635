"""RFC 6238 time-based one-time passwords (HMAC-SHA1)."""

from __future__ import annotations

import hashlib
import hmac
import struct
import time

BASE32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"

DEFAULT_PERIOD = 30
DEFAULT_DIGITS = 6


def base32_decode(secret: str) -> bytes:
    """Decode a base32 secret leniently.

    Case, whitespace and ``=`` padding are ignored, as are characters
    outside the alphabet; authenticator apps print secrets in all of
    these shapes.
    """
    bits = 0
    value = 0
    out = bytearray()
    for char in secret.upper():
        index = BASE32_ALPHABET.find(char)
        if index < 0:
            continue
        value = (value << 5) | index
        bits += 5
        if bits >= 8:
            bits -= 8
            out.append((value >> bits) & 0xFF)
    return bytes(out)


def hotp(key: bytes, counter: int, digits: int = DEFAULT_DIGITS) -> str:
    """Counter-based code with dynamic truncation (RFC 4226)."""
    digest = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code = struct.unpack(">I", digest[offset:offset + 4])[0] & 0x7FFFFFFF
    return str(code % (10 ** digits)).zfill(digits)


def generate_totp(
    secret: str,
    period: int = DEFAULT_PERIOD,
    digits: int = DEFAULT_DIGITS,
    at: float | None = None,
) -> str:
    """Return the TOTP code for *secret* at time *at* (default: now)."""
    period = max(1, int(period))
    digits = max(1, int(digits))
    timestamp = time.time() if at is None else at
    return hotp(base32_decode(secret), int(timestamp // period), digits)
