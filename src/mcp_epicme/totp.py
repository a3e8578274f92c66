"""Time-based one-time codes for claiming grants.

Codes follow the HOTP dynamic-truncation scheme (RFC 4226) over a
30-second time counter (RFC 6238). The HMAC message binds the code to the
grant and email it was issued for, and every call uses a fresh random
secret so that re-issuing within the same period yields a new code.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime
from typing import Optional

from .models import utc_now

DEFAULT_PERIOD = 30
DEFAULT_DIGITS = 6
DEFAULT_ALGORITHM = "sha512"

SUPPORTED_ALGORITHMS = ("sha1", "sha256", "sha512")


def time_counter(now: datetime, period: int = DEFAULT_PERIOD) -> int:
    """Number of whole periods since the Unix epoch."""
    return int(now.timestamp()) // period


def truncate(digest: bytes, digits: int = DEFAULT_DIGITS) -> str:
    """Dynamic truncation of an HMAC digest to a zero-padded decimal code."""
    offset = digest[-1] & 0x0F
    binary = int.from_bytes(digest[offset:offset + 4], "big") & 0x7FFFFFFF
    return str(binary % (10 ** digits)).zfill(digits)


def generate_totp(
    grant_id: str,
    email: str,
    *,
    secret: Optional[bytes] = None,
    now: Optional[datetime] = None,
    period: int = DEFAULT_PERIOD,
    digits: int = DEFAULT_DIGITS,
    algorithm: str = DEFAULT_ALGORITHM,
) -> str:
    """Generate a one-time code for a (grant, email) pair.

    Args:
        grant_id: Grant the code will claim
        email: Address the code is sent to
        secret: HMAC key (random per call when omitted)
        now: Current time (defaults to UTC now)
        period: Counter period in seconds
        digits: Code length
        algorithm: Hash name for the HMAC

    Returns:
        Code of exactly ``digits`` decimal characters
    """
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported TOTP algorithm: {algorithm}")
    key = secret if secret is not None else secrets.token_bytes(64)
    counter = time_counter(now or utc_now(), period)
    message = f"{grant_id}:{email.lower()}:{counter}".encode("utf-8")
    digest = hmac.new(key, message, getattr(hashlib, algorithm)).digest()
    return truncate(digest, digits)
