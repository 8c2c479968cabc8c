"""
Utility functions for UniKYC.

Encoding, identifier generation, and time helpers shared across modules.
"""

import base64
import hmac
import secrets
from datetime import datetime, timezone
from typing import Union


def b64e(b: bytes) -> str:
    """Base64 encode bytes to string."""
    return base64.b64encode(b).decode("ascii")


def b64d(s: str) -> bytes:
    """Base64 decode string to bytes."""
    return base64.b64decode(s.encode("ascii"), validate=True)


def generate_id(length: int = 16) -> str:
    """Generate a cryptographically secure random hex ID."""
    return secrets.token_hex(length)


def record_id() -> str:
    return f"kyc-{generate_id(12)}"


def utc_iso(dt: datetime) -> str:
    """Render an aware datetime as RFC3339 UTC with a Z suffix."""
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_utc_iso(s: str) -> datetime:
    """Parse the output of ``utc_iso`` back to an aware datetime."""
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only the last N characters.
    Useful for logging session tokens.
    """
    if len(value) <= visible_chars:
        return "*" * len(value)
    return "*" * (len(value) - visible_chars) + value[-visible_chars:]


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """Compare two secrets in constant time. Strings are compared as UTF-8."""
    if isinstance(a, str):
        a = a.encode("utf-8")
    if isinstance(b, str):
        b = b.encode("utf-8")
    return hmac.compare_digest(a, b)
