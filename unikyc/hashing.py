"""
UniKYC Canonical Encoding and Hashing

Digests are SHA-256 with a lowercase hex body and an algorithm prefix,
e.g. "sha256:9f86d0...". Structured values are hashed over their
canonical JSON form so that equal values always produce equal digests.
"""

import hashlib
import hmac
import json
from typing import Any, Union

DIGEST_PREFIX = "sha256:"
CONTENT_ID_PREFIX = "sha256-"


def canonicalize(obj: Any) -> bytes:
    """
    Encode a JSON-compatible value as canonical JSON bytes.

    Keys sorted, no insignificant whitespace, UTF-8 without escaping.
    Bytes are not JSON; callers hex- or base64-encode them first.
    """
    _check_encodable(obj)
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def _check_encodable(value: Any) -> None:
    if value is None or isinstance(value, (bool, int, float, str)):
        return
    if isinstance(value, dict):
        for k, v in value.items():
            if not isinstance(k, str):
                raise ValueError(f"Cannot canonicalize non-string key: {k!r}")
            _check_encodable(v)
        return
    if isinstance(value, (list, tuple)):
        for item in value:
            _check_encodable(item)
        return
    raise ValueError(f"Cannot canonicalize type: {type(value)}")


def sha256_hash(data: Union[bytes, str]) -> str:
    """Return the prefixed SHA-256 digest of ``data``."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return DIGEST_PREFIX + hashlib.sha256(data).hexdigest()


def content_id(data: bytes) -> str:
    """
    Content address for a blob.

    Used by stores that have no native addressing scheme of their own
    (in-memory, S3). Gateway-backed stores return the id minted remotely.
    """
    return CONTENT_ID_PREFIX + hashlib.sha256(data).hexdigest()


def verify_digest(declared: str, data: Union[bytes, str]) -> bool:
    """
    Recompute the digest of ``data`` and compare in constant time.

    Unknown prefixes never verify.
    """
    if not isinstance(declared, str) or not declared.startswith(DIGEST_PREFIX):
        return False
    return hmac.compare_digest(sha256_hash(data), declared)
