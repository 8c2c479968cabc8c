"""
Message-signing authentication.

A client proves control of an account by signing a login message with its
Ed25519 key. The message is canonical JSON:

    {"address": "0x...", "public_key": "<b64>", "nonce": "...", "issued_at": "...Z"}

The address must be derived from the public key (last 20 bytes of its
SHA-256), the nonce must not have been seen before and the message must be
recent. A verified login yields a session token, kept server-side until
it expires; later requests present it as a bearer token and are
attributed to the account that logged in. The lifecycle core treats the
resulting identity as opaque.
"""

import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Set, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from . import config
from .clock import Clock, SystemClock
from .errors import AuthenticationError, ValidationError
from .hashing import canonicalize
from .identifiers import normalize_address
from .util import b64d, b64e, generate_id, mask_sensitive, parse_utc_iso, utc_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedIdentity:
    address: str
    session_token: str


class Authenticator(ABC):
    """Interface for verifying a signed login message."""

    @abstractmethod
    def verify(self, message: str, signature_b64: str) -> AuthenticatedIdentity:
        """
        Raises:
            ValidationError: if the message or signature is not acceptable
        """
        pass

    @abstractmethod
    def authenticate(self, session_token: str) -> AuthenticatedIdentity:
        """
        Identity behind a session token issued by verify().

        Raises:
            AuthenticationError: unknown or expired token
        """
        pass

    @abstractmethod
    def revoke(self, session_token: str) -> bool:
        pass


def address_for_key(public_key: bytes) -> str:
    """Account address of an Ed25519 verify key."""
    return "0x" + hashlib.sha256(bytes(public_key)).hexdigest()[-40:]


def build_login_message(signing_key: SigningKey, nonce: str, issued_at: str) -> Dict[str, Any]:
    """
    Build and sign a login message. Returns {"message", "signature"} as
    the client would send them.
    """
    public_key = bytes(signing_key.verify_key)
    body = canonicalize({
        "address": address_for_key(public_key),
        "public_key": b64e(public_key),
        "nonce": nonce,
        "issued_at": issued_at,
    }).decode("utf-8")
    return {"message": body, "signature": b64e(signing_key.sign(body.encode("utf-8")).signature)}


class Ed25519MessageAuthenticator(Authenticator):
    """Verifies Ed25519-signed login messages with nonce replay protection."""

    def __init__(
        self,
        max_age: timedelta = timedelta(minutes=5),
        clock: Optional[Clock] = None,
        session_ttl: Optional[timedelta] = None,
    ):
        self.max_age = max_age
        self.clock = clock or SystemClock()
        self.session_ttl = session_ttl or timedelta(minutes=config.SESSION_TTL_MINUTES)
        self._seen_nonces: Set[str] = set()
        self._sessions: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def verify(self, message: str, signature_b64: str) -> AuthenticatedIdentity:
        try:
            body = json.loads(message)
            public_key = b64d(body["public_key"])
            address = normalize_address(body["address"])
            nonce = str(body["nonce"])
            issued_at = parse_utc_iso(body["issued_at"])
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ValidationError(f"malformed login message: {e}")

        if address_for_key(public_key) != address:
            raise ValidationError("address does not match public key", address=address)

        try:
            VerifyKey(public_key).verify(message.encode("utf-8"), b64d(signature_b64))
        except (BadSignatureError, ValueError, TypeError):
            raise ValidationError("signature verification failed", address=address)

        now = self.clock.now()
        if issued_at > now + timedelta(seconds=30) or now - issued_at > self.max_age:
            raise ValidationError("login message expired", issued_at=utc_iso(issued_at))

        with self._lock:
            if nonce in self._seen_nonces:
                raise ValidationError("nonce already used", nonce=nonce)
            self._seen_nonces.add(nonce)

        token = generate_id(32)
        with self._lock:
            self._sessions[token] = (address, now + self.session_ttl)
        logger.info("Session %s issued for %s", mask_sensitive(token), address)
        return AuthenticatedIdentity(address=address, session_token=token)

    def authenticate(self, session_token: str) -> AuthenticatedIdentity:
        now = self.clock.now()
        with self._lock:
            session = self._sessions.get(session_token)
            if session is not None and now >= session[1]:
                del self._sessions[session_token]
                session = None
        if session is None:
            raise AuthenticationError("unknown or expired session token")
        return AuthenticatedIdentity(address=session[0], session_token=session_token)

    def revoke(self, session_token: str) -> bool:
        """End a session. Returns False if it was not active."""
        with self._lock:
            return self._sessions.pop(session_token, None) is not None
