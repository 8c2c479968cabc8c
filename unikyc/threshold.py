"""
UniKYC Threshold Cipher

K-of-N threshold encryption of a KYC payload.

The payload is sealed once under a fresh 32-byte key with
XSalsa20-Poly1305 (nacl.secret.SecretBox). The key, never the payload, is
split with Shamir secret sharing over GF(2^8): any K shares rebuild it,
fewer than K reveal nothing about it. Each share is

    share = index (1 byte, 1..N) || key share (32 bytes)

and is recorded by digest at encryption time, so a tampered or foreign
share is rejected before it is ever combined.

Plaintext and the combined key exist only inside encrypt()/decrypt().
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Sequence, Tuple

import nacl.exceptions
import nacl.secret
import nacl.utils

from .errors import CipherError
from .hashing import sha256_hash, verify_digest

MAX_TOTAL_SHARES = 255
MIN_REQUIRED_SHARES = 2
KEY_SIZE = nacl.secret.SecretBox.KEY_SIZE
SHARE_SIZE = 1 + KEY_SIZE


# =============================================================================
# GF(2^8) ARITHMETIC
# =============================================================================

def _build_tables() -> Tuple[List[int], List[int]]:
    # Generator 3 over the AES polynomial x^8 + x^4 + x^3 + x + 1.
    exp = [0] * 512
    log = [0] * 256
    x = 1
    for i in range(255):
        exp[i] = x
        log[x] = i
        x ^= (x << 1) ^ (0x11B if x & 0x80 else 0)
        x &= 0xFF
    for i in range(255, 512):
        exp[i] = exp[i - 255]
    return exp, log


_EXP, _LOG = _build_tables()


def _gf_mul(a: int, b: int) -> int:
    if a == 0 or b == 0:
        return 0
    return _EXP[_LOG[a] + _LOG[b]]


def _gf_div(a: int, b: int) -> int:
    if b == 0:
        raise ZeroDivisionError("division by zero in GF(256)")
    if a == 0:
        return 0
    return _EXP[(_LOG[a] - _LOG[b]) % 255]


def _eval_poly(coeffs: Sequence[int], x: int) -> int:
    """Horner evaluation; coeffs[0] is the constant term."""
    y = 0
    for c in reversed(coeffs):
        y = _gf_mul(y, x) ^ c
    return y


def split_secret(secret: bytes, total: int, required: int) -> List[bytes]:
    """
    Shamir-split ``secret`` into ``total`` shares, any ``required`` of
    which reconstruct it. Returned shares carry their index as byte 0.
    """
    randomness = nacl.utils.random(len(secret) * (required - 1))
    shares = [bytearray([i]) for i in range(1, total + 1)]
    for pos, byte in enumerate(secret):
        start = pos * (required - 1)
        coeffs = [byte] + list(randomness[start:start + required - 1])
        for share in shares:
            share.append(_eval_poly(coeffs, share[0]))
    return [bytes(s) for s in shares]


def combine_secret(shares: Sequence[bytes]) -> bytes:
    """Lagrange interpolation at x = 0 over shares with distinct indexes."""
    xs = [s[0] for s in shares]
    length = len(shares[0]) - 1
    out = bytearray(length)
    for j, share_j in enumerate(shares):
        basis = 1
        for m, x_m in enumerate(xs):
            if m != j:
                basis = _gf_mul(basis, _gf_div(x_m, x_m ^ xs[j]))
        for pos in range(length):
            out[pos] ^= _gf_mul(share_j[pos + 1], basis)
    return bytes(out)


# =============================================================================
# SCHEME AND RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class ThresholdScheme:
    """
    K-of-N configuration.

    ``share_digests`` is empty when the scheme is only a request for
    encryption; encrypt() returns a copy with all N digests filled in.
    """
    total_shares: int
    required_shares: int
    share_digests: Tuple[str, ...] = field(default_factory=tuple)

    def validate(self, require_digests: bool = False) -> None:
        """Raise CipherError(INVALID_SCHEME) if the configuration is unusable."""
        n, k = self.total_shares, self.required_shares
        if not isinstance(n, int) or not isinstance(k, int):
            raise CipherError("share counts must be integers", CipherError.INVALID_SCHEME)
        if n < 1 or n > MAX_TOTAL_SHARES:
            raise CipherError(
                f"total_shares must be between 1 and {MAX_TOTAL_SHARES}",
                CipherError.INVALID_SCHEME,
                total_shares=n,
            )
        if k < MIN_REQUIRED_SHARES:
            raise CipherError(
                "required_shares must be at least 2; a 1-of-N scheme offers no confidentiality",
                CipherError.INVALID_SCHEME,
                required_shares=k,
            )
        if k > n:
            raise CipherError(
                "required_shares cannot exceed total_shares",
                CipherError.INVALID_SCHEME,
                total_shares=n,
                required_shares=k,
            )
        if require_digests and len(self.share_digests) != n:
            raise CipherError(
                f"expected {n} share digests, got {len(self.share_digests)}",
                CipherError.INVALID_SCHEME,
            )

    @property
    def label(self) -> str:
        return f"{self.required_shares}-of-{self.total_shares}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_shares": self.total_shares,
            "required_shares": self.required_shares,
            "share_digests": list(self.share_digests),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThresholdScheme":
        return cls(
            total_shares=int(data["total_shares"]),
            required_shares=int(data["required_shares"]),
            share_digests=tuple(data.get("share_digests", ())),
        )


FIVE_OF_FIVE = ThresholdScheme(total_shares=5, required_shares=5)
THREE_OF_FIVE = ThresholdScheme(total_shares=5, required_shares=3)
TWO_OF_FIVE = ThresholdScheme(total_shares=5, required_shares=2)

PRESETS: Dict[str, ThresholdScheme] = {
    s.label: s for s in (FIVE_OF_FIVE, THREE_OF_FIVE, TWO_OF_FIVE)
}


@dataclass(frozen=True)
class ThresholdEncryption:
    """Output of ThresholdCipher.encrypt."""
    ciphertext: bytes
    shares: Tuple[bytes, ...]
    scheme: ThresholdScheme

    @property
    def digests(self) -> Tuple[str, ...]:
        return self.scheme.share_digests


# =============================================================================
# CIPHER
# =============================================================================

class ThresholdCipher:
    """
    Stateless K-of-N threshold cipher.

    Usage:
        cipher = ThresholdCipher()
        enc = cipher.encrypt(b"payload", THREE_OF_FIVE)
        plaintext = cipher.decrypt(enc.shares[:3], enc.scheme, enc.ciphertext)
    """

    def encrypt(self, plaintext: bytes, scheme: ThresholdScheme) -> ThresholdEncryption:
        """
        Seal ``plaintext`` and split the key into ``scheme.total_shares`` shares.

        Raises:
            CipherError: INVALID_SCHEME
        """
        scheme.validate()
        if not isinstance(plaintext, (bytes, bytearray)):
            raise CipherError("plaintext must be bytes", CipherError.INVALID_SCHEME)

        key = nacl.utils.random(KEY_SIZE)
        ciphertext = bytes(nacl.secret.SecretBox(key).encrypt(bytes(plaintext)))
        shares = split_secret(key, scheme.total_shares, scheme.required_shares)
        digests = tuple(sha256_hash(s) for s in shares)

        return ThresholdEncryption(
            ciphertext=ciphertext,
            shares=tuple(shares),
            scheme=replace(scheme, share_digests=digests),
        )

    def verify_share(self, share: bytes, scheme: ThresholdScheme) -> bool:
        """True if ``share`` is one of the shares recorded in ``scheme``."""
        if not isinstance(share, (bytes, bytearray)) or len(share) != SHARE_SIZE:
            return False
        index = share[0]
        if index < 1 or index > len(scheme.share_digests):
            return False
        return verify_digest(scheme.share_digests[index - 1], bytes(share))

    def decrypt(
        self,
        shares: Iterable[bytes],
        scheme: ThresholdScheme,
        ciphertext: bytes,
    ) -> bytes:
        """
        Rebuild the key from at least K shares and open ``ciphertext``.

        Duplicate shares count once. Every supplied share must match its
        recorded digest, even when more than K are given.

        Raises:
            CipherError: INVALID_SCHEME, INSUFFICIENT_SHARES, CORRUPT_SHARE,
                CORRUPT_CIPHERTEXT
        """
        scheme.validate(require_digests=True)

        distinct: List[bytes] = []
        for share in shares:
            share = bytes(share)
            if share not in distinct:
                distinct.append(share)

        if len(distinct) < scheme.required_shares:
            raise CipherError(
                f"{scheme.label} scheme needs {scheme.required_shares} shares, got {len(distinct)}",
                CipherError.INSUFFICIENT_SHARES,
                supplied=len(distinct),
                required=scheme.required_shares,
            )

        by_index: Dict[int, bytes] = {}
        for share in distinct:
            if not self.verify_share(share, scheme):
                raise CipherError(
                    "share does not match its recorded digest",
                    CipherError.CORRUPT_SHARE,
                    index=share[0] if share else None,
                )
            by_index[share[0]] = share

        chosen = [by_index[i] for i in sorted(by_index)[: scheme.required_shares]]
        key = combine_secret(chosen)

        try:
            return bytes(nacl.secret.SecretBox(key).decrypt(bytes(ciphertext)))
        except nacl.exceptions.CryptoError:
            raise CipherError("ciphertext failed authentication", CipherError.CORRUPT_CIPHERTEXT)
