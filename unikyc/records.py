"""
UniKYC Record Model and Status State Machine

    none     --submit-->  pending
    pending  --approve--> active
    pending  --reject-->  rejected
    active   --expire-->  expired      (now > expiry_date)
    active   --submit-->  pending      (re-verification)
    expired  --submit-->  pending
    rejected --submit-->  pending

Status is evaluated, not merely stored: evaluate_status(record, now) is
the single source of truth and is a pure function of its inputs.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .errors import InvalidTransition, ValidationError
from .identifiers import CanonicalIdentifier
from .threshold import ThresholdScheme
from .util import parse_utc_iso, utc_iso


class KycStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    REJECTED = "rejected"


class KycEvent(str, Enum):
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    EXPIRE = "expire"


TRANSITIONS: Dict[tuple, KycStatus] = {
    (KycStatus.NONE, KycEvent.SUBMIT): KycStatus.PENDING,
    (KycStatus.PENDING, KycEvent.APPROVE): KycStatus.ACTIVE,
    (KycStatus.PENDING, KycEvent.REJECT): KycStatus.REJECTED,
    (KycStatus.ACTIVE, KycEvent.EXPIRE): KycStatus.EXPIRED,
    (KycStatus.ACTIVE, KycEvent.SUBMIT): KycStatus.PENDING,
    (KycStatus.EXPIRED, KycEvent.SUBMIT): KycStatus.PENDING,
    (KycStatus.REJECTED, KycEvent.SUBMIT): KycStatus.PENDING,
}

# Only these states may ever release decrypted data.
RELEASABLE = frozenset({KycStatus.ACTIVE, KycStatus.EXPIRED})


def next_status(current: KycStatus, event: KycEvent) -> KycStatus:
    """
    Apply ``event`` to ``current``.

    Raises:
        InvalidTransition: if the pair is not in TRANSITIONS
    """
    try:
        return TRANSITIONS[(KycStatus(current), KycEvent(event))]
    except KeyError:
        raise InvalidTransition(
            f"cannot {KycEvent(event).value} a record in status '{KycStatus(current).value}'",
            status=KycStatus(current).value,
            event=KycEvent(event).value,
        )


@dataclass(frozen=True)
class TimeLock:
    unlock_block_height: int
    request_id: str
    chain_id: int
    decrypted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unlock_block_height": self.unlock_block_height,
            "request_id": self.request_id,
            "chain_id": self.chain_id,
            "decrypted": self.decrypted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeLock":
        return cls(
            unlock_block_height=int(data["unlock_block_height"]),
            request_id=str(data["request_id"]),
            chain_id=int(data["chain_id"]),
            decrypted=bool(data.get("decrypted", False)),
        )


@dataclass(frozen=True)
class KycRecord:
    """
    One subject's verification state.

    Instances are immutable snapshots; the record store produces new
    snapshots with dataclasses.replace() and is the only writer.
    """
    id: str
    identifier: CanonicalIdentifier
    status: KycStatus
    created_at: datetime
    threshold_scheme: ThresholdScheme
    encrypted_payload_ref: str
    last_verified_at: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    time_lock: Optional[TimeLock] = None
    superseded_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.expiry_date is not None and self.last_verified_at is not None:
            if self.expiry_date < self.last_verified_at:
                raise ValidationError(
                    "expiry_date must not precede last_verified_at",
                    record_id=self.id,
                )

    @property
    def is_current(self) -> bool:
        return self.superseded_by is None

    def with_changes(self, **changes: Any) -> "KycRecord":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "identifier": self.identifier.to_dict(),
            "status": self.status.value,
            "created_at": utc_iso(self.created_at),
            "last_verified_at": utc_iso(self.last_verified_at) if self.last_verified_at else None,
            "expiry_date": utc_iso(self.expiry_date) if self.expiry_date else None,
            "threshold_scheme": self.threshold_scheme.to_dict(),
            "encrypted_payload_ref": self.encrypted_payload_ref,
            "time_lock": self.time_lock.to_dict() if self.time_lock else None,
            "superseded_by": self.superseded_by,
            "rejection_reason": self.rejection_reason,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KycRecord":
        return cls(
            id=data["id"],
            identifier=CanonicalIdentifier.from_dict(data["identifier"]),
            status=KycStatus(data["status"]),
            created_at=parse_utc_iso(data["created_at"]),
            last_verified_at=parse_utc_iso(data["last_verified_at"]) if data.get("last_verified_at") else None,
            expiry_date=parse_utc_iso(data["expiry_date"]) if data.get("expiry_date") else None,
            threshold_scheme=ThresholdScheme.from_dict(data["threshold_scheme"]),
            encrypted_payload_ref=data["encrypted_payload_ref"],
            time_lock=TimeLock.from_dict(data["time_lock"]) if data.get("time_lock") else None,
            superseded_by=data.get("superseded_by"),
            rejection_reason=data.get("rejection_reason"),
            metadata=dict(data.get("metadata") or {}),
        )


def evaluate_status(record: Optional[KycRecord], now: datetime) -> KycStatus:
    """
    Effective status of ``record`` at ``now``.

    An ``active`` record whose expiry date has passed is ``expired``
    regardless of what is stored. A missing record is ``none``.
    """
    if record is None:
        return KycStatus.NONE
    if (
        record.status == KycStatus.ACTIVE
        and record.expiry_date is not None
        and now > record.expiry_date
    ):
        return KycStatus.EXPIRED
    return record.status


def can_release(record: KycRecord, now: datetime) -> bool:
    """True if the payload of ``record`` may be combined at ``now``."""
    return (
        evaluate_status(record, now) in RELEASABLE
        and record.time_lock is not None
        and record.time_lock.decrypted
    )


@dataclass(frozen=True)
class StatusReport:
    """Result of a status check."""
    has_kyc: bool
    status: KycStatus
    record: Optional[KycRecord] = None

    def to_public_dict(self) -> Dict[str, Any]:
        """
        The query surface outer layers may depend on:
        {has_kyc, status, last_verified?, expiry_date?, ens_name?, address?}
        """
        d: Dict[str, Any] = {"has_kyc": self.has_kyc, "status": self.status.value}
        if self.record is not None:
            if self.record.last_verified_at:
                d["last_verified"] = utc_iso(self.record.last_verified_at)
            if self.record.expiry_date:
                d["expiry_date"] = utc_iso(self.record.expiry_date)
            if self.record.identifier.name:
                d["ens_name"] = self.record.identifier.name
            d["address"] = self.record.identifier.address
        return d
