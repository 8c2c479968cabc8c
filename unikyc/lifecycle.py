"""
UniKYC Record Lifecycle Engine

Orchestrates a verification from submission to release:

1. resolve the identifier to a canonical account
2. seal the payload under a K-of-N threshold scheme
3. store the ciphertext in content-addressed storage
4. register a time-locked unlock for the ciphertext
5. persist the record as ``pending`` (superseding any previous one)

Nothing is persisted unless every step succeeded. A failed step leaves at
most an orphaned blob or an orphaned network registration behind, never a
record that points at them.

Later the network delivers decryption material, the engine validates it
through the coordinator and flips the record's time-lock to decrypted.
Operators approve or reject pending records; holders of at least K shares
may read the payload back once the record is releasable.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from . import config
from .blocklock import UnlockNotification
from .clock import Clock, SystemClock
from .errors import RecordNotFound, ReleaseDenied, TimeLockError, ValidationError
from .identifiers import CanonicalIdentifier, IdentifierResolver
from .logging_config import audit_log
from .records import (
    KycEvent,
    KycRecord,
    KycStatus,
    StatusReport,
    TimeLock,
    can_release,
    evaluate_status,
    next_status,
)
from .storage import ContentStore
from .store import RecordStore
from .threshold import ThresholdCipher, ThresholdScheme
from .timelock import CallbackOutcome, TimeLockCoordinator, UnlockStatus
from .util import record_id

logger = logging.getLogger(__name__)

IdentifierInput = Union[str, CanonicalIdentifier]


@dataclass(frozen=True)
class SubmissionResult:
    """
    Outcome of a successful submission.

    ``shares`` are handed to the caller exactly once and are not stored
    anywhere by the engine.
    """
    record: KycRecord
    shares: Tuple[bytes, ...]
    superseded: Optional[KycRecord] = None


class RecordLifecycleEngine:
    """
    Usage:
        engine = RecordLifecycleEngine(resolver, ThresholdCipher(), coordinator,
                                       content_store, record_store)
        result = engine.submit_verification("alice.eth", payload, THREE_OF_FIVE, height + 10)
        engine.approve(result.record.id)
        ...
        network.advance_blocks(10); network.deliver_pending()
        engine.release_payload(result.record.id, result.shares[:3])
    """

    def __init__(
        self,
        resolver: IdentifierResolver,
        cipher: ThresholdCipher,
        coordinator: TimeLockCoordinator,
        content_store: ContentStore,
        record_store: RecordStore,
        clock: Optional[Clock] = None,
        default_gas_budget: Optional[int] = None,
        validity: Optional[timedelta] = None,
        registration_retries: Optional[int] = None,
        subscribe: bool = True,
    ):
        self.resolver = resolver
        self.cipher = cipher
        self.coordinator = coordinator
        self.content_store = content_store
        self.record_store = record_store
        self.clock = clock or SystemClock()
        self.default_gas_budget = default_gas_budget or config.DEFAULT_GAS_BUDGET
        self.validity = validity or timedelta(days=config.KYC_VALIDITY_DAYS)
        self.registration_retries = (
            config.REGISTRATION_RETRIES if registration_retries is None else registration_retries
        )
        if subscribe:
            coordinator.network.subscribe(self._on_notification)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _canonical(self, identifier: IdentifierInput) -> CanonicalIdentifier:
        if isinstance(identifier, CanonicalIdentifier):
            return identifier
        return self.resolver.resolve(identifier)

    def check_status(self, identifier: IdentifierInput) -> StatusReport:
        """
        Current status for ``identifier``.

        An active record past its expiry is reported as expired, and the
        expired status is written back to the store.
        """
        ident = self._canonical(identifier)
        record = self.record_store.get_current(ident)
        if record is None:
            return StatusReport(has_kyc=False, status=KycStatus.NONE)

        now = self.clock.now()
        status = evaluate_status(record, now)
        if status != record.status:
            record = self.record_store.refresh_status(record.id, now)
            status = evaluate_status(record, now)
        return StatusReport(has_kyc=True, status=status, record=record)

    def history(self, identifier: IdentifierInput) -> List[KycRecord]:
        """Every record ever written for ``identifier``, oldest first."""
        return self.record_store.history(self._canonical(identifier))

    def get_record(self, record_id: str) -> KycRecord:
        return self.record_store.require(record_id)

    def lookup_by_request(self, request_id: str) -> Optional[KycRecord]:
        return self.record_store.get_by_request(request_id)

    def unlock_estimate(self, identifier: IdentifierInput) -> UnlockStatus:
        """
        Blocks and seconds left until the current record's payload unlocks.

        Raises:
            RecordNotFound: no record, or the record carries no time-lock
        """
        ident = self._canonical(identifier)
        record = self.record_store.get_current(ident)
        if record is None or record.time_lock is None:
            raise RecordNotFound(f"no time-locked record for {ident.address}", address=ident.address)
        return self.unlock_status(record.time_lock.request_id)

    def unlock_status(self, request_id: str) -> UnlockStatus:
        """
        Unlock state of a time-lock request, re-tracking it from the store
        if this process has not seen it yet.

        Raises:
            TimeLockError: UNKNOWN_REQUEST
        """
        record = self.record_store.get_by_request(request_id)
        if record is not None:
            self._ensure_tracked(record)
        return self.coordinator.query_unlock_state(request_id)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def default_scheme(self) -> ThresholdScheme:
        return ThresholdScheme(
            total_shares=config.DEFAULT_TOTAL_SHARES,
            required_shares=config.DEFAULT_REQUIRED_SHARES,
        )

    def submit_verification(
        self,
        identifier: IdentifierInput,
        payload: bytes,
        scheme: Optional[ThresholdScheme],
        unlock_block_height: int,
        gas_budget: Optional[int] = None,
    ) -> SubmissionResult:
        """
        Create a pending record for ``identifier`` holding ``payload``.

        Raises:
            ResolutionError: identifier does not resolve
            InvalidTransition: the current record is still pending
            CipherError: INVALID_SCHEME
            StorageUnavailable: ciphertext could not be stored
            TimeLockError: INVALID_UNLOCK_HEIGHT, or REGISTRATION_FAILED
                after the retry was spent
        """
        if not isinstance(payload, (bytes, bytearray)):
            raise ValidationError("payload must be bytes")
        scheme = scheme or self.default_scheme()
        gas_budget = self.default_gas_budget if gas_budget is None else gas_budget

        ident = self._canonical(identifier)

        # Fail before any side effect if a submission is not allowed now.
        now = self.clock.now()
        next_status(evaluate_status(self.record_store.get_current(ident), now), KycEvent.SUBMIT)

        encryption = self.cipher.encrypt(bytes(payload), scheme)
        ciphertext_ref = self.content_store.put(encryption.ciphertext)
        request_id = self._register(ciphertext_ref, unlock_block_height, gas_budget)

        metadata = dict(config.RECORD_METADATA)
        metadata["tags"] = list(config.RECORD_METADATA["tags"])
        record = KycRecord(
            id=record_id(),
            identifier=ident,
            status=KycStatus.PENDING,
            created_at=now,
            threshold_scheme=encryption.scheme,
            encrypted_payload_ref=ciphertext_ref,
            time_lock=TimeLock(
                unlock_block_height=unlock_block_height,
                request_id=request_id,
                chain_id=self.coordinator.chain_id,
            ),
            metadata=metadata,
        )

        try:
            superseded = self.record_store.create_or_supersede(record, self.clock.now())
        except Exception:
            # Registration cannot be retracted; just stop watching it.
            self.coordinator.stop_tracking(request_id)
            raise

        logger.info(
            "Submitted %s for %s (%s, unlock at %d, request %s)",
            record.id, ident.address, encryption.scheme.label, unlock_block_height, request_id,
        )
        return SubmissionResult(record=record, shares=encryption.shares, superseded=superseded)

    def _register(self, ciphertext_ref: str, unlock_block_height: int, gas_budget: int) -> str:
        attempts = 1 + max(0, self.registration_retries)
        attempt = 1
        while True:
            try:
                return self.coordinator.register_unlock(ciphertext_ref, unlock_block_height, gas_budget)
            except TimeLockError as e:
                if not e.retryable or attempt >= attempts:
                    logger.error("Time-lock registration for %s failed: %s", ciphertext_ref, e.message)
                    raise
                logger.warning(
                    "Time-lock registration attempt %d/%d failed, retrying: %s",
                    attempt, attempts, e.message,
                )
            attempt += 1

    # ------------------------------------------------------------------
    # Operator decisions
    # ------------------------------------------------------------------

    def approve(self, record_id: str, validity: Optional[timedelta] = None) -> KycRecord:
        """Move a pending record to active, valid for ``validity`` from now."""
        now = self.clock.now()
        return self.record_store.transition(
            record_id,
            KycEvent.APPROVE,
            now,
            last_verified_at=now,
            expiry_date=now + (validity or self.validity),
        )

    def reject(self, record_id: str, reason: Optional[str] = None) -> KycRecord:
        return self.record_store.transition(
            record_id,
            KycEvent.REJECT,
            self.clock.now(),
            rejection_reason=reason,
        )

    # ------------------------------------------------------------------
    # Unlock callbacks
    # ------------------------------------------------------------------

    def _ensure_tracked(self, record: KycRecord) -> None:
        tl = record.time_lock
        if tl is not None:
            self.coordinator.track(
                tl.request_id,
                record.encrypted_payload_ref,
                tl.unlock_block_height,
                decrypted=tl.decrypted,
            )

    def _on_notification(self, note: UnlockNotification) -> None:
        self.handle_unlock_callback(note.request_id, note.decryption_material)

    def handle_unlock_callback(self, request_id: str, material: bytes) -> CallbackOutcome:
        """
        Apply decryption material delivered for ``request_id``.

        The record's time-lock is marked decrypted when the material is
        accepted, and also on a duplicate if an earlier acceptance never
        reached the store.
        """
        record = self.record_store.get_by_request(request_id)
        if record is not None:
            self._ensure_tracked(record)

        outcome = self.coordinator.on_unlock_callback(request_id, material)

        if record is None:
            if outcome in (CallbackOutcome.ACCEPTED, CallbackOutcome.DUPLICATE):
                audit_log.security_event(
                    "UNLOCK_WITHOUT_RECORD",
                    severity="medium",
                    unlock_request_id=request_id,
                )
            return outcome

        if outcome == CallbackOutcome.ACCEPTED or (
            outcome == CallbackOutcome.DUPLICATE and not record.time_lock.decrypted
        ):
            self.record_store.mark_decrypted(record.id)
            logger.info("Time-lock %s released for record %s", request_id, record.id)
        return outcome

    def recover(self) -> int:
        """
        Re-track every stored time-lock with the coordinator, e.g. after a
        restart. Returns the number of records seen with a time-lock.
        """
        count = 0
        for record in self.record_store.all_records():
            if record.time_lock is not None:
                self._ensure_tracked(record)
                count += 1
        return count

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release_payload(
        self,
        record_id: str,
        shares: Iterable[bytes],
        requested_by: Optional[str] = None,
    ) -> bytes:
        """
        Read the payload back with at least K shares. ``requested_by`` is
        the authenticated account asking, recorded in the audit log.

        Raises:
            RecordNotFound
            ReleaseDenied: status is not active/expired or the time-lock has
                not been decrypted
            CipherError: INSUFFICIENT_SHARES, CORRUPT_SHARE, CORRUPT_CIPHERTEXT
            StorageUnavailable
        """
        record = self.record_store.require(record_id)
        now = self.clock.now()
        if not can_release(record, now):
            status = evaluate_status(record, now)
            decrypted = bool(record.time_lock and record.time_lock.decrypted)
            audit_log.security_event(
                "RELEASE_DENIED",
                severity="medium",
                record_id=record_id,
                status=status.value,
                decrypted=decrypted,
                requested_by=requested_by,
            )
            raise ReleaseDenied(
                f"record {record_id} is not releasable",
                record_id=record_id,
                status=status.value,
                decrypted=decrypted,
            )

        share_list: Sequence[bytes] = [bytes(s) for s in shares]
        ciphertext = self.content_store.get(record.encrypted_payload_ref)
        plaintext = self.cipher.decrypt(share_list, record.threshold_scheme, ciphertext)
        audit_log.payload_released(record_id, len(set(share_list)), requested_by)
        return plaintext
