"""
UniKYC Time-Lock Coordinator

Submits encrypt-now / decrypt-later requests to a conditional-encryption
network and tracks them until the decryption material arrives.

Request state machine:

    REGISTERED --(chain reaches height)--> UNLOCKABLE
    UNLOCKABLE --(callback received & validated)--> DECRYPTED

DECRYPTED is terminal. The coordinator knows nothing about KYC records;
it reports outcomes and the lifecycle engine applies them.

Callbacks are at-least-once. A duplicate callback for a decrypted request
is a no-op, and a callback for a request this coordinator never registered
is logged as an anomaly. Neither raises.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from .blocklock import ConditionalEncryptionNetwork, NetworkError, UnlockSubmission, unlock_condition
from .errors import TimeLockError, ValidationError
from .logging_config import audit_log

logger = logging.getLogger(__name__)


class UnlockState(str, Enum):
    REGISTERED = "REGISTERED"
    UNLOCKABLE = "UNLOCKABLE"
    DECRYPTED = "DECRYPTED"


class CallbackOutcome(str, Enum):
    """Result of handling one unlock callback."""
    ACCEPTED = "ACCEPTED"                  # Material valid; request now DECRYPTED
    DUPLICATE = "DUPLICATE"                # Already DECRYPTED; nothing changed
    UNKNOWN_REQUEST = "UNKNOWN_REQUEST"    # Never registered here
    INVALID_MATERIAL = "INVALID_MATERIAL"  # Signature does not verify
    PREMATURE = "PREMATURE"                # Chain has not reached the height


@dataclass
class TrackedRequest:
    request_id: str
    ciphertext_ref: str
    unlock_block_height: int
    gas_budget: int
    decrypted: bool = False
    material: Optional[bytes] = None
    tracking: bool = True


@dataclass(frozen=True)
class UnlockStatus:
    """Answer to "can this request be decrypted yet"."""
    request_id: str
    unlocked: bool
    blocks_remaining: int
    estimated_seconds: int
    unlock_block_height: int
    state: UnlockState

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "unlocked": self.unlocked,
            "blocks_remaining": self.blocks_remaining,
            "estimated_seconds": self.estimated_seconds,
            "unlock_block_height": self.unlock_block_height,
            "state": self.state.value,
        }


class TimeLockCoordinator:
    """
    Coordinator between the lifecycle engine and the blocklock network.

    Usage:
        coordinator = TimeLockCoordinator(network)
        request_id = coordinator.register_unlock(cid, height + 100, 500_000)
        coordinator.query_unlock_state(request_id).unlocked   # False
        ...
        coordinator.on_unlock_callback(request_id, material)  # ACCEPTED
    """

    def __init__(self, network: ConditionalEncryptionNetwork, block_time_seconds: Optional[int] = None):
        self.network = network
        self.block_time_seconds = block_time_seconds or network.chain.block_time_seconds
        self._requests: Dict[str, TrackedRequest] = {}
        self._lock = threading.Lock()

    @property
    def chain_id(self) -> int:
        return self.network.chain.chain_id

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_unlock(self, ciphertext_ref: str, unlock_block_height: int, gas_budget: int) -> str:
        """
        Register a time-locked release of ``ciphertext_ref``.

        Args:
            ciphertext_ref: content id of the stored ciphertext
            unlock_block_height: block at which the key may be released;
                must be strictly above the current height
            gas_budget: gas the network may spend on the callback

        Returns:
            The network-assigned request id

        Raises:
            ValidationError: empty ref or non-positive gas budget
            TimeLockError: INVALID_UNLOCK_HEIGHT, REGISTRATION_FAILED
        """
        if not ciphertext_ref:
            raise ValidationError("ciphertext_ref must not be empty")
        if not isinstance(gas_budget, int) or gas_budget <= 0:
            raise ValidationError("gas_budget must be a positive integer", gas_budget=gas_budget)

        try:
            current = self.network.current_block_height()
        except NetworkError as e:
            raise TimeLockError(f"could not read chain height: {e}", TimeLockError.REGISTRATION_FAILED)

        if unlock_block_height <= current:
            raise TimeLockError(
                "Unlock block must be in the future",
                TimeLockError.INVALID_UNLOCK_HEIGHT,
                unlock_block_height=unlock_block_height,
                current_block_height=current,
            )

        submission = UnlockSubmission(
            ciphertext_ref=ciphertext_ref,
            unlock_block_height=unlock_block_height,
            callback_gas_budget=gas_budget,
        )
        try:
            request_id = self.network.submit(submission)
        except NetworkError as e:
            raise TimeLockError(f"network rejected registration: {e}", TimeLockError.REGISTRATION_FAILED)

        self.track(request_id, ciphertext_ref, unlock_block_height, gas_budget)
        audit_log.unlock_registered(request_id, unlock_block_height, self.chain_id)
        return request_id

    def track(
        self,
        request_id: str,
        ciphertext_ref: str,
        unlock_block_height: int,
        gas_budget: int = 0,
        decrypted: bool = False,
    ) -> None:
        """
        Start tracking a request registered earlier, e.g. by a previous
        process whose state was rebuilt from the record store.
        """
        with self._lock:
            if request_id in self._requests:
                return
            self._requests[request_id] = TrackedRequest(
                request_id=request_id,
                ciphertext_ref=ciphertext_ref,
                unlock_block_height=unlock_block_height,
                gas_budget=gas_budget,
                decrypted=decrypted,
            )

    def stop_tracking(self, request_id: str) -> bool:
        """
        Stop polling a request. The network registration cannot be
        retracted; a later callback is still accepted if it arrives.
        """
        with self._lock:
            req = self._requests.get(request_id)
            if req is None:
                return False
            req.tracking = False
            return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _get(self, request_id: str) -> TrackedRequest:
        with self._lock:
            req = self._requests.get(request_id)
        if req is None:
            raise TimeLockError(
                f"unknown request {request_id}",
                TimeLockError.UNKNOWN_REQUEST,
                request_id=request_id,
            )
        return req

    def _chain_height(self) -> int:
        try:
            return self.network.current_block_height()
        except NetworkError as e:
            raise TimeLockError(f"could not read chain height: {e}", TimeLockError.NETWORK_UNAVAILABLE)

    @staticmethod
    def _state_of(req: TrackedRequest, current_height: int) -> UnlockState:
        if req.decrypted:
            return UnlockState.DECRYPTED
        if current_height >= req.unlock_block_height:
            return UnlockState.UNLOCKABLE
        return UnlockState.REGISTERED

    def state(self, request_id: str) -> UnlockState:
        req = self._get(request_id)
        return self._state_of(req, self._chain_height())

    def query_unlock_state(self, request_id: str) -> UnlockStatus:
        """
        Pure read; safe to poll at any frequency.

        Raises:
            TimeLockError: UNKNOWN_REQUEST, NETWORK_UNAVAILABLE
        """
        req = self._get(request_id)
        current = self._chain_height()
        try:
            unlocked = req.decrypted or self.network.is_unlocked(request_id)
        except NetworkError as e:
            raise TimeLockError(f"could not read unlock state: {e}", TimeLockError.NETWORK_UNAVAILABLE)
        blocks_remaining = 0 if unlocked else max(0, req.unlock_block_height - current)

        return UnlockStatus(
            request_id=request_id,
            unlocked=unlocked,
            blocks_remaining=blocks_remaining,
            estimated_seconds=blocks_remaining * self.block_time_seconds,
            unlock_block_height=req.unlock_block_height,
            state=self._state_of(req, current),
        )

    def can_decrypt(self, request_id: str) -> Tuple[bool, int]:
        """(material received, unlock height) for a request."""
        req = self._get(request_id)
        return req.decrypted, req.unlock_block_height

    def decryption_material(self, request_id: str) -> Optional[bytes]:
        return self._get(request_id).material

    def pending_requests(self) -> List[str]:
        """Tracked requests still waiting for their callback."""
        with self._lock:
            return [r.request_id for r in self._requests.values() if r.tracking and not r.decrypted]

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def validate_material(self, request_id: str, unlock_block_height: int, material: bytes) -> bool:
        condition = unlock_condition(self.chain_id, request_id, unlock_block_height)
        try:
            VerifyKey(self.network.verify_key()).verify(condition, bytes(material))
            return True
        except (BadSignatureError, ValueError, TypeError):
            return False

    def on_unlock_callback(self, request_id: str, material: bytes) -> CallbackOutcome:
        """
        Handle decryption material delivered by the network.

        Never raises for anomalies; the outcome says what happened.
        """
        with self._lock:
            req = self._requests.get(request_id)

        if req is None:
            audit_log.security_event(
                "UNLOCK_CALLBACK_UNKNOWN_REQUEST",
                severity="medium",
                unlock_request_id=request_id,
            )
            audit_log.unlock_callback(request_id, CallbackOutcome.UNKNOWN_REQUEST.value)
            return CallbackOutcome.UNKNOWN_REQUEST

        if req.decrypted:
            logger.warning("Duplicate unlock callback for request %s ignored", request_id)
            audit_log.unlock_callback(request_id, CallbackOutcome.DUPLICATE.value)
            return CallbackOutcome.DUPLICATE

        try:
            premature = self.network.current_block_height() < req.unlock_block_height
        except NetworkError as e:
            # The signature alone proves the network released the request.
            logger.warning("Chain height unavailable for callback %s: %s", request_id, e)
            premature = False

        if premature:
            audit_log.security_event(
                "UNLOCK_CALLBACK_PREMATURE",
                severity="high",
                unlock_request_id=request_id,
                unlock_block_height=req.unlock_block_height,
            )
            audit_log.unlock_callback(request_id, CallbackOutcome.PREMATURE.value)
            return CallbackOutcome.PREMATURE

        if not self.validate_material(request_id, req.unlock_block_height, material):
            audit_log.security_event(
                "UNLOCK_CALLBACK_INVALID_MATERIAL",
                severity="high",
                unlock_request_id=request_id,
            )
            audit_log.unlock_callback(request_id, CallbackOutcome.INVALID_MATERIAL.value)
            return CallbackOutcome.INVALID_MATERIAL

        with self._lock:
            if req.decrypted:
                outcome = CallbackOutcome.DUPLICATE
            else:
                req.decrypted = True
                req.material = bytes(material)
                outcome = CallbackOutcome.ACCEPTED

        audit_log.unlock_callback(request_id, outcome.value)
        return outcome
