"""
UniKYC Conditional-Encryption Network Interface

The time-lock coordinator talks to an external "blocklock" network: it
submits {ciphertext, unlock block height, callback gas budget}, gets a
request id back, and later receives decryption material for that request
once the chain reaches the height.

Decryption material is the network's Ed25519 signature over the canonical
unlock condition {chain_id, request_id, unlock_block_height}. Anyone
holding the network's published verify key can check it, and the network
can only produce it by deciding the condition holds.

Two clients implement the interface. RelayBlocklockNetwork talks to a
deployed network: chain height over the chain's JSON-RPC endpoint,
registration and unlock state through the network's relay, and decryption
material pushed by the relay to the HTTP callback endpoint.
SimulatedBlocklockNetwork runs in-process for tests and the demo: it
delivers notifications by message passing through an outbox that whoever
owns the network pumps on its own schedule. Nothing here runs on a
background thread.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

import requests
from nacl.signing import SigningKey

from . import config
from .config import ChainConfig, get_chain
from .hashing import canonicalize
from .util import b64d

logger = logging.getLogger(__name__)


class NetworkError(Exception):
    """Raised by a network collaborator when a call could not be completed."""


@dataclass(frozen=True)
class UnlockSubmission:
    ciphertext_ref: str
    unlock_block_height: int
    callback_gas_budget: int


@dataclass(frozen=True)
class UnlockNotification:
    """Asynchronous callback payload from the network."""
    request_id: str
    decryption_material: bytes


NotificationHandler = Callable[[UnlockNotification], object]


def unlock_condition(chain_id: int, request_id: str, unlock_block_height: int) -> bytes:
    """Canonical bytes the network signs to release a request."""
    return canonicalize({
        "chain_id": chain_id,
        "request_id": request_id,
        "unlock_block_height": unlock_block_height,
    })


class ConditionalEncryptionNetwork(ABC):
    """Interface every conditional-encryption network client must satisfy."""

    chain: ChainConfig

    @abstractmethod
    def current_block_height(self) -> int:
        pass

    @abstractmethod
    def submit(self, submission: UnlockSubmission) -> str:
        """
        Register a request and return its request id.

        Raises:
            NetworkError: if the network did not accept the request
        """
        pass

    @abstractmethod
    def is_unlocked(self, request_id: str) -> bool:
        pass

    @abstractmethod
    def verify_key(self) -> bytes:
        """Raw Ed25519 public key the network signs unlock conditions with."""
        pass

    @abstractmethod
    def subscribe(self, handler: NotificationHandler) -> None:
        pass


class RelayBlocklockNetwork(ConditionalEncryptionNetwork):
    """
    Client for a deployed blocklock network.

    Relay API:
        POST {relay_url}/requests        -> {"request_id": "..."}
        GET  {relay_url}/requests/{id}   -> {"unlocked": bool, ...}

    The relay later POSTs {request_id, material_b64} to this service's
    /timelock/callback endpoint, so nothing is delivered in-process.
    """

    def __init__(
        self,
        chain: ChainConfig,
        relay_url: str,
        verify_key: bytes,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ):
        if len(verify_key) != 32:
            raise ValueError("blocklock verify key must be a 32-byte Ed25519 public key")
        self.chain = chain
        self.relay_url = relay_url.rstrip("/")
        self.timeout = timeout
        self._verify_key = bytes(verify_key)
        self._session = session
        self._lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        with self._lock:
            if self._session is None:
                self._session = requests.Session()
            return self._session

    def _call(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            r = self.session.request(method, url, timeout=self.timeout, **kwargs)
            r.raise_for_status()
            return r.json()
        except (requests.RequestException, ValueError) as e:
            raise NetworkError(f"{method} {url} failed: {e}")

    def current_block_height(self) -> int:
        body = self._call(
            "POST",
            self.chain.rpc_url,
            json={"jsonrpc": "2.0", "id": 1, "method": "eth_blockNumber", "params": []},
        )
        try:
            return int(body["result"], 16)
        except (KeyError, TypeError, ValueError):
            raise NetworkError(f"unexpected eth_blockNumber response from {self.chain.rpc_url}: {body!r}")

    def submit(self, submission: UnlockSubmission) -> str:
        body = self._call(
            "POST",
            f"{self.relay_url}/requests",
            json={
                "chain_id": self.chain.chain_id,
                "sender": self.chain.blocklock_sender,
                "ciphertext_ref": submission.ciphertext_ref,
                "unlock_block_height": submission.unlock_block_height,
                "callback_gas_budget": submission.callback_gas_budget,
            },
        )
        request_id = body.get("request_id") if isinstance(body, dict) else None
        if request_id is None:
            raise NetworkError("relay response carried no request_id")
        return str(request_id)

    def is_unlocked(self, request_id: str) -> bool:
        body = self._call("GET", f"{self.relay_url}/requests/{request_id}")
        return bool(body.get("unlocked")) if isinstance(body, dict) else False

    def verify_key(self) -> bytes:
        return self._verify_key

    def subscribe(self, handler: NotificationHandler) -> None:
        logger.debug("Relay network delivers unlocks over HTTP; in-process handler not registered")


class SimulatedBlocklockNetwork(ConditionalEncryptionNetwork):
    """
    In-process network for development and tests.

    The chain only moves when advance_blocks() is called; notifications
    only reach subscribers when deliver_pending() is called.
    """

    def __init__(
        self,
        chain: Optional[ChainConfig] = None,
        start_height: int = 1000,
        signing_key: Optional[SigningKey] = None,
    ):
        self.chain = chain or get_chain()
        self._height = start_height
        self._sk = signing_key or SigningKey.generate()
        self._requests: Dict[str, UnlockSubmission] = {}
        self._released: Dict[str, bytes] = {}
        self._outbox: Deque[UnlockNotification] = deque()
        self._handlers: List[NotificationHandler] = []
        self._next_id = 1
        self._fail_submissions = 0
        self._lock = threading.RLock()

    # -- collaborator interface ------------------------------------------

    def current_block_height(self) -> int:
        with self._lock:
            return self._height

    def submit(self, submission: UnlockSubmission) -> str:
        with self._lock:
            if self._fail_submissions > 0:
                self._fail_submissions -= 1
                raise NetworkError("blocklock sender rejected the request")
            if submission.unlock_block_height <= self._height:
                raise NetworkError("Unlock block must be in the future")
            request_id = str(self._next_id)
            self._next_id += 1
            self._requests[request_id] = submission
            return request_id

    def is_unlocked(self, request_id: str) -> bool:
        with self._lock:
            submission = self._requests.get(request_id)
            return submission is not None and self._height >= submission.unlock_block_height

    def verify_key(self) -> bytes:
        return bytes(self._sk.verify_key)

    def subscribe(self, handler: NotificationHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    # -- simulation controls ---------------------------------------------

    def fail_next_submissions(self, count: int = 1) -> None:
        """Make the next ``count`` submit() calls raise NetworkError."""
        with self._lock:
            self._fail_submissions = count

    def material_for(self, request_id: str) -> bytes:
        """Sign the unlock condition for a request (valid or not yet due)."""
        with self._lock:
            submission = self._requests[request_id]
        condition = unlock_condition(self.chain.chain_id, request_id, submission.unlock_block_height)
        return self._sk.sign(condition).signature

    def advance_blocks(self, count: int = 1) -> List[UnlockNotification]:
        """
        Mine ``count`` blocks and queue a notification for every request
        whose height was reached. Returns the newly queued notifications.
        """
        queued: List[UnlockNotification] = []
        with self._lock:
            self._height += count
            for request_id, submission in self._requests.items():
                if request_id in self._released or self._height < submission.unlock_block_height:
                    continue
                material = self.material_for(request_id)
                self._released[request_id] = material
                note = UnlockNotification(request_id=request_id, decryption_material=material)
                self._outbox.append(note)
                queued.append(note)
        return queued

    def advance_to(self, height: int) -> List[UnlockNotification]:
        with self._lock:
            delta = height - self._height
        return self.advance_blocks(delta) if delta > 0 else []

    def redeliver(self, request_id: str) -> None:
        """Queue a second notification for an already released request."""
        with self._lock:
            material = self._released[request_id]
            self._outbox.append(UnlockNotification(request_id, material))

    def pending_notifications(self) -> int:
        with self._lock:
            return len(self._outbox)

    def deliver_pending(self) -> int:
        """
        Hand every queued notification to every subscriber.

        A failing handler is logged and does not stop delivery to the others.
        Returns the number of notifications delivered.
        """
        delivered = 0
        while True:
            with self._lock:
                if not self._outbox:
                    break
                note = self._outbox.popleft()
                handlers = list(self._handlers)
            for handler in handlers:
                try:
                    handler(note)
                except Exception:
                    logger.exception("Unlock handler failed for request %s", note.request_id)
            delivered += 1
        return delivered


def get_network(backend: Optional[str] = None, chain: Optional[ChainConfig] = None) -> ConditionalEncryptionNetwork:
    """
    Factory for the configured blocklock network.

    Args:
        backend: "relay" or "simulated" (default: UNIKYC_BLOCKLOCK_NETWORK)
        chain: chain preset (default: UNIKYC_CHAIN)
    """
    backend = backend or config.BLOCKLOCK_NETWORK
    chain = chain or get_chain()
    if backend == "simulated":
        if config.is_production():
            raise ValueError("the simulated blocklock network cannot run with UNIKYC_ENV=prod")
        logger.warning("Using the simulated blocklock network; requests only unlock through advance_blocks()")
        return SimulatedBlocklockNetwork(chain)
    if backend != "relay":
        raise ValueError(f"Unknown blocklock network '{backend}': must be 'relay' or 'simulated'")
    if not config.BLOCKLOCK_RELAY_URL:
        raise ValueError("UNIKYC_BLOCKLOCK_RELAY_URL required for the relay network")
    if not config.BLOCKLOCK_VERIFY_KEY:
        raise ValueError("UNIKYC_BLOCKLOCK_VERIFY_KEY required for the relay network")
    return RelayBlocklockNetwork(
        chain,
        config.BLOCKLOCK_RELAY_URL,
        b64d(config.BLOCKLOCK_VERIFY_KEY),
        timeout=config.BLOCKLOCK_TIMEOUT_SECONDS,
    )
