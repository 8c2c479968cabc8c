"""
UniKYC Record Lifecycle Engine

Version: 1.0.0

Reusable KYC for on-chain identities: verify once, prove status anywhere.

A subject is identified by a name (e.g. "alice.eth") or a raw address; both
resolve to one canonical account. Its verification payload is sealed under a
K-of-N threshold scheme, stored by content id, and time-locked on a
conditional-encryption network so the key can only be released once a
target block height is reached.

Record status is a state machine:

    none -> pending -> active -> expired
                    \\-> rejected
    active | expired | rejected -> pending   (resubmission)

Status is always evaluated against the clock; an active record past its
expiry date reads as expired even before anything writes that back.

Usage:
    from unikyc import (
        IdentifierResolver,
        InMemoryNameService,
        InMemoryContentStore,
        InMemoryRecordStore,
        RecordLifecycleEngine,
        SimulatedBlocklockNetwork,
        THREE_OF_FIVE,
        ThresholdCipher,
        TimeLockCoordinator,
    )

    names = InMemoryNameService()
    names.register("alice.eth", "0x...")
    network = SimulatedBlocklockNetwork()

    engine = RecordLifecycleEngine(
        resolver=IdentifierResolver(names),
        cipher=ThresholdCipher(),
        coordinator=TimeLockCoordinator(network),
        content_store=InMemoryContentStore(),
        record_store=InMemoryRecordStore(),
    )

    result = engine.submit_verification(
        "alice.eth", payload, THREE_OF_FIVE, network.current_block_height() + 100
    )
    engine.approve(result.record.id)

    # later, once the chain has reached the unlock height
    network.deliver_pending()
    data = engine.release_payload(result.record.id, result.shares[:3])
"""

__version__ = "1.0.0"

# Errors
from .errors import (
    ErrorCode,
    KycError,
    ValidationError,
    ResolutionError,
    CipherError,
    TimeLockError,
    StorageUnavailable,
    InvalidTransition,
    RecordNotFound,
    ReleaseDenied,
    AuthenticationError,
)

# Identifiers
from .identifiers import (
    CanonicalIdentifier,
    NameService,
    InMemoryNameService,
    JsonFileNameService,
    IdentifierResolver,
    normalize_address,
)

# Threshold cipher
from .threshold import (
    ThresholdScheme,
    ThresholdEncryption,
    ThresholdCipher,
    FIVE_OF_FIVE,
    THREE_OF_FIVE,
    TWO_OF_FIVE,
    PRESETS,
)

# Time-lock
from .blocklock import (
    ConditionalEncryptionNetwork,
    RelayBlocklockNetwork,
    SimulatedBlocklockNetwork,
    UnlockNotification,
    NetworkError,
    get_network,
)
from .timelock import (
    TimeLockCoordinator,
    CallbackOutcome,
    UnlockState,
    UnlockStatus,
)

# Records and storage
from .records import (
    KycStatus,
    KycEvent,
    KycRecord,
    TimeLock,
    StatusReport,
    evaluate_status,
    can_release,
)
from .store import RecordStore, InMemoryRecordStore, SqliteRecordStore
from .storage import ContentStore, InMemoryContentStore, GatewayContentStore, StorageSpace

# Engine
from .clock import Clock, SystemClock, FakeClock
from .lifecycle import RecordLifecycleEngine, SubmissionResult

# Authentication
from .auth import AuthenticatedIdentity, Authenticator, Ed25519MessageAuthenticator


__all__ = [
    "__version__",

    # Errors
    "ErrorCode",
    "KycError",
    "ValidationError",
    "ResolutionError",
    "CipherError",
    "TimeLockError",
    "StorageUnavailable",
    "InvalidTransition",
    "RecordNotFound",
    "ReleaseDenied",
    "AuthenticationError",

    # Identifiers
    "CanonicalIdentifier",
    "NameService",
    "InMemoryNameService",
    "JsonFileNameService",
    "IdentifierResolver",
    "normalize_address",

    # Threshold cipher
    "ThresholdScheme",
    "ThresholdEncryption",
    "ThresholdCipher",
    "FIVE_OF_FIVE",
    "THREE_OF_FIVE",
    "TWO_OF_FIVE",
    "PRESETS",

    # Time-lock
    "ConditionalEncryptionNetwork",
    "RelayBlocklockNetwork",
    "SimulatedBlocklockNetwork",
    "get_network",
    "UnlockNotification",
    "NetworkError",
    "TimeLockCoordinator",
    "CallbackOutcome",
    "UnlockState",
    "UnlockStatus",

    # Records and storage
    "KycStatus",
    "KycEvent",
    "KycRecord",
    "TimeLock",
    "StatusReport",
    "evaluate_status",
    "can_release",
    "RecordStore",
    "InMemoryRecordStore",
    "SqliteRecordStore",
    "ContentStore",
    "InMemoryContentStore",
    "GatewayContentStore",
    "StorageSpace",

    # Engine
    "Clock",
    "SystemClock",
    "FakeClock",
    "RecordLifecycleEngine",
    "SubmissionResult",

    # Authentication
    "AuthenticatedIdentity",
    "Authenticator",
    "Ed25519MessageAuthenticator",
]
