import pytest
from fastapi.testclient import TestClient
from nacl.signing import SigningKey

from unikyc.api import create_app
from unikyc.auth import Ed25519MessageAuthenticator, address_for_key, build_login_message
from unikyc.blocklock import SimulatedBlocklockNetwork
from unikyc.clock import FakeClock
from unikyc.identifiers import IdentifierResolver, InMemoryNameService
from unikyc.lifecycle import RecordLifecycleEngine
from unikyc.storage import InMemoryContentStore
from unikyc.store import InMemoryRecordStore
from unikyc.threshold import ThresholdCipher
from unikyc.timelock import TimeLockCoordinator
from unikyc.util import utc_iso

ALICE_KEY = SigningKey(b"\x11" * 32)
ALICE = address_for_key(bytes(ALICE_KEY.verify_key))
OPERATOR_KEY = "op-key"


@pytest.fixture
def network():
    return SimulatedBlocklockNetwork(start_height=1000)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(network, clock):
    names = InMemoryNameService()
    names.register("alice.eth", ALICE)
    return RecordLifecycleEngine(
        resolver=IdentifierResolver(names),
        cipher=ThresholdCipher(),
        coordinator=TimeLockCoordinator(network),
        content_store=InMemoryContentStore(),
        record_store=InMemoryRecordStore(),
        clock=clock,
    )


@pytest.fixture
def authenticator(clock):
    return Ed25519MessageAuthenticator(clock=clock)


@pytest.fixture
def client(engine, authenticator):
    return TestClient(create_app(engine, authenticator, operator_keys={OPERATOR_KEY}))


@pytest.fixture
def login(client, clock):
    """Log in with a signing key; returns the bearer headers for its session."""
    counter = {"n": 0}

    def _login(signing_key=ALICE_KEY):
        counter["n"] += 1
        msg = build_login_message(signing_key, f"nonce-{counter['n']}", utc_iso(clock.now()))
        r = client.post("/auth/login", json=msg)
        assert r.status_code == 200
        return {"authorization": f"Bearer {r.json()['session_token']}"}

    return _login


@pytest.fixture
def alice_auth(login):
    return login()


@pytest.fixture
def operator():
    return {"x-api-key": OPERATOR_KEY}
