"""
UniKYC Time-Lock Coordinator Test Suite

Callbacks are at-least-once, may be forged or early, and must never raise.
"""

import unittest
from unittest import mock

import requests
from nacl.signing import SigningKey

from unikyc.blocklock import (
    NetworkError,
    RelayBlocklockNetwork,
    SimulatedBlocklockNetwork,
    UnlockSubmission,
    get_network,
    unlock_condition,
)
from unikyc.config import get_chain
from unikyc.errors import ErrorCode, TimeLockError, ValidationError
from unikyc.timelock import CallbackOutcome, TimeLockCoordinator, UnlockState
from unikyc.util import b64e

CID = "sha256-" + "ab" * 32


class TestRegistration(unittest.TestCase):

    def setUp(self):
        self.network = SimulatedBlocklockNetwork(start_height=1000)
        self.coordinator = TimeLockCoordinator(self.network)

    def test_register_returns_request_id(self):
        request_id = self.coordinator.register_unlock(CID, 1010, 500_000)
        self.assertEqual(request_id, "1")
        self.assertEqual(self.coordinator.state(request_id), UnlockState.REGISTERED)
        self.assertEqual(self.coordinator.pending_requests(), [request_id])

    def test_height_must_be_in_future(self):
        for height in (999, 1000):
            with self.assertRaises(TimeLockError) as ctx:
                self.coordinator.register_unlock(CID, height, 500_000)
            self.assertEqual(ctx.exception.code, ErrorCode.TIMELOCK_INVALID_UNLOCK_HEIGHT)
            self.assertFalse(ctx.exception.retryable)

    def test_network_failure_is_retryable(self):
        self.network.fail_next_submissions(1)
        with self.assertRaises(TimeLockError) as ctx:
            self.coordinator.register_unlock(CID, 1010, 500_000)
        self.assertEqual(ctx.exception.code, ErrorCode.TIMELOCK_REGISTRATION_FAILED)
        self.assertTrue(ctx.exception.retryable)
        # Next attempt goes through
        self.assertEqual(self.coordinator.register_unlock(CID, 1010, 500_000), "1")

    def test_gas_budget_must_be_positive(self):
        with self.assertRaises(ValidationError):
            self.coordinator.register_unlock(CID, 1010, 0)

    def test_empty_ref_rejected(self):
        with self.assertRaises(ValidationError):
            self.coordinator.register_unlock("", 1010, 500_000)


class TestUnlockState(unittest.TestCase):

    def setUp(self):
        self.network = SimulatedBlocklockNetwork(chain=get_chain("baseSepolia"), start_height=1000)
        self.coordinator = TimeLockCoordinator(self.network)
        self.request_id = self.coordinator.register_unlock(CID, 1010, 500_000)

    def test_estimate_before_unlock(self):
        status = self.coordinator.query_unlock_state(self.request_id)
        self.assertFalse(status.unlocked)
        self.assertEqual(status.blocks_remaining, 10)
        self.assertEqual(status.estimated_seconds, 20)
        self.assertEqual(status.state, UnlockState.REGISTERED)

    def test_unlockable_at_height(self):
        self.network.advance_blocks(10)
        status = self.coordinator.query_unlock_state(self.request_id)
        self.assertTrue(status.unlocked)
        self.assertEqual(status.blocks_remaining, 0)
        self.assertEqual(status.estimated_seconds, 0)
        self.assertEqual(status.state, UnlockState.UNLOCKABLE)

    def test_blocks_remaining_never_negative(self):
        self.network.advance_blocks(50)
        self.assertEqual(self.coordinator.query_unlock_state(self.request_id).blocks_remaining, 0)

    def test_unknown_request(self):
        with self.assertRaises(TimeLockError) as ctx:
            self.coordinator.query_unlock_state("999")
        self.assertEqual(ctx.exception.code, ErrorCode.TIMELOCK_UNKNOWN_REQUEST)

    def test_block_time_from_chain(self):
        network = SimulatedBlocklockNetwork(chain=get_chain("filecoinCalibration"), start_height=0)
        coordinator = TimeLockCoordinator(network)
        request_id = coordinator.register_unlock(CID, 4, 500_000)
        self.assertEqual(coordinator.query_unlock_state(request_id).estimated_seconds, 120)


class TestCallbacks(unittest.TestCase):

    def setUp(self):
        self.network = SimulatedBlocklockNetwork(start_height=1000)
        self.coordinator = TimeLockCoordinator(self.network)
        self.request_id = self.coordinator.register_unlock(CID, 1005, 500_000)
        self.delivered = []
        self.network.subscribe(
            lambda note: self.delivered.append(
                self.coordinator.on_unlock_callback(note.request_id, note.decryption_material)
            )
        )

    def test_accepted_then_duplicate(self):
        self.network.advance_blocks(5)
        self.assertEqual(self.network.deliver_pending(), 1)
        self.network.redeliver(self.request_id)
        self.network.deliver_pending()
        self.assertEqual(self.delivered, [CallbackOutcome.ACCEPTED, CallbackOutcome.DUPLICATE])
        self.assertEqual(self.coordinator.state(self.request_id), UnlockState.DECRYPTED)
        self.assertEqual(self.coordinator.can_decrypt(self.request_id), (True, 1005))
        self.assertEqual(self.coordinator.pending_requests(), [])

    def test_notifications_wait_for_pump(self):
        self.network.advance_blocks(5)
        self.assertEqual(self.delivered, [])
        self.assertEqual(self.network.pending_notifications(), 1)

    def test_no_notification_before_height(self):
        self.network.advance_blocks(4)
        self.assertEqual(self.network.pending_notifications(), 0)

    def test_unknown_request_does_not_raise(self):
        outcome = self.coordinator.on_unlock_callback("42", b"\x00" * 64)
        self.assertEqual(outcome, CallbackOutcome.UNKNOWN_REQUEST)

    def test_premature_callback(self):
        material = self.network.material_for(self.request_id)
        outcome = self.coordinator.on_unlock_callback(self.request_id, material)
        self.assertEqual(outcome, CallbackOutcome.PREMATURE)
        self.assertEqual(self.coordinator.can_decrypt(self.request_id), (False, 1005))

    def test_forged_material(self):
        self.network.advance_blocks(5)
        forged = SigningKey.generate().sign(b"anything").signature
        outcome = self.coordinator.on_unlock_callback(self.request_id, forged)
        self.assertEqual(outcome, CallbackOutcome.INVALID_MATERIAL)
        self.assertIsNone(self.coordinator.decryption_material(self.request_id))

    def test_garbage_material(self):
        self.network.advance_blocks(5)
        outcome = self.coordinator.on_unlock_callback(self.request_id, b"short")
        self.assertEqual(outcome, CallbackOutcome.INVALID_MATERIAL)

    def test_material_for_other_request_rejected(self):
        other = self.coordinator.register_unlock(CID, 1003, 500_000)
        self.network.advance_blocks(5)
        outcome = self.coordinator.on_unlock_callback(self.request_id, self.network.material_for(other))
        self.assertEqual(outcome, CallbackOutcome.INVALID_MATERIAL)

    def test_stop_tracking_still_accepts_late_callback(self):
        self.assertTrue(self.coordinator.stop_tracking(self.request_id))
        self.assertEqual(self.coordinator.pending_requests(), [])
        self.network.advance_blocks(5)
        self.network.deliver_pending()
        self.assertEqual(self.delivered, [CallbackOutcome.ACCEPTED])

    def test_failing_handler_does_not_block_others(self):
        def broken(note):
            raise RuntimeError("boom")
        network = SimulatedBlocklockNetwork(start_height=0)
        coordinator = TimeLockCoordinator(network)
        coordinator.register_unlock(CID, 1, 1)
        seen = []
        network.subscribe(broken)
        network.subscribe(lambda note: seen.append(note.request_id))
        network.advance_blocks(1)
        self.assertEqual(network.deliver_pending(), 1)
        self.assertEqual(seen, ["1"])


class TestSimulatedNetwork(unittest.TestCase):

    def test_submit_rejects_past_height(self):
        network = SimulatedBlocklockNetwork(start_height=10)
        from unikyc.blocklock import NetworkError
        with self.assertRaises(NetworkError):
            network.submit(UnlockSubmission(CID, 10, 1))

    def test_advance_to(self):
        network = SimulatedBlocklockNetwork(start_height=10)
        network.advance_to(25)
        self.assertEqual(network.current_block_height(), 25)
        self.assertEqual(network.advance_to(5), [])


RELAY = "https://relay.test"


def response(body, status=200):
    r = mock.Mock()
    r.json.return_value = body
    if status >= 400:
        r.raise_for_status.side_effect = requests.HTTPError(f"{status} Server Error")
    return r


class TestRelayNetwork(unittest.TestCase):
    """Relay client against a mocked HTTP session."""

    def setUp(self):
        self.chain = get_chain("baseSepolia")
        self.network_key = SigningKey(b"\x33" * 32)
        self.height = 1000
        self.unlocked = False
        self.rpc_down = False
        self.relay_status = 200
        self.submitted = None

        self.session = mock.Mock()
        self.session.request.side_effect = self.route
        self.network = RelayBlocklockNetwork(
            self.chain, RELAY + "/", bytes(self.network_key.verify_key), session=self.session
        )
        self.coordinator = TimeLockCoordinator(self.network)

    def route(self, method, url, **kwargs):
        if url == self.chain.rpc_url:
            if self.rpc_down:
                raise requests.ConnectionError("connection refused")
            return response({"jsonrpc": "2.0", "id": 1, "result": hex(self.height)})
        if method == "POST" and url == f"{RELAY}/requests":
            self.submitted = kwargs["json"]
            return response({"request_id": 42}, self.relay_status)
        if method == "GET" and url == f"{RELAY}/requests/42":
            return response({"unlocked": self.unlocked}, self.relay_status)
        return response({"error": "not found"}, 404)

    def material(self, request_id="42", height=1010, key=None):
        condition = unlock_condition(self.chain.chain_id, request_id, height)
        return (key or self.network_key).sign(condition).signature

    def test_height_from_chain_rpc(self):
        self.assertEqual(self.network.current_block_height(), 1000)
        method, url = self.session.request.call_args.args
        self.assertEqual((method, url), ("POST", self.chain.rpc_url))
        self.assertEqual(self.session.request.call_args.kwargs["json"]["method"], "eth_blockNumber")
        self.assertEqual(self.session.request.call_args.kwargs["timeout"], 10.0)

    def test_register_posts_to_relay(self):
        request_id = self.coordinator.register_unlock(CID, 1010, 500_000)
        self.assertEqual(request_id, "42")
        self.assertEqual(self.submitted, {
            "chain_id": 84532,
            "sender": self.chain.blocklock_sender,
            "ciphertext_ref": CID,
            "unlock_block_height": 1010,
            "callback_gas_budget": 500_000,
        })
        self.assertEqual(self.coordinator.pending_requests(), ["42"])

    def test_query_unlock_state(self):
        request_id = self.coordinator.register_unlock(CID, 1010, 500_000)
        status = self.coordinator.query_unlock_state(request_id)
        self.assertFalse(status.unlocked)
        self.assertEqual(status.blocks_remaining, 10)

        self.height = 1010
        self.unlocked = True
        status = self.coordinator.query_unlock_state(request_id)
        self.assertTrue(status.unlocked)
        self.assertEqual(status.state, UnlockState.UNLOCKABLE)

    def test_callback_checked_against_configured_key(self):
        request_id = self.coordinator.register_unlock(CID, 1010, 500_000)
        self.height = 1012

        forged = self.material(key=SigningKey(b"\x44" * 32))
        self.assertEqual(self.coordinator.on_unlock_callback(request_id, forged), CallbackOutcome.INVALID_MATERIAL)

        outcome = self.coordinator.on_unlock_callback(request_id, self.material())
        self.assertEqual(outcome, CallbackOutcome.ACCEPTED)
        self.assertEqual(self.coordinator.can_decrypt(request_id), (True, 1010))

    def test_callback_accepted_while_rpc_down(self):
        request_id = self.coordinator.register_unlock(CID, 1010, 500_000)
        self.rpc_down = True
        outcome = self.coordinator.on_unlock_callback(request_id, self.material())
        self.assertEqual(outcome, CallbackOutcome.ACCEPTED)

    def test_relay_down_on_register(self):
        self.relay_status = 502
        with self.assertRaises(TimeLockError) as ctx:
            self.coordinator.register_unlock(CID, 1010, 500_000)
        self.assertEqual(ctx.exception.code, ErrorCode.TIMELOCK_REGISTRATION_FAILED)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(self.coordinator.pending_requests(), [])

    def test_rpc_down_on_register(self):
        self.rpc_down = True
        with self.assertRaises(TimeLockError) as ctx:
            self.coordinator.register_unlock(CID, 1010, 500_000)
        self.assertEqual(ctx.exception.code, ErrorCode.TIMELOCK_REGISTRATION_FAILED)
        self.assertIsNone(self.submitted)

    def test_rpc_down_on_query(self):
        request_id = self.coordinator.register_unlock(CID, 1010, 500_000)
        self.rpc_down = True
        with self.assertRaises(TimeLockError) as ctx:
            self.coordinator.query_unlock_state(request_id)
        self.assertEqual(ctx.exception.code, ErrorCode.TIMELOCK_NETWORK_UNAVAILABLE)
        self.assertTrue(ctx.exception.retryable)

    def test_relay_down_on_query(self):
        request_id = self.coordinator.register_unlock(CID, 1010, 500_000)
        self.relay_status = 503
        with self.assertRaises(TimeLockError) as ctx:
            self.coordinator.query_unlock_state(request_id)
        self.assertEqual(ctx.exception.code, ErrorCode.TIMELOCK_NETWORK_UNAVAILABLE)

    def test_malformed_rpc_result(self):
        self.session.request.side_effect = lambda *a, **kw: response({"result": "not-hex"})
        with self.assertRaises(NetworkError):
            self.network.current_block_height()

    def test_missing_request_id(self):
        self.session.request.side_effect = lambda *a, **kw: response({"status": "queued"})
        with self.assertRaises(NetworkError):
            self.network.submit(UnlockSubmission(CID, 1010, 500_000))

    def test_verify_key_must_be_32_bytes(self):
        with self.assertRaises(ValueError):
            RelayBlocklockNetwork(self.chain, RELAY, b"\x00" * 31, session=self.session)


class TestGetNetwork(unittest.TestCase):

    def setUp(self):
        self.key = bytes(SigningKey(b"\x33" * 32).verify_key)

    def test_relay_from_config(self):
        with mock.patch.multiple(
            "unikyc.config",
            BLOCKLOCK_NETWORK="relay",
            BLOCKLOCK_RELAY_URL=RELAY + "/",
            BLOCKLOCK_VERIFY_KEY=b64e(self.key),
            BLOCKLOCK_TIMEOUT_SECONDS=3.0,
        ):
            network = get_network(chain=get_chain("baseSepolia"))
        self.assertIsInstance(network, RelayBlocklockNetwork)
        self.assertEqual(network.verify_key(), self.key)
        self.assertEqual(network.relay_url, RELAY)
        self.assertEqual(network.timeout, 3.0)
        self.assertEqual(network.chain.chain_id, 84532)

    def test_relay_needs_url_and_key(self):
        for url, key in ((RELAY, ""), ("", b64e(self.key))):
            with mock.patch.multiple("unikyc.config", BLOCKLOCK_RELAY_URL=url, BLOCKLOCK_VERIFY_KEY=key):
                with self.assertRaises(ValueError):
                    get_network("relay")

    def test_simulated_refused_in_prod(self):
        with mock.patch("unikyc.config.ENV", "prod"):
            with self.assertRaises(ValueError):
                get_network("simulated")

    def test_simulated_outside_prod(self):
        with mock.patch("unikyc.config.ENV", "dev"):
            self.assertIsInstance(get_network("simulated"), SimulatedBlocklockNetwork)

    def test_unknown_backend(self):
        with self.assertRaises(ValueError):
            get_network("carrier-pigeon")


if __name__ == "__main__":
    unittest.main()
