"""
Content store tests. Remote backends run against mocked HTTP/S3 clients.
"""

import io
import unittest
from unittest import mock

import requests

from unikyc.errors import ErrorCode, StorageUnavailable
from unikyc.hashing import content_id
from unikyc.storage import (
    GatewayContentStore,
    InMemoryContentStore,
    S3ContentStore,
    StorageSpace,
    get_content_store,
)


class TestInMemoryContentStore(unittest.TestCase):

    def test_put_get(self):
        store = InMemoryContentStore()
        cid = store.put(b"ciphertext")
        self.assertEqual(cid, content_id(b"ciphertext"))
        self.assertEqual(store.get(cid), b"ciphertext")
        self.assertIn(cid, store)

    def test_same_content_same_id(self):
        store = InMemoryContentStore()
        self.assertEqual(store.put(b"x"), store.put(b"x"))
        self.assertEqual(len(store), 1)

    def test_missing_content(self):
        with self.assertRaises(StorageUnavailable) as ctx:
            InMemoryContentStore().get("sha256-00")
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.code, ErrorCode.STORAGE_UNAVAILABLE)

    def test_injected_failure(self):
        store = InMemoryContentStore()
        store.fail_next = 1
        with self.assertRaises(StorageUnavailable):
            store.put(b"x")
        self.assertTrue(store.put(b"x"))


class TestStorageSpace(unittest.TestCase):

    def test_session_is_lazy(self):
        factory = mock.Mock(return_value=mock.Mock(spec=requests.Session))
        space = StorageSpace("unikyc-space", session_factory=factory)
        self.assertFalse(space.initialized)
        factory.assert_not_called()

        first = space.session
        second = space.session
        self.assertIs(first, second)
        factory.assert_called_once_with()
        self.assertTrue(space.initialized)

        space.close()
        first.close.assert_called_once_with()
        self.assertFalse(space.initialized)


class TestGatewayContentStore(unittest.TestCase):

    def setUp(self):
        self.session = mock.Mock(spec=requests.Session)
        self.space = StorageSpace("unikyc-space", email="ops@example.com", session_factory=lambda: self.session)
        self.store = GatewayContentStore(self.space, upload_url="https://upload.example/api")

    def test_put_posts_multipart(self):
        response = mock.Mock()
        response.json.return_value = {"cid": "bafyexample"}
        self.session.post.return_value = response

        self.assertEqual(self.store.put(b"ciphertext"), "bafyexample")

        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://upload.example/api")
        self.assertEqual(kwargs["files"]["file"][1], b"ciphertext")
        self.assertEqual(kwargs["data"], {"space": "unikyc-space", "email": "ops@example.com"})

    def test_put_without_cid(self):
        response = mock.Mock()
        response.json.return_value = {}
        self.session.post.return_value = response
        with self.assertRaises(StorageUnavailable):
            self.store.put(b"ciphertext")

    def test_put_http_error(self):
        response = mock.Mock()
        response.raise_for_status.side_effect = requests.HTTPError("500 Server Error")
        self.session.post.return_value = response
        with self.assertRaises(StorageUnavailable):
            self.store.put(b"ciphertext")

    def test_get_uses_gateway(self):
        response = mock.Mock(content=b"ciphertext")
        self.session.get.return_value = response
        self.assertEqual(self.store.get("bafyexample"), b"ciphertext")
        self.assertEqual(self.session.get.call_args[0][0], "https://bafyexample.ipfs.storacha.link/")

    def test_get_connection_error(self):
        self.session.get.side_effect = requests.ConnectionError("unreachable")
        with self.assertRaises(StorageUnavailable) as ctx:
            self.store.get("bafyexample")
        self.assertEqual(ctx.exception.details["cid"], "bafyexample")


class TestS3ContentStore(unittest.TestCase):

    def test_put_get(self):
        client = mock.Mock()
        client.get_object.return_value = {"Body": io.BytesIO(b"ciphertext")}
        store = S3ContentStore(bucket="kyc", prefix="payloads", client=client)

        cid = store.put(b"ciphertext")
        self.assertEqual(client.put_object.call_args.kwargs["Key"], "payloads/" + cid)
        self.assertEqual(store.get(cid), b"ciphertext")

    def test_client_errors_wrapped(self):
        client = mock.Mock()
        client.get_object.side_effect = RuntimeError("NoSuchKey")
        with self.assertRaises(StorageUnavailable):
            S3ContentStore(bucket="kyc", client=client).get("sha256-00")


class TestFactory(unittest.TestCase):

    def test_default_is_memory(self):
        self.assertIsInstance(get_content_store("memory"), InMemoryContentStore)

    def test_gateway_requires_upload_url(self):
        with mock.patch("unikyc.config.STORAGE_UPLOAD_URL", ""):
            with self.assertRaises(ValueError):
                get_content_store("gateway")

    def test_gateway_uses_given_space(self):
        space = StorageSpace("custom")
        with mock.patch("unikyc.config.STORAGE_UPLOAD_URL", "https://upload.example/api"):
            store = get_content_store("gateway", space=space)
        self.assertIs(store.space, space)
        self.assertFalse(space.initialized)


if __name__ == "__main__":
    unittest.main()
