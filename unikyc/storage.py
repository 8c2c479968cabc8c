"""
Content-addressed storage backends for UniKYC.

The lifecycle engine only needs put(bytes) -> content id and
get(content id) -> bytes. Any backend failure surfaces as
StorageUnavailable, which callers may retry with backoff.

Remote backends take an explicit StorageSpace handle owned by the caller.
The handle initializes its HTTP session on first use, so constructing one
has no side effects and nothing depends on process-wide setup order.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import requests

from .errors import StorageUnavailable
from .hashing import content_id

logger = logging.getLogger(__name__)


class ContentStore(ABC):
    """Interface for content-addressed blob storage."""

    @abstractmethod
    def put(self, data: bytes) -> str:
        """Store ``data`` and return its content id."""
        pass

    @abstractmethod
    def get(self, cid: str) -> bytes:
        """Return the blob for ``cid``."""
        pass


class InMemoryContentStore(ContentStore):
    """
    In-memory store for development/testing.

    ``fail_next`` makes the following put/get calls raise
    StorageUnavailable, to exercise retry paths.
    """

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.fail_next = 0

    def _maybe_fail(self) -> None:
        if self.fail_next > 0:
            self.fail_next -= 1
            raise StorageUnavailable("in-memory store unavailable (injected)")

    def put(self, data: bytes) -> str:
        with self._lock:
            self._maybe_fail()
            cid = content_id(data)
            self._blobs[cid] = bytes(data)
            return cid

    def get(self, cid: str) -> bytes:
        with self._lock:
            self._maybe_fail()
            try:
                return self._blobs[cid]
            except KeyError:
                raise StorageUnavailable(f"content {cid} not found", cid=cid)

    def __contains__(self, cid: str) -> bool:
        with self._lock:
            return cid in self._blobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)


class StorageSpace:
    """
    Caller-owned handle to a remote storage space.

    The session is created lazily on first access and reused afterwards.
    """

    def __init__(
        self,
        name: str,
        email: Optional[str] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ):
        self.name = name
        self.email = email
        self._session_factory = session_factory
        self._session: Optional[requests.Session] = None
        self._lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._session is not None

    @property
    def session(self) -> requests.Session:
        with self._lock:
            if self._session is None:
                logger.info("Initializing storage space %s", self.name)
                self._session = self._session_factory()
            return self._session

    def close(self) -> None:
        with self._lock:
            if self._session is not None:
                self._session.close()
                self._session = None


class GatewayContentStore(ContentStore):
    """
    Upload endpoint + IPFS-style gateway backend.

    put() posts the blob as multipart/form-data to ``upload_url`` and
    expects ``{"cid": ...}`` back. get() fetches ``gateway_template``
    formatted with the cid.
    """

    def __init__(
        self,
        space: StorageSpace,
        upload_url: str,
        gateway_template: str = "https://{cid}.ipfs.storacha.link/",
        timeout: float = 10.0,
    ):
        self.space = space
        self.upload_url = upload_url
        self.gateway_template = gateway_template
        self.timeout = timeout

    def gateway_url(self, cid: str) -> str:
        return self.gateway_template.format(cid=cid)

    def put(self, data: bytes) -> str:
        form: Dict[str, Any] = {"space": self.space.name}
        if self.space.email:
            form["email"] = self.space.email
        try:
            r = self.space.session.post(
                self.upload_url,
                files={"file": ("payload.bin", data, "application/octet-stream")},
                data=form,
                timeout=self.timeout,
            )
            r.raise_for_status()
            cid = r.json().get("cid")
        except (requests.RequestException, ValueError) as e:
            raise StorageUnavailable(f"upload failed: {e}")
        if not cid:
            raise StorageUnavailable("upload response carried no cid")
        return str(cid)

    def get(self, cid: str) -> bytes:
        try:
            r = self.space.session.get(self.gateway_url(cid), timeout=self.timeout)
            r.raise_for_status()
        except requests.RequestException as e:
            raise StorageUnavailable(f"fetch of {cid} failed: {e}", cid=cid)
        return r.content


class S3ContentStore(ContentStore):
    """
    Stores each blob as an object keyed by its content id.
    Requires boto3 (``pip install unikyc[s3]``).
    """

    def __init__(self, bucket: str, prefix: str = "unikyc/payloads/", client: Any = None):
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/"
        self._client = client

    def _get_client(self):
        """Lazy-load boto3 client."""
        if self._client is None:
            try:
                import boto3
            except ImportError as e:
                raise RuntimeError("boto3 required for S3 storage. Install with: pip install boto3") from e
            self._client = boto3.client("s3")
        return self._client

    def put(self, data: bytes) -> str:
        cid = content_id(data)
        try:
            self._get_client().put_object(
                Bucket=self.bucket,
                Key=self.prefix + cid,
                Body=data,
                ContentType="application/octet-stream",
            )
        except Exception as e:
            raise StorageUnavailable(f"S3 put failed: {e}", cid=cid) from e
        return cid

    def get(self, cid: str) -> bytes:
        try:
            resp = self._get_client().get_object(Bucket=self.bucket, Key=self.prefix + cid)
            return resp["Body"].read()
        except Exception as e:
            raise StorageUnavailable(f"S3 get failed: {e}", cid=cid) from e


def get_content_store(backend: Optional[str] = None, space: Optional[StorageSpace] = None) -> ContentStore:
    """
    Factory for the configured content store.

    Args:
        backend: "memory", "gateway" or "s3" (default: UNIKYC_STORAGE_BACKEND)
        space: storage handle for the gateway backend; one is created from
            configuration if not given
    """
    from . import config

    backend = backend or config.STORAGE_BACKEND
    if backend == "gateway":
        if not config.STORAGE_UPLOAD_URL:
            raise ValueError("UNIKYC_STORAGE_UPLOAD_URL required for gateway storage")
        space = space or StorageSpace(config.STORAGE_SPACE, email=os.getenv("STORACHA_DEFAULT_EMAIL"))
        return GatewayContentStore(
            space=space,
            upload_url=config.STORAGE_UPLOAD_URL,
            gateway_template=config.STORAGE_GATEWAY_TEMPLATE,
            timeout=config.STORAGE_TIMEOUT_SECONDS,
        )
    if backend == "s3":
        if not config.S3_BUCKET:
            raise ValueError("S3_BUCKET required for s3 storage")
        return S3ContentStore(bucket=config.S3_BUCKET, prefix=config.S3_PREFIX)
    return InMemoryContentStore()
