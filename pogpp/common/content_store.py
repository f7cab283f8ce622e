"""Content-addressed storage client (IPFS Kubo HTTP API).

`put` returns the CID of the bytes; identical bytes always give the same CID
(CIDv1, raw leaves), which is what makes re-fetch-and-rehash integrity checks
meaningful.
"""

import time

import httpx

from pogpp.common.config import settings
from pogpp.common.errors import ContentStoreUnavailable
from pogpp.common.logging import logger
from pogpp.common.metrics import content_store_call_seconds
from pogpp.common.retry import call_with_retry


class ContentMissing(LookupError):
    """The store answered but has no object for the reference."""


def token_uri(ref: str) -> str:
    """Public URI for a stored object, used as the NFT token URI."""

    return f"ipfs://{ref}"


class IpfsContentStore:
    """Blocking put/get against an IPFS node with bounded retries."""

    def __init__(
        self, api_url: str | None = None, timeout: float | None = None, transport: httpx.BaseTransport | None = None
    ) -> None:
        self.api_url = (api_url or settings.ipfs_api_url).rstrip("/")
        self.timeout = timeout or settings.ipfs_timeout_seconds
        self.transport = transport

    def _add(self, data: bytes) -> str:
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            resp = client.post(
                f"{self.api_url}/api/v0/add",
                params={"cid-version": 1, "raw-leaves": "true", "pin": "true"},
                files={"file": ("payload.json", data, "application/json")},
            )
        if resp.status_code >= 400:
            raise ContentStoreUnavailable(f"ipfs add failed (status={resp.status_code})")
        ref = resp.json().get("Hash")
        if not isinstance(ref, str) or not ref:
            raise ContentStoreUnavailable("ipfs add response malformed")
        return ref

    def _cat(self, ref: str) -> bytes:
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            resp = client.post(f"{self.api_url}/api/v0/cat", params={"arg": ref})
        if resp.status_code >= 500:
            raise ContentStoreUnavailable(f"ipfs cat failed ref={ref} (status={resp.status_code})")
        if resp.status_code >= 400:
            raise ContentMissing(ref)
        return resp.content

    def _call(self, operation: str, fn):
        start = time.perf_counter()
        try:
            return call_with_retry(
                fn,
                dependency="content_store",
                retry_on=(httpx.TransportError, ContentStoreUnavailable),
            )
        except httpx.TransportError as exc:
            logger.error("content store %s unreachable: %s", operation, exc)
            raise ContentStoreUnavailable(f"ipfs {operation} unreachable: {exc}") from exc
        finally:
            content_store_call_seconds.labels(service=settings.service_name, operation=operation).observe(
                time.perf_counter() - start
            )

    def put(self, data: bytes) -> str:
        ref = self._call("put", lambda: self._add(data))
        logger.info("content stored ref=%s size=%s", ref, len(data))
        return ref

    def get(self, ref: str) -> bytes:
        return self._call("get", lambda: self._cat(ref))
