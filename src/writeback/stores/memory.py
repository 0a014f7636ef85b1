"""In-memory RemoteStore for tests and local development.

Versions are SHA-256 hashes of the document bytes, the same shape of token
a content-addressed store hands out. ``put_external()`` simulates another
writer changing a document behind the datastore's back.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import deque

from writeback.remote_store import StoreConflictError, StoredDocument, VersionToken

logger = logging.getLogger(__name__)


def content_version(document: bytes) -> VersionToken:
    return hashlib.sha256(document).hexdigest()


class MemoryStore:
    """Dict-backed store with conditional writes and fault injection.

    - ``fail_next(exc)`` makes the next read or write raise ``exc``
      (``operation`` narrows it to ``"read"`` or ``"write"``).
    - ``latency`` adds an ``asyncio.sleep`` before every operation.
    - ``writes`` records ``(key, expected_version, message)`` per attempt.
    """

    def __init__(
        self,
        documents: dict[str, bytes] | None = None,
        latency: float = 0.0,
    ) -> None:
        self._docs: dict[str, StoredDocument] = {
            key: StoredDocument(doc, content_version(doc))
            for key, doc in (documents or {}).items()
        }
        self.latency = latency
        self.reads = 0
        self.writes: list[tuple[str, VersionToken | None, str]] = []
        self._faults: deque[tuple[str | None, BaseException]] = deque()

    def fail_next(self, exc: BaseException, operation: str | None = None) -> None:
        self._faults.append((operation, exc))

    def _maybe_fail(self, operation: str) -> None:
        if self._faults and self._faults[0][0] in (None, operation):
            _, exc = self._faults.popleft()
            raise exc

    async def _pause(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)

    async def read(self, key: str) -> StoredDocument | None:
        self.reads += 1
        await self._pause()
        self._maybe_fail("read")
        return self._docs.get(key)

    async def write_if_match(
        self,
        key: str,
        document: bytes,
        expected_version: VersionToken | None,
        message: str,
    ) -> VersionToken:
        self.writes.append((key, expected_version, message))
        await self._pause()
        self._maybe_fail("write")
        current = self._docs.get(key)
        current_version = current.version if current else None
        if expected_version != current_version:
            raise StoreConflictError(
                f"{key}: expected version {expected_version}, store has {current_version}",
                status_code=409,
            )
        version = content_version(document)
        self._docs[key] = StoredDocument(document, version)
        logger.debug("Stored %s at version %s (%s).", key, version, message)
        return version

    # -- test/dev helpers -------------------------------------------------------

    def put_external(self, key: str, document: bytes) -> VersionToken:
        """Overwrite a document as an out-of-band writer would."""
        version = content_version(document)
        self._docs[key] = StoredDocument(document, version)
        return version

    def delete_external(self, key: str) -> None:
        self._docs.pop(key, None)

    def document(self, key: str) -> bytes | None:
        doc = self._docs.get(key)
        return None if doc is None else doc.content

    def version(self, key: str) -> VersionToken | None:
        doc = self._docs.get(key)
        return None if doc is None else doc.version
