"""Abstract remote document store and its error taxonomy.

Defines the RemoteStore Protocol that the Datastore depends on.
Concrete implementations live in ``writeback.stores``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

VersionToken = str


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class StoreError(Exception):
    """Base exception for remote store operations (not retryable)."""

    retryable = False

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StoreAuthError(StoreError):
    """401/403: authentication or authorization failure."""


class StoreConflictError(StoreError):
    """Expected version did not match the stored document."""


class StoreServerError(StoreError):
    """5xx: server-side error (retryable)."""

    retryable = True


class StoreConnectionError(StoreError):
    """Network/DNS failure (retryable)."""

    retryable = True


class StoreTimeoutError(StoreError):
    """Request timeout (retryable)."""

    retryable = True


class StoreRateLimitError(StoreError):
    """429, or 403 with an exhausted rate limit (retryable)."""

    retryable = True


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StoredDocument:
    """A whole document as read from the store, with its version token."""

    content: bytes
    version: VersionToken


@runtime_checkable
class RemoteStore(Protocol):
    """Async whole-document store with conditional writes.

    ``read`` returns None when the document does not exist.
    ``write_if_match`` raises StoreConflictError when ``expected_version``
    is stale; ``expected_version=None`` means the document is being created.
    """

    async def read(self, key: str) -> StoredDocument | None: ...

    async def write_if_match(
        self,
        key: str,
        document: bytes,
        expected_version: VersionToken | None,
        message: str,
    ) -> VersionToken: ...
