"""writeback: read-your-writes entity cache over a conditional-write document store.

Updates are applied in memory and persisted asynchronously, with optimistic
concurrency, conflict rebase, retry with backoff and a crash-recovery journal.
"""

__version__ = "0.1.0"

from writeback.cache_entry import CacheEntry
from writeback.codec import Codec, CodecError, JsonCodec
from writeback.config import DatastoreConfig
from writeback.constants import PersistState, RETRY_DELAYS_SECS
from writeback.datastore import Datastore, DatastoreError
from writeback.journal import FileJournalStorage, Journal, JournalEntry, JournalError, MemoryJournalStorage
from writeback.mutation import Mutation
from writeback.reconciliation import ReconciliationQueue
from writeback.records import MemberRecord
from writeback.remote_store import (
    RemoteStore,
    StoreAuthError,
    StoreConflictError,
    StoreConnectionError,
    StoredDocument,
    StoreError,
    StoreRateLimitError,
    StoreServerError,
    StoreTimeoutError,
)
from writeback.stores import GitHubContentStore, MemoryStore

__all__ = [
    "CacheEntry",
    "Codec",
    "CodecError",
    "JsonCodec",
    "DatastoreConfig",
    "PersistState",
    "RETRY_DELAYS_SECS",
    "Datastore",
    "DatastoreError",
    "FileJournalStorage",
    "Journal",
    "JournalEntry",
    "JournalError",
    "MemoryJournalStorage",
    "Mutation",
    "ReconciliationQueue",
    "MemberRecord",
    "RemoteStore",
    "StoreAuthError",
    "StoreConflictError",
    "StoreConnectionError",
    "StoredDocument",
    "StoreError",
    "StoreRateLimitError",
    "StoreServerError",
    "StoreTimeoutError",
    "GitHubContentStore",
    "MemoryStore",
]
