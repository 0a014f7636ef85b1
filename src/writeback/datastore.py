"""Write-back datastore: read-your-writes cache over a conditional-write store.

The cache is the hot path for all reads and updates. The remote store is the
durable copy, updated asynchronously by the reconciliation queue. Conflicting
writes are rebased onto the latest remote document and retried; anything
still unpersisted at shutdown goes to the journal.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Iterable

from writeback.cache_entry import CacheEntry, Copier, HistoryHook
from writeback.codec import CodecError
from writeback.config import DatastoreConfig
from writeback.constants import PersistState
from writeback.journal import FileJournalStorage, Journal, JournalEntry
from writeback.mutation import Mutation, add_history
from writeback.reconciliation import ReconciliationQueue
from writeback.remote_store import StoreConflictError, StoreError, VersionToken

if TYPE_CHECKING:
    from writeback.codec import Codec
    from writeback.remote_store import RemoteStore

logger = logging.getLogger(__name__)

AlertHook = Callable[[str, str, BaseException | None], None]


class DatastoreError(Exception):
    """Raised to ``get``/``set`` callers; ``errors`` holds every collected cause."""

    def __init__(self, message: str, errors: Iterable[BaseException] = ()) -> None:
        self.errors = list(errors)
        if self.errors:
            message = f"{message}: " + "; ".join(str(e) or type(e).__name__ for e in self.errors)
        super().__init__(message)


def _is_retryable(error: BaseException) -> bool:
    if isinstance(error, StoreError):
        return error.retryable
    return isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError))


class Datastore:
    """Cache of entities with write-behind persistence to a RemoteStore.

    - ``get()`` returns the cached value, reading through on miss or refresh.
    - ``set()`` applies a Mutation in memory, returns the result immediately
      and queues a reconciliation that writes it to the store.
    - One entity type per instance: ``codec`` and ``default_factory`` apply
      to every key.
    - ``load_journal()`` / ``replay_journal()`` / ``save_journal()`` recover
      unpersisted updates across restarts.
    """

    def __init__(
        self,
        store: RemoteStore,
        codec: Codec[Any],
        queue: ReconciliationQueue | None = None,
        *,
        journal: Journal | None = None,
        config: DatastoreConfig | None = None,
        default_factory: Callable[[str], Any] | None = None,
        copier: Copier = copy.deepcopy,
        history: HistoryHook | None = add_history,
        alert: AlertHook | None = None,
    ) -> None:
        self._config = config or DatastoreConfig()
        self._store = store
        self._codec = codec
        self._queue = queue or ReconciliationQueue(self._config.retry_delays_secs)
        if journal is None and self._config.journal_path:
            journal = Journal(FileJournalStorage(self._config.journal_path))
        self._journal = journal
        self._default_factory = default_factory
        self._copy = copier
        self._history = history
        self._alert = alert
        self._entries: dict[str, CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._journaled: list[str] = []
        self._abandoned: set[str] = set()
        self._retry_task: asyncio.Task[None] | None = None
        self._last_expiry_check: float = time.monotonic()
        self._total_writes = 0
        self._total_conflicts = 0
        self._total_retries = 0
        self._total_failures = 0

    def _get_lock(self, key: str) -> asyncio.Lock:
        """Get or create a per-key lock."""
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def _entry(self, key: str) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key, copier=self._copy, history=self._history)
            self._entries[key] = entry
        return entry

    def _is_busy(self, key: str) -> bool:
        """True while a read-through for ``key`` holds its lock."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def _maybe_expire(self) -> None:
        """Drop idle entries with nothing to persist, at most once per TTL."""
        ttl = self._config.entry_ttl_secs
        if ttl is None:
            return
        now = time.monotonic()
        if now - self._last_expiry_check < ttl:
            return
        self._last_expiry_check = now
        expired = [
            key for key, entry in self._entries.items()
            if not entry.has_pending and not self._is_busy(key)
            and now - entry.last_access >= ttl
        ]
        for key in expired:
            del self._entries[key]
            self._locks.pop(key, None)
        if expired:
            logger.debug("Expired %d idle cache entr%s.", len(expired), "y" if len(expired) == 1 else "ies")

    # -- reads ----------------------------------------------------------------

    async def get(self, key: str, refresh: bool = False, create: bool = False) -> Any:
        """Return a copy of the entity, or None if it does not exist.

        With ``refresh`` the store is read even on a cache hit. With
        ``create`` a missing entity is materialized from ``default_factory``
        (it is written to the store with the first update).
        Raises DatastoreError for anything other than "not found".
        """
        self._maybe_expire()
        entry = self._entry(key)
        if entry.has_value and not refresh:
            return entry.get_value()

        errors: list[BaseException] = []
        async with self._get_lock(key):
            # another caller may have loaded it while we waited
            if entry.has_value and not refresh:
                return entry.get_value()
            result = await self._read_into(entry, create, errors)
        if errors:
            raise DatastoreError(f"Unable to read {key}", errors)
        return result

    async def _read_into(
        self, entry: CacheEntry, create: bool, errors: list[BaseException],
    ) -> Any:
        """Read ``entry.key`` from the store into the entry. Errors are collected, not raised."""
        try:
            doc = await self._store.read(entry.key)
        except Exception as exc:
            logger.warning("Failed to read %s from store: %s", entry.key, exc)
            errors.append(exc)
            return None

        if doc is not None:
            try:
                value = self._codec.decode(doc.content)
            except CodecError as exc:
                logger.error("Stored document for %s cannot be decoded: %s", entry.key, exc)
                errors.append(exc)
                return None
            return entry.refresh(value, doc.version)

        if entry.has_pending:
            # created here and not written yet
            return entry.get_value()
        if not create:
            return None
        if self._default_factory is None:
            errors.append(LookupError(f"{entry.key} not found and no default_factory is configured"))
            return None
        return entry.refresh(self._default_factory(entry.key), None)

    # -- updates --------------------------------------------------------------

    async def set(self, key: str, mutation: Mutation) -> Any:
        """Apply ``mutation`` to the cached entity and queue it for persistence.

        Returns a copy of the updated value without waiting for the store.
        Loads (or creates) the entity first if it is not cached.
        """
        if mutation is None:
            raise ValueError("A mutation is required")
        self._maybe_expire()
        entry = self._entry(key)
        if not entry.has_value:
            errors: list[BaseException] = []
            async with self._get_lock(key):
                if not entry.has_value:
                    await self._read_into(entry, True, errors)
            if errors:
                raise DatastoreError(f"Unable to load {key} for update", errors)
            if not entry.has_value:
                raise DatastoreError(f"Unable to load or create {key}")

        # re-register in case the entry was dropped while the load was in progress
        entry = self._entries.setdefault(key, entry)
        result = entry.apply_mutation(mutation)
        self._queue.enqueue(key, functools.partial(self.persist, key, 0))
        return result

    def clear_cache(self, key: str) -> bool:
        """Forget the cached entity. Refused while it has unpersisted updates."""
        entry = self._entries.get(key)
        if entry is None:
            return True
        if entry.has_pending:
            logger.warning(
                "Not clearing %s: %d unpersisted update(s).",
                key, len(entry.describe_pending()),
            )
            return False
        if self._is_busy(key):
            logger.warning("Not clearing %s: a load is in progress.", key)
            return False
        del self._entries[key]
        self._locks.pop(key, None)
        return True

    # -- persistence ----------------------------------------------------------

    async def persist(self, key: str, retry_count: int = 0) -> None:
        """Write pending updates for ``key`` to the store.

        Runs on the reconciliation queue. Never raises: conflicts are rebased
        and re-queued, transient errors retried with backoff, everything else
        logged and sent to the alert hook.
        """
        entry = self._entries.get(key)
        if entry is None:
            logger.error("No cache entry for %s; queued updates cannot be persisted.", key)
            return
        if self._config.dry_run:
            if entry.has_pending:
                logger.info("Dry run: not persisting %s (%s).", key, "; ".join(entry.describe_pending()))
            return

        snapshot = entry.begin_persist_attempt()
        if snapshot is None:
            return

        try:
            document = self._codec.encode(snapshot)
        except CodecError as exc:
            self._fail(entry, exc, "Failed to serialize data for persistence")
            return

        message = entry.commit_message()
        error: BaseException
        try:
            version = await self._store.write_if_match(
                key, document, entry.in_flight_version, message
            )
        except StoreConflictError as exc:
            self._total_conflicts += 1
            logger.info("Conflict persisting %s (%s); re-reading.", key, exc)
            read_error = await self._rebase(entry)
            if read_error is None:
                return
            error = read_error
        except Exception as exc:
            error = exc
        else:
            entry.complete_persist_attempt(snapshot, version)
            self._abandoned.discard(key)
            self._total_writes += 1
            logger.info("Persisted %s at version %s (%s).", key, version, message)
            return

        if _is_retryable(error) and retry_count < self._config.max_persist_retries:
            self._total_retries += 1
            logger.info(
                "Transient error persisting %s, scheduling retry #%d: %s",
                key, retry_count + 1, error,
            )
            entry.mark_retry_scheduled()
            self._queue.schedule_retry(key, functools.partial(self.persist, key), retry_count)
            return

        self._fail(
            entry, error,
            f"Non-retriable error during persistence (retry #{retry_count + 1})",
        )

    async def _rebase(self, entry: CacheEntry) -> BaseException | None:
        """Re-read after a conflict and rebase. Returns the read error, if any."""
        key = entry.key
        try:
            doc = await self._store.read(key)
            remote = None if doc is None else self._codec.decode(doc.content)
        except Exception as exc:
            logger.warning("Unable to re-read %s after conflict: %s", key, exc)
            return exc

        version: VersionToken | None = None
        if doc is None:
            # deleted out-of-band: start again from a fresh record
            if self._default_factory is None:
                return LookupError(f"{key} disappeared from the store and no default_factory is configured")
            remote = self._default_factory(key)
        else:
            version = doc.version

        entry.rebase_on_conflict(remote, version)
        logger.info(
            "Rebased %s onto version %s with %d update(s).",
            key, version, len(entry.describe_pending()),
        )
        self._queue.enqueue(key, functools.partial(self.persist, key, 0))
        return None

    def _fail(self, entry: CacheEntry, error: BaseException, summary: str) -> None:
        """Stop trying to persist the current batch and tell the operator."""
        entry.abandon_persist_attempt(error)
        self._abandoned.add(entry.key)
        self._total_failures += 1
        pending = entry.describe_pending()
        message = (
            f"{summary}. Data may be lost: {len(pending)} update(s) for {entry.key} "
            f"remain in memory but are not persisted ({'; '.join(pending)}). Error: {error}"
        )
        logger.error(message)
        if self._alert is not None:
            try:
                self._alert(entry.key, message, error)
            except Exception:
                logger.exception("Alert hook failed for %s.", entry.key)

    # -- abandoned keys -------------------------------------------------------

    @property
    def abandoned_keys(self) -> list[str]:
        """Keys whose updates could not be persisted and are not being retried."""
        return sorted(self._abandoned)

    async def retry_abandoned(self) -> int:
        """Queue a fresh persistence attempt for every abandoned key."""
        keys = sorted(self._abandoned)
        self._abandoned.clear()
        for key in keys:
            logger.info("Retrying abandoned updates for %s.", key)
            self._queue.enqueue(key, functools.partial(self.persist, key, 0))
        return len(keys)

    async def start_background_retry(self) -> None:
        """Start periodic retries of abandoned keys, if configured."""
        interval = self._config.abandoned_retry_interval_secs
        if self._retry_task is not None or not interval:
            return
        self._retry_task = asyncio.create_task(self._background_retry_loop(interval))

    async def _background_retry_loop(self, interval: float) -> None:
        """Periodically re-queue abandoned keys until cancelled."""
        logger.info("Background retry of abandoned updates started (interval=%ss).", interval)
        try:
            while True:
                await asyncio.sleep(interval)
                count = await self.retry_abandoned()
                if count > 0:
                    logger.info("Background retry: re-queued %d abandoned key(s).", count)
        except asyncio.CancelledError:
            pass

    async def _stop_background_retry(self) -> None:
        if self._retry_task is not None:
            self._retry_task.cancel()
            try:
                await self._retry_task
            except asyncio.CancelledError:
                pass
            self._retry_task = None

    # -- journal --------------------------------------------------------------

    async def load_journal(self) -> int:
        """Prime the cache with journaled entities. Nothing is queued yet.

        Each journaled document becomes a pending "restore" update, so
        ``replay_journal()`` writes it back (rebasing onto the remote
        version if the store moved on in the meantime).
        """
        if self._journal is None:
            return 0
        loaded = 0
        for key, journaled in (await self._journal.load()).items():
            try:
                value = self._codec.decode(journaled.document)
            except CodecError:
                logger.error(
                    "Unable to decode journal entry for %s; dropping %d update(s): %s",
                    key, len(journaled.pending), journaled.pending, exc_info=True,
                )
                continue
            entry = self._entry(key)
            if not entry.has_value:
                entry.refresh(value, journaled.version)
            entry.apply_mutation(self._restore_mutation(value, journaled))
            if key not in self._journaled:
                self._journaled.append(key)
            loaded += 1
        logger.info("Loaded %d journal entr%s.", loaded, "y" if loaded == 1 else "ies")
        return loaded

    def _restore_mutation(self, value: Any, journaled: JournalEntry) -> Mutation:
        copier = self._copy
        summary = "; ".join(journaled.pending) or "unpersisted changes"
        return Mutation(
            apply=lambda _current: copier(value),
            description=f"Restore from journal: {summary}",
            replaces=True,
        )

    async def replay_journal(self) -> int:
        """Queue persistence for every key loaded from the journal."""
        keys, self._journaled = self._journaled, []
        for key in keys:
            self._queue.enqueue(key, functools.partial(self.persist, key, 0))
        if keys:
            logger.info("Replaying %d journaled key(s).", len(keys))
        return len(keys)

    async def save_journal(self) -> int:
        """Write every entity with unpersisted updates to the journal.

        Always writes, even when nothing is pending, so a stale journal
        from an earlier run is cleared.
        """
        if self._journal is None:
            return 0
        entries: dict[str, JournalEntry] = {}
        for key, entry in list(self._entries.items()):
            snapshot = entry.journal_snapshot()
            if snapshot is None:
                continue
            value, version, pending = snapshot
            try:
                document = self._codec.encode(value)
            except CodecError:
                logger.error(
                    "Unable to journal %s; %d unpersisted update(s) will be lost: %s",
                    key, len(pending), pending, exc_info=True,
                )
                continue
            entries[key] = JournalEntry(document=document, version=version, pending=pending)
        await self._journal.save(entries)
        logger.info("Saved %d entr%s to journal.", len(entries), "y" if len(entries) == 1 else "ies")
        return len(entries)

    # -- lifecycle ------------------------------------------------------------

    async def stop(self) -> None:
        """Stop background work, drain the queue, then save the journal."""
        await self._stop_background_retry()
        await self._queue.stop(self._config.shutdown_timeout_secs)
        await self.save_journal()

    @property
    def size(self) -> int:
        """Number of entries currently in cache."""
        return len(self._entries)

    @property
    def pending_count(self) -> int:
        """Number of entries with unpersisted updates."""
        return sum(1 for e in self._entries.values() if e.has_pending)

    def state(self, key: str) -> PersistState | None:
        """Persistence state of ``key`` (None if not cached)."""
        entry = self._entries.get(key)
        return None if entry is None else entry.state

    def health(self) -> dict[str, object]:
        """Return cache health metrics for monitoring."""
        return {
            "cache_size": self.size,
            "pending_entries": self.pending_count,
            "abandoned_keys": self.abandoned_keys,
            "journaled_awaiting_replay": len(self._journaled),
            "total_writes": self._total_writes,
            "total_conflicts": self._total_conflicts,
            "total_retries": self._total_retries,
            "total_failures": self._total_failures,
            "dry_run": self._config.dry_run,
            "background_retry_running": self._retry_task is not None
                                        and not self._retry_task.done(),
            "queue": self._queue.health(),
        }
