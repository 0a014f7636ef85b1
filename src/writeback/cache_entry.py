"""Per-key cache entry: current value, pending mutations, in-flight write.

All public methods take the entry lock, so a single entry can be shared by
request handlers and the reconciliation queue without further locking.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from typing import Any, Callable

from writeback.constants import PersistState
from writeback.mutation import Mutation, add_history
from writeback.remote_store import VersionToken

logger = logging.getLogger(__name__)

Copier = Callable[[Any], Any]
HistoryHook = Callable[[Any, str], None]


class CacheEntry:
    """Cached state for one entity key.

    - ``pending``: mutations applied to the value but not yet part of a write.
    - ``in_flight``: the batch captured by ``begin_persist_attempt()``; it is
      never mixed with newer arrivals until the attempt completes or rebases.
    - At most one in-flight snapshot exists at a time.
    """

    def __init__(
        self,
        key: str,
        copier: Copier = copy.deepcopy,
        history: HistoryHook | None = add_history,
    ) -> None:
        self.key = key
        self._copy = copier
        self._history = history
        self._lock = threading.Lock()
        self._value: Any = None
        self._version: VersionToken | None = None
        self._pending: list[Mutation] = []
        self._in_flight: list[Mutation] = []
        self._in_flight_snapshot: Any = None
        self._in_flight_version: VersionToken | None = None
        self._retry_scheduled = False
        self._lost = False
        self.last_error: BaseException | None = None
        self.last_access = time.monotonic()

    # -- internal helpers (caller holds the lock) ------------------------------

    def _apply(self, mutation: Mutation, value: Any) -> Any:
        result = mutation.apply(value)
        if mutation.replaces:
            value = result
        if mutation.record_history and self._history is not None:
            self._history(value, mutation.description)
        return value

    def _replay(self, mutations: list[Mutation]) -> None:
        for mutation in mutations:
            self._value = self._apply(mutation, self._value)

    # -- state changes --------------------------------------------------------

    def refresh(self, fresh: Any, version: VersionToken | None) -> Any:
        """Install a freshly read value and return a copy of the result.

        Mutations that have not been persisted yet are re-applied on top,
        so a refresh never hides a caller's own unpersisted change.
        """
        with self._lock:
            self._value = self._copy(fresh)
            self._version = version
            self._replay(self._in_flight + self._pending)
            self.last_access = time.monotonic()
            return self._copy(self._value)

    def apply_mutation(self, mutation: Mutation) -> Any:
        """Apply ``mutation`` to the cached value and queue it for persistence."""
        with self._lock:
            if self._value is None:
                raise RuntimeError(f"No cached value for {self.key}; load or create it first")
            self._value = self._apply(mutation, self._value)
            self._pending.append(mutation)
            self.last_access = time.monotonic()
            return self._copy(self._value)

    def begin_persist_attempt(self) -> Any:
        """Capture the pending batch for a write. Returns the snapshot or None.

        Idempotent while an attempt is outstanding: the existing snapshot is
        returned again so a retry re-sends the same batch.
        """
        with self._lock:
            if self._in_flight_snapshot is not None:
                self._retry_scheduled = False
                return self._in_flight_snapshot
            if not self._pending:
                return None
            self._in_flight.extend(self._pending)
            self._pending.clear()
            self._in_flight_snapshot = self._copy(self._value)
            self._in_flight_version = self._version
            return self._in_flight_snapshot

    def complete_persist_attempt(self, persisted: Any, version: VersionToken) -> None:
        """Record a successful write of ``persisted`` at ``version``."""
        with self._lock:
            self._in_flight.clear()
            self._in_flight_snapshot = None
            self._retry_scheduled = False
            self._lost = False
            self.last_error = None
            self._value = self._copy(persisted)
            self._version = version
            # mutations that arrived during the write are still ahead of the store
            self._replay(self._pending)

    def rebase_on_conflict(self, remote: Any, version: VersionToken | None) -> Any:
        """Re-apply retryable mutations, in arrival order, onto ``remote``."""
        with self._lock:
            merged = self._in_flight + self._pending
            survivors = [m for m in merged if m.retryable]
            for dropped in merged:
                if not dropped.retryable:
                    logger.warning(
                        "Dropping non-retryable update for %s after conflict: %s",
                        self.key, dropped.description,
                    )
            self._value = self._copy(remote)
            self._version = version
            self._pending = []
            for mutation in survivors:
                self._value = self._apply(mutation, self._value)
                self._pending.append(mutation)
            self._in_flight.clear()
            self._in_flight_snapshot = None
            self._retry_scheduled = False
            return self._copy(self._value)

    def abandon_persist_attempt(self, error: BaseException) -> None:
        """Give up on the current attempt; its mutations stay applied and pending."""
        with self._lock:
            self._pending = self._in_flight + self._pending
            self._in_flight = []
            self._in_flight_snapshot = None
            self._retry_scheduled = False
            self._lost = True
            self.last_error = error

    def mark_retry_scheduled(self) -> None:
        with self._lock:
            self._retry_scheduled = True

    # -- accessors --------------------------------------------------------------

    def get_value(self) -> Any:
        """Return a copy of the cached value (None if not loaded)."""
        with self._lock:
            self.last_access = time.monotonic()
            return None if self._value is None else self._copy(self._value)

    @property
    def version(self) -> VersionToken | None:
        with self._lock:
            return self._version

    @property
    def in_flight_version(self) -> VersionToken | None:
        """Version the in-flight snapshot was based on (the expected version for the write)."""
        with self._lock:
            return self._in_flight_version

    @property
    def has_value(self) -> bool:
        with self._lock:
            return self._value is not None

    @property
    def has_pending(self) -> bool:
        """True if any mutation is pending or in flight."""
        with self._lock:
            return bool(self._pending or self._in_flight)

    @property
    def state(self) -> PersistState:
        with self._lock:
            if self._retry_scheduled:
                return PersistState.RETRY_SCHEDULED
            if self._in_flight_snapshot is not None:
                return PersistState.IN_FLIGHT
            if self._lost:
                return PersistState.LOST
            if self._pending:
                return PersistState.PENDING
            return PersistState.IDLE

    def commit_message(self) -> str:
        with self._lock:
            if len(self._in_flight) == 1:
                return self._in_flight[0].description
            return f"{len(self._in_flight)} updates"

    def describe_pending(self) -> list[str]:
        """Descriptions of every unpersisted mutation, oldest first."""
        with self._lock:
            return [m.description for m in self._in_flight + self._pending]

    def journal_snapshot(self) -> tuple[Any, VersionToken | None, list[str]] | None:
        """Atomic (value, version, descriptions) view, or None if nothing is unpersisted."""
        with self._lock:
            if self._value is None or not (self._pending or self._in_flight):
                return None
            descriptions = [m.description for m in self._in_flight + self._pending]
            return self._copy(self._value), self._version, descriptions
