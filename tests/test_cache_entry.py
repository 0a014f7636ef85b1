"""Tests for CacheEntry: apply, persist attempts, conflict rebase, state."""

import pytest

from writeback.cache_entry import CacheEntry
from writeback.constants import PersistState
from writeback.mutation import Mutation
from writeback.records import MemberRecord


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _log(name: str, retryable: bool = True) -> Mutation:
    """Mutation appending ``name`` to ``value["log"]`` (in place)."""

    def apply(value: dict) -> None:
        value["log"].append(name)

    return Mutation(apply=apply, description=name, retryable=retryable)


def _entry(log: list[str] | None = None, version: str | None = "v1") -> CacheEntry:
    entry = CacheEntry("alice")
    entry.refresh({"log": list(log or [])}, version)
    return entry


# ---------------------------------------------------------------------------
# apply_mutation / refresh
# ---------------------------------------------------------------------------


class TestApplyMutation:
    def test_requires_value(self) -> None:
        entry = CacheEntry("alice")
        with pytest.raises(RuntimeError, match="alice"):
            entry.apply_mutation(_log("m1"))

    def test_applies_in_order_and_queues(self) -> None:
        entry = _entry()
        entry.apply_mutation(_log("m1"))
        result = entry.apply_mutation(_log("m2"))
        assert result == {"log": ["m1", "m2"]}
        assert entry.describe_pending() == ["m1", "m2"]
        assert entry.state is PersistState.PENDING

    def test_returns_detached_copy(self) -> None:
        entry = _entry()
        result = entry.apply_mutation(_log("m1"))
        result["log"].append("caller-scribble")
        assert entry.get_value() == {"log": ["m1"]}

    def test_replacement_value_from_apply(self) -> None:
        """A mutation may return a new value instead of editing in place."""
        entry = CacheEntry("k", copier=lambda v: v)
        entry.refresh((), None)
        entry.apply_mutation(Mutation(apply=lambda v: v + ("a",), description="a", replaces=True))
        entry.apply_mutation(Mutation(apply=lambda v: v + ("b",), description="b", replaces=True))
        assert entry.get_value() == ("a", "b")

    def test_return_value_ignored_for_in_place_mutation(self) -> None:
        entry = _entry()
        result = entry.apply_mutation(
            Mutation(apply=lambda v: v["log"].append("m1") or True, description="m1")
        )
        assert result == {"log": ["m1"]}
        assert entry.get_value() == {"log": ["m1"]}

    def test_history_recorded_when_requested(self) -> None:
        entry = CacheEntry("alice:1")
        entry.refresh(MemberRecord(login="alice", user_id=1), None)

        def grant(record: MemberRecord) -> None:
            record.add_role("member")

        entry.apply_mutation(Mutation(grant, "Grant member", record_history=True))
        entry.apply_mutation(Mutation(grant, "Grant member again"))
        record = entry.get_value()
        assert record.roles == ["member"]
        assert len(record.history) == 1
        assert record.history[0].endswith("Grant member")

    def test_refresh_reapplies_unpersisted(self) -> None:
        entry = _entry(["old"])
        entry.apply_mutation(_log("m1"))
        entry.begin_persist_attempt()
        entry.apply_mutation(_log("m2"))
        result = entry.refresh({"log": ["fresh"]}, "v9")
        assert result == {"log": ["fresh", "m1", "m2"]}
        assert entry.version == "v9"


# ---------------------------------------------------------------------------
# Persist attempts
# ---------------------------------------------------------------------------


class TestPersistAttempt:
    def test_nothing_pending_returns_none(self) -> None:
        entry = _entry()
        assert entry.begin_persist_attempt() is None
        assert entry.state is PersistState.IDLE

    def test_begin_snapshots_pending_batch(self) -> None:
        entry = _entry()
        entry.apply_mutation(_log("m1"))
        entry.apply_mutation(_log("m2"))
        snapshot = entry.begin_persist_attempt()
        assert snapshot == {"log": ["m1", "m2"]}
        assert entry.in_flight_version == "v1"
        assert entry.commit_message() == "2 updates"
        assert entry.state is PersistState.IN_FLIGHT

    def test_begin_is_idempotent_while_in_flight(self) -> None:
        entry = _entry()
        entry.apply_mutation(_log("m1"))
        first = entry.begin_persist_attempt()
        entry.apply_mutation(_log("m2"))
        second = entry.begin_persist_attempt()
        assert second is first
        assert second == {"log": ["m1"]}
        assert entry.commit_message() == "m1"

    def test_complete_keeps_later_arrivals_pending(self) -> None:
        entry = _entry()
        entry.apply_mutation(_log("m1"))
        snapshot = entry.begin_persist_attempt()
        entry.apply_mutation(_log("m2"))

        entry.complete_persist_attempt(snapshot, "v2")

        assert entry.version == "v2"
        assert entry.get_value() == {"log": ["m1", "m2"]}
        assert entry.describe_pending() == ["m2"]
        next_snapshot = entry.begin_persist_attempt()
        assert next_snapshot == {"log": ["m1", "m2"]}
        assert entry.in_flight_version == "v2"
        assert entry.commit_message() == "m2"

    def test_complete_returns_to_idle(self) -> None:
        entry = _entry()
        entry.apply_mutation(_log("m1"))
        snapshot = entry.begin_persist_attempt()
        entry.complete_persist_attempt(snapshot, "v2")
        assert entry.state is PersistState.IDLE
        assert not entry.has_pending
        assert entry.journal_snapshot() is None

    def test_retry_scheduled_state_reuses_snapshot(self) -> None:
        entry = _entry()
        entry.apply_mutation(_log("m1"))
        snapshot = entry.begin_persist_attempt()
        entry.mark_retry_scheduled()
        assert entry.state is PersistState.RETRY_SCHEDULED
        assert entry.begin_persist_attempt() is snapshot
        assert entry.state is PersistState.IN_FLIGHT

    def test_abandon_requeues_in_arrival_order(self) -> None:
        entry = _entry()
        entry.apply_mutation(_log("m1"))
        entry.begin_persist_attempt()
        entry.apply_mutation(_log("m2"))
        error = RuntimeError("denied")

        entry.abandon_persist_attempt(error)

        assert entry.state is PersistState.LOST
        assert entry.last_error is error
        assert entry.describe_pending() == ["m1", "m2"]
        # value is still ahead of the store
        assert entry.get_value() == {"log": ["m1", "m2"]}
        assert entry.begin_persist_attempt() == {"log": ["m1", "m2"]}
        assert entry.commit_message() == "2 updates"

    def test_success_clears_loss_flag(self) -> None:
        entry = _entry()
        entry.apply_mutation(_log("m1"))
        entry.begin_persist_attempt()
        entry.abandon_persist_attempt(RuntimeError("denied"))
        snapshot = entry.begin_persist_attempt()
        entry.complete_persist_attempt(snapshot, "v2")
        assert entry.state is PersistState.IDLE
        assert entry.last_error is None


# ---------------------------------------------------------------------------
# Conflict rebase
# ---------------------------------------------------------------------------


class TestRebaseOnConflict:
    def test_rebase_preserves_order_including_new_arrivals(self) -> None:
        entry = _entry()
        entry.apply_mutation(_log("m1"))
        entry.apply_mutation(_log("m2"))
        entry.begin_persist_attempt()
        entry.apply_mutation(_log("m3"))  # arrives during the conflict window

        result = entry.rebase_on_conflict({"log": ["remote"]}, "v2")

        assert result == {"log": ["remote", "m1", "m2", "m3"]}
        assert entry.describe_pending() == ["m1", "m2", "m3"]
        assert entry.version == "v2"
        assert entry.state is PersistState.PENDING
        assert entry.begin_persist_attempt() == {"log": ["remote", "m1", "m2", "m3"]}
        assert entry.in_flight_version == "v2"

    def test_rebase_drops_non_retryable(self) -> None:
        entry = _entry()
        entry.apply_mutation(_log("once", retryable=False))
        entry.apply_mutation(_log("m2"))
        entry.begin_persist_attempt()

        result = entry.rebase_on_conflict({"log": ["remote"]}, "v2")

        assert result == {"log": ["remote", "m2"]}
        assert entry.describe_pending() == ["m2"]

    def test_rebase_with_only_non_retryable_goes_idle(self) -> None:
        entry = _entry()
        entry.apply_mutation(_log("once", retryable=False))
        entry.begin_persist_attempt()
        entry.rebase_on_conflict({"log": ["remote"]}, "v2")
        assert entry.state is PersistState.IDLE
        assert entry.begin_persist_attempt() is None

    def test_rebase_does_not_alias_remote(self) -> None:
        entry = _entry()
        entry.apply_mutation(_log("m1"))
        remote = {"log": ["remote"]}
        entry.rebase_on_conflict(remote, "v2")
        assert remote == {"log": ["remote"]}

    def test_history_reapplied_on_rebase(self) -> None:
        entry = CacheEntry("alice:1")
        entry.refresh(MemberRecord(login="alice", user_id=1), "v1")

        def grant(record: MemberRecord) -> None:
            record.add_role("admin")

        entry.apply_mutation(Mutation(grant, "Grant admin", record_history=True))
        entry.begin_persist_attempt()
        remote = MemberRecord(login="alice", user_id=1, status="active")

        rebased = entry.rebase_on_conflict(remote, "v2")

        assert rebased.status == "active"
        assert rebased.roles == ["admin"]
        assert [h.split(" ", 1)[1] for h in rebased.history] == ["Grant admin"]


# ---------------------------------------------------------------------------
# Journal snapshot
# ---------------------------------------------------------------------------


class TestJournalSnapshot:
    def test_includes_in_flight_and_pending(self) -> None:
        entry = _entry()
        entry.apply_mutation(_log("m1"))
        entry.begin_persist_attempt()
        entry.apply_mutation(_log("m2"))
        value, version, pending = entry.journal_snapshot()
        assert value == {"log": ["m1", "m2"]}
        assert version == "v1"
        assert pending == ["m1", "m2"]

    def test_none_without_value(self) -> None:
        assert CacheEntry("ghost").journal_snapshot() is None
