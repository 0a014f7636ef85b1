"""Tests for the crash-recovery journal and its storage backends."""

import json

import pytest

from writeback.journal import (
    FileJournalStorage,
    Journal,
    JournalEntry,
    JournalError,
    JournalStorage,
    MemoryJournalStorage,
)


# ---------------------------------------------------------------------------
# JournalEntry
# ---------------------------------------------------------------------------


class TestJournalEntry:
    def test_bytes_carry_binary_document(self) -> None:
        entry = JournalEntry(document=b"\x00\xff{}", version="abc123", pending=["Grant admin"])
        restored = JournalEntry.from_bytes(entry.to_bytes())
        assert restored == entry

    def test_missing_version_allowed(self) -> None:
        restored = JournalEntry.from_bytes(JournalEntry(document=b"{}").to_bytes())
        assert restored.version is None
        assert restored.pending == []

    @pytest.mark.parametrize("data", [
        b"not json",
        b'{"version": "abc"}',
        b'{"document": "***"}',
        b"\xff\xfe",
    ])
    def test_malformed_raises(self, data: bytes) -> None:
        with pytest.raises(JournalError):
            JournalEntry.from_bytes(data)


# ---------------------------------------------------------------------------
# FileJournalStorage
# ---------------------------------------------------------------------------


class TestFileJournalStorage:
    def test_satisfies_protocol(self, tmp_path) -> None:
        assert isinstance(FileJournalStorage(tmp_path / "j.json"), JournalStorage)
        assert isinstance(MemoryJournalStorage(), JournalStorage)

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path) -> None:
        storage = FileJournalStorage(tmp_path / "absent.json")
        assert await storage.read_all() == {}

    @pytest.mark.asyncio
    async def test_write_then_read(self, tmp_path) -> None:
        path = tmp_path / "state" / "journal.json"
        storage = FileJournalStorage(path)
        await storage.write_all({"alice": b"\x01\x02", "bob": b"{}"})

        assert path.exists()
        assert await storage.read_all() == {"alice": b"\x01\x02", "bob": b"{}"}
        on_disk = json.loads(path.read_text())
        assert on_disk["v"] == 1
        assert sorted(on_disk["entries"]) == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_write_leaves_no_temp_files(self, tmp_path) -> None:
        storage = FileJournalStorage(tmp_path / "journal.json")
        await storage.write_all({"alice": b"1"})
        await storage.write_all({})
        assert [p.name for p in tmp_path.iterdir()] == ["journal.json"]
        assert await storage.read_all() == {}

    @pytest.mark.asyncio
    async def test_corrupt_file_raises(self, tmp_path) -> None:
        path = tmp_path / "journal.json"
        path.write_text("{truncated")
        with pytest.raises(JournalError, match="corrupt"):
            await FileJournalStorage(path).read_all()


# ---------------------------------------------------------------------------
# Journal
# ---------------------------------------------------------------------------


class TestJournal:
    @pytest.mark.asyncio
    async def test_save_and_load(self) -> None:
        storage = MemoryJournalStorage()
        journal = Journal(storage)
        entry = JournalEntry(document=b'{"login": "alice"}', version="v1", pending=["Grant admin"])
        await journal.save({"alice": entry})
        assert storage.writes == 1
        assert await journal.load() == {"alice": entry}

    @pytest.mark.asyncio
    async def test_load_skips_malformed_entries(self, caplog) -> None:
        storage = MemoryJournalStorage({
            "alice": JournalEntry(document=b"{}").to_bytes(),
            "bob": b"garbage",
        })
        loaded = await Journal(storage).load()
        assert list(loaded) == ["alice"]
        assert "bob" in caplog.text

    @pytest.mark.asyncio
    async def test_save_empty_clears(self) -> None:
        storage = MemoryJournalStorage({"alice": JournalEntry(document=b"{}").to_bytes()})
        await Journal(storage).save({})
        assert storage.entries == {}
