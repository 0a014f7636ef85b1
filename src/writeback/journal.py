"""Crash-recovery journal for entities with unpersisted mutations.

The journal is read once at startup and written once at shutdown, always
wholesale. It is a backstop for "the process stopped before the write
happened", not a log of every change.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from writeback.constants import JOURNAL_SCHEMA_VERSION
from writeback.remote_store import VersionToken

logger = logging.getLogger(__name__)


class JournalError(Exception):
    """Raised when journal storage cannot be read or written."""


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


@runtime_checkable
class JournalStorage(Protocol):
    async def read_all(self) -> dict[str, bytes]: ...

    async def write_all(self, entries: dict[str, bytes]) -> None: ...


class MemoryJournalStorage:
    """In-process journal storage for tests and local development."""

    def __init__(self, entries: dict[str, bytes] | None = None) -> None:
        self.entries: dict[str, bytes] = dict(entries or {})
        self.writes = 0

    async def read_all(self) -> dict[str, bytes]:
        return dict(self.entries)

    async def write_all(self, entries: dict[str, bytes]) -> None:
        self.entries = dict(entries)
        self.writes += 1


class FileJournalStorage:
    """Journal storage in a single JSON file.

    Layout: ``{"v": 1, "entries": {key: base64(bytes)}}``. Writes go to a
    temporary file in the same directory followed by ``os.replace``, so a
    crash mid-write leaves the previous journal intact.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    async def read_all(self) -> dict[str, bytes]:
        return await asyncio.to_thread(self._read)

    async def write_all(self, entries: dict[str, bytes]) -> None:
        await asyncio.to_thread(self._write, entries)

    def _read(self) -> dict[str, bytes]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise JournalError(f"Unable to read journal {self.path}: {exc}") from exc

        try:
            obj = json.loads(text)
            raw = obj["entries"]
            return {str(k): base64.b64decode(v, validate=True) for k, v in raw.items()}
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError, binascii.Error) as exc:
            raise JournalError(f"Journal {self.path} is corrupt: {exc}") from exc

    def _write(self, entries: dict[str, bytes]) -> None:
        payload = json.dumps({
            "v": JOURNAL_SCHEMA_VERSION,
            "entries": {
                k: base64.b64encode(v).decode("ascii") for k, v in entries.items()
            },
        }, indent=2, sort_keys=True)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(payload)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise JournalError(f"Unable to write journal {self.path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


@dataclass
class JournalEntry:
    """One entity's unpersisted state: encoded document plus its base version."""

    document: bytes
    version: VersionToken | None = None
    pending: list[str] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        return json.dumps({
            "v": JOURNAL_SCHEMA_VERSION,
            "version": self.version,
            "pending": self.pending,
            "document": base64.b64encode(self.document).decode("ascii"),
        }).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> JournalEntry:
        """Parse an entry; raises JournalError on malformed data."""
        try:
            obj = json.loads(data.decode("utf-8"))
            document = base64.b64decode(obj["document"], validate=True)
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, binascii.Error) as exc:
            raise JournalError(f"Malformed journal entry: {exc}") from exc
        pending = obj.get("pending") or []
        return cls(
            document=document,
            version=obj.get("version"),
            pending=[str(p) for p in pending] if isinstance(pending, list) else [],
        )


class Journal:
    """Reads and writes the whole set of journal entries through a storage backend."""

    def __init__(self, storage: JournalStorage) -> None:
        self._storage = storage

    async def load(self) -> dict[str, JournalEntry]:
        """Return all readable entries; malformed ones are logged and skipped."""
        raw = await self._storage.read_all()
        entries: dict[str, JournalEntry] = {}
        for key, data in raw.items():
            try:
                entries[key] = JournalEntry.from_bytes(data)
            except JournalError:
                logger.error("Skipping unreadable journal entry for %s.", key, exc_info=True)
        return entries

    async def save(self, entries: dict[str, JournalEntry]) -> None:
        """Replace the stored journal with ``entries`` (an empty dict clears it)."""
        await self._storage.write_all({k: e.to_bytes() for k, e in entries.items()})
