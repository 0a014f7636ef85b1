#!/usr/bin/env python3
"""Print the contents of a datastore journal file.

Shows each journaled key, the version its unpersisted changes are based
on, the pending update descriptions and (with --documents) the document.
Use it before restarting a service to see what will be replayed:

  python scripts/show_journal.py /var/lib/app/journal.json
  python scripts/show_journal.py /var/lib/app/journal.json --documents
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from writeback.journal import FileJournalStorage, Journal, JournalError


async def _show(path: str, documents: bool) -> int:
    try:
        entries = await Journal(FileJournalStorage(path)).load()
    except JournalError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if not entries:
        print(f"{path}: journal is empty")
        return 0

    print(f"=== {path}: {len(entries)} journaled entit{'y' if len(entries) == 1 else 'ies'} ===")
    for key in sorted(entries):
        entry = entries[key]
        print()
        print(f"{key}")
        print(f"  base version: {entry.version or '(never persisted)'}")
        for description in entry.pending:
            print(f"  - {description}")
        if documents:
            print("  document:")
            for line in entry.document.decode("utf-8", errors="replace").splitlines():
                print(f"    {line}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("path", help="journal file written by Datastore.save_journal()")
    parser.add_argument("--documents", action="store_true", help="also print each document")
    args = parser.parse_args()
    sys.exit(asyncio.run(_show(args.path, args.documents)))


if __name__ == "__main__":
    main()
