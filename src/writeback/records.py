"""Member record: an example entity for the write-back datastore.

Pure data model, no I/O. Records are keyed ``"{login}:{id}"`` and stored
as JSON documents. Unlike a cache, a document store must never silently
replace a corrupt record, so ``from_json()`` raises ValueError.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1
_HISTORY_LIMIT = 200


def record_key(login: str, user_id: int) -> str:
    return f"{login}:{user_id}"


@dataclass
class MemberRecord:
    """Membership status, roles and an append-only change history."""

    login: str
    user_id: int = 0
    status: str = "unknown"
    roles: list[str] = field(default_factory=list)
    attributes: dict[str, Any] = field(default_factory=dict)
    history: list[str] = field(default_factory=list)

    @classmethod
    def for_key(cls, key: str) -> MemberRecord:
        """Fresh record for a ``"{login}:{id}"`` (or bare login) key."""
        login, _, raw_id = key.partition(":")
        return cls(login=login, user_id=int(raw_id) if raw_id.isdigit() else 0)

    @property
    def key(self) -> str:
        return record_key(self.login, self.user_id)

    # -- mutations ------------------------------------------------------------

    def add_role(self, role: str) -> None:
        """Add ``role`` if missing."""
        if role not in self.roles:
            self.roles.append(role)

    def remove_role(self, role: str) -> None:
        if role in self.roles:
            self.roles.remove(role)

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def add_history(self, message: str) -> None:
        """Append a dated history line, keeping the most recent entries."""
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        self.history.append(f"{stamp} {message}")
        if len(self.history) > _HISTORY_LIMIT:
            del self.history[:-_HISTORY_LIMIT]

    # -- serialization --------------------------------------------------------

    def to_json(self) -> str:
        """Serialize to JSON string with schema version."""
        return json.dumps({
            "v": _SCHEMA_VERSION,
            "login": self.login,
            "id": self.user_id,
            "status": self.status,
            "roles": self.roles,
            "attributes": self.attributes,
            "history": self.history,
        }, indent=2)

    @classmethod
    def from_json(cls, data: str) -> MemberRecord:
        """Deserialize from JSON. Raises ValueError on corrupt data."""
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("Member record is not a JSON object")
        if not obj.get("login"):
            raise ValueError("Member record has no login")
        if obj.get("v", _SCHEMA_VERSION) > _SCHEMA_VERSION:
            logger.warning(
                "Member record %s has newer schema v%s; unknown fields are dropped.",
                obj["login"], obj["v"],
            )

        attributes = obj.get("attributes", {})
        return cls(
            login=str(obj["login"]),
            user_id=int(obj.get("id", 0)),
            status=str(obj.get("status", "unknown")),
            roles=[str(r) for r in obj.get("roles", [])],
            attributes=dict(attributes) if isinstance(attributes, dict) else {},
            history=[str(h) for h in obj.get("history", [])],
        )
