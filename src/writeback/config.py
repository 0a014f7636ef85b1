"""Datastore configuration: plain frozen dataclass, no pydantic.

The host application constructs this from its own settings (env vars,
pydantic-settings, etc.) and passes it to the Datastore.
"""

from dataclasses import dataclass

from writeback.constants import ENTRY_TTL_SECS, MAX_PERSIST_RETRIES, RETRY_DELAYS_SECS


@dataclass(frozen=True)
class DatastoreConfig:
    dry_run: bool = False
    max_persist_retries: int = MAX_PERSIST_RETRIES
    retry_delays_secs: tuple[float, ...] = RETRY_DELAYS_SECS
    # None: abandoned keys wait for an operator to call retry_abandoned()
    abandoned_retry_interval_secs: float | None = None
    entry_ttl_secs: float | None = ENTRY_TTL_SECS
    journal_path: str | None = None
    shutdown_timeout_secs: float = 30.0
