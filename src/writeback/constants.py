"""Constants for write-back persistence."""

from enum import Enum


# Backoff between persistence retries, indexed by the previous attempt count.
# Attempts past the end of the table reuse the last delay.
RETRY_DELAYS_SECS: tuple[float, ...] = (5, 30, 120, 600, 1800)

MAX_PERSIST_RETRIES = 5
ENTRY_TTL_SECS = 3 * 60 * 60  # idle entries with nothing pending are dropped
JOURNAL_SCHEMA_VERSION = 1


class PersistState(str, Enum):
    """Persistence lifecycle of a single cache entry."""

    IDLE = "idle"
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETRY_SCHEDULED = "retry_scheduled"
    LOST = "lost"
