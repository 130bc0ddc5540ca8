"""
Error taxonomy for the sync engine.

Per-item problems never escape a pass as exceptions: they are turned
into failed ItemOutcomes and counted in the summary. Only run-level
failures (configuration, busy gate) propagate to the caller.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by vwsync."""


class MappingError(SyncError):
    """A vault item cannot be translated into a secret target.

    Carries the offending item id so the mapper can log a skip reason.
    """

    def __init__(self, item_id: str, reason: str):
        super().__init__(f"item {item_id}: {reason}")
        self.item_id = item_id
        self.reason = reason


class TransientStoreError(SyncError):
    """A vault or Kubernetes call failed (network, rate limit, API error)."""


class ConfigurationError(SyncError):
    """Credentials are missing or the vault/cluster cannot be reached.

    Fatal to the run: the pass aborts before any write.
    """


class ItemNotFoundError(SyncError):
    """The vault no longer has the requested item."""

    def __init__(self, item_id: str):
        super().__init__(f"vault item not found: {item_id}")
        self.item_id = item_id


class SyncBusyError(SyncError):
    """The run queue is full; the request was rejected, not dropped."""

    def __init__(self, queue_depth: int):
        super().__init__(
            f"sync busy: {queue_depth} run(s) already queued behind the active run"
        )
        self.queue_depth = queue_depth
