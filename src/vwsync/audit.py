"""
Audit Sink -- append-only record of sync runs.

Each event is one JSON line, so the trail stays machine-parseable and
can be tailed while the daemon runs. Secret values never reach it:
item outcomes carry names, actions and error strings only.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .models import ItemOutcome

logger = logging.getLogger("vwsync.audit")


class RunStatus(str, Enum):
    """Terminal status of a sync run."""

    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AuditEntry(BaseModel):
    """A single audit log line."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event_type: str
    run_id: str
    detail: str = ""
    host: str = Field(default_factory=socket.gethostname)
    metadata: Optional[dict] = None


class RunRecord(BaseModel):
    """A run rebuilt from its audit lines."""

    run_id: str
    phase: str = ""
    total_items: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    error: Optional[str] = None
    counters: dict[str, int] = Field(default_factory=dict)
    outcomes: int = 0


class JsonlAuditSink:
    """Audit sink writing JSON lines to a single file.

    Args:
        path: Audit log file. Parent directories are created on demand.
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def _write(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(entry.model_dump_json() + "\n")
        return entry

    def start_run(self, phase: str, total_items: int, run_id: Optional[str] = None) -> str:
        """Open a run and return its id (a fresh one unless given)."""
        run_id = run_id or uuid.uuid4().hex[:12]
        self._write(
            AuditEntry(
                event_type="RUN_START",
                run_id=run_id,
                detail=f"{phase} sync started",
                metadata={"phase": phase, "total_items": total_items},
            )
        )
        return run_id

    def update_progress(self, run_id: str, counters: dict[str, int]) -> None:
        self._write(
            AuditEntry(event_type="RUN_PROGRESS", run_id=run_id, metadata=dict(counters))
        )

    def complete_run(
        self,
        run_id: str,
        status: RunStatus,
        error: Optional[str] = None,
        counters: Optional[dict[str, int]] = None,
    ) -> None:
        metadata: dict = {"status": status.value}
        if error:
            metadata["error"] = error
        if counters:
            metadata["counters"] = dict(counters)
        self._write(
            AuditEntry(
                event_type="RUN_COMPLETE",
                run_id=run_id,
                detail=f"sync {status.value}",
                metadata=metadata,
            )
        )

    def log_item_outcome(self, run_id: str, item: str, outcome: ItemOutcome) -> None:
        self._write(
            AuditEntry(
                event_type="ITEM_OUTCOME",
                run_id=run_id,
                detail=item,
                metadata=outcome.model_dump(mode="json"),
            )
        )

    def read_entries(self, limit: int = 0) -> list[AuditEntry]:
        """Read audit entries, newest last. ``limit`` keeps the last N."""
        if not self.path.exists():
            return []
        entries: list[AuditEntry] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(AuditEntry.model_validate_json(line))
            except ValueError:
                logger.debug("Skipping malformed audit line")
        return entries[-limit:] if limit else entries

    def read_runs(self, limit: int = 0) -> list[RunRecord]:
        """Fold audit lines back into per-run records, oldest first."""
        runs: dict[str, RunRecord] = {}
        for entry in self.read_entries():
            meta = entry.metadata or {}
            run = runs.setdefault(entry.run_id, RunRecord(run_id=entry.run_id))
            if entry.event_type == "RUN_START":
                run.phase = meta.get("phase", "")
                run.total_items = meta.get("total_items", 0)
                run.started_at = entry.timestamp
            elif entry.event_type == "RUN_PROGRESS":
                run.counters = {k: int(v) for k, v in meta.items()}
            elif entry.event_type == "RUN_COMPLETE":
                run.completed_at = entry.timestamp
                run.status = RunStatus(meta.get("status", RunStatus.FAILED.value))
                run.error = meta.get("error")
                if meta.get("counters"):
                    run.counters = meta["counters"]
            elif entry.event_type == "ITEM_OUTCOME":
                run.outcomes += 1
        ordered = list(runs.values())
        return ordered[-limit:] if limit else ordered
