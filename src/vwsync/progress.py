"""
Progress events streamed while a sync run is in flight.

The coordinator emits one ProgressEvent per phase change and per applied
plan entry. Listeners are plain callables. A listener that raises is
logged and the run carries on.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from pydantic import BaseModel, Field
from rich.console import Console

logger = logging.getLogger("vwsync.progress")

PHASE_QUEUED = "queued"
PHASE_FETCH = "fetch"
PHASE_MAP = "map"
PHASE_PLAN = "plan"
PHASE_APPLY = "apply"
PHASE_COMPLETE = "complete"
PHASE_FAILED = "failed"


class ProgressEvent(BaseModel):
    """One progress tick for a run."""

    run_id: Optional[str] = None
    phase: str
    message: str = ""
    current: int = 0
    total: int = 0
    counters: dict[str, int] = Field(default_factory=dict)

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 100.0 if self.phase == PHASE_COMPLETE else 0.0
        return round(100.0 * self.current / self.total, 1)


ProgressListener = Callable[[ProgressEvent], None]


class LoggingProgressListener:
    """Writes progress to the ``vwsync.progress`` logger."""

    def __call__(self, event: ProgressEvent) -> None:
        if event.phase == PHASE_APPLY:
            logger.debug(
                "[%s] %d/%d (%.1f%%) %s",
                event.run_id, event.current, event.total, event.percent, event.message,
            )
        else:
            logger.info("[%s] %s: %s", event.run_id, event.phase, event.message)


class RichProgressListener:
    """Prints phase changes and applied entries to a rich console.

    Args:
        console: Console to print on (a fresh one by default).
        verbose: Also print skipped entries.
    """

    def __init__(self, console: Optional[Console] = None, verbose: bool = False):
        self.console = console or Console()
        self.verbose = verbose

    def __call__(self, event: ProgressEvent) -> None:
        if event.phase != PHASE_APPLY:
            style = "red" if event.phase == PHASE_FAILED else "cyan"
            self.console.print(f"  [{style}]{event.phase:>8}[/] {event.message}")
            return
        if not self.verbose and event.message.startswith("skip "):
            return
        self.console.print(
            f"  [dim]{event.current:>4}/{event.total:<4} {event.percent:5.1f}%[/] {event.message}"
        )
