"""Tests for progress events and listeners."""

from __future__ import annotations

import logging

from rich.console import Console

from vwsync.progress import (
    PHASE_APPLY,
    PHASE_COMPLETE,
    PHASE_FETCH,
    LoggingProgressListener,
    ProgressEvent,
    RichProgressListener,
)


class TestProgressEvent:
    def test_percent(self):
        assert ProgressEvent(phase=PHASE_APPLY, current=1, total=3).percent == 33.3

    def test_percent_without_total(self):
        assert ProgressEvent(phase=PHASE_FETCH).percent == 0.0
        assert ProgressEvent(phase=PHASE_COMPLETE).percent == 100.0


class TestListeners:
    """Console and logging listeners."""

    def test_rich_listener_hides_skips(self):
        console = Console(record=True, width=100)
        listener = RichProgressListener(console)
        listener(ProgressEvent(phase=PHASE_APPLY, message="skip prod/a", current=1, total=2))
        listener(ProgressEvent(phase=PHASE_APPLY, message="create prod/b", current=2, total=2))
        listener(ProgressEvent(phase=PHASE_COMPLETE, message="done"))
        text = console.export_text()
        assert "prod/a" not in text
        assert "create prod/b" in text
        assert "complete" in text

    def test_rich_listener_verbose(self):
        console = Console(record=True, width=100)
        RichProgressListener(console, verbose=True)(
            ProgressEvent(phase=PHASE_APPLY, message="skip prod/a", current=1, total=1)
        )
        assert "skip prod/a" in console.export_text()

    def test_logging_listener(self, caplog):
        with caplog.at_level(logging.INFO, logger="vwsync.progress"):
            LoggingProgressListener()(ProgressEvent(run_id="r1", phase=PHASE_FETCH, message="go"))
        assert "[r1] fetch: go" in caplog.text
