"""Tests for the run coordinator: single flight, bounded queue, audit."""

from __future__ import annotations

import threading
import time

import pytest

from vwsync.audit import JsonlAuditSink, RunStatus
from vwsync.coordinator import (
    STATE_IDLE,
    STATE_RUNNING,
    RunCoordinator,
    RunRequest,
    run_status,
)
from vwsync.errors import ConfigurationError, SyncBusyError, SyncError
from vwsync.models import ItemOutcome, PlanAction, SyncScope, SyncSummary


class BlockingExecutor:
    """Executor that blocks each run until released and tracks overlap."""

    def __init__(self):
        self.release = threading.Event()
        self.started = threading.Event()
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.order: list[str] = []

    def __call__(self, request, handle):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.order.append(request.scope.label)
        self.started.set()
        self.release.wait(timeout=5)
        with self._lock:
            self.active -= 1


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestRunStatus:
    """Mapping summaries to audit statuses."""

    def test_success(self):
        assert run_status(SyncSummary()) == RunStatus.SUCCESS

    def test_failed_without_changes(self):
        s = SyncSummary()
        s.add_error("boom")
        assert run_status(s) == RunStatus.FAILED

    def test_partial(self):
        s = SyncSummary(created=1)
        s.add_error("one failed")
        assert run_status(s) == RunStatus.PARTIAL

    def test_cancelled(self):
        s = SyncSummary()
        s.add_error("cancelled")
        assert run_status(s, cancelled=True) == RunStatus.CANCELLED


class TestSingleFlight:
    """Concurrency exclusion and queueing."""

    def test_runs_never_overlap(self):
        executor = BlockingExecutor()
        coord = RunCoordinator(executor, queue_depth=4)
        try:
            first = coord.submit(RunRequest(scope=SyncScope.full(), trigger="scheduler"))
            assert executor.started.wait(2)
            assert coord.state == STATE_RUNNING

            second = coord.submit(RunRequest(scope=SyncScope.for_item("x"), trigger="webhook"))
            assert coord.pending == 1

            executor.release.set()
            assert first.wait(5).scope == "full"
            assert second.wait(5).scope == "item:x"
            assert executor.max_active == 1
            assert executor.order == ["full", "item:x"]
            assert wait_for(lambda: coord.state == STATE_IDLE)
        finally:
            executor.release.set()
            coord.shutdown()

    def test_busy_when_queue_full(self):
        executor = BlockingExecutor()
        coord = RunCoordinator(executor, queue_depth=1)
        try:
            coord.submit(RunRequest())
            assert executor.started.wait(2)
            queued = coord.submit(RunRequest(scope=SyncScope.for_item("a")))

            with pytest.raises(SyncBusyError) as exc_info:
                coord.submit(RunRequest(scope=SyncScope.for_item("b")))
            assert exc_info.value.queue_depth == 1

            executor.release.set()
            assert queued.wait(5) is not None
        finally:
            executor.release.set()
            coord.shutdown()

    def test_run_returns_summary(self):
        def executor(request, handle):
            handle.summary.created = 2

        coord = RunCoordinator(executor)
        try:
            summary = coord.run(RunRequest(trigger="manual"), timeout=5)
            assert summary.created == 2
            assert summary.run_id
            assert summary.end_time is not None
            assert coord.runs_completed == 1
            assert coord.last_summary is summary
        finally:
            coord.shutdown()

    def test_executor_errors_fail_the_run(self):
        def executor(request, handle):
            raise ConfigurationError("no credentials")

        coord = RunCoordinator(executor)
        try:
            summary = coord.run(RunRequest(), timeout=5)
            assert not summary.overall_success
            assert summary.errors == ["no credentials"]
        finally:
            coord.shutdown()

    def test_unexpected_exception_is_contained(self):
        calls = []

        def executor(request, handle):
            calls.append(request.trigger)
            if request.trigger == "first":
                raise RuntimeError("kaboom")

        coord = RunCoordinator(executor)
        try:
            first = coord.run(RunRequest(trigger="first"), timeout=5)
            second = coord.run(RunRequest(trigger="second"), timeout=5)
            assert "kaboom" in first.errors[0]
            assert second.overall_success
            assert calls == ["first", "second"]
        finally:
            coord.shutdown()


class TestShutdown:
    """Cancellation and draining."""

    def test_queued_runs_are_failed_not_dropped(self):
        executor = BlockingExecutor()
        coord = RunCoordinator(executor, queue_depth=2)
        coord.submit(RunRequest())
        assert executor.started.wait(2)
        queued = coord.submit(RunRequest(scope=SyncScope.for_namespace("prod")))

        releaser = threading.Timer(0.2, executor.release.set)
        releaser.start()
        coord.shutdown(timeout=5)
        releaser.join()

        summary = queued.wait(1)
        assert not summary.overall_success
        assert "shut down" in summary.errors[0]

    def test_active_run_sees_cancel(self):
        seen = []
        started = threading.Event()

        def executor(request, handle):
            started.set()
            wait_for(lambda: handle.cancelled, timeout=5)
            seen.append(handle.cancelled)

        coord = RunCoordinator(executor)
        request = coord.submit(RunRequest())
        assert started.wait(2)
        coord.shutdown(timeout=5)
        assert seen == [True]
        assert request.done

    def test_submit_after_shutdown(self):
        coord = RunCoordinator(lambda request, handle: None)
        coord.shutdown()
        with pytest.raises(SyncError):
            coord.submit(RunRequest())


class TestAuditAndProgress:
    """Audit trail and progress events."""

    def test_audit_lifecycle(self, tmp_path):
        audit = JsonlAuditSink(tmp_path / "audit.jsonl")

        def executor(request, handle):
            handle.begin(3)
            outcome = ItemOutcome(namespace="prod", secret_name="db", action=PlanAction.CREATE)
            handle.summary.record(outcome)
            handle.outcome(outcome, 1, 1)

        coord = RunCoordinator(executor, audit=audit)
        try:
            summary = coord.run(RunRequest(), timeout=5)
        finally:
            coord.shutdown()

        events = [e.event_type for e in audit.read_entries()]
        assert events == ["RUN_START", "ITEM_OUTCOME", "RUN_PROGRESS", "RUN_COMPLETE"]
        runs = audit.read_runs()
        assert runs[0].run_id == summary.run_id
        assert runs[0].total_items == 3
        assert runs[0].status == RunStatus.SUCCESS
        assert runs[0].counters["created"] == 1

    def test_audit_opened_even_when_run_fails_early(self, tmp_path):
        audit = JsonlAuditSink(tmp_path / "audit.jsonl")

        def executor(request, handle):
            raise ConfigurationError("vault unreachable")

        coord = RunCoordinator(executor, audit=audit)
        try:
            coord.run(RunRequest(), timeout=5)
        finally:
            coord.shutdown()
        run = audit.read_runs()[0]
        assert run.status == RunStatus.FAILED
        assert run.error == "vault unreachable"

    def test_no_audit_sink(self):
        coord = RunCoordinator(lambda request, handle: handle.begin(1), audit=None)
        try:
            assert coord.run(RunRequest(), timeout=5).overall_success
        finally:
            coord.shutdown()

    def test_progress_listeners(self):
        events = []

        def executor(request, handle):
            handle.progress("fetch", "listing")

        coord = RunCoordinator(executor, listeners=[events.append])
        try:
            coord.run(RunRequest(), timeout=5)
        finally:
            coord.shutdown()
        phases = [e.phase for e in events]
        assert phases == ["queued", "fetch", "complete"]
        assert events[-1].percent == 100.0

    def test_failing_listener_does_not_break_run(self):
        def bad_listener(event):
            raise RuntimeError("listener bug")

        coord = RunCoordinator(lambda request, handle: None, listeners=[bad_listener])
        try:
            assert coord.run(RunRequest(), timeout=5).overall_success
        finally:
            coord.shutdown()
