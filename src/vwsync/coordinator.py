"""
Run Coordinator -- single-flight admission control for sync runs.

    IDLE --submit--> RUNNING --done--> IDLE (or next queued run)

Full syncs from the scheduler and selective syncs from webhooks all go
through one worker thread, so two runs never touch the ledger at the
same time. Requests that arrive while a run is active wait in a bounded
queue; once the queue is full, ``submit`` raises SyncBusyError instead
of dropping the request.

The coordinator also owns the run's bookkeeping: it assigns the run id,
opens and closes the audit run, forwards item outcomes to the audit
sink, and fans progress events out to listeners.
"""

from __future__ import annotations

import logging
import queue
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from .audit import JsonlAuditSink, RunStatus
from .errors import SyncBusyError, SyncError
from .models import ItemOutcome, SyncScope, SyncSummary, utcnow
from .progress import (
    PHASE_APPLY,
    PHASE_COMPLETE,
    PHASE_FAILED,
    PHASE_QUEUED,
    ProgressEvent,
    ProgressListener,
)

logger = logging.getLogger("vwsync.coordinator")

STATE_IDLE = "idle"
STATE_RUNNING = "running"

AUDIT_PROGRESS_EVERY = 25


@dataclass
class RunRequest:
    """One queued request for a sync pass.

    Attributes:
        scope: What the pass may touch.
        trigger: Who asked (manual, scheduler, webhook, api).
        dry_run: Plan and report without writing.
        delete_orphans: Override the configured orphan policy.
    """

    scope: SyncScope = field(default_factory=SyncScope.full)
    trigger: str = "manual"
    dry_run: bool = False
    delete_orphans: Optional[bool] = None
    submitted_at: datetime = field(default_factory=utcnow)
    summary: Optional[SyncSummary] = None
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> SyncSummary:
        """Block until the run finished and return its summary.

        Raises:
            TimeoutError: The run did not finish in time.
        """
        if not self._done.wait(timeout):
            raise TimeoutError(f"sync run ({self.scope.label}) still in progress")
        return self.summary

    def _resolve(self, summary: SyncSummary) -> None:
        self.summary = summary
        self._done.set()


class RunHandle:
    """What the executing code sees of its own run.

    Passed to the executor together with the request. The executor fills
    in ``summary`` and reports phases and outcomes through the handle.
    """

    def __init__(
        self,
        coordinator: "RunCoordinator",
        request: RunRequest,
        run_id: str,
        cancel: threading.Event,
    ):
        self.coordinator = coordinator
        self.request = request
        self.run_id = run_id
        self.cancel = cancel
        self.summary = SyncSummary(
            run_id=run_id,
            scope=request.scope.label,
            trigger=request.trigger,
            dry_run=request.dry_run,
        )
        self.started = False

    def begin(self, total_items: int) -> None:
        """Open the audit run once the size of the pass is known."""
        if self.started:
            return
        self.started = True
        self.coordinator._audit_call(
            "start_run", self.request.scope.label, total_items, run_id=self.run_id
        )

    def progress(self, phase: str, message: str = "", current: int = 0, total: int = 0) -> None:
        self.coordinator._emit(
            ProgressEvent(
                run_id=self.run_id,
                phase=phase,
                message=message,
                current=current,
                total=total,
                counters=self.summary.counters(),
            )
        )

    def outcome(self, outcome: ItemOutcome, done: int, total: int) -> None:
        """Reconciler callback: audit the entry and emit a progress tick."""
        self.coordinator._audit_call("log_item_outcome", self.run_id, outcome.ref, outcome)
        if done % AUDIT_PROGRESS_EVERY == 0 or done == total:
            self.coordinator._audit_call("update_progress", self.run_id, self.summary.counters())
        verb = outcome.action.value if outcome.success else f"{outcome.action.value} FAILED"
        self.progress(PHASE_APPLY, f"{verb} {outcome.ref}", done, total)

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()


RunExecutor = Callable[[RunRequest, RunHandle], None]


def run_status(summary: SyncSummary, cancelled: bool = False) -> RunStatus:
    """Audit status for a finished summary."""
    if summary.overall_success:
        return RunStatus.SUCCESS
    if cancelled:
        return RunStatus.CANCELLED
    if summary.has_changes:
        return RunStatus.PARTIAL
    return RunStatus.FAILED


class RunCoordinator:
    """Serializes sync runs behind one worker thread.

    Args:
        executor: Does the actual pass (see SyncEngine._execute).
        audit: Audit sink, or None when auditing is off.
        queue_depth: How many runs may wait behind the active one.
        listeners: Progress listeners attached from the start.
    """

    def __init__(
        self,
        executor: RunExecutor,
        audit: Optional[JsonlAuditSink] = None,
        queue_depth: int = 8,
        listeners: Optional[list[ProgressListener]] = None,
    ):
        self._executor = executor
        self.audit = audit
        self.queue_depth = max(1, queue_depth)
        self._queue: queue.Queue[Optional[RunRequest]] = queue.Queue(maxsize=self.queue_depth)
        self._listeners: list[ProgressListener] = list(listeners or [])
        self._lock = threading.Lock()
        self._admission = threading.Lock()
        self._cancel = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._closed = False
        self._active: Optional[RunRequest] = None
        self.runs_completed = 0
        self.last_summary: Optional[SyncSummary] = None

    # -- state ---------------------------------------------------------------

    @property
    def state(self) -> str:
        with self._lock:
            return STATE_RUNNING if self._active is not None else STATE_IDLE

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def active(self) -> Optional[RunRequest]:
        with self._lock:
            return self._active

    def add_listener(self, listener: ProgressListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ProgressListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # -- admission -----------------------------------------------------------

    def submit(self, request: RunRequest) -> RunRequest:
        """Queue a run behind the active one.

        Returns:
            The request; call ``wait()`` on it for the summary.

        Raises:
            SyncBusyError: The queue is full.
            SyncError: The coordinator was shut down.
        """
        with self._admission:
            if self._closed:
                raise SyncError("run coordinator is shut down")
            self._ensure_worker()
            try:
                self._queue.put_nowait(request)
            except queue.Full:
                logger.warning(
                    "Rejecting %s sync (%s): %d run(s) already queued",
                    request.scope.label, request.trigger, self.queue_depth,
                )
                raise SyncBusyError(self.queue_depth) from None
            self._emit(
                ProgressEvent(
                    phase=PHASE_QUEUED, message=f"{request.scope.label} ({request.trigger})"
                )
            )
        return request

    def run(self, request: RunRequest, timeout: Optional[float] = None) -> SyncSummary:
        """Submit and wait. Raises SyncBusyError when the queue is full."""
        return self.submit(request).wait(timeout)

    def shutdown(self, timeout: Optional[float] = 30.0) -> None:
        """Cancel the active run, fail queued runs, and stop the worker.

        The active run stops starting new writes; writes already in
        flight finish, so the ledger matches the cluster afterwards.
        """
        with self._admission:
            if self._closed:
                return
            self._closed = True
        self._cancel.set()

        while True:
            try:
                pending = self._queue.get_nowait()
            except queue.Empty:
                break
            if pending is not None:
                summary = SyncSummary(
                    scope=pending.scope.label, trigger=pending.trigger, dry_run=pending.dry_run
                )
                summary.add_error("coordinator shut down before the run started")
                pending._resolve(summary.finish())
            self._queue.task_done()

        if self._worker is not None and self._worker.is_alive():
            self._queue.put(None)
            self._worker.join(timeout=timeout)
        logger.info("Run coordinator stopped")

    # -- worker --------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is None or not self._worker.is_alive():
            self._worker = threading.Thread(
                target=self._worker_loop, name="vwsync-coordinator", daemon=True
            )
            self._worker.start()

    def _worker_loop(self) -> None:
        while True:
            request = self._queue.get()
            try:
                if request is None:
                    return
                self._execute(request)
            finally:
                self._queue.task_done()

    def _execute(self, request: RunRequest) -> None:
        # Let submit finish announcing the request before the run reports anything.
        with self._admission:
            pass
        handle = RunHandle(self, request, uuid.uuid4().hex[:12], self._cancel)
        summary = handle.summary
        with self._lock:
            self._active = request
        logger.info("Run %s started: %s (%s)", handle.run_id, request.scope.label, request.trigger)

        try:
            self._executor(request, handle)
        except SyncError as exc:
            logger.error("Run %s failed: %s", handle.run_id, exc)
            summary.add_error(str(exc))
        except Exception as exc:
            logger.exception("Run %s crashed", handle.run_id)
            summary.add_error(f"unexpected error: {exc}")
        finally:
            summary.finish()
            self._complete(handle)
            with self._lock:
                self._active = None
                self.runs_completed += 1
                self.last_summary = summary
            request._resolve(summary)

    def _complete(self, handle: RunHandle) -> None:
        summary = handle.summary
        handle.begin(summary.total_vault_items)
        status = run_status(summary, cancelled=handle.cancelled)
        self._audit_call(
            "complete_run",
            handle.run_id,
            status,
            error="; ".join(summary.errors) or None,
            counters=summary.counters(),
        )
        phase = PHASE_COMPLETE if summary.overall_success else PHASE_FAILED
        handle.progress(
            phase,
            f"{status.value}: {summary.created} created, {summary.updated} updated, "
            f"{summary.deleted} deleted, {summary.failed} failed "
            f"in {summary.duration_seconds:.2f}s",
        )
        logger.info(
            "Run %s %s: processed=%d created=%d updated=%d skipped=%d failed=%d deleted=%d",
            handle.run_id, status.value, summary.processed, summary.created,
            summary.updated, summary.skipped, summary.failed, summary.deleted,
        )

    # -- fan-out -------------------------------------------------------------

    def _emit(self, event: ProgressEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as exc:
                logger.warning("Progress listener failed: %s", exc)

    def _audit_call(self, method: str, *args, **kwargs) -> None:
        if self.audit is None:
            return
        try:
            getattr(self.audit, method)(*args, **kwargs)
        except OSError as exc:
            logger.warning("Audit %s failed: %s", method, exc)
