"""
vwsync daemon -- the always-on sync service.

Runs a periodic full sync and exposes a local HTTP API for status
queries, webhook delivery and on-demand syncs. Both paths submit runs to
the engine's coordinator, so a webhook arriving mid-sweep waits its turn
(or gets a 429 when the queue is full) instead of racing the sweep.

Endpoints:
    GET  /status                 daemon + engine state
    GET  /ping                   liveness
    GET  /health                 last run outcome
    POST /webhook                signed Vaultwarden event
    POST /sync                   full sync
    POST /sync/namespace/<name>  namespace sync
    POST /sync/item/<id>         single item sync
"""

from __future__ import annotations

import json
import logging
import os
import signal
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

from . import SYNC_HOME
from .config import SyncSettings, load_settings
from .engine import SyncEngine
from .errors import SyncBusyError, SyncError
from .models import SyncSummary

logger = logging.getLogger("vwsync.daemon")

DEFAULT_PORT = 8787
PID_FILE = "daemon.pid"
LOG_DIR = "logs"
MAX_BODY = 1024 * 1024


class DaemonConfig:
    """Configuration for the daemon process.

    Attributes:
        home: vwsync home directory.
        sync_interval: Seconds between scheduled full syncs (0 disables them).
        port: HTTP API port (0 picks a free one).
        run_on_start: Run a full sync right after startup.
        log_file: Path for daemon log output.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        sync_interval: int = 3600,
        port: int = DEFAULT_PORT,
        run_on_start: bool = True,
    ):
        self.home = (home or Path(SYNC_HOME)).expanduser()
        self.sync_interval = sync_interval
        self.port = port
        self.run_on_start = run_on_start

        log_dir = self.home / LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = log_dir / "daemon.log"

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "DaemonConfig":
        return cls(
            home=settings.home,
            sync_interval=settings.sync_interval_seconds,
            port=settings.api_port,
        )


class DaemonState:
    """Thread-safe mutable daemon state.

    Counts scheduled syncs and webhook deliveries and keeps the
    last few errors. All access is lock-protected.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at: Optional[datetime] = None
        self.last_sync: Optional[datetime] = None
        self.last_sync_status: Optional[str] = None
        self.syncs_completed: int = 0
        self.syncs_failed: int = 0
        self.webhooks_received: int = 0
        self.webhooks_rejected: int = 0
        self.errors: list[str] = []
        self.running: bool = False

    def snapshot(self) -> dict:
        """Return a serializable snapshot of current state."""
        with self._lock:
            return {
                "running": self.running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "uptime_seconds": (
                    (datetime.now(timezone.utc) - self.started_at).total_seconds()
                    if self.started_at
                    else 0
                ),
                "last_sync": self.last_sync.isoformat() if self.last_sync else None,
                "last_sync_status": self.last_sync_status,
                "syncs_completed": self.syncs_completed,
                "syncs_failed": self.syncs_failed,
                "webhooks_received": self.webhooks_received,
                "webhooks_rejected": self.webhooks_rejected,
                "recent_errors": self.errors[-10:],
                "pid": os.getpid(),
            }

    def record_sync(self, summary: SyncSummary) -> None:
        """Record a finished run, successful or not."""
        with self._lock:
            self.last_sync = datetime.now(timezone.utc)
            if summary.overall_success:
                self.syncs_completed += 1
                self.last_sync_status = "success"
            else:
                self.syncs_failed += 1
                self.last_sync_status = "failed"

    def record_webhook(self, accepted: bool) -> None:
        with self._lock:
            self.webhooks_received += 1
            if not accepted:
                self.webhooks_rejected += 1

    def record_error(self, error: str) -> None:
        """Record an error, keeping only the last 50."""
        with self._lock:
            ts = datetime.now(timezone.utc).isoformat()
            self.errors.append(f"[{ts}] {error}")
            if len(self.errors) > 50:
                self.errors = self.errors[-50:]


class DaemonService:
    """The sync daemon process.

    Args:
        config: Daemon configuration.
        engine: Sync engine. Built from the settings on disk when omitted.
    """

    def __init__(self, config: DaemonConfig, engine: Optional[SyncEngine] = None):
        self.config = config
        self.engine = engine
        self.state = DaemonState()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._server: Optional[ThreadingHTTPServer] = None

    def start(self) -> None:
        """Start the daemon: PID file, logging, signals, sync loop, HTTP API."""
        self._write_pid()
        self._setup_logging()
        self._setup_signals()

        self.state.running = True
        self.state.started_at = datetime.now(timezone.utc)

        logger.info(
            "Daemon starting, home=%s port=%d sync=%ds",
            self.config.home,
            self.config.port,
            self.config.sync_interval,
        )

        self._load_engine()

        t = threading.Thread(target=self._sync_loop, name="daemon-sync", daemon=True)
        t.start()
        self._threads.append(t)

        self._start_api_server()
        logger.info("Daemon started, PID %d", os.getpid())

    def stop(self) -> None:
        """Gracefully stop the daemon and all workers."""
        logger.info("Daemon stopping...")
        self._stop_event.set()
        self.state.running = False

        if self._server:
            self._server.shutdown()
            self._server.server_close()
        if self.engine is not None:
            self.engine.shutdown(timeout=10)

        for t in self._threads:
            t.join(timeout=5)

        self._remove_pid()
        logger.info("Daemon stopped.")

    def run_forever(self) -> None:
        """Block until stop is signaled."""
        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def _load_engine(self) -> None:
        if self.engine is None:
            settings = load_settings(self.config.home)
            self.engine = SyncEngine.from_settings(settings)

    # -- scheduled syncs -------------------------------------------------------

    def run_sync(self, trigger: str = "scheduler") -> Optional[SyncSummary]:
        """Run one full sync and record the result."""
        try:
            summary = self.engine.run_full_sync(trigger=trigger)
        except SyncBusyError as exc:
            logger.warning("Scheduled sync skipped: %s", exc)
            self.state.record_error(f"Sync: {exc}")
            return None
        except SyncError as exc:
            logger.error("Sync error: %s", exc)
            self.state.record_error(f"Sync: {exc}")
            return None
        self.state.record_sync(summary)
        for err in summary.errors:
            self.state.record_error(f"Sync: {err}")
        return summary

    def _sync_loop(self) -> None:
        """Full sync on start (optional), then every sync_interval seconds."""
        if self.config.run_on_start and not self._stop_event.is_set():
            self.run_sync()
        if self.config.sync_interval <= 0:
            return
        while not self._stop_event.is_set():
            self._stop_event.wait(timeout=self.config.sync_interval)
            if self._stop_event.is_set():
                break
            self.run_sync()

    # -- HTTP API ------------------------------------------------------------

    def _start_api_server(self) -> None:
        """Start the local HTTP API server in a background thread."""
        service = self
        state = self.state

        class DaemonHandler(BaseHTTPRequestHandler):
            """HTTP handler for the daemon API."""

            def do_GET(self):
                if self.path == "/status":
                    data = state.snapshot()
                    data["engine"] = service.engine.status() if service.engine else None
                    self._json_response(data)
                elif self.path == "/health":
                    last = service.engine.coordinator.last_summary if service.engine else None
                    healthy = last is None or last.overall_success
                    self._json_response(
                        {
                            "healthy": healthy,
                            "last_run": last.model_dump(mode="json", exclude={"items"})
                            if last
                            else None,
                        },
                        status=200 if healthy else 503,
                    )
                elif self.path == "/ping":
                    self._json_response({"pong": True, "pid": os.getpid()})
                else:
                    self._json_response(
                        {
                            "endpoints": [
                                "/status", "/health", "/ping", "/webhook", "/sync",
                                "/sync/namespace/<name>", "/sync/item/<id>",
                            ]
                        },
                        status=404,
                    )

            def do_POST(self):
                length = int(self.headers.get("Content-Length") or 0)
                if length > MAX_BODY:
                    self._json_response({"error": "payload too large"}, status=413)
                    return
                body = self.rfile.read(length) if length else b""

                if self.path == "/webhook":
                    self._handle_webhook(body)
                elif self.path == "/sync":
                    self._handle_sync(lambda: service.engine.run_full_sync(trigger="api"))
                elif self.path.startswith("/sync/namespace/"):
                    name = unquote(self.path[len("/sync/namespace/"):])
                    self._handle_sync(lambda: service.engine.sync_namespace(name, trigger="api"))
                elif self.path.startswith("/sync/item/"):
                    item_id = unquote(self.path[len("/sync/item/"):])
                    self._handle_sync(lambda: service.engine.sync_item(item_id, trigger="api"))
                else:
                    self._json_response({"error": "not found"}, status=404)

            def _handle_webhook(self, body: bytes):
                header = service.engine.settings.webhook.signature_header
                result = service.engine.process_webhook(body, self.headers.get(header))
                state.record_webhook(result.accepted)
                if result.summary is not None:
                    state.record_sync(result.summary)
                if result.busy:
                    status = 429
                elif not result.accepted:
                    status = 401 if result.error == "invalid webhook signature" else 400
                else:
                    status = 200 if result.success else 500
                self._json_response(result.model_dump(mode="json"), status=status)

            def _handle_sync(self, run):
                try:
                    summary = run()
                except SyncBusyError as exc:
                    self._json_response({"accepted": False, "busy": True, "error": str(exc)}, 429)
                    return
                except SyncError as exc:
                    self._json_response({"accepted": False, "error": str(exc)}, 503)
                    return
                state.record_sync(summary)
                self._json_response(
                    summary.model_dump(mode="json"),
                    status=200 if summary.overall_success else 500,
                )

            def _json_response(self, data: dict, status: int = 200):
                payload = json.dumps(data, indent=2, default=str).encode()
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                self.wfile.write(payload)

            def log_message(self, format, *args):
                logger.debug("API: %s", format % args)

        try:
            self._server = ThreadingHTTPServer(("127.0.0.1", self.config.port), DaemonHandler)
            self.config.port = self._server.server_address[1]
            t = threading.Thread(
                target=self._server.serve_forever,
                name="daemon-api",
                daemon=True,
            )
            t.start()
            self._threads.append(t)
            logger.info("API server listening on http://127.0.0.1:%d", self.config.port)
        except OSError as exc:
            logger.error("Failed to start API server: %s", exc)
            self.state.record_error(f"API server: {exc}")

    # -- process plumbing ------------------------------------------------------

    def _setup_logging(self) -> None:
        """Configure file logging."""
        handler = logging.FileHandler(self.config.log_file)
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s")
        )
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(logging.INFO)

    def _setup_signals(self) -> None:
        """Register signal handlers for graceful shutdown."""
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        logger.info("Received signal %s, stopping", signal.Signals(signum).name)
        self._stop_event.set()

    def _write_pid(self) -> None:
        pid_path = self.config.home / PID_FILE
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        pid_path.write_text(str(os.getpid()), encoding="utf-8")

    def _remove_pid(self) -> None:
        pid_path = self.config.home / PID_FILE
        if pid_path.exists():
            pid_path.unlink()


def read_pid(home: Optional[Path] = None) -> Optional[int]:
    """Read the daemon PID, removing a stale PID file.

    Returns:
        PID as int, or None if not running.
    """
    home = (home or Path(SYNC_HOME)).expanduser()
    pid_path = home / PID_FILE
    if not pid_path.exists():
        return None
    try:
        pid = int(pid_path.read_text(encoding="utf-8").strip())
        os.kill(pid, 0)
        return pid
    except (ValueError, ProcessLookupError, PermissionError):
        pid_path.unlink(missing_ok=True)
        return None


def is_running(home: Optional[Path] = None) -> bool:
    return read_pid(home) is not None


def get_daemon_status(port: int = DEFAULT_PORT) -> Optional[dict]:
    """Query the running daemon's status via the HTTP API.

    Returns:
        Status dict from the daemon, or None if unreachable.
    """
    import urllib.error
    import urllib.request

    try:
        url = f"http://127.0.0.1:{port}/status"
        with urllib.request.urlopen(url, timeout=3) as resp:
            return json.loads(resp.read())
    except (urllib.error.URLError, OSError, json.JSONDecodeError):
        return None
