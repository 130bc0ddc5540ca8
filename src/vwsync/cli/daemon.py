"""Daemon commands: start, stop, status."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click
from rich.panel import Panel

from ._common import SYNC_HOME, console, settings_for


def register_daemon_commands(main: click.Group) -> None:
    """Register the daemon command group."""

    @main.group()
    def daemon():
        """Background daemon: scheduled syncs plus the webhook API."""

    @daemon.command("start")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--port", default=None, type=int, help="API port (default from config).")
    @click.option(
        "--sync-interval", "sync_int", default=None, type=int,
        help="Seconds between full syncs (default from config, 0 disables).",
    )
    @click.option("--no-initial-sync", is_flag=True, help="Skip the sync at startup.")
    def daemon_start(home: str, port, sync_int, no_initial_sync: bool):
        """Start the sync daemon in the foreground.

        Runs a full sync on the configured interval and serves
        http://127.0.0.1:<port> for webhooks and status queries.
        Use systemd or a container runtime to keep it in the background.
        """
        from ..daemon import DaemonConfig, DaemonService, is_running

        home_path = Path(home).expanduser()
        if is_running(home_path):
            console.print("[yellow]Daemon is already running.[/]")
            sys.exit(0)

        settings = settings_for(home)
        config = DaemonConfig.from_settings(settings)
        if port is not None:
            config.port = port
        if sync_int is not None:
            config.sync_interval = sync_int
        config.run_on_start = not no_initial_sync
        svc = DaemonService(config)

        console.print(f"\n  [green]Starting daemon[/] on port [cyan]{config.port}[/]")
        console.print(f"  Sync: {config.sync_interval}s")
        console.print(f"  Log: {config.log_file}")
        console.print(f"  PID: {os.getpid()}")
        console.print("  [dim]Running in foreground (Ctrl+C to stop)[/]\n")
        svc.start()
        svc.run_forever()

    @daemon.command("stop")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    def daemon_stop(home: str):
        """Stop the running daemon."""
        from ..daemon import PID_FILE, read_pid

        home_path = Path(home).expanduser()
        pid = read_pid(home_path)

        if pid is None:
            console.print("[yellow]Daemon is not running.[/]")
            return

        import signal as sig

        try:
            os.kill(pid, sig.SIGTERM)
            console.print(f"\n  [green]Sent SIGTERM to daemon (PID {pid})[/]\n")
        except ProcessLookupError:
            console.print("[yellow]Daemon process not found, cleaning up PID file.[/]")
            (home_path / PID_FILE).unlink(missing_ok=True)

    @daemon.command("status")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--port", default=None, type=int, help="API port to query.")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def daemon_status(home: str, port, json_out: bool):
        """Show daemon status."""
        from ..daemon import get_daemon_status, is_running, read_pid

        home_path = Path(home).expanduser()
        if port is None:
            port = settings_for(home).api_port

        if not is_running(home_path):
            if json_out:
                click.echo(json.dumps({"running": False}))
            else:
                console.print("\n  [yellow]Daemon is not running.[/]\n")
            return

        pid = read_pid(home_path)
        status = get_daemon_status(port)
        if json_out:
            click.echo(
                json.dumps(status or {"running": True, "pid": pid, "api": "unreachable"}, indent=2)
            )
            return

        if not status:
            console.print(f"\n  [green]Daemon running[/] (PID {pid})")
            console.print(f"  [yellow]API unreachable on port {port}[/]\n")
            return

        uptime = status.get("uptime_seconds", 0)
        h, remainder = divmod(int(uptime), 3600)
        m, s = divmod(remainder, 60)
        uptime_str = f"{h}h {m}m {s}s" if h else f"{m}m {s}s"
        engine = status.get("engine") or {}

        console.print()
        console.print(
            Panel(
                f"PID: [bold]{status.get('pid')}[/]\n"
                f"Uptime: [bold]{uptime_str}[/]\n"
                f"Coordinator: [bold]{engine.get('state', 'unknown')}[/] "
                f"({engine.get('pending_runs', 0)} queued)\n"
                f"Managed secrets: [bold]{engine.get('managed_secrets', 0)}[/]\n"
                f"Syncs: [bold]{status.get('syncs_completed', 0)}[/] ok, "
                f"[bold]{status.get('syncs_failed', 0)}[/] failed\n"
                f"Webhooks: [bold]{status.get('webhooks_received', 0)}[/] received, "
                f"[bold]{status.get('webhooks_rejected', 0)}[/] rejected\n"
                f"Last sync: {status.get('last_sync') or '[dim]never[/]'}\n"
                f"API: [green]http://127.0.0.1:{port}[/]",
                title="[green]Daemon Running[/]",
                border_style="green",
            )
        )

        errors = status.get("recent_errors", [])
        if errors:
            console.print(f"\n[yellow]Recent errors ({len(errors)}):[/]")
            for err in errors[-5:]:
                console.print(f"  [dim]{err}[/]")
        console.print()
