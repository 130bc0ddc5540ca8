"""Sync commands: run, item, namespace, plan, status."""

from __future__ import annotations

import json
import sys

import click
from rich.panel import Panel
from rich.table import Table

from ._common import SYNC_HOME, build_engine, console, settings_for, setup_logging
from ..audit import JsonlAuditSink
from ..errors import SyncError
from ..ledger import JsonStateLedger
from ..models import PlanAction, SyncScope, SyncSummary
from ..summary import render_summary


def _finish(summary: SyncSummary, json_out: bool, show_items: bool) -> None:
    if json_out:
        click.echo(summary.model_dump_json(indent=2))
    else:
        console.print()
        console.print(render_summary(summary, show_items=show_items))
        console.print()
    if not summary.overall_success:
        sys.exit(1)


def _run(home, verbose, json_out, show_items, call) -> None:
    setup_logging(verbose)
    engine = build_engine(settings_for(home), verbose=verbose)
    try:
        summary = call(engine)
    except SyncError as exc:
        console.print(f"[bold red]Sync rejected:[/] {exc}")
        sys.exit(1)
    finally:
        engine.shutdown()
    _finish(summary, json_out, show_items)


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Reconcile vault items into Kubernetes secrets.

        Full sweeps, single items, single namespaces, or a dry plan.
        """

    @sync.command("run")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--dry-run", is_flag=True, help="Plan and report without writing.")
    @click.option(
        "--no-delete-orphans", is_flag=True, help="Flag orphaned secrets instead of deleting."
    )
    @click.option("--verbose", "-v", is_flag=True, help="Show every entry and INFO logs.")
    @click.option("--json-out", is_flag=True, help="Print the summary as JSON.")
    def sync_run(home, dry_run, no_delete_orphans, verbose, json_out):
        """Sync every tagged vault item."""
        _run(
            home, verbose, json_out, verbose,
            lambda engine: engine.run_full_sync(
                dry_run=dry_run or None,
                delete_orphans=False if no_delete_orphans else None,
            ),
        )

    @sync.command("item")
    @click.argument("item_id")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--dry-run", is_flag=True, help="Plan and report without writing.")
    @click.option("--verbose", "-v", is_flag=True)
    @click.option("--json-out", is_flag=True)
    def sync_item(item_id, home, dry_run, verbose, json_out):
        """Sync the secrets of a single vault item."""
        _run(
            home, verbose, json_out, True,
            lambda engine: engine.sync_item(item_id, dry_run=dry_run or None),
        )

    @sync.command("namespace")
    @click.argument("name")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--dry-run", is_flag=True, help="Plan and report without writing.")
    @click.option("--verbose", "-v", is_flag=True)
    @click.option("--json-out", is_flag=True)
    def sync_namespace(name, home, dry_run, verbose, json_out):
        """Sync every secret targeting one namespace."""
        _run(
            home, verbose, json_out, verbose,
            lambda engine: engine.sync_namespace(name, dry_run=dry_run or None),
        )

    @sync.command("plan")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--namespace", "-n", default=None, help="Limit the plan to a namespace.")
    @click.option("--item", "item_id", default=None, help="Limit the plan to one item.")
    @click.option("--json-out", is_flag=True)
    def sync_plan(home, namespace, item_id, json_out):
        """Show what a sync would change, without changing anything."""
        setup_logging(False)
        if item_id:
            scope = SyncScope.for_item(item_id)
        elif namespace:
            scope = SyncScope.for_namespace(namespace)
        else:
            scope = SyncScope.full()

        engine = build_engine(settings_for(home))
        try:
            plan = engine.preview_plan(scope)
        except SyncError as exc:
            console.print(f"[bold red]Cannot plan:[/] {exc}")
            sys.exit(1)
        finally:
            engine.shutdown()

        rows = (
            [(PlanAction.CREATE, t.ref, t.source_item_name, "") for t in plan.to_create]
            + [(PlanAction.UPDATE, t.ref, t.source_item_name, "") for t in plan.to_update]
            + [(PlanAction.DELETE, r.ref, r.source_item_name, "") for r in plan.to_delete]
            + [(PlanAction.ORPHAN, r.ref, r.source_item_name, "kept") for r in plan.orphaned]
            + [
                (PlanAction.REJECT, rj.target.ref, rj.target.source_item_name, rj.reason)
                for rj in plan.rejected
            ]
        )

        if json_out:
            click.echo(
                json.dumps(
                    {
                        "scope": plan.scope.label,
                        "counts": plan.counts(),
                        "entries": [
                            {"action": a.value, "secret": ref, "item": name, "note": note}
                            for a, ref, name, note in rows
                        ],
                    },
                    indent=2,
                )
            )
            return

        console.print()
        if not rows:
            console.print(f"  [green]Nothing to do[/] for {plan.scope.label} "
                          f"({len(plan.to_skip)} up to date)\n")
            return
        table = Table(title=f"Sync plan: {plan.scope.label}", show_header=True)
        table.add_column("Action", style="bold")
        table.add_column("Secret", style="cyan")
        table.add_column("Item")
        table.add_column("Note", style="dim")
        colors = {
            PlanAction.CREATE: "green",
            PlanAction.UPDATE: "yellow",
            PlanAction.DELETE: "red",
            PlanAction.ORPHAN: "magenta",
            PlanAction.REJECT: "red",
        }
        for action, ref, name, note in rows:
            table.add_row(f"[{colors[action]}]{action.value}[/]", ref, name, note)
        console.print(table)
        console.print(f"  [dim]{len(plan.to_skip)} up to date[/]\n")

    @sync.command("status")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--runs", default=5, help="How many recent runs to show.")
    @click.option("--json-out", is_flag=True)
    def sync_status(home, runs, json_out):
        """Show managed secrets and recent runs."""
        settings = settings_for(home)
        records = JsonStateLedger(settings.state_dir).list_all()
        recent = JsonlAuditSink(settings.audit_path).read_runs(limit=runs)

        if json_out:
            click.echo(
                json.dumps(
                    {
                        "managed_secrets": [r.model_dump(mode="json") for r in records],
                        "recent_runs": [r.model_dump(mode="json") for r in recent],
                    },
                    indent=2,
                )
            )
            return

        console.print()
        if records:
            table = Table(title="Managed secrets", show_header=True)
            table.add_column("Secret", style="cyan")
            table.add_column("Item")
            table.add_column("Keys", justify="right")
            table.add_column("Status")
            table.add_column("Last synced", style="dim")
            for r in records:
                color = {"synced": "green", "orphaned": "magenta"}.get(r.status.value, "red")
                table.add_row(
                    r.ref,
                    r.source_item_name or r.source_item_id,
                    str(r.data_keys),
                    f"[{color}]{r.status.value}[/]",
                    r.last_synced.strftime("%Y-%m-%d %H:%M:%S"),
                )
            console.print(table)
        else:
            console.print("  [dim]No managed secrets yet.[/]")

        if recent:
            lines = []
            for run in reversed(recent):
                color = {"success": "green", "partial": "yellow", "running": "cyan"}.get(
                    run.status.value, "red"
                )
                started = run.started_at.strftime("%Y-%m-%d %H:%M:%S") if run.started_at else "?"
                counters = ", ".join(f"{k}={v}" for k, v in run.counters.items() if v)
                lines.append(
                    f"[dim]{started}[/] {run.run_id} {run.phase:<20} "
                    f"[{color}]{run.status.value}[/] {counters}"
                )
            console.print(Panel("\n".join(lines), title="Recent runs", border_style="cyan"))
        console.print()
