"""
Run summary rendering.

One screen per pass: the status line, the per-bucket counters, the
orphan sub-result, and any failed entries. Used by the CLI after a run
and by ``vwsync sync status`` for the last recorded run.
"""

from __future__ import annotations

from rich.console import Group
from rich.panel import Panel
from rich.table import Table

from .models import SyncSummary


def status_text(summary: SyncSummary) -> str:
    """FAILED / PARTIAL / SUCCESS / UP-TO-DATE for a finished pass."""
    if not summary.overall_success:
        if summary.has_changes:
            return "PARTIAL"
        return "FAILED"
    if summary.has_changes:
        return "SUCCESS"
    return "UP-TO-DATE"


def status_icon(summary: SyncSummary) -> str:
    """Rich markup for the status line."""
    return {
        "FAILED": "[bold red]FAILED[/]",
        "PARTIAL": "[bold yellow]PARTIAL[/]",
        "SUCCESS": "[bold green]SUCCESS[/]",
        "UP-TO-DATE": "[bold cyan]UP-TO-DATE[/]",
    }[status_text(summary)]


def render_summary(summary: SyncSummary, show_items: bool = False) -> Panel:
    """Build a rich Panel describing one pass.

    Args:
        summary: The finished pass.
        show_items: List every entry, not just the failed ones.

    Returns:
        Panel ready for ``console.print``.
    """
    counters = Table.grid(padding=(0, 2))
    counters.add_column(style="dim")
    counters.add_column(justify="right")
    counters.add_row("Vault items", str(summary.total_vault_items))
    for name, value in summary.counters().items():
        style = "red" if name == "failed" and value else ""
        counters.add_row(name.capitalize(), f"[{style}]{value}[/]" if style else str(value))
    counters.add_row("Duration", f"{summary.duration_seconds:.2f}s")

    parts: list = [
        f"Status: {status_icon(summary)}"
        + ("  [yellow](dry run)[/]" if summary.dry_run else ""),
        f"Scope: [cyan]{summary.scope}[/]  Trigger: {summary.trigger}"
        + (f"  Run: [dim]{summary.run_id}[/]" if summary.run_id else ""),
        "",
        counters,
    ]

    cleanup = summary.orphan_cleanup
    if cleanup is not None and (cleanup.found or cleanup.enabled):
        mode = "delete" if cleanup.enabled else "flag only"
        parts.append(
            f"\nOrphans ({mode}): {cleanup.found} found, "
            f"{cleanup.deleted} deleted, {cleanup.failed} failed"
        )

    rows = [o for o in summary.items if show_items or not o.success]
    if rows:
        table = Table(show_header=True, header_style="bold", box=None)
        table.add_column("Action")
        table.add_column("Secret")
        table.add_column("Item")
        table.add_column("Result")
        for o in rows:
            result = "[green]ok[/]" if o.success else f"[red]{o.error or 'failed'}[/]"
            table.add_row(o.action.value, o.ref, o.source_item_name or "", result)
        parts.extend(["", table])

    for err in summary.errors:
        parts.append(f"[red]error:[/] {err}")
    for warn in summary.warnings:
        parts.append(f"[yellow]warning:[/] {warn}")

    border = {"FAILED": "red", "PARTIAL": "yellow"}.get(status_text(summary), "green")
    return Panel(Group(*parts), title="Sync Summary", border_style=border)
