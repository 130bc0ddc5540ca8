"""Config commands: show, init."""

from __future__ import annotations

import json

import click
import yaml
from rich.panel import Panel

from ._common import SYNC_HOME, console, settings_for
from ..config import CONFIG_FILE, save_settings


def register_config_commands(main: click.Group) -> None:
    """Register the config command group."""

    @main.group("config")
    def config_group():
        """Inspect and bootstrap vwsync configuration."""

    @config_group.command("show")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def config_show(home: str, json_out: bool):
        """Print the resolved configuration with credentials masked."""
        settings = settings_for(home)
        data = settings.redacted()
        if json_out:
            click.echo(json.dumps(data, indent=2))
            return
        console.print()
        console.print(
            Panel(
                yaml.dump(data, default_flow_style=False, sort_keys=False).rstrip(),
                title=f"[cyan]{settings.home / CONFIG_FILE}[/]",
                border_style="cyan",
            )
        )
        console.print()

    @config_group.command("init")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--force", is_flag=True, help="Overwrite an existing config file.")
    def config_init(home: str, force: bool):
        """Write a config file with the current settings as a starting point."""
        settings = settings_for(home)
        target = settings.home / CONFIG_FILE
        if target.exists() and not force:
            console.print(f"[yellow]{target} already exists.[/] Use --force to overwrite.")
            return
        path = save_settings(settings)
        console.print(f"\n  [green]Wrote[/] {path}\n")
