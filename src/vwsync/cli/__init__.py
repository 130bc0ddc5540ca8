"""
vwsync CLI -- Vaultwarden to Kubernetes secret sync.

Each command group lives in its own module and is attached to the
main Click group through a register function.

Entry point: vwsync.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="vwsync")
def main():
    """vwsync -- keep Kubernetes secrets in step with Vaultwarden.

    Tag a vault item with a namespace and it becomes a Secret.
    """


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .sync_cmd import register_sync_commands
from .daemon import register_daemon_commands
from .config_cmd import register_config_commands

register_sync_commands(main)
register_daemon_commands(main)
register_config_commands(main)
