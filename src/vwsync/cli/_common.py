"""Shared utilities for all CLI command modules.

Provides the Rich console instance, logging setup, and the engine
factory every sync command goes through.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from .. import SYNC_HOME
from ..config import SyncSettings, load_settings
from ..engine import SyncEngine
from ..progress import RichProgressListener

console = Console()
logger = logging.getLogger("vwsync.cli")


def setup_logging(verbose: bool = False) -> None:
    """Route library logging through rich, INFO with --verbose, WARNING otherwise."""
    root = logging.getLogger()
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(RichHandler(console=console, show_path=False))
    root.setLevel(logging.INFO if verbose else logging.WARNING)


def settings_for(home: Optional[str]) -> SyncSettings:
    return load_settings(Path(home).expanduser() if home else None)


def build_engine(settings: SyncSettings, verbose: bool = False) -> SyncEngine:
    """Production engine with progress printed to the console."""
    return SyncEngine.from_settings(
        settings, listeners=[RichProgressListener(console, verbose=verbose)]
    )
