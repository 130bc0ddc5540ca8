"""
vwsync -- Vaultwarden to Kubernetes secret synchronization.

Vault items tagged with a namespace become Kubernetes secrets.
Changes propagate, orphans get flagged (or cleaned up), and
every pass leaves an audit trail.
"""

import os

__version__ = "0.1.0"
__author__ = "vwsync contributors"

SYNC_HOME = os.environ.get("VWSYNC_HOME", "~/.vwsync")
