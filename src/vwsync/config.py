"""
Configuration for vwsync.

Settings are read once at startup from ``<home>/config/config.yaml`` and
then overridden by ``VWSYNC_*`` environment variables, so the same
image runs from a mounted config file or from a plain env block.

Usage:
    from vwsync.config import load_settings
    settings = load_settings()
    print(settings.delete_orphans)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import SYNC_HOME
from .errors import ConfigurationError

logger = logging.getLogger("vwsync.config")

CONFIG_FILE = Path("config") / "config.yaml"


class VaultwardenSettings(BaseModel):
    """Where the vault lives and how to log in to it."""

    server_url: str = ""
    client_id: str = ""
    client_secret: str = ""
    master_password: str = ""
    organization_id: Optional[str] = None
    folder_id: Optional[str] = None
    collection_id: Optional[str] = None
    bw_binary: str = "bw"
    command_timeout: int = 60


class KubernetesSettings(BaseModel):
    """How to reach the cluster."""

    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    in_cluster: bool = False


class FieldNames(BaseModel):
    """Custom field names that steer item mapping."""

    namespaces: str = "namespaces"
    secret_name: str = "secret-name"
    secret_key_password: str = "secret-key-password"
    secret_key_username: str = "secret-key-username"
    ignore_fields: str = "ignore-field"
    replacement_char: str = "-"


class WebhookSettings(BaseModel):
    """Inbound webhook configuration."""

    enabled: bool = True
    secret: str = ""
    signature_header: str = "X-Signature"


class AuditSettings(BaseModel):
    """Audit trail configuration."""

    enabled: bool = True
    path: Optional[Path] = None


class SyncSettings(BaseModel):
    """Complete vwsync configuration."""

    home: Path = Field(default_factory=lambda: Path(SYNC_HOME).expanduser())
    vaultwarden: VaultwardenSettings = Field(default_factory=VaultwardenSettings)
    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)
    field_names: FieldNames = Field(default_factory=FieldNames)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)

    secret_prefix: str = ""
    delete_orphans: bool = True
    dry_run: bool = False
    max_workers: int = 4
    queue_depth: int = 8
    sync_interval_seconds: int = 3600
    api_port: int = 8787

    @property
    def state_dir(self) -> Path:
        return self.home / "state"

    @property
    def audit_path(self) -> Path:
        return self.audit.path or (self.home / "audit" / "sync-audit.jsonl")

    def validate_credentials(self) -> None:
        """Fail fast when the vault cannot possibly be reached.

        Raises:
            ConfigurationError: Missing server URL or API key pair.
        """
        vw = self.vaultwarden
        missing = []
        if not vw.server_url:
            missing.append("vaultwarden.server_url")
        if not vw.client_id:
            missing.append("vaultwarden.client_id")
        if not vw.client_secret:
            missing.append("vaultwarden.client_secret")
        if not vw.master_password:
            missing.append("vaultwarden.master_password")
        if missing:
            raise ConfigurationError(
                "missing vault configuration: " + ", ".join(missing)
            )

    def redacted(self) -> dict:
        """Settings as a dict with credentials masked, for display."""
        data = self.model_dump(mode="json")
        for key in ("client_secret", "master_password"):
            if data["vaultwarden"].get(key):
                data["vaultwarden"][key] = "********"
        if data["webhook"].get("secret"):
            data["webhook"]["secret"] = "********"
        return data


# (env var, dotted path, caster)
_ENV_OVERRIDES: list[tuple[str, str, type]] = [
    ("VWSYNC_SERVER_URL", "vaultwarden.server_url", str),
    ("VWSYNC_CLIENT_ID", "vaultwarden.client_id", str),
    ("VWSYNC_CLIENT_SECRET", "vaultwarden.client_secret", str),
    ("VWSYNC_MASTER_PASSWORD", "vaultwarden.master_password", str),
    ("VWSYNC_ORGANIZATION_ID", "vaultwarden.organization_id", str),
    ("VWSYNC_FOLDER_ID", "vaultwarden.folder_id", str),
    ("VWSYNC_COLLECTION_ID", "vaultwarden.collection_id", str),
    ("VWSYNC_BW_BINARY", "vaultwarden.bw_binary", str),
    ("VWSYNC_KUBECONFIG", "kubernetes.kubeconfig", str),
    ("VWSYNC_KUBE_CONTEXT", "kubernetes.context", str),
    ("VWSYNC_IN_CLUSTER", "kubernetes.in_cluster", bool),
    ("VWSYNC_FIELD_NAMESPACES", "field_names.namespaces", str),
    ("VWSYNC_FIELD_SECRET_NAME", "field_names.secret_name", str),
    ("VWSYNC_FIELD_REPLACEMENT_CHAR", "field_names.replacement_char", str),
    ("VWSYNC_WEBHOOK_SECRET", "webhook.secret", str),
    ("VWSYNC_WEBHOOK_ENABLED", "webhook.enabled", bool),
    ("VWSYNC_AUDIT_ENABLED", "audit.enabled", bool),
    ("VWSYNC_SECRET_PREFIX", "secret_prefix", str),
    ("VWSYNC_DELETE_ORPHANS", "delete_orphans", bool),
    ("VWSYNC_DRY_RUN", "dry_run", bool),
    ("VWSYNC_MAX_WORKERS", "max_workers", int),
    ("VWSYNC_QUEUE_DEPTH", "queue_depth", int),
    ("VWSYNC_SYNC_INTERVAL", "sync_interval_seconds", int),
    ("VWSYNC_API_PORT", "api_port", int),
]


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env(data: dict, environ: dict[str, str]) -> dict:
    for env_name, path, caster in _ENV_OVERRIDES:
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        value = _parse_bool(raw) if caster is bool else caster(raw.strip())
        node = data
        *parents, leaf = path.split(".")
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value
    return data


def load_settings(
    home: Optional[Path] = None,
    environ: Optional[dict[str, str]] = None,
) -> SyncSettings:
    """Load settings from the config file, then apply env overrides.

    Args:
        home: vwsync home directory. Defaults to $VWSYNC_HOME or ~/.vwsync.
        environ: Environment mapping (defaults to os.environ).

    Returns:
        SyncSettings: The resolved configuration.
    """
    home = Path(home or SYNC_HOME).expanduser()
    environ = os.environ if environ is None else environ

    data: dict = {}
    config_file = home / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            logger.warning("Failed to load config %s: %s", config_file, exc)
            data = {}

    data = _apply_env(data, environ)
    data["home"] = home
    return SyncSettings(**data)


def save_settings(settings: SyncSettings) -> Path:
    """Persist settings to ``<home>/config/config.yaml``."""
    config_file = settings.home / CONFIG_FILE
    config_file.parent.mkdir(parents=True, exist_ok=True)
    data = settings.model_dump(mode="json", exclude={"home"})
    config_file.write_text(
        yaml.dump(data, default_flow_style=False), encoding="utf-8"
    )
    return config_file
