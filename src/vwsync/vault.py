"""
Vault Client -- reads items from a Vaultwarden server.

The Bitwarden CLI (``bw``) does the heavy lifting: API-key login,
unlock, and JSON listing. The session token is passed through the
environment, never on the command line.

    status -> config server -> login --apikey -> unlock -> sync -> list items
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from typing import Callable, Optional

from .config import VaultwardenSettings
from .errors import ConfigurationError, TransientStoreError
from .models import VaultItem

logger = logging.getLogger("vwsync.vault")


class VaultClient(ABC):
    """Abstract read-only vault access."""

    @abstractmethod
    def authenticate(self) -> None:
        """Log in and unlock.

        Raises:
            ConfigurationError: Credentials missing or rejected.
        """

    @abstractmethod
    def list_items(self) -> list[VaultItem]:
        """Snapshot of every visible item.

        Raises:
            TransientStoreError: The vault could not be listed.
        """

    @abstractmethod
    def get_item(self, item_id: str) -> Optional[VaultItem]:
        """One item, or None when the vault no longer has it."""


class BitwardenCliClient(VaultClient):
    """Vault client driving the ``bw`` command line tool.

    Args:
        settings: Server URL, API key and master password.
        runner: subprocess.run-compatible callable (swappable in tests).
    """

    def __init__(
        self,
        settings: VaultwardenSettings,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.settings = settings
        self._runner = runner
        self._session: Optional[str] = None

    # -- process plumbing ---------------------------------------------------

    def _env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["BW_CLIENTID"] = self.settings.client_id
        env["BW_CLIENTSECRET"] = self.settings.client_secret
        env["BW_PASSWORD"] = self.settings.master_password
        env["BW_NOINTERACTION"] = "true"
        if self._session:
            env["BW_SESSION"] = self._session
        return env

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        cmd = [self.settings.bw_binary, *args]
        logger.debug("Running: %s", " ".join(cmd[:3]))
        try:
            return self._runner(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                env=self._env(),
                timeout=self.settings.command_timeout,
            )
        except FileNotFoundError as exc:
            raise ConfigurationError(
                f"Bitwarden CLI not found: {self.settings.bw_binary}"
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise TransientStoreError(f"bw {args[0]} timed out") from exc

    def _status(self) -> str:
        result = self._run("status")
        if result.returncode != 0:
            return "unauthenticated"
        try:
            return json.loads(result.stdout).get("status", "unauthenticated")
        except json.JSONDecodeError:
            return "unauthenticated"

    # -- VaultClient ----------------------------------------------------------

    def authenticate(self) -> None:
        if not (self.settings.client_id and self.settings.client_secret):
            raise ConfigurationError("vault API key (client_id/client_secret) not configured")
        if not self.settings.master_password:
            raise ConfigurationError("vault master password not configured")

        status = self._status()
        if status == "unauthenticated":
            if self.settings.server_url:
                self._run("config", "server", self.settings.server_url)
            result = self._run("login", "--apikey", "--raw")
            if result.returncode != 0:
                raise ConfigurationError(
                    f"vault login failed: {result.stderr.strip() or 'unknown error'}"
                )
            logger.info("Logged in to vault %s", self.settings.server_url or "(default)")

        if status != "unlocked" or not self._session:
            result = self._run("unlock", "--passwordenv", "BW_PASSWORD", "--raw")
            session = result.stdout.strip()
            if result.returncode != 0 or not session:
                raise ConfigurationError(
                    f"vault unlock failed: {result.stderr.strip() or 'no session returned'}"
                )
            self._session = session

        sync = self._run("sync")
        if sync.returncode != 0:
            logger.warning("bw sync failed: %s", sync.stderr.strip())

    def _ensure_session(self) -> None:
        if not self._session:
            self.authenticate()

    def list_items(self) -> list[VaultItem]:
        self._ensure_session()
        args = ["list", "items"]
        if self.settings.organization_id:
            args += ["--organizationid", self.settings.organization_id]
        if self.settings.folder_id:
            args += ["--folderid", self.settings.folder_id]
        if self.settings.collection_id:
            args += ["--collectionid", self.settings.collection_id]

        result = self._run(*args)
        if result.returncode != 0:
            raise TransientStoreError(f"bw list items failed: {result.stderr.strip()}")
        try:
            raw = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise TransientStoreError(f"bw list items returned invalid JSON: {exc}") from exc

        # All or nothing: a partial listing would plan deletes for the missing items.
        items = []
        for entry in raw:
            try:
                items.append(VaultItem.from_bw(entry))
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                item_id = entry.get("id") if isinstance(entry, dict) else None
                raise TransientStoreError(
                    f"bw list items returned an unparseable item ({item_id or 'no id'}): {exc}"
                ) from exc
        logger.info("Fetched %d item(s) from vault", len(items))
        return items

    def get_item(self, item_id: str) -> Optional[VaultItem]:
        self._ensure_session()
        result = self._run("get", "item", item_id)
        if result.returncode != 0:
            if "not found" in result.stderr.lower():
                return None
            raise TransientStoreError(f"bw get item failed: {result.stderr.strip()}")
        try:
            return VaultItem.from_bw(json.loads(result.stdout))
        except (json.JSONDecodeError, KeyError, ValueError) as exc:
            raise TransientStoreError(f"bw get item returned invalid data: {exc}") from exc
