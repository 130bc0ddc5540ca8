"""Shared test fixtures for vwsync."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

import pytest

from vwsync.config import SyncSettings, VaultwardenSettings
from vwsync.errors import ConfigurationError
from vwsync.ledger import MemoryStateLedger
from vwsync.models import VaultField, VaultItem, VaultLogin
from vwsync.store import SecretStore, StoreOutcome
from vwsync.vault import VaultClient


def make_item(
    item_id: str,
    name: str,
    namespaces: Optional[str] = "prod",
    password: Optional[str] = "s3cret",
    username: Optional[str] = None,
    fields: Optional[dict[str, str]] = None,
    notes: Optional[str] = None,
    revision: str = "2024-01-01T00:00:00+00:00",
    deleted: bool = False,
) -> VaultItem:
    """Build a login item tagged for ``namespaces``."""
    custom = []
    if namespaces is not None:
        custom.append(VaultField(name="namespaces", value=namespaces))
    for k, v in (fields or {}).items():
        custom.append(VaultField(name=k, value=v))
    return VaultItem(
        id=item_id,
        name=name,
        login=VaultLogin(username=username, password=password),
        custom_fields=custom,
        notes=notes,
        revision_date=revision,
        deleted=deleted,
    )


class FakeVaultClient(VaultClient):
    """In-memory vault keyed by item id."""

    def __init__(self, items: Optional[list[VaultItem]] = None):
        self.items: dict[str, VaultItem] = {i.id: i for i in items or []}
        self.authenticated = 0
        self.fail_auth: Optional[str] = None

    def put(self, item: VaultItem) -> None:
        self.items[item.id] = item

    def remove(self, item_id: str) -> None:
        self.items.pop(item_id, None)

    def authenticate(self) -> None:
        if self.fail_auth:
            raise ConfigurationError(self.fail_auth)
        self.authenticated += 1

    def list_items(self) -> list[VaultItem]:
        return list(self.items.values())

    def get_item(self, item_id: str) -> Optional[VaultItem]:
        return self.items.get(item_id)


class FakeSecretStore(SecretStore):
    """In-memory secret store with per-secret failure injection.

    Attributes:
        secrets: (namespace, name) -> data.
        fail: (namespace, name) pairs whose writes fail.
        calls: Every write made, as (op, namespace, name).
    """

    def __init__(self):
        self.secrets: dict[tuple[str, str], dict[str, str]] = {}
        self.annotations: dict[tuple[str, str], dict[str, str]] = {}
        self.fail: set[tuple[str, str]] = set()
        self.calls: list[tuple[str, str, str]] = []
        self.reachable = True
        self._lock = threading.Lock()

    def check_connection(self) -> None:
        if not self.reachable:
            raise ConfigurationError("cluster unreachable")

    def list_namespaces(self) -> list[str]:
        return sorted({ns for ns, _ in self.secrets})

    def list_managed_secret_names(self, namespace: str) -> list[str]:
        return sorted(name for ns, name in self.secrets if ns == namespace)

    def _write(self, op, namespace, secret_name, data, annotations) -> StoreOutcome:
        with self._lock:
            self.calls.append((op, namespace, secret_name))
            if (namespace, secret_name) in self.fail:
                return StoreOutcome.failed("injected failure")
            self.secrets[(namespace, secret_name)] = dict(data)
            self.annotations[(namespace, secret_name)] = dict(annotations or {})
        return StoreOutcome.ok()

    def create_secret(self, namespace, secret_name, data, annotations=None) -> StoreOutcome:
        return self._write("create", namespace, secret_name, data, annotations)

    def update_secret(self, namespace, secret_name, data, annotations=None) -> StoreOutcome:
        return self._write("update", namespace, secret_name, data, annotations)

    def delete_secret(self, namespace: str, secret_name: str) -> StoreOutcome:
        with self._lock:
            self.calls.append(("delete", namespace, secret_name))
            if (namespace, secret_name) in self.fail:
                return StoreOutcome.failed("injected failure")
            self.secrets.pop((namespace, secret_name), None)
            self.annotations.pop((namespace, secret_name), None)
        return StoreOutcome.ok()

    def secret_exists(self, namespace: str, secret_name: str) -> bool:
        return (namespace, secret_name) in self.secrets

    def get_secret_data(self, namespace: str, secret_name: str) -> Optional[dict[str, str]]:
        return self.secrets.get((namespace, secret_name))

    def get_secret_annotations(self, namespace: str, secret_name: str) -> Optional[dict[str, str]]:
        return self.annotations.get((namespace, secret_name))

    def writes(self) -> list[tuple[str, str, str]]:
        return list(self.calls)


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """A temporary vwsync home directory."""
    home = tmp_path / ".vwsync"
    home.mkdir()
    return home


@pytest.fixture
def settings(tmp_home: Path) -> SyncSettings:
    """Settings with fake vault credentials filled in."""
    return SyncSettings(
        home=tmp_home,
        vaultwarden=VaultwardenSettings(
            server_url="https://vault.example.com",
            client_id="user.client",
            client_secret="client-secret",
            master_password="master",
        ),
        max_workers=2,
    )


@pytest.fixture
def vault() -> FakeVaultClient:
    return FakeVaultClient()


@pytest.fixture
def store() -> FakeSecretStore:
    return FakeSecretStore()


@pytest.fixture
def ledger() -> MemoryStateLedger:
    return MemoryStateLedger()


@pytest.fixture
def item_factory():
    """The make_item helper, for tests that build their own vault items."""
    return make_item
