"""
Secret Store -- the engine's view of Kubernetes secrets.

Every write returns a StoreOutcome instead of raising, so the
reconciler can count a failure and move on to the next item.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("vwsync.store")

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
CREATED_BY_LABEL = "app.kubernetes.io/created-by"
MANAGED_BY_VALUE = "vaultwarden-k8s-sync"
MANAGED_KEYS_ANNOTATION = "vwsync.io/managed-keys"


@dataclass(frozen=True)
class StoreOutcome:
    """Success flag plus an error detail string on failure."""

    success: bool
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "StoreOutcome":
        return cls(True)

    @classmethod
    def failed(cls, error: str) -> "StoreOutcome":
        return cls(False, error)


class SecretStore(ABC):
    """Abstract Kubernetes secret CRUD keyed by (namespace, secret name)."""

    @abstractmethod
    def check_connection(self) -> None:
        """Verify the cluster is reachable.

        Raises:
            ConfigurationError: The cluster cannot be reached.
        """

    @abstractmethod
    def list_namespaces(self) -> list[str]:
        """Names of every namespace in the cluster."""

    @abstractmethod
    def list_managed_secret_names(self, namespace: str) -> list[str]:
        """Names of secrets in a namespace that carry our labels."""

    @abstractmethod
    def create_secret(
        self,
        namespace: str,
        secret_name: str,
        data: dict[str, str],
        annotations: Optional[dict[str, str]] = None,
    ) -> StoreOutcome:
        """Create a managed secret."""

    @abstractmethod
    def update_secret(
        self,
        namespace: str,
        secret_name: str,
        data: dict[str, str],
        annotations: Optional[dict[str, str]] = None,
    ) -> StoreOutcome:
        """Replace the managed keys of an existing secret."""

    @abstractmethod
    def delete_secret(self, namespace: str, secret_name: str) -> StoreOutcome:
        """Delete a secret, keeping any keys the engine did not write.

        A secret that also holds unmanaged keys loses only the managed
        ones. A secret that is already gone counts as success.
        """

    @abstractmethod
    def secret_exists(self, namespace: str, secret_name: str) -> bool:
        """True if the secret exists."""

    @abstractmethod
    def get_secret_data(self, namespace: str, secret_name: str) -> Optional[dict[str, str]]:
        """Decoded secret data, or None if the secret does not exist."""

    @abstractmethod
    def get_secret_annotations(
        self, namespace: str, secret_name: str
    ) -> Optional[dict[str, str]]:
        """Secret annotations, or None if the secret does not exist."""


class DryRunSecretStore(SecretStore):
    """Reads pass through; writes are logged and reported as successful.

    Args:
        inner: The real store to read from.
    """

    def __init__(self, inner: SecretStore):
        self.inner = inner

    def check_connection(self) -> None:
        self.inner.check_connection()

    def list_namespaces(self) -> list[str]:
        return self.inner.list_namespaces()

    def list_managed_secret_names(self, namespace: str) -> list[str]:
        return self.inner.list_managed_secret_names(namespace)

    def create_secret(self, namespace, secret_name, data, annotations=None) -> StoreOutcome:
        logger.info("[DRY RUN] would create %s/%s (%d keys)", namespace, secret_name, len(data))
        return StoreOutcome.ok()

    def update_secret(self, namespace, secret_name, data, annotations=None) -> StoreOutcome:
        logger.info("[DRY RUN] would update %s/%s (%d keys)", namespace, secret_name, len(data))
        return StoreOutcome.ok()

    def delete_secret(self, namespace: str, secret_name: str) -> StoreOutcome:
        logger.info("[DRY RUN] would delete %s/%s", namespace, secret_name)
        return StoreOutcome.ok()

    def secret_exists(self, namespace: str, secret_name: str) -> bool:
        return self.inner.secret_exists(namespace, secret_name)

    def get_secret_data(self, namespace: str, secret_name: str) -> Optional[dict[str, str]]:
        return self.inner.get_secret_data(namespace, secret_name)

    def get_secret_annotations(self, namespace: str, secret_name: str) -> Optional[dict[str, str]]:
        return self.inner.get_secret_annotations(namespace, secret_name)
