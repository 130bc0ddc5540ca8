"""
Kubernetes-backed Secret Store.

Talks to the cluster through ``kubernetes.client.CoreV1Api``. Secrets
we create carry the managed-by/created-by labels, and a managed-keys
annotation listing which data keys came from the vault. Updates only
replace those keys and deletes only remove them; anything another tool
added to the secret stays.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Optional

from kubernetes import client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException

from .config import KubernetesSettings
from .errors import ConfigurationError
from .mapper import ANNOTATION_PREFIX
from .store import (
    CREATED_BY_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    MANAGED_KEYS_ANNOTATION,
    SecretStore,
    StoreOutcome,
)

logger = logging.getLogger("vwsync.kube")

MANAGED_LABELS = {
    MANAGED_BY_LABEL: MANAGED_BY_VALUE,
    CREATED_BY_LABEL: MANAGED_BY_VALUE,
}


def encode_data(data: dict[str, str]) -> dict[str, str]:
    return {k: base64.b64encode(v.encode("utf-8")).decode("ascii") for k, v in data.items()}


def decode_data(data: Optional[dict[str, str]]) -> dict[str, str]:
    decoded: dict[str, str] = {}
    for k, v in (data or {}).items():
        decoded[k] = base64.b64decode(v).decode("utf-8", errors="replace")
    return decoded


def _api_error(exc: ApiException) -> str:
    detail = exc.reason or "API error"
    if exc.body:
        try:
            detail = json.loads(exc.body).get("message", detail)
        except (ValueError, AttributeError):
            pass
    return f"{exc.status}: {detail}"


def load_core_api(settings: Optional[KubernetesSettings] = None) -> client.CoreV1Api:
    """Build a CoreV1Api from in-cluster config, falling back to kubeconfig.

    Raises:
        ConfigurationError: No usable cluster configuration.
    """
    settings = settings or KubernetesSettings()
    try:
        if settings.in_cluster:
            k8s_config.load_incluster_config()
        else:
            try:
                k8s_config.load_incluster_config()
            except k8s_config.ConfigException:
                k8s_config.load_kube_config(
                    config_file=settings.kubeconfig, context=settings.context
                )
    except (k8s_config.ConfigException, OSError) as exc:
        raise ConfigurationError(f"cannot load Kubernetes configuration: {exc}") from exc
    return client.CoreV1Api()


class KubernetesSecretStore(SecretStore):
    """Secret Store over the Kubernetes API.

    Args:
        api: A configured CoreV1Api (see load_core_api).
    """

    def __init__(self, api: client.CoreV1Api):
        self.api = api

    def check_connection(self) -> None:
        try:
            self.api.list_namespace(limit=1)
        except ApiException as exc:
            raise ConfigurationError(f"Kubernetes API unreachable: {_api_error(exc)}") from exc
        except Exception as exc:
            raise ConfigurationError(f"Kubernetes API unreachable: {exc}") from exc

    def list_namespaces(self) -> list[str]:
        result = self.api.list_namespace()
        return sorted(ns.metadata.name for ns in result.items)

    def list_managed_secret_names(self, namespace: str) -> list[str]:
        selector = f"{CREATED_BY_LABEL}={MANAGED_BY_VALUE}"
        try:
            result = self.api.list_namespaced_secret(namespace, label_selector=selector)
        except ApiException as exc:
            if exc.status == 404:
                return []
            raise
        return sorted(s.metadata.name for s in result.items)

    def _read(self, namespace: str, secret_name: str) -> Optional[client.V1Secret]:
        try:
            return self.api.read_namespaced_secret(secret_name, namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def _body(
        self,
        namespace: str,
        secret_name: str,
        data: dict[str, str],
        labels: dict[str, str],
        annotations: dict[str, str],
    ) -> client.V1Secret:
        return client.V1Secret(
            api_version="v1",
            kind="Secret",
            type="Opaque",
            metadata=client.V1ObjectMeta(
                name=secret_name,
                namespace=namespace,
                labels=labels,
                annotations=annotations,
            ),
            data=encode_data(data),
        )

    def create_secret(
        self,
        namespace: str,
        secret_name: str,
        data: dict[str, str],
        annotations: Optional[dict[str, str]] = None,
    ) -> StoreOutcome:
        merged = dict(annotations or {})
        merged[MANAGED_KEYS_ANNOTATION] = json.dumps(sorted(data))
        body = self._body(namespace, secret_name, data, dict(MANAGED_LABELS), merged)
        try:
            self.api.create_namespaced_secret(namespace, body)
        except ApiException as exc:
            if exc.status == 409:
                logger.info("Secret %s/%s already exists, updating", namespace, secret_name)
                return self.update_secret(namespace, secret_name, data, annotations)
            logger.error("Create %s/%s failed: %s", namespace, secret_name, _api_error(exc))
            return StoreOutcome.failed(_api_error(exc))
        except Exception as exc:
            logger.error("Create %s/%s failed: %s", namespace, secret_name, exc)
            return StoreOutcome.failed(str(exc))
        logger.info("Created secret %s/%s with %d key(s)", namespace, secret_name, len(data))
        return StoreOutcome.ok()

    def update_secret(
        self,
        namespace: str,
        secret_name: str,
        data: dict[str, str],
        annotations: Optional[dict[str, str]] = None,
    ) -> StoreOutcome:
        try:
            existing = self._read(namespace, secret_name)
            if existing is None:
                logger.info("Secret %s/%s vanished, recreating", namespace, secret_name)
                return self.create_secret(namespace, secret_name, data, annotations)

            meta = existing.metadata
            old_annotations = dict(meta.annotations or {})
            previous_keys = set(
                json.loads(old_annotations.get(MANAGED_KEYS_ANNOTATION, "[]") or "[]")
            )
            merged_data = {
                k: v
                for k, v in decode_data(existing.data).items()
                if k not in previous_keys and k not in data
            }
            merged_data.update(data)

            labels = dict(meta.labels or {})
            labels.update(MANAGED_LABELS)
            old_annotations.update(annotations or {})
            old_annotations[MANAGED_KEYS_ANNOTATION] = json.dumps(sorted(data))

            body = self._body(namespace, secret_name, merged_data, labels, old_annotations)
            body.metadata.resource_version = meta.resource_version
            self.api.replace_namespaced_secret(secret_name, namespace, body)
        except ApiException as exc:
            logger.error("Update %s/%s failed: %s", namespace, secret_name, _api_error(exc))
            return StoreOutcome.failed(_api_error(exc))
        except Exception as exc:
            logger.error("Update %s/%s failed: %s", namespace, secret_name, exc)
            return StoreOutcome.failed(str(exc))
        logger.info("Updated secret %s/%s with %d key(s)", namespace, secret_name, len(data))
        return StoreOutcome.ok()

    def delete_secret(self, namespace: str, secret_name: str) -> StoreOutcome:
        """Remove our keys from a secret.

        A secret holding only keys we wrote is deleted. One that also
        holds keys from elsewhere (adopted on a create conflict, or
        extended by another tool) is released instead: our keys, our
        labels and our annotations go, the rest of the secret stays.
        """
        try:
            existing = self._read(namespace, secret_name)
            if existing is None:
                logger.debug("Secret %s/%s already gone", namespace, secret_name)
                return StoreOutcome.ok()
            foreign = self._foreign_keys(existing)
            if foreign:
                self._release(existing, foreign)
                logger.info(
                    "Released secret %s/%s, kept %d unmanaged key(s)",
                    namespace, secret_name, len(foreign),
                )
                return StoreOutcome.ok()
            self.api.delete_namespaced_secret(secret_name, namespace)
        except ApiException as exc:
            if exc.status == 404:
                logger.debug("Secret %s/%s already gone", namespace, secret_name)
                return StoreOutcome.ok()
            logger.error("Delete %s/%s failed: %s", namespace, secret_name, _api_error(exc))
            return StoreOutcome.failed(_api_error(exc))
        except Exception as exc:
            logger.error("Delete %s/%s failed: %s", namespace, secret_name, exc)
            return StoreOutcome.failed(str(exc))
        logger.info("Deleted secret %s/%s", namespace, secret_name)
        return StoreOutcome.ok()

    @staticmethod
    def _foreign_keys(secret: client.V1Secret) -> list[str]:
        annotations = secret.metadata.annotations or {}
        managed = json.loads(annotations.get(MANAGED_KEYS_ANNOTATION, "[]") or "[]")
        if not managed:
            # Without the annotation there is no telling our keys apart.
            return []
        return sorted(k for k in (secret.data or {}) if k not in managed)

    def _release(self, secret: client.V1Secret, keep: list[str]) -> None:
        meta = secret.metadata
        labels = {k: v for k, v in (meta.labels or {}).items() if k not in MANAGED_LABELS}
        annotations = {
            k: v
            for k, v in (meta.annotations or {}).items()
            if not k.startswith(f"{ANNOTATION_PREFIX}/")
        }
        body = client.V1Secret(
            api_version="v1",
            kind="Secret",
            type=secret.type or "Opaque",
            metadata=client.V1ObjectMeta(
                name=meta.name,
                namespace=meta.namespace,
                labels=labels,
                annotations=annotations,
                resource_version=meta.resource_version,
            ),
            data={k: secret.data[k] for k in keep},
        )
        self.api.replace_namespaced_secret(meta.name, meta.namespace, body)

    def secret_exists(self, namespace: str, secret_name: str) -> bool:
        return self._read(namespace, secret_name) is not None

    def get_secret_data(self, namespace: str, secret_name: str) -> Optional[dict[str, str]]:
        secret = self._read(namespace, secret_name)
        return None if secret is None else decode_data(secret.data)

    def get_secret_annotations(
        self, namespace: str, secret_name: str
    ) -> Optional[dict[str, str]]:
        secret = self._read(namespace, secret_name)
        return None if secret is None else dict(secret.metadata.annotations or {})
