"""Tests for the Kubernetes secret store against a mocked CoreV1Api."""

from __future__ import annotations

import base64
import json
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from vwsync.errors import ConfigurationError
from vwsync.kube import KubernetesSecretStore, decode_data, encode_data
from vwsync.ledger import MemoryStateLedger
from vwsync.mapper import ItemMapper
from vwsync.reconciler import Reconciler
from vwsync.store import (
    CREATED_BY_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    MANAGED_KEYS_ANNOTATION,
)


def _b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def _existing(data: dict[str, str], annotations: dict[str, str], labels=None) -> client.V1Secret:
    return client.V1Secret(
        metadata=client.V1ObjectMeta(
            name="db",
            namespace="prod",
            labels=labels or {},
            annotations=annotations,
            resource_version="42",
        ),
        data={k: _b64(v) for k, v in data.items()},
    )


@pytest.fixture
def api() -> MagicMock:
    return MagicMock()


@pytest.fixture
def kube(api) -> KubernetesSecretStore:
    return KubernetesSecretStore(api)


class TestEncoding:
    def test_encode_decode(self):
        encoded = encode_data({"pw": "s3cr3t\nline"})
        assert encoded == {"pw": _b64("s3cr3t\nline")}
        assert decode_data(encoded) == {"pw": "s3cr3t\nline"}

    def test_decode_none(self):
        assert decode_data(None) == {}


class TestCreate:
    """Creating secrets."""

    def test_create_sets_labels_and_managed_keys(self, kube, api):
        outcome = kube.create_secret("prod", "db", {"b": "2", "a": "1"}, {"x": "y"})
        assert outcome.success

        namespace, body = api.create_namespaced_secret.call_args.args
        assert namespace == "prod"
        assert body.metadata.name == "db"
        assert body.metadata.labels[CREATED_BY_LABEL] == MANAGED_BY_VALUE
        assert body.metadata.annotations["x"] == "y"
        assert json.loads(body.metadata.annotations[MANAGED_KEYS_ANNOTATION]) == ["a", "b"]
        assert decode_data(body.data) == {"a": "1", "b": "2"}
        assert body.type == "Opaque"

    def test_conflict_falls_back_to_update(self, kube, api):
        api.create_namespaced_secret.side_effect = ApiException(status=409, reason="Conflict")
        api.read_namespaced_secret.return_value = _existing({"a": "old"}, {})
        assert kube.create_secret("prod", "db", {"a": "new"}).success
        api.replace_namespaced_secret.assert_called_once()

    def test_api_error_is_an_outcome(self, kube, api):
        exc = ApiException(status=403, reason="Forbidden")
        exc.body = json.dumps({"message": "secrets is forbidden"})
        api.create_namespaced_secret.side_effect = exc
        outcome = kube.create_secret("prod", "db", {"a": "1"})
        assert not outcome.success
        assert outcome.error == "403: secrets is forbidden"

    def test_transport_error_is_an_outcome(self, kube, api):
        api.create_namespaced_secret.side_effect = OSError("connection reset")
        outcome = kube.create_secret("prod", "db", {"a": "1"})
        assert not outcome.success
        assert "connection reset" in outcome.error


class TestUpdate:
    """Replacing managed keys."""

    def test_unmanaged_keys_survive(self, kube, api):
        api.read_namespaced_secret.return_value = _existing(
            {"old": "1", "kept": "2", "pw": "3"},
            {MANAGED_KEYS_ANNOTATION: json.dumps(["old", "pw"]), "team": "ops"},
            labels={"app": "web"},
        )
        assert kube.update_secret("prod", "db", {"pw": "new"}, {"src": "i1"}).success

        name, namespace, body = api.replace_namespaced_secret.call_args.args
        assert (name, namespace) == ("db", "prod")
        assert decode_data(body.data) == {"kept": "2", "pw": "new"}
        assert body.metadata.annotations["team"] == "ops"
        assert body.metadata.annotations["src"] == "i1"
        assert json.loads(body.metadata.annotations[MANAGED_KEYS_ANNOTATION]) == ["pw"]
        assert body.metadata.labels["app"] == "web"
        assert body.metadata.labels[CREATED_BY_LABEL] == MANAGED_BY_VALUE
        assert body.metadata.resource_version == "42"

    def test_vanished_secret_is_recreated(self, kube, api):
        api.read_namespaced_secret.side_effect = ApiException(status=404, reason="Not Found")
        assert kube.update_secret("prod", "db", {"a": "1"}).success
        api.create_namespaced_secret.assert_called_once()
        api.replace_namespaced_secret.assert_not_called()

    def test_replace_failure(self, kube, api):
        api.read_namespaced_secret.return_value = _existing({}, {})
        api.replace_namespaced_secret.side_effect = ApiException(status=409, reason="Conflict")
        outcome = kube.update_secret("prod", "db", {"a": "1"})
        assert not outcome.success
        assert outcome.error.startswith("409")


class TestDeleteAndRead:
    """Deletes and reads."""

    def test_delete(self, kube, api):
        api.read_namespaced_secret.return_value = _existing(
            {"pw": "1"}, {MANAGED_KEYS_ANNOTATION: json.dumps(["pw"])}
        )
        assert kube.delete_secret("prod", "db").success
        api.delete_namespaced_secret.assert_called_once_with("db", "prod")
        api.replace_namespaced_secret.assert_not_called()

    def test_delete_without_managed_keys_annotation(self, kube, api):
        api.read_namespaced_secret.return_value = _existing({"pw": "1", "other": "2"}, {})
        assert kube.delete_secret("prod", "db").success
        api.delete_namespaced_secret.assert_called_once_with("db", "prod")

    def test_delete_missing_is_success(self, kube, api):
        api.read_namespaced_secret.side_effect = ApiException(status=404)
        assert kube.delete_secret("prod", "db").success
        api.delete_namespaced_secret.assert_not_called()

    def test_delete_race_is_success(self, kube, api):
        api.read_namespaced_secret.return_value = _existing({}, {})
        api.delete_namespaced_secret.side_effect = ApiException(status=404)
        assert kube.delete_secret("prod", "db").success

    def test_delete_failure(self, kube, api):
        api.read_namespaced_secret.return_value = _existing({}, {})
        api.delete_namespaced_secret.side_effect = ApiException(status=500, reason="boom")
        assert not kube.delete_secret("prod", "db").success

    def test_delete_keeps_unmanaged_keys(self, kube, api):
        api.read_namespaced_secret.return_value = _existing(
            {"pw": "ours", "tls.crt": "theirs"},
            {
                MANAGED_KEYS_ANNOTATION: json.dumps(["pw"]),
                "vwsync.io/source-item-id": "i1",
                "team": "ops",
            },
            labels={
                CREATED_BY_LABEL: MANAGED_BY_VALUE,
                MANAGED_BY_LABEL: MANAGED_BY_VALUE,
                "app": "web",
            },
        )
        assert kube.delete_secret("prod", "db").success

        api.delete_namespaced_secret.assert_not_called()
        name, namespace, body = api.replace_namespaced_secret.call_args.args
        assert (name, namespace) == ("db", "prod")
        assert decode_data(body.data) == {"tls.crt": "theirs"}
        assert body.metadata.labels == {"app": "web"}
        assert body.metadata.annotations == {"team": "ops"}
        assert body.metadata.resource_version == "42"

    def test_release_failure_is_an_outcome(self, kube, api):
        api.read_namespaced_secret.return_value = _existing(
            {"pw": "ours", "tls.crt": "theirs"}, {MANAGED_KEYS_ANNOTATION: json.dumps(["pw"])}
        )
        api.replace_namespaced_secret.side_effect = ApiException(status=409, reason="Conflict")
        outcome = kube.delete_secret("prod", "db")
        assert not outcome.success
        assert outcome.error.startswith("409")

    def test_reads(self, kube, api):
        api.read_namespaced_secret.return_value = _existing({"a": "1"}, {"k": "v"})
        assert kube.secret_exists("prod", "db")
        assert kube.get_secret_data("prod", "db") == {"a": "1"}
        assert kube.get_secret_annotations("prod", "db") == {"k": "v"}

    def test_reads_missing(self, kube, api):
        api.read_namespaced_secret.side_effect = ApiException(status=404)
        assert not kube.secret_exists("prod", "db")
        assert kube.get_secret_data("prod", "db") is None

    def test_list_managed_uses_selector(self, kube, api):
        item = MagicMock()
        item.metadata.name = "db"
        api.list_namespaced_secret.return_value = MagicMock(items=[item])
        assert kube.list_managed_secret_names("prod") == ["db"]
        assert api.list_namespaced_secret.call_args.kwargs["label_selector"] == (
            f"{CREATED_BY_LABEL}={MANAGED_BY_VALUE}"
        )

    def test_list_namespaces(self, kube, api):
        names = []
        for n in ("prod", "dev"):
            ns = MagicMock()
            ns.metadata.name = n
            names.append(ns)
        api.list_namespace.return_value = MagicMock(items=names)
        assert kube.list_namespaces() == ["dev", "prod"]


class TestAdoptedSecret:
    """A pre-existing secret taken over on create keeps its own keys for good."""

    def test_orphan_cleanup_releases_instead_of_deleting(self, api, item_factory):
        state = {"secret": _existing({"tls.crt": "cert"}, {"team": "ops"})}
        api.create_namespaced_secret.side_effect = ApiException(status=409, reason="Conflict")
        api.read_namespaced_secret.side_effect = lambda name, namespace: state["secret"]

        def replace(name, namespace, body):
            state["secret"] = body

        api.replace_namespaced_secret.side_effect = replace
        rec = Reconciler(KubernetesSecretStore(api), MemoryStateLedger(), delete_orphans=True)

        created = rec.reconcile(ItemMapper().map_items([item_factory("a", "db")]).targets)
        assert created.created == 1
        assert decode_data(state["secret"].data) == {"db": "s3cret", "tls.crt": "cert"}

        cleaned = rec.reconcile([])
        assert cleaned.deleted == 1
        api.delete_namespaced_secret.assert_not_called()
        assert decode_data(state["secret"].data) == {"tls.crt": "cert"}
        assert state["secret"].metadata.annotations == {"team": "ops"}
        assert CREATED_BY_LABEL not in state["secret"].metadata.labels


class TestConnection:
    def test_reachable(self, kube, api):
        kube.check_connection()
        api.list_namespace.assert_called_once_with(limit=1)

    def test_unreachable(self, kube, api):
        api.list_namespace.side_effect = ApiException(status=401, reason="Unauthorized")
        with pytest.raises(ConfigurationError):
            kube.check_connection()
