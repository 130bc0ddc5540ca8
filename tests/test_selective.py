"""Tests for the selective sync gateway and webhook routing."""

from __future__ import annotations

import pytest

from vwsync.mapper import ItemMapper
from vwsync.models import ScopeKind, SyncScope, WebhookEvent
from vwsync.reconciler import Reconciler
from vwsync.selective import SelectiveSyncGateway, scope_for_event


@pytest.fixture
def gateway(vault, store, ledger):
    return SelectiveSyncGateway(vault, ItemMapper(), Reconciler(store, ledger, delete_orphans=True))


@pytest.fixture
def seeded(gateway, vault, store, ledger, item_factory):
    """Three items synced into two namespaces."""
    for item in (
        item_factory("a", "db", namespaces="prod"),
        item_factory("b", "api", namespaces="prod"),
        item_factory("c", "cache", namespaces="dev"),
    ):
        vault.put(item)
    mapper = ItemMapper()
    gateway.reconciler.reconcile(mapper.map_items(vault.list_items()).targets)
    store.calls.clear()
    return gateway


class TestSyncItem:
    """Single-item passes."""

    def test_only_the_item_is_written(self, seeded, vault, store, item_factory):
        vault.put(item_factory("a", "db", password="new", revision="2024-09-09T00:00:00+00:00"))
        vault.put(item_factory("b", "api", password="also-new", revision="2024-09-09T00:00:00+00:00"))

        summary = seeded.sync_item("a")
        assert summary.updated == 1
        assert store.writes() == [("update", "prod", "db")]
        assert summary.scope == "item:a"

    def test_new_item_is_created(self, gateway, vault, store, item_factory):
        vault.put(item_factory("n", "fresh"))
        summary = gateway.sync_item("n")
        assert summary.created == 1
        assert summary.total_vault_items == 1

    def test_missing_item_becomes_delete_only(self, seeded, vault, store, ledger):
        vault.remove("b")
        summary = seeded.sync_item("b")
        assert summary.deleted == 1
        assert summary.created == summary.updated == 0
        assert store.writes() == [("delete", "prod", "api")]
        assert ledger.get("prod", "db") is not None
        assert any("not found" in w for w in summary.warnings)

    def test_missing_item_flagged_without_cleanup(self, seeded, vault, store, ledger):
        vault.remove("b")
        summary = seeded.sync_item("b", delete_orphans=False)
        assert summary.deleted == 0
        assert store.secret_exists("prod", "api")
        assert ledger.get("prod", "api").status.value == "orphaned"

    def test_trashed_item_removes_its_secret(self, seeded, vault, store, item_factory):
        vault.put(item_factory("c", "cache", namespaces="dev", deleted=True))
        summary = seeded.sync_item("c")
        assert summary.deleted == 1
        assert not store.secret_exists("dev", "cache")

    def test_untouched_item_is_skipped(self, seeded, store):
        summary = seeded.sync_item("a")
        assert summary.skipped == 1
        assert store.writes() == []

    def test_item_moved_namespace(self, seeded, vault, store, item_factory):
        vault.put(item_factory("a", "db", namespaces="dev"))
        summary = seeded.sync_item("a")
        assert summary.created == 1
        assert summary.deleted == 1
        assert store.secret_exists("dev", "db")
        assert not store.secret_exists("prod", "db")


class TestSyncNamespace:
    """Namespace passes."""

    def test_only_namespace_is_touched(self, seeded, vault, store, ledger):
        vault.remove("a")
        vault.remove("c")
        summary = seeded.sync_namespace("prod")
        assert summary.deleted == 1
        assert summary.skipped == 1
        assert store.secret_exists("dev", "cache")
        assert ledger.get("dev", "cache") is not None

    def test_invalid_namespace_is_an_error(self, gateway, store):
        summary = gateway.sync_namespace("Not Valid")
        assert not summary.overall_success
        assert store.writes() == []

    def test_sync_scope_dispatch(self, seeded):
        assert seeded.sync_scope(SyncScope.for_namespace("dev")).scope == "namespace:dev"
        with pytest.raises(ValueError):
            seeded.sync_scope(SyncScope.full())


class TestScopeForEvent:
    """Routing webhook events to scopes."""

    @pytest.mark.parametrize(
        "event_type", ["item.created", "item.updated", "item.restored", "item.deleted"]
    )
    def test_item_events(self, event_type):
        scope = scope_for_event(WebhookEvent(event_type=event_type, item_id="abc"))
        assert scope.kind == ScopeKind.ITEM
        assert scope.item_id == "abc"

    @pytest.mark.parametrize("event_type", ["item.moved", "item.shared"])
    def test_full_events(self, event_type):
        scope = scope_for_event(WebhookEvent(event_type=event_type, item_id="abc"))
        assert scope.kind == ScopeKind.FULL

    def test_namespace_event(self):
        scope = scope_for_event(WebhookEvent(event_type="namespace.sync", namespace="prod"))
        assert scope == SyncScope.for_namespace("prod")

    def test_namespace_hint_without_item(self):
        scope = scope_for_event(WebhookEvent(event_type="item.updated", namespace="prod"))
        assert scope.kind == ScopeKind.NAMESPACE

    def test_item_event_without_id(self):
        with pytest.raises(ValueError):
            scope_for_event(WebhookEvent(event_type="item.updated"))

    def test_unknown_event(self):
        with pytest.raises(ValueError):
            scope_for_event(WebhookEvent(event_type="user.login", item_id="x"))
