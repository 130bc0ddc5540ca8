"""
Selective Sync Gateway -- narrow passes for one item or one namespace.

Webhooks name a single changed item (or a namespace). Instead of
sweeping the whole vault, the gateway resolves just that slice and hands
the reconciler a matching scope, so records outside the slice are never
planned, let alone deleted.

Callers are trusted: webhook signatures are checked before an event
gets here.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from .errors import ItemNotFoundError
from .mapper import ItemMapper, is_valid_namespace
from .models import (
    ScopeKind,
    SyncScope,
    SyncSummary,
    WebhookEvent,
    WebhookEventType,
)
from .reconciler import OutcomeCallback, Reconciler
from .vault import VaultClient

logger = logging.getLogger("vwsync.selective")

# Events naming one item that still exists (or was just removed).
_ITEM_EVENTS = {
    WebhookEventType.ITEM_CREATED.value,
    WebhookEventType.ITEM_UPDATED.value,
    WebhookEventType.ITEM_RESTORED.value,
    WebhookEventType.ITEM_DELETED.value,
}
# Moves and shares can change which items are visible at all.
_FULL_EVENTS = {
    WebhookEventType.ITEM_MOVED.value,
    WebhookEventType.ITEM_SHARED.value,
}


def scope_for_event(event: WebhookEvent) -> SyncScope:
    """Decide how much a webhook event needs to resync.

    Raises:
        ValueError: Unknown event type, or an item event without an item id.
    """
    kind = event.event_type.lower()
    if kind == WebhookEventType.NAMESPACE_SYNC.value or (
        event.namespace and not event.item_id and kind not in _FULL_EVENTS
    ):
        if not event.namespace:
            raise ValueError("namespace.sync event without a namespace")
        return SyncScope.for_namespace(event.namespace)
    if kind in _ITEM_EVENTS:
        if not event.item_id:
            raise ValueError(f"{kind} event without an item id")
        return SyncScope.for_item(event.item_id)
    if kind in _FULL_EVENTS:
        return SyncScope.full()
    raise ValueError(f"unsupported webhook event type: {event.event_type}")


class SelectiveSyncGateway:
    """Runs item- and namespace-scoped passes.

    Args:
        vault: Source of vault items.
        mapper: Turns items into targets.
        reconciler: Plans and applies the pass.
    """

    def __init__(self, vault: VaultClient, mapper: ItemMapper, reconciler: Reconciler):
        self.vault = vault
        self.mapper = mapper
        self.reconciler = reconciler

    def sync_item(
        self,
        item_id: str,
        summary: Optional[SyncSummary] = None,
        delete_orphans: Optional[bool] = None,
        on_outcome: Optional[OutcomeCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SyncSummary:
        """Resync the secrets of one vault item.

        When the vault no longer has the item, nothing is created or
        updated and the item's existing secrets go through orphan
        handling (deleted, or flagged when cleanup is off).
        """
        scope = SyncScope.for_item(item_id)
        summary = summary or SyncSummary(scope=scope.label)

        item = self.vault.get_item(item_id)
        if item is None:
            missing = ItemNotFoundError(item_id)
            logger.info("%s, removing its secrets", missing)
            summary.add_warning(str(missing))
            targets = []
        else:
            summary.total_vault_items = 1
            targets = self.mapper.map_all(item)
            if not targets:
                logger.info("Item %s (%s) maps to no secret", item.id, item.name)

        return self.reconciler.reconcile(
            targets, scope, delete_orphans, summary, on_outcome, cancel
        )

    def sync_namespace(
        self,
        namespace: str,
        summary: Optional[SyncSummary] = None,
        delete_orphans: Optional[bool] = None,
        on_outcome: Optional[OutcomeCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SyncSummary:
        """Resync every secret targeting one namespace."""
        scope = SyncScope.for_namespace(namespace)
        summary = summary or SyncSummary(scope=scope.label)
        if not is_valid_namespace(namespace):
            summary.add_error(f"invalid namespace {namespace!r}")
            return summary

        items = self.vault.list_items()
        summary.total_vault_items = len(items)
        result = self.mapper.map_items(items)
        for exc in result.excluded:
            summary.add_warning(str(exc))
        return self.reconciler.reconcile(
            result.targets, scope, delete_orphans, summary, on_outcome, cancel
        )

    def sync_scope(
        self,
        scope: SyncScope,
        summary: Optional[SyncSummary] = None,
        delete_orphans: Optional[bool] = None,
        on_outcome: Optional[OutcomeCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SyncSummary:
        """Dispatch on scope kind (full scopes are not selective)."""
        if scope.kind == ScopeKind.ITEM:
            return self.sync_item(scope.item_id, summary, delete_orphans, on_outcome, cancel)
        if scope.kind == ScopeKind.NAMESPACE:
            return self.sync_namespace(
                scope.namespace, summary, delete_orphans, on_outcome, cancel
            )
        raise ValueError("full sync does not go through the selective gateway")
