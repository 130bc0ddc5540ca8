"""
Sync Engine -- the synchronous API over the whole pipeline.

    vault ──list/get──> mapper ──targets──> reconciler ──writes──> store
                                               │
                                               └── ledger (after confirmed writes)

Every request funnels through the RunCoordinator, so callers on any
thread (CLI, scheduler loop, HTTP handler) get their own SyncSummary
back while runs execute strictly one at a time.

Usage:
    from vwsync.config import load_settings
    from vwsync.engine import SyncEngine

    engine = SyncEngine.from_settings(load_settings())
    summary = engine.run_full_sync()
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from .audit import JsonlAuditSink
from .config import SyncSettings
from .coordinator import RunCoordinator, RunHandle, RunRequest
from .errors import ConfigurationError, SyncBusyError
from .ledger import JsonStateLedger, MemoryStateLedger, StateLedger
from .mapper import ItemMapper
from .models import (
    ScopeKind,
    SyncPlan,
    SyncScope,
    SyncSummary,
    WebhookProcessingResult,
)
from .progress import (
    PHASE_FAILED,
    PHASE_FETCH,
    PHASE_MAP,
    PHASE_PLAN,
    LoggingProgressListener,
    ProgressListener,
)
from .reconciler import Reconciler
from .selective import SelectiveSyncGateway, scope_for_event
from .store import DryRunSecretStore, SecretStore
from .vault import BitwardenCliClient, VaultClient
from .webhook import parse_webhook_event, verify_signature

logger = logging.getLogger("vwsync.engine")


class SyncEngine:
    """Wires vault, mapper, reconciler, ledger, store and coordinator.

    Args:
        settings: Resolved configuration.
        vault: Vault client.
        store: Secret store. When None, a KubernetesSecretStore is built
            on the first run (a cluster that cannot be reached then
            fails that run, not engine construction).
        ledger: State ledger.
        audit: Audit sink, or None when auditing is off.
        listeners: Progress listeners for every run.
    """

    def __init__(
        self,
        settings: SyncSettings,
        vault: VaultClient,
        store: Optional[SecretStore],
        ledger: StateLedger,
        audit: Optional[JsonlAuditSink] = None,
        listeners: Optional[list[ProgressListener]] = None,
    ):
        self.settings = settings
        self.vault = vault
        self._store = store
        self.ledger = ledger
        self.audit = audit
        self.mapper = ItemMapper(settings.field_names, settings.secret_prefix)
        self.coordinator = RunCoordinator(
            self._execute,
            audit=audit,
            queue_depth=settings.queue_depth,
            listeners=listeners,
        )

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        listeners: Optional[list[ProgressListener]] = None,
    ) -> "SyncEngine":
        """Build the production engine (bw CLI, Kubernetes, JSON ledger)."""
        audit = JsonlAuditSink(settings.audit_path) if settings.audit.enabled else None
        return cls(
            settings,
            vault=BitwardenCliClient(settings.vaultwarden),
            store=None,
            ledger=JsonStateLedger(settings.state_dir),
            audit=audit,
            listeners=listeners or [LoggingProgressListener()],
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run_full_sync(
        self,
        dry_run: Optional[bool] = None,
        delete_orphans: Optional[bool] = None,
        trigger: str = "manual",
        timeout: Optional[float] = None,
    ) -> SyncSummary:
        """Sweep the whole vault. Raises SyncBusyError when the queue is full."""
        return self._run(SyncScope.full(), dry_run, delete_orphans, trigger, timeout)

    def sync_item(
        self,
        item_id: str,
        dry_run: Optional[bool] = None,
        delete_orphans: Optional[bool] = None,
        trigger: str = "manual",
        timeout: Optional[float] = None,
    ) -> SyncSummary:
        """Resync one vault item's secrets."""
        return self._run(SyncScope.for_item(item_id), dry_run, delete_orphans, trigger, timeout)

    def sync_namespace(
        self,
        namespace: str,
        dry_run: Optional[bool] = None,
        delete_orphans: Optional[bool] = None,
        trigger: str = "manual",
        timeout: Optional[float] = None,
    ) -> SyncSummary:
        """Resync every secret targeting one namespace."""
        return self._run(
            SyncScope.for_namespace(namespace), dry_run, delete_orphans, trigger, timeout
        )

    def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> WebhookProcessingResult:
        """Verify, route and run a webhook event.

        Blocks until the queued run finished. Never raises for bad input
        or a busy coordinator: the result says what happened.
        """
        started = time.monotonic()

        def result(**kwargs) -> WebhookProcessingResult:
            return WebhookProcessingResult(
                processing_seconds=round(time.monotonic() - started, 3), **kwargs
            )

        if not self.settings.webhook.enabled:
            return result(accepted=False, error="webhooks are disabled")
        if not verify_signature(self.settings.webhook.secret, payload, signature):
            return result(accepted=False, error="invalid webhook signature")
        try:
            event = parse_webhook_event(payload)
            scope = scope_for_event(event)
        except ValueError as exc:
            logger.warning("Rejected webhook: %s", exc)
            return result(accepted=False, error=str(exc))

        logger.info("Webhook %s -> %s sync", event.event_type, scope.label)
        try:
            summary = self._run(scope, None, None, "webhook", timeout)
        except SyncBusyError as exc:
            return result(accepted=False, busy=True, error=str(exc))
        except TimeoutError as exc:
            return result(accepted=True, error=str(exc))
        return result(
            accepted=True,
            success=summary.overall_success,
            error="; ".join(summary.errors) or None,
            summary=summary,
        )

    def preview_plan(
        self,
        scope: Optional[SyncScope] = None,
        delete_orphans: Optional[bool] = None,
    ) -> SyncPlan:
        """Compute the plan a pass would apply, without writing anything.

        Raises:
            ConfigurationError: The vault cannot be reached or the ledger is unreadable.
        """
        scope = scope or SyncScope.full()
        self.settings.validate_credentials()
        self.ledger.check()
        self.vault.authenticate()

        if scope.kind == ScopeKind.ITEM:
            item = self.vault.get_item(scope.item_id)
            targets = self.mapper.map_all(item) if item is not None else []
        else:
            targets = self.mapper.map_items(self.vault.list_items()).targets

        # Planning only reads the ledger; the store is never touched.
        reconciler = Reconciler(
            self._store,
            self.ledger,
            delete_orphans=self.settings.delete_orphans,
            max_workers=self.settings.max_workers,
        )
        return reconciler.plan(targets, scope, delete_orphans)

    def status(self) -> dict:
        """Ledger and coordinator state, safe to serialize."""
        records = self.ledger.list_all()
        by_status: dict[str, int] = {}
        for r in records:
            by_status[r.status.value] = by_status.get(r.status.value, 0) + 1
        last = self.coordinator.last_summary
        return {
            "state": self.coordinator.state,
            "pending_runs": self.coordinator.pending,
            "runs_completed": self.coordinator.runs_completed,
            "managed_secrets": len(records),
            "by_status": by_status,
            "last_run": last.model_dump(mode="json", exclude={"items"}) if last else None,
        }

    def shutdown(self, timeout: Optional[float] = 30.0) -> None:
        self.coordinator.shutdown(timeout)

    # ------------------------------------------------------------------
    # Run execution (coordinator worker thread)
    # ------------------------------------------------------------------

    def _run(
        self,
        scope: SyncScope,
        dry_run: Optional[bool],
        delete_orphans: Optional[bool],
        trigger: str,
        timeout: Optional[float],
    ) -> SyncSummary:
        request = RunRequest(
            scope=scope,
            trigger=trigger,
            dry_run=self.settings.dry_run if dry_run is None else dry_run,
            delete_orphans=delete_orphans,
        )
        return self.coordinator.run(request, timeout)

    def _preflight(self) -> SecretStore:
        """Check credentials, ledger, vault and cluster before any write.

        Raises:
            ConfigurationError: Anything needed for the pass is missing.
        """
        self.settings.validate_credentials()
        self.ledger.check()
        self.vault.authenticate()
        if self._store is None:
            from .kube import KubernetesSecretStore, load_core_api

            self._store = KubernetesSecretStore(load_core_api(self.settings.kubernetes))
        self._store.check_connection()
        return self._store

    def _execute(self, request: RunRequest, handle: RunHandle) -> None:
        summary = handle.summary
        try:
            store = self._preflight()
        except ConfigurationError as exc:
            logger.error("Sync aborted before any write: %s", exc)
            summary.add_error(str(exc))
            handle.progress(PHASE_FAILED, str(exc))
            return

        ledger = self.ledger
        if request.dry_run:
            store = DryRunSecretStore(store)
            ledger = MemoryStateLedger(self.ledger.list_all())

        reconciler = Reconciler(
            store,
            ledger,
            delete_orphans=self.settings.delete_orphans,
            max_workers=self.settings.max_workers,
        )
        scope = request.scope

        if scope.kind != ScopeKind.FULL:
            handle.progress(PHASE_FETCH, scope.label)
            handle.begin(1 if scope.kind == ScopeKind.ITEM else 0)
            gateway = SelectiveSyncGateway(self.vault, self.mapper, reconciler)
            gateway.sync_scope(
                scope, summary, request.delete_orphans, handle.outcome, handle.cancel
            )
            return

        handle.progress(PHASE_FETCH, "listing vault items")
        items = self.vault.list_items()
        summary.total_vault_items = len(items)
        handle.begin(len(items))

        handle.progress(PHASE_MAP, f"{len(items)} item(s)")
        result = self.mapper.map_items(items)
        for exc in result.excluded:
            summary.add_warning(str(exc))

        plan = reconciler.plan(result.targets, scope, request.delete_orphans)
        handle.progress(
            PHASE_PLAN,
            ", ".join(f"{k}={v}" for k, v in plan.counts().items()),
            0,
            plan.total,
        )
        reconciler.apply(plan, summary, handle.outcome, handle.cancel)
