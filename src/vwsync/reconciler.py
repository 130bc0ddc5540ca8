"""
Reconciler -- decides and applies one sync pass.

    desired  D = targets in scope (from the item mapper)
    observed O = ledger records in scope

    t in D, no record            -> create
    t in D, fingerprint differs  -> update
    t in D, fingerprint equal    -> skip, unless the cluster copy is gone
                                    (recreate) or its managed keys drifted (update)
    r in O, no target in D       -> delete (cleanup on) / flag orphaned (cleanup off)

Store writes in a plan are independent, so they run on a small thread
pool. A failed write is counted and the pass carries on; the ledger is
only touched after the matching store write succeeded, which means the
next pass simply re-derives the same plan for whatever failed.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Optional

from .ledger import StateLedger
from .models import (
    ItemOutcome,
    ManagedSecretRecord,
    MappingTarget,
    OrphanCleanupSummary,
    PlanAction,
    RecordStatus,
    Rejection,
    SyncPlan,
    SyncScope,
    SyncSummary,
    utcnow,
)
from .store import SecretStore

logger = logging.getLogger("vwsync.reconciler")

OutcomeCallback = Callable[[ItemOutcome, int, int], None]


class Reconciler:
    """Computes and applies create/update/skip/delete plans.

    Args:
        store: Where secrets are written.
        ledger: Which secrets the engine owns.
        delete_orphans: Default orphan policy for passes that don't override it.
        max_workers: Upper bound on concurrent store writes.
    """

    def __init__(
        self,
        store: SecretStore,
        ledger: StateLedger,
        delete_orphans: bool = False,
        max_workers: int = 4,
    ):
        self.store = store
        self.ledger = ledger
        self.delete_orphans = delete_orphans
        self.max_workers = max(1, max_workers)

    # ------------------------------------------------------------------
    # Planning (CPU only, never touches the store)
    # ------------------------------------------------------------------

    def plan(
        self,
        targets: list[MappingTarget],
        scope: Optional[SyncScope] = None,
        delete_orphans: Optional[bool] = None,
    ) -> SyncPlan:
        """Diff desired targets against the ledger.

        Args:
            targets: Mapped targets. Anything outside ``scope`` is ignored.
            scope: Which targets and records this pass may touch.
            delete_orphans: Override the default orphan policy.

        Returns:
            SyncPlan for the pass.
        """
        scope = scope or SyncScope.full()
        cleanup = self.delete_orphans if delete_orphans is None else delete_orphans
        plan = SyncPlan(scope=scope, delete_orphans=cleanup)

        by_key: dict[tuple[str, str], list[MappingTarget]] = defaultdict(list)
        for target in targets:
            if scope.contains_target(target):
                by_key[target.key].append(target)

        for key in sorted(by_key):
            record = self.ledger.get(*key)
            accepted = self._resolve_claim(by_key[key], record, scope, plan)
            if accepted is None:
                continue
            if record is None:
                plan.to_create.append(accepted)
            elif (
                record.fingerprint != accepted.fingerprint
                or record.source_item_id != accepted.source_item_id
            ):
                plan.to_update.append(accepted)
            else:
                plan.to_skip.append(accepted)

        for record in self.ledger.list_all():
            if not scope.contains_record(record):
                continue
            plan.records_in_scope += 1
            if record.key in by_key:
                continue
            if cleanup:
                plan.to_delete.append(record)
            else:
                plan.orphaned.append(record)

        logger.debug("Plan for %s: %s", scope.label, plan.counts())
        return plan

    @staticmethod
    def _resolve_claim(
        claimants: list[MappingTarget],
        record: Optional[ManagedSecretRecord],
        scope: SyncScope,
        plan: SyncPlan,
    ) -> Optional[MappingTarget]:
        """Pick the one item allowed to own a target; reject the rest.

        The current ledger owner keeps a contested target. Otherwise the
        lowest item id wins, so the choice is stable across passes.
        """
        by_item = {t.source_item_id: t for t in claimants}
        if record is not None and record.source_item_id in by_item:
            winner = record.source_item_id
        else:
            winner = min(by_item)

        if (
            record is not None
            and record.source_item_id != winner
            and not scope.sees_all_claimants
        ):
            plan.rejected.append(
                Rejection(
                    target=by_item[winner],
                    reason=(
                        f"{record.ref} is owned by item {record.source_item_id}; "
                        "run a full or namespace sync to reassign it"
                    ),
                )
            )
            return None

        for item_id, target in sorted(by_item.items()):
            if item_id != winner:
                plan.rejected.append(
                    Rejection(
                        target=target,
                        reason=f"{target.ref} is already claimed by item {winner}",
                    )
                )
        return by_item[winner]

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    def apply(
        self,
        plan: SyncPlan,
        summary: Optional[SyncSummary] = None,
        on_outcome: Optional[OutcomeCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SyncSummary:
        """Apply a plan through the store and update the ledger.

        Args:
            plan: The plan to apply.
            summary: Summary to fill in (a fresh one if omitted).
            on_outcome: Called with (outcome, done, total) after each entry.
            cancel: When set, no further writes are started.

        Returns:
            The filled-in summary. ``end_time`` is left for the caller.
        """
        summary = summary or SyncSummary(scope=plan.scope.label)
        total = plan.total
        done = 0

        def emit(outcome: ItemOutcome) -> None:
            nonlocal done
            done += 1
            summary.record(outcome)
            if not outcome.success:
                logger.warning("%s %s failed: %s", outcome.action.value, outcome.ref, outcome.error)
            if on_outcome is not None:
                on_outcome(outcome, done, total)

        for rejection in plan.rejected:
            emit(
                ItemOutcome(
                    namespace=rejection.target.namespace,
                    secret_name=rejection.target.secret_name,
                    action=PlanAction.REJECT,
                    success=False,
                    source_item_id=rejection.target.source_item_id,
                    source_item_name=rejection.target.source_item_name,
                    error=rejection.reason,
                )
            )

        for record in plan.orphaned:
            emit(self._flag_orphan(record))

        writes: list[Callable[[], ItemOutcome]] = (
            [(lambda t=t: self._skip(t)) for t in plan.to_skip]
            + [(lambda t=t: self._create(t)) for t in plan.to_create]
            + [(lambda t=t: self._update(t)) for t in plan.to_update]
        )
        self._run_batch(writes, emit, cancel)

        cleanup = OrphanCleanupSummary(
            enabled=plan.delete_orphans,
            scanned=plan.records_in_scope,
            found=len(plan.to_delete) + len(plan.orphaned),
            orphan_names=sorted(r.ref for r in plan.to_delete + plan.orphaned),
        )

        def delete_emit(outcome: ItemOutcome) -> None:
            if outcome.success:
                cleanup.deleted += 1
            else:
                cleanup.failed += 1
            emit(outcome)

        deletes = [(lambda r=r: self._delete(r)) for r in plan.to_delete]
        self._run_batch(deletes, delete_emit, cancel)

        summary.orphan_cleanup = cleanup
        if cancel is not None and cancel.is_set() and done < total:
            summary.add_error(f"pass cancelled with {total - done} plan entries not applied")
        return summary

    def reconcile(
        self,
        targets: list[MappingTarget],
        scope: Optional[SyncScope] = None,
        delete_orphans: Optional[bool] = None,
        summary: Optional[SyncSummary] = None,
        on_outcome: Optional[OutcomeCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SyncSummary:
        """Plan and apply in one call."""
        plan = self.plan(targets, scope, delete_orphans)
        return self.apply(plan, summary, on_outcome, cancel)

    def _run_batch(
        self,
        tasks: list[Callable[[], ItemOutcome]],
        emit: Callable[[ItemOutcome], None],
        cancel: Optional[threading.Event],
    ) -> None:
        if not tasks:
            return
        workers = min(self.max_workers, len(tasks))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="vwsync-write") as pool:
            futures: list[Future] = []
            for task in tasks:
                if cancel is not None and cancel.is_set():
                    break
                futures.append(pool.submit(task))
            for future in as_completed(futures):
                emit(future.result())

    # -- per-entry operations (run on worker threads) -------------------

    def _skip(self, target: MappingTarget) -> ItemOutcome:
        outcome = ItemOutcome(
            namespace=target.namespace,
            secret_name=target.secret_name,
            action=PlanAction.SKIP,
            source_item_id=target.source_item_id,
            source_item_name=target.source_item_name,
            reason="up-to-date",
        )
        # Up to date per the ledger; confirm against the cluster copy.
        try:
            current = self.store.get_secret_data(target.namespace, target.secret_name)
        except Exception as exc:
            logger.exception("Unexpected store error reading %s", target.ref)
            return outcome.model_copy(
                update={"success": False, "error": f"cannot verify secret: {exc}"}
            )
        if current is None:
            logger.warning("Secret %s no longer exists, recreating", target.ref)
            return self._write(target, PlanAction.CREATE, "missing from cluster")
        drifted = sorted(k for k, v in target.data.items() if current.get(k) != v)
        if drifted:
            logger.warning(
                "Secret %s drifted from the vault (%d key(s)), restoring", target.ref, len(drifted)
            )
            return self._write(target, PlanAction.UPDATE, "drifted from vault")

        record = self.ledger.get(*target.key)
        if record is not None and record.status != RecordStatus.SYNCED:
            self.ledger.upsert(
                record.model_copy(update={"status": RecordStatus.SYNCED, "last_error": None})
            )
        return outcome

    def _flag_orphan(self, record: ManagedSecretRecord) -> ItemOutcome:
        if record.status != RecordStatus.ORPHANED:
            self.ledger.upsert(
                record.model_copy(
                    update={
                        "status": RecordStatus.ORPHANED,
                        "last_error": "source item no longer maps to this secret",
                    }
                )
            )
        logger.info("Orphaned secret %s kept (orphan cleanup disabled)", record.ref)
        return ItemOutcome(
            namespace=record.namespace,
            secret_name=record.secret_name,
            action=PlanAction.ORPHAN,
            source_item_id=record.source_item_id,
            source_item_name=record.source_item_name,
            reason="orphaned; cleanup disabled",
        )

    def _write(
        self, target: MappingTarget, action: PlanAction, reason: Optional[str] = None
    ) -> ItemOutcome:
        outcome = ItemOutcome(
            namespace=target.namespace,
            secret_name=target.secret_name,
            action=action,
            source_item_id=target.source_item_id,
            source_item_name=target.source_item_name,
            reason=reason or ("new secret" if action == PlanAction.CREATE else "content changed"),
        )
        write = self.store.create_secret if action == PlanAction.CREATE else self.store.update_secret
        try:
            result = write(target.namespace, target.secret_name, target.data, target.annotations)
        except Exception as exc:
            logger.exception("Unexpected store error for %s", target.ref)
            return outcome.model_copy(update={"success": False, "error": str(exc)})
        if not result.success:
            return outcome.model_copy(update={"success": False, "error": result.error})

        try:
            self.ledger.upsert(
                ManagedSecretRecord(
                    namespace=target.namespace,
                    secret_name=target.secret_name,
                    source_item_id=target.source_item_id,
                    source_item_name=target.source_item_name,
                    fingerprint=target.fingerprint,
                    last_synced=utcnow(),
                    status=RecordStatus.SYNCED,
                    data_keys=len(target.data),
                )
            )
        except OSError as exc:
            logger.error("Ledger write for %s failed: %s", target.ref, exc)
            return outcome.model_copy(
                update={"success": False, "error": f"ledger write failed: {exc}"}
            )
        return outcome

    def _create(self, target: MappingTarget) -> ItemOutcome:
        return self._write(target, PlanAction.CREATE)

    def _update(self, target: MappingTarget) -> ItemOutcome:
        return self._write(target, PlanAction.UPDATE)

    def _delete(self, record: ManagedSecretRecord) -> ItemOutcome:
        outcome = ItemOutcome(
            namespace=record.namespace,
            secret_name=record.secret_name,
            action=PlanAction.DELETE,
            source_item_id=record.source_item_id,
            source_item_name=record.source_item_name,
            reason="orphaned",
        )
        try:
            result = self.store.delete_secret(record.namespace, record.secret_name)
        except Exception as exc:
            logger.exception("Unexpected store error deleting %s", record.ref)
            return outcome.model_copy(update={"success": False, "error": str(exc)})
        if not result.success:
            return outcome.model_copy(update={"success": False, "error": result.error})
        try:
            self.ledger.delete(record.namespace, record.secret_name)
        except OSError as exc:
            logger.error("Ledger delete for %s failed: %s", record.ref, exc)
            return outcome.model_copy(
                update={"success": False, "error": f"ledger write failed: {exc}"}
            )
        return outcome
