"""
Pydantic models for the sync engine.

Vault items come in as frozen snapshots. Everything the engine derives
from them (targets, plans, outcomes, summaries) lives here too, so the
reconciler, the gateway, the daemon and the CLI all speak one vocabulary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Vault side
# ---------------------------------------------------------------------------


class VaultItemType(int, Enum):
    """Bitwarden item types as reported by the vault."""

    LOGIN = 1
    SECURE_NOTE = 2
    CARD = 3
    IDENTITY = 4
    SSH_KEY = 5


class VaultField(BaseModel):
    """A custom field on a vault item."""

    model_config = ConfigDict(frozen=True)

    name: str
    value: Optional[str] = None
    type: int = 0


class VaultLogin(BaseModel):
    """Login credentials attached to a vault item."""

    model_config = ConfigDict(frozen=True)

    username: Optional[str] = None
    password: Optional[str] = None


class VaultItem(BaseModel):
    """Immutable snapshot of one vault entry, as fetched.

    Owned by the vault client. The engine only reads it.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    item_type: VaultItemType = VaultItemType.LOGIN
    organization_id: Optional[str] = None
    folder_id: Optional[str] = None
    collection_ids: list[str] = Field(default_factory=list)
    notes: Optional[str] = None
    login: Optional[VaultLogin] = None
    custom_fields: list[VaultField] = Field(default_factory=list)
    revision_date: Optional[datetime] = None
    deleted: bool = False

    def field_value(self, *names: str) -> Optional[str]:
        """Return the first custom field value matching any name (case-insensitive)."""
        wanted = [n.lower() for n in names if n]
        for name in wanted:
            for f in self.custom_fields:
                if f.name.lower() == name and f.value:
                    return f.value
        return None

    @property
    def revision(self) -> str:
        """Revision marker used in fingerprints."""
        return self.revision_date.isoformat() if self.revision_date else ""

    @classmethod
    def from_bw(cls, data: dict[str, Any]) -> "VaultItem":
        """Build a snapshot from Bitwarden CLI JSON (camelCase keys)."""
        login = data.get("login") or None
        item_type = data.get("type", VaultItemType.LOGIN.value)
        try:
            item_type = VaultItemType(item_type)
        except ValueError:
            item_type = VaultItemType.LOGIN
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            item_type=item_type,
            organization_id=data.get("organizationId"),
            folder_id=data.get("folderId"),
            collection_ids=list(data.get("collectionIds") or []),
            notes=data.get("notes"),
            login=(
                VaultLogin(
                    username=login.get("username"),
                    password=login.get("password"),
                )
                if login
                else None
            ),
            custom_fields=[
                VaultField(
                    name=f.get("name") or "",
                    value=f.get("value"),
                    type=f.get("type", 0),
                )
                for f in data.get("fields") or []
            ],
            revision_date=data.get("revisionDate"),
            deleted=bool(data.get("deletedDate")),
        )


# ---------------------------------------------------------------------------
# Targets and the ledger
# ---------------------------------------------------------------------------


class MappingTarget(BaseModel):
    """The (namespace, secret name, data) a vault item maps to."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    secret_name: str
    data: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    source_item_id: str
    source_item_name: str = ""
    source_revision: str = ""
    fingerprint: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.secret_name)

    @property
    def ref(self) -> str:
        return f"{self.namespace}/{self.secret_name}"


class RecordStatus(str, Enum):
    """Ledger status of a managed secret."""

    SYNCED = "synced"
    FAILED = "failed"
    ORPHANED = "orphaned"


class ManagedSecretRecord(BaseModel):
    """What the ledger remembers about one secret the engine owns."""

    namespace: str
    secret_name: str
    source_item_id: str
    source_item_name: str = ""
    fingerprint: str = ""
    last_synced: datetime = Field(default_factory=utcnow)
    status: RecordStatus = RecordStatus.SYNCED
    last_error: Optional[str] = None
    data_keys: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.secret_name)

    @property
    def ref(self) -> str:
        return f"{self.namespace}/{self.secret_name}"


# ---------------------------------------------------------------------------
# Scope and plan
# ---------------------------------------------------------------------------


class ScopeKind(str, Enum):
    """How much of the world a pass looks at."""

    FULL = "full"
    ITEM = "item"
    NAMESPACE = "namespace"


@dataclass(frozen=True)
class SyncScope:
    """Restricts which targets and ledger records a pass may touch.

    Attributes:
        kind: Full sweep, single item, or single namespace.
        item_id: The vault item for ITEM scope.
        namespace: The namespace for NAMESPACE scope.
    """

    kind: ScopeKind = ScopeKind.FULL
    item_id: Optional[str] = None
    namespace: Optional[str] = None

    @classmethod
    def full(cls) -> "SyncScope":
        return cls(ScopeKind.FULL)

    @classmethod
    def for_item(cls, item_id: str) -> "SyncScope":
        return cls(ScopeKind.ITEM, item_id=item_id)

    @classmethod
    def for_namespace(cls, namespace: str) -> "SyncScope":
        return cls(ScopeKind.NAMESPACE, namespace=namespace)

    @property
    def label(self) -> str:
        if self.kind == ScopeKind.ITEM:
            return f"item:{self.item_id}"
        if self.kind == ScopeKind.NAMESPACE:
            return f"namespace:{self.namespace}"
        return "full"

    @property
    def sees_all_claimants(self) -> bool:
        """True when every item that could claim a target in scope is visible.

        An ITEM pass only sees one item, so it cannot tell whether a
        target owned by some other item is still claimed.
        """
        return self.kind != ScopeKind.ITEM

    def contains_target(self, target: MappingTarget) -> bool:
        if self.kind == ScopeKind.NAMESPACE:
            return target.namespace == self.namespace
        if self.kind == ScopeKind.ITEM:
            return target.source_item_id == self.item_id
        return True

    def contains_record(self, record: ManagedSecretRecord) -> bool:
        if self.kind == ScopeKind.NAMESPACE:
            return record.namespace == self.namespace
        if self.kind == ScopeKind.ITEM:
            return record.source_item_id == self.item_id
        return True


class PlanAction(str, Enum):
    """What the reconciler decided for one plan entry."""

    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"
    DELETE = "delete"
    ORPHAN = "orphan"
    REJECT = "reject"


@dataclass
class Rejection:
    """A target the plan refuses because another item owns it."""

    target: MappingTarget
    reason: str


@dataclass
class SyncPlan:
    """Ephemeral create/update/skip/delete plan for one pass.

    Never persisted. ``orphaned`` holds records flagged but kept
    because orphan cleanup is off for the run.
    ``records_in_scope`` counts the in-scope ledger records the plan
    was computed from.
    """

    scope: SyncScope = field(default_factory=SyncScope.full)
    delete_orphans: bool = False
    to_create: list[MappingTarget] = field(default_factory=list)
    to_update: list[MappingTarget] = field(default_factory=list)
    to_skip: list[MappingTarget] = field(default_factory=list)
    to_delete: list[ManagedSecretRecord] = field(default_factory=list)
    orphaned: list[ManagedSecretRecord] = field(default_factory=list)
    rejected: list[Rejection] = field(default_factory=list)
    records_in_scope: int = 0

    @property
    def has_changes(self) -> bool:
        return bool(self.to_create or self.to_update or self.to_delete)

    @property
    def total(self) -> int:
        return (
            len(self.to_create)
            + len(self.to_update)
            + len(self.to_skip)
            + len(self.to_delete)
            + len(self.orphaned)
            + len(self.rejected)
        )

    def counts(self) -> dict[str, int]:
        return {
            "create": len(self.to_create),
            "update": len(self.to_update),
            "skip": len(self.to_skip),
            "delete": len(self.to_delete),
            "orphaned": len(self.orphaned),
            "rejected": len(self.rejected),
        }


# ---------------------------------------------------------------------------
# Outcomes and summaries
# ---------------------------------------------------------------------------


class ItemOutcome(BaseModel):
    """Result of applying one plan entry."""

    namespace: str
    secret_name: str
    action: PlanAction
    success: bool = True
    source_item_id: Optional[str] = None
    source_item_name: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def ref(self) -> str:
        return f"{self.namespace}/{self.secret_name}"


class OrphanCleanupSummary(BaseModel):
    """Orphan sub-result of a pass."""

    enabled: bool = False
    scanned: int = 0
    found: int = 0
    deleted: int = 0
    failed: int = 0
    orphan_names: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0


class SyncSummary(BaseModel):
    """Aggregate result of one sync pass.

    Returned to whoever asked for the run and forwarded to the audit sink.
    ``processed`` counts every plan entry handled in the pass.
    """

    run_id: Optional[str] = None
    scope: str = "full"
    trigger: str = "manual"
    dry_run: bool = False
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    total_vault_items: int = 0

    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    deleted: int = 0
    overall_success: bool = True

    orphan_cleanup: Optional[OrphanCleanupSummary] = None
    items: list[ItemOutcome] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def has_changes(self) -> bool:
        return bool(self.created or self.updated or self.deleted)

    def record(self, outcome: ItemOutcome) -> None:
        """Count one applied plan entry."""
        self.items.append(outcome)
        self.processed += 1
        if not outcome.success:
            self.failed += 1
            self.overall_success = False
            return
        if outcome.action == PlanAction.CREATE:
            self.created += 1
        elif outcome.action == PlanAction.UPDATE:
            self.updated += 1
        elif outcome.action == PlanAction.DELETE:
            self.deleted += 1
        else:
            self.skipped += 1

    def add_error(self, error: str) -> None:
        self.errors.append(error)
        self.overall_success = False

    def add_warning(self, warning: str) -> None:
        self.warnings.append(warning)

    def finish(self) -> "SyncSummary":
        self.end_time = utcnow()
        return self

    def counters(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "deleted": self.deleted,
        }


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class WebhookEventType(str, Enum):
    """Event kinds a Vaultwarden webhook may carry."""

    ITEM_CREATED = "item.created"
    ITEM_UPDATED = "item.updated"
    ITEM_DELETED = "item.deleted"
    ITEM_RESTORED = "item.restored"
    ITEM_MOVED = "item.moved"
    ITEM_SHARED = "item.shared"
    NAMESPACE_SYNC = "namespace.sync"


class WebhookEvent(BaseModel):
    """Inbound notification naming one changed item or a namespace."""

    event_type: str
    item_id: Optional[str] = None
    namespace: Optional[str] = None
    organization_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict)


class WebhookProcessingResult(BaseModel):
    """What a webhook caller gets back."""

    accepted: bool
    success: bool = False
    busy: bool = False
    error: Optional[str] = None
    summary: Optional[SyncSummary] = None
    processing_seconds: float = 0.0
