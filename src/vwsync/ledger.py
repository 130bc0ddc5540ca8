"""
State Ledger -- durable memory of which secrets the engine owns.

One ManagedSecretRecord per (namespace, secret name). The reconciler
is the only writer, and only after the matching Kubernetes write was
confirmed, so a crashed or cancelled pass leaves the ledger describing
what is really in the cluster.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .errors import ConfigurationError
from .models import ManagedSecretRecord

logger = logging.getLogger("vwsync.ledger")

LEDGER_FILE = "ledger.json"


class StateLedger(ABC):
    """Abstract (namespace, secret name) -> record store."""

    @abstractmethod
    def get(self, namespace: str, secret_name: str) -> Optional[ManagedSecretRecord]:
        """Return the record for a secret, or None."""

    @abstractmethod
    def upsert(self, record: ManagedSecretRecord) -> None:
        """Insert or replace the record keyed by its (namespace, secret name)."""

    @abstractmethod
    def list_all(self) -> list[ManagedSecretRecord]:
        """Every record, sorted by namespace then secret name."""

    @abstractmethod
    def delete(self, namespace: str, secret_name: str) -> bool:
        """Remove a record. Returns True if one existed."""

    def check(self) -> None:
        """Raise ConfigurationError if the ledger cannot be trusted for a pass."""


class MemoryStateLedger(StateLedger):
    """Process-local ledger, used for dry runs and plan previews."""

    def __init__(self, records: Optional[list[ManagedSecretRecord]] = None):
        self._lock = threading.Lock()
        self._records: dict[tuple[str, str], ManagedSecretRecord] = {
            r.key: r for r in records or []
        }

    def get(self, namespace: str, secret_name: str) -> Optional[ManagedSecretRecord]:
        with self._lock:
            return self._records.get((namespace, secret_name))

    def upsert(self, record: ManagedSecretRecord) -> None:
        with self._lock:
            self._records[record.key] = record

    def list_all(self) -> list[ManagedSecretRecord]:
        with self._lock:
            return [self._records[k] for k in sorted(self._records)]

    def delete(self, namespace: str, secret_name: str) -> bool:
        with self._lock:
            return self._records.pop((namespace, secret_name), None) is not None


class JsonStateLedger(MemoryStateLedger):
    """Ledger persisted as a single JSON document.

    Every mutation rewrites the file through a temp file and an atomic
    rename, so readers never see a torn write.

    An unreadable file is never treated as an empty ledger: ``check``
    raises until the file is repaired, and writes are refused so the
    damaged file is left as it is for inspection.

    Args:
        state_dir: Directory holding ``ledger.json``.
    """

    def __init__(self, state_dir: Path):
        self.path = Path(state_dir).expanduser() / LEDGER_FILE
        self.load_error: Optional[str] = None
        super().__init__(self._load())

    def _load(self) -> list[ManagedSecretRecord]:
        self.load_error = None
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("top level is not an object")
            return [ManagedSecretRecord.model_validate(r) for r in raw.get("records", [])]
        except (OSError, ValueError) as exc:
            self.load_error = f"ledger {self.path} is unreadable: {exc}"
            logger.error("%s", self.load_error)
            return []

    def check(self) -> None:
        if self.load_error is None:
            return
        records = self._load()
        if self.load_error is not None:
            raise ConfigurationError(self.load_error)
        logger.info("Ledger %s readable again, %d record(s)", self.path, len(records))
        with self._lock:
            self._records = {r.key: r for r in records}

    def _writable(self) -> None:
        if self.load_error is not None:
            raise ConfigurationError(self.load_error)

    def _save_locked(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": 1,
            "records": [
                self._records[k].model_dump(mode="json") for k in sorted(self._records)
            ],
        }
        tmp = self.path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def upsert(self, record: ManagedSecretRecord) -> None:
        with self._lock:
            self._writable()
            self._records[record.key] = record
            self._save_locked()

    def delete(self, namespace: str, secret_name: str) -> bool:
        with self._lock:
            self._writable()
            existed = self._records.pop((namespace, secret_name), None) is not None
            if existed:
                self._save_locked()
            return existed
