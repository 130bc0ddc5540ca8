"""
Item Mapper -- translates vault items into secret targets.

An item opts in by naming one or more namespaces, either in a custom
field (``namespaces``) or on a ``#namespaces:`` line in its notes.
Everything else is derived:

    secret name   ``secret-name`` field / ``#secret-name:`` line / item name
    password      login password, ssh key field, or the note body
    username      login username or a ``username``/``user``/``login`` field
    extra keys    custom fields, ``#kv:key=value`` lines, and fenced
                  ```secret:<key>``` blocks in the notes

Mapping fails closed: a bad tag or an invalid Kubernetes name yields no
target and a logged reason, never a half-built secret.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from .config import FieldNames
from .errors import MappingError
from .models import MappingTarget, VaultItem

logger = logging.getLogger("vwsync.mapper")

ANNOTATION_PREFIX = "vwsync.io"
SOURCE_ID_ANNOTATION = f"{ANNOTATION_PREFIX}/source-item-id"
SOURCE_NAME_ANNOTATION = f"{ANNOTATION_PREFIX}/source-item-name"
FINGERPRINT_ANNOTATION = f"{ANNOTATION_PREFIX}/fingerprint"

MAX_SECRET_NAME = 253
MAX_NAMESPACE = 63

_DNS_LABEL = r"[a-z0-9]([-a-z0-9]*[a-z0-9])?"
_SUBDOMAIN_RE = re.compile(rf"^{_DNS_LABEL}(\.{_DNS_LABEL})*$")
_LABEL_RE = re.compile(rf"^{_DNS_LABEL}$")
_NAME_INVALID_RE = re.compile(r"[^a-z0-9-]")
_KEY_INVALID_RE = re.compile(r"[^-._a-zA-Z0-9]")

_USERNAME_FIELDS = ("username", "user", "login")
_SSH_KEY_FIELDS = ("ssh_key", "private_key", "ssh_private_key")
_NOTE_TAGS = ("#namespaces:", "#secret-name:", "#kv:")


def fingerprint(data: dict[str, str], revision: str = "") -> str:
    """Content hash over canonicalized data plus the source revision.

    Keys are sorted before hashing, so insertion order never matters.
    """
    canonical = json.dumps(
        {"data": data, "revision": revision},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def sanitize_secret_name(name: str) -> str:
    """Lowercase a free-form name into a Kubernetes-friendly secret name."""
    sanitized = _NAME_INVALID_RE.sub("-", name.strip().lower())
    sanitized = re.sub(r"-+", "-", sanitized).strip("-")
    if len(sanitized) > MAX_SECRET_NAME:
        sanitized = sanitized[:MAX_SECRET_NAME].rstrip("-")
    return sanitized


def is_valid_secret_name(name: str) -> bool:
    return 0 < len(name) <= MAX_SECRET_NAME and bool(_SUBDOMAIN_RE.match(name))


def is_valid_namespace(name: str) -> bool:
    return 0 < len(name) <= MAX_NAMESPACE and bool(_LABEL_RE.match(name))


def sanitize_key(key: str, replacement: str = "-") -> Optional[str]:
    """Reduce a field name to a valid secret data key, or None if nothing is left."""
    if replacement not in ("-", ".", "_"):
        replacement = "-"
    sanitized = _KEY_INVALID_RE.sub(replacement, key.strip())
    sanitized = re.sub(re.escape(replacement) + "+", replacement, sanitized)
    sanitized = sanitized.strip(replacement)
    if not re.search(r"[a-zA-Z0-9]", sanitized):
        return None
    return sanitized


def format_multiline(value: str) -> str:
    """Turn literal ``\\n`` escapes into real newlines when the value has none."""
    if "\n" in value or "\r" in value:
        return value.replace("\r\n", "\n")
    if "\\n" in value:
        return value.replace("\\r\\n", "\n").replace("\\n", "\n").replace("\\t", "\t")
    return value


def _note_lines(notes: Optional[str]) -> list[str]:
    if not notes:
        return []
    return notes.replace("\r\n", "\n").replace("\r", "\n").split("\n")


def _note_tag(notes: Optional[str], tag: str) -> Optional[str]:
    for line in _note_lines(notes):
        stripped = line.strip()
        if stripped.lower().startswith(tag):
            value = stripped[len(tag):].strip()
            if value:
                return value
    return None


def parse_note_secrets(notes: Optional[str]) -> dict[str, str]:
    """Extract ``#kv:key=value`` lines and fenced ```secret:<key>``` blocks."""
    results: dict[str, str] = {}
    in_block = False
    current_key = ""
    buffer: list[str] = []

    for line in _note_lines(notes):
        if in_block:
            if line.startswith("```"):
                results[current_key] = "\n".join(buffer)
                in_block = False
                buffer = []
            else:
                buffer.append(line)
            continue

        if line.lower().startswith("```secret:"):
            key = line[len("```secret:"):].strip()
            if key:
                in_block = True
                current_key = key
                buffer = []
                continue

        stripped = line.strip()
        if stripped.lower().startswith("#kv:"):
            k, sep, v = stripped[len("#kv:"):].partition("=")
            if sep and k.strip():
                results[k.strip()] = v

    if in_block and current_key:
        results[current_key] = "\n".join(buffer)
    return results


def note_body(notes: Optional[str]) -> str:
    """The free text of the notes, minus tag lines and fenced secret blocks."""
    kept: list[str] = []
    in_block = False
    for line in _note_lines(notes):
        if in_block:
            if line.startswith("```"):
                in_block = False
            continue
        if line.lower().startswith("```secret:"):
            in_block = True
            continue
        if line.strip().lower().startswith(_NOTE_TAGS):
            continue
        kept.append(line)

    while kept and not kept[0].strip():
        kept.pop(0)
    while kept and not kept[-1].strip():
        kept.pop()
    return "\n".join(kept)


@dataclass
class MappingResult:
    """Targets from a batch of items plus the reasons items were excluded."""

    targets: list[MappingTarget] = field(default_factory=list)
    excluded: list[MappingError] = field(default_factory=list)
    untagged: int = 0


class ItemMapper:
    """Turns VaultItems into MappingTargets using tag conventions.

    Args:
        field_names: Which custom fields carry the mapping metadata.
        secret_prefix: Prepended to every derived secret name.
    """

    def __init__(
        self,
        field_names: Optional[FieldNames] = None,
        secret_prefix: str = "",
    ):
        self.field_names = field_names or FieldNames()
        self.secret_prefix = secret_prefix

    # -- public API ---------------------------------------------------------

    def map(self, item: VaultItem) -> Optional[MappingTarget]:
        """Map an item to at most one target (its first namespace).

        Returns:
            The target, or None if the item is untagged or invalid.
        """
        targets = self.map_all(item)
        return targets[0] if targets else None

    def map_all(self, item: VaultItem) -> list[MappingTarget]:
        """Map an item to one target per tagged namespace, failing closed."""
        try:
            return self.build(item)
        except MappingError as exc:
            logger.info("Skipping item %s (%s): %s", item.id, item.name, exc.reason)
            return []

    def map_items(self, items: list[VaultItem]) -> MappingResult:
        """Map a whole batch, collecting exclusion reasons."""
        result = MappingResult()
        for item in items:
            if not self.namespaces_for(item):
                result.untagged += 1
                continue
            try:
                result.targets.extend(self.build(item))
            except MappingError as exc:
                logger.info("Skipping item %s (%s): %s", item.id, item.name, exc.reason)
                result.excluded.append(exc)
        return result

    def namespaces_for(self, item: VaultItem) -> list[str]:
        """Namespaces an item is tagged for, in tag order, deduplicated."""
        raw = item.field_value(self.field_names.namespaces, "namespaces")
        if raw is None:
            raw = _note_tag(item.notes, "#namespaces:")
        if not raw:
            return []
        namespaces: list[str] = []
        for part in raw.split(","):
            ns = part.strip()
            if ns and ns not in namespaces:
                namespaces.append(ns)
        return namespaces

    def build(self, item: VaultItem) -> list[MappingTarget]:
        """Build every target for an item.

        Raises:
            MappingError: Deleted item, bad namespace, or invalid secret name.
        """
        namespaces = self.namespaces_for(item)
        if not namespaces:
            logger.debug("Item %s has no namespace tag", item.id)
            return []
        if item.deleted:
            raise MappingError(item.id, "item is in the trash")

        for ns in namespaces:
            if not is_valid_namespace(ns):
                raise MappingError(item.id, f"invalid namespace {ns!r}")

        raw_name = self._raw_secret_name(item)
        secret_name = sanitize_secret_name(self.secret_prefix + raw_name)
        if not is_valid_secret_name(secret_name):
            raise MappingError(
                item.id, f"{raw_name!r} is not a valid Kubernetes secret name"
            )

        data = self._extract_data(item, raw_name)
        digest = fingerprint(data, item.revision)
        annotations = {
            SOURCE_ID_ANNOTATION: item.id,
            SOURCE_NAME_ANNOTATION: item.name,
            FINGERPRINT_ANNOTATION: digest,
        }
        return [
            MappingTarget(
                namespace=ns,
                secret_name=secret_name,
                data=data,
                annotations=annotations,
                source_item_id=item.id,
                source_item_name=item.name,
                source_revision=item.revision,
                fingerprint=digest,
            )
            for ns in namespaces
        ]

    # -- internals ----------------------------------------------------------

    def _metadata_fields(self) -> set[str]:
        fn = self.field_names
        names = {
            fn.namespaces,
            fn.secret_name,
            fn.secret_key_password,
            fn.secret_key_username,
            fn.ignore_fields,
            "namespaces",
            "secret-name",
            "secret-key",
            "secret-key-password",
            "secret-key-username",
        }
        return {n.lower() for n in names}

    def _raw_secret_name(self, item: VaultItem) -> str:
        name = item.field_value(self.field_names.secret_name, "secret-name")
        if name is None:
            name = _note_tag(item.notes, "#secret-name:")
        return (name or item.name).strip()

    def _key(self, name: str) -> Optional[str]:
        return sanitize_key(name, self.field_names.replacement_char)

    def _extract_data(self, item: VaultItem, raw_name: str) -> dict[str, str]:
        fn = self.field_names
        base_key = self._key(raw_name) or sanitize_secret_name(raw_name)
        data: dict[str, str] = {}

        username = self._username(item)
        if username:
            key = item.field_value(fn.secret_key_username, "secret-key-username")
            key = self._key(key) if key else f"{base_key}-username"
            if key:
                data[key] = format_multiline(username)

        password_key = item.field_value(
            fn.secret_key_password, "secret-key-password", "secret-key"
        )
        password_key = (self._key(password_key) if password_key else None) or base_key
        password = self._password(item)
        if password:
            data[password_key] = format_multiline(password)
        else:
            body = note_body(item.notes)
            if body.strip():
                data[password_key] = body

        ignored = {
            n.strip().lower()
            for n in (item.field_value(fn.ignore_fields, "ignore-field") or "").split(",")
            if n.strip()
        }
        metadata = self._metadata_fields()
        for f in item.custom_fields:
            if not f.name or not f.value:
                continue
            lowered = f.name.lower()
            if lowered in metadata or lowered in ignored:
                continue
            key = self._key(f.name)
            if key is None:
                logger.warning(
                    "Item %s: field %r has no usable characters, dropped", item.id, f.name
                )
                continue
            data.setdefault(key, format_multiline(f.value))

        for raw_key, value in parse_note_secrets(item.notes).items():
            key = self._key(raw_key)
            if key and raw_key.lower() not in ignored:
                data.setdefault(key, value)

        return data

    @staticmethod
    def _username(item: VaultItem) -> str:
        if item.login and item.login.username:
            return item.login.username
        return item.field_value(*_USERNAME_FIELDS) or ""

    @staticmethod
    def _password(item: VaultItem) -> str:
        if item.login and item.login.password:
            return item.login.password
        return item.field_value(*_SSH_KEY_FIELDS) or ""
