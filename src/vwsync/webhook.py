"""
Inbound webhook handling: signature check and payload parsing.

Vaultwarden (or a relay in front of it) signs the raw body with
HMAC-SHA256 and sends the hex digest, optionally prefixed ``sha256=``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Optional

from .models import WebhookEvent

logger = logging.getLogger("vwsync.webhook")

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(secret: str, payload: bytes, header: Optional[str]) -> bool:
    """Check a webhook signature in constant time.

    Args:
        secret: Shared webhook secret. Empty means verification is off.
        payload: Raw request body.
        header: Value of the signature header, if any.

    Returns:
        True when the signature matches (or no secret is configured).
    """
    if not secret:
        logger.warning("Webhook secret not configured, accepting unsigned request")
        return True
    if not header:
        logger.warning("Webhook request without signature rejected")
        return False
    provided = header.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    expected = compute_signature(secret, payload)
    if not hmac.compare_digest(expected, provided.lower()):
        logger.warning("Webhook signature mismatch")
        return False
    return True


def parse_webhook_event(payload: bytes) -> WebhookEvent:
    """Parse a webhook body.

    Accepts both ``eventType``/``itemId`` (Vaultwarden style) and
    ``event_type``/``item_id`` keys.

    Raises:
        ValueError: Body is not a JSON object or has no event type.
    """
    try:
        raw = json.loads(payload.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"webhook body is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError("webhook body must be a JSON object")

    event_type = raw.get("eventType") or raw.get("event_type") or raw.get("type")
    if not event_type:
        raise ValueError("webhook body has no event type")

    fields = {
        "event_type": str(event_type),
        "item_id": raw.get("itemId") or raw.get("item_id") or raw.get("objectId"),
        "namespace": raw.get("namespace"),
        "organization_id": raw.get("organizationId") or raw.get("organization_id"),
        "data": raw.get("data") if isinstance(raw.get("data"), dict) else {},
    }
    timestamp = raw.get("timestamp") or raw.get("date")
    if timestamp:
        fields["timestamp"] = timestamp
    return WebhookEvent.model_validate(fields)
