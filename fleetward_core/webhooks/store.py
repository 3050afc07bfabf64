from __future__ import annotations

import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Iterable

from fleetward_core.errors import ValidationError
from fleetward_core.storage.documents import read_document, write_document
from fleetward_core.storage.paths import control_uri
from fleetward_core.webhooks.types import WebhookRegistration


def webhook_registry_uri(base_uri: str) -> str:
    return control_uri(base_uri, "webhooks.json")


def load_webhooks(base_uri: str) -> list[WebhookRegistration]:
    items = read_document(webhook_registry_uri(base_uri), "webhooks")
    return [_webhook_from_dict(item) for item in items]


def save_webhooks(base_uri: str, webhooks: Iterable[WebhookRegistration]) -> str:
    return write_document(
        webhook_registry_uri(base_uri),
        "webhooks",
        (asdict(hook) for hook in webhooks),
    )


def register_webhook(
    *,
    base_uri: str,
    name: str,
    url: str,
    secret: str | None = None,
    event_types: Iterable[str] | None = None,
    enabled: bool = True,
    headers: dict[str, str] | None = None,
) -> WebhookRegistration:
    if not url.startswith(("http://", "https://")):
        raise ValidationError("Webhook URL must be http(s)")
    now = datetime.now(timezone.utc).isoformat()
    registration = WebhookRegistration(
        id=str(uuid.uuid4()),
        name=name,
        url=url,
        secret=secret,
        event_types=_normalize_event_types(event_types),
        enabled=enabled,
        created_at=now,
        updated_at=now,
        headers=headers,
    )
    webhooks = load_webhooks(base_uri)
    webhooks.append(registration)
    save_webhooks(base_uri, webhooks)
    return registration


def _normalize_event_types(event_types: Iterable[str] | None) -> tuple[str, ...] | None:
    if not event_types:
        return None
    items = [str(item).strip() for item in event_types if str(item).strip()]
    if not items:
        return None
    return tuple(items)


def _webhook_from_dict(payload: dict[str, object]) -> WebhookRegistration:
    headers = payload.get("headers")
    return WebhookRegistration(
        id=str(payload.get("id")),
        name=str(payload.get("name", "")),
        url=str(payload.get("url", "")),
        secret=str(payload["secret"]) if payload.get("secret") else None,
        event_types=_normalize_event_types(payload.get("event_types")),
        enabled=bool(payload.get("enabled", True)),
        created_at=str(payload.get("created_at", "")),
        updated_at=str(payload.get("updated_at", "")),
        headers=(
            {str(key): str(value) for key, value in headers.items()}
            if isinstance(headers, dict)
            else None
        ),
    )
