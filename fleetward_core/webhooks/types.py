from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class WebhookRegistration:
    id: str
    name: str
    url: str
    secret: str | None
    event_types: tuple[str, ...] | None
    enabled: bool
    created_at: str
    updated_at: str
    headers: dict[str, str] | None = None


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    event_type: str
    created_at: str
    payload: dict[str, Any]
    source: str | None = None


def event_to_dict(event: WebhookEvent) -> dict[str, object]:
    return {
        "id": event.id,
        "event": event.event_type,
        "timestamp": event.created_at,
        "source": event.source,
        "data": event.payload,
    }


def subscribes_to(webhook: WebhookRegistration, event_type: str) -> bool:
    if not webhook.enabled:
        return False
    if not webhook.event_types or "*" in webhook.event_types:
        return True
    return event_type in webhook.event_types
