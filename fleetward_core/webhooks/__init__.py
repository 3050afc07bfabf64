from fleetward_core.webhooks.delivery import (
    DeliveryOptions,
    DeliveryResult,
    deliver_webhook,
    deliver_webhooks,
)
from fleetward_core.webhooks.signer import sign_payload, verify_signature
from fleetward_core.webhooks.store import (
    load_webhooks,
    register_webhook,
    save_webhooks,
    webhook_registry_uri,
)
from fleetward_core.webhooks.types import (
    WebhookEvent,
    WebhookRegistration,
    event_to_dict,
    subscribes_to,
)

__all__ = [
    "DeliveryOptions",
    "DeliveryResult",
    "WebhookEvent",
    "WebhookRegistration",
    "deliver_webhook",
    "deliver_webhooks",
    "event_to_dict",
    "load_webhooks",
    "register_webhook",
    "save_webhooks",
    "sign_payload",
    "subscribes_to",
    "verify_signature",
    "webhook_registry_uri",
]
