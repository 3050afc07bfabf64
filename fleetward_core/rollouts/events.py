from __future__ import annotations

import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Protocol

from fleetward_core.logging import get_logger
from fleetward_core.rollouts.stages import failure_rate
from fleetward_core.rollouts.types import RolloutRecord
from fleetward_core.webhooks.delivery import DeliveryOptions, deliver_webhook
from fleetward_core.webhooks.types import (
    WebhookEvent,
    WebhookRegistration,
    subscribes_to,
)

logger = get_logger(__name__)

EVENT_STARTED = "rollout.started"
EVENT_ADVANCED = "rollout.advanced"
EVENT_PAUSED = "rollout.paused"
EVENT_RESUMED = "rollout.resumed"
EVENT_COMPLETED = "rollout.completed"
EVENT_CANCELLED = "rollout.cancelled"
EVENT_FAILED = "rollout.failed"

ROLLOUT_EVENT_TYPES = (
    EVENT_STARTED,
    EVENT_ADVANCED,
    EVENT_PAUSED,
    EVENT_RESUMED,
    EVENT_COMPLETED,
    EVENT_CANCELLED,
    EVENT_FAILED,
)


class RolloutEventSink(Protocol):
    def publish(self, event: WebhookEvent) -> None:
        ...


def build_rollout_event(
    event_type: str,
    rollout: RolloutRecord,
    **details: object,
) -> WebhookEvent:
    payload: dict[str, object] = {
        "rollout_id": rollout.id,
        "version": rollout.version,
        "status": rollout.status,
        "stage": rollout.current_stage,
        "stage_percent": rollout.current_percent,
        "total_devices": rollout.total_devices,
        "updated_devices": rollout.updated_devices,
        "failed_devices": rollout.failed_devices,
        "failure_rate": round(
            failure_rate(rollout.failed_devices, rollout.total_devices), 2
        ),
    }
    payload.update(details)
    return WebhookEvent(
        id=str(uuid.uuid4()),
        event_type=event_type,
        created_at=datetime.now(timezone.utc).isoformat(),
        payload=payload,
        source="rollout-controller",
    )


class LoggingEventSink:
    def publish(self, event: WebhookEvent) -> None:
        logger.info(
            "Rollout event",
            extra={
                "event_type": event.event_type,
                "rollout_id": event.payload.get("rollout_id"),
                "status": event.payload.get("status"),
                "stage": event.payload.get("stage"),
            },
        )


class WebhookEventSink:
    """Deliver rollout events to subscribed webhooks on a worker pool.

    ``close`` waits for queued deliveries.
    """

    def __init__(
        self,
        load_webhooks: Callable[[], list[WebhookRegistration]],
        *,
        options: DeliveryOptions | None = None,
        max_workers: int = 2,
    ) -> None:
        self._load_webhooks = load_webhooks
        self._options = options or DeliveryOptions()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="rollout-webhooks",
        )

    def publish(self, event: WebhookEvent) -> None:
        targets = [
            hook for hook in self._load_webhooks() if subscribes_to(hook, event.event_type)
        ]
        for hook in targets:
            self._executor.submit(self._deliver, hook, event)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _deliver(self, hook: WebhookRegistration, event: WebhookEvent) -> None:
        result = deliver_webhook(hook, event, self._options)
        extra = {
            "event_type": event.event_type,
            "webhook_id": hook.id,
            "attempt_count": result.attempts,
            "duration_ms": result.duration_ms,
            "status": result.status,
        }
        if result.status == "failed":
            extra["error_message"] = result.error
            logger.warning("Webhook delivery failed", extra=extra)
        else:
            logger.info("Webhook delivered", extra=extra)


class CompositeEventSink:
    def __init__(self, *sinks: RolloutEventSink) -> None:
        self._sinks = sinks

    def publish(self, event: WebhookEvent) -> None:
        for sink in self._sinks:
            try:
                sink.publish(event)
            except Exception as exc:
                logger.exception(
                    "Rollout event sink failed",
                    extra={"event_type": event.event_type, "error_message": str(exc)},
                )

    def close(self) -> None:
        for sink in self._sinks:
            close = getattr(sink, "close", None)
            if close is not None:
                close()
