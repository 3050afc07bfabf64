"""Staged rollout state machine.

A rollout deploys one firmware version across the fleet in percentage
stages. Every mutation of a rollout runs under that rollout's mutex so
operator commands, device outcome reports and the auto-expand scheduler
are linearizable per rollout id. Target version assignments and event
delivery happen after the mutex is released.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Iterable, Sequence

from fleetward_core.config import (
    DEFAULT_EXPAND_AFTER_MINUTES,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_STAGE_PERCENTAGES,
    Config,
)
from fleetward_core.errors import (
    InvalidStateError,
    NotFoundError,
    TargetingPartialFailure,
    ValidationError,
)
from fleetward_core.logging import get_logger
from fleetward_core.rollouts import events as rollout_events
from fleetward_core.rollouts.events import LoggingEventSink, RolloutEventSink
from fleetward_core.rollouts.locks import KeyedLocks
from fleetward_core.rollouts.stages import (
    failure_rate,
    resolve_stage_percentages,
    select_stage_devices,
    threshold_breached,
)
from fleetward_core.rollouts.types import (
    OUTCOME_SUCCESS,
    OUTCOMES,
    PAUSE_FAILURE_THRESHOLD,
    PAUSE_OPERATOR,
    ROLLOUT_ACTIVE,
    ROLLOUT_CANCELLED,
    ROLLOUT_COMPLETED,
    ROLLOUT_FAILED,
    ROLLOUT_PAUSED,
    RolloutRecord,
)
from fleetward_core.webhooks.types import WebhookEvent

if TYPE_CHECKING:
    from fleetward_core.stores.interfaces import (
        DeviceRegistry,
        FirmwareCatalog,
        RolloutStore,
    )

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RolloutDefaults:
    stage_percentages: tuple[int, ...] = DEFAULT_STAGE_PERCENTAGES
    auto_expand: bool = True
    expand_after_minutes: int = DEFAULT_EXPAND_AFTER_MINUTES
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD

    @classmethod
    def from_config(cls, config: Config) -> "RolloutDefaults":
        return cls(
            stage_percentages=resolve_stage_percentages(
                config.default_stage_percentages
            ),
            auto_expand=config.default_auto_expand,
            expand_after_minutes=config.default_expand_after_minutes,
            failure_threshold=config.default_failure_threshold,
        )


class RolloutController:
    def __init__(
        self,
        *,
        store: RolloutStore,
        registry: DeviceRegistry,
        firmware: FirmwareCatalog,
        events: RolloutEventSink | None = None,
        clock: Clock = utc_now,
        defaults: RolloutDefaults | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._firmware = firmware
        self._events = events or LoggingEventSink()
        self._clock = clock
        self._defaults = defaults or RolloutDefaults()
        self._locks = KeyedLocks()

    # Queries

    def get_rollout(self, rollout_id: str) -> RolloutRecord:
        return self._require(rollout_id)

    def list_rollouts(self, *, status: str | None = None) -> list[RolloutRecord]:
        return self._store.list_rollouts(status=status)

    # Operator commands

    def create_rollout(
        self,
        version: str,
        stage_percentages: Sequence[int] | None = None,
        auto_expand: bool | None = None,
        expand_after_minutes: int | None = None,
        failure_threshold: int | None = None,
    ) -> RolloutRecord:
        version = (version or "").strip()
        if not version:
            raise ValidationError("Firmware version is required")
        if not self._firmware.firmware_exists(version):
            raise ValidationError(f"Firmware version not found: {version}")
        stages = resolve_stage_percentages(
            stage_percentages,
            default=self._defaults.stage_percentages,
        )
        if auto_expand is None:
            auto_expand = self._defaults.auto_expand
        if expand_after_minutes is None:
            expand_after_minutes = self._defaults.expand_after_minutes
        if failure_threshold is None:
            failure_threshold = self._defaults.failure_threshold
        if expand_after_minutes < 1:
            raise ValidationError("expand_after_minutes must be at least 1")
        if not 0 <= failure_threshold <= 100:
            raise ValidationError("failure_threshold must be between 0 and 100")

        total_devices = self._registry.count_eligible_devices(version)
        now = self._clock()
        rollout_id = str(uuid.uuid4())
        with self._locks.hold(rollout_id):
            selected = select_stage_devices(
                self._registry,
                stage_percentages=stages,
                stage=1,
                total_devices=total_devices,
                already_targeted=(),
            )
            rollout = RolloutRecord(
                id=rollout_id,
                version=version,
                stage_percentages=stages,
                current_stage=1,
                status=ROLLOUT_ACTIVE,
                total_devices=total_devices,
                updated_devices=0,
                failed_devices=0,
                auto_expand=bool(auto_expand),
                expand_after_minutes=expand_after_minutes,
                failure_threshold=failure_threshold,
                last_expanded=now,
                created_at=now,
                updated_at=now,
                targeted_device_ids=selected,
                pending_device_ids=selected,
            )
            self._store.save_rollout(rollout)

        logger.info(
            "Staged rollout created",
            extra={
                "rollout_id": rollout.id,
                "firmware_version": version,
                "total_devices": total_devices,
                "new_devices": len(selected),
            },
        )
        rollout = self._assign_targets(rollout, selected)
        self._publish(
            [
                rollout_events.build_rollout_event(
                    rollout_events.EVENT_STARTED,
                    rollout,
                    new_devices=len(selected),
                )
            ]
        )
        return rollout

    def advance_rollout(self, rollout_id: str) -> RolloutRecord:
        with self._locks.hold(rollout_id):
            rollout = self._require(rollout_id)
            self._check_status(rollout, "advance", ROLLOUT_ACTIVE)
            rollout, new_ids, events = self._advance_locked(
                rollout,
                self._clock(),
                trigger="operator",
            )
            self._store.save_rollout(rollout)
        rollout = self._assign_targets(rollout, new_ids)
        self._publish(events)
        return rollout

    def pause_rollout(self, rollout_id: str) -> RolloutRecord:
        with self._locks.hold(rollout_id):
            rollout = self._require(rollout_id)
            self._check_status(rollout, "pause", ROLLOUT_ACTIVE)
            rollout, events = self._pause_locked(rollout, PAUSE_OPERATOR)
            self._store.save_rollout(rollout)
        self._publish(events)
        return rollout

    def resume_rollout(self, rollout_id: str) -> RolloutRecord:
        with self._locks.hold(rollout_id):
            rollout = self._require(rollout_id)
            self._check_status(rollout, "resume", ROLLOUT_PAUSED)
            rollout = self._transition(
                rollout,
                ROLLOUT_ACTIVE,
                pause_reason=None,
                last_expanded=self._clock(),
            )
            self._store.save_rollout(rollout)
        self._publish(
            [rollout_events.build_rollout_event(rollout_events.EVENT_RESUMED, rollout)]
        )
        return rollout

    def cancel_rollout(self, rollout_id: str) -> None:
        with self._locks.hold(rollout_id):
            rollout = self._require(rollout_id)
            self._check_status(rollout, "cancel", ROLLOUT_ACTIVE, ROLLOUT_PAUSED)
            rollout = self._transition(rollout, ROLLOUT_CANCELLED)
            self._store.save_rollout(rollout)
        self._publish(
            [rollout_events.build_rollout_event(rollout_events.EVENT_CANCELLED, rollout)]
        )

    def fail_rollout(self, rollout_id: str, reason: str | None = None) -> RolloutRecord:
        with self._locks.hold(rollout_id):
            rollout = self._require(rollout_id)
            self._check_status(rollout, "fail", ROLLOUT_ACTIVE)
            rollout = self._transition(rollout, ROLLOUT_FAILED, failure_reason=reason)
            self._store.save_rollout(rollout)
        self._publish(
            [
                rollout_events.build_rollout_event(
                    rollout_events.EVENT_FAILED,
                    rollout,
                    reason=reason,
                )
            ]
        )
        return rollout

    # Ingestion hook

    def record_outcome(
        self,
        rollout_id: str,
        device_id: str,
        outcome: str,
    ) -> RolloutRecord:
        outcome = (outcome or "").strip().lower()
        if outcome not in OUTCOMES:
            raise ValidationError(f"Outcome must be one of: {', '.join(OUTCOMES)}")
        events: list[WebhookEvent] = []
        with self._locks.hold(rollout_id):
            rollout = self._require(rollout_id)
            if rollout.is_terminal:
                raise InvalidStateError(
                    f"Cannot record outcome for rollout {rollout_id}: "
                    f"not applicable in current state '{rollout.status}'",
                    status=rollout.status,
                )
            if device_id not in set(rollout.targeted_device_ids):
                raise ValidationError(
                    f"Device {device_id} is not targeted by rollout {rollout_id}"
                )
            if device_id in rollout.outcomes:
                logger.info(
                    "Duplicate device outcome ignored",
                    extra={
                        "rollout_id": rollout_id,
                        "device_id": device_id,
                        "outcome": outcome,
                    },
                )
                return rollout

            outcomes = dict(rollout.outcomes)
            outcomes[device_id] = outcome
            if outcome == OUTCOME_SUCCESS:
                rollout = self._touch(
                    rollout,
                    outcomes=outcomes,
                    updated_devices=rollout.updated_devices + 1,
                )
            else:
                rollout = self._touch(
                    rollout,
                    outcomes=outcomes,
                    failed_devices=rollout.failed_devices + 1,
                )
            if rollout.status == ROLLOUT_ACTIVE:
                if self._over_threshold(rollout):
                    rollout, events = self._pause_locked(
                        rollout,
                        PAUSE_FAILURE_THRESHOLD,
                    )
                elif self._completion_due(rollout):
                    rollout, events = self._complete_locked(rollout)
            self._store.save_rollout(rollout)

        logger.info(
            "Device outcome recorded",
            extra={
                "rollout_id": rollout_id,
                "device_id": device_id,
                "outcome": outcome,
                "status": rollout.status,
            },
        )
        self._record_device_outcome(rollout, device_id, outcome)
        self._publish(events)
        return rollout

    # Scheduler entry points

    def evaluate_auto_expand(self, rollout_id: str) -> RolloutRecord:
        new_ids: tuple[str, ...] = ()
        events: list[WebhookEvent] = []
        with self._locks.hold(rollout_id):
            rollout = self._require(rollout_id)
            if rollout.status != ROLLOUT_ACTIVE:
                return rollout
            now = self._clock()
            changed = True
            if self._over_threshold(rollout):
                rollout, events = self._pause_locked(rollout, PAUSE_FAILURE_THRESHOLD)
            elif self._completion_due(rollout):
                rollout, events = self._complete_locked(rollout)
            elif rollout.auto_expand and self._dwell_elapsed(rollout, now):
                rollout, new_ids, events = self._advance_locked(
                    rollout,
                    now,
                    trigger="auto_expand",
                )
            else:
                changed = False
            if changed:
                self._store.save_rollout(rollout)
            retry: tuple[str, ...] = ()
            if rollout.status == ROLLOUT_ACTIVE:
                fresh = set(new_ids)
                retry = tuple(
                    device_id
                    for device_id in rollout.pending_device_ids
                    if device_id not in fresh
                )

        if retry:
            logger.info(
                "Retrying pending target assignments",
                extra={"rollout_id": rollout.id, "failed_targets": len(retry)},
            )
        rollout = self._assign_targets(rollout, new_ids + retry)
        self._publish(events)
        return rollout

    def evaluate_active(self) -> list[RolloutRecord]:
        results: list[RolloutRecord] = []
        for rollout in self._store.list_rollouts(status=ROLLOUT_ACTIVE):
            try:
                results.append(self.evaluate_auto_expand(rollout.id))
            except Exception as exc:
                logger.exception(
                    "Rollout evaluation failed",
                    extra={"rollout_id": rollout.id, "error_message": str(exc)},
                )
        return results

    # Internals

    def _require(self, rollout_id: str) -> RolloutRecord:
        rollout = self._store.get_rollout(rollout_id)
        if rollout is None:
            raise NotFoundError(f"Rollout not found: {rollout_id}")
        return rollout

    def _check_status(
        self,
        rollout: RolloutRecord,
        command: str,
        *allowed: str,
    ) -> None:
        if rollout.status in allowed:
            return
        raise InvalidStateError(
            f"Cannot {command} rollout {rollout.id}: "
            f"not applicable in current state '{rollout.status}'",
            status=rollout.status,
        )

    def _touch(self, rollout: RolloutRecord, **changes: object) -> RolloutRecord:
        return replace(rollout, updated_at=self._clock(), **changes)

    def _transition(
        self,
        rollout: RolloutRecord,
        status: str,
        **changes: object,
    ) -> RolloutRecord:
        previous = rollout.status
        rollout = self._touch(rollout, status=status, **changes)
        logger.info(
            "Rollout status changed",
            extra={
                "rollout_id": rollout.id,
                "previous_status": previous,
                "status": status,
                "stage": rollout.current_stage,
                "pause_reason": rollout.pause_reason,
            },
        )
        return rollout

    def _over_threshold(self, rollout: RolloutRecord) -> bool:
        return threshold_breached(
            rollout.failed_devices,
            rollout.total_devices,
            rollout.failure_threshold,
        )

    def _completion_due(self, rollout: RolloutRecord) -> bool:
        if not rollout.is_final_stage or not rollout.targeted_device_ids:
            return False
        return len(rollout.outcomes) >= len(rollout.targeted_device_ids)

    def _dwell_elapsed(self, rollout: RolloutRecord, now: datetime) -> bool:
        since = rollout.last_expanded or rollout.created_at
        return now - since >= timedelta(minutes=rollout.expand_after_minutes)

    def _pause_locked(
        self,
        rollout: RolloutRecord,
        reason: str,
    ) -> tuple[RolloutRecord, list[WebhookEvent]]:
        rollout = self._transition(rollout, ROLLOUT_PAUSED, pause_reason=reason)
        if reason == PAUSE_FAILURE_THRESHOLD:
            logger.warning(
                "Rollout paused on failure threshold",
                extra={
                    "rollout_id": rollout.id,
                    "failure_rate": round(
                        failure_rate(rollout.failed_devices, rollout.total_devices), 2
                    ),
                    "failure_threshold": rollout.failure_threshold,
                },
            )
        event = rollout_events.build_rollout_event(
            rollout_events.EVENT_PAUSED,
            rollout,
            reason=reason,
        )
        return rollout, [event]

    def _complete_locked(
        self,
        rollout: RolloutRecord,
    ) -> tuple[RolloutRecord, list[WebhookEvent]]:
        rollout = self._transition(rollout, ROLLOUT_COMPLETED)
        event = rollout_events.build_rollout_event(
            rollout_events.EVENT_COMPLETED,
            rollout,
            success_count=rollout.updated_devices,
            failed_count=rollout.failed_devices,
        )
        return rollout, [event]

    def _advance_locked(
        self,
        rollout: RolloutRecord,
        now: datetime,
        *,
        trigger: str,
    ) -> tuple[RolloutRecord, tuple[str, ...], list[WebhookEvent]]:
        if rollout.is_final_stage:
            rollout, events = self._complete_locked(rollout)
            return rollout, (), events

        next_stage = rollout.current_stage + 1
        delta = select_stage_devices(
            self._registry,
            stage_percentages=rollout.stage_percentages,
            stage=next_stage,
            total_devices=rollout.total_devices,
            already_targeted=rollout.targeted_device_ids,
        )
        rollout = self._touch(
            rollout,
            current_stage=next_stage,
            last_expanded=now,
            targeted_device_ids=rollout.targeted_device_ids + delta,
            pending_device_ids=rollout.pending_device_ids + delta,
        )
        logger.info(
            "Rollout advanced",
            extra={
                "rollout_id": rollout.id,
                "stage": next_stage,
                "stage_percent": rollout.current_percent,
                "new_devices": len(delta),
                "targeted_devices": len(rollout.targeted_device_ids),
            },
        )
        event = rollout_events.build_rollout_event(
            rollout_events.EVENT_ADVANCED,
            rollout,
            trigger=trigger,
            new_devices=len(delta),
        )
        return rollout, delta, [event]

    def _assign_targets(
        self,
        rollout: RolloutRecord,
        device_ids: Iterable[str],
    ) -> RolloutRecord:
        device_ids = tuple(device_ids)
        if not device_ids:
            return rollout
        succeeded: list[str] = []
        failed: list[str] = []
        for device_id in device_ids:
            try:
                accepted = self._registry.set_target_version(device_id, rollout.version)
            except Exception as exc:
                logger.warning(
                    "Target version assignment raised",
                    extra={
                        "rollout_id": rollout.id,
                        "device_id": device_id,
                        "error_message": str(exc),
                    },
                )
                accepted = False
            if accepted:
                succeeded.append(device_id)
            else:
                failed.append(device_id)

        if failed:
            partial = TargetingPartialFailure(rollout.id, tuple(failed))
            logger.warning(
                str(partial),
                extra={
                    "rollout_id": rollout.id,
                    "failed_targets": len(failed),
                    "error_code": type(partial).__name__,
                },
            )
        if not succeeded:
            return rollout

        done = set(succeeded)
        with self._locks.hold(rollout.id):
            current = self._require(rollout.id)
            if current.is_terminal:
                return current
            pending = tuple(
                device_id
                for device_id in current.pending_device_ids
                if device_id not in done
            )
            if pending == current.pending_device_ids:
                return current
            current = self._touch(current, pending_device_ids=pending)
            self._store.save_rollout(current)
            return current

    def _record_device_outcome(
        self,
        rollout: RolloutRecord,
        device_id: str,
        outcome: str,
    ) -> None:
        try:
            self._registry.record_update_outcome(device_id, rollout.version, outcome)
        except Exception as exc:
            logger.warning(
                "Device outcome bookkeeping failed",
                extra={
                    "rollout_id": rollout.id,
                    "device_id": device_id,
                    "error_message": str(exc),
                },
            )

    def _publish(self, events: Iterable[WebhookEvent]) -> None:
        for event in events:
            try:
                self._events.publish(event)
            except Exception as exc:
                logger.exception(
                    "Rollout event publish failed",
                    extra={"event_type": event.event_type, "error_message": str(exc)},
                )
