from __future__ import annotations

from datetime import datetime, timezone

from fleetward_core.rollouts.stages import decode_stage_percentages
from fleetward_core.rollouts.types import OUTCOMES, ROLLOUT_STATUSES, RolloutRecord


def rollout_to_dict(rollout: RolloutRecord) -> dict[str, object]:
    return {
        "id": rollout.id,
        "version": rollout.version,
        "stage_percentages": list(rollout.stage_percentages),
        "current_stage": rollout.current_stage,
        "status": rollout.status,
        "total_devices": rollout.total_devices,
        "updated_devices": rollout.updated_devices,
        "failed_devices": rollout.failed_devices,
        "auto_expand": rollout.auto_expand,
        "expand_after_minutes": rollout.expand_after_minutes,
        "failure_threshold": rollout.failure_threshold,
        "last_expanded": format_timestamp(rollout.last_expanded),
        "created_at": format_timestamp(rollout.created_at),
        "updated_at": format_timestamp(rollout.updated_at),
        "targeted_device_ids": list(rollout.targeted_device_ids),
        "pending_device_ids": list(rollout.pending_device_ids),
        "outcomes": dict(rollout.outcomes),
        "pause_reason": rollout.pause_reason,
        "failure_reason": rollout.failure_reason,
    }


def rollout_from_dict(payload: dict[str, object]) -> RolloutRecord:
    rollout_id = str(payload.get("id"))
    stages = decode_stage_percentages(
        payload.get("stage_percentages"),
        rollout_id=rollout_id,
    )
    status = str(payload.get("status", "active"))
    if status not in ROLLOUT_STATUSES:
        raise ValueError(f"Unknown rollout status for {rollout_id}: {status}")
    current_stage = _coerce_int(payload.get("current_stage"), 1)
    current_stage = max(1, min(current_stage, len(stages)))
    created_at = parse_timestamp(payload.get("created_at")) or _epoch()
    return RolloutRecord(
        id=rollout_id,
        version=str(payload.get("version", "")),
        stage_percentages=stages,
        current_stage=current_stage,
        status=status,
        total_devices=_coerce_int(payload.get("total_devices"), 0),
        updated_devices=_coerce_int(payload.get("updated_devices"), 0),
        failed_devices=_coerce_int(payload.get("failed_devices"), 0),
        auto_expand=bool(payload.get("auto_expand", True)),
        expand_after_minutes=_coerce_int(payload.get("expand_after_minutes"), 30),
        failure_threshold=_coerce_int(payload.get("failure_threshold"), 10),
        last_expanded=parse_timestamp(payload.get("last_expanded")),
        created_at=created_at,
        updated_at=parse_timestamp(payload.get("updated_at")) or created_at,
        targeted_device_ids=_coerce_ids(payload.get("targeted_device_ids")),
        pending_device_ids=_coerce_ids(payload.get("pending_device_ids")),
        outcomes=_coerce_outcomes(payload.get("outcomes")),
        pause_reason=_coerce_optional_str(payload.get("pause_reason")),
        failure_reason=_coerce_optional_str(payload.get("failure_reason")),
    )


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: object) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _epoch() -> datetime:
    return datetime.fromtimestamp(0, tz=timezone.utc)


def _coerce_int(value: object, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_ids(value: object) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(item) for item in value)


def _coerce_outcomes(value: object) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {
        str(device_id): str(outcome)
        for device_id, outcome in value.items()
        if outcome in OUTCOMES
    }


def _coerce_optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
