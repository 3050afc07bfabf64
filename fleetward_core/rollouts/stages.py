from __future__ import annotations

import json
from typing import TYPE_CHECKING, Iterable, Iterator, Sequence

from fleetward_core.config import DEFAULT_STAGE_PERCENTAGES
from fleetward_core.errors import ValidationError
from fleetward_core.logging import get_logger
from fleetward_core.rollouts.types import RolloutPlan, RolloutStage

if TYPE_CHECKING:
    from fleetward_core.stores.interfaces import DeviceRegistry

logger = get_logger(__name__)

LIST_PAGE_SIZE = 500


def validate_stage_percentages(values: object) -> tuple[int, ...]:
    """Return the stages as a tuple or raise ValidationError.

    A valid sequence is non-empty, holds integers in (0, 100], never
    decreases and ends at 100.
    """
    if isinstance(values, (str, bytes)) or not isinstance(values, Sequence):
        raise ValidationError("Stage percentages must be a sequence of integers")
    if not values:
        raise ValidationError("Stage percentages must not be empty")
    cleaned: list[int] = []
    for raw in values:
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ValidationError(f"Stage percentage is not an integer: {raw!r}")
        if raw <= 0 or raw > 100:
            raise ValidationError(f"Stage percentage out of range (0, 100]: {raw}")
        if cleaned and raw < cleaned[-1]:
            raise ValidationError("Stage percentages must be non-decreasing")
        cleaned.append(raw)
    if cleaned[-1] != 100:
        raise ValidationError("Final stage percentage must be 100")
    return tuple(cleaned)


def resolve_stage_percentages(
    values: Sequence[int] | None,
    *,
    default: Sequence[int] = DEFAULT_STAGE_PERCENTAGES,
) -> tuple[int, ...]:
    if values is None:
        return tuple(default)
    if not isinstance(values, (str, bytes)) and isinstance(values, Sequence):
        if len(values) == 0:
            raise ValidationError("Stage percentages must not be empty")
    try:
        return validate_stage_percentages(values)
    except ValidationError as exc:
        logger.warning(
            "Malformed stage percentages, using default",
            extra={
                "error_message": str(exc),
                "stored_value": repr(values),
            },
        )
        return tuple(default)


def encode_stage_percentages(stages: Sequence[int]) -> str:
    return json.dumps(list(stages))


def decode_stage_percentages(
    raw: object,
    *,
    rollout_id: str | None = None,
    default: Sequence[int] = DEFAULT_STAGE_PERCENTAGES,
) -> tuple[int, ...]:
    value = raw
    try:
        if isinstance(raw, (str, bytes)):
            value = json.loads(raw)
        return validate_stage_percentages(value)
    except (ValueError, ValidationError) as exc:
        logger.warning(
            "Stored stage percentages unreadable, using default",
            extra={
                "rollout_id": rollout_id,
                "error_message": str(exc),
                "stored_value": repr(raw),
            },
        )
        return tuple(default)


def stage_target_count(total_devices: int, percent: int) -> int:
    if total_devices <= 0:
        return 0
    return min(total_devices, (total_devices * percent) // 100)


def failure_rate(failed_devices: int, total_devices: int) -> float:
    if total_devices <= 0:
        return 0.0
    return failed_devices / total_devices * 100


def threshold_breached(
    failed_devices: int,
    total_devices: int,
    failure_threshold: int,
) -> bool:
    if failed_devices <= 0:
        return False
    return failure_rate(failed_devices, total_devices) >= failure_threshold


def select_delta(
    ordered_device_ids: Iterable[str],
    *,
    already_targeted: Iterable[str],
    target_count: int,
) -> tuple[str, ...]:
    targeted = set(already_targeted)
    needed = target_count - len(targeted)
    if needed <= 0:
        return ()
    selected: list[str] = []
    seen: set[str] = set()
    for device_id in ordered_device_ids:
        if device_id in targeted or device_id in seen:
            continue
        seen.add(device_id)
        selected.append(device_id)
        if len(selected) >= needed:
            break
    return tuple(selected)


def iter_registry_ids(
    registry: DeviceRegistry,
    *,
    page_size: int = LIST_PAGE_SIZE,
) -> Iterator[str]:
    offset = 0
    while True:
        batch = registry.list_device_ids(offset=offset, count=page_size)
        if not batch:
            return
        yield from batch
        if len(batch) < page_size:
            return
        offset += len(batch)


def select_stage_devices(
    registry: DeviceRegistry,
    *,
    stage_percentages: Sequence[int],
    stage: int,
    total_devices: int,
    already_targeted: Sequence[str],
) -> tuple[str, ...]:
    percent = stage_percentages[stage - 1]
    return select_delta(
        iter_registry_ids(registry),
        already_targeted=already_targeted,
        target_count=stage_target_count(total_devices, percent),
    )


def plan_rollout(
    device_ids: Iterable[str],
    *,
    stage_percentages: Sequence[int] | None = None,
) -> RolloutPlan:
    ids = sorted(set(device_ids))
    total = len(ids)
    percentages = resolve_stage_percentages(stage_percentages)

    stages: list[RolloutStage] = []
    targeted: list[str] = []
    for idx, percent in enumerate(percentages, start=1):
        target = stage_target_count(total, percent)
        delta = select_delta(ids, already_targeted=targeted, target_count=target)
        targeted.extend(delta)
        stages.append(
            RolloutStage(
                stage=idx,
                percent=percent,
                target_count=len(targeted),
                device_ids=delta,
            )
        )

    return RolloutPlan(total_devices=total, stages=tuple(stages))
