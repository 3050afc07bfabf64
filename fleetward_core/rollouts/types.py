from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

ROLLOUT_ACTIVE = "active"
ROLLOUT_PAUSED = "paused"
ROLLOUT_COMPLETED = "completed"
ROLLOUT_FAILED = "failed"
ROLLOUT_CANCELLED = "cancelled"

ROLLOUT_STATUSES = (
    ROLLOUT_ACTIVE,
    ROLLOUT_PAUSED,
    ROLLOUT_COMPLETED,
    ROLLOUT_FAILED,
    ROLLOUT_CANCELLED,
)
TERMINAL_STATUSES = frozenset({ROLLOUT_COMPLETED, ROLLOUT_FAILED, ROLLOUT_CANCELLED})

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOMES = (OUTCOME_SUCCESS, OUTCOME_FAILURE)

PAUSE_OPERATOR = "operator"
PAUSE_FAILURE_THRESHOLD = "failure_threshold"


@dataclass(frozen=True)
class RolloutRecord:
    id: str
    version: str
    stage_percentages: tuple[int, ...]
    current_stage: int
    status: str
    total_devices: int
    updated_devices: int
    failed_devices: int
    auto_expand: bool
    expand_after_minutes: int
    failure_threshold: int
    last_expanded: datetime | None
    created_at: datetime
    updated_at: datetime
    targeted_device_ids: tuple[str, ...] = ()
    pending_device_ids: tuple[str, ...] = ()
    outcomes: dict[str, str] = field(default_factory=dict)
    pause_reason: str | None = None
    failure_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def stage_count(self) -> int:
        return len(self.stage_percentages)

    @property
    def is_final_stage(self) -> bool:
        return self.current_stage >= self.stage_count

    @property
    def current_percent(self) -> int:
        return self.stage_percentages[self.current_stage - 1]

    @property
    def reported_devices(self) -> int:
        return self.updated_devices + self.failed_devices


@dataclass(frozen=True)
class RolloutStage:
    stage: int
    percent: int
    target_count: int
    device_ids: tuple[str, ...]


@dataclass(frozen=True)
class RolloutPlan:
    total_devices: int
    stages: tuple[RolloutStage, ...]
