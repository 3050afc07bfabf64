from fleetward_core.rollouts.controller import (
    RolloutController,
    RolloutDefaults,
    utc_now,
)
from fleetward_core.rollouts.events import (
    EVENT_ADVANCED,
    EVENT_CANCELLED,
    EVENT_COMPLETED,
    EVENT_FAILED,
    EVENT_PAUSED,
    EVENT_RESUMED,
    EVENT_STARTED,
    ROLLOUT_EVENT_TYPES,
    CompositeEventSink,
    LoggingEventSink,
    RolloutEventSink,
    WebhookEventSink,
    build_rollout_event,
)
from fleetward_core.rollouts.locks import KeyedLocks
from fleetward_core.rollouts.scheduler import RolloutScheduler
from fleetward_core.rollouts.serialization import rollout_from_dict, rollout_to_dict
from fleetward_core.rollouts.stages import (
    failure_rate,
    plan_rollout,
    resolve_stage_percentages,
    stage_target_count,
    threshold_breached,
    validate_stage_percentages,
)
from fleetward_core.rollouts.store_sqlite import SqliteRolloutStore
from fleetward_core.rollouts.types import (
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    OUTCOMES,
    PAUSE_FAILURE_THRESHOLD,
    PAUSE_OPERATOR,
    ROLLOUT_ACTIVE,
    ROLLOUT_CANCELLED,
    ROLLOUT_COMPLETED,
    ROLLOUT_FAILED,
    ROLLOUT_PAUSED,
    ROLLOUT_STATUSES,
    TERMINAL_STATUSES,
    RolloutPlan,
    RolloutRecord,
    RolloutStage,
)

__all__ = [
    "CompositeEventSink",
    "EVENT_ADVANCED",
    "EVENT_CANCELLED",
    "EVENT_COMPLETED",
    "EVENT_FAILED",
    "EVENT_PAUSED",
    "EVENT_RESUMED",
    "EVENT_STARTED",
    "KeyedLocks",
    "LoggingEventSink",
    "OUTCOMES",
    "OUTCOME_FAILURE",
    "OUTCOME_SUCCESS",
    "PAUSE_FAILURE_THRESHOLD",
    "PAUSE_OPERATOR",
    "ROLLOUT_ACTIVE",
    "ROLLOUT_CANCELLED",
    "ROLLOUT_COMPLETED",
    "ROLLOUT_EVENT_TYPES",
    "ROLLOUT_FAILED",
    "ROLLOUT_PAUSED",
    "ROLLOUT_STATUSES",
    "RolloutController",
    "RolloutDefaults",
    "RolloutEventSink",
    "RolloutPlan",
    "RolloutRecord",
    "RolloutScheduler",
    "RolloutStage",
    "SqliteRolloutStore",
    "TERMINAL_STATUSES",
    "WebhookEventSink",
    "build_rollout_event",
    "failure_rate",
    "plan_rollout",
    "resolve_stage_percentages",
    "rollout_from_dict",
    "rollout_to_dict",
    "stage_target_count",
    "threshold_breached",
    "utc_now",
    "validate_stage_percentages",
]
