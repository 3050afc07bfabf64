class FleetwardError(Exception):
    """Base error for Fleetward."""


class RecoverableError(FleetwardError):
    """Indicates the operation can be retried safely."""


class PermanentError(FleetwardError):
    """Indicates the operation should not be retried."""


class ValidationError(PermanentError):
    """Input validation failure."""


class NotFoundError(PermanentError):
    """Referenced entity does not exist."""


class InvalidStateError(PermanentError):
    """Command is not applicable in the entity's current state."""

    def __init__(self, message: str, *, status: str | None = None) -> None:
        super().__init__(message)
        self.status = status


class TargetingPartialFailure(FleetwardError):
    """Some devices rejected a target version assignment."""

    def __init__(self, rollout_id: str, device_ids: tuple[str, ...]) -> None:
        super().__init__(
            f"Rollout {rollout_id}: {len(device_ids)} device(s) rejected targeting"
        )
        self.rollout_id = rollout_id
        self.device_ids = device_ids
