from __future__ import annotations

from typing import Iterable, Protocol

from fleetward_core.fleet.types import DeviceRecord, FirmwareRecord
from fleetward_core.rollouts.types import RolloutRecord
from fleetward_core.webhooks.types import WebhookRegistration


class DeviceRegistry(Protocol):
    def count_eligible_devices(self, version: str) -> int:
        ...

    def list_device_ids(self, *, offset: int, count: int) -> list[str]:
        ...

    def set_target_version(self, device_id: str, version: str) -> bool:
        ...

    def record_update_outcome(
        self,
        device_id: str,
        version: str,
        outcome: str,
    ) -> bool:
        ...


class FleetStore(DeviceRegistry, Protocol):
    def load_devices(self) -> list[DeviceRecord]:
        ...

    def register_device(
        self,
        *,
        name: str,
        mac_address: str | None = None,
        status: str = "unknown",
        current_version: str | None = None,
        last_seen_at: str | None = None,
        metadata: dict[str, object] | None = None,
        device_id: str | None = None,
    ) -> DeviceRecord:
        ...

    def update_device_status(
        self,
        *,
        device_id: str,
        status: str,
        last_seen_at: str | None = None,
    ) -> DeviceRecord | None:
        ...


class FirmwareCatalog(Protocol):
    def firmware_exists(self, version: str) -> bool:
        ...

    def load_firmware(self) -> list[FirmwareRecord]:
        ...

    def register_firmware(
        self,
        *,
        version: str,
        checksum: str | None = None,
        size_bytes: int | None = None,
        notes: str | None = None,
    ) -> FirmwareRecord:
        ...


class RolloutStore(Protocol):
    def get_rollout(self, rollout_id: str) -> RolloutRecord | None:
        ...

    def list_rollouts(self, *, status: str | None = None) -> list[RolloutRecord]:
        ...

    def save_rollout(self, rollout: RolloutRecord) -> RolloutRecord:
        ...


class WebhookStore(Protocol):
    def load_webhooks(self) -> list[WebhookRegistration]:
        ...

    def register_webhook(
        self,
        *,
        name: str,
        url: str,
        secret: str | None = None,
        event_types: Iterable[str] | None = None,
        enabled: bool = True,
        headers: dict[str, str] | None = None,
    ) -> WebhookRegistration:
        ...
