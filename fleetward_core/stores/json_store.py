from __future__ import annotations

import threading
from typing import Iterable

from fleetward_core.fleet import firmware as firmware_store
from fleetward_core.fleet import store as fleet_store
from fleetward_core.fleet.types import DeviceRecord, FirmwareRecord
from fleetward_core.rollouts import store as rollout_store
from fleetward_core.rollouts.types import RolloutRecord
from fleetward_core.stores.interfaces import (
    FirmwareCatalog,
    FleetStore,
    RolloutStore,
    WebhookStore,
)
from fleetward_core.webhooks import store as webhook_store
from fleetward_core.webhooks.types import WebhookRegistration

# Each document is rewritten whole, so writers in one process serialize on a
# per-document lock.
_DOCUMENT_LOCKS: dict[str, threading.RLock] = {}
_DOCUMENT_LOCKS_GUARD = threading.Lock()


def _document_lock(uri: str) -> threading.RLock:
    with _DOCUMENT_LOCKS_GUARD:
        lock = _DOCUMENT_LOCKS.get(uri)
        if lock is None:
            lock = threading.RLock()
            _DOCUMENT_LOCKS[uri] = lock
        return lock


class JsonFleetStore(FleetStore):
    def __init__(self, base_uri: str) -> None:
        self._base_uri = base_uri
        self._lock = _document_lock(fleet_store.device_registry_uri(base_uri))

    def load_devices(self) -> list[DeviceRecord]:
        return fleet_store.load_devices(self._base_uri)

    def save_devices(self, devices: Iterable[DeviceRecord]) -> str:
        with self._lock:
            return fleet_store.save_devices(self._base_uri, devices)

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
        with self._lock:
            return fleet_store.register_device(
                base_uri=self._base_uri,
                name=name,
                mac_address=mac_address,
                status=status,
                current_version=current_version,
                last_seen_at=last_seen_at,
                metadata=metadata,
                device_id=device_id,
            )

    def update_device_status(
        self,
        *,
        device_id: str,
        status: str,
        last_seen_at: str | None = None,
    ) -> DeviceRecord | None:
        with self._lock:
            return fleet_store.update_device_status(
                base_uri=self._base_uri,
                device_id=device_id,
                status=status,
                last_seen_at=last_seen_at,
            )

    def count_eligible_devices(self, version: str) -> int:
        return len(self.load_devices())

    def list_device_ids(self, *, offset: int, count: int) -> list[str]:
        ids = fleet_store.sorted_device_ids(self.load_devices())
        return ids[max(offset, 0) : max(offset, 0) + max(count, 0)]

    def set_target_version(self, device_id: str, version: str) -> bool:
        with self._lock:
            updated = fleet_store.set_device_target(
                base_uri=self._base_uri,
                device_id=device_id,
                version=version,
            )
        return updated is not None

    def record_update_outcome(self, device_id: str, version: str, outcome: str) -> bool:
        with self._lock:
            updated = fleet_store.record_device_outcome(
                base_uri=self._base_uri,
                device_id=device_id,
                version=version,
                outcome=outcome,
            )
        return updated is not None


class JsonFirmwareCatalog(FirmwareCatalog):
    def __init__(self, base_uri: str) -> None:
        self._base_uri = base_uri
        self._lock = _document_lock(firmware_store.firmware_catalog_uri(base_uri))

    def firmware_exists(self, version: str) -> bool:
        return firmware_store.get_firmware(self._base_uri, version) is not None

    def load_firmware(self) -> list[FirmwareRecord]:
        return firmware_store.load_firmware(self._base_uri)

    def register_firmware(
        self,
        *,
        version: str,
        checksum: str | None = None,
        size_bytes: int | None = None,
        notes: str | None = None,
    ) -> FirmwareRecord:
        with self._lock:
            return firmware_store.register_firmware(
                base_uri=self._base_uri,
                version=version,
                checksum=checksum,
                size_bytes=size_bytes,
                notes=notes,
            )


class JsonRolloutStore(RolloutStore):
    def __init__(self, base_uri: str) -> None:
        self._base_uri = base_uri
        self._lock = _document_lock(rollout_store.rollout_registry_uri(base_uri))

    def get_rollout(self, rollout_id: str) -> RolloutRecord | None:
        with self._lock:
            rollouts = rollout_store.load_rollouts(self._base_uri)
        return next((item for item in rollouts if item.id == rollout_id), None)

    def list_rollouts(self, *, status: str | None = None) -> list[RolloutRecord]:
        with self._lock:
            rollouts = rollout_store.load_rollouts(self._base_uri)
        if status:
            rollouts = [item for item in rollouts if item.status == status]
        return rollout_store.newest_first(rollouts)

    def save_rollout(self, rollout: RolloutRecord) -> RolloutRecord:
        with self._lock:
            return rollout_store.upsert_rollout(self._base_uri, rollout)


class JsonWebhookStore(WebhookStore):
    def __init__(self, base_uri: str) -> None:
        self._base_uri = base_uri
        self._lock = _document_lock(webhook_store.webhook_registry_uri(base_uri))

    def load_webhooks(self) -> list[WebhookRegistration]:
        return webhook_store.load_webhooks(self._base_uri)

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
        with self._lock:
            return webhook_store.register_webhook(
                base_uri=self._base_uri,
                name=name,
                url=url,
                secret=secret,
                event_types=event_types,
                enabled=enabled,
                headers=headers,
            )
