from __future__ import annotations

import uuid
from dataclasses import asdict, replace
from datetime import datetime, timezone
from typing import Iterable

from fleetward_core.errors import ValidationError
from fleetward_core.fleet.types import DEVICE_STATUSES, DeviceRecord
from fleetward_core.storage.documents import read_document, write_document
from fleetward_core.storage.paths import control_uri


def device_registry_uri(base_uri: str) -> str:
    return control_uri(base_uri, "devices.json")


def load_devices(base_uri: str) -> list[DeviceRecord]:
    items = read_document(device_registry_uri(base_uri), "devices")
    return [_device_from_dict(item) for item in items]


def save_devices(base_uri: str, devices: Iterable[DeviceRecord]) -> str:
    return write_document(
        device_registry_uri(base_uri),
        "devices",
        (asdict(device) for device in devices),
    )


def register_device(
    *,
    base_uri: str,
    name: str,
    mac_address: str | None = None,
    status: str = "unknown",
    current_version: str | None = None,
    last_seen_at: str | None = None,
    metadata: dict[str, object] | None = None,
    device_id: str | None = None,
) -> DeviceRecord:
    now = datetime.now(timezone.utc).isoformat()
    devices = load_devices(base_uri)
    normalized_mac = _normalize_mac(mac_address)
    if normalized_mac and any(d.mac_address == normalized_mac for d in devices):
        raise ValidationError(f"Device already registered: {normalized_mac}")
    device = DeviceRecord(
        id=device_id or str(uuid.uuid4()),
        name=name,
        mac_address=normalized_mac,
        status=_normalize_status(status),
        current_version=_coerce_optional_str(current_version),
        target_version=None,
        last_outcome=None,
        last_seen_at=last_seen_at,
        metadata=metadata,
        created_at=now,
        updated_at=now,
    )
    devices.append(device)
    save_devices(base_uri, devices)
    return device


def update_device_status(
    *,
    base_uri: str,
    device_id: str,
    status: str,
    last_seen_at: str | None = None,
) -> DeviceRecord | None:
    now = datetime.now(timezone.utc).isoformat()
    return _update_one(
        base_uri,
        device_id,
        status=_normalize_status(status),
        last_seen_at=last_seen_at or now,
        updated_at=now,
    )


def set_device_target(
    *,
    base_uri: str,
    device_id: str,
    version: str,
) -> DeviceRecord | None:
    now = datetime.now(timezone.utc).isoformat()
    return _update_one(base_uri, device_id, target_version=version, updated_at=now)


def record_device_outcome(
    *,
    base_uri: str,
    device_id: str,
    version: str,
    outcome: str,
) -> DeviceRecord | None:
    now = datetime.now(timezone.utc).isoformat()
    changes: dict[str, object] = {"last_outcome": outcome, "updated_at": now}
    if outcome == "success":
        changes["current_version"] = version
    return _update_one(base_uri, device_id, **changes)


def sorted_device_ids(devices: Iterable[DeviceRecord]) -> list[str]:
    return sorted(device.id for device in devices)


def _update_one(
    base_uri: str,
    device_id: str,
    **changes: object,
) -> DeviceRecord | None:
    devices = load_devices(base_uri)
    updated: list[DeviceRecord] = []
    match: DeviceRecord | None = None
    for existing in devices:
        if existing.id == device_id:
            match = replace(existing, **changes)
            updated.append(match)
        else:
            updated.append(existing)
    if match is None:
        return None
    save_devices(base_uri, updated)
    return match


def _normalize_status(value: str | None) -> str:
    status = (value or "unknown").strip().lower()
    if status not in DEVICE_STATUSES:
        allowed = ", ".join(DEVICE_STATUSES)
        raise ValidationError(f"Device status must be one of: {allowed}")
    return status


def _normalize_mac(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = value.strip().upper().replace("-", ":")
    return cleaned or None


def _device_from_dict(payload: dict[str, object]) -> DeviceRecord:
    return DeviceRecord(
        id=str(payload.get("id")),
        name=str(payload.get("name", "")),
        mac_address=_coerce_optional_str(payload.get("mac_address")),
        status=str(payload.get("status", "unknown")),
        current_version=_coerce_optional_str(payload.get("current_version")),
        target_version=_coerce_optional_str(payload.get("target_version")),
        last_outcome=_coerce_optional_str(payload.get("last_outcome")),
        last_seen_at=_coerce_optional_str(payload.get("last_seen_at")),
        metadata=_coerce_metadata(payload.get("metadata")),
        created_at=str(payload.get("created_at", "")),
        updated_at=str(payload.get("updated_at", "")),
    )


def _coerce_optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_metadata(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    return {str(key): item for key, item in value.items()}
