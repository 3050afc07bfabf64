from __future__ import annotations

from dataclasses import dataclass

DEVICE_STATUSES = ("online", "offline", "unknown")


@dataclass(frozen=True)
class DeviceRecord:
    id: str
    name: str
    mac_address: str | None
    status: str
    current_version: str | None
    target_version: str | None
    last_outcome: str | None
    last_seen_at: str | None
    metadata: dict[str, object] | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class FirmwareRecord:
    version: str
    checksum: str | None
    size_bytes: int | None
    notes: str | None
    created_at: str
