from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Iterable

from fleetward_core.errors import ValidationError
from fleetward_core.fleet.types import FirmwareRecord
from fleetward_core.storage.documents import read_document, write_document
from fleetward_core.storage.paths import control_uri


def firmware_catalog_uri(base_uri: str) -> str:
    return control_uri(base_uri, "firmware.json")


def load_firmware(base_uri: str) -> list[FirmwareRecord]:
    items = read_document(firmware_catalog_uri(base_uri), "firmware")
    return [_firmware_from_dict(item) for item in items]


def save_firmware(base_uri: str, records: Iterable[FirmwareRecord]) -> str:
    return write_document(
        firmware_catalog_uri(base_uri),
        "firmware",
        (asdict(record) for record in records),
    )


def register_firmware(
    *,
    base_uri: str,
    version: str,
    checksum: str | None = None,
    size_bytes: int | None = None,
    notes: str | None = None,
) -> FirmwareRecord:
    cleaned = version.strip()
    if not cleaned:
        raise ValidationError("Firmware version is required")
    records = load_firmware(base_uri)
    if any(record.version == cleaned for record in records):
        raise ValidationError(f"Firmware version already exists: {cleaned}")
    record = FirmwareRecord(
        version=cleaned,
        checksum=checksum,
        size_bytes=size_bytes,
        notes=notes,
        created_at=datetime.now(timezone.utc).isoformat(),
    )
    records.append(record)
    save_firmware(base_uri, records)
    return record


def get_firmware(base_uri: str, version: str) -> FirmwareRecord | None:
    return next(
        (record for record in load_firmware(base_uri) if record.version == version),
        None,
    )


def _firmware_from_dict(payload: dict[str, object]) -> FirmwareRecord:
    size = payload.get("size_bytes")
    return FirmwareRecord(
        version=str(payload.get("version", "")),
        checksum=str(payload["checksum"]) if payload.get("checksum") else None,
        size_bytes=int(size) if isinstance(size, (int, float)) else None,
        notes=str(payload["notes"]) if payload.get("notes") else None,
        created_at=str(payload.get("created_at", "")),
    )
