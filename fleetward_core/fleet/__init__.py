from fleetward_core.fleet.firmware import (
    firmware_catalog_uri,
    get_firmware,
    load_firmware,
    register_firmware,
    save_firmware,
)
from fleetward_core.fleet.store import (
    device_registry_uri,
    load_devices,
    record_device_outcome,
    register_device,
    save_devices,
    set_device_target,
    sorted_device_ids,
    update_device_status,
)
from fleetward_core.fleet.types import DEVICE_STATUSES, DeviceRecord, FirmwareRecord

__all__ = [
    "DEVICE_STATUSES",
    "DeviceRecord",
    "FirmwareRecord",
    "device_registry_uri",
    "firmware_catalog_uri",
    "get_firmware",
    "load_devices",
    "load_firmware",
    "record_device_outcome",
    "register_device",
    "register_firmware",
    "save_devices",
    "save_firmware",
    "set_device_target",
    "sorted_device_ids",
    "update_device_status",
]
