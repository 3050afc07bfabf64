from fleetward_core.stores.interfaces import (
    DeviceRegistry,
    FirmwareCatalog,
    FleetStore,
    RolloutStore,
    WebhookStore,
)
from fleetward_core.stores.registry import (
    StoreBundle,
    get_store_bundle,
    store_bundle_from_config,
)

__all__ = [
    "DeviceRegistry",
    "FirmwareCatalog",
    "FleetStore",
    "RolloutStore",
    "StoreBundle",
    "WebhookStore",
    "get_store_bundle",
    "store_bundle_from_config",
]
