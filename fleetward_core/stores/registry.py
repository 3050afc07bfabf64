from __future__ import annotations

from dataclasses import dataclass

from fleetward_core.config import Config
from fleetward_core.rollouts.store_sqlite import SqliteRolloutStore
from fleetward_core.storage.paths import has_uri_scheme, join_uri
from fleetward_core.stores.interfaces import (
    FirmwareCatalog,
    FleetStore,
    RolloutStore,
    WebhookStore,
)
from fleetward_core.stores.json_store import (
    JsonFirmwareCatalog,
    JsonFleetStore,
    JsonRolloutStore,
    JsonWebhookStore,
)


@dataclass(frozen=True)
class StoreBundle:
    fleet: FleetStore
    firmware: FirmwareCatalog
    rollouts: RolloutStore
    webhooks: WebhookStore


def get_store_bundle(
    base_uri: str,
    *,
    backend: str = "json",
    sqlite_path: str | None = None,
) -> StoreBundle:
    backend = backend.strip().lower()
    if backend == "json":
        rollouts: RolloutStore = JsonRolloutStore(base_uri)
    elif backend == "sqlite":
        path = sqlite_path
        if not path:
            if has_uri_scheme(base_uri):
                raise ValueError("ROLLOUT_SQLITE_PATH is required for remote storage")
            path = join_uri(base_uri, "control", "rollouts.db")
        rollouts = SqliteRolloutStore(path)
    else:
        raise ValueError(f"Unsupported control-plane store backend: {backend}")
    return StoreBundle(
        fleet=JsonFleetStore(base_uri),
        firmware=JsonFirmwareCatalog(base_uri),
        rollouts=rollouts,
        webhooks=JsonWebhookStore(base_uri),
    )


def store_bundle_from_config(config: Config) -> StoreBundle:
    backend = config.control_plane_store
    return get_store_bundle(
        config.data_root_uri(),
        backend=backend,
        sqlite_path=config.sqlite_path() if backend == "sqlite" else None,
    )
