from __future__ import annotations

from typing import Iterable

from fleetward_core.logging import get_logger
from fleetward_core.rollouts.serialization import rollout_from_dict, rollout_to_dict
from fleetward_core.rollouts.types import RolloutRecord
from fleetward_core.storage.documents import read_document, write_document
from fleetward_core.storage.paths import control_uri

logger = get_logger(__name__)


def rollout_registry_uri(base_uri: str) -> str:
    return control_uri(base_uri, "rollouts.json")


def load_rollouts(base_uri: str) -> list[RolloutRecord]:
    results: list[RolloutRecord] = []
    for item in read_document(rollout_registry_uri(base_uri), "rollouts"):
        try:
            results.append(rollout_from_dict(item))
        except ValueError as exc:
            logger.error(
                "Skipping unreadable rollout record",
                extra={
                    "rollout_id": str(item.get("id")),
                    "error_message": str(exc),
                },
            )
    return results


def upsert_rollout(base_uri: str, rollout: RolloutRecord) -> RolloutRecord:
    uri = rollout_registry_uri(base_uri)
    payload = rollout_to_dict(rollout)
    items: list[dict[str, object]] = []
    found = False
    for item in read_document(uri, "rollouts"):
        if item.get("id") == rollout.id:
            items.append(payload)
            found = True
        else:
            # Unreadable records are carried through untouched.
            items.append(item)
    if not found:
        items.append(payload)
    write_document(uri, "rollouts", items)
    return rollout


def newest_first(rollouts: Iterable[RolloutRecord]) -> list[RolloutRecord]:
    indexed = list(enumerate(rollouts))
    indexed.sort(key=lambda item: (item[1].created_at, item[0]), reverse=True)
    return [rollout for _, rollout in indexed]
