import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from fleetward_core.config import get_config
from fleetward_core.rollouts import RolloutController, RolloutDefaults, RolloutRecord
from fleetward_core.rollouts.store import newest_first


@pytest.fixture(autouse=True)
def _fleetward_env(monkeypatch: pytest.MonkeyPatch):
    def set_default(name: str, value: str) -> None:
        if not os.getenv(name):
            monkeypatch.setenv(name, value)

    set_default("ENV", "test")
    set_default("LOG_LEVEL", "INFO")
    set_default("STORAGE_BACKEND", "local")
    set_default("LOCAL_DATA_ROOT", _ensure_test_data_root())
    set_default("CONTROL_PLANE_STORE", "json")
    set_default("ROLLOUT_SCHEDULER_ENABLED", "0")
    set_default("ROLLOUT_WEBHOOKS_ENABLED", "0")
    get_config.cache_clear()
    yield
    get_config.cache_clear()


_TEST_DATA_ROOT: str | None = None


def _ensure_test_data_root() -> str:
    global _TEST_DATA_ROOT
    if _TEST_DATA_ROOT is None:
        _TEST_DATA_ROOT = tempfile.mkdtemp(prefix="fleetward-test-")
    return _TEST_DATA_ROOT


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRegistry:
    def __init__(self, device_ids: list[str]) -> None:
        self.device_ids = sorted(device_ids)
        self.targets: dict[str, str] = {}
        self.outcomes: dict[str, str] = {}
        self.reject: set[str] = set()
        self.explode: set[str] = set()
        self.target_calls: list[str] = []
        self._lock = threading.Lock()

    def count_eligible_devices(self, version: str) -> int:
        return len(self.device_ids)

    def list_device_ids(self, *, offset: int, count: int) -> list[str]:
        return self.device_ids[offset : offset + count]

    def set_target_version(self, device_id: str, version: str) -> bool:
        with self._lock:
            self.target_calls.append(device_id)
            if device_id in self.explode:
                raise ConnectionError(f"registry unreachable for {device_id}")
            if device_id in self.reject:
                return False
            self.targets[device_id] = version
            return True

    def record_update_outcome(self, device_id: str, version: str, outcome: str) -> bool:
        with self._lock:
            self.outcomes[device_id] = outcome
        return True


class FakeFirmware:
    def __init__(self, versions: tuple[str, ...]) -> None:
        self.versions = set(versions)

    def firmware_exists(self, version: str) -> bool:
        return version in self.versions


class MemoryRolloutStore:
    def __init__(self) -> None:
        self._items: dict[str, RolloutRecord] = {}
        self._lock = threading.Lock()
        self.saves = 0

    def get_rollout(self, rollout_id: str) -> RolloutRecord | None:
        with self._lock:
            return self._items.get(rollout_id)

    def list_rollouts(self, *, status: str | None = None) -> list[RolloutRecord]:
        with self._lock:
            items = list(self._items.values())
        if status:
            items = [item for item in items if item.status == status]
        return newest_first(items)

    def save_rollout(self, rollout: RolloutRecord) -> RolloutRecord:
        with self._lock:
            self._items[rollout.id] = rollout
            self.saves += 1
        return rollout


class RecordingSink:
    def __init__(self) -> None:
        self.events = []
        self._lock = threading.Lock()

    def publish(self, event) -> None:
        with self._lock:
            self.events.append(event)

    def types(self) -> list[str]:
        return [event.event_type for event in self.events]


@dataclass
class RolloutHarness:
    controller: RolloutController
    registry: FakeRegistry
    firmware: FakeFirmware
    store: object
    events: RecordingSink
    clock: FakeClock


@pytest.fixture
def make_harness():
    def _make(
        device_count: int = 100,
        *,
        versions: tuple[str, ...] = ("2.0.0",),
        store=None,
        **defaults,
    ) -> RolloutHarness:
        registry = FakeRegistry([f"dev-{idx:04d}" for idx in range(device_count)])
        firmware = FakeFirmware(versions)
        events = RecordingSink()
        clock = FakeClock()
        rollout_store = store if store is not None else MemoryRolloutStore()
        controller = RolloutController(
            store=rollout_store,
            registry=registry,
            firmware=firmware,
            events=events,
            clock=clock,
            defaults=RolloutDefaults(**defaults),
        )
        return RolloutHarness(
            controller=controller,
            registry=registry,
            firmware=firmware,
            store=rollout_store,
            events=events,
            clock=clock,
        )

    return _make
