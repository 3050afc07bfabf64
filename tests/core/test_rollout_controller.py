from __future__ import annotations

from datetime import timedelta

import pytest

from fleetward_core.errors import InvalidStateError, NotFoundError, ValidationError
from fleetward_core.rollouts import (
    EVENT_ADVANCED,
    EVENT_CANCELLED,
    EVENT_COMPLETED,
    EVENT_FAILED,
    EVENT_PAUSED,
    EVENT_RESUMED,
    EVENT_STARTED,
    PAUSE_FAILURE_THRESHOLD,
    PAUSE_OPERATOR,
    ROLLOUT_ACTIVE,
    ROLLOUT_CANCELLED,
    ROLLOUT_COMPLETED,
    ROLLOUT_FAILED,
    ROLLOUT_PAUSED,
    RolloutController,
)


def _ids(start: int, stop: int) -> list[str]:
    return [f"dev-{idx:04d}" for idx in range(start, stop)]


@pytest.mark.core
def test_create_targets_first_stage(make_harness):
    h = make_harness(100)
    rollout = h.controller.create_rollout("2.0.0", stage_percentages=[5, 25, 50, 100])

    assert rollout.status == ROLLOUT_ACTIVE
    assert rollout.current_stage == 1
    assert rollout.total_devices == 100
    assert list(rollout.targeted_device_ids) == _ids(0, 5)
    assert rollout.pending_device_ids == ()
    assert h.registry.targets == {device_id: "2.0.0" for device_id in _ids(0, 5)}
    assert rollout.last_expanded == h.clock.now
    assert h.events.types() == [EVENT_STARTED]


@pytest.mark.core
def test_advance_adds_stage_delta(make_harness):
    h = make_harness(100)
    rollout = h.controller.create_rollout("2.0.0")
    h.clock.advance(minutes=1)

    advanced = h.controller.advance_rollout(rollout.id)

    assert advanced.current_stage == 2
    assert len(advanced.targeted_device_ids) == 25
    assert advanced.targeted_device_ids[:5] == rollout.targeted_device_ids
    assert sorted(h.registry.targets) == _ids(0, 25)
    assert h.registry.target_calls == _ids(0, 25)
    assert advanced.last_expanded == h.clock.now
    assert h.events.types() == [EVENT_STARTED, EVENT_ADVANCED]
    assert h.events.events[-1].payload["new_devices"] == 20
    assert h.events.events[-1].payload["trigger"] == "operator"


@pytest.mark.core
def test_failure_threshold_pauses_until_resume(make_harness):
    h = make_harness(100)
    rollout = h.controller.create_rollout("2.0.0", failure_threshold=10)
    h.controller.advance_rollout(rollout.id)

    for device_id in _ids(0, 9):
        current = h.controller.record_outcome(rollout.id, device_id, "failure")
    assert current.status == ROLLOUT_ACTIVE

    current = h.controller.record_outcome(rollout.id, "dev-0009", "failure")
    assert current.status == ROLLOUT_PAUSED
    assert current.pause_reason == PAUSE_FAILURE_THRESHOLD

    current = h.controller.record_outcome(rollout.id, "dev-0010", "failure")
    assert current.failed_devices == 11
    assert current.status == ROLLOUT_PAUSED

    h.clock.advance(hours=2)
    current = h.controller.evaluate_auto_expand(rollout.id)
    assert current.status == ROLLOUT_PAUSED
    assert current.current_stage == 2

    resumed = h.controller.resume_rollout(rollout.id)
    assert resumed.status == ROLLOUT_ACTIVE
    assert resumed.pause_reason is None

    current = h.controller.evaluate_auto_expand(rollout.id)
    assert current.status == ROLLOUT_PAUSED
    assert current.current_stage == 2
    assert h.events.types().count(EVENT_PAUSED) == 2
    assert EVENT_RESUMED in h.events.types()


@pytest.mark.core
def test_auto_expand_waits_for_dwell_time(make_harness):
    h = make_harness(100)
    rollout = h.controller.create_rollout(
        "2.0.0",
        auto_expand=True,
        expand_after_minutes=30,
    )
    saves = h.store.saves

    h.clock.advance(minutes=29)
    current = h.controller.evaluate_auto_expand(rollout.id)
    assert current.current_stage == 1
    assert h.store.saves == saves

    h.clock.advance(minutes=2)
    current = h.controller.evaluate_auto_expand(rollout.id)
    assert current.current_stage == 2
    assert len(current.targeted_device_ids) == 25
    assert current.last_expanded == h.clock.now
    assert h.events.events[-1].payload["trigger"] == "auto_expand"


@pytest.mark.core
def test_evaluate_is_idempotent(make_harness):
    h = make_harness(100)
    rollout = h.controller.create_rollout("2.0.0", expand_after_minutes=30)
    h.clock.advance(minutes=31)

    first = h.controller.evaluate_auto_expand(rollout.id)
    second = h.controller.evaluate_auto_expand(rollout.id)

    assert first.current_stage == 2
    assert second == first
    assert h.events.types().count(EVENT_ADVANCED) == 1


@pytest.mark.core
def test_evaluate_without_auto_expand_never_advances(make_harness):
    h = make_harness(100)
    rollout = h.controller.create_rollout("2.0.0", auto_expand=False)
    h.clock.advance(days=3)

    current = h.controller.evaluate_auto_expand(rollout.id)

    assert current.current_stage == 1
    assert current.status == ROLLOUT_ACTIVE


@pytest.mark.core
def test_advance_at_final_stage_completes(make_harness):
    h = make_harness(10)
    rollout = h.controller.create_rollout("2.0.0", stage_percentages=[50, 100])
    rollout = h.controller.advance_rollout(rollout.id)
    assert rollout.current_stage == 2
    assert len(rollout.targeted_device_ids) == 10

    completed = h.controller.advance_rollout(rollout.id)

    assert completed.status == ROLLOUT_COMPLETED
    assert completed.current_stage == 2
    assert h.events.types()[-1] == EVENT_COMPLETED
    with pytest.raises(InvalidStateError):
        h.controller.advance_rollout(rollout.id)


@pytest.mark.core
def test_cancel_paused_rollout_then_commands_fail(make_harness):
    h = make_harness(20)
    rollout = h.controller.create_rollout("2.0.0")
    paused = h.controller.pause_rollout(rollout.id)
    assert paused.pause_reason == PAUSE_OPERATOR

    assert h.controller.cancel_rollout(rollout.id) is None
    cancelled = h.controller.get_rollout(rollout.id)
    assert cancelled.status == ROLLOUT_CANCELLED

    with pytest.raises(InvalidStateError) as excinfo:
        h.controller.advance_rollout(rollout.id)
    assert excinfo.value.status == ROLLOUT_CANCELLED
    assert "not applicable in current state" in str(excinfo.value)
    assert h.events.types()[-1] == EVENT_CANCELLED


@pytest.mark.core
def test_terminal_rollout_rejects_every_command(make_harness):
    h = make_harness(20)
    rollout = h.controller.create_rollout("2.0.0")
    h.controller.cancel_rollout(rollout.id)
    frozen = h.controller.get_rollout(rollout.id)

    commands = [
        lambda: h.controller.advance_rollout(rollout.id),
        lambda: h.controller.pause_rollout(rollout.id),
        lambda: h.controller.resume_rollout(rollout.id),
        lambda: h.controller.cancel_rollout(rollout.id),
        lambda: h.controller.fail_rollout(rollout.id, reason="late"),
        lambda: h.controller.record_outcome(rollout.id, "dev-0000", "success"),
    ]
    for command in commands:
        with pytest.raises(InvalidStateError):
            command()

    h.clock.advance(days=1)
    assert h.controller.evaluate_auto_expand(rollout.id) == frozen
    assert h.controller.get_rollout(rollout.id) == frozen


@pytest.mark.core
def test_state_guards_for_pause_and_resume(make_harness):
    h = make_harness(20)
    rollout = h.controller.create_rollout("2.0.0")

    with pytest.raises(InvalidStateError):
        h.controller.resume_rollout(rollout.id)
    h.controller.pause_rollout(rollout.id)
    with pytest.raises(InvalidStateError):
        h.controller.pause_rollout(rollout.id)
    with pytest.raises(InvalidStateError):
        h.controller.advance_rollout(rollout.id)
    with pytest.raises(InvalidStateError):
        h.controller.fail_rollout(rollout.id)


@pytest.mark.core
def test_fail_rollout_is_operator_kill_switch(make_harness):
    h = make_harness(20)
    rollout = h.controller.create_rollout("2.0.0")

    failed = h.controller.fail_rollout(rollout.id, reason="bricked devices")

    assert failed.status == ROLLOUT_FAILED
    assert failed.failure_reason == "bricked devices"
    assert h.events.types()[-1] == EVENT_FAILED
    assert h.events.events[-1].payload["reason"] == "bricked devices"


@pytest.mark.core
def test_resume_does_not_expand_retroactively(make_harness):
    h = make_harness(100)
    rollout = h.controller.create_rollout("2.0.0", expand_after_minutes=30)
    h.clock.advance(minutes=1)
    h.controller.pause_rollout(rollout.id)
    h.clock.advance(minutes=120)

    resumed = h.controller.resume_rollout(rollout.id)
    assert resumed.current_stage == 1
    assert resumed.last_expanded == h.clock.now

    h.clock.advance(seconds=5)
    assert h.controller.evaluate_auto_expand(rollout.id).current_stage == 1
    h.clock.advance(minutes=29)
    assert h.controller.evaluate_auto_expand(rollout.id).current_stage == 1
    h.clock.advance(minutes=1)
    assert h.controller.evaluate_auto_expand(rollout.id).current_stage == 2


@pytest.mark.core
def test_duplicate_outcomes_are_counted_once(make_harness):
    h = make_harness(100)
    rollout = h.controller.create_rollout("2.0.0")

    h.controller.record_outcome(rollout.id, "dev-0000", "success")
    again = h.controller.record_outcome(rollout.id, "dev-0000", "SUCCESS")
    flipped = h.controller.record_outcome(rollout.id, "dev-0000", "failure")

    assert again.updated_devices == 1
    assert flipped.updated_devices == 1
    assert flipped.failed_devices == 0
    assert flipped.outcomes == {"dev-0000": "success"}
    assert h.registry.outcomes == {"dev-0000": "success"}


@pytest.mark.core
def test_outcome_validation(make_harness):
    h = make_harness(100)
    rollout = h.controller.create_rollout("2.0.0")

    with pytest.raises(ValidationError):
        h.controller.record_outcome(rollout.id, "dev-0000", "maybe")
    with pytest.raises(ValidationError):
        h.controller.record_outcome(rollout.id, "dev-0099", "success")
    with pytest.raises(NotFoundError):
        h.controller.record_outcome("missing", "dev-0000", "success")

    current = h.controller.get_rollout(rollout.id)
    assert current.updated_devices == 0
    assert current.failed_devices == 0


@pytest.mark.core
def test_counters_never_exceed_total(make_harness):
    h = make_harness(8)
    rollout = h.controller.create_rollout(
        "2.0.0",
        stage_percentages=[100],
        failure_threshold=100,
    )
    for idx, device_id in enumerate(_ids(0, 8)):
        outcome = "failure" if idx % 3 == 0 else "success"
        current = h.controller.record_outcome(rollout.id, device_id, outcome)
        assert current.updated_devices + current.failed_devices <= current.total_devices

    assert current.updated_devices + current.failed_devices == 8


@pytest.mark.core
def test_final_stage_completes_once_every_target_reports(make_harness):
    h = make_harness(4)
    rollout = h.controller.create_rollout(
        "2.0.0",
        stage_percentages=[100],
        failure_threshold=50,
    )

    current = h.controller.record_outcome(rollout.id, "dev-0000", "failure")
    for device_id in _ids(1, 3):
        current = h.controller.record_outcome(rollout.id, device_id, "success")
        assert current.status == ROLLOUT_ACTIVE
    current = h.controller.record_outcome(rollout.id, "dev-0003", "success")

    assert current.status == ROLLOUT_COMPLETED
    assert current.updated_devices == 3
    assert current.failed_devices == 1
    assert h.events.types()[-1] == EVENT_COMPLETED
    assert h.events.events[-1].payload["failed_count"] == 1


@pytest.mark.core
def test_paused_rollout_does_not_auto_complete(make_harness):
    h = make_harness(4)
    rollout = h.controller.create_rollout(
        "2.0.0",
        stage_percentages=[100],
        failure_threshold=10,
    )
    paused = h.controller.record_outcome(rollout.id, "dev-0000", "failure")
    assert paused.status == ROLLOUT_PAUSED

    for device_id in _ids(1, 4):
        current = h.controller.record_outcome(rollout.id, device_id, "success")

    assert current.status == ROLLOUT_PAUSED
    assert current.reported_devices == 4


@pytest.mark.core
def test_stage_percentage_inputs(make_harness):
    h = make_harness(100)

    with pytest.raises(ValidationError):
        h.controller.create_rollout("2.0.0", stage_percentages=[])

    fallback = h.controller.create_rollout("2.0.0", stage_percentages=[50, 20, 100])
    assert fallback.stage_percentages == (5, 25, 50, 100)

    custom = h.controller.create_rollout("2.0.0", stage_percentages=[10, 100])
    assert custom.stage_percentages == (10, 100)
    assert len(custom.targeted_device_ids) == 10


@pytest.mark.core
def test_create_validation(make_harness):
    h = make_harness(10)

    with pytest.raises(ValidationError):
        h.controller.create_rollout("9.9.9")
    with pytest.raises(ValidationError):
        h.controller.create_rollout("  ")
    with pytest.raises(ValidationError):
        h.controller.create_rollout("2.0.0", expand_after_minutes=0)
    with pytest.raises(ValidationError):
        h.controller.create_rollout("2.0.0", failure_threshold=101)
    with pytest.raises(ValidationError):
        h.controller.create_rollout("2.0.0", failure_threshold=-1)
    assert h.controller.list_rollouts() == []


@pytest.mark.core
def test_create_uses_configured_defaults(make_harness):
    h = make_harness(
        10,
        stage_percentages=(20, 100),
        auto_expand=False,
        expand_after_minutes=5,
        failure_threshold=40,
    )

    rollout = h.controller.create_rollout("2.0.0")

    assert rollout.stage_percentages == (20, 100)
    assert rollout.auto_expand is False
    assert rollout.expand_after_minutes == 5
    assert rollout.failure_threshold == 40
    assert len(rollout.targeted_device_ids) == 2


@pytest.mark.core
def test_stage_counts_round_down(make_harness):
    h = make_harness(7)
    rollout = h.controller.create_rollout("2.0.0")
    assert len(rollout.targeted_device_ids) == 0

    sizes = []
    for _ in range(3):
        rollout = h.controller.advance_rollout(rollout.id)
        sizes.append(len(rollout.targeted_device_ids))

    assert sizes == [1, 3, 7]


@pytest.mark.core
def test_empty_fleet_walks_all_stages(make_harness):
    h = make_harness(0)
    rollout = h.controller.create_rollout("2.0.0", expand_after_minutes=1)
    assert rollout.total_devices == 0

    for expected_stage in (2, 3, 4):
        h.clock.advance(minutes=1)
        rollout = h.controller.evaluate_auto_expand(rollout.id)
        assert rollout.current_stage == expected_stage

    h.clock.advance(minutes=1)
    rollout = h.controller.evaluate_auto_expand(rollout.id)
    assert rollout.status == ROLLOUT_COMPLETED
    assert rollout.targeted_device_ids == ()


@pytest.mark.core
def test_rejected_targets_stay_pending_until_retried(make_harness):
    h = make_harness(100)
    h.registry.reject.add("dev-0002")
    h.registry.explode.add("dev-0003")

    rollout = h.controller.create_rollout("2.0.0")

    assert len(rollout.targeted_device_ids) == 5
    assert rollout.pending_device_ids == ("dev-0002", "dev-0003")
    assert "dev-0002" not in h.registry.targets

    h.registry.reject.clear()
    h.registry.explode.clear()
    h.clock.advance(minutes=1)
    retried = h.controller.evaluate_auto_expand(rollout.id)

    assert retried.current_stage == 1
    assert retried.pending_device_ids == ()
    assert sorted(h.registry.targets) == _ids(0, 5)


@pytest.mark.core
def test_pending_targets_are_not_retried_after_cancel(make_harness):
    h = make_harness(100)
    h.registry.reject.add("dev-0001")
    rollout = h.controller.create_rollout("2.0.0")
    h.controller.cancel_rollout(rollout.id)
    h.registry.reject.clear()
    calls = len(h.registry.target_calls)

    h.controller.evaluate_auto_expand(rollout.id)
    h.controller.evaluate_active()

    assert len(h.registry.target_calls) == calls
    assert h.controller.get_rollout(rollout.id).pending_device_ids == ("dev-0001",)


@pytest.mark.core
def test_list_rollouts_newest_first(make_harness):
    h = make_harness(10)
    first = h.controller.create_rollout("2.0.0")
    h.clock.advance(minutes=1)
    second = h.controller.create_rollout("2.0.0")
    h.controller.pause_rollout(first.id)

    assert [item.id for item in h.controller.list_rollouts()] == [second.id, first.id]
    assert [item.id for item in h.controller.list_rollouts(status="paused")] == [first.id]


@pytest.mark.core
def test_get_unknown_rollout_raises(make_harness):
    h = make_harness(10)
    with pytest.raises(NotFoundError):
        h.controller.get_rollout("nope")
    with pytest.raises(NotFoundError):
        h.controller.advance_rollout("nope")


@pytest.mark.core
def test_evaluate_active_isolates_failures(make_harness, monkeypatch):
    h = make_harness(100)
    broken = h.controller.create_rollout("2.0.0")
    healthy = h.controller.create_rollout("2.0.0")
    paused = h.controller.create_rollout("2.0.0")
    h.controller.pause_rollout(paused.id)
    h.clock.advance(minutes=31)

    original = h.controller.evaluate_auto_expand

    def flaky(rollout_id: str):
        if rollout_id == broken.id:
            raise RuntimeError("store hiccup")
        return original(rollout_id)

    monkeypatch.setattr(h.controller, "evaluate_auto_expand", flaky)
    results = h.controller.evaluate_active()

    assert [item.id for item in results] == [healthy.id]
    assert results[0].current_stage == 2
    assert h.controller.get_rollout(paused.id).current_stage == 1


@pytest.mark.core
def test_failing_event_sink_does_not_break_commands(make_harness):
    h = make_harness(10)

    class ExplodingSink:
        def publish(self, event) -> None:
            raise RuntimeError("sink down")

    controller = RolloutController(
        store=h.store,
        registry=h.registry,
        firmware=h.firmware,
        events=ExplodingSink(),
        clock=h.clock,
    )
    rollout = controller.create_rollout("2.0.0", stage_percentages=[50, 100])
    assert controller.advance_rollout(rollout.id).current_stage == 2


@pytest.mark.core
def test_locks_are_released_after_commands(make_harness):
    h = make_harness(10)
    rollout = h.controller.create_rollout("2.0.0")
    h.controller.record_outcome(rollout.id, rollout.targeted_device_ids[0], "success")
    with pytest.raises(InvalidStateError):
        h.controller.resume_rollout(rollout.id)

    assert h.controller._locks.active_keys() == 0


@pytest.mark.core
def test_updated_at_tracks_clock(make_harness):
    h = make_harness(10)
    rollout = h.controller.create_rollout("2.0.0")
    h.clock.advance(minutes=3)

    paused = h.controller.pause_rollout(rollout.id)

    assert paused.created_at == rollout.created_at
    assert paused.updated_at - rollout.created_at == timedelta(minutes=3)
