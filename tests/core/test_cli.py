from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from fleetward_cli import cli
from fleetward_core.fleet import register_device, register_firmware
from fleetward_core.rollouts import RolloutController
from fleetward_core.stores import get_store_bundle


def _capture_requests(monkeypatch, response=None):
    captured: list[dict[str, object]] = []

    def fake_request(method, url, payload=None, timeout=30):
        captured.append({"method": method, "url": url, "payload": payload})
        return {"status": "ok"} if response is None else response

    monkeypatch.setattr(cli, "_request_json", fake_request)
    return captured


@pytest.mark.core
def test_cli_status(monkeypatch, capsys):
    captured = _capture_requests(monkeypatch)
    code = cli.main(["status", "--api-url", "http://fleet:9000/"])

    assert code == 0
    assert captured[0]["url"] == "http://fleet:9000/health"
    assert '"status": "ok"' in capsys.readouterr().out


@pytest.mark.core
def test_cli_create_rollout(monkeypatch, capsys):
    captured = _capture_requests(monkeypatch, {"id": "r-1", "status": "active"})
    code = cli.main(
        [
            "create",
            "--version",
            "2.0.0",
            "--stages",
            "10, 50,100",
            "--no-auto-expand",
            "--failure-threshold",
            "5",
            "--api-url",
            "http://fleet:9000",
        ]
    )

    assert code == 0
    assert captured[0]["method"] == "POST"
    assert captured[0]["url"] == "http://fleet:9000/fleet/rollouts"
    assert captured[0]["payload"] == {
        "version": "2.0.0",
        "stage_percentages": [10, 50, 100],
        "auto_expand": False,
        "failure_threshold": 5,
    }
    assert json.loads(capsys.readouterr().out)["id"] == "r-1"


@pytest.mark.core
def test_cli_rollout_commands(monkeypatch, capsys):
    captured = _capture_requests(monkeypatch)
    monkeypatch.setenv("FLEETWARD_API_URL", "http://fleet:9000")

    assert cli.main(["pause", "r-1"]) == 0
    assert cli.main(["cancel", "r-1"]) == 0
    assert cli.main(["fail", "r-1", "--reason", "brick risk"]) == 0
    assert cli.main(["outcome", "r-1", "--device-id", "dev-1", "--outcome", "failure"]) == 0
    assert cli.main(["list", "--status", "paused"]) == 0

    assert [(item["method"], item["url"]) for item in captured] == [
        ("POST", "http://fleet:9000/fleet/rollouts/r-1/pause"),
        ("DELETE", "http://fleet:9000/fleet/rollouts/r-1"),
        ("POST", "http://fleet:9000/fleet/rollouts/r-1/fail"),
        ("POST", "http://fleet:9000/fleet/rollouts/r-1/outcomes"),
        ("GET", "http://fleet:9000/fleet/rollouts?status=paused"),
    ]
    assert captured[2]["payload"] == {"reason": "brick risk"}
    assert captured[3]["payload"] == {"device_id": "dev-1", "outcome": "failure"}
    assert "Cancelled rollout r-1" in capsys.readouterr().out


@pytest.mark.core
def test_cli_reports_errors(monkeypatch, capsys):
    def fake_request(method, url, payload=None, timeout=30):
        raise RuntimeError("HTTP 409 {'detail': 'not applicable'}")

    monkeypatch.setattr(cli, "_request_json", fake_request)

    assert cli.main(["advance", "r-1"]) == 1
    assert "HTTP 409" in capsys.readouterr().err
    assert cli.main([]) == 2


@pytest.mark.core
def test_cli_up_dry_run(capsys):
    code = cli.main(["up", "--port", "9001", "--dry-run"])

    assert code == 0
    output = capsys.readouterr().out.strip()
    assert output.startswith("uvicorn fleetward_api.rollout_service:app")
    assert "--port 9001" in output


@pytest.mark.core
def test_cli_sweep_expands_due_rollouts(capsys, tmp_path, monkeypatch):
    monkeypatch.setenv("LOCAL_DATA_ROOT", tmp_path.as_posix())
    base_uri = tmp_path.as_posix()
    register_firmware(base_uri=base_uri, version="2.0.0")
    for idx in range(10):
        register_device(base_uri=base_uri, name=f"Node {idx}", device_id=f"node-{idx}")

    stores = get_store_bundle(base_uri)
    controller = RolloutController(
        store=stores.rollouts,
        registry=stores.fleet,
        firmware=stores.firmware,
        clock=lambda: datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    rollout = controller.create_rollout("2.0.0", stage_percentages=[20, 100])

    assert cli.main(["sweep"]) == 0
    assert json.loads(capsys.readouterr().out) == {"evaluated": 1}
    expanded = stores.rollouts.get_rollout(rollout.id)
    assert expanded.current_stage == 2
    assert len(expanded.targeted_device_ids) == 10
