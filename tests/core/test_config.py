from __future__ import annotations

from pathlib import Path

import pytest

from fleetward_core.config import Config, get_config
from fleetward_core.rollouts import RolloutDefaults


@pytest.mark.core
def test_config_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("LOCAL_DATA_ROOT", tmp_path.as_posix())
    for name in (
        "ROLLOUT_DEFAULT_STAGES",
        "ROLLOUT_DEFAULT_EXPAND_MINUTES",
        "ROLLOUT_DEFAULT_FAILURE_THRESHOLD",
        "ROLLOUT_DEFAULT_AUTO_EXPAND",
        "ROLLOUT_EVAL_INTERVAL_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)

    config = Config.from_env()

    assert config.default_stage_percentages == (5, 25, 50, 100)
    assert config.default_expand_after_minutes == 30
    assert config.default_failure_threshold == 10
    assert config.default_auto_expand is True
    assert config.eval_interval_seconds == 60
    assert config.data_root_uri() == tmp_path.as_posix()
    assert config.sqlite_path().endswith("control/rollouts.db")


@pytest.mark.core
def test_config_rollout_overrides(monkeypatch):
    monkeypatch.setenv("ROLLOUT_DEFAULT_STAGES", "10, 50,100")
    monkeypatch.setenv("ROLLOUT_DEFAULT_EXPAND_MINUTES", "15")
    monkeypatch.setenv("ROLLOUT_DEFAULT_FAILURE_THRESHOLD", "25")
    monkeypatch.setenv("ROLLOUT_DEFAULT_AUTO_EXPAND", "0")
    get_config.cache_clear()

    config = get_config()
    defaults = RolloutDefaults.from_config(config)

    assert defaults.stage_percentages == (10, 50, 100)
    assert defaults.expand_after_minutes == 15
    assert defaults.failure_threshold == 25
    assert defaults.auto_expand is False


@pytest.mark.core
def test_config_malformed_default_stages_fall_back(monkeypatch):
    monkeypatch.setenv("ROLLOUT_DEFAULT_STAGES", "50,10")

    defaults = RolloutDefaults.from_config(Config.from_env())

    assert defaults.stage_percentages == (5, 25, 50, 100)


@pytest.mark.core
def test_config_validation(monkeypatch):
    monkeypatch.setenv("ROLLOUT_DEFAULT_FAILURE_THRESHOLD", "150")
    with pytest.raises(ValueError):
        Config.from_env()

    monkeypatch.setenv("ROLLOUT_DEFAULT_FAILURE_THRESHOLD", "10")
    monkeypatch.setenv("CONTROL_PLANE_STORE", "redis")
    with pytest.raises(ValueError):
        Config.from_env()

    monkeypatch.setenv("CONTROL_PLANE_STORE", "json")
    monkeypatch.delenv("ENV")
    with pytest.raises(ValueError, match="ENV"):
        Config.from_env()


@pytest.mark.core
def test_config_remote_storage(monkeypatch):
    monkeypatch.setenv("STORAGE_BACKEND", "s3")
    monkeypatch.setenv("DATA_BUCKET", "fleet-data")
    monkeypatch.setenv("DATA_PREFIX", "prod")
    monkeypatch.delenv("ROLLOUT_SQLITE_PATH", raising=False)

    config = Config.from_env()

    assert config.data_root_uri() == "s3://fleet-data/prod"
    with pytest.raises(ValueError):
        config.sqlite_path()
