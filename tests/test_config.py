import json

import pytest

from filebroker.config import BrokerConfig, load_config


def test_defaults():
    config = BrokerConfig()
    assert config.max_attempts == 3
    assert config.stale_after == 600.0
    assert config.codec().request_name("x") == "comm-request-x.txt"


def test_load_ignores_unknown_keys(tmp_path):
    path = tmp_path / "broker.json"
    path.write_text(json.dumps({"prefix": "claude-comm", "max_attempts": "5", "colour": "blue"}), encoding="utf-8")

    config = BrokerConfig.load(path)

    assert config.prefix == "claude-comm"
    assert config.max_attempts == 5
    assert config.poll_interval == 2.0


def test_load_rejects_non_object(tmp_path):
    path = tmp_path / "broker.json"
    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError):
        BrokerConfig.load(path)


def test_env_overlay():
    config = BrokerConfig().from_env({"FILEBROKER_POLL_INTERVAL": "0.5", "FILEBROKER_PREFIX": "jobs", "OTHER": "1"})
    assert config.poll_interval == 0.5
    assert config.prefix == "jobs"


def test_env_overlay_rejects_garbage():
    with pytest.raises(ValueError):
        BrokerConfig().from_env({"FILEBROKER_MAX_ATTEMPTS": "many"})


def test_load_config_from_env_path(tmp_path):
    path = tmp_path / "broker.json"
    path.write_text(json.dumps({"stale_after": 60}), encoding="utf-8")

    config = load_config(environ={"FILEBROKER_CONFIG": str(path), "FILEBROKER_TOP_ERRORS": "3"})

    assert config.stale_after == 60.0
    assert config.top_errors == 3


def test_backoff_doubles_and_caps():
    config = BrokerConfig(base_delay=1.0, max_delay=5.0)
    assert [config.backoff_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 5.0]
