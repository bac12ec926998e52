import os

import pytest

from chatrelay.gateway import config_loader
from chatrelay.gateway.config import GatewayConfig


@pytest.fixture(autouse=True)
def clear_chat_relay_env(monkeypatch):
    for key in list(os.environ.keys()):
        if key.startswith("CHAT_RELAY_") and key != config_loader.CONFIG_FILE_ENV:
            monkeypatch.delenv(key, raising=False)
    yield


def test_load_gateway_config_creates_file(tmp_path, monkeypatch):
    config_path = tmp_path / "relay.toml"
    monkeypatch.setenv(config_loader.CONFIG_FILE_ENV, str(config_path))

    cfg = config_loader.load_gateway_config()

    assert config_path.exists()
    assert "[relay]" in config_path.read_text()
    assert cfg.port == 3000
    assert cfg.queue_capacity == 100
    assert cfg.backend_pool_size == 1
    assert cfg.stream_wire_format == "json"
    assert cfg.config_file_path == str(config_path)


def test_update_config_file_writes_changes(tmp_path, monkeypatch):
    config_path = tmp_path / "relay.toml"
    monkeypatch.setenv(config_loader.CONFIG_FILE_ENV, str(config_path))

    cfg = config_loader.update_config_file(
        {"port": 3100, "backend_pool_size": 3, "stream_wire_format": "raw"}
    )
    file_cfg = config_loader.load_file_config()

    assert file_cfg["port"] == 3100
    assert file_cfg["backend_pool_size"] == 3
    assert file_cfg["stream_wire_format"] == "raw"
    assert cfg.port == 3100
    assert cfg.stream_wire_format == "raw"


def test_update_config_file_rejects_unknown_keys(tmp_path, monkeypatch):
    monkeypatch.setenv(config_loader.CONFIG_FILE_ENV, str(tmp_path / "relay.toml"))

    with pytest.raises(KeyError):
        config_loader.update_config_file({"retries": 3})


def test_env_overrides_take_precedence(tmp_path, monkeypatch):
    config_path = tmp_path / "relay.toml"
    monkeypatch.setenv(config_loader.CONFIG_FILE_ENV, str(config_path))
    config_loader.update_config_file({"queue_capacity": 50})

    monkeypatch.setenv("CHAT_RELAY_QUEUE_CAPACITY", "8")
    monkeypatch.setenv("CHAT_RELAY_BACKEND_TIMEOUT_MS", "2500")

    cfg = config_loader.load_gateway_config()
    file_cfg = config_loader.load_file_config()

    assert file_cfg["queue_capacity"] == 50
    assert cfg.queue_capacity == 8
    assert cfg.backend_timeout_s == 2.5
    assert config_loader.list_env_overrides()["CHAT_RELAY_QUEUE_CAPACITY"] == "8"


def test_invalid_values_fall_back_to_defaults(tmp_path, monkeypatch):
    config_path = tmp_path / "relay.toml"
    config_path.write_text(
        "[relay]\n"
        'stream_wire_format = "xml"\n'
        "queue_capacity = 0\n"
        "[backend]\n"
        'backend_pool_size = "many"\n'
    )
    monkeypatch.setenv(config_loader.CONFIG_FILE_ENV, str(config_path))
    monkeypatch.setenv("CHAT_RELAY_NON_STREAM_STRATEGY", "sometimes")

    cfg = config_loader.load_gateway_config()

    assert cfg.stream_wire_format == "json"
    assert cfg.queue_capacity == 100
    assert cfg.backend_pool_size == 1
    assert cfg.non_stream_strategy == "once"


def test_backend_timeout_defaults_to_none():
    assert GatewayConfig().backend_timeout_s is None
    assert GatewayConfig(backend_timeout_ms=1500).backend_timeout_s == 1.5
