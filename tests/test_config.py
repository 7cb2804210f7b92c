"""Tests for configuration loading."""

from pathlib import Path

import pytest

from oee_engine.config import COMMAND_NAMES, ClassificationLevels, Config

ENV_VARS = (
    "MQTT_BROKER",
    "MQTT_PORT",
    "MQTT_USERNAME",
    "MQTT_PASSWORD",
    "OEE_API_URL",
    "API_KEY",
    "THRESHOLD_SECONDS",
    "OEE_AS_PERCENT",
    "TIMEZONE",
    "HISTORIAN_PATH",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    # setenv first so values loaded from .env files are removed again on teardown
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


class TestConfig:
    """Tests for Config."""

    def test_defaults(self):
        config = Config.default()

        assert config.oee.threshold_seconds == 300
        assert config.oee.as_percent is True
        assert config.mqtt.namespace == "spBv1.0"
        assert config.mqtt.payload_codec == "sparkplug"
        assert config.metric("Runtime").machine_connect is False
        assert config.metric("ActualProductionQuantity").machine_connect is True
        assert config.metric("Unknown") is None

    def test_topic_keys_include_commands(self):
        keys = Config.default().topic_keys

        assert keys[-4:] == list(COMMAND_NAMES)
        assert "ActualProductionYield" in keys

    def test_missing_file_gives_defaults(self, tmp_path):
        config = Config.from_yaml(tmp_path / "missing.yaml")
        assert config.reference.source == "api"

    def test_yaml_round_trip(self, tmp_path):
        config = Config.default()
        config.mqtt.broker = "broker.plant"
        config.reference.source = "file"
        config.oee.threshold_seconds = 120
        config.mqtt.payload_codec = "json"
        config.reference.cache_ttl_seconds = 15.0
        config.oee.classification = ClassificationLevels(90, 80, 70, 60)
        config.metric("plannedProductionQuantity").machine_connect = True

        path = tmp_path / "nested" / "config.yaml"
        config.to_yaml(path)
        loaded = Config.from_yaml(path)

        assert loaded.mqtt.broker == "broker.plant"
        assert loaded.reference.source == "file"
        assert loaded.oee.threshold_seconds == 120
        assert loaded.mqtt.payload_codec == "json"
        assert loaded.reference.cache_ttl_seconds == 15.0
        assert loaded.oee.classification.world_class == 90
        assert loaded.metric("plannedProductionQuantity").machine_connect is True
        assert [m.name for m in loaded.metrics] == [m.name for m in config.metrics]

    def test_partial_yaml_keeps_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("oee:\n  threshold_seconds: 60\nmetrics:\n  Speed: {}\n")

        config = Config.from_yaml(path)

        assert config.oee.threshold_seconds == 60
        assert config.oee.classification.good == 65
        assert [m.name for m in config.metrics] == ["Speed"]
        assert config.metric("Speed").machine_connect is True

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("MQTT_BROKER", "mqtt.local")
        monkeypatch.setenv("MQTT_PORT", "8883")
        monkeypatch.setenv("API_KEY", "k3y")
        monkeypatch.setenv("THRESHOLD_SECONDS", "90")
        monkeypatch.setenv("OEE_AS_PERCENT", "false")
        monkeypatch.setenv("TIMEZONE", "Europe/Berlin")

        config = Config.from_env(env_file=Path("/nonexistent/.env"))

        assert config.mqtt.broker == "mqtt.local"
        assert config.mqtt.port == 8883
        assert config.reference.api_key == "k3y"
        assert config.oee.threshold_seconds == 90
        assert config.oee.as_percent is False
        assert config.oee.timezone == "Europe/Berlin"

    def test_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("HISTORIAN_PATH=/var/lib/oee/history.jsonl\n")

        config = Config.from_env(env_file=env_file)

        assert config.historian.path == "/var/lib/oee/history.jsonl"

    def test_classification_levels_must_descend(self):
        with pytest.raises(ValueError):
            ClassificationLevels(world_class=70, excellent=75)
