"""Configuration management for the OEE engine."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

COMMAND_NAMES = ("Hold", "Unhold", "Start", "End")
MANDATORY_STATIC_METRICS = ("plannedProductionQuantity", "Runtime", "targetPerformance")


@dataclass
class MQTTConfig:
    """MQTT broker and topic configuration."""

    broker: str = "localhost"
    port: int = 1883
    username: str = ""
    password: str = ""
    client_id: str = "oee-engine"
    qos: int = 1
    namespace: str = "spBv1.0"
    snapshot_topic: str = "oee-engine/snapshots"
    watchdog_seconds: int = 60
    subscribe_retries: int = 5
    subscribe_base_delay: float = 1.0
    payload_codec: str = "sparkplug"  # sparkplug | json


@dataclass
class ReferenceConfig:
    """Where reference data (machines, orders, downtimes, shifts) comes from."""

    source: str = "api"  # api | file
    api_url: str = "http://localhost:3000/api/v1"
    api_key: str = ""
    timeout: float = 10.0
    file: str = "config/reference.yaml"
    connect_retries: int = 3
    retry_base_delay: float = 1.0
    cache_ttl_seconds: float = 60.0


@dataclass
class ClassificationLevels:
    """OEE cut points in percent, checked from the top down."""

    world_class: float = 85.0
    excellent: float = 75.0
    good: float = 65.0
    average: float = 55.0

    def __post_init__(self):
        ordered = [self.world_class, self.excellent, self.good, self.average]
        if ordered != sorted(ordered, reverse=True):
            raise ValueError(f"Classification levels must be descending: {ordered}")


@dataclass
class OEEConfig:
    """Calculation settings."""

    threshold_seconds: int = 300  # Hold/Unhold idle time that becomes a microstop
    as_percent: bool = True
    timezone: str = "UTC"
    classification: ClassificationLevels = field(default_factory=ClassificationLevels)


@dataclass
class HistorianConfig:
    """Final-metrics store for finished orders."""

    path: str = "data/oee_history.jsonl"


@dataclass
class MetricDefinition:
    """A metric the engine accepts on DDATA topics."""

    name: str
    machine_connect: bool = True


@dataclass
class Config:
    """Main configuration container."""

    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    reference: ReferenceConfig = field(default_factory=ReferenceConfig)
    oee: OEEConfig = field(default_factory=OEEConfig)
    historian: HistorianConfig = field(default_factory=HistorianConfig)
    metrics: List[MetricDefinition] = field(default_factory=list)

    def metric(self, name: str) -> Optional[MetricDefinition]:
        for definition in self.metrics:
            if definition.name == name:
                return definition
        return None

    @property
    def topic_keys(self) -> List[str]:
        """Every metric and command name a machine is subscribed to."""
        return [m.name for m in self.metrics] + list(COMMAND_NAMES)

    @classmethod
    def from_yaml(cls, config_path: Path) -> "Config":
        """Load configuration from YAML file."""
        if not config_path.exists():
            return cls.default()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls._from_dict(data)

    @classmethod
    def from_env(cls, base: Optional["Config"] = None, env_file: Optional[Path] = None) -> "Config":
        """Apply environment variables (and a .env file if present) on top of base."""
        load_dotenv(env_file)
        config = base or cls.default()

        config.mqtt.broker = os.getenv("MQTT_BROKER", config.mqtt.broker)
        config.mqtt.port = int(os.getenv("MQTT_PORT", config.mqtt.port))
        config.mqtt.username = os.getenv("MQTT_USERNAME", config.mqtt.username)
        config.mqtt.password = os.getenv("MQTT_PASSWORD", config.mqtt.password)

        config.reference.api_url = os.getenv("OEE_API_URL", config.reference.api_url)
        config.reference.api_key = os.getenv("API_KEY", config.reference.api_key)

        config.oee.threshold_seconds = int(
            os.getenv("THRESHOLD_SECONDS", config.oee.threshold_seconds)
        )
        as_percent = os.getenv("OEE_AS_PERCENT")
        if as_percent is not None:
            config.oee.as_percent = as_percent.strip().lower() in ("1", "true", "yes")
        config.oee.timezone = os.getenv("TIMEZONE", config.oee.timezone)

        config.historian.path = os.getenv("HISTORIAN_PATH", config.historian.path)

        return config

    @classmethod
    def default(cls) -> "Config":
        """Create default configuration with the standard metric catalogue."""
        config = cls()
        config.metrics = [
            MetricDefinition("ActualProductionQuantity", machine_connect=True),
            MetricDefinition("ActualProductionYield", machine_connect=True),
            MetricDefinition("plannedProductionQuantity", machine_connect=False),
            MetricDefinition("Runtime", machine_connect=False),
            MetricDefinition("targetPerformance", machine_connect=False),
        ]
        return config

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        config = cls.default()

        if "mqtt" in data:
            mqtt_data = data["mqtt"]
            config.mqtt = MQTTConfig(
                broker=mqtt_data.get("broker", config.mqtt.broker),
                port=mqtt_data.get("port", config.mqtt.port),
                username=mqtt_data.get("username", config.mqtt.username),
                password=mqtt_data.get("password", config.mqtt.password),
                client_id=mqtt_data.get("client_id", config.mqtt.client_id),
                qos=mqtt_data.get("qos", config.mqtt.qos),
                namespace=mqtt_data.get("namespace", config.mqtt.namespace),
                snapshot_topic=mqtt_data.get("snapshot_topic", config.mqtt.snapshot_topic),
                watchdog_seconds=mqtt_data.get("watchdog_seconds", config.mqtt.watchdog_seconds),
                subscribe_retries=mqtt_data.get(
                    "subscribe_retries", config.mqtt.subscribe_retries
                ),
                subscribe_base_delay=mqtt_data.get(
                    "subscribe_base_delay", config.mqtt.subscribe_base_delay
                ),
                payload_codec=mqtt_data.get("payload_codec", config.mqtt.payload_codec),
            )

        if "reference" in data:
            ref_data = data["reference"]
            config.reference = ReferenceConfig(
                source=ref_data.get("source", config.reference.source),
                api_url=ref_data.get("api_url", config.reference.api_url),
                api_key=ref_data.get("api_key", config.reference.api_key),
                timeout=ref_data.get("timeout", config.reference.timeout),
                file=ref_data.get("file", config.reference.file),
                connect_retries=ref_data.get("connect_retries", config.reference.connect_retries),
                retry_base_delay=ref_data.get(
                    "retry_base_delay", config.reference.retry_base_delay
                ),
                cache_ttl_seconds=ref_data.get(
                    "cache_ttl_seconds", config.reference.cache_ttl_seconds
                ),
            )

        if "oee" in data:
            oee_data = data["oee"]
            levels = oee_data.get("classification", {})
            defaults = ClassificationLevels()
            config.oee = OEEConfig(
                threshold_seconds=oee_data.get("threshold_seconds", config.oee.threshold_seconds),
                as_percent=oee_data.get("as_percent", config.oee.as_percent),
                timezone=oee_data.get("timezone", config.oee.timezone),
                classification=ClassificationLevels(
                    world_class=levels.get("world_class", defaults.world_class),
                    excellent=levels.get("excellent", defaults.excellent),
                    good=levels.get("good", defaults.good),
                    average=levels.get("average", defaults.average),
                ),
            )

        if "historian" in data:
            config.historian = HistorianConfig(
                path=data["historian"].get("path", config.historian.path),
            )

        # Metric catalogue: {name: {machine_connect: bool}}
        if "metrics" in data:
            config.metrics = []
            for name, metric_data in data["metrics"].items():
                config.metrics.append(
                    MetricDefinition(
                        name=name,
                        machine_connect=bool((metric_data or {}).get("machine_connect", True)),
                    )
                )

        return config

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file."""
        levels = self.oee.classification
        data = {
            "mqtt": {
                "broker": self.mqtt.broker,
                "port": self.mqtt.port,
                "username": self.mqtt.username,
                "password": self.mqtt.password,
                "client_id": self.mqtt.client_id,
                "qos": self.mqtt.qos,
                "namespace": self.mqtt.namespace,
                "snapshot_topic": self.mqtt.snapshot_topic,
                "watchdog_seconds": self.mqtt.watchdog_seconds,
                "subscribe_retries": self.mqtt.subscribe_retries,
                "subscribe_base_delay": self.mqtt.subscribe_base_delay,
                "payload_codec": self.mqtt.payload_codec,
            },
            "reference": {
                "source": self.reference.source,
                "api_url": self.reference.api_url,
                "api_key": self.reference.api_key,
                "timeout": self.reference.timeout,
                "file": self.reference.file,
                "connect_retries": self.reference.connect_retries,
                "retry_base_delay": self.reference.retry_base_delay,
                "cache_ttl_seconds": self.reference.cache_ttl_seconds,
            },
            "oee": {
                "threshold_seconds": self.oee.threshold_seconds,
                "as_percent": self.oee.as_percent,
                "timezone": self.oee.timezone,
                "classification": {
                    "world_class": levels.world_class,
                    "excellent": levels.excellent,
                    "good": levels.good,
                    "average": levels.average,
                },
            },
            "historian": {
                "path": self.historian.path,
            },
            "metrics": {
                m.name: {"machine_connect": m.machine_connect} for m in self.metrics
            },
        }

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
