"""Command-line interface for the OEE engine."""

import json
import logging
import signal
import sys
import time
from pathlib import Path

import click
import paho.mqtt.client as mqtt

from .config import COMMAND_NAMES, Config
from .engine import OEEEngine
from .errors import ReferenceDataError
from .historian import JsonLinesHistorian
from .mqtt_client import MQTTClient
from .payload import CODECS, MessageKind, Metric, build_topic, encode_payload
from .reference import ApiReferenceData, CachedReferenceData, StaticReferenceData
from .sample import write_reference_yaml

logger = logging.getLogger(__name__)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_config(config_path: Path) -> Config:
    return Config.from_env(Config.from_yaml(config_path))


def _publish_once(broker: str, port: int, topic: str, payload: bytes) -> None:
    client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)
    client.connect(broker, port)
    client.loop_start()
    result = client.publish(topic, payload, qos=1)
    result.wait_for_publish()
    client.loop_stop()
    client.disconnect()


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level",
)
def main(log_level):
    """OEE Engine - real-time OEE from UNS/MQTT production telemetry.

    Listens to Sparkplug-style topics

      spBv1.0/{plant}/{area}/{DCMD|DDATA}/{machine}/{metric}

    tracks Hold/Unhold and order Start/End commands, and computes
    availability, performance, quality and OEE per production order.
    """
    _setup_logging(log_level)


@main.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default=Path("config/config.yaml"),
    help="Configuration file",
)
@click.option("--broker", "-b", default=None, help="MQTT broker address (overrides config)")
@click.option("--port", "-p", type=int, default=None, help="MQTT broker port (overrides config)")
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Do not connect to the MQTT broker",
)
def run(config_path, broker, port, dry_run):
    """Start the OEE engine."""
    cfg = _load_config(config_path)
    if broker:
        cfg.mqtt.broker = broker
    if port:
        cfg.mqtt.port = port

    try:
        if cfg.reference.source == "file":
            inner = StaticReferenceData.from_yaml(Path(cfg.reference.file))
            machines = inner.list_machines()
        else:
            inner = ApiReferenceData(
                cfg.reference.api_url, api_key=cfg.reference.api_key, timeout=cfg.reference.timeout
            )
            machines = inner.connect(
                retries=cfg.reference.connect_retries, base_delay=cfg.reference.retry_base_delay
            )
    except ReferenceDataError as e:
        logger.error(f"Reference data unavailable, cannot start: {e.message}")
        sys.exit(1)

    reference = CachedReferenceData(inner, ttl_seconds=cfg.reference.cache_ttl_seconds)
    historian = JsonLinesHistorian(cfg.historian.path)

    engine = OEEEngine(cfg, reference, historian=historian)
    client = MQTTClient(cfg.mqtt, on_message=engine.handle_message, topic_keys=cfg.topic_keys)
    engine.publisher.sink = client

    def signal_handler(sig, frame):
        logger.info("Shutting down...")
        client.disconnect()
        engine.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if not client.connect(dry_run=dry_run):
        logger.error("Could not connect to MQTT broker")
        engine.stop()
        sys.exit(1)

    subscribed = client.subscribe_machines(machines)

    click.echo()
    click.echo("=" * 60)
    click.echo("OEE Engine")
    click.echo("=" * 60)
    click.echo(f"MQTT:      {cfg.mqtt.broker}:{cfg.mqtt.port}{' (dry run)' if dry_run else ''}")
    click.echo(f"Reference: {cfg.reference.source}")
    click.echo(f"Machines:  {len(subscribed)}/{len(machines)} subscribed")
    click.echo(f"Snapshots: {cfg.mqtt.snapshot_topic}/<machine_id>")
    click.echo(f"History:   {cfg.historian.path}")
    click.echo()

    while True:
        time.sleep(1)


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("config"),
    help="Output directory for config files",
)
@click.option("--machines", "-m", type=int, default=3, help="Number of sample machines")
@click.option("--seed", type=int, default=None, help="Seed for reproducible sample data")
def init(output, machines, seed):
    """Generate sample configuration and reference data files.

    Creates config.yaml with default settings and reference.yaml with
    sample machines, production orders, downtimes and shifts.
    """
    output.mkdir(parents=True, exist_ok=True)

    cfg = Config.default()
    reference_path = output / "reference.yaml"
    cfg.reference.source = "file"
    cfg.reference.file = str(reference_path)
    config_path = output / "config.yaml"
    cfg.to_yaml(config_path)
    write_reference_yaml(reference_path, machine_count=machines, seed=seed)

    click.echo(f"Created: {config_path}")
    click.echo(f"Created: {reference_path}")
    click.echo()
    click.echo("Edit the config file to customize:")
    click.echo("  - MQTT broker settings")
    click.echo("  - Reference data source (api or file)")
    click.echo("  - Micro-stop threshold and classification levels")
    click.echo()
    click.echo(f"Run with: oee-engine run --config {config_path}")


@main.command()
@click.option("--broker", "-b", default="localhost", help="MQTT broker address")
@click.option("--port", "-p", type=int, default=1883, help="MQTT broker port")
@click.option("--plant", default="Plant1", help="Plant segment of the topic")
@click.option("--area", default="Area1", help="Area segment of the topic")
@click.option("--value", type=int, default=1, help="Command value (Hold/Unhold act on 1)")
@click.option("--codec", type=click.Choice(list(CODECS)), default="sparkplug", help="Payload encoding")
@click.argument("machine")
@click.argument("command", type=click.Choice(list(COMMAND_NAMES)))
def send_command(broker, port, plant, area, value, codec, machine, command):
    """Publish a DCMD command (Hold, Unhold, Start, End) for a machine."""
    topic = build_topic(plant, area, MessageKind.DCMD, machine, command)
    payload = encode_payload([Metric(command, value, "Int32")], codec=codec)

    try:
        _publish_once(broker, port, topic, payload)
    except (OSError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Sent {command}={value} to {machine}")
    click.echo(f"  Topic: {topic}")


@main.command()
@click.option("--broker", "-b", default="localhost", help="MQTT broker address")
@click.option("--port", "-p", type=int, default=1883, help="MQTT broker port")
@click.option("--plant", default="Plant1", help="Plant segment of the topic")
@click.option("--area", default="Area1", help="Area segment of the topic")
@click.option("--codec", type=click.Choice(list(CODECS)), default="sparkplug", help="Payload encoding")
@click.argument("machine")
@click.argument("metric")
@click.argument("value", type=float)
def send_metric(broker, port, plant, area, codec, machine, metric, value):
    """Publish a DDATA metric value for a machine."""
    topic = build_topic(plant, area, MessageKind.DDATA, machine, metric)
    payload = encode_payload([Metric(metric, value, "Double")], codec=codec)

    try:
        _publish_once(broker, port, topic, payload)
    except (OSError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Sent {metric}={value} to {machine}")
    click.echo(f"  Topic: {topic}")


@main.command()
@click.option("--broker", "-b", default="localhost", help="MQTT broker address")
@click.option("--port", "-p", type=int, default=1883, help="MQTT broker port")
@click.option(
    "--topic",
    "-t",
    "snapshot_topic",
    default="oee-engine/snapshots",
    help="Snapshot topic root",
)
@click.option("--machine", "-m", default="+", help="Machine id filter (default: all)")
def watch(broker, port, snapshot_topic, machine):
    """Subscribe to OEE snapshots and display them."""
    full_topic = f"{snapshot_topic}/{machine}"

    def on_message(client, userdata, msg):
        try:
            data = json.loads(msg.payload.decode())
        except ValueError:
            click.echo(f"{msg.topic}: {msg.payload!r}")
            return
        click.echo(
            f"{data.get('machine_id')} order {data.get('order_number') or data.get('order_id')}: "
            f"OEE {data.get('oee', 0):.2f} | A {data.get('availability', 0):.2f} "
            f"P {data.get('performance', 0):.2f} Q {data.get('quality', 0):.2f} "
            f"[{data.get('classification')}]"
        )

    def on_connect(client, userdata, flags, rc, properties=None):
        if rc == 0:
            client.subscribe(full_topic)
            click.echo(f"Subscribed to: {full_topic}")
            click.echo("Press Ctrl+C to stop")
            click.echo("-" * 40)

    client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)
    client.on_connect = on_connect
    client.on_message = on_message

    try:
        client.connect(broker, port)
        client.loop_forever()
    except KeyboardInterrupt:
        click.echo("\nDisconnected")
    except OSError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command()
@click.option(
    "--path",
    "history_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Historian file (default: from config)",
)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default=Path("config/config.yaml"),
    help="Configuration file",
)
@click.option("--order", "order_id", default=None, help="Show a single order")
def history(history_path, config_path, order_id):
    """Show persisted final metrics of finished orders."""
    path = history_path or Path(_load_config(config_path).historian.path)
    historian = JsonLinesHistorian(path)

    if order_id:
        found = historian.find(order_id)
        records = [found] if found else []
    else:
        records = historian.read_all()

    if not records:
        click.echo(f"No history in {path}")
        return

    click.echo(f"{'Order':<14} {'Machine':<10} {'A':>8} {'P':>8} {'Q':>8} {'OEE':>8}  Class")
    click.echo("-" * 72)
    for m in records:
        click.echo(
            f"{(m.order_number or m.order_id):<14} {m.machine_id:<10} "
            f"{m.availability:>8.2f} {m.performance:>8.2f} {m.quality:>8.2f} {m.oee:>8.2f}  "
            f"{m.classification}"
        )


if __name__ == "__main__":
    main()
