"""MQTT client wrapper: machine subscriptions, watchdog reconnects and snapshot publishing."""

import json
import logging
import threading
import time
from dataclasses import dataclass
from queue import Empty, Queue
from typing import Any, Callable, Dict, Iterable, List, Optional

import paho.mqtt.client as mqtt
from tenacity import (
    RetryError,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    wait_random_exponential,
)

from .config import COMMAND_NAMES, MQTTConfig
from .errors import SubscriptionError
from .models import Machine
from .payload import MessageKind, build_topic
from .reference import MAX_BACKOFF_SECONDS, log_retry

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, bytes], Any]


@dataclass
class Message:
    """MQTT message to be published."""

    topic: str
    payload: Dict[str, Any]
    retain: bool = False
    qos: int = 1


class MQTTClient:
    """Subscribes to machine topics and forwards inbound messages to the engine."""

    def __init__(
        self,
        mqtt_config: MQTTConfig,
        on_message: Optional[MessageCallback] = None,
        topic_keys: Optional[Iterable[str]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.mqtt_config = mqtt_config
        self.on_message = on_message
        self.topic_keys = list(topic_keys) if topic_keys is not None else list(COMMAND_NAMES)
        self._sleep = sleep
        self._clock = clock

        self._client: Optional[mqtt.Client] = None
        self._connected = False
        self._publish_queue: Queue[Message] = Queue()
        self._publish_thread: Optional[threading.Thread] = None
        self._watchdog_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._running = False
        self._dry_run = False
        self._subscriptions: List[str] = []
        self._last_message_at = clock()

        # Stats
        self._messages_received = 0
        self._messages_published = 0
        self._messages_dropped = 0
        self._reconnections = 0

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def subscriptions(self) -> List[str]:
        return list(self._subscriptions)

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "messages_received": self._messages_received,
            "snapshots_published": self._messages_published,
            "snapshots_dropped": self._messages_dropped,
            "reconnections": self._reconnections,
            "subscriptions": len(self._subscriptions),
        }

    def connect(self, dry_run: bool = False) -> bool:
        """Connect to the MQTT broker."""
        self._dry_run = dry_run

        if dry_run:
            logger.info("Dry run mode - not connecting to MQTT broker")
            self._connected = True
            self._start_threads()
            return True

        try:
            self._client = mqtt.Client(
                client_id=self.mqtt_config.client_id,
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            )

            if self.mqtt_config.username:
                self._client.username_pw_set(
                    self.mqtt_config.username, self.mqtt_config.password
                )

            self._client.on_connect = self._on_connect
            self._client.on_disconnect = self._on_disconnect
            self._client.on_message = self._on_message

            logger.info(
                f"Connecting to MQTT broker {self.mqtt_config.broker}:{self.mqtt_config.port}"
            )
            self._client.connect(self.mqtt_config.broker, self.mqtt_config.port)
            self._client.loop_start()

            # Wait for connection
            timeout = 10
            start = time.time()
            while not self._connected and (time.time() - start) < timeout:
                time.sleep(0.1)

            if self._connected:
                self._start_threads()

            return self._connected

        except (OSError, ValueError) as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

    def disconnect(self) -> None:
        """Disconnect from the MQTT broker."""
        self._running = False
        self._stop_event.set()

        for thread in (self._publish_thread, self._watchdog_thread):
            if thread:
                thread.join(timeout=2)

        if self._client and not self._dry_run:
            self._client.loop_stop()
            self._client.disconnect()

        self._connected = False
        logger.info("Disconnected from MQTT broker")

    # Subscriptions

    def machine_topics(self, machine: Machine) -> List[str]:
        """Command and metric topics of one machine."""
        topics = []
        for key in self.topic_keys:
            kind = MessageKind.DCMD if key in COMMAND_NAMES else MessageKind.DDATA
            topics.append(
                build_topic(
                    machine.plant, machine.area, kind, machine.name, key, self.mqtt_config.namespace
                )
            )
        return topics

    def _subscribe_once(self, topic: str) -> int:
        if self._dry_run:
            return mqtt.MQTT_ERR_SUCCESS
        if self._client is None:
            return mqtt.MQTT_ERR_NO_CONN
        result, _mid = self._client.subscribe(topic, qos=self.mqtt_config.qos)
        return result

    def subscribe_with_retry(self, topic: str) -> None:
        """Subscribe with exponential backoff; raises SubscriptionError when retries run out."""
        retries = self.mqtt_config.subscribe_retries
        retrying = Retrying(
            stop=stop_after_attempt(retries),
            wait=wait_random_exponential(
                multiplier=self.mqtt_config.subscribe_base_delay, max=MAX_BACKOFF_SECONDS
            ),
            retry=retry_if_result(lambda result: result != mqtt.MQTT_ERR_SUCCESS),
            before_sleep=log_retry(f"Subscribe to {topic}", retries),
            sleep=self._sleep,
        )
        try:
            retrying(self._subscribe_once, topic)
        except RetryError:
            raise SubscriptionError(topic, retries) from None

        if topic not in self._subscriptions:
            self._subscriptions.append(topic)
        logger.debug(f"Subscribed to {topic}")

    def subscribe_machines(self, machines: Iterable[Machine]) -> List[str]:
        """Subscribe every OEE-enabled machine; returns the ids that succeeded."""
        subscribed = []
        for machine in machines:
            if not machine.oee_enabled:
                logger.info(f"Machine {machine.name} has OEE disabled, not subscribing")
                continue
            try:
                for topic in self.machine_topics(machine):
                    self.subscribe_with_retry(topic)
            except SubscriptionError as e:
                logger.error(f"Skipping machine {machine.name}: {e.message}")
                continue
            subscribed.append(machine.machine_id)
            logger.info(f"Subscribed to topics of machine {machine.name}")
        return subscribed

    # Snapshot publishing

    def publish_snapshot(self, machine_id: str, payload: Dict[str, Any]) -> bool:
        """Queue a retained snapshot for <snapshot_topic>/<machine_id>."""
        topic = f"{self.mqtt_config.snapshot_topic}/{machine_id}"
        return self.publish_raw(topic, payload, retain=True)

    def publish_raw(self, topic: str, payload: Dict[str, Any], retain: bool = False) -> bool:
        msg = Message(topic=topic, payload=payload, retain=retain, qos=self.mqtt_config.qos)
        self._publish_queue.put(msg)
        return True

    def _start_threads(self) -> None:
        """Start the background publish and watchdog threads."""
        self._running = True
        self._stop_event.clear()
        self._last_message_at = self._clock()
        self._publish_thread = threading.Thread(target=self._publish_loop, daemon=True)
        self._publish_thread.start()
        if not self._dry_run:
            self._watchdog_thread = threading.Thread(target=self._watchdog_loop, daemon=True)
            self._watchdog_thread.start()

    def _publish_loop(self) -> None:
        """Background thread that publishes queued messages."""
        while self._running:
            try:
                msg = self._publish_queue.get(timeout=0.1)
                self._do_publish(msg)
            except Empty:
                continue

    def _do_publish(self, msg: Message) -> None:
        """Actually publish a message."""
        payload_str = json.dumps(msg.payload)

        if self._dry_run:
            logger.debug(f"[DRY RUN] {msg.topic}: {payload_str[:100]}")
            self._messages_published += 1
            return

        if self._client and self._connected:
            try:
                result = self._client.publish(
                    msg.topic, payload_str, qos=msg.qos, retain=msg.retain
                )
                if result.rc == mqtt.MQTT_ERR_SUCCESS:
                    self._messages_published += 1
                else:
                    self._messages_dropped += 1
                    logger.warning(f"Failed to publish to {msg.topic}: {result.rc}")
            except (OSError, ValueError) as e:
                self._messages_dropped += 1
                logger.error(f"Error publishing to {msg.topic}: {e}")
        else:
            self._messages_dropped += 1

    # Watchdog

    def check_watchdog(self) -> bool:
        """Reconnect when nothing arrived for watchdog_seconds; True if it did."""
        silence = self._clock() - self._last_message_at
        if silence <= self.mqtt_config.watchdog_seconds:
            return False
        logger.warning(f"No MQTT message for {silence:.0f}s, forcing reconnect")
        self.reconnect()
        return True

    def _watchdog_loop(self) -> None:
        while not self._stop_event.wait(1.0):
            self.check_watchdog()

    def reconnect(self) -> None:
        """Full reconnect; subscriptions are restored in _on_connect."""
        self._reconnections += 1
        self._last_message_at = self._clock()
        if self._client is None or self._dry_run:
            return
        try:
            self._client.reconnect()
        except (OSError, ValueError) as e:
            logger.error(f"Reconnect failed: {e}")

    # Callbacks

    def _on_connect(self, client, userdata, flags, rc, properties=None) -> None:
        """Handle connection callback."""
        if rc == 0:
            self._connected = True
            logger.info("Connected to MQTT broker")
            for topic in self._subscriptions:
                client.subscribe(topic, qos=self.mqtt_config.qos)
            if self._subscriptions:
                logger.info(f"Re-subscribed to {len(self._subscriptions)} topics")
        else:
            logger.error(f"Connection failed with code {rc}")

    def _on_disconnect(self, client, userdata, flags, rc, properties=None) -> None:
        """Handle disconnection callback."""
        self._connected = False
        if rc != 0:
            logger.warning(f"Unexpected disconnection (rc={rc})")

    def _on_message(self, client, userdata, msg) -> None:
        """Forward inbound telemetry to the engine."""
        self._last_message_at = self._clock()
        self._messages_received += 1
        if self.on_message is None:
            return
        try:
            self.on_message(msg.topic, msg.payload)
        except Exception as e:
            logger.error(f"Error processing message on {msg.topic}: {e}")
