"""Topic addressing and payload codec for UNS telemetry.

Topics follow the Sparkplug B layout::

    <namespace>/<plant>/<area>/<DCMD|DDATA>/<machineName>/<metricName>

Payloads are Sparkplug B protobuf messages. A JSON rendition of the same
structure is accepted when the codec is set to ``json``::

    {"timestamp": 1700000000000, "seq": 0,
     "metrics": [{"name": "Hold", "value": 1, "type": "Int32"}]}
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Optional

from google.protobuf.message import DecodeError

from . import sparkplug
from .errors import PayloadDecodeError

logger = logging.getLogger(__name__)

TOPIC_SEGMENTS = 6
CODECS = ("sparkplug", "json")
DEFAULT_CODEC = "sparkplug"

_INTEGER_TYPES = {"Int8", "Int16", "Int32", "Int64", "UInt8", "UInt16", "UInt32", "UInt64"}
_FLOAT_TYPES = {"Float", "Double"}


class MessageKind(Enum):
    """Sparkplug message types the engine listens to."""

    DCMD = "DCMD"
    DDATA = "DDATA"


@dataclass(frozen=True)
class TopicAddress:
    namespace: str
    plant: str
    area: str
    kind: MessageKind
    machine_name: str
    metric_name: str

    @property
    def topic(self) -> str:
        return build_topic(
            self.plant, self.area, self.kind, self.machine_name, self.metric_name, self.namespace
        )


@dataclass
class Metric:
    name: str
    value: Any
    type: str = ""


@dataclass
class DecodedPayload:
    metrics: List[Metric] = field(default_factory=list)
    timestamp: Optional[int] = None
    seq: Optional[int] = None

    def first(self, name: str) -> Optional[Metric]:
        for metric in self.metrics:
            if metric.name == name:
                return metric
        return None


def parse_topic(topic: str) -> TopicAddress:
    """Split a topic into its address parts."""
    parts = topic.split("/")
    if len(parts) != TOPIC_SEGMENTS or not all(parts):
        raise PayloadDecodeError(f"Invalid topic structure: {topic}", topic=topic)

    namespace, plant, area, kind, machine_name, metric_name = parts
    try:
        message_kind = MessageKind(kind)
    except ValueError:
        raise PayloadDecodeError(f"Unknown message kind {kind!r} in {topic}", topic=topic) from None

    return TopicAddress(namespace, plant, area, message_kind, machine_name, metric_name)


def build_topic(
    plant: str,
    area: str,
    kind: MessageKind,
    machine_name: str,
    metric_name: str,
    namespace: str = "spBv1.0",
) -> str:
    return f"{namespace}/{plant}/{area}/{kind.value}/{machine_name}/{metric_name}"


def _coerce(value: Any, datatype: str) -> Any:
    if value is None:
        return None
    if datatype in _INTEGER_TYPES:
        return int(value)
    if datatype in _FLOAT_TYPES:
        return float(value)
    if datatype == "Boolean":
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes")
        return bool(value)
    if datatype == "String":
        return str(value)
    return value


def _decode_json(raw: bytes, topic: Optional[str]) -> DecodedPayload:
    try:
        data = json.loads(raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise PayloadDecodeError(f"Payload is not valid JSON: {e}", topic=topic) from None

    if not isinstance(data, dict) or not isinstance(data.get("metrics"), list):
        raise PayloadDecodeError("Payload has no metrics list", topic=topic)

    decoded = DecodedPayload(timestamp=data.get("timestamp"), seq=data.get("seq"))
    for entry in data["metrics"]:
        if not isinstance(entry, dict) or not entry.get("name"):
            logger.warning(f"Skipping malformed metric on {topic}: {entry!r}")
            continue
        datatype = str(entry.get("type", ""))
        try:
            value = _coerce(entry.get("value"), datatype)
        except (TypeError, ValueError):
            logger.warning(
                f"Skipping metric {entry['name']} on {topic}: "
                f"value {entry.get('value')!r} is not a valid {datatype}"
            )
            continue
        decoded.metrics.append(Metric(name=str(entry["name"]), value=value, type=datatype))

    return decoded


def _decode_sparkplug(raw: bytes, topic: Optional[str], default_name: Optional[str]) -> DecodedPayload:
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    message = sparkplug.Payload()
    try:
        message.ParseFromString(bytes(raw))
    except DecodeError as e:
        raise PayloadDecodeError(f"Payload is not a valid Sparkplug B message: {e}", topic=topic) from None

    decoded = DecodedPayload(
        timestamp=message.timestamp if message.HasField("timestamp") else None,
        seq=message.seq if message.HasField("seq") else None,
    )
    for entry in message.metrics:
        name = entry.name or default_name
        if not name:
            logger.warning(f"Skipping metric without name on {topic} (alias {entry.alias})")
            continue
        value, datatype = sparkplug.read_metric_value(entry)
        decoded.metrics.append(Metric(name=name, value=value, type=datatype))

    return decoded


def decode_payload(
    raw: bytes,
    topic: Optional[str] = None,
    codec: str = DEFAULT_CODEC,
    default_name: Optional[str] = None,
) -> DecodedPayload:
    """Decode a Sparkplug payload into ordered metric triples.

    Sparkplug B metrics published by alias only take ``default_name``
    (the metric segment of the topic).
    """
    if codec == "sparkplug":
        return _decode_sparkplug(raw, topic, default_name)
    if codec == "json":
        return _decode_json(raw, topic)
    raise ValueError(f"Unknown payload codec: {codec}")


def _infer_type(value: Any) -> str:
    if isinstance(value, bool):
        return "Boolean"
    if isinstance(value, int):
        return "Int64"
    if isinstance(value, float):
        return "Double"
    return "String"


def encode_payload(
    metrics: Iterable[Metric],
    timestamp: Optional[int] = None,
    seq: int = 0,
    codec: str = DEFAULT_CODEC,
) -> bytes:
    """Encode metrics as a Sparkplug payload (used by the CLI and tests)."""
    if timestamp is None:
        timestamp = int(time.time() * 1000)

    if codec == "json":
        body = {
            "timestamp": timestamp,
            "seq": seq,
            "metrics": [
                {"name": m.name, "value": m.value, "type": m.type or _infer_type(m.value)}
                for m in metrics
            ],
        }
        return json.dumps(body).encode("utf-8")
    if codec != "sparkplug":
        raise ValueError(f"Unknown payload codec: {codec}")

    message = sparkplug.Payload(timestamp=timestamp, seq=seq)
    for m in metrics:
        entry = message.metrics.add(name=m.name, timestamp=timestamp)
        sparkplug.write_metric_value(entry, m.value, m.type or _infer_type(m.value))
    return message.SerializeToString()
