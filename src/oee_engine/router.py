"""Decodes inbound telemetry and routes it to command or metric handling.

Ingestion errors stop here: every failure is logged, counted and reported as
a RouteResult, never raised.
"""

import logging
from enum import Enum
from typing import Callable, List

from .errors import (
    NoActiveOrderError,
    PayloadDecodeError,
    ReferenceDataError,
    UnknownMachineError,
)
from .payload import (
    DEFAULT_CODEC,
    MessageKind,
    Metric,
    TopicAddress,
    decode_payload,
    parse_topic,
)
from .reference import ReferenceDataAccessor

logger = logging.getLogger(__name__)

CommandHandler = Callable[[str, Metric], None]
MetricsHandler = Callable[[str, List[Metric]], None]


class RouteResult(Enum):
    ROUTED_COMMAND = "routed_command"
    ROUTED_METRIC = "routed_metric"
    BAD_TOPIC = "bad_topic"
    UNKNOWN_MACHINE = "unknown_machine"
    NO_ACTIVE_ORDER = "no_active_order"
    BAD_PAYLOAD = "bad_payload"
    REFERENCE_ERROR = "reference_error"


class TelemetryRouter:
    """Topic -> machine -> active order check -> decoded payload -> handler."""

    def __init__(
        self,
        reference: ReferenceDataAccessor,
        on_command: CommandHandler,
        on_metrics: MetricsHandler,
        codec: str = DEFAULT_CODEC,
    ):
        self.reference = reference
        self.codec = codec
        self.on_command = on_command
        self.on_metrics = on_metrics

        self.messages_received = 0
        self.messages_dropped = 0

    def _resolve_machine(self, address: TopicAddress) -> str:
        machine_id = self.reference.resolve_machine_id(address.machine_name)
        if machine_id is None:
            raise UnknownMachineError(address.machine_name)
        if self.reference.get_active_order(machine_id) is None:
            raise NoActiveOrderError(machine_id)
        return machine_id

    def _drop(self, result: RouteResult, message: str) -> RouteResult:
        self.messages_dropped += 1
        logger.warning(message)
        return result

    def handle(self, topic: str, payload: bytes) -> RouteResult:
        self.messages_received += 1

        try:
            address = parse_topic(topic)
        except PayloadDecodeError as e:
            return self._drop(RouteResult.BAD_TOPIC, e.message)

        try:
            machine_id = self._resolve_machine(address)
        except UnknownMachineError as e:
            return self._drop(RouteResult.UNKNOWN_MACHINE, e.message)
        except NoActiveOrderError as e:
            return self._drop(RouteResult.NO_ACTIVE_ORDER, e.message)
        except ReferenceDataError as e:
            return self._drop(
                RouteResult.REFERENCE_ERROR, f"Reference lookup failed for {topic}: {e.message}"
            )

        try:
            decoded = decode_payload(
                payload, topic=topic, codec=self.codec, default_name=address.metric_name
            )
        except PayloadDecodeError as e:
            return self._drop(RouteResult.BAD_PAYLOAD, f"{e.message} ({topic})")

        if not decoded.metrics:
            return self._drop(RouteResult.BAD_PAYLOAD, f"Payload on {topic} carries no usable metrics")

        if address.kind == MessageKind.DCMD:
            for metric in decoded.metrics:
                self.on_command(machine_id, metric)
            return RouteResult.ROUTED_COMMAND

        self.on_metrics(machine_id, decoded.metrics)
        return RouteResult.ROUTED_METRIC
