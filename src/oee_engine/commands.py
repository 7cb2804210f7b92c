"""Hold/Unhold and order Start/End handling.

A machine is Held while a HoldState exists for it in the hold store and
Running otherwise. An Unhold after more than ``threshold_seconds`` of idle
time records one micro-stop covering [hold start, unhold).
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .errors import ReferenceDataError
from .models import (
    PLACEHOLDER_REASON,
    DowntimeInterval,
    DowntimeKind,
    HoldState,
    ProductionOrder,
    utc_now,
)
from .reference import ReferenceDataAccessor

logger = logging.getLogger(__name__)


class CommandResult(Enum):
    HOLD_STARTED = "hold_started"
    ALREADY_HELD = "already_held"
    NOT_HELD = "not_held"
    RESUMED = "resumed"
    MICROSTOP_RECORDED = "microstop_recorded"
    ORDER_STARTED = "order_started"
    ORDER_ENDED = "order_ended"
    NO_ORDER = "no_order"
    IGNORED_VALUE = "ignored_value"
    UNKNOWN_COMMAND = "unknown_command"
    FAILED = "failed"


@dataclass
class CommandOutcome:
    """What a command did to a machine."""

    command: str
    machine_id: str
    result: CommandResult
    downtime: Optional[DowntimeInterval] = None
    order: Optional[ProductionOrder] = None

    @property
    def requires_recompute(self) -> bool:
        return self.result in (
            CommandResult.MICROSTOP_RECORDED,
            CommandResult.ORDER_STARTED,
            CommandResult.ORDER_ENDED,
        )

    @property
    def order_finished(self) -> bool:
        return self.result == CommandResult.ORDER_ENDED


def _is_one(value: Any) -> bool:
    try:
        return float(value) == 1
    except (TypeError, ValueError):
        return False


class CommandStateMachine:
    """Per-machine Running/Held tracking plus order start/end bookkeeping."""

    def __init__(
        self,
        reference: ReferenceDataAccessor,
        threshold_seconds: float = 300,
        holds: Optional[Dict[str, HoldState]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.reference = reference
        self.threshold_seconds = threshold_seconds
        self.holds = holds if holds is not None else {}
        self.clock = clock

    def is_held(self, machine_id: str) -> bool:
        return machine_id in self.holds

    def handle(self, machine_id: str, command: str, value: Any = 1) -> CommandOutcome:
        handlers = {
            "Hold": self.hold,
            "Unhold": self.unhold,
            "Start": self.start_order,
            "End": self.end_order,
        }
        handler = handlers.get(command)
        if handler is None:
            logger.warning(f"Unknown command {command!r} for machine {machine_id}")
            return CommandOutcome(command, machine_id, CommandResult.UNKNOWN_COMMAND)

        logger.info(f"Command {command} (value={value}) for machine {machine_id}")
        try:
            return handler(machine_id, value)
        except ReferenceDataError as e:
            logger.error(f"Command {command} for machine {machine_id} dropped: {e}")
            return CommandOutcome(command, machine_id, CommandResult.FAILED)

    def _active_order_id(self, machine_id: str) -> Optional[str]:
        try:
            order = self.reference.get_active_order(machine_id)
        except ReferenceDataError as e:
            logger.warning(f"Could not resolve active order for machine {machine_id}: {e}")
            return None
        return order.order_id if order else None

    def hold(self, machine_id: str, value: Any = 1) -> CommandOutcome:
        if not _is_one(value):
            logger.info(f"Hold for machine {machine_id} ignored, value is {value!r}")
            return CommandOutcome("Hold", machine_id, CommandResult.IGNORED_VALUE)

        if machine_id in self.holds:
            logger.info(
                f"Machine {machine_id} already held since "
                f"{self.holds[machine_id].started_at.isoformat()}"
            )
            return CommandOutcome("Hold", machine_id, CommandResult.ALREADY_HELD)

        state = HoldState(
            machine_id=machine_id,
            started_at=self.clock(),
            order_id=self._active_order_id(machine_id),
        )
        self.holds[machine_id] = state
        logger.info(f"Hold recorded at {state.started_at.isoformat()} for machine {machine_id}")
        return CommandOutcome("Hold", machine_id, CommandResult.HOLD_STARTED)

    def unhold(self, machine_id: str, value: Any = 1) -> CommandOutcome:
        if not _is_one(value):
            logger.info(f"Unhold for machine {machine_id} ignored, value is {value!r}")
            return CommandOutcome("Unhold", machine_id, CommandResult.IGNORED_VALUE)

        state = self.holds.pop(machine_id, None)
        if state is None:
            logger.info(f"Unhold for machine {machine_id} without a previous Hold")
            return CommandOutcome("Unhold", machine_id, CommandResult.NOT_HELD)

        now = self.clock()
        idle_seconds = (now - state.started_at).total_seconds()
        if idle_seconds <= self.threshold_seconds:
            logger.info(
                f"Machine {machine_id} resumed after {idle_seconds:.0f}s "
                f"(threshold {self.threshold_seconds}s), no micro-stop"
            )
            return CommandOutcome("Unhold", machine_id, CommandResult.RESUMED)

        interval = DowntimeInterval(
            machine_id=machine_id,
            start=state.started_at,
            end=now,
            kind=DowntimeKind.MICROSTOP,
            reason=PLACEHOLDER_REASON,
            order_id=state.order_id,
        )
        self.reference.create_downtime_record(interval)
        logger.info(
            f"Micro-stop of {idle_seconds:.0f}s recorded for machine {machine_id} "
            f"(order {state.order_id or 'N/A'})"
        )
        return CommandOutcome("Unhold", machine_id, CommandResult.MICROSTOP_RECORDED, downtime=interval)

    def start_order(self, machine_id: str, value: Any = None) -> CommandOutcome:
        order = self.reference.get_active_order(machine_id)
        if order is None:
            logger.warning(f"No released production order to start on machine {machine_id}")
            return CommandOutcome("Start", machine_id, CommandResult.NO_ORDER)

        started = replace(order)
        started.start(self.clock())
        self.reference.update_order(started)
        logger.info(f"Production order {started.order_id} started at {started.actual_start.isoformat()}")
        return CommandOutcome("Start", machine_id, CommandResult.ORDER_STARTED, order=started)

    def end_order(self, machine_id: str, value: Any = None) -> CommandOutcome:
        order = self.reference.get_active_order(machine_id)
        if order is None:
            logger.warning(f"No active production order to end on machine {machine_id}")
            return CommandOutcome("End", machine_id, CommandResult.NO_ORDER)

        # The reference copy only changes once the planning system accepted the update
        ended = replace(order)
        ended.finish(self.clock())
        self.reference.update_order(ended)
        logger.info(f"Production order {ended.order_id} ended at {ended.actual_end.isoformat()}")
        return CommandOutcome("End", machine_id, CommandResult.ORDER_ENDED, order=ended)
