"""Domain model: production orders, downtime intervals, shifts and OEE metrics."""

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .errors import ComputationError, OrderStateError

PLACEHOLDER_REASON = "TBD"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any, field_name: str = "timestamp") -> datetime:
    """Parse an ISO-8601 string or datetime into an aware UTC datetime.

    Naive values are taken as UTC. Unparseable values raise ComputationError.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise ComputationError(
                f"Invalid {field_name}: {value!r}", {"field": field_name}
            ) from None
    else:
        raise ComputationError(f"Invalid {field_name}: {value!r}", {"field": field_name})

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_optional_timestamp(value: Any, field_name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    return parse_timestamp(value, field_name)


def parse_time_of_day(value: Any) -> time:
    """Parse "HH:MM" or "HH:MM:SS" into a time."""
    if isinstance(value, time):
        return value
    try:
        return time.fromisoformat(str(value).strip())
    except ValueError:
        raise ComputationError(f"Invalid time of day: {value!r}") from None


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first key present in data (snake_case first, legacy API keys after)."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _number(data: Dict[str, Any], *keys: str, default: float = 0.0) -> float:
    """Numeric field by the keys _pick accepts; non-numeric values raise ComputationError."""
    value = _pick(data, *keys, default=default)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ComputationError(
            f"Invalid {keys[0]}: {value!r} is not a number", {"field": keys[0]}
        ) from None


class OrderStatus(Enum):
    """Production order lifecycle."""

    PLANNED = "planned"
    RELEASED = "released"
    RUNNING = "running"
    FINISHED = "finished"

    @classmethod
    def parse(cls, value: Any) -> "OrderStatus":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        aliases = {
            "rel": cls.RELEASED,
            "rel.": cls.RELEASED,
            "in progress": cls.RUNNING,
            "started": cls.RUNNING,
            "completed": cls.FINISHED,
            "ended": cls.FINISHED,
            "teco": cls.FINISHED,
        }
        if text in aliases:
            return aliases[text]
        for status in cls:
            if status.value == text:
                return status
        return cls.RELEASED


@dataclass
class ProductionOrder:
    """A production order on one machine."""

    order_id: str
    machine_id: str
    planned_start: datetime
    planned_end: datetime
    planned_quantity: float
    order_number: str = ""
    material_number: str = ""
    material_description: str = ""
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    confirmed_quantity: float = 0.0
    confirmed_yield: float = 0.0
    setup_time: float = 0.0
    processing_time: float = 0.0
    teardown_time: float = 0.0
    target_performance: float = 0.0
    status: OrderStatus = OrderStatus.RELEASED

    def __post_init__(self):
        if self.planned_end <= self.planned_start:
            raise ComputationError(
                f"Order {self.order_id}: planned end must be after planned start",
                {"order_id": self.order_id},
            )

    @property
    def is_terminal(self) -> bool:
        return self.status == OrderStatus.FINISHED or self.actual_end is not None

    @property
    def planned_runtime(self) -> float:
        """Setup + processing + teardown, in minutes."""
        return self.setup_time + self.processing_time + self.teardown_time

    def start(self, timestamp: datetime) -> None:
        if self.is_terminal:
            raise OrderStateError(self.order_id)
        self.actual_start = timestamp
        self.status = OrderStatus.RUNNING

    def finish(self, timestamp: datetime) -> None:
        if self.is_terminal:
            raise OrderStateError(self.order_id)
        if self.actual_start is None:
            raise OrderStateError(
                self.order_id, f"Production order {self.order_id} was never started"
            )
        self.actual_end = timestamp
        self.status = OrderStatus.FINISHED

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductionOrder":
        """Build an order from the planning API or a reference YAML file."""
        planned_start = _pick(data, "planned_start", "start_date", "StartTime")
        planned_end = _pick(data, "planned_end", "end_date", "EndTime")
        if planned_start is None or planned_end is None:
            raise ComputationError(
                "Required time fields (start/end) are missing in the order",
                {"order_id": _pick(data, "order_id")},
            )

        return cls(
            order_id=str(_pick(data, "order_id", "id", default="")),
            machine_id=str(_pick(data, "machine_id", "workcenter_id", default="")),
            planned_start=parse_timestamp(planned_start, "planned_start"),
            planned_end=parse_timestamp(planned_end, "planned_end"),
            planned_quantity=_number(data, "planned_quantity", "plannedproductionquantity"),
            order_number=str(_pick(data, "order_number", "processordernumber", default="")),
            material_number=str(_pick(data, "material_number", "materialnumber", default="")),
            material_description=str(
                _pick(data, "material_description", "materialdescription", default="")
            ),
            actual_start=parse_optional_timestamp(
                _pick(data, "actual_start", "actualprocessorderstart", "ActualProcessOrderStart"),
                "actual_start",
            ),
            actual_end=parse_optional_timestamp(
                _pick(data, "actual_end", "actualprocessorderend", "ActualProcessOrderEnd"),
                "actual_end",
            ),
            confirmed_quantity=_number(data, "confirmed_quantity", "confirmedproductionquantity"),
            confirmed_yield=_number(data, "confirmed_yield", "confirmedproductionyield"),
            setup_time=_number(data, "setup_time", "setuptime"),
            processing_time=_number(data, "processing_time", "processingtime"),
            teardown_time=_number(data, "teardown_time", "teardowntime"),
            target_performance=_number(data, "target_performance", "targetperformance"),
            status=OrderStatus.parse(_pick(data, "status", "processorderstatus")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "machine_id": self.machine_id,
            "order_number": self.order_number,
            "material_number": self.material_number,
            "material_description": self.material_description,
            "planned_start": format_timestamp(self.planned_start),
            "planned_end": format_timestamp(self.planned_end),
            "actual_start": format_timestamp(self.actual_start),
            "actual_end": format_timestamp(self.actual_end),
            "planned_quantity": self.planned_quantity,
            "confirmed_quantity": self.confirmed_quantity,
            "confirmed_yield": self.confirmed_yield,
            "setup_time": self.setup_time,
            "processing_time": self.processing_time,
            "teardown_time": self.teardown_time,
            "target_performance": self.target_performance,
            "status": self.status.value,
        }


class DowntimeKind(Enum):
    """Interval categories that reduce production time."""

    PLANNED = "planned"
    UNPLANNED = "unplanned"
    MICROSTOP = "microstop"


@dataclass
class DowntimeInterval:
    """A stoppage interval on one machine, end >= start."""

    machine_id: str
    start: datetime
    end: datetime
    kind: DowntimeKind = DowntimeKind.UNPLANNED
    reason: str = PLACEHOLDER_REASON
    order_id: Optional[str] = None
    interval_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if self.end < self.start:
            raise ComputationError(
                f"Downtime {self.interval_id}: end precedes start",
                {"interval_id": self.interval_id},
            )

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start).total_seconds()

    def classify(self, reason: str) -> None:
        """Assign the operator's reason code; the only mutable field."""
        self.reason = reason

    @classmethod
    def from_dict(cls, data: Dict[str, Any], kind: Optional[DowntimeKind] = None) -> "DowntimeInterval":
        start = _pick(data, "start", "start_date", "Start")
        end = _pick(data, "end", "end_date", "End")
        if start is None or end is None:
            raise ComputationError("Downtime interval without start/end", {"data": str(data)[:200]})
        interval_id = _pick(
            data, "interval_id", "id", "Microstop_ID", "plannedOrder_ID", "ID",
            default=None,
        )
        return cls(
            machine_id=str(_pick(data, "machine_id", "workcenter_id", default="")),
            start=parse_timestamp(start, "start"),
            end=parse_timestamp(end, "end"),
            kind=kind or DowntimeKind(_pick(data, "kind", default="unplanned")),
            reason=str(_pick(data, "reason", "Reason", default=PLACEHOLDER_REASON)),
            order_id=_pick(data, "order_id", "Order_ID", "ProcessOrderID"),
            interval_id=str(interval_id) if interval_id is not None else str(uuid.uuid4()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interval_id": self.interval_id,
            "machine_id": self.machine_id,
            "start": format_timestamp(self.start),
            "end": format_timestamp(self.end),
            "kind": self.kind.value,
            "reason": self.reason,
            "order_id": self.order_id,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class ShiftWindow:
    """Daily shift with at most one break, both as time-of-day; may wrap past midnight."""

    machine_id: str
    shift_start: time
    shift_end: time
    break_start: Optional[time] = None
    break_end: Optional[time] = None
    name: str = ""
    shift_id: str = ""

    @property
    def has_break(self) -> bool:
        return self.break_start is not None and self.break_end is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShiftWindow":
        break_start = _pick(data, "break_start")
        break_end = _pick(data, "break_end")
        if break_start in (None, "") or break_end in (None, ""):
            break_start = break_end = None
        return cls(
            machine_id=str(_pick(data, "machine_id", "workcenter_id", default="")),
            shift_start=parse_time_of_day(_pick(data, "shift_start", "shift_start_time")),
            shift_end=parse_time_of_day(_pick(data, "shift_end", "shift_end_time")),
            break_start=parse_time_of_day(break_start) if break_start is not None else None,
            break_end=parse_time_of_day(break_end) if break_end is not None else None,
            name=str(_pick(data, "name", "shift_name", default="")),
            shift_id=str(_pick(data, "shift_id", default="")),
        )


@dataclass
class Machine:
    """Work center identity as known to the reference data."""

    machine_id: str
    name: str
    plant: str = ""
    area: str = ""
    line_id: str = ""
    oee_enabled: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Machine":
        return cls(
            machine_id=str(_pick(data, "machine_id", "workcenter_id", "id")),
            name=str(_pick(data, "name", default="")),
            plant=str(_pick(data, "plant", "Plant", default="")),
            area=str(_pick(data, "area", "Area", default="")),
            line_id=str(_pick(data, "line_id", "lineId", "name", default="")),
            oee_enabled=bool(_pick(data, "oee_enabled", "OEE", default=True)),
        )


class MetricSource(Enum):
    """Where a buffered metric value came from."""

    MQTT = "MQTT"
    ORDER = "Process Order"
    ORDER_CALCULATED = "Process Order (Calculated)"


@dataclass
class MetricValue:
    value: float
    source: MetricSource
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class HoldState:
    """An open Hold on a machine, consumed by the matching Unhold."""

    machine_id: str
    started_at: datetime
    order_id: Optional[str] = None


_METRICS_TIMESTAMP_FIELDS = ("planned_start", "planned_end", "expected_end", "calculated_at")


@dataclass(frozen=True)
class OEEMetrics:
    """One OEE computation result for a production order.

    Superseded by a new instance on every recomputation.
    """

    order_id: str
    order_number: str
    material_number: str
    material_description: str
    machine_id: str
    planned_start: datetime
    planned_end: datetime
    status: str
    phase: str
    planned_quantity: float
    actual_quantity: float
    actual_yield: float
    scrap: float
    planned_runtime: float
    runtime: float
    planned_duration: float
    actual_duration: Optional[float]
    planned_downtime: float
    unplanned_downtime: float
    microstop_duration: float
    break_duration: float
    planned_takt: float
    actual_takt: Optional[float]
    remaining_time: float
    expected_end: Optional[datetime]
    availability: float
    performance: float
    quality: float
    oee: float
    classification: str
    as_percent: bool = True
    plant: str = ""
    area: str = ""
    line_id: str = ""
    calculated_at: datetime = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status == OrderStatus.FINISHED.value

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in _METRICS_TIMESTAMP_FIELDS:
            data[name] = format_timestamp(data[name])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OEEMetrics":
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        for name in _METRICS_TIMESTAMP_FIELDS:
            if name in values:
                values[name] = parse_optional_timestamp(values[name], name)
        if values.get("calculated_at") is None:
            values.pop("calculated_at", None)
        return cls(**values)
