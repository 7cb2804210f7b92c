"""OEE calculation.

The order's lifecycle phase is chosen once per computation and selects one
set of takt formulas. Ratios are computed on the 0-100 scale and converted to
fractions only on output when ``as_percent`` is off.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Mapping, Optional

from .config import ClassificationLevels, OEEConfig
from .errors import ComputationError, MetricsUnavailableError
from .models import Machine, MetricValue, OEEMetrics, ProductionOrder, utc_now
from .timewindows import WindowBreakdown

logger = logging.getLogger(__name__)

ACTUAL_QUANTITY = "ActualProductionQuantity"
ACTUAL_YIELD = "ActualProductionYield"
PLANNED_QUANTITY = "plannedProductionQuantity"

WORLD_CLASS = "World-Class"
EXCELLENT = "Excellent"
GOOD = "Good"
AVERAGE = "Average"
BELOW_AVERAGE = "Below Average"

# Lowest tier first
CLASSIFICATION_TIERS = (BELOW_AVERAGE, AVERAGE, GOOD, EXCELLENT, WORLD_CLASS)


def _minutes(delta: timedelta) -> float:
    return delta.total_seconds() / 60


class OrderPhase(Enum):
    """Lifecycle phase of a production order."""

    NOT_STARTED = "not_started"
    STARTED = "started"
    ENDED = "ended"

    @classmethod
    def of(cls, order: ProductionOrder) -> "OrderPhase":
        if order.actual_start is None:
            return cls.NOT_STARTED
        if order.actual_end is None:
            return cls.STARTED
        return cls.ENDED


@dataclass(frozen=True)
class TaktFigures:
    """Time figures (minutes) derived from the order for one phase."""

    planned_takt: float
    actual_takt: Optional[float]
    remaining_time: float
    expected_end: datetime
    runtime: float
    planned_duration: float
    actual_duration: Optional[float] = None


def _not_started(order, planned_quantity, actual_quantity, unplanned, now) -> TaktFigures:
    planned_duration = _minutes(order.planned_end - order.planned_start)
    planned_takt = planned_duration / planned_quantity
    actual_takt = planned_takt
    remaining = planned_quantity * actual_takt
    return TaktFigures(
        planned_takt=planned_takt,
        actual_takt=actual_takt,
        remaining_time=remaining,
        expected_end=order.planned_start + timedelta(minutes=remaining),
        runtime=planned_duration,
        planned_duration=planned_duration,
    )


def _started(order, planned_quantity, actual_quantity, unplanned, now) -> TaktFigures:
    """Running order: actual takt is measured from operating time so far.

    This departs from carrying the planned takt over while the order runs;
    actual takt = max(0, runtime - unplanned downtime) / actual quantity, and
    only falls back to the planned takt before the first unit is reported.
    """
    planned_takt = _minutes(order.planned_end - order.actual_start) / planned_quantity
    runtime = _minutes(now - order.actual_start)
    if actual_quantity > 0:
        actual_takt = max(0.0, runtime - unplanned) / actual_quantity
    else:
        actual_takt = planned_takt
    remaining = (planned_quantity - order.confirmed_quantity) * actual_takt
    return TaktFigures(
        planned_takt=planned_takt,
        actual_takt=actual_takt,
        remaining_time=remaining,
        expected_end=order.planned_end,
        runtime=runtime,
        planned_duration=_minutes(order.planned_end - order.planned_start),
    )


def _ended(order, planned_quantity, actual_quantity, unplanned, now) -> TaktFigures:
    planned_duration = _minutes(order.planned_end - order.planned_start)
    actual_duration = _minutes(order.actual_end - order.actual_start)
    actual_takt = actual_duration / planned_quantity
    remaining = (planned_quantity - order.confirmed_quantity) * actual_takt
    return TaktFigures(
        planned_takt=planned_duration / planned_quantity,
        actual_takt=actual_takt,
        remaining_time=remaining,
        expected_end=order.actual_end + timedelta(minutes=remaining),
        runtime=actual_duration,
        planned_duration=planned_duration,
        actual_duration=actual_duration,
    )


PHASE_FORMULAS: Dict[OrderPhase, Callable[..., TaktFigures]] = {
    OrderPhase.NOT_STARTED: _not_started,
    OrderPhase.STARTED: _started,
    OrderPhase.ENDED: _ended,
}


def takt_figures(
    order: ProductionOrder,
    planned_quantity: float,
    actual_quantity: float = 0.0,
    unplanned_downtime: float = 0.0,
    now: Optional[datetime] = None,
) -> TaktFigures:
    if planned_quantity <= 0:
        raise ComputationError(
            f"Order {order.order_id}: planned quantity must be positive, got {planned_quantity}",
            {"order_id": order.order_id},
        )
    phase = OrderPhase.of(order)
    return PHASE_FORMULAS[phase](
        order, planned_quantity, actual_quantity, unplanned_downtime, now or utc_now()
    )


def availability(runtime: float, unplanned_downtime: float) -> float:
    if runtime <= 0:
        return 0.0
    return 100 * (runtime - unplanned_downtime) / runtime


def performance(planned_takt: float, actual_takt: Optional[float]) -> float:
    if not actual_takt or actual_takt <= 0 or planned_takt <= 0:
        return 0.0
    return 100 * planned_takt / actual_takt


def quality(actual_yield: float, actual_quantity: float) -> float:
    if actual_quantity <= 0:
        return 0.0
    return 100 * actual_yield / actual_quantity


def oee(availability_pct: float, performance_pct: float, quality_pct: float) -> float:
    return availability_pct * performance_pct * quality_pct / 10000


def classify(oee_pct: float, levels: Optional[ClassificationLevels] = None) -> str:
    """Map an OEE percentage to its tier label, highest threshold first."""
    levels = levels or ClassificationLevels()
    if oee_pct >= levels.world_class:
        return WORLD_CLASS
    if oee_pct >= levels.excellent:
        return EXCELLENT
    if oee_pct >= levels.good:
        return GOOD
    if oee_pct >= levels.average:
        return AVERAGE
    return BELOW_AVERAGE


def _buffered(buffer: Mapping[str, MetricValue], name: str, fallback: float) -> float:
    metric = buffer.get(name)
    if metric is None or metric.value is None:
        return fallback
    return float(metric.value)


class OEECalculator:
    """Computes OEEMetrics and keeps the latest result per machine."""

    def __init__(
        self,
        config: Optional[OEEConfig] = None,
        results: Optional[Dict[str, OEEMetrics]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or OEEConfig()
        self.results = results if results is not None else {}
        self.clock = clock

    def calculate(
        self,
        order: ProductionOrder,
        breakdown: WindowBreakdown,
        buffer: Optional[Mapping[str, MetricValue]] = None,
        machine: Optional[Machine] = None,
    ) -> OEEMetrics:
        buffer = buffer or {}
        planned_quantity = _buffered(buffer, PLANNED_QUANTITY, order.planned_quantity)
        actual_quantity = _buffered(buffer, ACTUAL_QUANTITY, order.confirmed_quantity)
        actual_yield = _buffered(buffer, ACTUAL_YIELD, order.confirmed_yield)

        phase = OrderPhase.of(order)
        figures = takt_figures(
            order, planned_quantity, actual_quantity, breakdown.unplanned_downtime, self.clock()
        )

        a = availability(figures.runtime, breakdown.unplanned_downtime)
        p = performance(figures.planned_takt, figures.actual_takt)
        q = quality(actual_yield, actual_quantity)
        o = oee(a, p, q)
        label = classify(o, self.config.classification)

        scale = 1 if self.config.as_percent else 100
        metrics = OEEMetrics(
            order_id=order.order_id,
            order_number=order.order_number,
            material_number=order.material_number,
            material_description=order.material_description,
            machine_id=order.machine_id,
            planned_start=order.planned_start,
            planned_end=order.planned_end,
            status=order.status.value,
            phase=phase.value,
            planned_quantity=planned_quantity,
            actual_quantity=actual_quantity,
            actual_yield=actual_yield,
            scrap=actual_quantity - actual_yield,
            planned_runtime=order.planned_runtime,
            runtime=figures.runtime,
            planned_duration=figures.planned_duration,
            actual_duration=figures.actual_duration,
            planned_downtime=breakdown.planned_downtime,
            unplanned_downtime=breakdown.unplanned_downtime,
            microstop_duration=breakdown.microstops,
            break_duration=breakdown.breaks,
            planned_takt=figures.planned_takt,
            actual_takt=figures.actual_takt,
            remaining_time=figures.remaining_time,
            expected_end=figures.expected_end,
            availability=a / scale,
            performance=p / scale,
            quality=q / scale,
            oee=o / scale,
            classification=label,
            as_percent=self.config.as_percent,
            plant=machine.plant if machine else "",
            area=machine.area if machine else "",
            line_id=machine.line_id if machine else "",
            calculated_at=self.clock(),
        )
        self.results[order.machine_id] = metrics
        logger.info(
            f"OEE for machine {order.machine_id} order {order.order_number or order.order_id}: "
            f"{o:.2f}% ({label}, phase={phase.value})"
        )
        return metrics

    def get_metrics(self, machine_id: str) -> OEEMetrics:
        try:
            return self.results[machine_id]
        except KeyError:
            raise MetricsUnavailableError(machine_id) from None


def format_metrics_table(metrics: OEEMetrics) -> str:
    """Render metrics as the fixed-width table written to the log."""
    unit = "%" if metrics.as_percent else ""

    def ratio(value: float) -> str:
        return f"{value:.2f}{unit}"

    def number(value: Optional[float]) -> str:
        return "-" if value is None else f"{value:.2f}"

    rows = [
        ("Machine", metrics.line_id or metrics.machine_id or "Unknown"),
        ("Order", metrics.order_number or metrics.order_id),
        ("Phase", metrics.phase),
        ("Availability", ratio(metrics.availability)),
        ("Performance", ratio(metrics.performance)),
        ("Quality", ratio(metrics.quality)),
        ("OEE", ratio(metrics.oee)),
        ("Classification", metrics.classification or "N/A"),
        ("Planned Production Quantity", number(metrics.planned_quantity)),
        ("Actual Production Quantity", number(metrics.actual_quantity)),
        ("Actual Yield Quantity", number(metrics.actual_yield)),
        ("Planned Duration (Min)", number(metrics.planned_duration)),
        ("Runtime (Min)", number(metrics.runtime)),
        ("Unplanned Downtime (Min)", number(metrics.unplanned_downtime)),
        ("Planned Takt (Min/unit)", number(metrics.planned_takt)),
        ("Actual Takt (Min/unit)", number(metrics.actual_takt)),
    ]
    border = "+" + "-" * 32 + "+" + "-" * 22 + "+"
    lines = [border, f"| {'Metric':<30} | {'Value':<20} |", border]
    lines.extend(f"| {name:<30} | {value:<20} |" for name, value in rows)
    lines.append(border)
    return "\n".join(lines)
