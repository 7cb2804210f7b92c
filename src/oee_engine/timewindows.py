"""Interval arithmetic that reconciles an order window with downtimes and breaks.

Every category (planned downtime, unplanned downtime, micro-stops, shift
breaks) goes through the same two helpers, ``overlap_minutes`` and
``project_time_of_day_window``.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from .errors import ComputationError
from .models import DowntimeInterval, ProductionOrder, ShiftWindow

logger = logging.getLogger(__name__)

Window = Tuple[datetime, datetime]

BUCKET_MINUTES = 60
CHART_SERIES = ("Production", "Break", "Unplanned Downtime", "Planned Downtime", "Microstops")


def overlap_minutes(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> float:
    """Length of the intersection of [a_start, a_end) and [b_start, b_end) in minutes."""
    latest_start = max(a_start, b_start)
    earliest_end = min(a_end, b_end)
    return max(0.0, (earliest_end - latest_start).total_seconds() / 60)


def project_time_of_day_window(
    day: date, start_tod: time, end_tod: time, tz: tzinfo = timezone.utc
) -> Window:
    """Place a daily [start, end) time-of-day window on a calendar day.

    An end before the start wraps to the next day.
    """
    start = datetime.combine(day, start_tod, tzinfo=tz)
    end = datetime.combine(day, end_tod, tzinfo=tz)
    if end < start:
        end += timedelta(days=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def resolve_order_window(order: ProductionOrder) -> Window:
    """Actual start/end when known, planned otherwise."""
    start = order.actual_start or order.planned_start
    end = order.actual_end or order.planned_end
    if end <= start:
        raise ComputationError(
            f"Order {order.order_id} resolves to a non-positive window",
            {"order_id": order.order_id, "start": start.isoformat(), "end": end.isoformat()},
        )
    return start, end


def hour_floor(value: datetime, tz: tzinfo = timezone.utc) -> datetime:
    """Start of the clock hour containing value, as seen in tz."""
    local = value.astimezone(tz).replace(minute=0, second=0, microsecond=0)
    return local.astimezone(timezone.utc)


def hour_ceil(value: datetime, tz: tzinfo = timezone.utc) -> datetime:
    floored = hour_floor(value, tz)
    if floored == value:
        return floored
    return floored + timedelta(hours=1)


def resolve_timezone(name: Optional[str]) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


@dataclass
class HourBucket:
    """Minutes per category inside one clock hour."""

    start: datetime
    label: str
    production: float = 0.0
    breaks: float = 0.0
    unplanned_downtime: float = 0.0
    planned_downtime: float = 0.0
    microstops: float = 0.0


@dataclass
class WindowBreakdown:
    """Category totals (minutes) for an order window plus its hourly split."""

    window_start: datetime
    window_end: datetime
    planned_downtime: float = 0.0
    unplanned_downtime: float = 0.0
    microstops: float = 0.0
    breaks: float = 0.0
    buckets: List[HourBucket] = field(default_factory=list)
    break_windows: List[Window] = field(default_factory=list)

    @property
    def window_minutes(self) -> float:
        return (self.window_end - self.window_start).total_seconds() / 60

    @property
    def production_minutes(self) -> float:
        stopped = self.planned_downtime + self.unplanned_downtime + self.microstops + self.breaks
        return max(0.0, self.window_minutes - stopped)

    def to_chart(self) -> Dict[str, Any]:
        """Labels/datasets structure for stacked hourly charts."""
        series = {
            "Production": [b.production for b in self.buckets],
            "Break": [b.breaks for b in self.buckets],
            "Unplanned Downtime": [b.unplanned_downtime for b in self.buckets],
            "Planned Downtime": [b.planned_downtime for b in self.buckets],
            "Microstops": [b.microstops for b in self.buckets],
        }
        return {
            "labels": [b.label for b in self.buckets],
            "datasets": [{"label": name, "data": series[name]} for name in CHART_SERIES],
        }


def _sum_overlaps(windows: Iterable[Window], start: datetime, end: datetime) -> float:
    return sum(overlap_minutes(w_start, w_end, start, end) for w_start, w_end in windows)


class TimeWindowResolver:
    """Resolves an order's window against every stoppage category."""

    def __init__(self, tz: Optional[tzinfo] = None, label_format: str = "%Y-%m-%d %H:00"):
        self.tz = tz or timezone.utc
        self.label_format = label_format

    def project_breaks(self, shifts: Iterable[ShiftWindow], machine_id: str, window: Window) -> List[Window]:
        """Break windows of the machine's shifts for every day the window touches.

        The day before the window start is included so a break that began
        before midnight is still seen.
        """
        start, end = window
        first_day = start.astimezone(self.tz).date() - timedelta(days=1)
        last_day = end.astimezone(self.tz).date()

        projected: List[Window] = []
        for shift in shifts:
            if shift.machine_id != machine_id or not shift.has_break:
                continue
            day = first_day
            while day <= last_day:
                b_start, b_end = project_time_of_day_window(
                    day, shift.break_start, shift.break_end, self.tz
                )
                if overlap_minutes(b_start, b_end, start, end) > 0:
                    projected.append((b_start, b_end))
                day += timedelta(days=1)
        return projected

    def _relevant(self, intervals: Iterable[DowntimeInterval], machine_id: str, window: Window) -> List[Window]:
        start, end = window
        kept = []
        for interval in intervals:
            if interval.machine_id != machine_id:
                continue
            if overlap_minutes(interval.start, interval.end, start, end) > 0:
                kept.append((interval.start, interval.end))
        return kept

    def resolve(
        self,
        order: ProductionOrder,
        planned: Iterable[DowntimeInterval] = (),
        unplanned: Iterable[DowntimeInterval] = (),
        microstops: Iterable[DowntimeInterval] = (),
        shifts: Iterable[ShiftWindow] = (),
    ) -> WindowBreakdown:
        window = resolve_order_window(order)
        start, end = window
        machine_id = order.machine_id

        planned_windows = self._relevant(planned, machine_id, window)
        unplanned_windows = self._relevant(unplanned, machine_id, window)
        microstop_windows = self._relevant(microstops, machine_id, window)
        break_windows = self.project_breaks(shifts, machine_id, window)

        breakdown = WindowBreakdown(
            window_start=start,
            window_end=end,
            planned_downtime=_sum_overlaps(planned_windows, start, end),
            unplanned_downtime=_sum_overlaps(unplanned_windows, start, end),
            microstops=_sum_overlaps(microstop_windows, start, end),
            breaks=_sum_overlaps(break_windows, start, end),
            break_windows=break_windows,
        )

        seen_labels = set()
        bucket_start = hour_floor(start, self.tz)
        bucket_stop = hour_ceil(end, self.tz)
        while bucket_start < bucket_stop:
            bucket_end = bucket_start + timedelta(minutes=BUCKET_MINUTES)
            label = bucket_start.astimezone(self.tz).strftime(self.label_format)
            if label in seen_labels:
                logger.warning(f"Duplicate hour bucket {label} for order {order.order_id}, skipping")
                bucket_start = bucket_end
                continue
            seen_labels.add(label)

            bucket = HourBucket(
                start=bucket_start,
                label=label,
                breaks=_sum_overlaps(break_windows, bucket_start, bucket_end),
                unplanned_downtime=_sum_overlaps(unplanned_windows, bucket_start, bucket_end),
                planned_downtime=_sum_overlaps(planned_windows, bucket_start, bucket_end),
                microstops=_sum_overlaps(microstop_windows, bucket_start, bucket_end),
            )
            stopped = (
                bucket.breaks + bucket.unplanned_downtime + bucket.planned_downtime + bucket.microstops
            )
            bucket.production = max(0.0, BUCKET_MINUTES - stopped)
            breakdown.buckets.append(bucket)
            bucket_start = bucket_end

        logger.debug(
            f"Order {order.order_id} window {start.isoformat()} - {end.isoformat()}: "
            f"planned={breakdown.planned_downtime:.1f} unplanned={breakdown.unplanned_downtime:.1f} "
            f"microstops={breakdown.microstops:.1f} breaks={breakdown.breaks:.1f}"
        )
        return breakdown
