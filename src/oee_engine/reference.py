"""Reference data: machines, production orders, downtimes and shift models.

Three accessors share one interface:

- ApiReferenceData: REST client for the order-planning API
- StaticReferenceData: in-memory store, loadable from a YAML file
- CachedReferenceData: per-machine cache in front of either
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

import httpx
import yaml
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from .errors import ComputationError, ReferenceDataError
from .models import (
    DowntimeInterval,
    DowntimeKind,
    Machine,
    OrderStatus,
    ProductionOrder,
    ShiftWindow,
)
from .timewindows import Window, overlap_minutes

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACTIVE_STATUSES = (OrderStatus.RELEASED, OrderStatus.RUNNING)
MAX_BACKOFF_SECONDS = 30.0


def log_retry(description: str, attempts: int) -> Callable[[RetryCallState], None]:
    """before_sleep hook that logs the failed attempt and the upcoming wait."""

    def log(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        reason = outcome.exception() if outcome.failed else f"rc={outcome.result()}"
        logger.warning(
            f"{description} failed (attempt {retry_state.attempt_number}/{attempts}), "
            f"retrying in {retry_state.next_action.sleep:.2f}s: {reason}"
        )

    return log


def retry_with_backoff(
    func: Callable[[], T],
    retries: int = 3,
    base_delay: float = 1.0,
    exceptions: Tuple[type, ...] = (ReferenceDataError,),
    sleep: Callable[[float], None] = time.sleep,
    description: str = "reference data request",
    max_delay: float = MAX_BACKOFF_SECONDS,
) -> T:
    """Call func until it succeeds or retries are exhausted, re-raising the last error.

    Waits are exponential with full jitter: uniform(0, base_delay * 2**(attempt - 1)),
    capped at max_delay.
    """
    retrying = Retrying(
        stop=stop_after_attempt(retries),
        wait=wait_random_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception_type(exceptions),
        before_sleep=log_retry(description, retries),
        sleep=sleep,
        reraise=True,
    )
    try:
        return retrying(func)
    except exceptions as e:
        logger.error(f"{description} failed after {retries} attempts: {e}")
        raise


def in_window(interval: DowntimeInterval, window: Optional[Window]) -> bool:
    if window is None:
        return True
    return overlap_minutes(interval.start, interval.end, window[0], window[1]) > 0


class ReferenceDataAccessor(ABC):
    """Read/write access to the planning data the engine depends on."""

    @abstractmethod
    def list_machines(self) -> List[Machine]:
        ...

    @abstractmethod
    def get_active_order(self, machine_id: str) -> Optional[ProductionOrder]:
        ...

    @abstractmethod
    def update_order(self, order: ProductionOrder) -> None:
        ...

    @abstractmethod
    def get_downtime_intervals(
        self, kind: DowntimeKind, machine_id: str, window: Optional[Window] = None
    ) -> List[DowntimeInterval]:
        ...

    @abstractmethod
    def get_shift_windows(self, machine_id: str) -> List[ShiftWindow]:
        ...

    @abstractmethod
    def create_downtime_record(self, interval: DowntimeInterval) -> None:
        ...

    def get_microstops(self, machine_id: str, window: Optional[Window] = None) -> List[DowntimeInterval]:
        return self.get_downtime_intervals(DowntimeKind.MICROSTOP, machine_id, window)

    def resolve_machine_id(self, name: str) -> Optional[str]:
        """Machine id for a topic machine name, case-insensitive."""
        wanted = name.strip().lower()
        for machine in self.list_machines():
            if machine.name.lower() == wanted:
                return machine.machine_id
        return None

    def get_machine(self, machine_id: str) -> Optional[Machine]:
        for machine in self.list_machines():
            if machine.machine_id == machine_id:
                return machine
        return None


class ApiReferenceData(ReferenceDataAccessor):
    """REST accessor for the order-planning API."""

    DOWNTIME_PATHS = {
        DowntimeKind.PLANNED: "/planneddowntime",
        DowntimeKind.UNPLANNED: "/unplanneddowntime",
        DowntimeKind.MICROSTOP: "/microstops",
    }

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if api_key:
            headers["x-api-key"] = api_key
        self._client = client or httpx.Client(base_url=self.base_url, headers=headers, timeout=timeout)
        if client is not None:
            self._client.headers.update(headers)

    def close(self) -> None:
        self._client.close()

    def connect(self, retries: int = 3, base_delay: float = 1.0, sleep: Callable[[float], None] = time.sleep) -> List[Machine]:
        """Probe the API until it answers; raises ReferenceDataError when it never does."""
        machines = retry_with_backoff(
            self.list_machines,
            retries=retries,
            base_delay=base_delay,
            sleep=sleep,
            description=f"Connecting to {self.base_url}",
        )
        logger.info(f"Reference data API reachable at {self.base_url} ({len(machines)} machines)")
        return machines

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ReferenceDataError(
                f"{method} {path} failed: {e}", {"path": path}
            ) from e

        if response.status_code >= 400:
            raise ReferenceDataError(
                f"{method} {path} returned HTTP {response.status_code}",
                {"path": path, "status": response.status_code, "body": response.text[:200]},
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ReferenceDataError(f"{method} {path} returned invalid JSON", {"path": path}) from e

    def _get_list(self, path: str, **kwargs) -> List[Dict[str, Any]]:
        data = self._request("GET", path, **kwargs)
        if data is None:
            return []
        if not isinstance(data, list):
            raise ReferenceDataError(f"Unexpected format from {path}: expected a list", {"path": path})
        return data

    def list_machines(self) -> List[Machine]:
        return [Machine.from_dict(item) for item in self._get_list("/machines")]

    def get_active_order(self, machine_id: str) -> Optional[ProductionOrder]:
        orders = self._get_list(
            "/processorders/rel", params={"machineId": machine_id, "mark": "true"}
        )
        if not orders:
            return None
        try:
            return ProductionOrder.from_dict(orders[0])
        except ComputationError as e:
            raise ReferenceDataError(
                f"Invalid production order for machine {machine_id}: {e.message}",
                {"machine_id": machine_id},
            ) from e

    def update_order(self, order: ProductionOrder) -> None:
        self._request("PUT", f"/processorders/{order.order_id}", json=order.to_dict())
        logger.info(f"Production order {order.order_id} updated ({order.status.value})")

    def get_downtime_intervals(
        self, kind: DowntimeKind, machine_id: str, window: Optional[Window] = None
    ) -> List[DowntimeInterval]:
        path = self.DOWNTIME_PATHS[kind]
        intervals = []
        for item in self._get_list(path):
            try:
                interval = DowntimeInterval.from_dict(item, kind=kind)
            except ComputationError as e:
                logger.warning(f"Skipping invalid {kind.value} downtime from {path}: {e.message}")
                continue
            if interval.machine_id == machine_id and in_window(interval, window):
                intervals.append(interval)
        return intervals

    def get_shift_windows(self, machine_id: str) -> List[ShiftWindow]:
        shifts = []
        for item in self._get_list(f"/shiftmodels/machine/{machine_id}"):
            item.setdefault("machine_id", machine_id)
            shifts.append(ShiftWindow.from_dict(item))
        return shifts

    def create_downtime_record(self, interval: DowntimeInterval) -> None:
        path = self.DOWNTIME_PATHS[interval.kind]
        self._request("POST", path, json=interval.to_dict())
        logger.info(
            f"Created {interval.kind.value} record for machine {interval.machine_id}: "
            f"{interval.duration_seconds:.0f}s"
        )


class StaticReferenceData(ReferenceDataAccessor):
    """In-memory reference data for offline runs and tests."""

    def __init__(
        self,
        machines: Iterable[Machine] = (),
        orders: Iterable[ProductionOrder] = (),
        downtimes: Iterable[DowntimeInterval] = (),
        shifts: Iterable[ShiftWindow] = (),
    ):
        self._lock = threading.Lock()
        self.machines: List[Machine] = list(machines)
        self.orders: List[ProductionOrder] = list(orders)
        self.downtimes: List[DowntimeInterval] = list(downtimes)
        self.shifts: List[ShiftWindow] = list(shifts)

    @classmethod
    def from_yaml(cls, path: Path) -> "StaticReferenceData":
        """Load machines/orders/downtimes/shifts from a YAML document."""
        if not path.exists():
            raise ReferenceDataError(f"Reference file not found: {path}", {"path": str(path)})

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        downtimes = []
        for key, kind in (
            ("planned_downtime", DowntimeKind.PLANNED),
            ("unplanned_downtime", DowntimeKind.UNPLANNED),
            ("microstops", DowntimeKind.MICROSTOP),
        ):
            downtimes.extend(DowntimeInterval.from_dict(item, kind=kind) for item in data.get(key, []))

        return cls(
            machines=[Machine.from_dict(item) for item in data.get("machines", [])],
            orders=[ProductionOrder.from_dict(item) for item in data.get("orders", [])],
            downtimes=downtimes,
            shifts=[ShiftWindow.from_dict(item) for item in data.get("shifts", [])],
        )

    def list_machines(self) -> List[Machine]:
        return list(self.machines)

    def get_active_order(self, machine_id: str) -> Optional[ProductionOrder]:
        with self._lock:
            for order in self.orders:
                if order.machine_id == machine_id and order.status in ACTIVE_STATUSES:
                    return order
        return None

    def update_order(self, order: ProductionOrder) -> None:
        with self._lock:
            for index, existing in enumerate(self.orders):
                if existing.order_id == order.order_id:
                    self.orders[index] = order
                    return
            self.orders.append(order)

    def get_downtime_intervals(
        self, kind: DowntimeKind, machine_id: str, window: Optional[Window] = None
    ) -> List[DowntimeInterval]:
        with self._lock:
            return [
                interval
                for interval in self.downtimes
                if interval.kind == kind
                and interval.machine_id == machine_id
                and in_window(interval, window)
            ]

    def get_shift_windows(self, machine_id: str) -> List[ShiftWindow]:
        return [shift for shift in self.shifts if shift.machine_id == machine_id]

    def create_downtime_record(self, interval: DowntimeInterval) -> None:
        with self._lock:
            self.downtimes.append(interval)


class CachedReferenceData(ReferenceDataAccessor):
    """Caches reads per machine; writes go through and invalidate that machine.

    Entries expire after ``ttl_seconds`` so downtimes, shifts and orders
    entered in the planning system are picked up without a restart. A
    missing active order is never cached.
    """

    CACHE_KINDS = ("machines", "order", "shifts") + tuple(kind.value for kind in DowntimeKind)

    def __init__(
        self,
        inner: ReferenceDataAccessor,
        ttl_seconds: Optional[float] = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.inner = inner
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        # (kind, machine_id) -> (expires_at, value); machine_id is "" for the machine list
        self._entries: Dict[Tuple[str, str], Tuple[float, Any]] = {}
        self.hits = 0
        self.misses = 0

    def _expires_at(self) -> float:
        if self.ttl_seconds is None:
            return float("inf")
        return self._clock() + self.ttl_seconds

    def _cached(self, kind: str, machine_id: str, load: Callable[[], T]) -> T:
        key = (kind, machine_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                expires_at, value = entry
                if self._clock() < expires_at:
                    self.hits += 1
                    return value
                del self._entries[key]
        value = load()
        with self._lock:
            self.misses += 1
            if value is not None:
                self._entries[key] = (self._expires_at(), value)
        return value

    def invalidate(self, machine_id: Optional[str] = None, kind: Optional[str] = None) -> None:
        """Drop cached entries, narrowed by machine and/or kind."""
        if kind is not None and kind not in self.CACHE_KINDS:
            raise ValueError(f"Unknown cache kind: {kind}")
        with self._lock:
            for key in list(self._entries):
                entry_kind, entry_machine = key
                if kind is not None and entry_kind != kind:
                    continue
                if entry_kind == "machines":
                    if machine_id is not None:
                        continue
                elif machine_id is not None and entry_machine != machine_id:
                    continue
                del self._entries[key]
        logger.debug(f"Reference cache invalidated (machine={machine_id}, kind={kind})")

    def list_machines(self) -> List[Machine]:
        return list(self._cached("machines", "", self.inner.list_machines))

    def get_active_order(self, machine_id: str) -> Optional[ProductionOrder]:
        return self._cached("order", machine_id, lambda: self.inner.get_active_order(machine_id))

    def update_order(self, order: ProductionOrder) -> None:
        try:
            self.inner.update_order(order)
        finally:
            self.invalidate(order.machine_id, "order")

    def get_downtime_intervals(
        self, kind: DowntimeKind, machine_id: str, window: Optional[Window] = None
    ) -> List[DowntimeInterval]:
        intervals = self._cached(
            kind.value, machine_id, lambda: self.inner.get_downtime_intervals(kind, machine_id)
        )
        return [interval for interval in intervals if in_window(interval, window)]

    def get_shift_windows(self, machine_id: str) -> List[ShiftWindow]:
        return self._cached("shifts", machine_id, lambda: self.inner.get_shift_windows(machine_id))

    def create_downtime_record(self, interval: DowntimeInterval) -> None:
        self.inner.create_downtime_record(interval)
        self.invalidate(interval.machine_id, interval.kind.value)

