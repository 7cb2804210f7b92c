"""Engine coordinator: owns the per-machine stores and wires the components together."""

import logging
import threading
import time
from datetime import datetime
from queue import Empty, Queue
from typing import Any, Callable, Dict, Iterable, List, Optional

from .buffer import MetricBuffer
from .calculator import OEECalculator, format_metrics_table
from .commands import CommandOutcome, CommandResult, CommandStateMachine
from .config import Config
from .errors import NoActiveOrderError, OEEEngineError, ReferenceDataError
from .models import (
    DowntimeKind,
    HoldState,
    MetricValue,
    OEEMetrics,
    ProductionOrder,
    utc_now,
)
from .payload import Metric
from .publisher import SnapshotPublisher, SnapshotSink
from .reference import ReferenceDataAccessor, retry_with_backoff
from .router import RouteResult, TelemetryRouter
from .timewindows import TimeWindowResolver, resolve_order_window, resolve_timezone

logger = logging.getLogger(__name__)


class MachineDispatcher:
    """One queue and worker thread per machine.

    Work for the same machine runs in submission order; different machines
    run concurrently.
    """

    def __init__(self, name: str = "oee-worker"):
        self.name = name
        self._queues: Dict[str, Queue] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()
        self._running = True

        # Stats
        self.tasks_done = 0
        self.tasks_failed = 0

    def _queue_for(self, machine_id: str) -> Queue:
        with self._lock:
            queue = self._queues.get(machine_id)
            if queue is None:
                queue = Queue()
                thread = threading.Thread(
                    target=self._worker,
                    args=(machine_id, queue),
                    name=f"{self.name}-{machine_id}",
                    daemon=True,
                )
                self._queues[machine_id] = queue
                self._threads[machine_id] = thread
                thread.start()
            return queue

    def submit(self, machine_id: str, func: Callable[..., Any], *args: Any) -> None:
        if not self._running:
            logger.warning(f"Dispatcher stopped, dropping work for machine {machine_id}")
            return
        self._queue_for(machine_id).put((func, args))

    def _worker(self, machine_id: str, queue: Queue) -> None:
        while self._running:
            try:
                func, args = queue.get(timeout=0.1)
            except Empty:
                continue
            try:
                func(*args)
                with self._lock:
                    self.tasks_done += 1
            except Exception:
                with self._lock:
                    self.tasks_failed += 1
                logger.exception(f"Unhandled error while processing machine {machine_id}")
            finally:
                queue.task_done()

    def join(self) -> None:
        """Block until every submitted task has run."""
        with self._lock:
            queues = list(self._queues.values())
        for queue in queues:
            queue.join()

    def stop(self, timeout: float = 2.0) -> None:
        self._running = False
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout=timeout)

    @property
    def machines(self) -> List[str]:
        with self._lock:
            return list(self._queues)


class OEEEngine:
    """Routes telemetry, tracks commands and metrics, recomputes and publishes OEE."""

    def __init__(
        self,
        config: Config,
        reference: ReferenceDataAccessor,
        historian=None,
        sink: Optional[SnapshotSink] = None,
        clock: Callable[[], datetime] = utc_now,
        dispatcher: Optional[MachineDispatcher] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.reference = reference
        self.clock = clock
        self._sleep = sleep

        # Keyed stores, one entry per machine id
        self.holds: Dict[str, HoldState] = {}
        self.buffers: Dict[str, Dict[str, MetricValue]] = {}
        self.results: Dict[str, OEEMetrics] = {}
        self.snapshots: Dict[str, OEEMetrics] = {}
        self.tracked_orders: Dict[str, str] = {}

        self.commands = CommandStateMachine(
            reference, config.oee.threshold_seconds, holds=self.holds, clock=clock
        )
        self.buffer = MetricBuffer(config.metrics, store=self.buffers, clock=clock)
        self.resolver = TimeWindowResolver(resolve_timezone(config.oee.timezone))
        self.calculator = OEECalculator(config.oee, results=self.results, clock=clock)
        self.publisher = SnapshotPublisher(historian=historian, sink=sink, snapshots=self.snapshots)
        self.router = TelemetryRouter(
            reference, self._submit_command, self._submit_metrics, codec=config.mqtt.payload_codec
        )
        self.dispatcher = dispatcher or MachineDispatcher()

        # Stats
        self.computations = 0
        self.computation_errors = 0

    # Ingestion

    def handle_message(self, topic: str, payload: bytes) -> RouteResult:
        return self.router.handle(topic, payload)

    def _submit_command(self, machine_id: str, metric: Metric) -> None:
        self.dispatcher.submit(machine_id, self.handle_command, machine_id, metric.name, metric.value)

    def _submit_metrics(self, machine_id: str, metrics) -> None:
        self.dispatcher.submit(machine_id, self.handle_metrics, machine_id, list(metrics))

    # Per-machine processing (runs on the machine's worker)

    def _retry(self, func: Callable[[], Any], description: str) -> Any:
        return retry_with_backoff(
            func,
            retries=self.config.reference.connect_retries,
            base_delay=self.config.reference.retry_base_delay,
            sleep=self._sleep,
            description=description,
        )

    def _track_order(self, machine_id: str, order: ProductionOrder) -> None:
        if self.tracked_orders.get(machine_id) != order.order_id:
            if machine_id in self.tracked_orders:
                self.buffer.reset(machine_id)
            self.tracked_orders[machine_id] = order.order_id
            logger.info(f"Machine {machine_id} now tracking order {order.order_id}")
        self.buffer.apply_order(machine_id, order)

    def handle_command(self, machine_id: str, command: str, value: Any = 1) -> CommandOutcome:
        try:
            outcome = self.commands.handle(machine_id, command, value)
        except OEEEngineError as e:
            logger.error(f"Command {command} for machine {machine_id} failed: {e.message}")
            return CommandOutcome(command, machine_id, CommandResult.FAILED)

        if outcome.order_finished:
            self._safe_recompute(machine_id, outcome.order)
        elif outcome.requires_recompute:
            self._safe_recompute(machine_id)
        return outcome

    def handle_metrics(self, machine_id: str, metrics: Iterable[Metric]) -> bool:
        """Buffer reported metrics; recompute when any value changed."""
        try:
            order = self._retry(
                lambda: self.reference.get_active_order(machine_id),
                f"Loading active order for machine {machine_id}",
            )
        except ReferenceDataError:
            logger.error(f"Skipping metrics for machine {machine_id}: active order unavailable")
            return False
        if order is None:
            logger.warning(f"No active production order for machine {machine_id}, metrics dropped")
            return False

        self._track_order(machine_id, order)
        changed = False
        for metric in metrics:
            changed = self.buffer.ingest(machine_id, metric.name, metric.value, order) or changed

        if changed:
            self._safe_recompute(machine_id, order)
        return changed

    def _safe_recompute(
        self, machine_id: str, order: Optional[ProductionOrder] = None
    ) -> Optional[OEEMetrics]:
        try:
            return self.recompute(machine_id, order)
        except OEEEngineError as e:
            self.computation_errors += 1
            logger.error(f"OEE computation for machine {machine_id} failed: {e.message}")
            return None

    def recompute(self, machine_id: str, order: Optional[ProductionOrder] = None) -> OEEMetrics:
        """Resolve, calculate, publish and (for finished orders) persist."""
        if order is None:
            order = self._retry(
                lambda: self.reference.get_active_order(machine_id),
                f"Loading active order for machine {machine_id}",
            )
            if order is None:
                raise NoActiveOrderError(machine_id)
            self._track_order(machine_id, order)

        window = resolve_order_window(order)
        planned = self._retry(
            lambda: self.reference.get_downtime_intervals(DowntimeKind.PLANNED, machine_id, window),
            f"Loading planned downtime for machine {machine_id}",
        )
        unplanned = self._retry(
            lambda: self.reference.get_downtime_intervals(DowntimeKind.UNPLANNED, machine_id, window),
            f"Loading unplanned downtime for machine {machine_id}",
        )
        microstops = self._retry(
            lambda: self.reference.get_microstops(machine_id, window),
            f"Loading micro-stops for machine {machine_id}",
        )
        shifts = self._retry(
            lambda: self.reference.get_shift_windows(machine_id),
            f"Loading shift model for machine {machine_id}",
        )
        machine = self._retry(
            lambda: self.reference.get_machine(machine_id),
            f"Loading machine {machine_id}",
        )

        breakdown = self.resolver.resolve(order, planned, unplanned, microstops, shifts)
        metrics = self.calculator.calculate(
            order, breakdown, self.buffer.snapshot(machine_id), machine
        )
        self.computations += 1
        logger.info(f"OEE metrics for machine {machine_id}:\n{format_metrics_table(metrics)}")

        self.publisher.publish(machine_id, metrics)
        if metrics.is_terminal:
            self.publisher.persist_final(metrics)
        return metrics

    def get_metrics(self, machine_id: str) -> OEEMetrics:
        return self.calculator.get_metrics(machine_id)

    def join(self) -> None:
        self.dispatcher.join()

    def stop(self) -> None:
        self.dispatcher.stop()
        logger.info(
            f"Engine stopped: {self.computations} computations, "
            f"{self.computation_errors} errors, {self.router.messages_dropped} messages dropped"
        )
