"""Snapshot fan-out to live subscribers and one-time persistence of final metrics."""

import logging
import threading
from queue import Full, Queue
from typing import Callable, Dict, List, Optional, Protocol, Set

from .errors import PersistenceError
from .models import OEEMetrics

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[str, OEEMetrics], None]


class SnapshotSink(Protocol):
    def publish_snapshot(self, machine_id: str, payload: dict) -> bool:
        ...


class FinalMetricsStore(Protocol):
    def persist(self, metrics: OEEMetrics) -> None:
        ...


class SnapshotPublisher:
    """Delivers every new OEEMetrics at most once per subscriber.

    A subscriber whose callback raises, or whose channel is full, is
    removed. The optional sink (the MQTT client) gets a JSON copy.
    """

    def __init__(
        self,
        historian: Optional[FinalMetricsStore] = None,
        sink: Optional[SnapshotSink] = None,
        snapshots: Optional[Dict[str, OEEMetrics]] = None,
    ):
        self.historian = historian
        self.sink = sink
        self.snapshots = snapshots if snapshots is not None else {}
        self._callbacks: List[SnapshotCallback] = []
        self._channels: List[Queue] = []
        self._persisted: Set[str] = set()
        self._lock = threading.Lock()

        self.published = 0
        self.subscribers_dropped = 0

    def subscribe(self, callback: SnapshotCallback) -> SnapshotCallback:
        with self._lock:
            self._callbacks.append(callback)
        return callback

    def unsubscribe(self, callback: SnapshotCallback) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def open_channel(self, maxsize: int = 100) -> Queue:
        """Queue that receives (machine_id, metrics) tuples."""
        channel: Queue = Queue(maxsize=maxsize)
        with self._lock:
            self._channels.append(channel)
        return channel

    def close_channel(self, channel: Queue) -> None:
        with self._lock:
            if channel in self._channels:
                self._channels.remove(channel)

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks) + len(self._channels)

    def publish(self, machine_id: str, metrics: OEEMetrics) -> None:
        self.snapshots[machine_id] = metrics
        self.published += 1

        with self._lock:
            callbacks = list(self._callbacks)
            channels = list(self._channels)

        for callback in callbacks:
            try:
                callback(machine_id, metrics)
            except Exception as e:
                logger.warning(f"Dropping snapshot subscriber {callback!r}: {e}")
                self.unsubscribe(callback)
                self.subscribers_dropped += 1

        for channel in channels:
            try:
                channel.put_nowait((machine_id, metrics))
            except Full:
                logger.warning("Dropping snapshot channel, queue is full")
                self.close_channel(channel)
                self.subscribers_dropped += 1

        if self.sink is not None:
            self.sink.publish_snapshot(machine_id, metrics.to_dict())

    def persist_final(self, metrics: OEEMetrics) -> bool:
        """Persist a finished order's metrics once; False when already done."""
        with self._lock:
            if metrics.order_id in self._persisted:
                logger.debug(f"Final metrics for order {metrics.order_id} already persisted")
                return False

        if self.historian is None:
            logger.warning(f"No historian configured, final metrics for {metrics.order_id} not stored")
            return False

        try:
            self.historian.persist(metrics)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to persist final metrics for order {metrics.order_id}: {e}")
            raise PersistenceError(metrics.order_id, str(e)) from e

        with self._lock:
            self._persisted.add(metrics.order_id)
        return True
