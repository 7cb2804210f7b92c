"""Latest-value metric store per machine."""

import logging
import math
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from .config import MANDATORY_STATIC_METRICS, MetricDefinition
from .models import MetricSource, MetricValue, ProductionOrder, utc_now

logger = logging.getLogger(__name__)


def _numeric(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def static_metric_value(name: str, order: ProductionOrder) -> Tuple[float, MetricSource]:
    """Value and source of a mandatory static metric taken from the order."""
    if name == "Runtime":
        return order.planned_runtime, MetricSource.ORDER_CALCULATED
    if name == "plannedProductionQuantity":
        return order.planned_quantity, MetricSource.ORDER
    if name == "targetPerformance":
        return order.target_performance, MetricSource.ORDER
    raise KeyError(name)


class MetricBuffer:
    """machine_id -> {metric name -> MetricValue}.

    The store dict is owned by the engine and handed in; only the owning
    machine's worker writes to its entry.
    """

    def __init__(
        self,
        catalogue: Iterable[MetricDefinition],
        store: Optional[Dict[str, Dict[str, MetricValue]]] = None,
        clock: Callable = utc_now,
    ):
        self.catalogue = {definition.name: definition for definition in catalogue}
        self.store = store if store is not None else {}
        self.clock = clock

    def update(
        self,
        machine_id: str,
        name: str,
        value: float,
        source: MetricSource = MetricSource.MQTT,
    ) -> bool:
        """Store a value; True when it differs from the previous one."""
        values = self.store.setdefault(machine_id, {})
        current = values.get(name)
        if current is not None and current.value == value:
            return False
        values[name] = MetricValue(value=value, source=source, updated_at=self.clock())
        logger.debug(f"Metric {name} for machine {machine_id} = {value} ({source.value})")
        return True

    def ingest(
        self,
        machine_id: str,
        name: str,
        value: Any,
        order: Optional[ProductionOrder] = None,
    ) -> bool:
        """Apply one reported metric according to the catalogue.

        Machine-connected metrics take the reported value. Mandatory static
        metrics that are not machine-connected are derived from the order.
        Returns True when the buffer changed.
        """
        definition = self.catalogue.get(name)
        if definition is None:
            logger.warning(f"Metric {name} is not defined in the metric catalogue, skipping")
            return False

        if definition.machine_connect:
            number = _numeric(value)
            if number is not None:
                return self.update(machine_id, name, number, MetricSource.MQTT)
            if name not in MANDATORY_STATIC_METRICS:
                logger.warning(f"Dropping non-numeric value {value!r} for metric {name}")
                return False

        if name in MANDATORY_STATIC_METRICS:
            if order is None:
                logger.warning(f"No production order for machine {machine_id}, skipping metric {name}")
                return False
            derived, source = static_metric_value(name, order)
            return self.update(machine_id, name, derived, source)

        logger.warning(f"Metric {name} is neither machine-connected nor derivable, skipping")
        return False

    def apply_order(self, machine_id: str, order: ProductionOrder) -> bool:
        """Seed every non-machine-connected static metric from the order."""
        changed = False
        for name in MANDATORY_STATIC_METRICS:
            definition = self.catalogue.get(name)
            if definition is not None and definition.machine_connect:
                continue
            derived, source = static_metric_value(name, order)
            changed = self.update(machine_id, name, derived, source) or changed
        return changed

    def snapshot(self, machine_id: str) -> Dict[str, MetricValue]:
        return dict(self.store.get(machine_id, {}))

    def reset(self, machine_id: str) -> None:
        """Forget all values of a machine; used when its tracked order changes."""
        self.store.pop(machine_id, None)
        logger.info(f"Metric buffer reset for machine {machine_id}")
