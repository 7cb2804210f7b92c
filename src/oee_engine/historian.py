"""Historical store for the final metrics of finished production orders."""

import json
import logging
import threading
from pathlib import Path
from typing import List, Optional, Union

from .errors import ComputationError
from .models import OEEMetrics

logger = logging.getLogger(__name__)


class JsonLinesHistorian:
    """Appends one JSON object per finished order to a .jsonl file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()

    def persist(self, metrics: OEEMetrics) -> None:
        """Write final metrics; OSError and TypeError propagate to the caller."""
        line = json.dumps(metrics.to_dict(), sort_keys=True)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        logger.info(f"Persisted final metrics for order {metrics.order_id} to {self.path}")

    def read_all(self) -> List[OEEMetrics]:
        if not self.path.exists():
            return []
        records = []
        with open(self.path, encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(OEEMetrics.from_dict(json.loads(line)))
                except (ValueError, TypeError, ComputationError) as e:
                    logger.warning(f"Skipping unreadable history line {line_number}: {e}")
        return records

    def find(self, order_id: str) -> Optional[OEEMetrics]:
        """Latest persisted metrics for an order."""
        for metrics in reversed(self.read_all()):
            if metrics.order_id == order_id:
                return metrics
        return None
