"""OEE Engine - real-time Overall Equipment Effectiveness from UNS/MQTT telemetry."""

__version__ = "0.1.0"

from .config import Config
from .engine import OEEEngine
from .models import OEEMetrics, ProductionOrder

__all__ = ["OEEEngine", "Config", "OEEMetrics", "ProductionOrder", "__version__"]
