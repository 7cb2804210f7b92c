"""Error taxonomy for the OEE engine.

Errors fall into four groups:

- ignorable ingestion errors (bad payload, unknown machine, no active order):
  logged and the message is dropped
- recoverable reference/subscription errors: retried with backoff, then the
  unit of work is skipped
- computation errors: raised to whoever triggered the recomputation
- process-fatal errors: the reference data connection could not be set up
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(str, Enum):
    """Error categories used for logging and serialization."""

    INGESTION = "ingestion"
    REFERENCE = "reference"
    SUBSCRIPTION = "subscription"
    COMPUTATION = "computation"
    ORDER_STATE = "order_state"
    UNAVAILABLE = "unavailable"
    PERSISTENCE = "persistence"


class OEEEngineError(Exception):
    """Base class for all engine errors."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.error_type.value,
            "message": self.message,
            "details": self.details,
        }


class PayloadDecodeError(OEEEngineError):
    """Raised when a topic or payload cannot be decoded."""

    def __init__(self, message: str, topic: Optional[str] = None) -> None:
        super().__init__(message, ErrorType.INGESTION, {"topic": topic})
        self.topic = topic


class UnknownMachineError(OEEEngineError):
    """Raised when a topic names a machine the reference data does not know."""

    def __init__(self, machine_name: str) -> None:
        super().__init__(
            f"Unknown machine: {machine_name}",
            ErrorType.INGESTION,
            {"machine_name": machine_name},
        )
        self.machine_name = machine_name


class NoActiveOrderError(OEEEngineError):
    """Raised when a machine has no released or running production order."""

    def __init__(self, machine_id: str) -> None:
        super().__init__(
            f"No active production order for machine {machine_id}",
            ErrorType.INGESTION,
            {"machine_id": machine_id},
        )
        self.machine_id = machine_id


class ReferenceDataError(OEEEngineError):
    """Raised when reference data cannot be fetched or written."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, ErrorType.REFERENCE, details)


class SubscriptionError(OEEEngineError):
    """Raised when a topic subscription keeps failing."""

    def __init__(self, topic: str, attempts: int) -> None:
        super().__init__(
            f"Failed to subscribe to {topic} after {attempts} attempts",
            ErrorType.SUBSCRIPTION,
            {"topic": topic, "attempts": attempts},
        )
        self.topic = topic


class ComputationError(OEEEngineError):
    """Raised when an OEE computation cannot run on the given inputs."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, ErrorType.COMPUTATION, details)


class OrderStateError(OEEEngineError):
    """Raised when a terminal production order would be mutated."""

    def __init__(self, order_id: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Production order {order_id} is finished and cannot change",
            ErrorType.ORDER_STATE,
            {"order_id": order_id},
        )
        self.order_id = order_id


class MetricsUnavailableError(OEEEngineError):
    """Raised when metrics are requested before any computation has run."""

    def __init__(self, machine_id: str) -> None:
        super().__init__(
            f"No metrics available for machine {machine_id}",
            ErrorType.UNAVAILABLE,
            {"machine_id": machine_id},
        )
        self.machine_id = machine_id


class PersistenceError(OEEEngineError):
    """Raised when final metrics could not be written to the historian."""

    def __init__(self, order_id: str, reason: str) -> None:
        super().__init__(
            f"Failed to persist metrics for order {order_id}: {reason}",
            ErrorType.PERSISTENCE,
            {"order_id": order_id},
        )
        self.order_id = order_id
