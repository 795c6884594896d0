from .config import Settings as Settings
from .exceptions import BatchkeeperError as BatchkeeperError
from .exceptions import BatchProcessingError as BatchProcessingError
from .exceptions import CircuitBreakerOpenError as CircuitBreakerOpenError
from .scheduler import BatchScheduler as BatchScheduler
from .scheduler import Cadence as Cadence
from .scheduler import build_scheduler as build_scheduler

__all__ = [
    "Settings",
    "BatchScheduler",
    "Cadence",
    "build_scheduler",
    "BatchkeeperError",
    "BatchProcessingError",
    "CircuitBreakerOpenError",
]
