from .config import settings
from .concurrency import (
    ConcurrencyController,
    PeriodicWorker,
    SingleFlight,
)

__all__ = [
    "settings",
    # Concurrency
    "ConcurrencyController",
    "PeriodicWorker",
    "SingleFlight",
]
