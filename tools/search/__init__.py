"""
Search providers, routing policy and the cache-first orchestrator.

The orchestrator is imported from ``tools.search.orchestrator`` directly so
the cache layer can depend on the error and policy modules here without an
import cycle.
"""

from .errors import *  # noqa: F401,F403
from .models import *  # noqa: F401,F403
from .policy import *  # noqa: F401,F403
