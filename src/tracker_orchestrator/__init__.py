"""
Tracker Request Orchestrator

Request scheduling, adaptive polling and global rate-limit protection for a
rate-limited vehicle tracking API, with rule-based alerting on the resulting
data stream.
"""

__version__ = "0.1.0"

from .alerts import AlertsManager
from .config import Settings
from .coordinator import Coordinator, CoordinatorClient
from .exceptions import TrackerOrchestratorError
from .orchestrator import Orchestrator
from .polling import PollingSessionFacade, RequestManager, SmartPolling

__all__ = [
    "AlertsManager",
    "Coordinator",
    "CoordinatorClient",
    "Orchestrator",
    "PollingSessionFacade",
    "RequestManager",
    "Settings",
    "SmartPolling",
    "TrackerOrchestratorError",
]
