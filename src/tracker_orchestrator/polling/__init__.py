"""
Client-side polling for the Tracker Request Orchestrator.

This package contains the request manager that protects every outbound call,
the adaptive batching engine and the session facade that multiplexes
dashboard sessions into coordinated polling.
"""

from .metrics import PollingMetricsCollector
from .request_manager import Priority, RequestManager
from .sessions import PollingSession, PollingSessionFacade, PollingUpdate
from .smart_polling import BatchResult, DeviceBatch, SmartPolling

__all__ = [
    "BatchResult",
    "DeviceBatch",
    "PollingMetricsCollector",
    "PollingSession",
    "PollingSessionFacade",
    "PollingUpdate",
    "Priority",
    "RequestManager",
    "SmartPolling",
]
