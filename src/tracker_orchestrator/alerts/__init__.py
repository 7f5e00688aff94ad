"""
Vehicle alerting.

Debounced, throttled rule evaluation over the orchestrator's data stream.
"""

from .manager import AlertsManager, evaluate_condition
from .models import ActiveAlert, AlertAction, AlertCondition, AlertRule

__all__ = [
    "ActiveAlert",
    "AlertAction",
    "AlertCondition",
    "AlertRule",
    "AlertsManager",
    "evaluate_condition",
]
