"""
Alert rule and alert record models.

Durations and throttles are in seconds.
"""

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

Operator = Literal[">", "<", ">=", "<=", "=", "!=", "contains", "within", "outside"]
Severity = Literal["info", "warning", "critical"]
RuleType = Literal[
    "speed",
    "geofence",
    "panic",
    "maintenance",
    "battery",
    "temperature",
    "fuel",
    "custom",
]
ActionType = Literal["notification", "email", "webhook", "log"]


class AlertCondition(BaseModel):
    """Field comparison that must hold for ``duration`` seconds."""

    field: str = Field(..., min_length=1, description="Dotted path into the record")
    operator: Operator
    value: Any
    duration: float = Field(default=0.0, ge=0)


class AlertAction(BaseModel):
    """Side effect executed when a rule fires."""

    type: ActionType
    config: dict[str, Any] = Field(default_factory=dict)


class AlertRule(BaseModel):
    """A condition evaluated continuously against vehicle updates."""

    id: str = ""
    type: RuleType = "custom"
    name: str = ""
    description: str = ""
    condition: AlertCondition
    severity: Severity = "warning"
    enabled: bool = True
    vehicles: list[str] = Field(
        default_factory=list, description="Vehicle scope, empty for all vehicles"
    )
    throttle: float = Field(default=300.0, ge=0)
    actions: list[AlertAction] = Field(default_factory=list)
    created_at: float | None = None

    def applies_to(self, vehicle_id: str) -> bool:
        return not self.vehicles or vehicle_id in self.vehicles


@dataclass
class ConditionState:
    """Tracking state for one (vehicle, rule) pair."""

    start_time: float
    persistent: bool = False


@dataclass
class ActiveAlert:
    """A fired alert."""

    id: str
    rule_id: str
    vehicle_id: str
    vehicle_name: str
    type: str
    severity: str
    message: str
    timestamp: float
    data: dict[str, Any] = field(default_factory=dict)
    acknowledged: bool = False
    resolved_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "vehicle_id": self.vehicle_id,
            "vehicle_name": self.vehicle_name,
            "type": self.type,
            "severity": self.severity,
            "message": self.message,
            "timestamp": self.timestamp,
            "acknowledged": self.acknowledged,
            "resolved_at": self.resolved_at,
        }


def _action(action_type: ActionType, **config: Any) -> AlertAction:
    return AlertAction(type=action_type, config=config)


DEFAULT_RULES: list[AlertRule] = [
    AlertRule(
        id="speed_violation",
        type="speed",
        name="Speed Violation",
        description="Vehicle exceeding speed limit",
        condition=AlertCondition(field="speed", operator=">", value=80, duration=10),
        severity="warning",
        throttle=300,
        actions=[
            _action("notification", priority="high"),
            _action("log", level="warning"),
        ],
    ),
    AlertRule(
        id="critical_speed_violation",
        type="speed",
        name="Critical Speed Violation",
        description="Vehicle severely exceeding speed limit",
        condition=AlertCondition(field="speed", operator=">", value=120, duration=5),
        severity="critical",
        throttle=180,
        actions=[
            _action("notification", priority="critical"),
            _action("email", template="speed_violation"),
            _action("log", level="error"),
        ],
    ),
    AlertRule(
        id="low_fuel",
        type="fuel",
        name="Low Fuel Level",
        description="Vehicle fuel level is critically low",
        condition=AlertCondition(
            field="fuelLevel", operator="<", value=15, duration=30
        ),
        severity="warning",
        throttle=3600,
        actions=[
            _action("notification", priority="medium"),
            _action("log", level="warning"),
        ],
    ),
    AlertRule(
        id="engine_overheating",
        type="temperature",
        name="Engine Overheating",
        description="Engine temperature is critically high",
        condition=AlertCondition(
            field="engineTemperature", operator=">", value=105, duration=15
        ),
        severity="critical",
        throttle=300,
        actions=[
            _action("notification", priority="critical"),
            _action("email", template="engine_overheating"),
            _action("log", level="error"),
        ],
    ),
    AlertRule(
        id="battery_low",
        type="battery",
        name="Low Battery Voltage",
        description="Vehicle battery voltage is critically low",
        condition=AlertCondition(
            field="batteryVoltage", operator="<", value=12.0, duration=60
        ),
        severity="warning",
        throttle=1800,
        actions=[
            _action("notification", priority="medium"),
            _action("log", level="warning"),
        ],
    ),
]
