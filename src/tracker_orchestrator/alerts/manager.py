"""
Rule-based alert evaluation.

Each enabled rule is evaluated against every vehicle or position update it
applies to. A condition must hold for the rule's duration before the alert
fires, a fired (vehicle, rule) pair stays quiet for the rule's throttle
window, and the alert resolves as soon as the condition stops holding.
"""

import asyncio
import inspect
import math
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from ..events import OrchestratorEvents, Subscription
from ..exceptions import ValidationError
from ..polling.request_manager import Clock
from .models import (
    DEFAULT_RULES,
    ActiveAlert,
    AlertAction,
    AlertCondition,
    AlertRule,
    ConditionState,
)

logger = structlog.get_logger(__name__)

ActionHandler = Callable[[ActiveAlert, dict[str, Any]], Awaitable[None] | None]

EARTH_RADIUS_METERS = 6_371_000.0
PANIC_RULE_ID = "panic_button"


def get_field_value(data: Any, path: str) -> Any:
    """Resolve a dotted path, returning None when any hop is missing."""
    value = data
    for part in path.split("."):
        if isinstance(value, dict):
            value = value.get(part)
        else:
            return None
    return value


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(a))


def _coordinates(value: Any, record: Any) -> tuple[float, float] | None:
    if isinstance(value, dict):
        lat = value.get("latitude", value.get("lat", value.get("callat")))
        lon = value.get("longitude", value.get("lon", value.get("callon")))
    elif isinstance(value, (list, tuple)) and len(value) == 2:
        lat, lon = value
    elif isinstance(record, dict):
        lat = record.get("callat", record.get("latitude"))
        lon = record.get("callon", record.get("longitude"))
    else:
        return None
    try:
        return float(lat), float(lon)
    except (TypeError, ValueError):
        return None


def evaluate_condition(condition: AlertCondition, data: Any) -> bool:
    """Check one condition against a record. Missing fields never match."""
    value = get_field_value(data, condition.field)
    operator = condition.operator
    target = condition.value

    if operator in ("within", "outside"):
        point = _coordinates(value, data)
        if point is None or not isinstance(target, dict):
            return False
        try:
            center_lat = float(target["latitude"])
            center_lon = float(target["longitude"])
            radius = float(target["radius"])
        except (KeyError, TypeError, ValueError):
            return False
        inside = haversine_meters(point[0], point[1], center_lat, center_lon) <= radius
        return inside if operator == "within" else not inside

    if value is None:
        return False

    try:
        if operator == ">":
            return value > target
        if operator == "<":
            return value < target
        if operator == ">=":
            return value >= target
        if operator == "<=":
            return value <= target
        if operator == "=":
            return value == target
        if operator == "!=":
            return value != target
        if operator == "contains":
            return str(target) in str(value)
    except TypeError:
        return False
    return False


def _vehicle_id(data: dict[str, Any]) -> str | None:
    vehicle_id = data.get("deviceid") or get_field_value(data, "device.deviceid")
    return str(vehicle_id) if vehicle_id else None


def _vehicle_name(data: dict[str, Any], vehicle_id: str) -> str:
    return (
        get_field_value(data, "device.devicename")
        or data.get("devicename")
        or vehicle_id
    )


class AlertsManager:
    """
    Evaluates alert rules over the vehicle and position stream.

    Args:
        events: Channels to publish alert events on (optional)
        clock: Time source in epoch seconds
        load_default_rules: Install the built-in rule set
    """

    def __init__(
        self,
        events: OrchestratorEvents | None = None,
        clock: Clock = time.time,
        load_default_rules: bool = True,
        max_history_size: int = 1000,
    ):
        self.events = events
        self._clock = clock
        self.max_history_size = max_history_size

        self._rules: dict[str, AlertRule] = {}
        self._active_alerts: dict[str, ActiveAlert] = {}
        self._history: deque[ActiveAlert] = deque(maxlen=max_history_size)
        self._condition_states: dict[tuple[str, str], ConditionState] = {}
        self._last_alert_times: dict[tuple[str, str], float] = {}
        self._subscriptions: list[Subscription] = []
        self._pending: set[asyncio.Task] = set()
        self._action_handlers: dict[str, ActionHandler] = {
            "notification": self._send_notification,
            "log": self._log_alert,
            "email": self._send_email_alert,
            "webhook": self._send_webhook_alert,
        }

        if load_default_rules:
            for rule in DEFAULT_RULES:
                self.add_rule(rule.model_copy(deep=True))

    def attach(self, events: OrchestratorEvents) -> None:
        """Subscribe to position, vehicle and panic-button channels."""
        self.events = events
        self._subscriptions.extend(
            [
                events.positions.subscribe(self.process_positions),
                events.vehicles.subscribe(
                    lambda payload: self.process_vehicles(payload.get("devices", []))
                ),
                events.panic.subscribe(self.handle_panic_button),
            ]
        )

    def detach(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

    def register_action_handler(self, action_type: str, handler: ActionHandler) -> None:
        self._action_handlers[action_type] = handler

    # Rule management

    def add_rule(self, rule: AlertRule | dict[str, Any]) -> str:
        """Add or replace a rule and return its id."""
        if isinstance(rule, dict):
            try:
                rule = AlertRule.model_validate(rule)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid alert rule: {e}") from e

        if not rule.id:
            rule.id = f"rule_{int(self._clock() * 1000)}_{uuid.uuid4().hex[:9]}"
        if rule.created_at is None:
            rule.created_at = self._clock()

        self._rules[rule.id] = rule
        logger.debug("Alert rule added", rule_id=rule.id, type=rule.type, name=rule.name)
        return rule.id

    def remove_rule(self, rule_id: str) -> bool:
        removed = self._rules.pop(rule_id, None) is not None
        self._clear_rule_state(rule_id)
        if removed:
            logger.info("Alert rule removed", rule_id=rule_id)
        return removed

    def update_rule(self, rule_id: str, **updates: Any) -> bool:
        """Merge updates into a rule. Returns False for unknown rules."""
        rule = self._rules.get(rule_id)
        if rule is None:
            return False
        updates.pop("id", None)
        try:
            updated = AlertRule.model_validate({**rule.model_dump(), **updates})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid alert rule update: {e}") from e
        self._rules[rule_id] = updated
        logger.info("Alert rule updated", rule_id=rule_id)
        return True

    def get_rule(self, rule_id: str) -> AlertRule | None:
        return self._rules.get(rule_id)

    def get_rules(self) -> list[AlertRule]:
        return list(self._rules.values())

    def _clear_rule_state(self, rule_id: str) -> None:
        for key in [k for k in self._condition_states if k[1] == rule_id]:
            del self._condition_states[key]
        for key in [k for k in self._last_alert_times if k[1] == rule_id]:
            del self._last_alert_times[key]

    # Evaluation

    def process_vehicles(self, vehicles: Iterable[dict[str, Any]]) -> None:
        for vehicle in vehicles:
            self.evaluate(vehicle)

    def process_positions(self, positions: Iterable[dict[str, Any]]) -> None:
        for position in positions:
            self.evaluate(position)

    def evaluate(self, data: dict[str, Any]) -> None:
        """Evaluate every applicable enabled rule against one record."""
        if not isinstance(data, dict):
            return
        vehicle_id = _vehicle_id(data)
        if vehicle_id is None:
            return

        for rule in list(self._rules.values()):
            if rule.enabled and rule.applies_to(vehicle_id):
                self._evaluate_rule(rule, vehicle_id, data)

    def _evaluate_rule(
        self, rule: AlertRule, vehicle_id: str, data: dict[str, Any]
    ) -> None:
        key = (vehicle_id, rule.id)
        now = self._clock()

        if evaluate_condition(rule.condition, data):
            state = self._condition_states.get(key)
            if state is None:
                state = ConditionState(start_time=now)
                self._condition_states[key] = state

            if not state.persistent and now - state.start_time >= rule.condition.duration:
                state.persistent = True
                self._trigger_alert(rule, vehicle_id, data)
        elif self._condition_states.pop(key, None) is not None:
            self._resolve_alerts(vehicle_id, rule.id)

    def _trigger_alert(
        self, rule: AlertRule, vehicle_id: str, data: dict[str, Any]
    ) -> ActiveAlert | None:
        key = (vehicle_id, rule.id)
        now = self._clock()
        last = self._last_alert_times.get(key)
        if last is not None and now - last < rule.throttle:
            logger.debug("Alert throttled", rule_id=rule.id, vehicle_id=vehicle_id)
            return None

        alert = ActiveAlert(
            id=self._new_alert_id(now),
            rule_id=rule.id,
            vehicle_id=vehicle_id,
            vehicle_name=_vehicle_name(data, vehicle_id),
            type=rule.type,
            severity=rule.severity,
            message=self._generate_message(rule, data, vehicle_id),
            timestamp=now,
            data=dict(data),
        )
        self._record(alert)
        self._last_alert_times[key] = now

        self._execute_actions(rule.actions, alert)
        if self.events:
            self.events.alerts_triggered.publish(alert)

        logger.warning(
            "Alert triggered",
            alert_id=alert.id,
            rule_id=rule.id,
            vehicle_id=vehicle_id,
            severity=rule.severity,
            message=alert.message,
        )
        return alert

    def _record(self, alert: ActiveAlert) -> None:
        self._active_alerts[alert.id] = alert
        self._history.appendleft(alert)

    def _new_alert_id(self, now: float) -> str:
        return f"alert_{int(now * 1000)}_{uuid.uuid4().hex[:9]}"

    def _resolve_alerts(self, vehicle_id: str, rule_id: str) -> None:
        now = self._clock()
        resolved = [
            alert
            for alert in self._active_alerts.values()
            if alert.vehicle_id == vehicle_id and alert.rule_id == rule_id
        ]
        for alert in resolved:
            alert.resolved_at = now
            del self._active_alerts[alert.id]
            if self.events:
                self.events.alerts_resolved.publish(alert)
            logger.info(
                "Alert resolved",
                alert_id=alert.id,
                rule_id=rule_id,
                vehicle_id=vehicle_id,
            )

    @staticmethod
    def _generate_message(rule: AlertRule, data: dict[str, Any], vehicle_id: str) -> str:
        name = _vehicle_name(data, vehicle_id)

        def number(field_name: str) -> float:
            try:
                return float(data.get(field_name) or 0)
            except (TypeError, ValueError):
                return 0.0

        if rule.type == "speed":
            return f"{name} is exceeding speed limit: {round(number('speed'))} km/h"
        if rule.type == "fuel":
            return f"{name} has low fuel level: {number('fuelLevel'):.1f}%"
        if rule.type == "temperature":
            return f"{name} engine overheating: {number('engineTemperature'):.1f}°C"
        if rule.type == "battery":
            return f"{name} has low battery voltage: {number('batteryVoltage'):.1f}V"
        if rule.type == "geofence":
            return f"{name} geofence alert: {rule.name}"
        if rule.type == "panic":
            return f"{name} panic button activated!"
        return f"{name} alert: {rule.name}"

    # Actions

    def _execute_actions(self, actions: list[AlertAction], alert: ActiveAlert) -> None:
        for action in actions:
            handler = self._action_handlers.get(action.type)
            if handler is None:
                logger.warning("No handler for alert action", action_type=action.type)
                continue
            try:
                result = handler(alert, action.config)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(
                        lambda t, a=action.type, i=alert.id: self._on_action_done(t, a, i)
                    )
            except Exception as e:
                logger.error(
                    "Alert action failed",
                    alert_id=alert.id,
                    action_type=action.type,
                    error=str(e),
                )

    def _on_action_done(self, task: asyncio.Task, action_type: str, alert_id: str) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Alert action failed",
                alert_id=alert_id,
                action_type=action_type,
                error=str(error),
            )

    async def drain_actions(self) -> None:
        """Wait for scheduled asynchronous actions to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _send_notification(self, alert: ActiveAlert, config: dict[str, Any]) -> None:
        if not self.events:
            return
        self.events.notifications.publish(
            {
                "title": f"{alert.type.upper()} Alert",
                "message": alert.message,
                "severity": alert.severity,
                "vehicle_id": alert.vehicle_id,
                "alert_id": alert.id,
                "priority": config.get(
                    "priority", "critical" if alert.severity == "critical" else "high"
                ),
            }
        )

    def _log_alert(self, alert: ActiveAlert, config: dict[str, Any]) -> None:
        level = config.get("level", "info")
        log = {"error": logger.error, "warning": logger.warning}.get(level, logger.info)
        log(
            "Vehicle alert",
            alert_id=alert.id,
            type=alert.type,
            severity=alert.severity,
            vehicle=alert.vehicle_name,
            message=alert.message,
        )

    def _send_email_alert(self, alert: ActiveAlert, config: dict[str, Any]) -> None:
        logger.info(
            "Email alert would be sent",
            alert_id=alert.id,
            template=config.get("template"),
        )

    def _send_webhook_alert(self, alert: ActiveAlert, config: dict[str, Any]) -> None:
        logger.info(
            "Webhook alert would be sent", alert_id=alert.id, url=config.get("url")
        )

    # Panic button

    def handle_panic_button(self, data: dict[str, Any]) -> ActiveAlert | None:
        """Raise an immediate critical alert, bypassing duration and throttle."""
        vehicle_id = data.get("vehicle_id") or data.get("vehicleId") or data.get("deviceid")
        if not vehicle_id:
            return None
        vehicle_id = str(vehicle_id)
        vehicle_name = data.get("vehicle_name") or data.get("vehicleName") or vehicle_id
        now = self._clock()

        alert = ActiveAlert(
            id=self._new_alert_id(now),
            rule_id=PANIC_RULE_ID,
            vehicle_id=vehicle_id,
            vehicle_name=vehicle_name,
            type="panic",
            severity="critical",
            message=f"{vehicle_name} panic button activated!",
            timestamp=now,
            data=dict(data),
        )
        self._record(alert)
        self._execute_actions(
            [AlertAction(type="notification", config={"priority": "critical"})], alert
        )
        if self.events:
            self.events.alerts_triggered.publish(alert)
        logger.critical("Panic alert", alert_id=alert.id, vehicle_id=vehicle_id)
        return alert

    # Read API

    def get_active_alerts(self) -> list[ActiveAlert]:
        return sorted(
            self._active_alerts.values(), key=lambda a: a.timestamp, reverse=True
        )

    def get_alert_history(self, limit: int = 50) -> list[ActiveAlert]:
        return list(self._history)[:limit]

    def acknowledge_alert(self, alert_id: str) -> bool:
        alert = self._active_alerts.get(alert_id)
        if alert is None:
            alert = next((a for a in self._history if a.id == alert_id), None)
        if alert is None:
            return False
        alert.acknowledged = True
        logger.info("Alert acknowledged", alert_id=alert_id)
        return True

    def get_alert_stats(self) -> dict[str, Any]:
        active = self.get_active_alerts()
        return {
            "total_rules": len(self._rules),
            "enabled_rules": sum(1 for r in self._rules.values() if r.enabled),
            "active_alerts": len(active),
            "critical_alerts": sum(1 for a in active if a.severity == "critical"),
            "warning_alerts": sum(1 for a in active if a.severity == "warning"),
            "acknowledged_alerts": sum(1 for a in active if a.acknowledged),
            "history_size": len(self._history),
        }

    def destroy(self) -> None:
        """Drop all rules, alerts and state and detach from event channels."""
        self.detach()
        self._rules.clear()
        self._active_alerts.clear()
        self._history.clear()
        self._condition_states.clear()
        self._last_alert_times.clear()
        logger.info("Alerts manager destroyed")
