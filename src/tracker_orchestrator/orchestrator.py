"""
Client-side orchestrator.

One Orchestrator value owns the request queue, the batching engine, the
session facade, the alert evaluator and the coordinator client for a
process. Callers hold a handle to it instead of reaching for module-level
state, so two orchestrators in one process never share queues or limits.
"""

import asyncio
import time
from typing import TYPE_CHECKING, Any

import structlog

from .alerts.manager import AlertsManager
from .config import Settings, get_settings
from .coordinator.client import CoordinatorClient
from .events import OrchestratorEvents
from .exceptions import ConfigurationError
from .polling.request_manager import Clock, RequestManager, Sleep
from .polling.sessions import PollingSessionFacade
from .polling.smart_polling import SmartPolling

if TYPE_CHECKING:
    from .coordinator.coordinator import Coordinator

logger = structlog.get_logger(__name__)


class Orchestrator:
    """
    Wires the client-side components together.

    Args:
        settings: Application settings (defaults to the process settings)
        coordinator: In-process coordinator; when omitted the client talks
            to ``settings.coordinator_url`` over HTTP
        coordinator_client: Preconfigured client, overrides ``coordinator``
        load_default_alert_rules: Install the built-in alert rules
        clock: Monotonic time source for scheduling
        wall_clock: Epoch time source for activity and alert timestamps
        sleep: Awaitable sleep shared by every component
    """

    def __init__(
        self,
        settings: Settings | None = None,
        coordinator: "Coordinator | None" = None,
        coordinator_client: CoordinatorClient | None = None,
        load_default_alert_rules: bool = True,
        clock: Clock = time.monotonic,
        wall_clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        if (
            coordinator_client is None
            and coordinator is None
            and not self.settings.coordinator_url
        ):
            raise ConfigurationError(
                "coordinator_url is required without an in-process coordinator"
            )
        self.events = OrchestratorEvents()

        self.request_manager = RequestManager(
            self.settings.request_manager_config, clock=clock, sleep=sleep
        )
        self.smart_polling = SmartPolling(
            self.request_manager,
            self.settings.smart_polling_config,
            clock=wall_clock,
            sleep=sleep,
        )
        self.coordinator_client = coordinator_client or CoordinatorClient(
            base_url=self.settings.coordinator_url,
            coordinator=coordinator,
            auto_retry_wait=self.settings.coordinator_auto_retry_wait,
            timeout=self.settings.vendor_timeout,
            clock=clock,
            sleep=sleep,
        )
        self.sessions = PollingSessionFacade(
            self.request_manager,
            self.smart_polling,
            self.coordinator_client,
            config=self.settings.session_config,
            events=self.events,
            clock=clock,
            wall_clock=wall_clock,
            sleep=sleep,
        )
        self.alerts = AlertsManager(
            clock=wall_clock, load_default_rules=load_default_alert_rules
        )
        self.alerts.attach(self.events)
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start background loops. Safe to call twice."""
        if self._started:
            return
        await self.request_manager.start()
        await self.sessions.start()
        self._started = True
        logger.info(
            "Orchestrator started",
            coordinator=self.coordinator_client.get_status()["mode"],
        )

    async def stop(self) -> None:
        """Stop polling and background loops and release the HTTP client."""
        await self.sessions.stop()
        await self.request_manager.stop()
        for channel in self.events.channels():
            await channel.drain()
        await self.alerts.drain_actions()
        await self.coordinator_client.close()
        self._started = False
        logger.info("Orchestrator stopped")

    def emergency_stop(self, reason: str = "Emergency stop activated") -> None:
        self.sessions.emergency_stop(reason)

    def resume(self) -> None:
        self.sessions.resume()

    def get_status(self) -> dict[str, Any]:
        """Combined status snapshot. Never raises."""
        return {
            "running": self._started,
            "metrics": self.sessions.get_unified_metrics(),
            "sessions": self.sessions.get_status(),
            "polling": self.smart_polling.get_optimal_polling_settings(),
            "alerts": self.alerts.get_alert_stats(),
        }

    def destroy(self) -> None:
        """Drop alert state and all event subscribers."""
        self.alerts.destroy()
        self.events.clear()
