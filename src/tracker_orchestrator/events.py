"""
Typed publish/subscribe channels.

Each channel carries one payload type. Subscribers receive a Subscription
handle that detaches them, so listeners are never leaked by closures that
outlive their owner.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Handler = Callable[[T], Awaitable[None] | None]


class Subscription:
    """Handle returned by EventChannel.subscribe."""

    def __init__(self, channel: "EventChannel[Any]", handler: Callable[..., Any]):
        self._channel = channel
        self._handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._channel._remove(self._handler)
            self.active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()


class EventChannel(Generic[T]):
    """A named fan-out channel for a single payload type."""

    def __init__(self, name: str):
        self.name = name
        self._handlers: list[Handler[T]] = []
        self._pending: set[asyncio.Task[Any]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def subscribe(self, handler: Handler[T]) -> Subscription:
        self._handlers.append(handler)
        return Subscription(self, handler)

    def _remove(self, handler: Callable[..., Any]) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def publish(self, payload: T) -> None:
        """
        Deliver a payload to every subscriber.

        Synchronous handlers run inline; coroutine handlers are scheduled on
        the running loop. A failing handler is logged and does not stop
        delivery to the others.
        """
        for handler in list(self._handlers):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_handler_done)
            except Exception as e:
                logger.error(
                    "Event handler failed", channel=self.name, error=str(e)
                )

    def _on_handler_done(self, task: "asyncio.Task[Any]") -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Async event handler failed", channel=self.name, error=str(error)
            )

    async def drain(self) -> None:
        """Wait for scheduled coroutine handlers to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def clear(self) -> None:
        self._handlers.clear()


class OrchestratorEvents:
    """The set of channels one orchestrator publishes on."""

    def __init__(self) -> None:
        self.positions: EventChannel[list[dict[str, Any]]] = EventChannel("positions")
        self.vehicles: EventChannel[dict[str, Any]] = EventChannel("vehicles")
        self.alerts_triggered: EventChannel[Any] = EventChannel("alerts_triggered")
        self.alerts_resolved: EventChannel[Any] = EventChannel("alerts_resolved")
        self.notifications: EventChannel[dict[str, Any]] = EventChannel(
            "notifications"
        )
        self.panic: EventChannel[dict[str, Any]] = EventChannel("panic")

    def channels(self) -> list[EventChannel[Any]]:
        return [
            self.positions,
            self.vehicles,
            self.alerts_triggered,
            self.alerts_resolved,
            self.notifications,
            self.panic,
        ]

    def clear(self) -> None:
        for channel in self.channels():
            channel.clear()
