"""
Request manager for outbound vendor calls.

This module owns the per-process priority queue, the sliding-window rate
limiter, the concurrency gate and the circuit breaker that every outbound
call from one runtime passes through.
"""

import asyncio
import random
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from ..config import RateLimitConfig
from ..exceptions import (
    CircuitOpenError,
    EmergencyStopError,
    TransientNetworkError,
    ValidationError,
    VendorRateLimitError,
    is_retryable,
)

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


class Priority(str, Enum):
    """Scheduling tier for queued work."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def parse(cls, value: "Priority | str") -> "Priority":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Invalid priority: {value}", context={"priority": value}
            ) from None


PRIORITY_ORDER = (Priority.HIGH, Priority.MEDIUM, Priority.LOW)


@dataclass
class QueuedRequest:
    """A unit of work waiting in the request queue."""

    id: str
    priority: Priority
    work: Callable[[], Awaitable[Any]]
    retries: int
    timeout: float | None
    future: "asyncio.Future[Any]"
    enqueue_time: float
    retry_count: int = 0
    front_retries: int = 0


@dataclass
class RateLimiterState:
    """Mutable limiter and breaker state, one per manager."""

    request_timestamps: deque = field(default_factory=deque)
    consecutive_failures: int = 0
    current_backoff_delay: float = 1.0
    circuit_open: bool = False
    circuit_reset_time: float = 0.0
    last_request_time: float | None = None


class ConcurrencyGate:
    """Counting gate whose limit can be changed at runtime."""

    def __init__(self, limit: int):
        self._limit = limit
        self._active = 0
        self._condition = asyncio.Condition()
        self._pending: set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return self._active

    @property
    def limit(self) -> int:
        return self._limit

    async def acquire(self) -> None:
        async with self._condition:
            await self._condition.wait_for(lambda: self._active < self._limit)
            self._active += 1

    def release(self) -> None:
        self._active = max(0, self._active - 1)
        self._notify()

    def resize(self, limit: int) -> None:
        self._limit = limit
        self._notify()

    def _notify(self) -> None:
        async def notify() -> None:
            async with self._condition:
                self._condition.notify_all()

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        task = asyncio.ensure_future(notify())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


def _new_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class RequestManager:
    """
    Priority queue, rate limiter and circuit breaker for vendor calls.

    Work is dequeued strictly by priority tier (FIFO within a tier) by a
    single dispatcher; up to ``max_concurrent_requests`` calls may be in
    flight at once. Failed work is retried at the front of its tier up to
    ``front_retry_limit`` times, then at the back.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ):
        """
        Initialize the request manager.

        Args:
            config: Limiter configuration
            clock: Monotonic time source in seconds
            sleep: Awaitable sleep used for every delay
            jitter: Source of uniform values in [0, 1) for dispatch jitter
        """
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter

        self.state = RateLimiterState(
            current_backoff_delay=self.config.base_backoff_delay
        )
        self._queues: dict[Priority, deque[QueuedRequest]] = {
            priority: deque() for priority in PRIORITY_ORDER
        }
        self._gate = ConcurrencyGate(self.config.max_concurrent_requests)
        self._processing = False
        self._process_task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()
        self._health_task: asyncio.Task | None = None
        self._kicker_task: asyncio.Task | None = None

    @property
    def queue_length(self) -> int:
        return sum(len(queue) for queue in self._queues.values())

    @property
    def active_requests(self) -> int:
        return self._gate.active

    @property
    def is_processing(self) -> bool:
        return self._processing

    def enqueue(
        self,
        work: Callable[[], Awaitable[Any]],
        priority: Priority | str = Priority.MEDIUM,
        retries: int | None = None,
        timeout: float | None = None,
    ) -> "asyncio.Future[Any]":
        """
        Add work to the queue and return a future for its result.

        Must be called from within the running event loop.
        """
        tier = Priority.parse(priority)
        if retries is not None and retries < 0:
            raise ValidationError("retries must be >= 0", context={"retries": retries})
        if timeout is not None and timeout <= 0:
            raise ValidationError("timeout must be > 0", context={"timeout": timeout})

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        item = QueuedRequest(
            id=_new_request_id(),
            priority=tier,
            work=work,
            retries=self.config.default_retries if retries is None else retries,
            timeout=timeout,
            future=future,
            enqueue_time=self._clock(),
        )
        self._queues[tier].append(item)
        logger.debug(
            "Request queued",
            request_id=item.id,
            priority=tier.value,
            queue_length=self.queue_length,
        )
        self._kick()
        return future

    async def queue_request(
        self,
        work: Callable[[], Awaitable[Any]],
        priority: Priority | str = Priority.MEDIUM,
        retries: int | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Queue work and wait for its result or its final error."""
        return await self.enqueue(work, priority=priority, retries=retries, timeout=timeout)

    def _kick(self) -> None:
        if self._processing or self.queue_length == 0:
            return
        self._processing = True
        self._process_task = asyncio.create_task(self._process_queue())

    def _dequeue(self) -> QueuedRequest | None:
        for priority in PRIORITY_ORDER:
            queue = self._queues[priority]
            if queue:
                return queue.popleft()
        return None

    async def _process_queue(self) -> None:
        try:
            while True:
                item = self._dequeue()
                if item is None:
                    break
                await self._dispatch(item)
        finally:
            self._processing = False

    async def _dispatch(self, item: QueuedRequest) -> None:
        if item.future.done():
            return

        try:
            self._check_circuit()
            await self._apply_rate_limit()
        except CircuitOpenError as e:
            self._reject(item, e)
            return

        try:
            self._check_circuit()
        except CircuitOpenError as e:
            self._gate.release()
            self._reject(item, e)
            return

        now = self._clock()
        self.state.last_request_time = now
        self.state.request_timestamps.append(now)

        task = asyncio.create_task(self._invoke(item))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

        delay = self._jitter() * self.config.max_jitter
        if delay > 0:
            await self._sleep(delay)

    def _reject(self, item: QueuedRequest, error: Exception) -> None:
        if not item.future.done():
            item.future.set_exception(error)

    def _check_circuit(self) -> None:
        if not self.state.circuit_open:
            return
        now = self._clock()
        if now >= self.state.circuit_reset_time:
            self.state.circuit_open = False
            logger.info(
                "Circuit breaker reset time elapsed, allowing requests",
                consecutive_failures=self.state.consecutive_failures,
            )
            return
        raise CircuitOpenError(
            "Circuit breaker is open",
            retry_after=self.state.circuit_reset_time - now,
        )

    async def _apply_rate_limit(self) -> None:
        config = self.config

        if self.state.last_request_time is not None:
            wait = (
                self.state.last_request_time
                + config.min_delay_between_requests
                - self._clock()
            )
            if wait > 0:
                await self._sleep(wait)

        while True:
            now = self._clock()
            self._prune_timestamps(now)
            timestamps = self.state.request_timestamps
            if len(timestamps) < config.max_requests_per_minute:
                break
            wait = max(timestamps[0] + 60.0 - now, 0.001)
            logger.debug("Per-minute request cap reached, waiting", wait=wait)
            await self._sleep(wait)

        await self._gate.acquire()

    def _prune_timestamps(self, now: float) -> None:
        timestamps = self.state.request_timestamps
        while timestamps and timestamps[0] <= now - 60.0:
            timestamps.popleft()

    async def _invoke(self, item: QueuedRequest) -> None:
        error: Exception
        try:
            if item.timeout is not None:
                result = await asyncio.wait_for(item.work(), item.timeout)
            else:
                result = await item.work()
        except TimeoutError:
            error = TransientNetworkError(
                f"Request timed out after {item.timeout}s",
                context={"request_id": item.id},
            )
        except asyncio.CancelledError:
            self._gate.release()
            item.future.cancel()
            raise
        except Exception as e:
            error = e
        else:
            self._gate.release()
            self._record_success()
            if not item.future.done():
                item.future.set_result(result)
            return

        self._gate.release()
        self._record_failure(error)

        if is_retryable(error) and item.retry_count < item.retries:
            item.retry_count += 1
            logger.warning(
                "Request failed, retrying",
                request_id=item.id,
                attempt=item.retry_count,
                max_retries=item.retries,
                backoff=self.state.current_backoff_delay,
                error=str(error),
            )
            await self._sleep(self.state.current_backoff_delay)
            self._requeue(item)
            return

        logger.error(
            "Request failed",
            request_id=item.id,
            priority=item.priority.value,
            attempts=item.retry_count + 1,
            error=str(error),
        )
        self._reject(item, error)

    def _requeue(self, item: QueuedRequest) -> None:
        if item.future.done():
            return
        queue = self._queues[item.priority]
        if item.front_retries < self.config.front_retry_limit:
            item.front_retries += 1
            queue.appendleft(item)
        else:
            queue.append(item)
        self._kick()

    def _record_success(self) -> None:
        state = self.state
        if state.consecutive_failures:
            logger.info(
                "Request succeeded after failures",
                previous_failures=state.consecutive_failures,
            )
        state.consecutive_failures = 0
        state.current_backoff_delay = self.config.base_backoff_delay

    def _record_failure(self, error: Exception) -> None:
        state = self.state
        config = self.config
        now = self._clock()

        state.consecutive_failures += 1
        state.current_backoff_delay = min(
            state.current_backoff_delay * config.backoff_multiplier,
            config.max_backoff_delay,
        )

        if isinstance(error, (VendorRateLimitError, EmergencyStopError)):
            retry_after = error.retry_after or config.pause_duration
            self._open_circuit(now + retry_after, reason=error.code)
        elif state.consecutive_failures >= config.failure_threshold:
            self._open_circuit(
                now + 2 * state.current_backoff_delay, reason="failure_threshold"
            )

    def _open_circuit(self, reset_time: float, reason: str) -> None:
        state = self.state
        # Never shorten an existing lockout
        if state.circuit_open and state.circuit_reset_time >= reset_time:
            return
        state.circuit_open = True
        state.circuit_reset_time = reset_time
        logger.warning(
            "Circuit breaker opened",
            reason=reason,
            consecutive_failures=state.consecutive_failures,
            reset_in=reset_time - self._clock(),
        )

    def get_health_status(self) -> dict[str, Any]:
        """Snapshot of queue, limiter and breaker state. Never raises."""
        try:
            now = self._clock()
            state = self.state
            circuit_open = state.circuit_open and now < state.circuit_reset_time
            recent = sum(1 for ts in state.request_timestamps if ts > now - 60.0)
            return {
                "queue_length": self.queue_length,
                "active_requests": self.active_requests,
                "consecutive_failures": state.consecutive_failures,
                "circuit_open": circuit_open,
                "circuit_reset_in": (
                    max(0.0, state.circuit_reset_time - now) if circuit_open else 0.0
                ),
                "requests_in_last_minute": recent,
                "current_backoff_delay": state.current_backoff_delay,
                "is_healthy": not circuit_open and state.consecutive_failures < 3,
            }
        except Exception as e:
            logger.error("Failed to build health status", error=str(e))
            return {
                "queue_length": 0,
                "active_requests": 0,
                "consecutive_failures": 0,
                "circuit_open": True,
                "circuit_reset_in": 0.0,
                "requests_in_last_minute": 0,
                "current_backoff_delay": self.config.max_backoff_delay,
                "is_healthy": False,
                "error": str(e),
            }

    def pause_all_requests(self, duration: float | None = None) -> None:
        """
        Force the circuit open for ``duration`` (default pause window).

        A longer lockout already in place is kept.
        """
        duration = self.config.pause_duration if duration is None else duration
        self._open_circuit(self._clock() + duration, reason="paused")
        logger.warning("All requests paused", duration=duration)

    def resume_requests(self) -> None:
        """Clear breaker and failure state and restart dispatch."""
        self.state.circuit_open = False
        self.state.circuit_reset_time = 0.0
        self.state.consecutive_failures = 0
        self.state.current_backoff_delay = self.config.base_backoff_delay
        logger.info("Requests resumed")
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._kick()

    def adjust_rate_limit(self, **changes: Any) -> RateLimitConfig:
        """
        Merge new limiter parameters at runtime.

        Raises:
            ValidationError: If a key is unknown or a value is invalid
        """
        unknown = set(changes) - set(RateLimitConfig.model_fields)
        if unknown:
            raise ValidationError(
                f"Unknown rate limit parameters: {sorted(unknown)}",
                context={"unknown": sorted(unknown)},
            )
        try:
            new_config = RateLimitConfig.model_validate(
                {**self.config.model_dump(), **changes}
            )
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid rate limit parameters: {e}", context={"changes": changes}
            ) from e

        self.config = new_config
        self._gate.resize(new_config.max_concurrent_requests)
        self.state.current_backoff_delay = min(
            max(self.state.current_backoff_delay, new_config.base_backoff_delay),
            new_config.max_backoff_delay,
        )
        logger.info("Rate limit adjusted", **changes)
        return new_config

    async def start(self) -> None:
        """Start the periodic health logger and idle queue kicker."""
        logger.info("Starting request manager")
        self._health_task = asyncio.create_task(self._health_loop())
        self._kicker_task = asyncio.create_task(self._kicker_loop())

    async def stop(self) -> None:
        """Stop background tasks. In-flight calls resolve on their own."""
        logger.info("Stopping request manager")
        for task in (self._health_task, self._kicker_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._health_task = None
        self._kicker_task = None

    async def _health_loop(self) -> None:
        while True:
            try:
                await self._sleep(self.config.health_log_interval)
                status = self.get_health_status()
                if status["queue_length"] or status["consecutive_failures"]:
                    logger.info("Request manager health", **status)
                else:
                    logger.debug("Request manager health", **status)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Health logging failed", error=str(e))

    async def _kicker_loop(self) -> None:
        while True:
            try:
                await self._sleep(self.config.queue_kick_interval)
                if self.queue_length and not self._processing:
                    logger.debug("Kicking idle queue", queue_length=self.queue_length)
                    self._kick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Queue kicker failed", error=str(e))
