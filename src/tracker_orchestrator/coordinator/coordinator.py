"""
Global request coordinator.

Every orchestrator instance reaches the vendor through this class. It
enforces the persisted emergency stop, consults the global rate limiter,
serves cached responses, and runs one serial queue that keeps a hard
minimum spacing between vendor calls. A vendor 8902 response locks the
whole system out for the emergency cooldown and drops the pending queue.
"""

import asyncio
import heapq
import itertools
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from ..config import CoordinatorConfig
from ..exceptions import StoreError
from ..polling.request_manager import Clock, Sleep
from ..state.manager import ControlStore, EmergencyControl, InMemoryControlStore
from ..vendor.results import (
    RATE_LIMIT_STATUS,
    VendorFailure,
    VendorRateLimited,
    VendorResult,
)
from .cache import ResponseCache
from .models import CoordinatorRequest, CoordinatorResponse, RateLimitDecision
from .rate_limiter import RateLimiterBackend

logger = structlog.get_logger(__name__)

VendorCall = Callable[[str, dict[str, Any]], Awaitable[VendorResult]]

RATE_LIMIT_REASON = "vendor_rate_limit_8902"


@dataclass(order=True)
class _QueuedCall:
    rank: int
    seq: int
    request: CoordinatorRequest = field(compare=False)
    future: "asyncio.Future[CoordinatorResponse]" = field(compare=False)
    enqueued_at: float = field(compare=False, default=0.0)


class Coordinator:
    """
    Single gateway to the vendor API.

    Args:
        vendor_call: Coroutine performing one vendor action
        store: Control store holding the emergency flag and spacing slot
        rate_limiter: Global limiter consulted per request (optional)
        config: Coordinator configuration
        clock: Epoch-seconds time source shared with the store
        sleep: Awaitable sleep used for spacing
    """

    def __init__(
        self,
        vendor_call: VendorCall,
        store: ControlStore | None = None,
        rate_limiter: RateLimiterBackend | None = None,
        config: CoordinatorConfig | None = None,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config or CoordinatorConfig()
        self._vendor_call = vendor_call
        self.store = store or InMemoryControlStore()
        self.rate_limiter = rate_limiter
        self._clock = clock
        self._sleep = sleep
        self.cache = ResponseCache(default_ttl=self.config.cache_ttl, clock=clock)

        self._queue: list[_QueuedCall] = []
        self._seq = itertools.count()
        self._processing = False
        self._process_task: asyncio.Task | None = None

        self.circuit_open = False
        self.cooldown_until = 0.0
        self.last_request_time: float | None = None
        self.requests_processed = 0
        self.rate_limit_events = 0

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    async def handle(self, request: CoordinatorRequest) -> CoordinatorResponse:
        """Process one coordinator request end to end."""
        now = self._clock()

        control = await self._load_emergency_control(now)
        if control is not None and control.is_active(now):
            return self._emergency_stop_response(control, now)

        decision = await self._check_rate_limit(now)
        if not decision.should_allow:
            logger.info(
                "Request rejected by rate limiter",
                action=request.action,
                reason=decision.reason,
                wait_time=decision.wait_time,
            )
            return CoordinatorResponse(
                success=False,
                error=decision.message or "Rate limit exceeded",
                should_wait=True,
                wait_time=decision.wait_time,
                http_status=429,
            )

        now = self._clock()
        if self.circuit_open:
            if now < self.cooldown_until:
                return CoordinatorResponse(
                    success=False,
                    error="Circuit breaker open due to rate limits",
                    cooldown_remaining=self.cooldown_until - now,
                    http_status=503,
                )
            self.circuit_open = False
            logger.info("Coordinator circuit breaker closed after cooldown")

        key = ResponseCache.make_key(request.action, request.params)
        entry = await self.cache.get(key)
        if entry is not None:
            logger.debug("Serving cached response", action=request.action)
            return CoordinatorResponse(
                success=True,
                data=entry.value,
                from_cache=True,
                cache_age=entry.age(self._clock()),
            )

        return await self.submit(request)

    def submit(self, request: CoordinatorRequest) -> "asyncio.Future[CoordinatorResponse]":
        """
        Queue a request for a vendor call and return a future for its reply.

        High priority requests run before all others; FIFO otherwise.
        """
        future: asyncio.Future[CoordinatorResponse] = (
            asyncio.get_running_loop().create_future()
        )
        if self.circuit_open and self._clock() < self.cooldown_until:
            future.set_result(self._rate_limited_response())
            return future

        item = _QueuedCall(
            rank=0 if request.is_high_priority else 1,
            seq=next(self._seq),
            request=request,
            future=future,
            enqueued_at=self._clock(),
        )
        heapq.heappush(self._queue, item)
        if not self._processing:
            self._processing = True
            self._process_task = asyncio.create_task(self._process_queue())
        return future

    async def _load_emergency_control(self, now: float) -> EmergencyControl | None:
        try:
            control = await self.store.get_emergency_control()
        except StoreError as e:
            logger.warning("Emergency control unavailable, using local state", error=str(e))
            if self.circuit_open and now < self.cooldown_until:
                return EmergencyControl(
                    active=True,
                    reason="local_circuit",
                    cooldown_until=self.cooldown_until,
                )
            return None

        if control is not None and control.active and not control.is_active(now):
            logger.info("Emergency stop cooldown elapsed", reason=control.reason)
            try:
                await self.store.clear_emergency_control()
            except StoreError as e:
                logger.warning("Failed to clear expired emergency control", error=str(e))
        return control

    async def _check_rate_limit(self, now: float) -> RateLimitDecision:
        if self.rate_limiter is None:
            return RateLimitDecision(should_allow=True)
        try:
            return await self.rate_limiter.check_limits()
        except Exception as e:
            logger.warning("Rate limiter failed, using local fallback", error=str(e))
            return self._local_rate_limit_check(now)

    def _local_rate_limit_check(self, now: float) -> RateLimitDecision:
        if self.circuit_open and now < self.cooldown_until:
            return RateLimitDecision(
                should_allow=False,
                reason="local_circuit_open",
                wait_time=self.cooldown_until - now,
                message="Local circuit breaker active",
            )
        if self.last_request_time is not None:
            elapsed = now - self.last_request_time
            if elapsed < self.config.minimum_request_spacing:
                return RateLimitDecision(
                    should_allow=False,
                    reason="local_request_spacing",
                    wait_time=self.config.minimum_request_spacing - elapsed,
                    message="Local rate limit: minimum spacing not met",
                )
        return RateLimitDecision(
            should_allow=True, message="Local rate limit check passed"
        )

    async def _process_queue(self) -> None:
        try:
            while self._queue and not self.circuit_open:
                item = heapq.heappop(self._queue)
                if item.future.done():
                    continue
                await self._wait_for_slot()
                if self.circuit_open:
                    # Locked out while waiting; the queue was already drained
                    self._resolve(item, self._rate_limited_response())
                    break
                # Another instance may have stopped the system while we queued
                now = self._clock()
                control = await self._load_emergency_control(now)
                if control is not None and control.is_active(now):
                    stopped = self._emergency_stop_response(control, now)
                    self._resolve(item, stopped)
                    dropped = self._drain_queue(stopped)
                    logger.warning(
                        "Emergency stop active, dropping queued requests",
                        reason=control.reason,
                        dropped_requests=dropped + 1,
                    )
                    break
                response = await self._call_vendor(item.request)
                self._resolve(item, response)
        finally:
            self._processing = False

    async def _wait_for_slot(self) -> None:
        spacing = self.config.minimum_request_spacing
        while True:
            now = self._clock()
            try:
                wait = await self.store.acquire_request_slot(spacing, now)
            except StoreError as e:
                logger.warning("Spacing slot unavailable, using local spacing", error=str(e))
                wait = 0.0
                if self.last_request_time is not None:
                    wait = self.last_request_time + spacing - now
            if wait <= 0:
                return
            await self._sleep(wait)

    @staticmethod
    def _resolve(item: _QueuedCall, response: CoordinatorResponse) -> None:
        if not item.future.done():
            item.future.set_result(response)

    async def _call_vendor(self, request: CoordinatorRequest) -> CoordinatorResponse:
        started = self._clock()
        self.last_request_time = started
        self.requests_processed += 1
        logger.debug(
            "Calling vendor",
            action=request.action,
            priority=request.priority,
            requester_id=request.requester_id,
        )

        try:
            result = await self._vendor_call(request.action, request.params)
        except Exception as e:
            elapsed = self._clock() - started
            logger.error("Vendor call failed", action=request.action, error=str(e))
            await self._record(request.action, False, elapsed, None)
            return CoordinatorResponse(success=False, error=str(e), http_status=502)

        elapsed = self._clock() - started

        if isinstance(result, VendorRateLimited):
            await self._record(request.action, False, elapsed, RATE_LIMIT_STATUS)
            await self._handle_rate_limit_detected(request.action)
            return self._rate_limited_response()

        if isinstance(result, VendorFailure):
            await self._record(request.action, False, elapsed, result.status)
            return CoordinatorResponse(
                success=False,
                error=result.message,
                vendor_status=result.status,
                http_status=502,
            )

        await self._record(request.action, True, elapsed, 0)
        key = ResponseCache.make_key(request.action, request.params)
        await self.cache.set(key, result.data, self.config.cache_ttl)
        await self.cache.cleanup_expired()
        return CoordinatorResponse(success=True, data=result.data)

    @staticmethod
    def _emergency_stop_response(
        control: EmergencyControl, now: float
    ) -> CoordinatorResponse:
        return CoordinatorResponse(
            success=False,
            error="Vendor requests suspended due to emergency stop",
            emergency_stop=True,
            cooldown_remaining=(
                control.remaining(now) if control.cooldown_until else None
            ),
            http_status=503,
        )

    def _rate_limited_response(self) -> CoordinatorResponse:
        return CoordinatorResponse(
            success=False,
            error="Vendor rate limit (8902) detected, system entering emergency mode",
            rate_limit_detected=True,
            emergency_stop=True,
            cooldown_remaining=max(0.0, self.cooldown_until - self._clock()),
            http_status=503,
        )

    async def _handle_rate_limit_detected(self, action: str) -> None:
        now = self._clock()
        self.rate_limit_events += 1
        self.circuit_open = True
        self.cooldown_until = now + self.config.emergency_cooldown

        dropped = self._drain_queue(self._rate_limited_response())
        logger.critical(
            "Vendor rate limit detected, activating emergency stop",
            action=action,
            cooldown=self.config.emergency_cooldown,
            dropped_requests=dropped,
        )

        control = EmergencyControl(
            active=True,
            reason=RATE_LIMIT_REASON,
            cooldown_until=self.cooldown_until,
            set_at=now,
        )
        try:
            await self.store.set_emergency_control(control)
        except StoreError as e:
            logger.error("Failed to persist emergency stop", error=str(e))

    def _drain_queue(self, response: CoordinatorResponse) -> int:
        dropped = 0
        while self._queue:
            item = heapq.heappop(self._queue)
            if not item.future.done():
                item.future.set_result(response)
                dropped += 1
        return dropped

    async def _record(
        self, action: str, success: bool, elapsed: float, status: int | None
    ) -> None:
        if self.rate_limiter is None:
            return
        try:
            await self.rate_limiter.record_request(action, success, elapsed, status)
        except Exception as e:
            logger.warning("Failed to record request in rate limiter", error=str(e))

    async def set_emergency_stop(
        self, reason: str = "Operator emergency stop", duration: float | None = None
    ) -> EmergencyControl:
        """Persist an operator emergency stop and drop queued requests."""
        now = self._clock()
        control = EmergencyControl(
            active=True,
            reason=reason,
            cooldown_until=now + duration if duration else None,
            set_at=now,
        )
        await self.store.set_emergency_control(control)
        dropped = self._drain_queue(
            CoordinatorResponse(
                success=False,
                error="Vendor requests suspended due to emergency stop",
                emergency_stop=True,
                cooldown_remaining=duration,
                http_status=503,
            )
        )
        logger.critical(
            "Emergency stop set", reason=reason, duration=duration, dropped_requests=dropped
        )
        return control

    async def clear_emergency_stop(self) -> None:
        """Lift the persisted stop and close the local circuit."""
        await self.store.clear_emergency_control()
        self.circuit_open = False
        self.cooldown_until = 0.0
        logger.warning("Emergency stop cleared")

    async def get_status(self) -> dict[str, Any]:
        """Best-effort status snapshot. Never raises."""
        now = self._clock()
        status: dict[str, Any] = {
            "queue_size": self.queue_size,
            "processing": self._processing,
            "circuit_open": self.circuit_open and now < self.cooldown_until,
            "cooldown_remaining": max(0.0, self.cooldown_until - now),
            "last_request_time": self.last_request_time,
            "requests_processed": self.requests_processed,
            "rate_limit_events": self.rate_limit_events,
            "cache": self.cache.get_stats(),
            "store_backend": self.store.backend_name,
            "emergency_stop": False,
            "emergency_reason": None,
        }
        try:
            control = await self.store.get_emergency_control()
            if control is not None and control.is_active(now):
                status["emergency_stop"] = True
                status["emergency_reason"] = control.reason
                status["emergency_remaining"] = control.remaining(now)
        except Exception as e:
            status["store_error"] = str(e)
            status["emergency_stop"] = status["circuit_open"]
        if self.rate_limiter is not None:
            try:
                status["rate_limiter"] = await self.rate_limiter.get_status()
            except Exception as e:
                status["rate_limiter_error"] = str(e)
        return status

    async def close(self) -> None:
        if self._process_task and not self._process_task.done():
            self._process_task.cancel()
            try:
                await self._process_task
            except asyncio.CancelledError:
                pass
        await self.store.close()
