"""
Tests for the request coordinator and its response cache.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import FakeClock
from tracker_orchestrator.config import CoordinatorConfig
from tracker_orchestrator.coordinator.cache import ResponseCache
from tracker_orchestrator.coordinator.coordinator import Coordinator
from tracker_orchestrator.coordinator.models import CoordinatorRequest, RateLimitDecision
from tracker_orchestrator.coordinator.rate_limiter import GlobalRateLimiter
from tracker_orchestrator.exceptions import StoreError, TransientNetworkError
from tracker_orchestrator.state.manager import InMemoryControlStore
from tracker_orchestrator.vendor.results import (
    VendorFailure,
    VendorRateLimited,
    VendorSuccess,
)


class FakeVendor:
    """Records calls and replies from a scripted list (last reply repeats)."""

    def __init__(self, clock: FakeClock, replies=None, latency: float = 0.0):
        self.clock = clock
        self.replies = list(replies or [])
        self.latency = latency
        self.calls: list[tuple[str, dict, float]] = []

    async def __call__(self, action, params):
        self.calls.append((action, params, self.clock()))
        if self.latency:
            await self.clock.sleep(self.latency)
        if self.replies:
            reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        else:
            reply = VendorSuccess(action=action, data={"status": 0, "records": []})
        if isinstance(reply, Exception):
            raise reply
        return reply


class FailingStore(InMemoryControlStore):
    """Store whose emergency-control reads always fail."""

    backend_name = "failing"

    async def get_emergency_control(self):
        raise StoreError("store down", backend=self.backend_name)


def request(action="lastposition", priority="normal", **params) -> CoordinatorRequest:
    return CoordinatorRequest(action=action, params=params, priority=priority)


class TestResponseCache:
    """Cache expiry semantics."""

    def setup_method(self):
        self.clock = FakeClock()
        self.cache = ResponseCache(default_ttl=60.0, clock=self.clock)

    def test_key_is_stable_under_param_order(self):
        assert ResponseCache.make_key("a", {"x": 1, "y": 2}) == ResponseCache.make_key(
            "a", {"y": 2, "x": 1}
        )
        assert ResponseCache.make_key("a", {"x": 1}) != ResponseCache.make_key(
            "b", {"x": 1}
        )

    @pytest.mark.asyncio
    async def test_entry_never_served_at_or_after_expiry(self):
        await self.cache.set("k", {"v": 1})

        self.clock.advance(59.9)
        entry = await self.cache.get("k")
        assert entry is not None
        assert entry.age(self.clock()) == pytest.approx(59.9)

        self.clock.advance(0.1)
        assert await self.cache.get("k") is None
        assert len(self.cache) == 0

    @pytest.mark.asyncio
    async def test_cleanup_and_stats(self):
        await self.cache.set("a", 1, ttl_seconds=10)
        await self.cache.set("b", 2, ttl_seconds=100)
        await self.cache.get("b")
        await self.cache.get("missing")

        self.clock.advance(10)
        removed = await self.cache.cleanup_expired()

        assert removed == 1
        stats = self.cache.get_stats()
        assert stats["cache_size"] == 1
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate_percent"] == 50.0


class TestCoordinatorCaching:
    """Cached responses and TTL expiry."""

    def setup_method(self):
        self.clock = FakeClock()
        self.vendor = FakeVendor(
            self.clock,
            replies=[VendorSuccess(action="lastposition", data={"status": 0, "n": 1})],
        )
        self.coordinator = Coordinator(
            self.vendor, clock=self.clock, sleep=self.clock.sleep
        )

    @pytest.mark.asyncio
    async def test_identical_requests_served_from_cache_until_ttl(self):
        first = await self.coordinator.handle(request(deviceids=["1", "2"]))
        second = await self.coordinator.handle(request(deviceids=["1", "2"]))

        assert first.success is True
        assert second.from_cache is True
        assert second.data == first.data
        assert len(self.vendor.calls) == 1

        self.clock.advance(60.0)
        third = await self.coordinator.handle(request(deviceids=["1", "2"]))

        assert third.from_cache is None
        assert len(self.vendor.calls) == 2

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self):
        self.vendor.replies = [
            VendorFailure(action="lastposition", status=1, message="bad device")
        ]

        response = await self.coordinator.handle(request(deviceids=["x"]))

        assert response.success is False
        assert response.http_status == 502
        assert response.vendor_status == 1
        assert len(self.coordinator.cache) == 0

    @pytest.mark.asyncio
    async def test_vendor_exception_maps_to_502(self):
        self.vendor.replies = [TransientNetworkError("connection reset")]

        response = await self.coordinator.handle(request())

        assert response.success is False
        assert response.http_status == 502
        assert "connection reset" in response.error


class TestCoordinatorSpacingAndPriority:
    """Global spacing and queue ordering."""

    def setup_method(self):
        self.clock = FakeClock()
        self.vendor = FakeVendor(self.clock)
        self.coordinator = Coordinator(
            self.vendor,
            config=CoordinatorConfig(minimum_request_spacing=5.0),
            clock=self.clock,
            sleep=self.clock.sleep,
        )

    @pytest.mark.asyncio
    async def test_minimum_spacing_between_vendor_calls(self):
        responses = await asyncio.gather(
            *[self.coordinator.handle(request(deviceids=[str(i)])) for i in range(10)]
        )

        assert all(r.success for r in responses)
        times = [t for _, _, t in self.vendor.calls]
        assert len(times) == 10
        assert min(b - a for a, b in zip(times, times[1:])) >= 5.0

    @pytest.mark.asyncio
    async def test_high_priority_runs_first(self):
        futures = [
            self.coordinator.submit(request(deviceids=["a"])),
            self.coordinator.submit(request(deviceids=["b"])),
            self.coordinator.submit(request(priority="high", deviceids=["c"])),
            self.coordinator.submit(request(deviceids=["d"])),
        ]
        await asyncio.gather(*futures)

        order = [params["deviceids"][0] for _, params, _ in self.vendor.calls]
        assert order == ["c", "a", "b", "d"]


class TestCoordinatorRateLimitLockout:
    """Vendor 8902 handling."""

    def setup_method(self):
        self.clock = FakeClock()
        self.store = InMemoryControlStore()
        self.vendor = FakeVendor(
            self.clock,
            replies=[VendorRateLimited(action="lastposition")],
            latency=1.0,
        )
        self.coordinator = Coordinator(
            self.vendor, store=self.store, clock=self.clock, sleep=self.clock.sleep
        )

    @pytest.mark.asyncio
    async def test_8902_locks_out_for_cooldown_and_drops_queue(self):
        responses = await asyncio.gather(
            *[self.coordinator.handle(request(deviceids=[str(i)])) for i in range(4)]
        )

        assert len(self.vendor.calls) == 1
        assert all(r.rate_limit_detected for r in responses)
        assert all(r.emergency_stop for r in responses)
        assert all(r.http_status == 503 for r in responses)
        assert self.coordinator.queue_size == 0
        assert self.coordinator.rate_limit_events == 1

        control = await self.store.get_emergency_control()
        assert control.active is True
        assert control.reason == "vendor_rate_limit_8902"

        # Every request in the next 30 minutes short-circuits
        self.vendor.replies = [VendorSuccess(action="lastposition", data={"status": 0})]
        for _ in range(6):
            self.clock.advance(299.0)
            response = await self.coordinator.handle(request(deviceids=["z"]))
            assert response.emergency_stop is True
            assert response.http_status == 503
            assert response.cooldown_remaining > 0
        assert len(self.vendor.calls) == 1

        self.clock.advance(30.0)
        response = await self.coordinator.handle(request(deviceids=["z"]))
        assert response.success is True
        assert len(self.vendor.calls) == 2
        assert await self.store.get_emergency_control() is None

    @pytest.mark.asyncio
    async def test_local_circuit_used_when_store_unavailable(self):
        coordinator = Coordinator(
            self.vendor, store=FailingStore(), clock=self.clock, sleep=self.clock.sleep
        )

        await coordinator.handle(request())
        response = await coordinator.handle(request(deviceids=["other"]))

        assert response.emergency_stop is True
        assert response.http_status == 503
        assert len(self.vendor.calls) == 1


class LockoutDuringCall(FakeVendor):
    """Vendor whose first call overlaps another instance hitting 8902."""

    def __init__(self, clock: FakeClock, other: Coordinator):
        super().__init__(clock)
        self.other = other
        self.other_response = None

    async def __call__(self, action, params):
        if self.other_response is None:
            self.other_response = await self.other.handle(request(deviceids=["x"]))
        return await super().__call__(action, params)


class TestSharedLockout:
    """Lockouts written by one coordinator stop another's queue."""

    def setup_method(self):
        self.clock = FakeClock()
        self.store = InMemoryControlStore()
        self.first = Coordinator(
            FakeVendor(self.clock, replies=[VendorRateLimited(action="lastposition")]),
            store=self.store,
            clock=self.clock,
            sleep=self.clock.sleep,
        )
        self.vendor = LockoutDuringCall(self.clock, self.first)
        self.second = Coordinator(
            self.vendor, store=self.store, clock=self.clock, sleep=self.clock.sleep
        )

    @pytest.mark.asyncio
    async def test_queued_requests_dropped_after_other_instance_lockout(self):
        futures = [self.second.submit(request(deviceids=[str(i)])) for i in range(3)]
        responses = await asyncio.gather(*futures)

        assert self.vendor.other_response.rate_limit_detected is True
        control = await self.store.get_emergency_control()
        assert control.is_active(self.clock())

        assert len(self.vendor.calls) == 1
        assert responses[0].success is True
        for response in responses[1:]:
            assert response.success is False
            assert response.emergency_stop is True
            assert response.http_status == 503
            assert response.cooldown_remaining > 0
        assert self.second.queue_size == 0


class TestCoordinatorLimiter:
    """Global limiter consultation and local fallback."""

    def setup_method(self):
        self.clock = FakeClock()
        self.vendor = FakeVendor(self.clock)

    @pytest.mark.asyncio
    async def test_limiter_rejection_maps_to_429(self):
        limiter = GlobalRateLimiter(clock=self.clock)
        coordinator = Coordinator(
            self.vendor, rate_limiter=limiter, clock=self.clock, sleep=self.clock.sleep
        )

        await coordinator.handle(request(deviceids=["1"]))
        response = await coordinator.handle(request(deviceids=["2"]))

        assert response.success is False
        assert response.http_status == 429
        assert response.should_wait is True
        assert response.wait_time == pytest.approx(3.0)
        assert len(self.vendor.calls) == 1
        assert limiter.history[-1].success is True

    @pytest.mark.asyncio
    async def test_limiter_failure_falls_back_to_local_spacing(self):
        limiter = AsyncMock()
        limiter.check_limits.side_effect = TransientNetworkError("limiter down")
        coordinator = Coordinator(
            self.vendor, rate_limiter=limiter, clock=self.clock, sleep=self.clock.sleep
        )

        first = await coordinator.handle(request(deviceids=["1"]))
        second = await coordinator.handle(request(deviceids=["2"]))

        assert first.success is True
        assert second.http_status == 429
        assert second.wait_time == pytest.approx(5.0)
        assert len(self.vendor.calls) == 1

    @pytest.mark.asyncio
    async def test_emergency_stop_checked_before_limiter(self):
        limiter = AsyncMock()
        limiter.check_limits.return_value = RateLimitDecision(should_allow=True)
        coordinator = Coordinator(
            self.vendor, rate_limiter=limiter, clock=self.clock, sleep=self.clock.sleep
        )

        await coordinator.set_emergency_stop("maintenance", duration=100.0)
        response = await coordinator.handle(request())

        assert response.emergency_stop is True
        assert response.cooldown_remaining == pytest.approx(100.0)
        limiter.check_limits.assert_not_called()
        assert self.vendor.calls == []

        await coordinator.clear_emergency_stop()
        response = await coordinator.handle(request())
        assert response.success is True


class TestCoordinatorStatus:
    """Status snapshots never raise."""

    @pytest.mark.asyncio
    async def test_status_snapshot(self):
        clock = FakeClock()
        coordinator = Coordinator(FakeVendor(clock), clock=clock, sleep=clock.sleep)
        await coordinator.handle(request())

        status = await coordinator.get_status()

        assert status["requests_processed"] == 1
        assert status["circuit_open"] is False
        assert status["store_backend"] == "memory"
        assert status["emergency_stop"] is False
        assert status["cache"]["cache_size"] == 1

    @pytest.mark.asyncio
    async def test_status_survives_store_and_limiter_errors(self):
        clock = FakeClock()
        limiter = AsyncMock()
        limiter.get_status.side_effect = TransientNetworkError("down")
        coordinator = Coordinator(
            FakeVendor(clock),
            store=FailingStore(),
            rate_limiter=limiter,
            clock=clock,
            sleep=clock.sleep,
        )

        status = await coordinator.get_status()

        assert "store_error" in status
        assert "rate_limiter_error" in status
        assert status["store_backend"] == "failing"
