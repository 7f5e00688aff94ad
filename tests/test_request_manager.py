"""
Tests for the request manager.

Covers priority ordering, spacing, the circuit breaker, retries and the
operator controls.
"""

import asyncio

import pytest

from conftest import FakeClock, failing_work, success_work
from tracker_orchestrator.config import RateLimitConfig
from tracker_orchestrator.exceptions import (
    CircuitOpenError,
    EmergencyStopError,
    TransientNetworkError,
    ValidationError,
    VendorRateLimitError,
)
from tracker_orchestrator.polling.request_manager import (
    ConcurrencyGate,
    Priority,
    QueuedRequest,
    RequestManager,
)


def no_jitter() -> float:
    return 0.0


class TestPriorityOrdering:
    """Dequeue order follows the priority tier, FIFO within a tier."""

    def setup_method(self):
        self.clock = FakeClock()
        self.config = RateLimitConfig(
            min_delay_between_requests=0.0,
            max_requests_per_minute=1000,
            max_concurrent_requests=1,
            max_jitter=0.0,
        )
        self.manager = RequestManager(
            self.config, clock=self.clock, sleep=self.clock.sleep, jitter=no_jitter
        )

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self):
        """Interleaved enqueues run high, then medium, then low."""
        order: list[str] = []

        def work(name: str):
            async def run():
                order.append(name)
                return name

            return run

        plan = [
            ("low-1", Priority.LOW),
            ("medium-1", Priority.MEDIUM),
            ("high-1", Priority.HIGH),
            ("low-2", Priority.LOW),
            ("high-2", Priority.HIGH),
            ("medium-2", Priority.MEDIUM),
        ]
        futures = [self.manager.enqueue(work(name), priority) for name, priority in plan]
        results = await asyncio.gather(*futures)

        assert order == ["high-1", "high-2", "medium-1", "medium-2", "low-1", "low-2"]
        assert results == [name for name, _ in plan]

    @pytest.mark.asyncio
    async def test_priority_accepts_strings(self):
        """String priorities are accepted."""
        result = await self.manager.queue_request(success_work("ok"), priority="high")

        assert result == "ok"

    @pytest.mark.asyncio
    async def test_invalid_priority_rejected(self):
        """Unknown priorities raise ValidationError."""
        with pytest.raises(ValidationError):
            await self.manager.queue_request(success_work("ok"), priority="urgent")

    @pytest.mark.asyncio
    async def test_invalid_retries_and_timeout_rejected(self):
        """Negative retries and non-positive timeouts are rejected."""
        with pytest.raises(ValidationError):
            self.manager.enqueue(success_work("ok"), retries=-1)
        with pytest.raises(ValidationError):
            self.manager.enqueue(success_work("ok"), timeout=0)


class TestRateLimiting:
    """Spacing, per-minute cap and concurrency."""

    @pytest.mark.asyncio
    async def test_minimum_spacing_under_burst(self):
        """100 simultaneous requests are never dispatched closer than the spacing."""
        clock = FakeClock()
        manager = RequestManager(
            RateLimitConfig(min_delay_between_requests=3.0),
            clock=clock,
            sleep=clock.sleep,
            jitter=no_jitter,
        )
        starts: list[float] = []

        async def work():
            starts.append(clock())

        futures = [manager.enqueue(work) for _ in range(100)]
        await asyncio.gather(*futures)

        assert len(starts) == 100
        gaps = [b - a for a, b in zip(starts, starts[1:])]
        assert min(gaps) >= 3.0 - 1e-9

    @pytest.mark.asyncio
    async def test_per_minute_cap(self):
        """No rolling minute holds more calls than the cap."""
        clock = FakeClock()
        manager = RequestManager(
            RateLimitConfig(
                min_delay_between_requests=0.0,
                max_requests_per_minute=5,
                max_jitter=0.0,
            ),
            clock=clock,
            sleep=clock.sleep,
            jitter=no_jitter,
        )
        starts: list[float] = []

        async def work():
            starts.append(clock())

        await asyncio.gather(*[manager.enqueue(work) for _ in range(12)])

        for start in starts:
            window = [s for s in starts if start <= s < start + 60.0]
            assert len(window) <= 5
        assert starts[-1] - starts[0] >= 120.0

    @pytest.mark.asyncio
    async def test_concurrency_limit(self):
        """In-flight calls never exceed max_concurrent_requests."""
        clock = FakeClock()
        manager = RequestManager(
            RateLimitConfig(
                min_delay_between_requests=0.0,
                max_requests_per_minute=1000,
                max_concurrent_requests=2,
                max_jitter=0.0,
            ),
            clock=clock,
            sleep=clock.sleep,
            jitter=no_jitter,
        )
        in_flight = 0
        peak = 0

        async def work():
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            for _ in range(5):
                await asyncio.sleep(0)
            in_flight -= 1

        await asyncio.gather(*[manager.enqueue(work) for _ in range(8)])

        assert peak == 2
        assert manager.active_requests == 0

    @pytest.mark.asyncio
    async def test_jitter_sleeps_after_dispatch(self):
        """Dispatch jitter is scaled by max_jitter."""
        clock = FakeClock()
        manager = RequestManager(
            RateLimitConfig(min_delay_between_requests=0.0, max_jitter=1.0),
            clock=clock,
            sleep=clock.sleep,
            jitter=lambda: 0.5,
        )

        await manager.queue_request(success_work(1))

        assert 0.5 in clock.sleeps


class TestCircuitBreaker:
    """Failure accounting and the circuit breaker."""

    def setup_method(self):
        self.clock = FakeClock()
        self.config = RateLimitConfig(
            min_delay_between_requests=0.0,
            max_requests_per_minute=1000,
            max_jitter=0.0,
        )
        self.manager = RequestManager(
            self.config, clock=self.clock, sleep=self.clock.sleep, jitter=no_jitter
        )

    async def _fail(self, times: int) -> None:
        for _ in range(times):
            with pytest.raises(TransientNetworkError):
                await self.manager.queue_request(
                    failing_work(TransientNetworkError("boom")), retries=0
                )

    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_recovers(self):
        """Five failures open the circuit; it recovers after the reset time."""
        await self._fail(4)
        assert not self.manager.get_health_status()["circuit_open"]

        await self._fail(1)
        health = self.manager.get_health_status()
        assert health["circuit_open"] is True
        assert health["consecutive_failures"] == 5
        assert health["is_healthy"] is False
        # Backoff doubled five times from 1s
        assert self.manager.state.current_backoff_delay == 32.0
        assert self.manager.state.circuit_reset_time == pytest.approx(self.clock() + 64.0)

        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            return "ok"

        with pytest.raises(CircuitOpenError) as exc_info:
            await self.manager.queue_request(work)
        assert calls == 0
        assert exc_info.value.retry_after == pytest.approx(64.0)

        self.clock.advance(64.0)
        assert await self.manager.queue_request(work) == "ok"
        assert calls == 1
        assert self.manager.state.consecutive_failures == 0
        assert self.manager.state.current_backoff_delay == self.config.base_backoff_delay
        assert self.manager.get_health_status()["circuit_open"] is False

    @pytest.mark.asyncio
    async def test_circuit_open_error_not_retried(self):
        """Requests rejected by an open circuit fail without retry sleeps."""
        self.manager.pause_all_requests(100.0)
        sleeps_before = len(self.clock.sleeps)

        with pytest.raises(CircuitOpenError):
            await self.manager.queue_request(success_work(1), retries=3)

        assert len(self.clock.sleeps) == sleeps_before

    @pytest.mark.asyncio
    async def test_vendor_rate_limit_opens_circuit_for_retry_after(self):
        """A vendor rate-limit error opens the circuit for its retry_after."""
        error = VendorRateLimitError("8902", retry_after=1800.0)

        with pytest.raises(VendorRateLimitError):
            await self.manager.queue_request(failing_work(error), retries=3)

        health = self.manager.get_health_status()
        assert health["circuit_open"] is True
        assert health["circuit_reset_in"] == pytest.approx(1800.0)
        assert self.manager.state.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_emergency_stop_opens_circuit(self):
        """An emergency stop without retry_after uses the pause window."""
        with pytest.raises(EmergencyStopError):
            await self.manager.queue_request(
                failing_work(EmergencyStopError("stopped")), retries=2
            )

        assert self.manager.get_health_status()["circuit_reset_in"] == pytest.approx(
            self.config.pause_duration
        )

    @pytest.mark.asyncio
    async def test_lockout_is_never_shortened(self):
        """A later, shorter failure window does not shorten an existing lockout."""
        self.manager.pause_all_requests(1000.0)
        self.manager._open_circuit(self.clock() + 10.0, reason="test")

        assert self.manager.state.circuit_reset_time == pytest.approx(self.clock() + 1000.0)

    @pytest.mark.asyncio
    async def test_pause_keeps_longer_rate_limit_lockout(self):
        """A short operator pause does not cut a vendor lockout short."""
        error = VendorRateLimitError("8902", retry_after=1800.0)
        with pytest.raises(VendorRateLimitError):
            await self.manager.queue_request(failing_work(error), retries=0)

        self.manager.pause_all_requests(300.0)

        assert self.manager.get_health_status()["circuit_reset_in"] == pytest.approx(
            1800.0
        )
        self.clock.advance(301.0)
        with pytest.raises(CircuitOpenError):
            await self.manager.queue_request(success_work(1))


class TestRetries:
    """Retry accounting."""

    def setup_method(self):
        self.clock = FakeClock()
        self.config = RateLimitConfig(
            min_delay_between_requests=0.0,
            max_requests_per_minute=1000,
            max_concurrent_requests=1,
            max_jitter=0.0,
        )
        self.manager = RequestManager(
            self.config, clock=self.clock, sleep=self.clock.sleep, jitter=no_jitter
        )

    @pytest.mark.asyncio
    async def test_transient_failure_retried_until_success(self):
        """Transient failures are retried with backoff pauses."""
        attempts = 0

        async def flaky():
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise TransientNetworkError("flaky")
            return "done"

        result = await self.manager.queue_request(flaky, retries=2)

        assert result == "done"
        assert attempts == 3
        assert 2.0 in self.clock.sleeps
        assert 4.0 in self.clock.sleeps
        assert self.manager.state.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_original_error(self):
        """The caller sees the original error once retries run out."""
        attempts = 0
        error = TransientNetworkError("still down")

        async def down():
            nonlocal attempts
            attempts += 1
            raise error

        with pytest.raises(TransientNetworkError) as exc_info:
            await self.manager.queue_request(down, retries=2)

        assert exc_info.value is error
        assert attempts == 3

    @pytest.mark.asyncio
    async def test_validation_error_not_retried(self):
        """Validation errors fail on the first attempt."""
        attempts = 0

        async def invalid():
            nonlocal attempts
            attempts += 1
            raise ValidationError("bad input")

        with pytest.raises(ValidationError):
            await self.manager.queue_request(invalid, retries=3)

        assert attempts == 1

    @pytest.mark.asyncio
    async def test_timeout_becomes_transient_error(self):
        """Work exceeding its timeout fails with TransientNetworkError."""

        async def hang():
            await asyncio.Event().wait()

        with pytest.raises(TransientNetworkError):
            await self.manager.queue_request(hang, retries=0, timeout=0.01)

        assert self.manager.active_requests == 0

    @pytest.mark.asyncio
    async def test_front_requeue_is_bounded(self):
        """Retries go to the front of the tier until the limit, then to the back."""
        self.manager._processing = True
        loop = asyncio.get_running_loop()

        def item(name: str) -> QueuedRequest:
            return QueuedRequest(
                id=name,
                priority=Priority.MEDIUM,
                work=success_work(name),
                retries=5,
                timeout=None,
                future=loop.create_future(),
                enqueue_time=self.clock(),
            )

        retried = item("retried")
        waiting = item("waiting")
        self.manager._queues[Priority.MEDIUM].append(waiting)

        for _ in range(self.config.front_retry_limit):
            self.manager._requeue(retried)
            assert self.manager._queues[Priority.MEDIUM][0] is retried
            self.manager._queues[Priority.MEDIUM].popleft()

        self.manager._requeue(retried)
        assert self.manager._queues[Priority.MEDIUM][-1] is retried
        assert self.manager._queues[Priority.MEDIUM][0] is waiting
        assert retried.front_retries == self.config.front_retry_limit


class TestOperatorControls:
    """Pause, resume and runtime limit adjustment."""

    def setup_method(self):
        self.clock = FakeClock()
        self.manager = RequestManager(
            RateLimitConfig(min_delay_between_requests=0.0, max_jitter=0.0),
            clock=self.clock,
            sleep=self.clock.sleep,
            jitter=no_jitter,
        )

    @pytest.mark.asyncio
    async def test_pause_and_resume(self):
        """pause_all_requests blocks calls until resume_requests."""
        self.manager.pause_all_requests()

        with pytest.raises(CircuitOpenError):
            await self.manager.queue_request(success_work(1))

        self.manager.state.consecutive_failures = 4
        self.manager.resume_requests()

        assert await self.manager.queue_request(success_work(2)) == 2
        assert self.manager.state.consecutive_failures == 0

    def test_adjust_rate_limit(self):
        """Valid changes merge into the config."""
        config = self.manager.adjust_rate_limit(
            max_concurrent_requests=5, max_requests_per_minute=10
        )

        assert config.max_concurrent_requests == 5
        assert config.max_requests_per_minute == 10
        assert self.manager.config is config
        assert self.manager._gate.limit == 5

    def test_adjust_rate_limit_rejects_invalid_values(self):
        """Invalid or unknown parameters raise ValidationError and change nothing."""
        before = self.manager.config

        with pytest.raises(ValidationError):
            self.manager.adjust_rate_limit(max_concurrent_requests=0)
        with pytest.raises(ValidationError):
            self.manager.adjust_rate_limit(burst_size=4)
        with pytest.raises(ValidationError):
            self.manager.adjust_rate_limit(base_backoff_delay=120.0)

        assert self.manager.config is before

    def test_health_status_shape(self):
        """Health status reports every documented field."""
        status = self.manager.get_health_status()

        assert status == {
            "queue_length": 0,
            "active_requests": 0,
            "consecutive_failures": 0,
            "circuit_open": False,
            "circuit_reset_in": 0.0,
            "requests_in_last_minute": 0,
            "current_backoff_delay": 1.0,
            "is_healthy": True,
        }

    @pytest.mark.asyncio
    async def test_start_and_stop_background_tasks(self):
        """start() launches the health logger and kicker; stop() cancels them."""
        manager = RequestManager()

        await manager.start()
        assert manager._health_task is not None
        assert manager._kicker_task is not None

        await manager.stop()
        assert manager._health_task is None
        assert manager._kicker_task is None


class TestConcurrencyGate:
    """Counting gate wake-ups."""

    @pytest.mark.asyncio
    async def test_release_wakes_waiter(self):
        """A waiter blocked at the limit proceeds once a slot is released."""
        gate = ConcurrencyGate(1)
        await gate.acquire()
        waiter = asyncio.ensure_future(gate.acquire())
        await asyncio.sleep(0)
        assert not waiter.done()

        gate.release()
        await asyncio.wait_for(waiter, timeout=1.0)

        await asyncio.sleep(0)

        assert gate.active == 1
        assert gate._pending == set()

    @pytest.mark.asyncio
    async def test_resize_wakes_waiter(self):
        """Raising the limit lets a blocked waiter through."""
        gate = ConcurrencyGate(1)
        await gate.acquire()
        waiter = asyncio.ensure_future(gate.acquire())
        await asyncio.sleep(0)

        gate.resize(2)
        await asyncio.wait_for(waiter, timeout=1.0)

        assert gate.active == 2
