"""
Global rate limiter for the coordinator.

This module contains the rate limiter service that every coordinator
instance consults before letting a request through, plus an HTTP client for
reaching a limiter hosted in another process.
"""

import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import TransientNetworkError
from ..polling.request_manager import Clock
from ..vendor.results import RATE_LIMIT_STATUS, is_rate_limit_payload
from .models import RateLimitDecision, RateLimiterCommand

logger = structlog.get_logger(__name__)

MINIMUM_SPACING = 3.0
RATE_LIMIT_COOLDOWN = 15 * 60.0
HIGH_FAILURE_COOLDOWN = 10 * 60.0
CIRCUIT_RECOVERY_GRACE = 5 * 60.0
FAILURE_WINDOW = 15 * 60.0
HIGH_FAILURE_THRESHOLD = 10
CIRCUIT_OPEN_FAILURES = 3
HISTORY_LIMIT = 100


@dataclass
class RequestRecord:
    """One vendor call reported to the limiter."""

    timestamp: float
    success: bool
    response_time: float
    action: str


class RateLimiterBackend(ABC):
    """Interface shared by the in-process limiter and its remote client."""

    @abstractmethod
    async def check_limits(self) -> RateLimitDecision:
        """Decide whether the next vendor call may proceed."""
        pass

    @abstractmethod
    async def record_request(
        self,
        action: str,
        success: bool,
        response_time: float = 0.0,
        status: int | str | None = None,
    ) -> dict[str, Any]:
        """Report the outcome of a vendor call."""
        pass

    @abstractmethod
    async def get_status(self) -> dict[str, Any]:
        """Get limiter state, recent metrics and recommendations."""
        pass

    @abstractmethod
    async def reset_state(self) -> None:
        """Forget all history and lift every cooldown."""
        pass

    async def handle_command(self, command: RateLimiterCommand) -> dict[str, Any]:
        """Dispatch a service command body to the matching operation."""
        if command.action == "check_limits":
            return (await self.check_limits()).to_wire()
        if command.action == "record_request":
            return await self.record_request(
                command.api_action or "unknown",
                command.success,
                command.response_time,
                command.status,
            )
        if command.action == "get_status":
            return await self.get_status()
        await self.reset_state()
        return {"status": "reset", "message": "Rate limiter state reset successfully"}


class GlobalRateLimiter(RateLimiterBackend):
    """
    In-process global rate limiter.

    Enforces 3s spacing between allowed calls, a 15 minute cooldown after a
    vendor 8902, a circuit after three consecutive 8902s and a 10 minute
    cooldown when more than ten calls failed in the last 15 minutes.
    """

    def __init__(
        self, minimum_spacing: float = MINIMUM_SPACING, clock: Clock = time.time
    ):
        self.minimum_spacing = minimum_spacing
        self._clock = clock
        self._reset()

    def _reset(self) -> None:
        self.last_request_time: float | None = None
        self.consecutive_failures = 0
        self.cooldown_until = 0.0
        self.circuit_open = False
        self.history: deque[RequestRecord] = deque(maxlen=HISTORY_LIMIT)

    def _recent(self, now: float) -> list[RequestRecord]:
        cutoff = now - FAILURE_WINDOW
        return [record for record in self.history if record.timestamp > cutoff]

    async def check_limits(self) -> RateLimitDecision:
        now = self._clock()

        if self.circuit_open:
            recovery_at = self.cooldown_until + CIRCUIT_RECOVERY_GRACE
            if now > recovery_at:
                self.circuit_open = False
                self.consecutive_failures = 0
                logger.info("Rate limiter circuit breaker recovered")
            else:
                return RateLimitDecision(
                    should_allow=False,
                    reason="circuit_breaker_open",
                    wait_time=recovery_at - now,
                    message="Circuit breaker is open due to consecutive failures",
                )

        if now < self.cooldown_until:
            wait = self.cooldown_until - now
            return RateLimitDecision(
                should_allow=False,
                reason="rate_limit_cooldown",
                wait_time=wait,
                message=f"Rate limit cooldown active. Wait {wait:.0f} seconds",
            )

        if self.last_request_time is not None:
            elapsed = now - self.last_request_time
            if elapsed < self.minimum_spacing:
                wait = self.minimum_spacing - elapsed
                return RateLimitDecision(
                    should_allow=False,
                    reason="request_spacing",
                    wait_time=wait,
                    message="Minimum request spacing not met",
                )

        recent_failures = sum(1 for r in self._recent(now) if not r.success)
        if recent_failures > HIGH_FAILURE_THRESHOLD:
            self.cooldown_until = now + HIGH_FAILURE_COOLDOWN
            logger.warning(
                "High failure rate, activating cooldown",
                failures=recent_failures,
                cooldown=HIGH_FAILURE_COOLDOWN,
            )
            return RateLimitDecision(
                should_allow=False,
                reason="high_failure_rate",
                wait_time=HIGH_FAILURE_COOLDOWN,
                message="High failure rate detected. Activating 10-minute cooldown",
            )

        self.last_request_time = now
        return RateLimitDecision(
            should_allow=True,
            reason="allowed",
            wait_time=0.0,
            message="Request allowed",
        )

    async def record_request(
        self,
        action: str,
        success: bool,
        response_time: float = 0.0,
        status: int | str | None = None,
    ) -> dict[str, Any]:
        now = self._clock()
        self.history.append(
            RequestRecord(
                timestamp=now,
                success=bool(success),
                response_time=response_time,
                action=action or "unknown",
            )
        )

        if is_rate_limit_payload({"status": status}) or (
            isinstance(status, str) and str(RATE_LIMIT_STATUS) in status
        ):
            self.cooldown_until = now + RATE_LIMIT_COOLDOWN
            self.consecutive_failures += 1
            logger.warning(
                "Vendor rate limit recorded, activating cooldown",
                action=action,
                consecutive_failures=self.consecutive_failures,
            )
            if self.consecutive_failures >= CIRCUIT_OPEN_FAILURES:
                self.circuit_open = True
                logger.error("Rate limiter circuit breaker opened")
        elif success:
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1

        return {
            "status": "recorded",
            "consecutiveFailures": self.consecutive_failures,
            "circuitBreakerOpen": self.circuit_open,
        }

    async def get_status(self) -> dict[str, Any]:
        now = self._clock()
        recent = self._recent(now)
        total = len(recent)
        successful = sum(1 for r in recent if r.success)
        failed = total - successful

        if failed > HIGH_FAILURE_THRESHOLD:
            risk_level = "high"
        elif failed > 5:
            risk_level = "medium"
        else:
            risk_level = "low"

        return {
            "status": "ok",
            "rateLimitState": {
                "lastRequestTime": self.last_request_time,
                "consecutiveFailures": self.consecutive_failures,
                "rateLimitCooldownUntil": self.cooldown_until,
                "circuitBreakerOpen": self.circuit_open,
                "isInCooldown": now < self.cooldown_until,
                "cooldownRemaining": max(0.0, self.cooldown_until - now),
            },
            "metrics": {
                "totalRequests": total,
                "successfulRequests": successful,
                "failedRequests": failed,
                "successRate": round(successful / total * 100) if total else 0,
                "averageResponseTime": (
                    sum(r.response_time for r in recent) / total if total else 0.0
                ),
            },
            "recommendations": {
                "requestSpacing": self.minimum_spacing,
                "shouldThrottle": failed > 5,
                "riskLevel": risk_level,
            },
        }

    async def reset_state(self) -> None:
        self._reset()
        logger.warning("Rate limiter state manually reset")


class RemoteRateLimiterClient(RateLimiterBackend):
    """
    HTTP client for a rate limiter service in another process.

    Every failure raises TransientNetworkError so the coordinator can fall
    back to its local check.
    """

    def __init__(
        self,
        url: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 5.0,
    ):
        self.url = url
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def _post(self, command: RateLimiterCommand) -> dict[str, Any]:
        try:
            response = await self._client.post(self.url, json=command.to_wire())
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientNetworkError(
                f"Rate limiter unavailable: {e}", context={"url": self.url}
            ) from e
        if not isinstance(body, dict):
            raise TransientNetworkError("Rate limiter returned a non-object body")
        return body

    async def check_limits(self) -> RateLimitDecision:
        body = await self._post(RateLimiterCommand(action="check_limits"))
        try:
            return RateLimitDecision.model_validate(body)
        except PydanticValidationError as e:
            raise TransientNetworkError(f"Malformed rate limiter reply: {e}") from e

    async def record_request(
        self,
        action: str,
        success: bool,
        response_time: float = 0.0,
        status: int | str | None = None,
    ) -> dict[str, Any]:
        return await self._post(
            RateLimiterCommand(
                action="record_request",
                api_action=action,
                success=success,
                response_time=response_time,
                status=status,
            )
        )

    async def get_status(self) -> dict[str, Any]:
        return await self._post(RateLimiterCommand(action="get_status"))

    async def reset_state(self) -> None:
        await self._post(RateLimiterCommand(action="reset_state"))

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
