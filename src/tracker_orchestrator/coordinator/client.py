"""
Client for the coordinator.

Client-side code never talks to the vendor directly; it sends actions here.
Identical concurrent requests share one round trip, short waits requested
by the coordinator are retried automatically, and failures are mapped onto
the orchestrator's error taxonomy so the RequestManager can react to them.
"""

import asyncio
import json
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import (
    EmergencyStopError,
    LimiterRejectedError,
    TransientNetworkError,
    ValidationError,
    VendorAPIError,
    VendorRateLimitError,
)
from ..polling.request_manager import Clock, Sleep
from .models import CoordinatorRequest, CoordinatorResponse, RequestPriority

if TYPE_CHECKING:
    from .coordinator import Coordinator

logger = structlog.get_logger(__name__)

DEFAULT_LOCKOUT = 30 * 60.0


@dataclass
class PositionsResult:
    """Positions returned by one lastposition call."""

    positions: list[dict[str, Any]]
    last_query_time: Any = None


class CoordinatorClient:
    """
    Sends vendor actions to the coordinator over HTTP or in-process.

    Args:
        base_url: Coordinator endpoint (ignored when ``coordinator`` is given)
        coordinator: In-process coordinator to call directly
        requester_id: Identifier reported with each request
        http_client: Optional preconfigured httpx client
        auto_retry_wait: Retry once when asked to wait less than this
    """

    def __init__(
        self,
        base_url: str = "",
        coordinator: "Coordinator | None" = None,
        requester_id: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        auto_retry_wait: float = 10.0,
        timeout: float = 30.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        if not base_url and coordinator is None:
            raise ValidationError("Either base_url or coordinator is required")
        self.base_url = base_url
        self.coordinator = coordinator
        self.requester_id = requester_id or f"client_{uuid.uuid4().hex[:12]}"
        self.auto_retry_wait = auto_retry_wait
        self._timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None
        self._clock = clock
        self._sleep = sleep

        self._inflight: dict[str, asyncio.Future[CoordinatorResponse]] = {}
        self._emergency_until = 0.0
        self.requests_sent = 0
        self.deduplicated_requests = 0
        self.last_error: str | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    @staticmethod
    def _dedupe_key(action: str, params: dict[str, Any]) -> str:
        return f"{action}:{json.dumps(params, sort_keys=True, default=str)}"

    async def send_request(
        self,
        action: str,
        params: dict[str, Any] | None = None,
        priority: RequestPriority = "normal",
    ) -> CoordinatorResponse:
        """
        Send one action, sharing the round trip with identical in-flight ones.

        Returns the raw coordinator response; see ``call`` for the raising
        variant.
        """
        params = params or {}
        key = self._dedupe_key(action, params)

        existing = self._inflight.get(key)
        if existing is not None:
            self.deduplicated_requests += 1
            logger.debug("Joining in-flight coordinator request", action=action)
            return await asyncio.shield(existing)

        request = CoordinatorRequest(
            action=action,
            params=params,
            priority=priority,
            requester_id=self.requester_id,
        )
        task = asyncio.ensure_future(self._send_with_retry(request))
        self._inflight[key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._inflight.get(key) is task:
                del self._inflight[key]

    async def _send_with_retry(self, request: CoordinatorRequest) -> CoordinatorResponse:
        response = await self._send(request)
        if (
            not response.success
            and response.should_wait
            and response.wait_time is not None
            and response.wait_time < self.auto_retry_wait
        ):
            logger.info(
                "Coordinator asked to wait, retrying",
                action=request.action,
                wait_time=response.wait_time,
            )
            await self._sleep(response.wait_time)
            response = await self._send(request)
        return response

    async def _send(self, request: CoordinatorRequest) -> CoordinatorResponse:
        self.requests_sent += 1
        if self.coordinator is not None:
            response = await self.coordinator.handle(request)
        else:
            response = await self._post(request)

        if response.emergency_stop or response.rate_limit_detected:
            lockout = response.cooldown_remaining or DEFAULT_LOCKOUT
            self._emergency_until = max(self._emergency_until, self._clock() + lockout)
        if not response.success:
            self.last_error = response.error
        return response

    async def _post(self, request: CoordinatorRequest) -> CoordinatorResponse:
        try:
            http_response = await self._get_client().post(
                self.base_url, json=request.to_wire()
            )
        except httpx.HTTPError as e:
            self.last_error = str(e)
            raise TransientNetworkError(
                f"Coordinator unreachable: {e}", context={"action": request.action}
            ) from e

        try:
            response = CoordinatorResponse.model_validate(http_response.json())
        except (ValueError, PydanticValidationError) as e:
            raise TransientNetworkError(
                f"Malformed coordinator response (HTTP {http_response.status_code})",
                context={"action": request.action},
            ) from e
        response.http_status = http_response.status_code
        return response

    async def call(
        self,
        action: str,
        params: dict[str, Any] | None = None,
        priority: RequestPriority = "normal",
    ) -> Any:
        """Send an action and return its data, raising on any failure."""
        response = await self.send_request(action, params, priority)
        return self.raise_for_response(action, response)

    @staticmethod
    def raise_for_response(action: str, response: CoordinatorResponse) -> Any:
        """Return response data or raise the matching orchestrator error."""
        if response.success:
            return response.data

        message = response.error or f"Coordinator request failed: {action}"
        context = {"action": action, "http_status": response.http_status}

        if response.rate_limit_detected:
            raise VendorRateLimitError(
                message,
                retry_after=response.cooldown_remaining or DEFAULT_LOCKOUT,
                context=context,
            )
        if response.emergency_stop:
            raise EmergencyStopError(
                message, retry_after=response.cooldown_remaining, context=context
            )
        if response.cooldown_remaining:
            raise VendorRateLimitError(
                message, retry_after=response.cooldown_remaining, context=context
            )
        if response.should_wait:
            raise LimiterRejectedError(
                message, retry_after=response.wait_time, context=context
            )
        if response.http_status in (400, 422):
            raise ValidationError(message, context=context)
        raise VendorAPIError(
            message, status=response.vendor_status, action=action, context=context
        )

    async def get_device_list(self, username: str) -> list[dict[str, Any]]:
        """Fetch the account's devices, flattened across groups."""
        data = await self.call("querymonitorlist", {"username": username}, "low")
        if not isinstance(data, dict):
            return []
        devices: list[dict[str, Any]] = []
        groups = data.get("groups")
        if isinstance(groups, list):
            for group in groups:
                group_devices = group.get("devices") if isinstance(group, dict) else None
                if isinstance(group_devices, list):
                    devices.extend(group_devices)
        elif isinstance(data.get("devices"), list):
            devices = data["devices"]
        return devices

    async def get_last_positions(
        self, device_ids: list[str], last_query_time: Any = None
    ) -> PositionsResult:
        """Fetch the latest positions for a set of devices."""
        params: dict[str, Any] = {"deviceids": list(device_ids)}
        if last_query_time is not None:
            params["lastquerypositiontime"] = last_query_time
        data = await self.call("lastposition", params)
        if not isinstance(data, dict):
            return PositionsResult(positions=[], last_query_time=last_query_time)
        records = data.get("records")
        return PositionsResult(
            positions=records if isinstance(records, list) else [],
            last_query_time=data.get("lastquerypositiontime", last_query_time),
        )

    def get_status(self) -> dict[str, Any]:
        """Client-side view of coordinator state. Never raises."""
        remaining = max(0.0, self._emergency_until - self._clock())
        return {
            "emergency_stop": remaining > 0,
            "emergency_stop_remaining": remaining,
            "inflight_requests": len(self._inflight),
            "requests_sent": self.requests_sent,
            "deduplicated_requests": self.deduplicated_requests,
            "last_error": self.last_error,
            "mode": "in_process" if self.coordinator is not None else "http",
        }

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
