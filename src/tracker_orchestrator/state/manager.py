"""
Control store abstraction for the coordinator.

Provides pluggable backends for the state that must outlive a single
coordinator process:
- Memory: single-process deployments and tests
- Redis: shared across instances and cold starts
"""

import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any

import structlog
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from ..exceptions import StoreError, ValidationError

logger = structlog.get_logger(__name__)

EMERGENCY_KEY = "tracker:emergency_control"
REQUEST_SLOT_KEY = "tracker:request_slot"


@dataclass
class EmergencyControl:
    """Persisted emergency-stop record."""

    active: bool
    reason: str
    cooldown_until: float | None = None
    set_at: float | None = None

    def is_active(self, now: float) -> bool:
        """An expired cooldown no longer blocks traffic."""
        if not self.active:
            return False
        return self.cooldown_until is None or now < self.cooldown_until

    def remaining(self, now: float) -> float:
        if self.cooldown_until is None:
            return 0.0
        return max(0.0, self.cooldown_until - now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EmergencyControl":
        return cls(
            active=bool(data.get("active", False)),
            reason=str(data.get("reason", "")),
            cooldown_until=data.get("cooldown_until"),
            set_at=data.get("set_at"),
        )


class ControlStore(ABC):
    """Abstract base class for coordinator control state."""

    backend_name = "abstract"

    @abstractmethod
    async def get_emergency_control(self) -> EmergencyControl | None:
        """
        Get the persisted emergency-stop record.

        Returns:
            The record, or None if none was ever stored
        """
        pass

    @abstractmethod
    async def set_emergency_control(self, control: EmergencyControl) -> None:
        """
        Persist an emergency-stop record.

        Args:
            control: Record to store
        """
        pass

    @abstractmethod
    async def clear_emergency_control(self) -> None:
        """Remove any persisted emergency-stop record."""
        pass

    @abstractmethod
    async def acquire_request_slot(self, spacing: float, now: float) -> float:
        """
        Atomically claim the next vendor call slot.

        Args:
            spacing: Minimum seconds between two vendor calls
            now: Current time in seconds

        Returns:
            0.0 if the slot was claimed, otherwise seconds to wait before
            trying again
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if the store backend is healthy.

        Returns:
            True if healthy, False otherwise
        """
        pass

    async def close(self) -> None:
        """Release backend resources."""
        return None


class InMemoryControlStore(ControlStore):
    """Process-local control store."""

    backend_name = "memory"

    def __init__(self) -> None:
        self._control: EmergencyControl | None = None
        self._last_slot: float | None = None

    async def get_emergency_control(self) -> EmergencyControl | None:
        return self._control

    async def set_emergency_control(self, control: EmergencyControl) -> None:
        self._control = control
        logger.info(
            "Emergency control stored",
            backend=self.backend_name,
            active=control.active,
            reason=control.reason,
        )

    async def clear_emergency_control(self) -> None:
        self._control = None

    async def acquire_request_slot(self, spacing: float, now: float) -> float:
        if self._last_slot is not None:
            wait = self._last_slot + spacing - now
            if wait > 0:
                return wait
        self._last_slot = now
        return 0.0

    async def health_check(self) -> bool:
        return True


class RedisControlStore(ControlStore):
    """Redis-backed control store shared by every coordinator instance."""

    backend_name = "redis"

    def __init__(self, url: str, client: Any = None) -> None:
        self.url = url
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = aioredis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
        return self._client

    async def get_emergency_control(self) -> EmergencyControl | None:
        try:
            raw = await self._get_client().get(EMERGENCY_KEY)
        except (RedisError, OSError) as e:
            raise StoreError(
                f"Failed to read emergency control: {e}", backend=self.backend_name
            ) from e
        if not raw:
            return None
        try:
            return EmergencyControl.from_dict(json.loads(raw))
        except (TypeError, ValueError) as e:
            raise StoreError(
                f"Corrupt emergency control record: {e}", backend=self.backend_name
            ) from e

    async def set_emergency_control(self, control: EmergencyControl) -> None:
        try:
            await self._get_client().set(EMERGENCY_KEY, json.dumps(control.to_dict()))
        except (RedisError, OSError) as e:
            raise StoreError(
                f"Failed to persist emergency control: {e}", backend=self.backend_name
            ) from e
        logger.info(
            "Emergency control stored",
            backend=self.backend_name,
            active=control.active,
            reason=control.reason,
        )

    async def clear_emergency_control(self) -> None:
        try:
            await self._get_client().delete(EMERGENCY_KEY)
        except (RedisError, OSError) as e:
            raise StoreError(
                f"Failed to clear emergency control: {e}", backend=self.backend_name
            ) from e

    async def acquire_request_slot(self, spacing: float, now: float) -> float:
        spacing_ms = max(1, int(spacing * 1000))
        client = self._get_client()
        try:
            claimed = await client.set(REQUEST_SLOT_KEY, str(now), nx=True, px=spacing_ms)
            if claimed:
                return 0.0
            remaining_ms = await client.pttl(REQUEST_SLOT_KEY)
        except (RedisError, OSError) as e:
            raise StoreError(
                f"Failed to acquire request slot: {e}", backend=self.backend_name
            ) from e
        # -2: key vanished between SET and PTTL, -1: no expiry
        if remaining_ms is None or remaining_ms < 0:
            return 0.001
        return remaining_ms / 1000.0

    async def health_check(self) -> bool:
        try:
            return bool(await self._get_client().ping())
        except (RedisError, OSError) as e:
            logger.warning("Control store health check failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class ControlStoreFactory:
    """Factory for creating the configured control store."""

    @staticmethod
    def create_control_store(backend: str, **kwargs: Any) -> ControlStore:
        """
        Create a control store.

        Args:
            backend: 'memory' or 'redis'
            **kwargs: Backend options (redis_url)

        Returns:
            ControlStore instance

        Raises:
            ValidationError: If the backend is not supported
        """
        backend = backend.lower()

        if backend == "memory":
            logger.info("Creating in-memory control store")
            return InMemoryControlStore()
        elif backend == "redis":
            redis_url = kwargs.get("redis_url")
            if not redis_url:
                raise ValidationError("redis_url is required for the redis backend")
            logger.info("Creating Redis control store", url=redis_url.split("@")[-1])
            return RedisControlStore(redis_url)
        else:
            raise ValidationError(
                f"Unknown control store backend: {backend}. "
                f"Supported backends: {ControlStoreFactory.get_supported_backends()}"
            )

    @staticmethod
    def get_supported_backends() -> list[str]:
        """Get list of supported backends."""
        return ["memory", "redis"]
