"""
Activity-tiered device batching and adaptive polling intervals.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from ..config import SmartPollingConfig
from ..exceptions import ValidationError
from .request_manager import Clock, Priority, RequestManager, Sleep

logger = structlog.get_logger(__name__)

HIGH_ACTIVITY_WINDOW = 3600.0
MEDIUM_ACTIVITY_WINDOW = 6 * 3600.0

TIER_BATCH_LIMITS = {
    Priority.HIGH: 30,
    Priority.MEDIUM: 50,
    Priority.LOW: 100,
}
TIER_BATCH_DELAYS = {
    Priority.HIGH: 1.0,
    Priority.MEDIUM: 2.0,
    Priority.LOW: 5.0,
}

SHRINK_FACTOR = 0.8
GROWTH_FACTOR = 1.2
EMPTY_POLLS_BEFORE_GROWTH = 3


@dataclass
class DeviceBatch:
    """Devices polled together in one vendor call."""

    device_ids: list[str]
    priority: Priority

    @property
    def size(self) -> int:
        return len(self.device_ids)


@dataclass
class BatchResult:
    """Outcome of one batch in a polling cycle."""

    batch: DeviceBatch
    data: list[Any] = field(default_factory=list)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


class SmartPolling:
    """
    Device batching and adaptive interval engine.

    Devices are grouped by how recently they reported activity so busy
    vehicles are polled in small, frequent, well-retried batches and idle
    ones in large cheap batches.
    """

    def __init__(
        self,
        request_manager: RequestManager,
        config: SmartPollingConfig | None = None,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
    ):
        """
        Initialize smart polling.

        Args:
            request_manager: Manager every batch call is submitted through
            config: Polling configuration
            clock: Wall-clock source (epoch seconds) matching activity times
            sleep: Awaitable sleep for inter-batch delays
        """
        self.request_manager = request_manager
        self.config = config or SmartPollingConfig()
        self._clock = clock
        self._sleep = sleep
        self._current_interval = self.config.base_interval
        self._empty_polls = 0

    @property
    def current_interval(self) -> float:
        return self._current_interval

    @property
    def consecutive_empty_polls(self) -> int:
        return self._empty_polls

    def _tier_limit(self, priority: Priority) -> int:
        return min(TIER_BATCH_LIMITS[priority], self.config.max_devices_per_batch)

    def classify_device(self, last_activity: float | None, now: float) -> Priority:
        if last_activity is None:
            return Priority.LOW
        age = now - last_activity
        if age < HIGH_ACTIVITY_WINDOW:
            return Priority.HIGH
        if age < MEDIUM_ACTIVITY_WINDOW:
            return Priority.MEDIUM
        return Priority.LOW

    def create_device_batches(
        self,
        device_ids: Iterable[str],
        activity_map: Mapping[str, float | None] | None = None,
        high_priority_ids: Iterable[str] | None = None,
    ) -> list[DeviceBatch]:
        """
        Partition devices into batches.

        Duplicate ids are dropped (first occurrence wins), so every device
        lands in exactly one batch. Batches come out high tier first.
        Devices in ``high_priority_ids`` (watched in real time) are placed
        in the high tier whatever their recent activity.
        """
        unique_ids = list(dict.fromkeys(device_ids))
        if not unique_ids:
            return []
        forced = set(high_priority_ids or ())

        if not self.config.intelligent_filtering:
            hot = [d for d in unique_ids if d in forced]
            rest = [d for d in unique_ids if d not in forced]
            size = self.config.max_devices_per_batch
            return self._chunk(hot, Priority.HIGH, size) + self._chunk(
                rest, Priority.MEDIUM, size
            )

        activity_map = activity_map or {}
        now = self._clock()
        tiers: dict[Priority, list[str]] = {priority: [] for priority in Priority}
        for device_id in unique_ids:
            if device_id in forced:
                tier = Priority.HIGH
            else:
                tier = self.classify_device(activity_map.get(device_id), now)
            tiers[tier].append(device_id)

        batches: list[DeviceBatch] = []
        for priority in (Priority.HIGH, Priority.MEDIUM, Priority.LOW):
            batches.extend(
                self._chunk(tiers[priority], priority, self._tier_limit(priority))
            )

        logger.debug(
            "Created device batches",
            devices=len(unique_ids),
            batches=len(batches),
            high=len(tiers[Priority.HIGH]),
            medium=len(tiers[Priority.MEDIUM]),
            low=len(tiers[Priority.LOW]),
        )
        return batches

    @staticmethod
    def _chunk(ids: list[str], priority: Priority, size: int) -> list[DeviceBatch]:
        return [
            DeviceBatch(device_ids=ids[i : i + size], priority=priority)
            for i in range(0, len(ids), size)
        ]

    def calculate_adaptive_interval(self, has_new_data: bool) -> float:
        """Shrink the interval on fresh data, grow it after repeated empty polls."""
        if not self.config.adaptive_intervals:
            return self._current_interval

        if has_new_data:
            self._empty_polls = 0
            self._current_interval = max(
                self.config.min_interval, self._current_interval * SHRINK_FACTOR
            )
        else:
            self._empty_polls += 1
            if self._empty_polls >= EMPTY_POLLS_BEFORE_GROWTH:
                self._current_interval = min(
                    self.config.max_interval, self._current_interval * GROWTH_FACTOR
                )
        return self._current_interval

    def reset_interval(self) -> None:
        self._current_interval = self.config.base_interval
        self._empty_polls = 0

    async def execute_batched_polling(
        self,
        batches: list[DeviceBatch],
        poll_fn: Callable[[list[str]], Awaitable[Any]],
    ) -> list[BatchResult]:
        """
        Run each batch through the request manager.

        A failing batch yields a BatchResult with ``error`` set; the cycle
        carries on with the remaining batches.
        """
        results: list[BatchResult] = []

        for index, batch in enumerate(batches):
            retries = 3 if batch.priority == Priority.HIGH else 2

            def work(ids: list[str] = batch.device_ids) -> Awaitable[Any]:
                return poll_fn(ids)

            try:
                data = await self.request_manager.queue_request(
                    work, priority=batch.priority, retries=retries
                )
                results.append(BatchResult(batch=batch, data=_as_list(data)))
            except Exception as e:
                logger.warning(
                    "Batch polling failed",
                    priority=batch.priority.value,
                    devices=batch.size,
                    error=str(e),
                )
                results.append(BatchResult(batch=batch, error=str(e)))

            if index < len(batches) - 1:
                await self._sleep(TIER_BATCH_DELAYS[batch.priority])

        return results

    def get_optimal_polling_settings(self) -> dict[str, Any]:
        """Recommend interval, batch size and a health tier from manager health."""
        health = self.request_manager.get_health_status()
        base = self.config.base_interval
        max_interval = self.config.max_interval
        batch_size = self.config.max_devices_per_batch

        if not health["is_healthy"]:
            tier, interval, factor = "poor", max_interval, 0.5
        elif health["consecutive_failures"] > 0:
            tier, interval, factor = "fair", min(base * 1.5, max_interval), 0.7
        elif health["queue_length"] > 5:
            tier, interval, factor = "good", min(base * 1.2, max_interval), 0.8
        else:
            tier, interval, factor = "excellent", base, 1.0

        return {
            "recommended_interval": interval,
            "recommended_batch_size": max(1, int(batch_size * factor)),
            "health": tier,
            "enable_adaptive_polling": tier != "poor",
        }

    def update_config(self, **changes: Any) -> SmartPollingConfig:
        """Merge configuration changes, keeping the current interval in bounds."""
        unknown = set(changes) - set(SmartPollingConfig.model_fields)
        if unknown:
            raise ValidationError(f"Unknown polling parameters: {sorted(unknown)}")
        try:
            self.config = SmartPollingConfig.model_validate(
                {**self.config.model_dump(), **changes}
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid polling parameters: {e}") from e

        self._current_interval = min(
            max(self._current_interval, self.config.min_interval),
            self.config.max_interval,
        )
        logger.info("Smart polling configuration updated", **changes)
        return self.config


def _as_list(data: Any) -> list[Any]:
    if data is None:
        return []
    if isinstance(data, list):
        return data
    return [data]
