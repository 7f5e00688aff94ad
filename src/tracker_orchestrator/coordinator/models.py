"""
Wire models for the coordinator and the global rate limiter.

Python attributes are snake_case; JSON bodies use camelCase aliases.
All durations are in seconds.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

RequestPriority = Literal["high", "medium", "low", "normal"]


class WireModel(BaseModel):
    """Base for models exchanged over HTTP."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class CoordinatorRequest(WireModel):
    """A vendor action submitted to the coordinator."""

    action: str = Field(..., min_length=1, description="Vendor action name")
    params: dict[str, Any] = Field(default_factory=dict)
    priority: RequestPriority = Field(default="normal")
    requester_id: str | None = Field(default=None)

    @property
    def is_high_priority(self) -> bool:
        return self.priority == "high"


class CoordinatorResponse(WireModel):
    """Coordinator reply; ``http_status`` is transport metadata only."""

    success: bool
    data: Any = None
    error: str | None = None
    from_cache: bool | None = None
    cache_age: float | None = None
    should_wait: bool | None = None
    wait_time: float | None = None
    emergency_stop: bool | None = None
    cooldown_remaining: float | None = None
    rate_limit_detected: bool | None = None
    vendor_status: int | None = None
    http_status: int = Field(default=200, exclude=True)


class RateLimitDecision(WireModel):
    """Answer of a rate limiter check."""

    should_allow: bool
    reason: str = "allowed"
    wait_time: float = 0.0
    message: str = ""
    recommended_delay: float = 0.0


class RateLimiterCommand(WireModel):
    """Body accepted by the rate limiter service."""

    action: Literal["check_limits", "record_request", "get_status", "reset_state"] = (
        "check_limits"
    )
    api_action: str | None = None
    success: bool = False
    response_time: float = 0.0
    status: int | str | None = None


class EmergencyStopCommand(WireModel):
    """Operator request to halt vendor traffic."""

    reason: str = Field(default="Operator emergency stop")
    duration: float | None = Field(default=None, gt=0)
