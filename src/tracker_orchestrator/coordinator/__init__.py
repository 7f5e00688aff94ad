"""
Server-side request coordination.

The coordinator is the single gateway to the vendor API: global spacing,
response caching, 8902 lockout and the persisted emergency stop.
"""

from .cache import ResponseCache
from .client import CoordinatorClient, PositionsResult
from .coordinator import Coordinator
from .models import CoordinatorRequest, CoordinatorResponse, RateLimitDecision
from .rate_limiter import GlobalRateLimiter, RateLimiterBackend, RemoteRateLimiterClient

__all__ = [
    "Coordinator",
    "CoordinatorClient",
    "CoordinatorRequest",
    "CoordinatorResponse",
    "GlobalRateLimiter",
    "PositionsResult",
    "RateLimitDecision",
    "RateLimiterBackend",
    "RemoteRateLimiterClient",
    "ResponseCache",
]
