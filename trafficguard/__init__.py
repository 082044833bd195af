"""Request throttling and traffic observation for FastAPI services."""

from .config import Settings, get_settings
from .logging_config import configure_logging
from .metrics import MetricsStore, RequestRecord
from .rate_limit import RateLimitPolicy, RateLimitRule, RateLimitStore, RateLimiter

__all__ = [
    "Settings",
    "get_settings",
    "configure_logging",
    "MetricsStore",
    "RequestRecord",
    "RateLimitPolicy",
    "RateLimitRule",
    "RateLimitStore",
    "RateLimiter",
]
