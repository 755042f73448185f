"""
Shared rate limiting configuration.

Defines the global SlowAPI limiter instance so the charge routers and the
FastAPI app share one limiter without importing each other.
"""
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from billing_engine.core.config import settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["1000/hour"],
    enabled=settings.rate_limit_enabled,
)

# Limit applied to endpoints that reach the payment gateway
CHARGE_RATE_LIMIT = "30/minute"

# Re-export handler and exception for app wiring
rate_limit_handler = _rate_limit_exceeded_handler
rate_limit_exception = RateLimitExceeded
