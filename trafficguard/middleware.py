"""FastAPI/Starlette HTTP middleware for rate limiting and request metrics."""
from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from trafficguard.metrics import MetricsStore
from trafficguard.rate_limit import RateLimitPolicy
from trafficguard.utils import get_client_ip, is_internal_request

LOGGER = logging.getLogger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]
HttpMiddleware = Callable[[Request, CallNext], Awaitable[Response]]


def rate_limit_middleware(
    policy: RateLimitPolicy,
    *,
    dev_mode: bool,
    key_func: Optional[Callable[[Request], str]] = None,
    skip: Optional[Callable[[Request], bool]] = None,
) -> HttpMiddleware:
    """Build an ``http`` middleware that enforces ``policy``.

    ``skip`` runs before any limiter state is touched. ``key_func`` replaces
    the default ``<client ip>:<path prefix>`` key, for example to limit by
    authenticated principal instead of address.
    """

    async def apply_rate_limiting(request: Request, call_next: CallNext) -> Response:
        if skip is not None and skip(request):
            return await call_next(request)

        path = request.url.path
        if key_func is not None:
            key = key_func(request)
        else:
            key = policy.default_key(get_client_ip(request.headers, dev_mode=dev_mode), path)

        decision = policy.evaluate(key, path)
        if not decision.admitted:
            LOGGER.info("rate limited", extra={"key": key, "path": path})
            return JSONResponse(
                status_code=429,
                content={"error": "Too many requests", "retryAfter": decision.reset_after_seconds},
                headers=decision.headers(),
            )

        response = await call_next(request)
        response.headers.update(decision.headers())
        return response

    return apply_rate_limiting


def metrics_middleware(
    store: MetricsStore,
    service_name: str,
    *,
    dev_mode: bool,
    get_user_id: Optional[Callable[[Request], Optional[str]]] = None,
) -> HttpMiddleware:
    """Build an ``http`` middleware that feeds every completed request to ``store``."""

    async def record_metrics(request: Request, call_next: CallNext) -> Response:
        start = time.perf_counter()
        ip = get_client_ip(request.headers, dev_mode=dev_mode)
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        except Exception:  # noqa: BLE001
            LOGGER.exception("Unhandled exception", extra={"client_ip": ip})
            raise
        finally:
            store.observe(
                service=service_name,
                method=request.method,
                path=request.url.path,
                status=status,
                duration_ms=round((time.perf_counter() - start) * 1000, 3),
                ip=ip,
                user_agent=request.headers.get("user-agent"),
                is_internal=is_internal_request(ip, dev_mode=dev_mode),
                user_id=get_user_id(request) if get_user_id is not None else None,
            )

    return record_metrics
