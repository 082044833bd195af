"""FastAPI application guarded by the trafficguard rate limiter and metrics recorder."""
from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from trafficguard.config import Settings, get_settings
from trafficguard.logging_config import configure_logging
from trafficguard.metrics import MetricsStore
from trafficguard.middleware import metrics_middleware, rate_limit_middleware
from trafficguard.rate_limit import RateLimitPolicy, RateLimitStore
from trafficguard.routes import create_metrics_router

configure_logging()
LOGGER = logging.getLogger(__name__)

UNLIMITED_PATHS = ("/health",)


def _token_user_lookup(settings: Settings):
    """Map ``Authorization: Bearer <metrics token>`` to the metrics owner."""

    def get_user(request: Request) -> Optional[Dict[str, Any]]:
        if not settings.metrics_token or not settings.metrics_owner_id:
            return None
        scheme, _, token = request.headers.get("authorization", "").partition(" ")
        if scheme.lower() != "bearer" or not secrets.compare_digest(
            token.encode(), settings.metrics_token.encode()
        ):
            return None
        request.state.user_id = settings.metrics_owner_id
        return {"id": settings.metrics_owner_id}

    return get_user


def _request_user_id(request: Request) -> Optional[str]:
    return getattr(request.state, "user_id", None)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Wire the limiter and metrics stores into a new application."""

    settings = settings or get_settings()
    dev_mode = not settings.is_production

    rate_limit_store = RateLimitStore(
        retention_seconds=settings.rate_limit_retention_seconds,
        sweep_interval_seconds=settings.rate_limit_sweep_seconds,
    )
    policy = RateLimitPolicy.from_limits(
        rate_limit_store,
        settings.rate_limit_requests,
        settings.rate_limit_window_seconds,
        settings.rate_limit_endpoints,
    )
    metrics_store = MetricsStore(max_records=settings.metrics_max_records)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rate_limit_store.start()
        LOGGER.info("trafficguard started", extra={"service": settings.service_name})
        try:
            yield
        finally:
            rate_limit_store.close()

    app = FastAPI(title=f"{settings.service_name} traffic guard", lifespan=lifespan)
    app.state.settings = settings
    app.state.rate_limit_store = rate_limit_store
    app.state.rate_limit_policy = policy
    app.state.metrics_store = metrics_store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(
        rate_limit_middleware(
            policy,
            dev_mode=dev_mode,
            skip=lambda request: request.url.path in UNLIMITED_PATHS,
        )
    )
    # Registered last so it wraps the limiter and also records 429 responses.
    app.middleware("http")(
        metrics_middleware(
            metrics_store,
            settings.service_name,
            dev_mode=dev_mode,
            get_user_id=_request_user_id,
        )
    )

    app.include_router(
        create_metrics_router(
            metrics_store,
            get_user=_token_user_lookup(settings),
            owner_user_id=settings.metrics_owner_id,
        ),
        prefix="/api/metrics",
        tags=["metrics"],
    )

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "service": settings.service_name}

    @app.get("/api/ping")
    def ping() -> dict:
        return {"pong": True}

    return app


app = create_app()
