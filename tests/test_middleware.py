from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from trafficguard.metrics import MetricsStore
from trafficguard.middleware import metrics_middleware, rate_limit_middleware
from trafficguard.rate_limit import RateLimitPolicy, RateLimitRule, RateLimitStore


def make_app(**limiter_options):
    store = RateLimitStore()
    policy = RateLimitPolicy(store, RateLimitRule(1, 60))
    app = FastAPI()
    app.middleware("http")(rate_limit_middleware(policy, dev_mode=False, **limiter_options))

    @app.get("/items")
    def items() -> dict:
        return {"ok": True}

    return app, store


def test_key_func_limits_by_principal():
    app, store = make_app(key_func=lambda request: request.headers.get("x-api-key", "anon"))
    client = TestClient(app)

    assert client.get("/items", headers={"X-API-Key": "alice"}).status_code == 200
    assert client.get("/items", headers={"X-API-Key": "alice"}).status_code == 429
    assert client.get("/items", headers={"X-API-Key": "bob"}).status_code == 200
    assert "alice" in store


def test_skip_leaves_store_untouched():
    app, store = make_app(skip=lambda request: True)
    client = TestClient(app)

    for _ in range(3):
        assert client.get("/items").status_code == 200
    assert len(store) == 0


def test_production_mode_keys_missing_ip_as_empty():
    app, store = make_app()
    client = TestClient(app)

    client.get("/items")

    assert ":/items" in store


def test_metrics_middleware_records_unhandled_errors_as_500():
    metrics = MetricsStore()
    app = FastAPI()
    app.middleware("http")(metrics_middleware(metrics, "svc", dev_mode=True))

    @app.get("/boom")
    def boom(request: Request) -> dict:
        raise RuntimeError("boom")

    client = TestClient(app, raise_server_exceptions=False)
    assert client.get("/boom").status_code == 500

    [record] = metrics.recent()
    assert record.status == 500
    assert record.ip == "unknown"
    assert record.is_internal
