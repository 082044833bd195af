from __future__ import annotations

import threading

import pytest

from trafficguard.rate_limit import (
    RateLimitConfigError,
    RateLimiter,
    RateLimitPolicy,
    RateLimitRule,
    RateLimitStore,
    RateLimitWindow,
)


def make_policy(limit=2, window=10, endpoints=None) -> RateLimitPolicy:
    return RateLimitPolicy(RateLimitStore(), RateLimitRule(limit, window), endpoints)


def test_third_request_in_window_is_denied():
    policy = make_policy(limit=2, window=10)

    results = [policy.evaluate("1.2.3.4:/api", "/api", now=100.0 + i * 0.3) for i in range(3)]

    assert [r.admitted for r in results] == [True, True, False]
    assert [r.remaining for r in results] == [1, 0, 0]
    assert 0 < results[2].reset_after_seconds <= 10
    assert results[2].headers()["Retry-After"] == str(results[2].reset_after_seconds)


def test_admission_is_strict_at_limit():
    policy = make_policy(limit=5, window=60)
    admitted = [policy.evaluate("k", "/x", now=1.0).admitted for _ in range(6)]
    assert admitted == [True] * 5 + [False]
    assert len(policy.store.get_or_create("k").timestamps) == 5


def test_window_slides():
    policy = make_policy(limit=1, window=10)
    assert policy.evaluate("k", "/", now=0.0).admitted
    assert not policy.evaluate("k", "/", now=9.5).admitted
    assert policy.evaluate("k", "/", now=10.0).admitted


def test_reset_is_measured_from_oldest_surviving_request():
    policy = make_policy(limit=2, window=10)
    policy.evaluate("k", "/", now=0.0)
    policy.evaluate("k", "/", now=4.0)
    denied = policy.evaluate("k", "/", now=6.5)
    assert denied.reset_after_seconds == 4


def test_headers_on_admit_have_no_retry_after():
    decision = make_policy(limit=3, window=60).evaluate("k", "/", now=0.0)
    headers = decision.headers()
    assert headers["X-RateLimit-Limit"] == "3"
    assert headers["X-RateLimit-Remaining"] == "2"
    assert headers["X-RateLimit-Reset"] == "60"
    assert "Retry-After" not in headers


def test_longest_prefix_wins():
    policy = make_policy(
        limit=100,
        window=60,
        endpoints={
            "/api": RateLimitRule(50, 60),
            "/api/auth": RateLimitRule(10, 60),
        },
    )
    assert policy.rule_for_path("/api/auth/login") == RateLimitRule(10, 60)
    assert policy.rule_for_path("/api/users") == RateLimitRule(50, 60)
    assert policy.rule_for_path("/static/app.js") == RateLimitRule(100, 60)


def test_default_key_uses_first_three_segments():
    policy = make_policy()
    assert policy.default_key("1.2.3.4", "/api/auth/login") == "1.2.3.4:/api/auth"


@pytest.mark.parametrize("limit,window", [(0, 60), (10, 0), (-1, 60), (True, 60), (1.5, 60)])
def test_invalid_rules_are_rejected(limit, window):
    with pytest.raises(RateLimitConfigError):
        RateLimitRule(limit, window)


def test_window_longer_than_retention_is_rejected():
    store = RateLimitStore(retention_seconds=300)
    with pytest.raises(RateLimitConfigError):
        RateLimitPolicy(store, RateLimitRule(10, 60), {"/api/import": RateLimitRule(5, 600)})


def test_missing_default_rule_is_rejected():
    with pytest.raises(RateLimitConfigError):
        RateLimitPolicy(RateLimitStore(), None)  # type: ignore[arg-type]


def test_prune_is_idempotent():
    window = RateLimitWindow()
    window.timestamps.extend([1.0, 2.0, 5.0, 9.0])
    RateLimitStore.prune(window, now=10.0, retention_seconds=6)
    assert list(window.timestamps) == [5.0, 9.0]
    RateLimitStore.prune(window, now=10.0, retention_seconds=6)
    assert list(window.timestamps) == [5.0, 9.0]


def test_sweep_removes_only_idle_keys():
    store = RateLimitStore(retention_seconds=300)
    policy = RateLimitPolicy(store, RateLimitRule(10, 60))
    policy.evaluate("old", "/", now=0.0)
    policy.evaluate("fresh", "/", now=250.0)

    assert store.sweep(now=310.0) == 1
    assert "old" not in store
    assert "fresh" in store
    assert len(store) == 1


def test_swept_window_is_not_reused():
    store = RateLimitStore(retention_seconds=300)
    policy = RateLimitPolicy(store, RateLimitRule(1, 60))
    stale = store.get_or_create("k")
    store.sweep(now=1000.0)
    assert stale.retired

    assert policy.evaluate("k", "/", now=1000.0).admitted
    assert store.get_or_create("k") is not stale
    assert list(store.get_or_create("k").timestamps) == [1000.0]


def test_reaper_thread_starts_and_stops():
    store = RateLimitStore(sweep_interval_seconds=60)
    store.start()
    reaper = store._reaper
    assert reaper is not None and reaper.is_alive()
    store.close()
    assert not reaper.is_alive()
    store.close()


def test_concurrent_requests_never_exceed_limit():
    policy = make_policy(limit=25, window=60)
    results = []
    results_lock = threading.Lock()
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        for _ in range(10):
            decision = policy.evaluate("shared", "/api", now=5.0)
            with results_lock:
                results.append(decision.admitted)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 25
    assert len(policy.store.get_or_create("shared").timestamps) == 25


def test_simple_rate_limiter_allows_until_limit():
    limiter = RateLimiter(2, 60)
    assert limiter.allow("10.0.0.1", now=0.0)
    assert limiter.allow("10.0.0.1", now=1.0)
    assert not limiter.allow("10.0.0.1", now=2.0)
    assert limiter.allow("10.0.0.2", now=2.0)
