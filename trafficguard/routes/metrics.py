"""Owner-only reporting endpoints over a :class:`MetricsStore`."""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from trafficguard.metrics import (
    BY_IP_LIMIT_CEILING,
    RECENT_LIMIT_CEILING,
    SUSPICIOUS_LIMIT_CEILING,
    MetricsStore,
)

TOP_N = 10

UserLookup = Callable[[Request], Optional[Dict[str, Any]]]


def _top(counts: Dict[str, int]) -> List[List[Any]]:
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return [[key, count] for key, count in ranked[:TOP_N]]


def create_metrics_router(
    store: MetricsStore,
    get_user: UserLookup,
    owner_user_id: Optional[str],
) -> APIRouter:
    """Create metrics routes; every route requires the configured owner."""

    def require_owner(request: Request) -> Dict[str, Any]:
        user = get_user(request)
        if not user:
            raise HTTPException(status_code=401, detail="Authentication required")
        if not owner_user_id or user.get("id") != owner_user_id:
            raise HTTPException(status_code=403, detail="Forbidden - owner access required")
        return user

    router = APIRouter(dependencies=[Depends(require_owner)])

    @router.get("/summary")
    def summary() -> dict:
        stats = store.summary()
        payload = stats.to_dict()
        payload["topPaths"] = _top(stats.requests_by_path)
        payload["topIPs"] = _top(stats.requests_by_ip)
        return payload

    @router.get("/recent")
    def recent(limit: int = Query(100, ge=0)) -> list:
        return [record.to_dict() for record in store.recent(min(limit, RECENT_LIMIT_CEILING))]

    @router.get("/suspicious")
    def suspicious(limit: int = Query(50, ge=0)) -> list:
        return [
            record.to_dict()
            for record in store.suspicious(min(limit, SUSPICIOUS_LIMIT_CEILING))
        ]

    @router.get("/ip/{ip}")
    def by_ip(ip: str, limit: int = Query(50, ge=0)) -> list:
        return [record.to_dict() for record in store.by_ip(ip, min(limit, BY_IP_LIMIT_CEILING))]

    @router.get("/status")
    def status_breakdown() -> dict:
        return store.status_breakdown()

    return router
