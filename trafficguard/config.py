"""Application settings and environment loading utilities."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional, Tuple


def _load_dotenv() -> None:
    env_path = Path(".env")
    if not env_path.exists():
        return
    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


_load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer for environment variable {name}: {raw!r}") from exc


def parse_endpoint_limits(raw: str, name: str = "TRAFFICGUARD_RATE_LIMIT_ENDPOINTS") -> Dict[str, Tuple[int, int]]:
    """Parse ``/prefix=limit:window`` pairs separated by commas."""

    overrides: Dict[str, Tuple[int, int]] = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        prefix, sep, rule = chunk.partition("=")
        limit, colon, window = rule.partition(":")
        if not sep or not colon or not prefix.strip().startswith("/"):
            raise RuntimeError(f"Invalid rate limit override in {name}: {chunk!r}")
        try:
            overrides[prefix.strip()] = (int(limit), int(window))
        except ValueError as exc:
            raise RuntimeError(f"Invalid rate limit override in {name}: {chunk!r}") from exc
    return overrides


@dataclass(frozen=True)
class Settings:
    """Runtime configuration derived from environment variables."""

    service_name: str = "trafficguard"
    environment: str = "development"
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 60
    rate_limit_endpoints: Dict[str, Tuple[int, int]] = field(default_factory=dict)
    rate_limit_retention_seconds: int = 300
    rate_limit_sweep_seconds: int = 60
    metrics_max_records: int = 1000
    metrics_owner_id: Optional[str] = None
    metrics_token: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        endpoints = parse_endpoint_limits(os.getenv("TRAFFICGUARD_RATE_LIMIT_ENDPOINTS", ""))

        return cls(
            service_name=os.getenv("TRAFFICGUARD_SERVICE_NAME", "trafficguard"),
            environment=os.getenv("TRAFFICGUARD_ENV", "development"),
            rate_limit_requests=_int_env("TRAFFICGUARD_RATE_LIMIT_REQUESTS", 100),
            rate_limit_window_seconds=_int_env("TRAFFICGUARD_RATE_LIMIT_WINDOW_SECONDS", 60),
            rate_limit_endpoints=endpoints,
            rate_limit_retention_seconds=_int_env("TRAFFICGUARD_RATE_LIMIT_RETENTION_SECONDS", 300),
            rate_limit_sweep_seconds=_int_env("TRAFFICGUARD_RATE_LIMIT_SWEEP_SECONDS", 60),
            metrics_max_records=_int_env("TRAFFICGUARD_METRICS_MAX_RECORDS", 1000),
            metrics_owner_id=os.getenv("TRAFFICGUARD_METRICS_OWNER_ID") or None,
            metrics_token=os.getenv("TRAFFICGUARD_METRICS_TOKEN") or None,
        )


@lru_cache()
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings.from_env()
