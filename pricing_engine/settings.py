from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class WorkerSettings:
    channel_backend: str = "redis"
    redis_url: str = "redis://localhost:6379"
    channel_name: str = "jobsChannel"
    reconnect_delay_s: float = 5.0
    max_concurrent_jobs: int = 4
    bulk_poll_interval_s: float = 5.0
    bulk_poll_timeout_s: float = 300.0
    http_timeout_s: float = 30.0
    discount_region: str = "NAMER"
    region_field: str = ""
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> WorkerSettings:
        env = os.environ if environ is None else environ
        return cls(
            channel_backend=str(env.get("JOB_CHANNEL_BACKEND", "redis")).strip().lower() or "redis",
            redis_url=str(env.get("REDIS_URL", "redis://localhost:6379")).strip(),
            channel_name=str(env.get("JOBS_CHANNEL", "jobsChannel")).strip() or "jobsChannel",
            reconnect_delay_s=_env_float(env, "CHANNEL_RECONNECT_DELAY_S", default=5.0, minimum=0.1),
            max_concurrent_jobs=_env_int(env, "WORKER_MAX_CONCURRENT_JOBS", default=4, minimum=1),
            bulk_poll_interval_s=_env_float(env, "BULK_POLL_INTERVAL_S", default=5.0, minimum=0.1),
            bulk_poll_timeout_s=_env_float(env, "BULK_POLL_TIMEOUT_S", default=300.0, minimum=1.0),
            http_timeout_s=_env_float(env, "RECORD_STORE_HTTP_TIMEOUT_S", default=30.0, minimum=1.0),
            discount_region=str(env.get("QUOTE_DISCOUNT_REGION", "NAMER")).strip() or "NAMER",
            region_field=str(env.get("QUOTE_REGION_FIELD", "")).strip(),
            log_level=str(env.get("LOG_LEVEL", "INFO")).strip().upper() or "INFO",
        )
