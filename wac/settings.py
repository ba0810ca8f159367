from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("WAC_DB_PATH", "wac.db")
    log_level: str = os.getenv("WAC_LOG_LEVEL", "INFO")
    driver: str = os.getenv("WAC_DRIVER", "memory")  # memory|docker
    docker_network: str = os.getenv("WAC_DOCKER_NETWORK", "wac")

    # Loop intervals
    reconcile_interval_s: float = _env_float("WAC_RECONCILE_INTERVAL_S", 5.0)
    reconcile_workers: int = _env_int("WAC_RECONCILE_WORKERS", 2)
    autoscale_interval_s: float = _env_float("WAC_AUTOSCALE_INTERVAL_S", 15.0)
    probe_interval_s: float = _env_float("WAC_PROBE_INTERVAL_S", 2.0)
    config_sync_interval_s: float = _env_float("WAC_CONFIG_SYNC_INTERVAL_S", 10.0)

    # External call timeouts
    probe_timeout_s: float = _env_float("WAC_PROBE_TIMEOUT_S", 2.0)
    metric_timeout_s: float = _env_float("WAC_METRIC_TIMEOUT_S", 2.0)

    # Instance lifecycle
    failure_threshold: int = _env_int("WAC_FAILURE_THRESHOLD", 3)
    startup_timeout_s: float = _env_float("WAC_STARTUP_TIMEOUT_S", 60.0)
    degraded_after: int = _env_int("WAC_DEGRADED_AFTER", 3)
    degraded_retry_s: float = _env_float("WAC_DEGRADED_RETRY_S", 30.0)
    drain_grace_s: float = _env_float("WAC_DRAIN_GRACE_S", 0.0)

    # Bounded retention for the scaling decision log
    decision_retention_s: float = _env_float("WAC_DECISION_RETENTION_S", 900.0)

    # Routing
    gateway_timeout_s: float = _env_float("WAC_GATEWAY_TIMEOUT_S", 10.0)
    router_strategy: str = os.getenv("WAC_ROUTER_STRATEGY", "round_robin")

    # Email alerting (optional)
    enable_email: bool = _env_bool("WAC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("WAC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("WAC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("WAC_SMTP_USER")
    smtp_password: str | None = os.getenv("WAC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("WAC_EMAIL_FROM")
    email_to: str | None = os.getenv("WAC_EMAIL_TO")


settings = Settings()
