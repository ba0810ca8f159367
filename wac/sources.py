"""Capability interfaces for the outside world: health probes and metric queries."""
from __future__ import annotations

import time
from threading import Lock
from typing import Protocol

import httpx

from .errors import TransientInfra
from .settings import settings


class Probe(Protocol):
    def probe(self, address: str, path: str = "/health") -> bool:
        ...


class MetricSource(Protocol):
    def get_utilization(self, instance_id: str, address: str | None, resource_kind: str, window_s: float) -> float:
        """Return a utilization ratio (1.0 == the resource request). Raises TransientInfra."""
        ...


def check_health(
    url: str, timeout_s: float = 2.0, transport: httpx.BaseTransport | None = None
) -> tuple[bool, str, float | None]:
    """Call an instance health endpoint.

    Expected JSON: {"status": "healthy"}.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False, transport=transport) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return False, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return False, "Invalid JSON", latency_ms
        if isinstance(data, dict) and data.get("status") == "healthy":
            return True, "Healthy", latency_ms
        return False, f"Unhealthy payload: {data!r}", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


class HttpProbe:
    def __init__(self, timeout_s: float | None = None, transport: httpx.BaseTransport | None = None):
        self.timeout_s = settings.probe_timeout_s if timeout_s is None else timeout_s
        self.transport = transport

    def probe(self, address: str, path: str = "/health") -> bool:
        ok, _, _ = check_health(f"{address.rstrip('/')}{path}", timeout_s=self.timeout_s, transport=self.transport)
        return ok


class HttpMetricSource:
    """Queries ``{address}/utilization?resource=<kind>&window=<s>`` on each instance."""

    def __init__(self, timeout_s: float | None = None, transport: httpx.BaseTransport | None = None):
        self.timeout_s = settings.metric_timeout_s if timeout_s is None else timeout_s
        self.transport = transport

    def get_utilization(self, instance_id: str, address: str | None, resource_kind: str, window_s: float) -> float:
        if not address:
            raise TransientInfra(f"Instance {instance_id} has no address")
        url = f"{address.rstrip('/')}/utilization"
        try:
            with httpx.Client(timeout=self.timeout_s, transport=self.transport) as client:
                resp = client.get(url, params={"resource": resource_kind, "window": window_s})
            resp.raise_for_status()
            return float(resp.json()["utilization"])
        except httpx.TimeoutException as e:
            raise TransientInfra(f"Metric query for {instance_id} timed out") from e
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            raise TransientInfra(f"Metric query for {instance_id} failed: {type(e).__name__}: {e}") from e


class StaticProbe:
    """In-memory probe: every address is healthy unless told otherwise."""

    def __init__(self, default: bool = True):
        self.default = default
        self._lock = Lock()
        self._results: dict[str, bool] = {}

    def set(self, address: str, healthy: bool) -> None:
        with self._lock:
            self._results[address] = healthy

    def probe(self, address: str, path: str = "/health") -> bool:
        with self._lock:
            return self._results.get(address, self.default)


class StaticMetricSource:
    """In-memory metric source keyed by instance id (with an optional default)."""

    def __init__(self, default: float | None = None):
        self.default = default
        self._lock = Lock()
        self._values: dict[str, float] = {}

    def set(self, instance_id: str, ratio: float | None) -> None:
        with self._lock:
            if ratio is None:
                self._values.pop(instance_id, None)
            else:
                self._values[instance_id] = ratio

    def set_all(self, ratio: float | None) -> None:
        with self._lock:
            self._values.clear()
            self.default = ratio

    def get_utilization(self, instance_id: str, address: str | None, resource_kind: str, window_s: float) -> float:
        with self._lock:
            value = self._values.get(instance_id, self.default)
        if value is None:
            raise TransientInfra(f"No {resource_kind} metric for {instance_id}")
        return value
