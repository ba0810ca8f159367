from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from threading import RLock, Thread
from typing import Callable

from .models import Endpoint, Instance, LIVE_PHASES
from .settings import settings
from .sources import Probe
from .store import Store


class EndpointRegistry:
    """Routable endpoints of one workload. Thread-safe.

    Every mutation swaps in a new immutable snapshot, so ``list_healthy``
    readers always see a consistent point-in-time set.
    """

    def __init__(self, workload: str = ""):
        self.workload = workload
        self._lock = RLock()
        self._endpoints: dict[str, Endpoint] = {}
        self._healthy: frozenset[Endpoint] = frozenset()
        self.version = 0

    def _publish(self) -> None:
        self._healthy = frozenset(e for e in self._endpoints.values() if e.healthy)
        self.version += 1

    def register(self, instance_id: str, address: str, healthy: bool = True) -> Endpoint:
        with self._lock:
            ep = Endpoint(instance_id=instance_id, address=address, healthy=healthy)
            self._endpoints[instance_id] = ep
            self._publish()
            return ep

    def deregister(self, instance_id: str) -> bool:
        with self._lock:
            if self._endpoints.pop(instance_id, None) is None:
                return False
            self._publish()
            return True

    def _set_health(self, instance_id: str, healthy: bool) -> Endpoint | None:
        with self._lock:
            ep = self._endpoints.get(instance_id)
            if ep is None:
                return None
            if ep.healthy != healthy:
                ep = replace(ep, healthy=healthy)
                self._endpoints[instance_id] = ep
                self._publish()
            return ep

    def mark_healthy(self, instance_id: str) -> Endpoint | None:
        return self._set_health(instance_id, True)

    def mark_unhealthy(self, instance_id: str) -> Endpoint | None:
        return self._set_health(instance_id, False)

    def list_healthy(self) -> frozenset[Endpoint]:
        return self._healthy

    def get(self, instance_id: str) -> Endpoint | None:
        with self._lock:
            return self._endpoints.get(instance_id)

    def all(self) -> list[Endpoint]:
        with self._lock:
            return sorted(self._endpoints.values(), key=lambda e: e.instance_id)

    def __contains__(self, instance_id: str) -> bool:
        with self._lock:
            return instance_id in self._endpoints


class RegistrySet:
    """One EndpointRegistry per workload key."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._registries: dict[str, EndpointRegistry] = {}

    def for_workload(self, key: str) -> EndpointRegistry:
        with self._lock:
            reg = self._registries.get(key)
            if reg is None:
                reg = self._registries[key] = EndpointRegistry(key)
            return reg

    def get(self, key: str) -> EndpointRegistry | None:
        with self._lock:
            return self._registries.get(key)

    def drop(self, key: str) -> None:
        with self._lock:
            self._registries.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._registries)


class HealthProber:
    """Periodically probes every Pending/Ready instance.

    Runs independently of the reconcile tick; results are handed to
    ``on_result(instance, ok)`` (the workload controller), which owns phase
    transitions and registry health flags. A probe that raises or times out
    counts as a failure.
    """

    def __init__(
        self,
        store: Store,
        probe: Probe,
        on_result: Callable[[Instance, bool], None],
        interval_s: float | None = None,
        max_workers: int = 8,
    ):
        self.store = store
        self.probe = probe
        self.on_result = on_result
        self.interval_s = settings.probe_interval_s if interval_s is None else interval_s
        self.max_workers = max(1, int(max_workers))
        self._stop = False
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop = False
        self._thr = Thread(target=self._loop, name="wac-prober", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop = True

    def _loop(self) -> None:
        while not self._stop:
            try:
                self.probe_once()
            except Exception as e:
                self.store.log_event("ERROR", f"Health prober tick failed: {type(e).__name__}: {e}")
            time.sleep(max(0.1, self.interval_s))

    def _check(self, target: tuple[Instance, str]) -> bool:
        inst, path = target
        try:
            return bool(self.probe.probe(inst.address or "", path))
        except Exception:
            return False

    def probe_once(self) -> dict[str, bool]:
        paths = {s.key: s.health_path for s in self.store.list_workloads()}
        targets = [
            (i, paths[i.key])
            for i in self.store.list_all_instances()
            if i.phase in LIVE_PHASES and i.address and i.key in paths
        ]
        if not targets:
            return {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(targets))) as pool:
            results = list(pool.map(self._check, targets))
        for (inst, _), ok in zip(targets, results):
            self.on_result(inst, ok)
        return {inst.id: ok for (inst, _), ok in zip(targets, results)}
