from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock, RLock
from typing import Callable, Iterable, Protocol

from .errors import NotFound, ServiceUnavailable
from .models import Endpoint, Route
from .registry import EndpointRegistry, RegistrySet
from .settings import settings


class Strategy(Protocol):
    name: str

    def pick(self, endpoints: list[Endpoint]) -> Endpoint:
        ...

    def release(self, endpoint: Endpoint) -> None:
        ...


class RoundRobin:
    """Thread-safe round-robin over the (sorted) healthy set."""

    name = "round_robin"

    def __init__(self) -> None:
        self._lock = Lock()
        self._index = 0

    def pick(self, endpoints: list[Endpoint]) -> Endpoint:
        with self._lock:
            ep = endpoints[self._index % len(endpoints)]
            self._index = (self._index + 1) % len(endpoints)
            return ep

    def release(self, endpoint: Endpoint) -> None:
        return None


class LeastOutstanding:
    """Selects the endpoint with the fewest in-flight requests (ties: lowest id)."""

    name = "least_connections"

    def __init__(self) -> None:
        self._lock = Lock()
        self._outstanding: dict[str, int] = defaultdict(int)

    def pick(self, endpoints: list[Endpoint]) -> Endpoint:
        with self._lock:
            ep = min(endpoints, key=lambda e: (self._outstanding[e.instance_id], e.instance_id))
            self._outstanding[ep.instance_id] += 1
            return ep

    def release(self, endpoint: Endpoint) -> None:
        with self._lock:
            if self._outstanding.get(endpoint.instance_id, 0) > 0:
                self._outstanding[endpoint.instance_id] -= 1

    def outstanding(self, instance_id: str) -> int:
        with self._lock:
            return self._outstanding.get(instance_id, 0)


STRATEGIES: dict[str, Callable[[], Strategy]] = {
    RoundRobin.name: RoundRobin,
    LeastOutstanding.name: LeastOutstanding,
}


class ServiceRouter:
    """Service layer: spreads requests over one workload's healthy endpoints."""

    def __init__(self, registry: EndpointRegistry, strategy: str | Strategy | None = None):
        self.registry = registry
        strategy = strategy or settings.router_strategy
        if isinstance(strategy, str):
            if strategy not in STRATEGIES:
                raise ValueError(f"Unknown routing strategy '{strategy}'")
            strategy = STRATEGIES[strategy]()
        self.strategy = strategy

    def route(self) -> Endpoint:
        healthy = sorted(self.registry.list_healthy(), key=lambda e: e.instance_id)
        if not healthy:
            raise ServiceUnavailable(f"No healthy endpoints for '{self.registry.workload}'")
        return self.strategy.pick(healthy)

    def release(self, endpoint: Endpoint) -> None:
        self.strategy.release(endpoint)


class RouterSet:
    """Lazily creates one ServiceRouter per workload key.

    Only workloads that already have a registry get a router; looking one up
    never creates a registry, so deleted workloads stay dropped.
    """

    def __init__(self, registries: RegistrySet, strategy: str | None = None):
        self.registries = registries
        self.strategy = strategy
        self._lock = Lock()
        self._routers: dict[str, ServiceRouter] = {}

    def for_workload(self, key: str) -> ServiceRouter:
        with self._lock:
            registry = self.registries.get(key)
            if registry is None:
                self._routers.pop(key, None)
                raise ServiceUnavailable(f"No endpoints registered for '{key}'")
            router = self._routers.get(key)
            if router is None or router.registry is not registry:
                router = self._routers[key] = ServiceRouter(registry, self.strategy)
            return router

    def release(self, key: str, endpoint: Endpoint) -> None:
        with self._lock:
            router = self._routers.get(key)
        if router is not None:
            router.release(endpoint)


@dataclass(frozen=True)
class IngressRequest:
    host: str
    path: str = "/"
    method: str = "GET"


def normalize_host(host: str) -> str:
    host = (host or "").strip().lower()
    if host.startswith("["):  # [v6]:port
        return host.split("]")[0] + "]"
    return host.split(":")[0]


def normalize_prefix(prefix: str) -> str:
    prefix = "/" + (prefix or "").strip("/")
    return prefix


def prefix_matches(prefix: str, path: str) -> bool:
    if prefix == "/":
        return True
    return path == prefix or path.startswith(prefix + "/")


class IngressRouter:
    """Ingress layer: exact host match, then longest path-prefix match.

    A ``*`` host pattern acts as a catch-all and is only consulted when no
    route names the request's host exactly.
    """

    def __init__(self, routes: Iterable[Route] = (), service_routers: Callable[[str], ServiceRouter] | None = None):
        self._lock = RLock()
        self._by_host: dict[str, list[Route]] = {}
        self.service_routers = service_routers
        self.set_routes(routes)

    def set_routes(self, routes: Iterable[Route]) -> None:
        by_host: dict[str, list[Route]] = defaultdict(list)
        for r in routes:
            by_host[normalize_host(r.host_pattern) if r.host_pattern != "*" else "*"].append(r)
        for lst in by_host.values():
            lst.sort(key=lambda r: (-len(normalize_prefix(r.path_prefix)), r.namespace, r.name))
        with self._lock:
            self._by_host = dict(by_host)

    def match(self, host: str, path: str) -> Route:
        path = path if path.startswith("/") else f"/{path}"
        with self._lock:
            h = normalize_host(host)
            candidates = self._by_host.get(h) or self._by_host.get("*", [])
        for r in candidates:
            if prefix_matches(normalize_prefix(r.path_prefix), path):
                return r
        raise NotFound(f"No route for host '{host}' and path '{path}'")

    def route(self, request: IngressRequest) -> tuple[Route, Endpoint]:
        route = self.match(request.host, request.path)
        if self.service_routers is None:
            raise ServiceUnavailable(f"No service router for '{route.target_key}'")
        return route, self.service_routers(route.target_key).route()
