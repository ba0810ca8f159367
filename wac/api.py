from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any

from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from . import __version__
from .api_models import APPLY_MODELS, ConfigVersionApply, RouteApply, WorkloadApply
from .errors import Conflict, ControlPlaneError, InvalidSpec, NotFound
from .manager import ControlPlane
from .models import template_hash, validate_workload, workload_key

KINDS = {
    "workload": "Workload",
    "workloads": "Workload",
    "configversion": "ConfigVersion",
    "configversions": "ConfigVersion",
    "config": "ConfigVersion",
    "route": "Route",
    "routes": "Route",
}

WATCH_POLL_S = 0.2


def canonical_kind(kind: str) -> str:
    try:
        return KINDS[kind.lower()]
    except KeyError:
        raise NotFound(f"Unknown kind '{kind}' (expected Workload|ConfigVersion|Route)") from None


def _validation_detail(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def parse_manifest(body: dict[str, Any]) -> WorkloadApply | ConfigVersionApply | RouteApply:
    """Validate an apply body; every schema problem becomes InvalidSpec."""
    if not isinstance(body, dict):
        raise InvalidSpec("Manifest must be a JSON object")
    kind = body.get("kind", "Workload")
    model = APPLY_MODELS.get(kind)
    if model is None:
        raise InvalidSpec(f"Unknown kind '{kind}' (expected Workload|ConfigVersion|Route)")
    try:
        return model.model_validate(body)
    except ValidationError as e:
        raise InvalidSpec(_validation_detail(e)) from e


class ControlApi:
    """Operations behind the HTTP surface, kept separate so tests can call them directly."""

    def __init__(self, cp: ControlPlane):
        self.cp = cp
        self.store = cp.store

    # -- apply -----------------------------------------------------------------

    def apply(self, body: dict[str, Any]) -> dict[str, Any]:
        manifest = parse_manifest(body)
        if isinstance(manifest, WorkloadApply):
            return self._apply_workload(manifest)
        if isinstance(manifest, ConfigVersionApply):
            return self._apply_config(manifest)
        return self._apply_route(manifest)

    def _apply_workload(self, m: WorkloadApply) -> dict[str, Any]:
        spec = m.to_spec()
        config = self.store.get_config(spec.namespace, spec.config_ref) if spec.config_ref else None
        spec = replace(spec, instance_template_hash=template_hash(spec, config))
        validate_workload(spec)

        existing = self.store.get_workload(spec.key)
        if existing is None:
            if m.generation is not None:
                raise Conflict(f"Workload {spec.key} does not exist (expected generation {m.generation})")
            stored = self.store.create_workload(spec)
            action = "created"
        elif m.generation is not None and m.generation != existing.generation:
            raise Conflict(
                f"Workload {spec.key} is at generation {existing.generation}, not {m.generation}; re-read and retry"
            )
        elif replace(spec, generation=existing.generation) == existing:
            stored, action = existing, "unchanged"
        else:
            stored = self.store.update_workload(spec, expected_generation=m.generation)
            action = "configured"

        if action != "unchanged":
            self.store.log_event(
                "INFO",
                f"Workload {action} (generation {stored.generation}, template {stored.instance_template_hash})",
                namespace=stored.namespace,
                workload=stored.name,
            )
        self.cp.controller.trigger(stored.key)
        return {"kind": "Workload", "action": action, "object": self._workload_view(stored.key)}

    def _apply_config(self, m: ConfigVersionApply) -> dict[str, Any]:
        version = m.to_config()
        unchanged = self.store.get_config(version.namespace, version.name) == version
        rolled = self.cp.propagator.on_config_change(version)
        return {
            "kind": "ConfigVersion",
            "action": "unchanged" if unchanged else "configured",
            "object": version.to_dict(),
            "rolled_workloads": [s.name for s in rolled],
        }

    def _apply_route(self, m: RouteApply) -> dict[str, Any]:
        route = m.to_route()
        unchanged = self.store.get_route(route.namespace, route.name) == route
        if not unchanged:
            self.store.put_route(route)
            self.store.log_event(
                "INFO",
                f"Route {route.namespace}/{route.name}: {route.host_pattern}{route.path_prefix} -> {route.target_workload}",
                namespace=route.namespace,
            )
        self.cp.reload_routes()
        return {"kind": "Route", "action": "unchanged" if unchanged else "configured", "object": route.to_dict()}

    # -- read ------------------------------------------------------------------

    def _workload_view(self, key: str) -> dict[str, Any]:
        spec = self.store.get_workload(key)
        status = self.store.get_status(key)
        if spec is None or status is None:
            raise NotFound(f"Workload {key} not found")
        return {
            "kind": "Workload",
            "spec": spec.to_dict(),
            "status": status.to_dict(),
            "resource_version": self.store.resource_version("Workload", spec.namespace, spec.name),
        }

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        kind = canonical_kind(kind)
        if kind == "Workload":
            return self._workload_view(workload_key(namespace, name))
        if kind == "ConfigVersion":
            obj = self.store.get_config(namespace, name)
        else:
            obj = self.store.get_route(namespace, name)
        if obj is None:
            raise NotFound(f"{kind} {namespace}/{name} not found")
        return {"kind": kind, "object": obj.to_dict(), "resource_version": self.store.resource_version(kind, namespace, name)}

    def list(self, kind: str, namespace: str | None = None) -> list[dict[str, Any]]:
        kind = canonical_kind(kind)
        if kind == "Workload":
            return [self._workload_view(s.key) for s in self.store.list_workloads(namespace)]
        if kind == "ConfigVersion":
            return [c.to_dict() for c in self.store.list_configs(namespace)]
        return [r.to_dict() for r in self.store.list_routes(namespace)]

    def describe(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        kind = canonical_kind(kind)
        out = self.get(kind, namespace, name)
        if kind == "Workload":
            key = workload_key(namespace, name)
            registry = self.cp.registries.get(key)
            out["instances"] = [i.to_dict() for i in self.store.list_instances(key)]
            out["endpoints"] = [
                {"instance_id": e.instance_id, "address": e.address, "healthy": e.healthy}
                for e in (registry.all() if registry else [])
            ]
            out["decisions"] = [d.to_dict() for d in self.store.list_decisions(key)[-20:]]
            out["events"] = self.store.latest_events(limit=20, namespace=namespace, workload=name)
        elif kind == "ConfigVersion":
            out["referenced_by"] = [s.name for s in self.store.list_workloads(namespace) if s.config_ref == name]
        else:
            route = self.store.get_route(namespace, name)
            registry = self.cp.registries.get(route.target_key) if route else None
            out["healthy_endpoints"] = sorted(e.instance_id for e in (registry.list_healthy() if registry else ()))
        return out

    # -- delete ----------------------------------------------------------------

    def delete(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        kind = canonical_kind(kind)
        if kind == "Workload":
            key = workload_key(namespace, name)
            if not self.store.delete_workload(key):
                raise NotFound(f"Workload {key} not found")
            self.store.log_event("INFO", "Workload deleted; tearing down instances", namespace=namespace, workload=name)
            self.cp.controller.trigger(key)
        elif kind == "ConfigVersion":
            users = [s.name for s in self.store.list_workloads(namespace) if s.config_ref == name]
            if users:
                raise Conflict(f"ConfigVersion {namespace}/{name} is referenced by {', '.join(users)}")
            if not self.store.delete_config(namespace, name):
                raise NotFound(f"ConfigVersion {namespace}/{name} not found")
        else:
            if not self.store.delete_route(namespace, name):
                raise NotFound(f"Route {namespace}/{name} not found")
            self.cp.reload_routes()
        return {"kind": kind, "namespace": namespace, "name": name, "deleted": True}

    # -- watch -----------------------------------------------------------------

    def watch(self, kind: str, namespace: str, name: str, after: int = 0, timeout_s: float = 30.0) -> dict[str, Any]:
        """Long-poll until the object's resource_version moves past ``after``.

        Returns ``changed: false`` with the current object on timeout, and
        ``deleted: true`` once the object is gone.
        """
        kind = canonical_kind(kind)
        deadline = time.monotonic() + max(0.0, timeout_s)
        while True:
            rv = self.store.resource_version(kind, namespace, name)
            if rv is None:
                return {"kind": kind, "namespace": namespace, "name": name, "deleted": True, "changed": True}
            if rv > after or time.monotonic() >= deadline:
                out = self.get(kind, namespace, name)
                out["changed"] = rv > after
                return out
            time.sleep(WATCH_POLL_S)


def create_app(cp: ControlPlane | None = None, start: bool = True) -> FastAPI:
    cp = cp or ControlPlane()
    ops = ControlApi(cp)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if start:
            cp.start()
        try:
            yield
        finally:
            if start:
                cp.stop()

    app = FastAPI(title="Workload Autoscaling Controller", version=__version__, lifespan=lifespan)
    app.state.control_plane = cp
    app.state.ops = ops

    @app.exception_handler(ControlPlaneError)
    async def _control_plane_error(_: Request, exc: ControlPlaneError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.kind, "detail": str(exc)})

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "running": cp.running, "version": __version__}

    @app.post("/apply")
    def apply(body: Any = Body(...)):
        return ops.apply(body)

    @app.get("/objects/{kind}")
    def list_objects(kind: str, namespace: str | None = None):
        return ops.list(kind, namespace)

    @app.get("/objects/{kind}/{namespace}/{name}")
    def get_object(kind: str, namespace: str, name: str):
        return ops.get(kind, namespace, name)

    @app.get("/objects/{kind}/{namespace}/{name}/describe")
    def describe_object(kind: str, namespace: str, name: str):
        return ops.describe(kind, namespace, name)

    @app.delete("/objects/{kind}/{namespace}/{name}")
    def delete_object(kind: str, namespace: str, name: str):
        return ops.delete(kind, namespace, name)

    @app.get("/objects/{kind}/{namespace}/{name}/watch")
    def watch_object(
        kind: str,
        namespace: str,
        name: str,
        after: int = Query(0, ge=0),
        timeout_s: float = Query(30.0, ge=0, le=300),
    ):
        return ops.watch(kind, namespace, name, after=after, timeout_s=timeout_s)

    @app.get("/events")
    def events(limit: int = Query(100, ge=1, le=1000), namespace: str | None = None, workload: str | None = None):
        return cp.store.latest_events(limit=limit, namespace=namespace, workload=workload)

    return app
