from __future__ import annotations

import time
from typing import Callable

from .autoscaler import Autoscaler
from .controller import WorkloadController
from .drivers import DockerDriver, InstanceDriver, MemoryDriver
from .logging_setup import configure_logging
from .propagator import ConfigPropagator
from .registry import HealthProber, RegistrySet
from .router import IngressRouter, RouterSet
from .settings import settings
from .sources import HttpMetricSource, HttpProbe, MetricSource, Probe, StaticMetricSource, StaticProbe
from .store import Store


def build_driver(kind: str | None = None) -> InstanceDriver:
    kind = (kind or settings.driver).lower()
    if kind == "docker":
        return DockerDriver()
    if kind == "memory":
        return MemoryDriver()
    raise ValueError(f"Unknown driver '{kind}' (expected memory|docker)")


def build_sources(kind: str | None = None) -> tuple[Probe, MetricSource]:
    """Memory instances have no network presence, so they get in-memory sources."""
    kind = (kind or settings.driver).lower()
    if kind == "memory":
        return StaticProbe(default=True), StaticMetricSource()
    return HttpProbe(), HttpMetricSource()


class ControlPlane:
    """Wires the store, controllers and routers and owns their loops."""

    def __init__(
        self,
        store: Store | None = None,
        driver: InstanceDriver | None = None,
        probe: Probe | None = None,
        metric_source: MetricSource | None = None,
        clock: Callable[[], float] = time.time,
        router_strategy: str | None = None,
    ):
        self.store = store or Store()
        self.driver = driver or build_driver()
        if probe is None or metric_source is None:
            default_probe, default_metrics = build_sources()
            probe = probe or default_probe
            metric_source = metric_source or default_metrics
        self.probe = probe
        self.metric_source = metric_source
        self.clock = clock

        self.registries = RegistrySet()
        self.controller = WorkloadController(self.store, self.registries, self.driver, clock=clock)
        self.autoscaler = Autoscaler(self.store, self.metric_source, on_scale=self.controller.trigger, clock=clock)
        self.propagator = ConfigPropagator(self.store, on_change=self.controller.trigger)
        self.prober = HealthProber(self.store, self.probe, on_result=self.controller.handle_probe_result)
        self.routers = RouterSet(self.registries, router_strategy)
        self.ingress = IngressRouter(self.store.list_routes(), service_routers=self.routers.for_workload)
        self.running = False

    def reload_routes(self) -> None:
        self.ingress.set_routes(self.store.list_routes())

    def start(self) -> None:
        """Validate persisted state, rebuild endpoints, start every loop.

        A schema-invalid persisted workload raises InvalidSpec here, which is
        fatal to the controller process.
        """
        if self.running:
            return
        configure_logging()
        self.store.validate_persisted()
        restored = self.controller.restore_endpoints()
        if isinstance(self.driver, DockerDriver) and not self.driver.available():
            self.store.log_event("WARN", "Docker is not available; instance creation will fail until it is")
        self.store.log_event("INFO", f"Control plane starting ({restored} endpoints restored)")
        self.reload_routes()
        self.controller.start()
        self.prober.start()
        self.autoscaler.start()
        self.propagator.start()
        self.running = True

    def stop(self) -> None:
        self.propagator.stop()
        self.autoscaler.stop()
        self.prober.stop()
        self.controller.stop()
        self.running = False
