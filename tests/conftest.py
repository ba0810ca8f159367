from dataclasses import replace

import pytest

from wac.drivers import MemoryDriver
from wac.manager import ControlPlane
from wac.models import Phase, RolloutPolicy, ScalingPolicy, WorkloadSpec, template_hash
from wac.sources import StaticMetricSource, StaticProbe
from wac.store import Store


class ManualClock:
    """Deterministic clock: time only moves when a test says so."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture()
def clock():
    return ManualClock()


@pytest.fixture()
def store(tmp_path):
    return Store(str(tmp_path / "wac.db"))


@pytest.fixture()
def driver():
    return MemoryDriver()


@pytest.fixture()
def probe():
    return StaticProbe(default=True)


@pytest.fixture()
def metrics():
    return StaticMetricSource()


@pytest.fixture()
def cp(store, driver, probe, metrics, clock):
    return ControlPlane(store=store, driver=driver, probe=probe, metric_source=metrics, clock=clock)


def make_spec(name="web", namespace="default", min_replicas=2, max_replicas=5, **kwargs) -> WorkloadSpec:
    rollout = kwargs.pop("rollout", RolloutPolicy())
    scaling = kwargs.pop("scaling", ScalingPolicy())
    spec = WorkloadSpec(
        namespace=namespace,
        name=name,
        min_replicas=min_replicas,
        max_replicas=max_replicas,
        rollout=rollout,
        scaling=scaling,
        **kwargs,
    )
    return replace(spec, instance_template_hash=template_hash(spec, None))


def create(store: Store, spec: WorkloadSpec) -> WorkloadSpec:
    config = store.get_config(spec.namespace, spec.config_ref) if spec.config_ref else None
    return store.create_workload(replace(spec, instance_template_hash=template_hash(spec, config)))


def update(store: Store, spec: WorkloadSpec, **changes) -> WorkloadSpec:
    """Apply a spec change the way admission does (recomputed hash, generation check)."""
    new = replace(spec, **changes)
    config = store.get_config(new.namespace, new.config_ref) if new.config_ref else None
    new = replace(new, instance_template_hash=template_hash(new, config))
    return store.update_workload(new, expected_generation=spec.generation)


def settle(cp: ControlPlane, key: str, rounds: int = 10):
    """Alternate reconcile and probe passes until the workload converges."""
    status = None
    for _ in range(rounds):
        status = cp.controller.reconcile(key)
        cp.prober.probe_once()
        status = cp.controller.reconcile(key)
        if status is not None and status.rollout_state == "Complete":
            break
    return status


def ready(store: Store, key: str):
    return [i for i in store.list_instances(key) if i.phase == Phase.READY]


@pytest.fixture()
def running_workload(cp, store):
    """A converged workload with two Ready instances."""
    spec = create(store, make_spec())
    settle(cp, spec.key)
    return spec
