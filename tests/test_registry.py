from wac.models import Phase
from wac.registry import EndpointRegistry, HealthProber, RegistrySet

from conftest import create, make_spec


def test_registry_snapshot_is_immutable():
    reg = EndpointRegistry("default/web")
    reg.register("a", "http://a:80")
    snap = reg.list_healthy()
    reg.register("b", "http://b:80")
    reg.mark_unhealthy("a")

    assert {e.instance_id for e in snap} == {"a"}
    assert isinstance(snap, frozenset)
    assert {e.instance_id for e in reg.list_healthy()} == {"b"}


def test_registry_health_flags_and_deregister():
    reg = EndpointRegistry()
    reg.register("a", "http://a:80")
    v = reg.version
    assert reg.mark_unhealthy("a").healthy is False
    assert reg.version > v
    assert reg.mark_healthy("a").healthy is True
    assert reg.mark_healthy("missing") is None

    assert reg.deregister("a") is True
    assert reg.deregister("a") is False
    assert "a" not in reg
    assert reg.all() == []


def test_registry_set_is_lazy():
    regs = RegistrySet()
    assert regs.get("default/web") is None
    reg = regs.for_workload("default/web")
    assert regs.for_workload("default/web") is reg
    regs.drop("default/web")
    assert regs.keys() == []


def test_prober_uses_workload_health_path(store, cp):
    seen = []

    class RecordingProbe:
        def probe(self, address, path="/health"):
            seen.append((address, path))
            return True

    results = []
    spec = create(store, make_spec(min_replicas=1, max_replicas=1, health_path="/ready"))
    cp.controller.reconcile(spec.key)
    prober = HealthProber(store, RecordingProbe(), on_result=lambda inst, ok: results.append((inst.id, ok)))
    out = prober.probe_once()

    (inst,) = store.list_instances(spec.key)
    assert seen == [(inst.address, "/ready")]
    assert out == {inst.id: True}
    assert results == [(inst.id, True)]


def test_prober_counts_exceptions_as_failures(store, cp):
    class BrokenProbe:
        def probe(self, address, path="/health"):
            raise TimeoutError("probe timed out")

    spec = create(store, make_spec(min_replicas=1, max_replicas=1))
    cp.controller.reconcile(spec.key)
    prober = HealthProber(store, BrokenProbe(), on_result=lambda inst, ok: None)
    assert list(prober.probe_once().values()) == [False]


def test_prober_skips_terminating_instances(store, cp):
    spec = create(store, make_spec(min_replicas=1, max_replicas=1))
    cp.controller.reconcile(spec.key)
    (inst,) = store.list_instances(spec.key)
    store.update_instance(inst.id, phase=Phase.TERMINATING)
    assert cp.prober.probe_once() == {}
