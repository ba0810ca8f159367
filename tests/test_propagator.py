from wac.models import ConfigVersion, template_hash

from conftest import create, make_spec, settle


def _config(version_id="v1", **data):
    return ConfigVersion("default", "web-config", version_id, data or {"GREETING": "hello"})


def test_new_config_version_rehashes_referencing_workloads(cp, store):
    cp.propagator.on_config_change(_config("v1"))
    spec = create(store, make_spec(config_ref="web-config"))
    other = create(store, make_spec(name="api"))

    changed = cp.propagator.on_config_change(_config("v2", GREETING="hi"))
    assert [s.name for s in changed] == ["web"]
    updated = store.get_workload(spec.key)
    assert updated.generation == 2
    assert updated.instance_template_hash == template_hash(updated, _config("v2", GREETING="hi"))
    assert updated.instance_template_hash != spec.instance_template_hash
    assert store.get_workload(other.key).generation == 1


def test_reapplying_same_version_is_a_noop(cp, store, driver):
    cp.propagator.on_config_change(_config("v1"))
    spec = create(store, make_spec(config_ref="web-config"))
    settle(cp, spec.key)
    calls = driver.create_calls
    instances = {i.id for i in store.list_instances(spec.key)}

    assert cp.propagator.on_config_change(_config("v1")) == []
    status = cp.controller.reconcile(spec.key)
    assert store.get_workload(spec.key).generation == 1
    assert driver.create_calls == calls
    assert {i.id for i in store.list_instances(spec.key)} == instances
    assert status.rollout_state == "Complete"


def test_config_change_triggers_reconcile(store):
    from wac.propagator import ConfigPropagator

    triggered = []
    propagator = ConfigPropagator(store, on_change=triggered.append)
    propagator.on_config_change(_config("v1"))
    spec = create(store, make_spec(config_ref="web-config"))
    propagator.on_config_change(_config("v2"))
    assert triggered == [spec.key]


def test_sync_detects_drift(cp, store):
    cp.propagator.on_config_change(_config("v1"))
    spec = create(store, make_spec(config_ref="web-config"))
    # written behind the propagator's back
    store.put_config(_config("v2", GREETING="drifted"))

    changed = cp.propagator.sync_once()
    assert [s.key for s in changed] == [spec.key]
    assert cp.propagator.sync_once() == []


def test_config_rollout_reaches_instances(cp, store, driver):
    cp.propagator.on_config_change(_config("v1"))
    spec = create(store, make_spec(min_replicas=1, max_replicas=1, config_ref="web-config"))
    settle(cp, spec.key)

    cp.propagator.on_config_change(_config("v2", GREETING="bonjour"))
    status = settle(cp, spec.key)
    assert status.rollout_state == "Complete"
    assert status.observed_generation == 2
    (inst,) = store.list_instances(spec.key)
    assert driver.instances[inst.id].env["GREETING"] == "bonjour"
    assert driver.instances[inst.id].env["WAC_CONFIG_VERSION"] == "v2"
