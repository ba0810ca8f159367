import pytest
from docker.errors import APIError, NotFound

from wac.drivers import DockerDriver, DriverError, MemoryDriver, validate_name

from conftest import make_spec


class _FakeContainers:
    def __init__(self):
        self.runs = []
        self.removed = []
        self.fail_run = False

    def run(self, image, **kwargs):
        if self.fail_run:
            raise APIError("no such image")
        self.runs.append((image, kwargs))

    def get(self, name):
        if name == "gone":
            raise NotFound("no such container")
        containers = self

        class _Container:
            def remove(self, force=False):
                containers.removed.append((name, force))

        return _Container()


class _FakeNetworks:
    def __init__(self):
        self.created = []

    def get(self, name):
        if not self.created:
            raise NotFound("no such network")

    def create(self, name, driver=None):
        self.created.append((name, driver))


class _FakeClient:
    def __init__(self):
        self.containers = _FakeContainers()
        self.networks = _FakeNetworks()


@pytest.fixture()
def docker_driver(monkeypatch):
    client = _FakeClient()
    drv = DockerDriver(network="wac-test")
    monkeypatch.setattr(drv, "_client", lambda: client)
    return drv, client


def test_docker_create_labels_and_env(docker_driver):
    drv, client = docker_driver
    spec = make_spec(resource_limit={"memory": "256m"})
    address = drv.create("web-abc123-000001", spec, {"WAC_INSTANCE_ID": "web-abc123-000001"})

    assert address == "http://web-abc123-000001:8080"
    assert client.networks.created == [("wac-test", "bridge")]
    image, kwargs = client.containers.runs[0]
    assert image == spec.image
    assert kwargs["labels"] == {
        "wac.namespace": "default",
        "wac.workload": "web",
        "wac.template": spec.instance_template_hash,
    }
    assert kwargs["environment"]["WAC_INSTANCE_ID"] == "web-abc123-000001"
    assert kwargs["mem_limit"] == "256m"
    assert kwargs["restart_policy"] == {"Name": "no"}


def test_docker_errors_become_driver_errors(docker_driver):
    drv, client = docker_driver
    client.containers.fail_run = True
    with pytest.raises(DriverError):
        drv.create("web-abc123-000002", make_spec(), {})


def test_docker_destroy_ignores_missing_container(docker_driver):
    drv, client = docker_driver
    drv.destroy("gone")
    drv.destroy("web-1")
    assert client.containers.removed == [("web-1", True)]


def test_invalid_container_name_rejected():
    with pytest.raises(ValueError):
        validate_name("Bad Name!")


def test_memory_driver_simulated_failures():
    drv = MemoryDriver()
    drv.fail_creates = 1
    with pytest.raises(DriverError):
        drv.create("web-1", make_spec(), {})
    address = drv.create("web-2", make_spec(), {"A": "1"})
    assert address == "http://web-2.default.local:8080"
    assert drv.instances["web-2"].env == {"A": "1"}
    drv.destroy("web-2")
    drv.destroy("web-2")
    assert drv.destroyed == ["web-2"]
    assert drv.create_calls == 2
