from __future__ import annotations

import re
from dataclasses import dataclass, field
from threading import Lock
from typing import Protocol

import docker
from docker.errors import DockerException, NotFound

from .models import WorkloadSpec
from .settings import settings


NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")


class DriverError(Exception):
    """Instance creation/destruction failed in the underlying runtime."""


def validate_name(name: str) -> None:
    if not NAME_RE.match(name):
        raise ValueError(
            "Invalid name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


class InstanceDriver(Protocol):
    def create(self, instance_id: str, spec: WorkloadSpec, env: dict[str, str]) -> str:
        """Start an instance and return its address. Raises DriverError."""
        ...

    def destroy(self, instance_id: str) -> None:
        ...


@dataclass
class MemoryInstance:
    id: str
    workload: str
    template_hash: str
    address: str
    env: dict[str, str] = field(default_factory=dict)


class MemoryDriver:
    """Process-local driver: instances are records with a synthetic address.

    ``fail_creates`` makes the next N creations raise, to exercise Degraded paths.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self.instances: dict[str, MemoryInstance] = {}
        self.destroyed: list[str] = []
        self.fail_creates = 0
        self.create_calls = 0

    def create(self, instance_id: str, spec: WorkloadSpec, env: dict[str, str]) -> str:
        with self._lock:
            self.create_calls += 1
            if self.fail_creates:
                self.fail_creates -= 1
                raise DriverError(f"simulated creation failure for {instance_id}")
            address = f"http://{instance_id}.{spec.namespace}.local:{spec.port}"
            self.instances[instance_id] = MemoryInstance(
                id=instance_id,
                workload=spec.key,
                template_hash=spec.instance_template_hash,
                address=address,
                env=dict(env),
            )
            return address

    def destroy(self, instance_id: str) -> None:
        with self._lock:
            if self.instances.pop(instance_id, None) is not None:
                self.destroyed.append(instance_id)


class DockerDriver:
    """Runs each instance as a container attached to the WAC network.

    Containers are labeled so they can be re-discovered after restarts.
    """

    def __init__(self, network: str | None = None):
        self.network = network or settings.docker_network

    def _client(self) -> docker.DockerClient:
        return docker.from_env()

    def available(self) -> bool:
        try:
            self._client().ping()
            return True
        except DockerException:
            return False

    def ensure_network(self) -> None:
        c = self._client()
        try:
            c.networks.get(self.network)
        except NotFound:
            c.networks.create(self.network, driver="bridge")

    def create(self, instance_id: str, spec: WorkloadSpec, env: dict[str, str]) -> str:
        try:
            validate_name(instance_id)
        except ValueError as e:
            raise DriverError(str(e)) from e
        try:
            self.ensure_network()
            c = self._client()
            c.containers.run(
                spec.image,
                detach=True,
                name=instance_id,
                environment=env,
                network=self.network,
                labels={
                    "wac.namespace": spec.namespace,
                    "wac.workload": spec.name,
                    "wac.template": spec.instance_template_hash,
                },
                mem_limit=spec.resource_limit.get("memory"),
                # Failed instances are replaced by the controller; keep Docker restarts off.
                restart_policy={"Name": "no"},
            )
        except DockerException as e:
            raise DriverError(f"Could not start {instance_id} from {spec.image}: {e}") from e
        return container_http_base(instance_id, spec.port)

    def destroy(self, instance_id: str) -> None:
        try:
            self._client().containers.get(instance_id).remove(force=True)
        except NotFound:
            return
        except DockerException as e:
            raise DriverError(f"Could not remove {instance_id}: {e}") from e


def container_http_base(container_name: str, port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{container_name}:{int(port)}"
