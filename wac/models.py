from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import InvalidSpec


def iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Phase(str, Enum):
    PENDING = "Pending"
    READY = "Ready"
    TERMINATING = "Terminating"
    FAILED = "Failed"


LIVE_PHASES = (Phase.PENDING, Phase.READY)


class RolloutState(str, Enum):
    COMPLETE = "Complete"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"


@dataclass(frozen=True)
class RolloutPolicy:
    max_unavailable: int = 0
    max_surge: int = 1


@dataclass(frozen=True)
class ScalingPolicy:
    resource_kind: str = "cpu"
    target_utilization: float = 0.5
    tolerance: float = 0.0
    scale_up_percent: int = 100
    scale_up_period_s: float = 15.0
    scale_up_stabilization_s: float = 0.0
    scale_down_percent: int = 50
    scale_down_period_s: float = 60.0
    scale_down_stabilization_s: float = 300.0


@dataclass(frozen=True)
class WorkloadSpec:
    namespace: str
    name: str
    min_replicas: int
    max_replicas: int
    image: str = "wac/sample-workload:latest"
    port: int = 8080
    health_path: str = "/health"
    resource_request: dict[str, str] = field(default_factory=dict)
    resource_limit: dict[str, str] = field(default_factory=dict)
    rollout: RolloutPolicy = field(default_factory=RolloutPolicy)
    scaling: ScalingPolicy = field(default_factory=ScalingPolicy)
    config_ref: str | None = None
    instance_template_hash: str = ""
    generation: int = 1

    @property
    def key(self) -> str:
        return workload_key(self.namespace, self.name)

    def clamp(self, replicas: int) -> int:
        return max(self.min_replicas, min(self.max_replicas, int(replicas)))

    def template(self) -> dict[str, Any]:
        """The part of the spec that defines what an instance *is*."""
        return {
            "image": self.image,
            "port": self.port,
            "health_path": self.health_path,
            "resource_request": dict(sorted(self.resource_request.items())),
            "resource_limit": dict(sorted(self.resource_limit.items())),
        }

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkloadSpec":
        d = dict(data)
        d["rollout"] = RolloutPolicy(**d.get("rollout", {}))
        d["scaling"] = ScalingPolicy(**d.get("scaling", {}))
        return cls(**d)


@dataclass
class WorkloadStatus:
    desired_replicas: int = 0
    current_replicas: int = 0
    ready_replicas: int = 0
    updated_replicas: int = 0
    observed_generation: int = 0
    last_scale_up_time: float | None = None
    last_scale_down_time: float | None = None
    rollout_state: str = RolloutState.PROGRESSING.value
    message: str = ""
    creation_failures: int = 0
    last_creation_failure: float | None = None
    failing_template: str = ""

    @property
    def degraded(self) -> bool:
        return self.rollout_state == RolloutState.DEGRADED.value

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkloadStatus":
        return cls(**data)


@dataclass
class Instance:
    id: str
    namespace: str
    workload: str
    template_hash: str
    phase: Phase
    address: str | None
    created_at: float
    ready_at: float | None = None
    terminating_since: float | None = None
    fail_count: int = 0

    @property
    def key(self) -> str:
        return workload_key(self.namespace, self.workload)

    @property
    def live(self) -> bool:
        return self.phase in LIVE_PHASES

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["phase"] = self.phase.value
        return d


@dataclass(frozen=True)
class MetricSample:
    instance_id: str
    resource_kind: str
    utilization_ratio: float
    observed_at: float


@dataclass(frozen=True)
class ScalingDecision:
    desired_replicas: int
    reason: str
    decided_at: float
    recommendation: int | None = None
    previous_replicas: int | None = None
    applied: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ConfigVersion:
    namespace: str
    name: str
    version_id: str
    data: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Endpoint:
    instance_id: str
    address: str
    healthy: bool = True


@dataclass(frozen=True)
class Route:
    namespace: str
    name: str
    host_pattern: str
    path_prefix: str
    target_workload: str

    @property
    def target_key(self) -> str:
        return workload_key(self.namespace, self.target_workload)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def workload_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def split_key(key: str) -> tuple[str, str]:
    namespace, _, name = key.partition("/")
    return namespace, name


def template_hash(spec: WorkloadSpec, config: ConfigVersion | None) -> str:
    payload = {
        "template": spec.template(),
        "config": None if config is None else {"version_id": config.version_id, "data": dict(sorted(config.data.items()))},
    }
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()
    return hashlib.sha256(raw).hexdigest()[:12]


def validate_workload(spec: WorkloadSpec) -> None:
    """Admission checks shared by the API and the startup state check."""
    if not spec.namespace or not spec.name:
        raise InvalidSpec("namespace and name are required")
    if spec.min_replicas < 1:
        raise InvalidSpec("minReplicas must be >= 1")
    if spec.min_replicas > spec.max_replicas:
        raise InvalidSpec(f"minReplicas ({spec.min_replicas}) > maxReplicas ({spec.max_replicas})")
    r = spec.rollout
    if r.max_unavailable < 0 or r.max_surge < 0:
        raise InvalidSpec("maxUnavailable and maxSurge must be >= 0")
    if r.max_unavailable == 0 and r.max_surge == 0:
        raise InvalidSpec("maxUnavailable and maxSurge cannot both be 0")
    s = spec.scaling
    if not 0 < s.target_utilization:
        raise InvalidSpec("targetUtilization must be > 0")
    if s.tolerance < 0:
        raise InvalidSpec("tolerance must be >= 0")
    if s.scale_up_percent <= 0 or not 0 < s.scale_down_percent <= 100:
        raise InvalidSpec("scaleUpPercent must be > 0 and scaleDownPercent within (0, 100]")
    if min(s.scale_up_period_s, s.scale_down_period_s, s.scale_up_stabilization_s, s.scale_down_stabilization_s) < 0:
        raise InvalidSpec("periods and stabilization windows must be >= 0")
