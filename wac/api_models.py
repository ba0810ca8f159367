from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .models import ConfigVersion, Route, RolloutPolicy, ScalingPolicy, WorkloadSpec

NAME_PATTERN = r"^[a-z][a-z0-9\-]{0,47}$"


class _Model(BaseModel):
    # Accept both camelCase (manifest style) and snake_case field names.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class RolloutPolicyModel(_Model):
    max_unavailable: int = Field(0, ge=0)
    max_surge: int = Field(1, ge=0)

    @model_validator(mode="after")
    def _not_both_zero(self) -> "RolloutPolicyModel":
        if self.max_unavailable == 0 and self.max_surge == 0:
            raise ValueError("maxUnavailable and maxSurge cannot both be 0")
        return self


class ScalingPolicyModel(_Model):
    resource_kind: str = Field("cpu", min_length=1)
    target_utilization: float = Field(0.5, gt=0)
    tolerance: float = Field(0.0, ge=0)
    scale_up_percent: int = Field(100, gt=0, le=1000)
    scale_up_period_s: float = Field(15, ge=0)
    scale_up_stabilization_s: float = Field(0, ge=0)
    scale_down_percent: int = Field(50, gt=0, le=100)
    scale_down_period_s: float = Field(60, ge=0)
    scale_down_stabilization_s: float = Field(300, ge=0)


class WorkloadApply(_Model):
    kind: Literal["Workload"] = "Workload"
    namespace: str = Field("default", pattern=NAME_PATTERN)
    name: str = Field(..., pattern=NAME_PATTERN, description="Workload name (dns-safe)")
    min_replicas: int = Field(1, ge=1, le=1000)
    max_replicas: int = Field(1, ge=1, le=1000)
    image: str = Field("wac/sample-workload:latest", min_length=1, description="Instance image (name:tag)")
    port: int = Field(8080, ge=1, le=65535, description="Port the instance listens on")
    health_path: str = Field("/health", description="Health endpoint path")
    resource_request: dict[str, str] = Field(default_factory=dict)
    resource_limit: dict[str, str] = Field(default_factory=dict)
    rollout_policy: RolloutPolicyModel = Field(default_factory=RolloutPolicyModel)
    scaling_policy: ScalingPolicyModel = Field(default_factory=ScalingPolicyModel)
    config_ref: Optional[str] = Field(None, pattern=NAME_PATTERN, description="ConfigVersion injected into instances")
    generation: Optional[int] = Field(None, ge=1, description="Expected generation for optimistic concurrency")

    @field_validator("health_path")
    @classmethod
    def _simple_path(cls, path: str) -> str:
        # Keep it a path (not a full URL) so probes cannot be pointed elsewhere.
        if not path.startswith("/"):
            raise ValueError("health_path must start with '/'.")
        if "://" in path or ".." in path:
            raise ValueError("health_path must be a simple absolute path (no scheme, no '..').")
        return path

    @model_validator(mode="after")
    def _bounds(self) -> "WorkloadApply":
        if self.min_replicas > self.max_replicas:
            raise ValueError(f"minReplicas ({self.min_replicas}) > maxReplicas ({self.max_replicas})")
        return self

    def to_spec(self) -> WorkloadSpec:
        return WorkloadSpec(
            namespace=self.namespace,
            name=self.name,
            min_replicas=self.min_replicas,
            max_replicas=self.max_replicas,
            image=self.image,
            port=self.port,
            health_path=self.health_path,
            resource_request=dict(self.resource_request),
            resource_limit=dict(self.resource_limit),
            rollout=RolloutPolicy(**self.rollout_policy.model_dump()),
            scaling=ScalingPolicy(**self.scaling_policy.model_dump()),
            config_ref=self.config_ref,
        )


class ConfigVersionApply(_Model):
    kind: Literal["ConfigVersion"] = "ConfigVersion"
    namespace: str = Field("default", pattern=NAME_PATTERN)
    name: str = Field(..., pattern=NAME_PATTERN)
    version_id: str = Field(..., min_length=1, max_length=128)
    data: dict[str, str] = Field(default_factory=dict)

    def to_config(self) -> ConfigVersion:
        return ConfigVersion(namespace=self.namespace, name=self.name, version_id=self.version_id, data=dict(self.data))


class RouteApply(_Model):
    kind: Literal["Route"] = "Route"
    namespace: str = Field("default", pattern=NAME_PATTERN)
    name: str = Field(..., pattern=NAME_PATTERN)
    host_pattern: str = Field(..., min_length=1, description="Exact host name, or '*' as catch-all")
    path_prefix: str = Field("/", description="Longest prefix wins")
    target_workload: str = Field(..., pattern=NAME_PATTERN)

    @field_validator("path_prefix")
    @classmethod
    def _absolute(cls, prefix: str) -> str:
        if not prefix.startswith("/"):
            raise ValueError("path_prefix must start with '/'.")
        return prefix

    def to_route(self) -> Route:
        return Route(
            namespace=self.namespace,
            name=self.name,
            host_pattern=self.host_pattern.lower(),
            path_prefix=self.path_prefix,
            target_workload=self.target_workload,
        )


APPLY_MODELS: dict[str, type[_Model]] = {
    "Workload": WorkloadApply,
    "ConfigVersion": ConfigVersionApply,
    "Route": RouteApply,
}
