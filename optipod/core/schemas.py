"""
Pydantic schemas for the OptimizationPolicy custom resource.

This module defines the data structures used throughout OptiPod for:
- Parsing OptimizationPolicy objects read from the cluster
- Building the status subresource written back by the reconciler
- Duration handling for rolling windows and reconciliation intervals
"""

import re
from datetime import timedelta
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ============================================================================
# Enums
# ============================================================================

class PolicyMode(str, Enum):
    """How a policy treats the recommendations it computes."""
    AUTO = "Auto"
    RECOMMEND = "Recommend"
    DISABLED = "Disabled"


class WorkloadKind(str, Enum):
    """Kubernetes workload types governed by policies."""
    DEPLOYMENT = "Deployment"
    STATEFULSET = "StatefulSet"
    DAEMONSET = "DaemonSet"


class MetricsProviderType(str, Enum):
    """Metrics backends a policy may name."""
    PROMETHEUS = "prometheus"
    METRICS_SERVER = "metrics-server"
    CUSTOM = "custom"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ReconcilePhase(str, Enum):
    """Per-policy reconciliation states."""
    PENDING = "Pending"
    DISCOVERING = "Discovering"
    SIZING = "Sizing"
    APPLYING = "Applying"
    READY = "Ready"
    DEGRADED = "Degraded"


PERCENTILES = {"P50": 50, "P90": 90, "P99": 99}

DEFAULT_WEIGHT = 100
MIN_WEIGHT = 1
MAX_WEIGHT = 1000


class CamelModel(BaseModel):
    """Base model reading and writing camelCase keys."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )

    def to_manifest(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ============================================================================
# Selector Schemas
# ============================================================================

class LabelSelectorRequirement(CamelModel):
    """A single matchExpressions entry."""
    key: str
    operator: str
    values: list[str] = Field(default_factory=list)


class LabelSelector(CamelModel):
    """Kubernetes label selector."""
    match_labels: dict[str, str] = Field(default_factory=dict)
    match_expressions: list[LabelSelectorRequirement] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.match_labels and not self.match_expressions


class NamespaceFilter(CamelModel):
    """Explicit namespace allow/deny lists. Deny wins over allow."""
    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)


class WorkloadTypeFilter(CamelModel):
    """Workload kind filter. Exclude wins over include."""
    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)


class PolicySelector(CamelModel):
    """Which namespaces and workloads a policy targets."""
    namespace_selector: Optional[LabelSelector] = None
    workload_selector: Optional[LabelSelector] = None
    namespaces: Optional[NamespaceFilter] = None
    workload_types: Optional[WorkloadTypeFilter] = None


# ============================================================================
# Sizing Configuration Schemas
# ============================================================================

class MetricsConfig(CamelModel):
    """Where utilization comes from and how it is aggregated."""
    provider: str = ""
    rolling_window: str = "24h"
    percentile: str = "P90"
    safety_factor: float = 1.2


class ResourceBound(CamelModel):
    """Inclusive min/max for one resource, as quantity strings."""
    min: str = ""
    max: str = ""


class ResourceBounds(CamelModel):
    cpu: ResourceBound = Field(default_factory=ResourceBound)
    memory: ResourceBound = Field(default_factory=ResourceBound)


class LimitConfig(CamelModel):
    """Multipliers used to derive limits from requests."""
    cpu_limit_multiplier: float = 1.0
    memory_limit_multiplier: float = 1.1


class UpdateStrategy(CamelModel):
    """Which mutation paths a policy may use in Auto mode."""
    allow_in_place_resize: bool = True
    allow_recreate: bool = False
    update_requests_only: bool = True
    limit_config: Optional[LimitConfig] = None


class OptimizationPolicySpec(CamelModel):
    """Desired state of an OptimizationPolicy."""
    mode: PolicyMode
    selector: PolicySelector = Field(default_factory=PolicySelector)
    metrics_config: MetricsConfig = Field(default_factory=MetricsConfig)
    resource_bounds: ResourceBounds = Field(default_factory=ResourceBounds)
    update_strategy: UpdateStrategy = Field(default_factory=UpdateStrategy)
    weight: int = DEFAULT_WEIGHT
    reconciliation_interval: str = "5m"


# ============================================================================
# Status Schemas
# ============================================================================

class Condition(CamelModel):
    """A status condition in the usual Kubernetes shape."""
    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[str] = None


class WorkloadTypeCounts(CamelModel):
    deployments: int = 0
    stateful_sets: int = 0
    daemon_sets: int = 0

    def increment(self, kind: WorkloadKind) -> None:
        if kind == WorkloadKind.DEPLOYMENT:
            self.deployments += 1
        elif kind == WorkloadKind.STATEFULSET:
            self.stateful_sets += 1
        elif kind == WorkloadKind.DAEMONSET:
            self.daemon_sets += 1


class OptimizationPolicyStatus(CamelModel):
    """Observed state written by the reconciler."""
    conditions: list[Condition] = Field(default_factory=list)
    workloads_discovered: int = 0
    workloads_processed: int = 0
    workloads_by_type: WorkloadTypeCounts = Field(default_factory=WorkloadTypeCounts)
    last_reconciliation: Optional[str] = None
    phase: Optional[ReconcilePhase] = None

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


class OptimizationPolicy(BaseModel):
    """An OptimizationPolicy object as read from the cluster."""
    name: str
    namespace: str = "default"
    resource_version: Optional[str] = None
    generation: int = 0
    spec: OptimizationPolicySpec
    status: OptimizationPolicyStatus = Field(default_factory=OptimizationPolicyStatus)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def mode(self) -> PolicyMode:
        return self.spec.mode

    @classmethod
    def from_manifest(cls, obj: dict[str, Any]) -> "OptimizationPolicy":
        """
        Build a policy from a custom object dictionary.

        Raises:
            pydantic.ValidationError: If the object does not fit the schema.
        """
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace") or "default",
            resource_version=metadata.get("resourceVersion"),
            generation=metadata.get("generation") or 0,
            spec=OptimizationPolicySpec.model_validate(obj.get("spec") or {}),
            status=OptimizationPolicyStatus.model_validate(obj.get("status") or {}),
        )


# ============================================================================
# Durations
# ============================================================================

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}


def parse_duration(text: str) -> timedelta:
    """
    Parse a Go-style duration such as "30s", "5m", "1h30m" or "7d".

    Raises:
        ValueError: If the string is empty or malformed.
    """
    if not text or not text.strip():
        raise ValueError("empty duration")
    text = text.strip()
    position = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration {text!r}")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration {text!r}")
    return timedelta(seconds=seconds)
