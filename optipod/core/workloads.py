"""
Workload representation for OptiPod.

Deployments, StatefulSets and DaemonSets are carried as a single tagged
Workload so discovery and sizing never branch on kind. Only the update
executor cares how a kind is mutated, and even there the pod template path
is shared.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from optipod.core.schemas import LabelSelector, WorkloadKind
from optipod.core.selectors import to_selector_string

logger = logging.getLogger(__name__)

RESOURCE_NAMES = ("cpu", "memory")


@dataclass
class ContainerResources:
    """Requests and limits of one container, as quantity strings."""
    name: str
    requests: dict[str, str] = field(default_factory=dict)
    limits: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_manifest(cls, container: dict) -> "ContainerResources":
        resources = container.get("resources") or {}
        return cls(
            name=container.get("name", ""),
            requests={k: str(v) for k, v in (resources.get("requests") or {}).items()},
            limits={k: str(v) for k, v in (resources.get("limits") or {}).items()},
        )


def is_active_pod(pod: dict) -> bool:
    """Running and not being deleted."""
    return (
        (pod.get("status") or {}).get("phase") == "Running"
        and not (pod.get("metadata") or {}).get("deletionTimestamp")
    )


@dataclass
class Workload:
    """A Deployment, StatefulSet or DaemonSet read from the cluster."""
    kind: WorkloadKind
    name: str
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    resource_version: Optional[str] = None
    generation: int = 0
    pod_selector: Optional[LabelSelector] = None
    manifest: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.kind.value}/{self.namespace}/{self.name}"

    @classmethod
    def from_manifest(cls, kind: WorkloadKind, obj: dict[str, Any]) -> "Workload":
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        selector = spec.get("selector") or {}
        return cls(
            kind=kind,
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            labels=dict(metadata.get("labels") or {}),
            annotations=dict(metadata.get("annotations") or {}),
            resource_version=metadata.get("resourceVersion"),
            generation=metadata.get("generation") or 0,
            pod_selector=LabelSelector.model_validate(selector) if selector else None,
            manifest=obj,
        )

    def pod_label_selector(self) -> Optional[str]:
        """The workload's pod selector as a label_selector string, or None when it selects nothing."""
        return to_selector_string(self.pod_selector)

    def pod_template(self) -> dict[str, Any]:
        return (self.manifest.get("spec") or {}).get("template") or {}

    def containers(self) -> list[ContainerResources]:
        pod_spec = self.pod_template().get("spec") or {}
        return [ContainerResources.from_manifest(c) for c in pod_spec.get("containers") or []]

    def object_reference(self) -> dict[str, str]:
        return {
            "apiVersion": "apps/v1",
            "kind": self.kind.value,
            "name": self.name,
            "namespace": self.namespace,
            "uid": (self.manifest.get("metadata") or {}).get("uid", ""),
        }

    def resources_patch(
        self,
        container_resources: dict[str, dict[str, dict[str, str]]],
        annotations: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        """
        Build a strategic merge patch touching only container resources.

        Args:
            container_resources: container name -> {"requests": {...}, "limits": {...}}.
                Only the keys present are written; everything else in the
                pod template is left as it is.
            annotations: Optional bookkeeping annotations for the workload.

        Returns:
            Patch body carrying the resource version read at discovery.
        """
        containers = []
        for name, resources in container_resources.items():
            body = {key: dict(values) for key, values in resources.items() if values}
            containers.append({"name": name, "resources": body})

        patch: dict[str, Any] = {
            "metadata": {"resourceVersion": self.resource_version},
            "spec": {"template": {"spec": {"containers": containers}}},
        }
        if annotations:
            patch["metadata"]["annotations"] = dict(annotations)
        return patch

    def annotations_patch(self, annotations: dict[str, str]) -> dict[str, Any]:
        return {
            "metadata": {
                "resourceVersion": self.resource_version,
                "annotations": dict(annotations),
            }
        }


# ============================================================================
# Annotation projection
# ============================================================================

class AnnotationKeys:
    """The fixed set of annotation keys OptiPod reads and writes."""

    MANAGED = "managed"
    POLICY = "policy"
    LAST_APPLIED = "last-applied"
    CPU_RECOMMENDATION = "cpu-recommendation"
    MEMORY_RECOMMENDATION = "memory-recommendation"

    def __init__(self, prefix: str = "optipod.io"):
        self.prefix = prefix.rstrip("/")

    def key(self, name: str, container: Optional[str] = None) -> str:
        suffix = f".{container}" if container else ""
        return f"{self.prefix}/{name}{suffix}"

    def owns(self, key: str) -> bool:
        return key.startswith(f"{self.prefix}/")


@dataclass
class RecommendationAnnotations:
    """
    Typed view of the bookkeeping annotations on a workload.

    Per-container keys carry the container name as a suffix
    (``optipod.io/cpu-recommendation.app``). Single-container workloads also
    get the bare keys so the common case reads naturally.
    """
    policy: Optional[str] = None
    last_applied: Optional[str] = None
    cpu: dict[str, str] = field(default_factory=dict)
    memory: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_annotations(cls, annotations: dict[str, str], prefix: str = "optipod.io") -> "RecommendationAnnotations":
        keys = AnnotationKeys(prefix)
        result = cls()
        for key, value in (annotations or {}).items():
            if not keys.owns(key):
                continue
            name = key[len(keys.prefix) + 1:]
            if name == AnnotationKeys.POLICY:
                result.policy = value
            elif name == AnnotationKeys.LAST_APPLIED:
                result.last_applied = value
            elif name.startswith(AnnotationKeys.CPU_RECOMMENDATION + "."):
                result.cpu[name[len(AnnotationKeys.CPU_RECOMMENDATION) + 1:]] = value
            elif name.startswith(AnnotationKeys.MEMORY_RECOMMENDATION + "."):
                result.memory[name[len(AnnotationKeys.MEMORY_RECOMMENDATION) + 1:]] = value
        return result

    def to_annotations(self, prefix: str = "optipod.io") -> dict[str, str]:
        keys = AnnotationKeys(prefix)
        annotations = {keys.key(AnnotationKeys.MANAGED): "true"}
        if self.policy:
            annotations[keys.key(AnnotationKeys.POLICY)] = self.policy
        if self.last_applied:
            annotations[keys.key(AnnotationKeys.LAST_APPLIED)] = self.last_applied
        for container, value in self.cpu.items():
            annotations[keys.key(AnnotationKeys.CPU_RECOMMENDATION, container)] = value
        for container, value in self.memory.items():
            annotations[keys.key(AnnotationKeys.MEMORY_RECOMMENDATION, container)] = value
        containers = set(self.cpu) | set(self.memory)
        if len(containers) == 1:
            (container,) = containers
            if container in self.cpu:
                annotations[keys.key(AnnotationKeys.CPU_RECOMMENDATION)] = self.cpu[container]
            if container in self.memory:
                annotations[keys.key(AnnotationKeys.MEMORY_RECOMMENDATION)] = self.memory[container]
        return annotations

    def same_values(self, other: "RecommendationAnnotations") -> bool:
        """Compare everything except the timestamp."""
        return (
            self.policy == other.policy
            and self.cpu == other.cpu
            and self.memory == other.memory
        )


def format_timestamp(moment: datetime) -> str:
    """RFC3339 in UTC with a trailing Z."""
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")
