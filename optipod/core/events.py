"""
Kubernetes event recording for OptiPod.

Events are the user-visible trail of what the controller decided for each
workload. Recording is best-effort: a failed event never fails a
reconciliation.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from optipod.core.cluster import ClusterClient, ClusterError
from optipod.core.workloads import format_timestamp

logger = logging.getLogger(__name__)

COMPONENT = "optipod-controller"

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"


class EventReason:
    """Reasons attached to emitted events."""
    RECOMMENDATION_GENERATED = "RecommendationGenerated"
    UPDATE_SUCCESS = "UpdateSuccess"
    UPDATE_FAILED = "UpdateFailed"
    VALIDATION_FAILED = "ValidationFailed"
    METRICS_COLLECTION_FAILED = "MetricsCollectionFailed"
    RBAC_ERROR = "RBACError"
    IN_PLACE_RESIZE_UNAVAILABLE = "InPlaceResizeUnavailable"
    WORKLOAD_SKIPPED = "WorkloadSkipped"
    UNSAFE_MEMORY_DECREASE = "UnsafeMemoryDecrease"
    NO_UPDATE_STRATEGY = "NoUpdateStrategy"


class EventRecorder:
    """Writes core/v1 Events against workloads and policies."""

    def __init__(
        self,
        cluster: ClusterClient,
        component: str = COMPONENT,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.cluster = cluster
        self.component = component
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def record(self, involved_object: dict, event_type: str, reason: str, message: str) -> None:
        """
        Emit an event.

        Args:
            involved_object: Object reference (apiVersion, kind, name, namespace, uid).
            event_type: Normal or Warning.
            reason: One of EventReason.
            message: Human-readable detail.
        """
        namespace = involved_object.get("namespace") or "default"
        now = format_timestamp(self._clock())
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{involved_object.get('name', 'unknown')}.{uuid.uuid4().hex[:16]}",
                "namespace": namespace,
            },
            "involvedObject": involved_object,
            "type": event_type,
            "reason": reason,
            "message": message[:1024],
            "source": {"component": self.component},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        try:
            self.cluster.create_event(namespace, body)
        except ClusterError as e:
            logger.warning(f"Failed to record {reason} event for {involved_object.get('name')}: {e}")

    def normal(self, involved_object: dict, reason: str, message: str) -> None:
        self.record(involved_object, EVENT_NORMAL, reason, message)

    def warning(self, involved_object: dict, reason: str, message: str) -> None:
        self.record(involved_object, EVENT_WARNING, reason, message)


def policy_reference(namespace: str, name: str, group: str, version: str, uid: str = "") -> dict:
    return {
        "apiVersion": f"{group}/{version}",
        "kind": "OptimizationPolicy",
        "name": name,
        "namespace": namespace,
        "uid": uid,
    }
