"""
Update strategy executor for OptiPod.

Decides how a recommendation reaches a workload:

- Disabled: nothing is written.
- Recommend: bookkeeping annotations only; the pod template is never touched.
- Auto: in-place resize of running pods when allowed and supported,
  otherwise a pod template patch (recreate) when allowed. Requests-only
  is a modifier on either path that leaves limits alone.

Every workload write carries the resource version that was read, and a
conflict re-reads the workload and retries that single write.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from optipod.core.cluster import ClusterClient, ClusterError, MalformedWorkloadError
from optipod.core.events import EventReason
from optipod.core.quantity import Quantity, QuantityError, quantities_equal
from optipod.core.retry import RetryPolicy
from optipod.core.schemas import OptimizationPolicy, PolicyMode
from optipod.core.sizing import ContainerRecommendation
from optipod.core.workloads import (
    ContainerResources,
    RecommendationAnnotations,
    Workload,
    format_timestamp,
    is_active_pod,
)

logger = logging.getLogger(__name__)

ResourceChanges = dict[str, dict[str, dict[str, str]]]


class UpdateMethod(str, Enum):
    """Mutation mechanism used for a workload."""
    IN_PLACE = "InPlace"
    RECREATE = "Recreate"
    ANNOTATION = "Annotation"
    NONE = "None"


class OutcomeStatus(str, Enum):
    APPLIED = "Applied"
    RECOMMENDED = "Recommended"
    UNCHANGED = "Unchanged"
    SKIPPED = "Skipped"


@dataclass
class AppliedOutcome:
    """What the executor did to one workload."""
    workload: str
    status: OutcomeStatus
    method: UpdateMethod = UpdateMethod.NONE
    message: str = ""
    reason: Optional[str] = None
    changed_containers: list[str] = field(default_factory=list)
    unsafe_containers: list[str] = field(default_factory=list)
    held_resources: list[str] = field(default_factory=list)

    @property
    def processed(self) -> bool:
        return self.status != OutcomeStatus.SKIPPED

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "workload": self.workload,
            "status": self.status.value,
            "method": self.method.value,
            "message": self.message,
            "reason": self.reason,
            "changed_containers": self.changed_containers,
            "unsafe_containers": self.unsafe_containers,
            "held_resources": self.held_resources,
        }


def desired_changes(
    containers: list[ContainerResources],
    recommendations: list[ContainerRecommendation],
    requests_only: bool,
) -> tuple[ResourceChanges, list[str]]:
    """
    Work out which resource values differ from the recommendation.

    Unsafe memory recommendations keep the current memory. Under
    requests-only, a request that would exceed the container's existing
    limit is held back rather than producing an invalid spec.

    Returns:
        (changes, held) where changes maps container name to
        {"requests": {...}, "limits": {...}} with only differing values, and
        held lists "container/resource" entries that were held back.
    """
    by_name = {container.name: container for container in containers}
    changes: ResourceChanges = {}
    held: list[str] = []

    for rec in recommendations:
        current = by_name.get(rec.container)
        if current is None:
            continue

        request_targets = {"cpu": rec.cpu}
        limit_targets = {"cpu": rec.cpu_limit}
        if not rec.memory_unsafe:
            request_targets["memory"] = rec.memory
            limit_targets["memory"] = rec.memory_limit

        requests: dict[str, str] = {}
        for resource, target in request_targets.items():
            existing_limit = current.limits.get(resource)
            if requests_only and existing_limit:
                try:
                    if Quantity.parse(existing_limit) < target:
                        held.append(f"{rec.container}/{resource}")
                        continue
                except QuantityError:
                    held.append(f"{rec.container}/{resource}")
                    continue
            if not quantities_equal(current.requests.get(resource), str(target)):
                requests[resource] = str(target)

        limits: dict[str, str] = {}
        if not requests_only:
            for resource, target in limit_targets.items():
                if target is None:
                    continue
                if not quantities_equal(current.limits.get(resource), str(target)):
                    limits[resource] = str(target)

        if requests or limits:
            changes[rec.container] = {"requests": requests, "limits": limits}

    return changes, held


class UpdateExecutor:
    """
    Applies recommendations to workloads according to policy mode and strategy.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        retry_policy: Optional[RetryPolicy] = None,
        annotation_prefix: str = "optipod.io",
        dry_run: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the executor.

        Args:
            cluster: Cluster API access.
            retry_policy: Backoff for conflicting or transient writes.
            annotation_prefix: Prefix for bookkeeping annotations.
            dry_run: Compute outcomes without writing anything.
            clock: Returns the current UTC time.
        """
        self.cluster = cluster
        self.retry_policy = retry_policy or RetryPolicy()
        self.annotation_prefix = annotation_prefix
        self.dry_run = dry_run
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def apply(
        self,
        workload: Workload,
        recommendations: list[ContainerRecommendation],
        policy: OptimizationPolicy,
    ) -> AppliedOutcome:
        """
        Apply recommendations to a workload.

        Args:
            workload: The workload as read at discovery.
            recommendations: One entry per sized container.
            policy: The governing policy.

        Returns:
            AppliedOutcome describing what happened.

        Raises:
            ClusterError: If a write fails after retries (transient) or
                immediately (permanent).
        """
        mode = policy.spec.mode
        unsafe = [rec.container for rec in recommendations if rec.memory_unsafe]

        if mode == PolicyMode.DISABLED:
            return AppliedOutcome(
                workload=workload.key,
                status=OutcomeStatus.UNCHANGED,
                message="policy is disabled",
            )

        if not recommendations:
            return AppliedOutcome(
                workload=workload.key,
                status=OutcomeStatus.SKIPPED,
                reason=EventReason.WORKLOAD_SKIPPED,
                message="no container could be sized",
            )

        if mode == PolicyMode.RECOMMEND:
            outcome = self._record_recommendations(workload, recommendations, policy)
        else:
            outcome = self._apply_auto(workload, recommendations, policy)
        outcome.unsafe_containers = unsafe
        return outcome

    # ------------------------------------------------------------------
    # Annotations
    # ------------------------------------------------------------------

    def _annotations_for(
        self,
        recommendations: list[ContainerRecommendation],
        policy: OptimizationPolicy,
    ) -> RecommendationAnnotations:
        return RecommendationAnnotations(
            policy=policy.key,
            last_applied=format_timestamp(self._clock()),
            cpu={rec.container: str(rec.cpu) for rec in recommendations},
            memory={rec.container: str(rec.memory) for rec in recommendations},
        )

    def _annotations_stale(self, workload: Workload, desired: RecommendationAnnotations) -> bool:
        current = RecommendationAnnotations.from_annotations(
            workload.annotations, self.annotation_prefix
        )
        return not current.same_values(desired)

    def _write_with_conflict_retry(
        self,
        workload: Workload,
        build_patch: Callable[[Workload], Optional[dict]],
    ):
        """
        Patch a workload, re-reading it after a conflict.

        build_patch receives the freshest copy of the workload and returns
        the patch, or None when nothing needs writing.
        """
        state = {"workload": workload, "attempts": 0}

        def attempt():
            current = state["workload"]
            if state["attempts"] > 0:
                current = self.cluster.get_workload(
                    workload.kind, workload.namespace, workload.name
                )
                state["workload"] = current
            state["attempts"] += 1
            patch = build_patch(current)
            if patch is None:
                return None
            return self.cluster.patch_workload(current, patch)

        def on_retry(attempt_number: int, error: Exception) -> None:
            logger.info(f"Retrying write to {workload.key} after: {error}")

        return self.retry_policy.call(attempt, on_retry=on_retry), state["workload"]

    def _record_recommendations(
        self,
        workload: Workload,
        recommendations: list[ContainerRecommendation],
        policy: OptimizationPolicy,
    ) -> AppliedOutcome:
        desired = self._annotations_for(recommendations, policy)

        if not self._annotations_stale(workload, desired):
            return AppliedOutcome(
                workload=workload.key,
                status=OutcomeStatus.UNCHANGED,
                method=UpdateMethod.ANNOTATION,
                message="recommendation unchanged",
            )

        if self.dry_run:
            return AppliedOutcome(
                workload=workload.key,
                status=OutcomeStatus.RECOMMENDED,
                method=UpdateMethod.ANNOTATION,
                reason=EventReason.RECOMMENDATION_GENERATED,
                message="dry run: recommendation computed, annotations not written",
            )

        def build_patch(current: Workload) -> Optional[dict]:
            if not self._annotations_stale(current, desired):
                return None
            return current.annotations_patch(desired.to_annotations(self.annotation_prefix))

        self._write_with_conflict_retry(workload, build_patch)
        return AppliedOutcome(
            workload=workload.key,
            status=OutcomeStatus.RECOMMENDED,
            method=UpdateMethod.ANNOTATION,
            reason=EventReason.RECOMMENDATION_GENERATED,
            changed_containers=[rec.container for rec in recommendations],
            message=", ".join(
                f"{rec.container}: cpu={rec.cpu} memory={rec.memory}" for rec in recommendations
            ),
        )

    # ------------------------------------------------------------------
    # Auto mode
    # ------------------------------------------------------------------

    def _apply_auto(
        self,
        workload: Workload,
        recommendations: list[ContainerRecommendation],
        policy: OptimizationPolicy,
    ) -> AppliedOutcome:
        strategy = policy.spec.update_strategy
        requests_only = strategy.update_requests_only

        if not strategy.allow_in_place_resize and not strategy.allow_recreate:
            return AppliedOutcome(
                workload=workload.key,
                status=OutcomeStatus.SKIPPED,
                reason=EventReason.NO_UPDATE_STRATEGY,
                message=(
                    "no usable update strategy: allowInPlaceResize=false and "
                    "allowRecreate=false, workload left unchanged"
                ),
            )

        if self.dry_run:
            changes, held = desired_changes(workload.containers(), recommendations, requests_only)
            return AppliedOutcome(
                workload=workload.key,
                status=OutcomeStatus.RECOMMENDED,
                reason=EventReason.RECOMMENDATION_GENERATED,
                changed_containers=sorted(changes),
                held_resources=held,
                message="dry run: changes computed, nothing written",
            )

        annotations = self._annotations_for(recommendations, policy)

        if strategy.allow_in_place_resize:
            if self.cluster.supports_in_place_resize():
                try:
                    return self._apply_in_place(workload, recommendations, requests_only, annotations)
                except ClusterError as e:
                    if not strategy.allow_recreate:
                        raise
                    logger.warning(
                        f"In-place resize of {workload.key} failed ({e}), falling back to recreate"
                    )
            elif not strategy.allow_recreate:
                return AppliedOutcome(
                    workload=workload.key,
                    status=OutcomeStatus.SKIPPED,
                    reason=EventReason.IN_PLACE_RESIZE_UNAVAILABLE,
                    message=(
                        "in-place resize is not supported by this cluster and "
                        "allowRecreate=false, workload left unchanged"
                    ),
                )

        return self._apply_recreate(workload, recommendations, requests_only, annotations)

    def _apply_in_place(
        self,
        workload: Workload,
        recommendations: list[ContainerRecommendation],
        requests_only: bool,
        annotations: RecommendationAnnotations,
    ) -> AppliedOutcome:
        label_selector = workload.pod_label_selector()
        if label_selector is None:
            raise MalformedWorkloadError(f"{workload.key} has an empty pod selector")
        pods = self.cluster.list_pods(workload.namespace, label_selector)
        running = [pod for pod in pods if is_active_pod(pod)]

        resized = []
        changed_containers: set[str] = set()
        held: list[str] = []
        for pod in running:
            containers = [
                ContainerResources.from_manifest(c)
                for c in (pod.get("spec") or {}).get("containers") or []
            ]
            changes, pod_held = desired_changes(containers, recommendations, requests_only)
            held.extend(h for h in pod_held if h not in held)
            if not changes:
                continue
            pod_name = pod["metadata"]["name"]
            body = {
                "spec": {
                    "containers": [
                        {
                            "name": name,
                            "resources": {k: v for k, v in resources.items() if v},
                        }
                        for name, resources in changes.items()
                    ]
                }
            }
            self.retry_policy.call(self.cluster.resize_pod, workload.namespace, pod_name, body)
            resized.append(pod_name)
            changed_containers.update(changes)

        def build_patch(current: Workload) -> Optional[dict]:
            if not self._annotations_stale(current, annotations):
                return None
            return current.annotations_patch(annotations.to_annotations(self.annotation_prefix))

        self._write_with_conflict_retry(workload, build_patch)

        if not resized:
            return AppliedOutcome(
                workload=workload.key,
                status=OutcomeStatus.UNCHANGED,
                method=UpdateMethod.IN_PLACE,
                held_resources=held,
                message="running pods already match the recommendation"
                if running else "no running pods to resize",
            )

        logger.info(f"Resized {len(resized)} pod(s) of {workload.key} in place")
        return AppliedOutcome(
            workload=workload.key,
            status=OutcomeStatus.APPLIED,
            method=UpdateMethod.IN_PLACE,
            reason=EventReason.UPDATE_SUCCESS,
            changed_containers=sorted(changed_containers),
            held_resources=held,
            message=f"resized {len(resized)} running pod(s) in place",
        )

    def _apply_recreate(
        self,
        workload: Workload,
        recommendations: list[ContainerRecommendation],
        requests_only: bool,
        annotations: RecommendationAnnotations,
    ) -> AppliedOutcome:
        applied: dict = {"changes": {}, "held": []}

        def build_patch(current: Workload) -> Optional[dict]:
            changes, held = desired_changes(current.containers(), recommendations, requests_only)
            applied["changes"], applied["held"] = changes, held
            stale = self._annotations_stale(current, annotations)
            if not changes and not stale:
                return None
            bookkeeping = annotations.to_annotations(self.annotation_prefix)
            if not changes:
                return current.annotations_patch(bookkeeping)
            return current.resources_patch(changes, bookkeeping)

        self._write_with_conflict_retry(workload, build_patch)
        changes = applied["changes"]

        if not changes:
            return AppliedOutcome(
                workload=workload.key,
                status=OutcomeStatus.UNCHANGED,
                method=UpdateMethod.RECREATE,
                held_resources=applied["held"],
                message="pod template already matches the recommendation",
            )

        logger.info(f"Patched pod template of {workload.key} for containers {sorted(changes)}")
        return AppliedOutcome(
            workload=workload.key,
            status=OutcomeStatus.APPLIED,
            method=UpdateMethod.RECREATE,
            reason=EventReason.UPDATE_SUCCESS,
            changed_containers=sorted(changes),
            held_resources=applied["held"],
            message=f"updated pod template resources for {', '.join(sorted(changes))}",
        )
