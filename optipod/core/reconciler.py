"""
Per-policy reconciliation for OptiPod.

One reconcile call runs the whole pipeline from scratch:

    Pending -> Discovering -> Sizing -> Applying -> Ready | Degraded

Errors for one workload never stop the others. Only failures that break
discovery as a whole degrade the cycle, and those keep the previous counts.
The outcome is written to the policy's status subresource.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from optipod.config import BaseConfig
from optipod.core.cluster import (
    ClusterClient,
    ClusterError,
    NotFoundError,
    PermanentClusterError,
    PermissionDeniedError,
    TransientClusterError,
)
from optipod.core.discovery import PolicyArbiter, WorkloadDiscovery
from optipod.core.events import EventReason, EventRecorder, policy_reference
from optipod.core.executor import AppliedOutcome, OutcomeStatus, UpdateExecutor
from optipod.core.metrics import MetricsBackendError, MetricsProvider, MetricsUnavailableError
from optipod.core.quantity import Quantity, QuantityError
from optipod.core.retry import RetryPolicy
from optipod.core.schemas import (
    Condition,
    ConditionStatus,
    OptimizationPolicy,
    OptimizationPolicyStatus,
    PolicyMode,
    ReconcilePhase,
    WorkloadTypeCounts,
    parse_duration,
)
from optipod.core.sizing import ContainerRecommendation, ResolvedBounds, SizingEngine
from optipod.core.validation import PolicyValidationError, policy_from_manifest
from optipod.core.workloads import Workload, format_timestamp, is_active_pod

logger = logging.getLogger(__name__)

CONDITION_READY = "Ready"
CONDITION_METRICS_AVAILABLE = "MetricsAvailable"
CONDITION_SAFE_TO_APPLY = "SafeToApply"


def set_condition(conditions: list[Condition], new: Condition, now: str) -> list[Condition]:
    """
    Insert or replace a condition.

    lastTransitionTime is carried over unless the status value changes.
    """
    result = []
    replaced = False
    for existing in conditions:
        if existing.type != new.type:
            result.append(existing)
            continue
        replaced = True
        transition = existing.last_transition_time if existing.status == new.status else now
        result.append(new.model_copy(update={"last_transition_time": transition or now}))
    if not replaced:
        result.append(new.model_copy(update={"last_transition_time": now}))
    return result


@dataclass
class WorkloadReport:
    """Per-workload result of one cycle."""
    workload: Workload
    outcome: Optional[AppliedOutcome] = None
    recommendations: list[ContainerRecommendation] = field(default_factory=list)
    missing_metrics: list[str] = field(default_factory=list)
    error: Optional[ClusterError] = None


@dataclass
class ReconcileResult:
    """What the controller needs to know after a cycle."""
    policy_key: str
    phase: ReconcilePhase
    status: Optional[OptimizationPolicyStatus] = None
    requeue: bool = False
    reports: list[WorkloadReport] = field(default_factory=list)
    deleted: bool = False
    error: Optional[str] = None


class PolicyReconciler:
    """
    Runs discovery, sizing and apply for one policy at a time.

    Instances are safe to share between worker threads; they hold no
    per-policy state.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        metrics_provider: MetricsProvider,
        app_config: BaseConfig,
        sizing_engine: Optional[SizingEngine] = None,
        executor: Optional[UpdateExecutor] = None,
        events: Optional[EventRecorder] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.cluster = cluster
        self.metrics_provider = metrics_provider
        self.config = app_config
        self.retry_policy = retry_policy or RetryPolicy.from_config(app_config)
        self.metrics_retry_policy = RetryPolicy.from_config(
            app_config, retry_on=(MetricsBackendError,), sleep=self.retry_policy.sleep
        )
        self.status_retry_policy = RetryPolicy.from_config(
            app_config, max_attempts=3, base_delay=min(0.05, app_config.RETRY_BASE_DELAY),
            sleep=self.retry_policy.sleep,
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.sizing_engine = sizing_engine or SizingEngine()
        self.executor = executor or UpdateExecutor(
            cluster,
            retry_policy=self.retry_policy,
            annotation_prefix=app_config.ANNOTATION_PREFIX,
            dry_run=app_config.DRY_RUN,
            clock=self._clock,
        )
        self.events = events or EventRecorder(cluster, clock=self._clock)
        self.discovery = WorkloadDiscovery(cluster)
        self.arbiter = PolicyArbiter()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """
        Reconcile one policy.

        Args:
            namespace: Policy namespace.
            name: Policy name.

        Returns:
            ReconcileResult; never raises for cluster or metrics failures.
        """
        key = f"{namespace}/{name}"
        try:
            obj = self.retry_policy.call(self.cluster.get_policy, namespace, name)
        except NotFoundError:
            logger.info(f"Policy {key} no longer exists")
            return ReconcileResult(policy_key=key, phase=ReconcilePhase.PENDING, deleted=True)
        except ClusterError as e:
            logger.error(f"Failed to read policy {key}: {e}")
            return ReconcileResult(
                policy_key=key,
                phase=ReconcilePhase.DEGRADED,
                requeue=isinstance(e, TransientClusterError),
                error=str(e),
            )

        metadata = obj.get("metadata") or {}
        reference = policy_reference(
            namespace, name, self.config.CRD_GROUP, self.config.CRD_VERSION, metadata.get("uid", "")
        )
        previous = OptimizationPolicyStatus.model_validate(obj.get("status") or {})

        try:
            policy = policy_from_manifest(obj)
        except PolicyValidationError as e:
            logger.warning(f"Policy {key} is invalid: {e.message}")
            self.events.warning(reference, EventReason.VALIDATION_FAILED, e.message)
            status = self._new_status(previous, ReconcilePhase.DEGRADED)
            status.workloads_discovered = previous.workloads_discovered
            status.workloads_processed = previous.workloads_processed
            status.workloads_by_type = previous.workloads_by_type
            self._set(status, CONDITION_READY, ConditionStatus.FALSE, "ValidationFailed", e.message)
            self._write_status(namespace, name, status)
            return ReconcileResult(
                policy_key=key, phase=ReconcilePhase.DEGRADED, status=status, error=e.message
            )

        return self._run_pipeline(policy, previous, reference)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run_pipeline(
        self,
        policy: OptimizationPolicy,
        previous: OptimizationPolicyStatus,
        reference: dict,
    ) -> ReconcileResult:
        logger.info(f"Reconciling policy {policy.key} (mode={policy.spec.mode.value})")

        self._enter(policy, ReconcilePhase.DISCOVERING)
        try:
            discovered = self.retry_policy.call(self.discovery.discover, policy)
            all_policies = self._list_policies()
        except ClusterError as e:
            return self._degrade(policy, previous, reference, e)

        status = self._new_status(previous, ReconcilePhase.DISCOVERING)
        status.workloads_discovered = len(discovered.workloads)

        governed = []
        for workload in discovered.workloads:
            owner = self.arbiter.select(
                workload, all_policies + [policy], discovered.namespace_labels
            )
            if owner is not None and owner.key == policy.key:
                governed.append(workload)
                status.workloads_by_type.increment(workload.kind)
            elif owner is not None:
                logger.debug(f"Workload {workload.key} is governed by {owner.key}, not {policy.key}")

        if policy.spec.mode == PolicyMode.DISABLED:
            status.phase = ReconcilePhase.READY
            self._set(status, CONDITION_READY, ConditionStatus.TRUE, "PolicyDisabled",
                      "Policy is disabled; no recommendations are computed")
            self._write_status(policy.namespace, policy.name, status)
            return ReconcileResult(policy_key=policy.key, phase=ReconcilePhase.READY, status=status)

        self._enter(policy, ReconcilePhase.SIZING)
        bounds = ResolvedBounds.from_policy(policy.spec.resource_bounds)
        window = parse_duration(policy.spec.metrics_config.rolling_window)
        reports = [self._size_workload(policy, workload, bounds, window) for workload in governed]

        self._enter(policy, ReconcilePhase.APPLYING)
        for report in reports:
            self._apply_workload(policy, report)

        return self._finish(policy, status, reports)

    def _enter(self, policy: OptimizationPolicy, phase: ReconcilePhase) -> None:
        logger.debug(f"Policy {policy.key}: entering {phase.value}")

    def _list_policies(self) -> list[OptimizationPolicy]:
        policies = []
        for obj in self.retry_policy.call(self.cluster.list_policies, self.config.WATCH_NAMESPACE):
            try:
                policies.append(policy_from_manifest(obj))
            except PolicyValidationError:
                continue
        return policies

    def _size_workload(
        self,
        policy: OptimizationPolicy,
        workload: Workload,
        bounds: ResolvedBounds,
        window,
    ) -> WorkloadReport:
        report = WorkloadReport(workload=workload)
        containers = workload.containers()

        label_selector = workload.pod_label_selector()
        if label_selector is None:
            report.outcome = AppliedOutcome(
                workload=workload.key,
                status=OutcomeStatus.SKIPPED,
                reason=EventReason.WORKLOAD_SKIPPED,
                message="workload has an empty pod selector; its pods cannot be identified",
            )
            return report

        try:
            pods = self.retry_policy.call(self.cluster.list_pods, workload.namespace, label_selector)
        except ClusterError as e:
            report.error = e
            return report

        pod_name = next((pod["metadata"]["name"] for pod in pods if is_active_pod(pod)), None)
        if pod_name is None:
            report.missing_metrics = [container.name for container in containers]
            return report

        metrics_config = policy.spec.metrics_config
        limit_config = policy.spec.update_strategy.limit_config
        for container in containers:
            try:
                series = self.metrics_retry_policy.call(
                    self.metrics_provider.get_container_metrics,
                    workload.namespace,
                    pod_name,
                    container.name,
                    window,
                )
                original_memory = None
                if container.requests.get("memory"):
                    try:
                        original_memory = Quantity.parse(container.requests["memory"])
                    except QuantityError:
                        original_memory = None
                report.recommendations.append(
                    self.sizing_engine.recommend(
                        container.name,
                        series,
                        bounds,
                        metrics_config.safety_factor,
                        metrics_config.percentile,
                        original_memory=original_memory,
                        limit_config=limit_config,
                    )
                )
            except MetricsUnavailableError as e:
                logger.info(f"Skipping container {container.name} of {workload.key}: {e}")
                report.missing_metrics.append(container.name)
        return report

    def _apply_workload(self, policy: OptimizationPolicy, report: WorkloadReport) -> None:
        workload = report.workload
        reference = workload.object_reference()

        if report.error is not None:
            return
        if report.outcome is not None:
            self.events.warning(reference, report.outcome.reason, report.outcome.message)
            return
        if report.missing_metrics:
            self.events.warning(
                reference,
                EventReason.METRICS_COLLECTION_FAILED,
                f"No metrics for container(s) {', '.join(report.missing_metrics)}; "
                f"previous resources retained",
            )

        try:
            report.outcome = self.executor.apply(workload, report.recommendations, policy)
        except ClusterError as e:
            report.error = e
            reason = (
                EventReason.RBAC_ERROR if isinstance(e, PermissionDeniedError)
                else EventReason.UPDATE_FAILED
            )
            self.events.warning(reference, reason, str(e))
            logger.error(f"Failed to apply recommendation to {workload.key}: {e}")
            return

        outcome = report.outcome
        for container in outcome.unsafe_containers:
            self.events.warning(
                reference,
                EventReason.UNSAFE_MEMORY_DECREASE,
                f"Memory recommendation for container {container} is less than half of the "
                f"current request; memory left unchanged",
            )
        if outcome.status == OutcomeStatus.SKIPPED:
            self.events.warning(reference, outcome.reason or EventReason.WORKLOAD_SKIPPED, outcome.message)
        elif outcome.reason:
            self.events.normal(reference, outcome.reason, outcome.message)

    def _finish(
        self,
        policy: OptimizationPolicy,
        status: OptimizationPolicyStatus,
        reports: list[WorkloadReport],
    ) -> ReconcileResult:
        transient = [r for r in reports if isinstance(r.error, TransientClusterError)]
        permanent = [r for r in reports if isinstance(r.error, PermanentClusterError)]
        other = [
            r for r in reports
            if r.error is not None and r not in transient and r not in permanent
        ]
        # Workloads skipped only for lack of metrics surface through MetricsAvailable
        skipped = [
            r for r in reports
            if r.outcome is not None
            and r.outcome.status == OutcomeStatus.SKIPPED
            and not (r.missing_metrics and r.outcome.reason == EventReason.WORKLOAD_SKIPPED)
        ]
        missing = [r for r in reports if r.missing_metrics]
        unsafe = [r for r in reports if r.outcome is not None and r.outcome.unsafe_containers]

        status.workloads_processed = sum(
            1 for r in reports if r.outcome is not None and r.outcome.processed
        )

        failed = transient + permanent + other
        if failed:
            last = failed[-1]
            status.phase = ReconcilePhase.DEGRADED
            reason = "TransientError" if last in transient else "PermanentError"
            if isinstance(last.error, PermissionDeniedError):
                reason = "RBACError"
            self._set(status, CONDITION_READY, ConditionStatus.FALSE, reason,
                      f"{last.workload.key}: {last.error}")
        elif skipped:
            last = skipped[-1]
            status.phase = ReconcilePhase.DEGRADED
            self._set(status, CONDITION_READY, ConditionStatus.FALSE,
                      last.outcome.reason or EventReason.WORKLOAD_SKIPPED,
                      f"{last.workload.key}: {last.outcome.message}")
        else:
            status.phase = ReconcilePhase.READY
            self._set(status, CONDITION_READY, ConditionStatus.TRUE, "ReconciliationSucceeded",
                      f"Processed {status.workloads_processed} of "
                      f"{len(reports)} governed workload(s)")

        if missing:
            names = ", ".join(
                f"{r.workload.key}[{','.join(r.missing_metrics)}]" for r in missing
            )
            self._set(status, CONDITION_METRICS_AVAILABLE, ConditionStatus.FALSE,
                      "MetricsUnavailable", f"No metrics for {names}")
        else:
            self._set(status, CONDITION_METRICS_AVAILABLE, ConditionStatus.TRUE,
                      "MetricsAvailable", "Metrics available for all governed containers")

        if unsafe:
            names = ", ".join(
                f"{r.workload.key}[{','.join(r.outcome.unsafe_containers)}]" for r in unsafe
            )
            self._set(status, CONDITION_SAFE_TO_APPLY, ConditionStatus.FALSE,
                      "UnsafeMemoryDecrease", f"Memory decrease above 50% withheld for {names}")
        else:
            self._set(status, CONDITION_SAFE_TO_APPLY, ConditionStatus.TRUE,
                      "SafeToApply", "No unsafe memory decreases")

        self._write_status(policy.namespace, policy.name, status)
        logger.info(
            f"Policy {policy.key}: phase={status.phase.value} "
            f"discovered={status.workloads_discovered} processed={status.workloads_processed}"
        )
        return ReconcileResult(
            policy_key=policy.key,
            phase=status.phase,
            status=status,
            requeue=bool(transient),
            reports=reports,
            error=str(failed[-1].error) if failed else None,
        )

    def _degrade(
        self,
        policy: OptimizationPolicy,
        previous: OptimizationPolicyStatus,
        reference: dict,
        error: ClusterError,
    ) -> ReconcileResult:
        logger.error(f"Discovery failed for policy {policy.key}: {error}")
        status = self._new_status(previous, ReconcilePhase.DEGRADED)
        status.workloads_discovered = previous.workloads_discovered
        status.workloads_processed = previous.workloads_processed
        status.workloads_by_type = previous.workloads_by_type.model_copy()
        reason = "RBACError" if isinstance(error, PermissionDeniedError) else "DiscoveryFailed"
        if isinstance(error, PermissionDeniedError):
            self.events.warning(reference, EventReason.RBAC_ERROR, str(error))
        self._set(status, CONDITION_READY, ConditionStatus.FALSE, reason, str(error))
        self._write_status(policy.namespace, policy.name, status)
        return ReconcileResult(
            policy_key=policy.key,
            phase=ReconcilePhase.DEGRADED,
            status=status,
            requeue=isinstance(error, TransientClusterError),
            error=str(error),
        )

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    def _new_status(
        self, previous: OptimizationPolicyStatus, phase: ReconcilePhase
    ) -> OptimizationPolicyStatus:
        return OptimizationPolicyStatus(
            conditions=[c.model_copy() for c in previous.conditions],
            workloads_by_type=WorkloadTypeCounts(),
            last_reconciliation=format_timestamp(self._clock()),
            phase=phase,
        )

    def _set(
        self,
        status: OptimizationPolicyStatus,
        condition_type: str,
        value: ConditionStatus,
        reason: str,
        message: str,
    ) -> None:
        status.conditions = set_condition(
            status.conditions,
            Condition(type=condition_type, status=value, reason=reason, message=message),
            format_timestamp(self._clock()),
        )

    def _write_status(self, namespace: str, name: str, status: OptimizationPolicyStatus) -> None:
        try:
            self.status_retry_policy.call(
                self.cluster.patch_policy_status, namespace, name, status.to_manifest()
            )
        except ClusterError as e:
            logger.error(f"Failed to update status of policy {namespace}/{name}: {e}")
