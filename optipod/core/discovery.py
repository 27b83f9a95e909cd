"""
Workload discovery for OptiPod.

Resolves the set of workloads a policy selects, and decides which policy
governs a workload when several select it.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from optipod.core.cluster import ClusterClient
from optipod.core.schemas import (
    OptimizationPolicy,
    PolicyMode,
    WorkloadKind,
    WorkloadTypeFilter,
)
from optipod.core.selectors import (
    matches_labels,
    namespace_allowed,
    to_selector_string,
)
from optipod.core.workloads import Workload

logger = logging.getLogger(__name__)

SUPPORTED_KINDS = [WorkloadKind.DEPLOYMENT, WorkloadKind.STATEFULSET, WorkloadKind.DAEMONSET]


def eligible_kinds(type_filter: Optional[WorkloadTypeFilter]) -> list[WorkloadKind]:
    """
    Resolve the workload kinds a policy may touch.

    No filter means every kind. An empty include list means every kind.
    A kind listed in exclude is never eligible, even if it is also included.
    """
    if type_filter is None:
        return list(SUPPORTED_KINDS)

    kinds = [
        kind for kind in SUPPORTED_KINDS
        if not type_filter.include or kind.value in type_filter.include
    ]
    return [kind for kind in kinds if kind.value not in type_filter.exclude]


@dataclass
class DiscoveryResult:
    """Workloads a policy selects, with the namespace labels used to find them."""
    workloads: list[Workload] = field(default_factory=list)
    namespace_labels: dict[str, dict[str, str]] = field(default_factory=dict)

    def count_by_kind(self) -> dict[WorkloadKind, int]:
        counts = {kind: 0 for kind in SUPPORTED_KINDS}
        for workload in self.workloads:
            counts[workload.kind] += 1
        return counts


def policy_matches(
    policy: OptimizationPolicy,
    workload: Workload,
    namespace_labels: Optional[dict[str, dict[str, str]]] = None,
) -> bool:
    """
    Whether a policy's selector covers a workload.

    Args:
        policy: The policy to test.
        workload: The workload to test.
        namespace_labels: Labels per namespace. When omitted the
            namespaceSelector is not evaluated.
    """
    selector = policy.spec.selector
    if workload.kind not in eligible_kinds(selector.workload_types):
        return False
    if not namespace_allowed(workload.namespace, selector.namespaces):
        return False
    if namespace_labels is not None:
        if workload.namespace not in namespace_labels:
            return False
        if not matches_labels(selector.namespace_selector, namespace_labels[workload.namespace]):
            return False
    return matches_labels(selector.workload_selector, workload.labels)


class WorkloadDiscovery:
    """
    Finds the workloads a policy selects.

    Nothing is cached; each call lists namespaces and workloads afresh.
    """

    def __init__(self, cluster: ClusterClient):
        self.cluster = cluster

    def resolve_namespaces(self, policy: OptimizationPolicy) -> dict[str, dict[str, str]]:
        """Namespaces matching the namespaceSelector and allow/deny lists."""
        selector = policy.spec.selector
        namespaces = self.cluster.list_namespaces(to_selector_string(selector.namespace_selector))
        return {
            name: labels
            for name, labels in sorted(namespaces.items())
            if matches_labels(selector.namespace_selector, labels)
            and namespace_allowed(name, selector.namespaces)
        }

    def discover(self, policy: OptimizationPolicy) -> DiscoveryResult:
        """
        List the workloads a policy selects.

        Raises:
            ClusterError: If namespaces or workloads cannot be listed.
        """
        selector = policy.spec.selector
        namespaces = self.resolve_namespaces(policy)
        kinds = eligible_kinds(selector.workload_types)
        label_selector = to_selector_string(selector.workload_selector)

        result = DiscoveryResult(namespace_labels=namespaces)
        for namespace in namespaces:
            for kind in kinds:
                for workload in self.cluster.list_workloads(kind, namespace, label_selector):
                    if matches_labels(selector.workload_selector, workload.labels):
                        result.workloads.append(workload)

        logger.debug(
            f"Policy {policy.key}: discovered {len(result.workloads)} workload(s) "
            f"in {len(namespaces)} namespace(s)"
        )
        return result


def _by_weight_then_name(policy: OptimizationPolicy) -> tuple:
    return (-policy.spec.weight, policy.namespace, policy.name)


class PolicyArbiter:
    """
    Picks the single policy that governs a workload.

    Disabled policies never govern. The highest weight wins; equal weights
    fall back to the sort key, which defaults to ascending namespace/name.
    """

    def __init__(self, sort_key: Optional[Callable[[OptimizationPolicy], tuple]] = None):
        self.sort_key = sort_key or _by_weight_then_name

    def select(
        self,
        workload: Workload,
        policies: Iterable[OptimizationPolicy],
        namespace_labels: Optional[dict[str, dict[str, str]]] = None,
    ) -> Optional[OptimizationPolicy]:
        candidates = [
            policy for policy in policies
            if policy.spec.mode != PolicyMode.DISABLED
            and policy_matches(policy, workload, namespace_labels)
        ]
        if not candidates:
            return None
        winner = sorted(candidates, key=self.sort_key)[0]
        if len(candidates) > 1:
            logger.debug(
                f"Workload {workload.key} matched {len(candidates)} policies, "
                f"{winner.key} (weight {winner.spec.weight}) governs"
            )
        return winner
