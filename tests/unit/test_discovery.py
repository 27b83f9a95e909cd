"""
Unit tests for label selectors, workload discovery and policy arbitration.
"""

import pytest

from conftest import make_policy_manifest, make_workload_manifest
from optipod.core.cluster import PermissionDeniedError
from optipod.core.discovery import (
    PolicyArbiter,
    WorkloadDiscovery,
    eligible_kinds,
    policy_matches,
)
from optipod.core.schemas import (
    LabelSelector,
    NamespaceFilter,
    OptimizationPolicy,
    WorkloadKind,
    WorkloadTypeFilter,
)
from optipod.core.selectors import (
    matches_labels,
    namespace_allowed,
    to_selector_string,
)
from optipod.core.workloads import Workload


def build_policy(**overrides) -> OptimizationPolicy:
    return OptimizationPolicy.from_manifest(make_policy_manifest(**overrides))


def build_workload(kind="Deployment", **overrides) -> Workload:
    return Workload.from_manifest(WorkloadKind(kind), make_workload_manifest(kind=kind, **overrides))


class TestLabelSelectors:
    """Tests for matchLabels and matchExpressions evaluation."""

    def test_empty_selector_matches_everything(self):
        assert matches_labels(None, {"a": "b"})
        assert matches_labels(LabelSelector(), {})

    def test_match_labels(self):
        selector = LabelSelector(match_labels={"app": "web"})
        assert matches_labels(selector, {"app": "web", "tier": "frontend"})
        assert not matches_labels(selector, {"app": "api"})

    def test_match_expressions(self):
        """Test each supported operator."""
        selector = LabelSelector.model_validate({
            "matchExpressions": [
                {"key": "tier", "operator": "In", "values": ["web", "api"]},
                {"key": "env", "operator": "NotIn", "values": ["dev"]},
                {"key": "team", "operator": "Exists"},
                {"key": "legacy", "operator": "DoesNotExist"},
            ]
        })

        assert matches_labels(selector, {"tier": "web", "env": "prod", "team": "a"})
        assert not matches_labels(selector, {"tier": "db", "env": "prod", "team": "a"})
        assert not matches_labels(selector, {"tier": "web", "env": "dev", "team": "a"})
        assert not matches_labels(selector, {"tier": "web", "env": "prod"})
        assert not matches_labels(selector, {"tier": "web", "team": "a", "legacy": "1"})

    def test_selector_strings(self):
        """Test rendering selectors for list calls."""
        selector = LabelSelector.model_validate({
            "matchLabels": {"b": "2", "a": "1"},
            "matchExpressions": [
                {"key": "tier", "operator": "In", "values": ["web", "api"]},
                {"key": "legacy", "operator": "DoesNotExist"},
            ],
        })
        assert to_selector_string(selector) == "a=1,b=2,tier in (web,api),!legacy"
        assert to_selector_string(LabelSelector()) is None
        assert to_selector_string(None) is None


class TestNamespaceFilter:
    """Tests for explicit namespace allow/deny lists."""

    def test_no_filter_allows_all(self):
        assert namespace_allowed("anything", None)

    def test_allow_list(self):
        namespace_filter = NamespaceFilter(allow=["prod"])
        assert namespace_allowed("prod", namespace_filter)
        assert not namespace_allowed("dev", namespace_filter)

    def test_deny_wins_over_allow(self):
        """Test a namespace in both lists is denied."""
        namespace_filter = NamespaceFilter(allow=["prod"], deny=["prod"])
        assert not namespace_allowed("prod", namespace_filter)


class TestEligibleKinds:
    """Tests for workload type include/exclude resolution."""

    def test_no_filter_means_all_kinds(self):
        assert eligible_kinds(None) == [
            WorkloadKind.DEPLOYMENT, WorkloadKind.STATEFULSET, WorkloadKind.DAEMONSET
        ]

    def test_include_only(self):
        assert eligible_kinds(WorkloadTypeFilter(include=["StatefulSet"])) == [WorkloadKind.STATEFULSET]

    def test_exclude_only(self):
        assert eligible_kinds(WorkloadTypeFilter(exclude=["DaemonSet"])) == [
            WorkloadKind.DEPLOYMENT, WorkloadKind.STATEFULSET
        ]

    def test_exclude_wins_over_include(self):
        """Test a kind in both include and exclude is never eligible."""
        kinds = eligible_kinds(
            WorkloadTypeFilter(include=["Deployment", "StatefulSet"], exclude=["Deployment"])
        )
        assert kinds == [WorkloadKind.STATEFULSET]


class TestWorkloadDiscovery:
    """Tests for WorkloadDiscovery against the fake cluster."""

    @pytest.fixture
    def discovery(self, fake_cluster):
        fake_cluster.add_namespace("prod", {"env": "prod"})
        fake_cluster.add_namespace("dev", {"env": "dev"})
        fake_cluster.add_workload(make_workload_manifest(name="web", namespace="prod"))
        fake_cluster.add_workload(make_workload_manifest(kind="StatefulSet", name="db", namespace="prod"))
        fake_cluster.add_workload(make_workload_manifest(name="web", namespace="dev"))
        fake_cluster.add_workload(
            make_workload_manifest(name="other", namespace="prod", labels={"app": "other"})
        )
        return WorkloadDiscovery(fake_cluster)

    def test_discovers_matching_workloads(self, discovery):
        """Test every kind in every namespace is searched."""
        result = discovery.discover(build_policy())

        keys = sorted(w.key for w in result.workloads)
        assert keys == [
            "Deployment/dev/web",
            "Deployment/prod/web",
            "StatefulSet/prod/db",
        ]
        counts = result.count_by_kind()
        assert counts[WorkloadKind.DEPLOYMENT] == 2
        assert counts[WorkloadKind.STATEFULSET] == 1
        assert counts[WorkloadKind.DAEMONSET] == 0

    def test_namespace_selector(self, discovery):
        result = discovery.discover(build_policy(namespace_selector={"env": "prod"}))

        assert {w.namespace for w in result.workloads} == {"prod"}
        assert set(result.namespace_labels) == {"prod"}

    def test_namespace_deny_list(self, discovery):
        manifest = make_policy_manifest()
        manifest["spec"]["selector"]["namespaces"] = {"deny": ["dev"]}

        result = discovery.discover(OptimizationPolicy.from_manifest(manifest))

        assert all(w.namespace != "dev" for w in result.workloads)

    def test_exclude_precedence(self, discovery):
        """Test a kind both included and excluded is never returned."""
        policy = build_policy(include=["Deployment", "StatefulSet"], exclude=["Deployment"])

        result = discovery.discover(policy)

        assert [w.key for w in result.workloads] == ["StatefulSet/prod/db"]

    def test_list_failure_propagates(self, discovery, fake_cluster):
        """Test cluster-wide failures abort discovery."""
        fake_cluster.fail("list_namespaces", PermissionDeniedError("list namespaces: 403 Forbidden", 403))

        with pytest.raises(PermissionDeniedError):
            discovery.discover(build_policy())


class TestPolicyArbiter:
    """Tests for choosing the governing policy of a workload."""

    def test_highest_weight_wins(self):
        """Test the heavier policy governs."""
        workload = build_workload()
        heavy = build_policy(name="policy-a", weight=200, include=["Deployment"])
        light = build_policy(name="policy-b", weight=50, include=["Deployment"])

        assert PolicyArbiter().select(workload, [light, heavy]).key == "default/policy-a"

    def test_equal_weight_tie_breaks_by_name(self):
        """Test equal weights fall back to ascending namespace/name."""
        workload = build_workload()
        first = build_policy(name="alpha")
        second = build_policy(name="beta")

        assert PolicyArbiter().select(workload, [second, first]).name == "alpha"

    def test_custom_sort_key(self):
        """Test the tie-break can be overridden."""
        workload = build_workload()
        first = build_policy(name="alpha")
        second = build_policy(name="beta")
        arbiter = PolicyArbiter(sort_key=lambda p: (-p.spec.weight, [-ord(c) for c in p.name]))

        assert arbiter.select(workload, [first, second]).name == "beta"

    def test_disabled_policies_never_govern(self):
        """Test a disabled policy does not win even with a higher weight."""
        workload = build_workload()
        disabled = build_policy(name="off", weight=900, mode="Disabled")
        active = build_policy(name="on", weight=10)

        assert PolicyArbiter().select(workload, [disabled, active]).name == "on"

    def test_non_matching_policies_ignored(self):
        workload = build_workload()
        other = build_policy(workload_selector={"app": "api"})

        assert PolicyArbiter().select(workload, [other]) is None

    def test_policy_matches_namespace_labels(self):
        """Test the namespace selector is evaluated when labels are supplied."""
        workload = build_workload(namespace="prod")
        policy = build_policy(namespace_selector={"env": "prod"})

        assert policy_matches(policy, workload, {"prod": {"env": "prod"}})
        assert not policy_matches(policy, workload, {"prod": {"env": "dev"}})
        assert policy_matches(policy, workload)
