"""
Shared pytest fixtures for OptiPod tests.

The fake cluster below stands in for ClusterClient: it keeps objects in
memory, honours resourceVersion preconditions and records every write so
tests can assert on exactly what the controller changed.
"""

import copy
import re
from collections import defaultdict

import pytest

from optipod.app import create_app
from optipod.config import TestConfig
from optipod.core.cluster import ConflictError, NotFoundError
from optipod.core.metrics import (
    MetricsBackendError,
    MetricsProvider,
    NoMetricsDataError,
    UtilizationSeries,
)
from optipod.core.reconciler import PolicyReconciler
from optipod.core.retry import RetryPolicy
from optipod.core.schemas import WorkloadKind
from optipod.core.workloads import Workload

MI = 1024 ** 2
GI = 1024 ** 3


SELECTOR_TERM = re.compile(r"[^,(]+(?:\([^)]*\))?")
SET_TERM = re.compile(r"^(\S+) (in|notin) \(([^)]*)\)$")


def _selector_matches(label_selector, labels):
    """Evaluate a label_selector string the way the API server would."""
    if not label_selector:
        return True
    for term in SELECTOR_TERM.findall(label_selector):
        term = term.strip()
        set_term = SET_TERM.match(term)
        if set_term:
            key, operator, values = set_term.groups()
            present = labels.get(key) in values.split(",")
            if present != (operator == "in"):
                return False
        elif term.startswith("!"):
            if term[1:] in labels:
                return False
        elif "=" in term:
            key, _, value = term.partition("=")
            if labels.get(key) != value:
                return False
        elif term not in labels:
            return False
    return True


class FakeCluster:
    """In-memory stand-in for ClusterClient."""

    def __init__(self):
        self.namespaces = {}
        self.workloads = {}
        self.pods = {}
        self.policies = {}
        self.pod_metrics = {}
        self.in_place_supported = False
        self.patches = []
        self.resizes = []
        self.status_updates = []
        self.events = []
        self.failures = defaultdict(list)
        self.calls = defaultdict(int)

    # -- test helpers ---------------------------------------------------

    def fail(self, method, *errors):
        """Queue errors raised by the next calls to a method."""
        self.failures[method].extend(errors)

    def _maybe_fail(self, method):
        self.calls[method] += 1
        if self.failures[method]:
            error = self.failures[method].pop(0)
            if error is not None:
                raise error

    def add_namespace(self, name, labels=None):
        self.namespaces[name] = dict(labels or {})

    def add_workload(self, manifest):
        kind = WorkloadKind(manifest["kind"])
        meta = manifest["metadata"]
        self.namespaces.setdefault(meta["namespace"], {})
        self.workloads[(kind, meta["namespace"], meta["name"])] = copy.deepcopy(manifest)

    def add_pod(self, manifest):
        meta = manifest["metadata"]
        self.pods[(meta["namespace"], meta["name"])] = copy.deepcopy(manifest)

    def add_policy(self, manifest):
        meta = manifest["metadata"]
        self.policies[(meta["namespace"], meta["name"])] = copy.deepcopy(manifest)

    def workload_manifest(self, kind, namespace, name):
        return self.workloads[(WorkloadKind(kind), namespace, name)]

    def policy_status(self, namespace, name):
        return self.policies[(namespace, name)].get("status", {})

    # -- ClusterClient interface ----------------------------------------

    def list_namespaces(self, label_selector=None):
        # Discovery re-checks labels itself, so the server-side filter is skipped
        self._maybe_fail("list_namespaces")
        return {name: dict(labels) for name, labels in self.namespaces.items()}

    def list_workloads(self, kind, namespace, label_selector=None):
        self._maybe_fail("list_workloads")
        return [
            Workload.from_manifest(k, copy.deepcopy(obj))
            for (k, ns, _), obj in sorted(self.workloads.items(), key=lambda item: item[0][2])
            if k == kind and ns == namespace
        ]

    def get_workload(self, kind, namespace, name):
        self._maybe_fail("get_workload")
        try:
            obj = self.workloads[(kind, namespace, name)]
        except KeyError:
            raise NotFoundError(f"{kind.value} {namespace}/{name} not found", 404)
        return Workload.from_manifest(kind, copy.deepcopy(obj))

    def patch_workload(self, workload, patch):
        self._maybe_fail("patch_workload")
        stored = self.workloads[(workload.kind, workload.namespace, workload.name)]
        expected = (patch.get("metadata") or {}).get("resourceVersion")
        if expected is not None and expected != stored["metadata"]["resourceVersion"]:
            raise ConflictError(f"patch {workload.key}: 409 Conflict", 409)

        self.patches.append(copy.deepcopy(patch))
        meta = stored["metadata"]
        for key, value in ((patch.get("metadata") or {}).get("annotations") or {}).items():
            annotations = meta.setdefault("annotations", {})
            if value is None:
                annotations.pop(key, None)
            else:
                annotations[key] = value

        template_patch = ((patch.get("spec") or {}).get("template") or {}).get("spec") or {}
        if template_patch:
            containers = stored["spec"]["template"]["spec"]["containers"]
            for change in template_patch.get("containers", []):
                for container in containers:
                    if container["name"] != change["name"]:
                        continue
                    resources = container.setdefault("resources", {})
                    for section, values in change.get("resources", {}).items():
                        resources.setdefault(section, {}).update(values)
            meta["generation"] = meta.get("generation", 1) + 1

        meta["resourceVersion"] = str(int(meta["resourceVersion"]) + 1)
        return Workload.from_manifest(workload.kind, copy.deepcopy(stored))

    def list_pods(self, namespace, label_selector=None):
        self._maybe_fail("list_pods")
        return [
            copy.deepcopy(pod) for (ns, _), pod in sorted(self.pods.items())
            if ns == namespace
            and _selector_matches(label_selector, pod["metadata"].get("labels") or {})
        ]

    def resize_pod(self, namespace, name, patch):
        self._maybe_fail("resize_pod")
        self.resizes.append((namespace, name, copy.deepcopy(patch)))
        pod = self.pods[(namespace, name)]
        for change in patch["spec"]["containers"]:
            for container in pod["spec"]["containers"]:
                if container["name"] == change["name"]:
                    resources = container.setdefault("resources", {})
                    for section, values in change["resources"].items():
                        resources.setdefault(section, {}).update(values)
        return copy.deepcopy(pod)

    def supports_in_place_resize(self):
        self._maybe_fail("supports_in_place_resize")
        return self.in_place_supported

    def list_policies(self, namespace=""):
        self._maybe_fail("list_policies")
        return [
            copy.deepcopy(obj) for (ns, _), obj in sorted(self.policies.items())
            if not namespace or ns == namespace
        ]

    def get_policy(self, namespace, name):
        self._maybe_fail("get_policy")
        try:
            return copy.deepcopy(self.policies[(namespace, name)])
        except KeyError:
            raise NotFoundError(f"policy {namespace}/{name} not found", 404)

    def patch_policy_status(self, namespace, name, status):
        self._maybe_fail("patch_policy_status")
        self.status_updates.append((namespace, name, copy.deepcopy(status)))
        self.policies[(namespace, name)]["status"] = copy.deepcopy(status)
        return self.policies[(namespace, name)]

    def get_pod_metrics(self, namespace, name):
        self._maybe_fail("get_pod_metrics")
        try:
            return copy.deepcopy(self.pod_metrics[(namespace, name)])
        except KeyError:
            raise NotFoundError(f"pod metrics {namespace}/{name} not found", 404)

    def list_node_metrics(self, limit=1):
        self._maybe_fail("list_node_metrics")
        return {"items": []}

    def create_event(self, namespace, body):
        self._maybe_fail("create_event")
        self.events.append(copy.deepcopy(body))

    def event_reasons(self):
        return [event["reason"] for event in self.events]


class FakeMetricsProvider(MetricsProvider):
    """Returns canned utilization per (namespace, pod, container)."""

    name = "fake"

    def __init__(self):
        self.series = {}
        self.errors = {}
        self.calls = []
        self.healthy = True

    def set(self, namespace, pod, container, cpu_millicores, memory_bytes):
        self.series[(namespace, pod, container)] = UtilizationSeries(
            cpu_millicores=list(cpu_millicores),
            memory_bytes=list(memory_bytes),
        )

    def set_constant(self, namespace, pod, container, cpu_millicores, memory_bytes, samples=10):
        self.set(namespace, pod, container, [cpu_millicores] * samples, [memory_bytes] * samples)

    def get_container_metrics(self, namespace, pod_name, container_name, window):
        self.calls.append((namespace, pod_name, container_name, window))
        key = (namespace, pod_name, container_name)
        if key in self.errors:
            raise self.errors[key]
        if key not in self.series:
            raise NoMetricsDataError(f"no data for {key}")
        return self.series[key]

    def health_check(self):
        if not self.healthy:
            raise MetricsBackendError("backend down")


def make_policy_manifest(
    name="policy-a",
    namespace="default",
    mode="Auto",
    weight=100,
    cpu=("100m", "4"),
    memory=("64Mi", "8Gi"),
    workload_selector=None,
    namespace_selector=None,
    include=None,
    exclude=None,
    allow_in_place=False,
    allow_recreate=True,
    requests_only=True,
    limit_config=None,
    safety_factor=1.0,
    percentile="P90",
    provider="prometheus",
    generation=1,
):
    """Build an OptimizationPolicy custom object dictionary."""
    selector = {}
    if workload_selector is not False:
        selector["workloadSelector"] = {"matchLabels": workload_selector or {"app": "web"}}
    if namespace_selector is not None:
        selector["namespaceSelector"] = {"matchLabels": namespace_selector}
    if include is not None or exclude is not None:
        selector["workloadTypes"] = {"include": include or [], "exclude": exclude or []}

    strategy = {
        "allowInPlaceResize": allow_in_place,
        "allowRecreate": allow_recreate,
        "updateRequestsOnly": requests_only,
    }
    if limit_config is not None:
        strategy["limitConfig"] = limit_config

    return {
        "apiVersion": "optipod.optipod.io/v1alpha1",
        "kind": "OptimizationPolicy",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "resourceVersion": "1",
            "generation": generation,
            "uid": f"uid-{name}",
        },
        "spec": {
            "mode": mode,
            "selector": selector,
            "metricsConfig": {
                "provider": provider,
                "rollingWindow": "24h",
                "percentile": percentile,
                "safetyFactor": safety_factor,
            },
            "resourceBounds": {
                "cpu": {"min": cpu[0], "max": cpu[1]},
                "memory": {"min": memory[0], "max": memory[1]},
            },
            "updateStrategy": strategy,
            "weight": weight,
            "reconciliationInterval": "5m",
        },
    }


def make_workload_manifest(
    kind="Deployment",
    name="web",
    namespace="default",
    labels=None,
    containers=None,
    resource_version="1",
    extra_spec=None,
):
    """Build a Deployment/StatefulSet/DaemonSet dictionary."""
    labels = labels if labels is not None else {"app": "web"}
    if containers is None:
        containers = [{
            "name": "app",
            "image": "nginx:1.25",
            "resources": {
                "requests": {"cpu": "500m", "memory": "512Mi"},
                "limits": {"cpu": "2", "memory": "2Gi"},
            },
        }]
    spec = {
        "selector": {"matchLabels": {"workload": name}},
        "template": {
            "metadata": {"labels": {"workload": name}},
            "spec": {
                "containers": copy.deepcopy(containers),
                "tolerations": [{"key": "dedicated", "operator": "Equal", "value": "web"}],
            },
        },
    }
    spec.update(extra_spec or {})
    return {
        "apiVersion": "apps/v1",
        "kind": kind,
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": labels,
            "annotations": {"team": "platform"},
            "resourceVersion": resource_version,
            "generation": 1,
            "uid": f"uid-{name}",
        },
        "spec": spec,
    }


def make_pod_manifest(workload_name="web", namespace="default", index=0, containers=None, phase="Running"):
    """Build a pod belonging to a workload built by make_workload_manifest."""
    if containers is None:
        containers = [{
            "name": "app",
            "resources": {
                "requests": {"cpu": "500m", "memory": "512Mi"},
                "limits": {"cpu": "2", "memory": "2Gi"},
            },
        }]
    return {
        "metadata": {
            "name": f"{workload_name}-{index}",
            "namespace": namespace,
            "labels": {"workload": workload_name},
        },
        "spec": {"containers": copy.deepcopy(containers)},
        "status": {"phase": phase},
    }


@pytest.fixture
def test_config():
    """Testing configuration with zero backoff delays."""
    return TestConfig()


@pytest.fixture
def fake_cluster():
    """Empty in-memory cluster with a default namespace."""
    cluster = FakeCluster()
    cluster.add_namespace("default", {"env": "test"})
    return cluster


@pytest.fixture
def fake_metrics():
    """Metrics provider with no data until a test adds some."""
    return FakeMetricsProvider()


@pytest.fixture
def sleeps():
    """Collects requested sleep durations instead of sleeping."""
    return []


@pytest.fixture
def retry_policy(sleeps):
    """Retry policy that records delays instead of sleeping."""
    return RetryPolicy(max_attempts=3, base_delay=0.1, max_delay=1.0, jitter=0.0, sleep=sleeps.append)


@pytest.fixture
def reconciler(fake_cluster, fake_metrics, test_config, retry_policy):
    """Reconciler wired to the fake cluster and metrics."""
    return PolicyReconciler(fake_cluster, fake_metrics, test_config, retry_policy=retry_policy)


@pytest.fixture
def web_app(fake_cluster, fake_metrics):
    """
    A single Deployment 'web' with one running pod.

    Returns a helper that sets its observed CPU (millicores) and memory (bytes).
    """
    fake_cluster.add_workload(make_workload_manifest())
    fake_cluster.add_pod(make_pod_manifest())

    def observe(cpu_millicores, memory_bytes):
        fake_metrics.set_constant("default", "web-0", "app", cpu_millicores, memory_bytes)

    return observe


@pytest.fixture
def app(test_config):
    """Create Flask probe application without a controller."""
    return create_app(test_config)


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()

