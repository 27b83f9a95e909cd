"""
Kubernetes API access for OptiPod.

Wraps the official kubernetes Python client behind a small read-through
interface. No objects are cached between calls; every reconciliation sees
the cluster as it is. API failures are translated into a transient /
permanent error taxonomy that the executor and reconciler act on.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import urllib3
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException

from optipod.config import BaseConfig
from optipod.core.schemas import WorkloadKind
from optipod.core.workloads import Workload

logger = logging.getLogger(__name__)

IN_PLACE_RESIZE_MIN_VERSION = (1, 33)

METRICS_GROUP = "metrics.k8s.io"
METRICS_VERSION = "v1beta1"


class ClusterError(Exception):
    """Base exception for cluster API failures."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientClusterError(ClusterError):
    """A failure that may succeed on retry (timeouts, 5xx, throttling)."""
    pass


class ConflictError(TransientClusterError):
    """The object changed since it was read (resourceVersion mismatch)."""
    pass


class PermanentClusterError(ClusterError):
    """A failure that needs operator intervention."""
    pass


class PermissionDeniedError(PermanentClusterError):
    """RBAC denied the request."""
    pass


class NotFoundError(PermanentClusterError):
    """The target object does not exist."""
    pass


class MalformedWorkloadError(PermanentClusterError):
    """The API server rejected the object or patch as invalid."""
    pass


_TRANSIENT_STATUSES = {0, 408, 429, 500, 502, 503, 504}


def classify_api_exception(exc: ApiException, context: str) -> ClusterError:
    """
    Map an ApiException to the error taxonomy.

    Args:
        exc: The exception raised by the kubernetes client.
        context: Human-readable description of the failed call.

    Returns:
        The matching ClusterError subclass instance.
    """
    status = exc.status or 0
    reason = exc.reason or "unknown"
    message = f"{context}: {status} {reason}"

    if status == 409:
        return ConflictError(message, status)
    if status in _TRANSIENT_STATUSES:
        return TransientClusterError(message, status)
    if status in (401, 403):
        return PermissionDeniedError(message, status)
    if status == 404:
        return NotFoundError(message, status)
    if status in (400, 422):
        return MalformedWorkloadError(message, status)
    return PermanentClusterError(message, status)


@contextmanager
def translate_errors(context: str) -> Iterator[None]:
    """Translate kubernetes client and transport errors for the enclosed call."""
    try:
        yield
    except ApiException as e:
        raise classify_api_exception(e, context) from e
    except (urllib3.exceptions.HTTPError, ConnectionError, TimeoutError) as e:
        raise TransientClusterError(f"{context}: {e}") from e


class ClusterClient:
    """
    Read-through access to the Kubernetes API.

    Uses the official kubernetes Python client for all operations.
    """

    def __init__(self, app_config: BaseConfig, api_client: Optional[client.ApiClient] = None):
        """
        Initialize the cluster client.

        Args:
            app_config: Application configuration.
            api_client: Optional pre-built ApiClient, mainly for tests.
        """
        self.config = app_config
        self.timeout = app_config.API_TIMEOUT
        self._api_client = api_client
        self._apps_v1 = None
        self._core_v1 = None
        self._custom = None
        self._version = None
        self._in_place_supported: Optional[bool] = None

    def _get_api_client(self) -> client.ApiClient:
        """
        Create a Kubernetes API client, preferring in-cluster configuration.

        Raises:
            PermanentClusterError: If no configuration can be loaded.
        """
        if self._api_client is not None:
            return self._api_client

        try:
            if self.config.KUBECONFIG:
                config.load_kube_config(
                    config_file=self.config.KUBECONFIG,
                    context=self.config.KUBECONFIG_CONTEXT,
                )
            else:
                try:
                    config.load_incluster_config()
                except ConfigException:
                    config.load_kube_config(context=self.config.KUBECONFIG_CONTEXT)
        except ConfigException as e:
            raise PermanentClusterError(f"Failed to load kubeconfig: {e}")

        self._api_client = client.ApiClient()
        return self._api_client

    def _get_apps_v1(self) -> client.AppsV1Api:
        if self._apps_v1 is None:
            self._apps_v1 = client.AppsV1Api(self._get_api_client())
        return self._apps_v1

    def _get_core_v1(self) -> client.CoreV1Api:
        if self._core_v1 is None:
            self._core_v1 = client.CoreV1Api(self._get_api_client())
        return self._core_v1

    def _get_custom(self) -> client.CustomObjectsApi:
        if self._custom is None:
            self._custom = client.CustomObjectsApi(self._get_api_client())
        return self._custom

    def _to_dict(self, obj: Any) -> dict:
        if isinstance(obj, dict):
            return obj
        return self._get_api_client().sanitize_for_serialization(obj)

    def _workload_calls(self, kind: WorkloadKind) -> dict[str, Any]:
        apps_v1 = self._get_apps_v1()
        if kind == WorkloadKind.DEPLOYMENT:
            return {
                "list": apps_v1.list_namespaced_deployment,
                "list_all": apps_v1.list_deployment_for_all_namespaces,
                "read": apps_v1.read_namespaced_deployment,
                "patch": apps_v1.patch_namespaced_deployment,
            }
        if kind == WorkloadKind.STATEFULSET:
            return {
                "list": apps_v1.list_namespaced_stateful_set,
                "list_all": apps_v1.list_stateful_set_for_all_namespaces,
                "read": apps_v1.read_namespaced_stateful_set,
                "patch": apps_v1.patch_namespaced_stateful_set,
            }
        if kind == WorkloadKind.DAEMONSET:
            return {
                "list": apps_v1.list_namespaced_daemon_set,
                "list_all": apps_v1.list_daemon_set_for_all_namespaces,
                "read": apps_v1.read_namespaced_daemon_set,
                "patch": apps_v1.patch_namespaced_daemon_set,
            }
        raise MalformedWorkloadError(f"Unsupported workload kind: {kind}")

    # ------------------------------------------------------------------
    # Namespaces, workloads and pods
    # ------------------------------------------------------------------

    def list_namespaces(self, label_selector: Optional[str] = None) -> dict[str, dict[str, str]]:
        """
        List namespaces.

        Returns:
            Mapping of namespace name to its labels.
        """
        kwargs = {"_request_timeout": self.timeout}
        if label_selector:
            kwargs["label_selector"] = label_selector
        with translate_errors("list namespaces"):
            response = self._get_core_v1().list_namespace(**kwargs)
        return {
            item.metadata.name: dict(item.metadata.labels or {})
            for item in response.items
        }

    def list_workloads(
        self,
        kind: WorkloadKind,
        namespace: str,
        label_selector: Optional[str] = None,
    ) -> list[Workload]:
        """List workloads of one kind in one namespace."""
        kwargs = {"_request_timeout": self.timeout}
        if label_selector:
            kwargs["label_selector"] = label_selector
        with translate_errors(f"list {kind.value} in {namespace}"):
            response = self._workload_calls(kind)["list"](namespace, **kwargs)
        return [Workload.from_manifest(kind, self._to_dict(item)) for item in response.items]

    def get_workload(self, kind: WorkloadKind, namespace: str, name: str) -> Workload:
        """Read a single workload."""
        with translate_errors(f"read {kind.value} {namespace}/{name}"):
            obj = self._workload_calls(kind)["read"](
                name, namespace, _request_timeout=self.timeout
            )
        return Workload.from_manifest(kind, self._to_dict(obj))

    def patch_workload(self, workload: Workload, patch: dict) -> Workload:
        """
        Apply a strategic merge patch to a workload.

        The patch is expected to carry metadata.resourceVersion so a
        concurrent change surfaces as a ConflictError.
        """
        if self.config.DRY_RUN:
            logger.info(f"[dry-run] would patch {workload.key}: {patch}")
            return workload
        with translate_errors(f"patch {workload.key}"):
            obj = self._workload_calls(workload.kind)["patch"](
                workload.name,
                workload.namespace,
                patch,
                field_manager="optipod",
                _request_timeout=self.timeout,
            )
        return Workload.from_manifest(workload.kind, self._to_dict(obj))

    def list_pods(self, namespace: str, label_selector: Optional[str] = None) -> list[dict]:
        kwargs = {"_request_timeout": self.timeout}
        if label_selector:
            kwargs["label_selector"] = label_selector
        with translate_errors(f"list pods in {namespace}"):
            response = self._get_core_v1().list_namespaced_pod(namespace, **kwargs)
        return [self._to_dict(item) for item in response.items]

    def resize_pod(self, namespace: str, name: str, patch: dict) -> dict:
        """Patch the resize subresource of a running pod."""
        if self.config.DRY_RUN:
            logger.info(f"[dry-run] would resize pod {namespace}/{name}: {patch}")
            return patch
        with translate_errors(f"resize pod {namespace}/{name}"):
            obj = self._get_core_v1().patch_namespaced_pod_resize(
                name, namespace, patch, field_manager="optipod", _request_timeout=self.timeout
            )
        return self._to_dict(obj)

    def supports_in_place_resize(self) -> bool:
        """Whether the API server exposes the pod resize subresource."""
        if self._in_place_supported is not None:
            return self._in_place_supported
        with translate_errors("read server version"):
            info = client.VersionApi(self._get_api_client()).get_code(
                _request_timeout=self.timeout
            )
        major = int("".join(ch for ch in str(info.major) if ch.isdigit()) or 0)
        minor = int("".join(ch for ch in str(info.minor) if ch.isdigit()) or 0)
        self._in_place_supported = (major, minor) >= IN_PLACE_RESIZE_MIN_VERSION
        logger.info(
            f"API server version {major}.{minor}, in-place resize "
            f"{'available' if self._in_place_supported else 'unavailable'}"
        )
        return self._in_place_supported

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def list_policies(self, namespace: str = "") -> list[dict]:
        custom = self._get_custom()
        with translate_errors("list policies"):
            if namespace:
                response = custom.list_namespaced_custom_object(
                    group=self.config.CRD_GROUP,
                    version=self.config.CRD_VERSION,
                    namespace=namespace,
                    plural=self.config.CRD_PLURAL,
                    _request_timeout=self.timeout,
                )
            else:
                response = custom.list_cluster_custom_object(
                    group=self.config.CRD_GROUP,
                    version=self.config.CRD_VERSION,
                    plural=self.config.CRD_PLURAL,
                    _request_timeout=self.timeout,
                )
        return response.get("items", [])

    def get_policy(self, namespace: str, name: str) -> dict:
        with translate_errors(f"read policy {namespace}/{name}"):
            return self._get_custom().get_namespaced_custom_object(
                group=self.config.CRD_GROUP,
                version=self.config.CRD_VERSION,
                namespace=namespace,
                plural=self.config.CRD_PLURAL,
                name=name,
                _request_timeout=self.timeout,
            )

    def patch_policy_status(self, namespace: str, name: str, status: dict) -> dict:
        with translate_errors(f"update status of policy {namespace}/{name}"):
            return self._get_custom().patch_namespaced_custom_object_status(
                group=self.config.CRD_GROUP,
                version=self.config.CRD_VERSION,
                namespace=namespace,
                plural=self.config.CRD_PLURAL,
                name=name,
                body={"status": status},
                _request_timeout=self.timeout,
            )

    # ------------------------------------------------------------------
    # Metrics API and events
    # ------------------------------------------------------------------

    def get_pod_metrics(self, namespace: str, name: str) -> dict:
        with translate_errors(f"read pod metrics {namespace}/{name}"):
            return self._get_custom().get_namespaced_custom_object(
                group=METRICS_GROUP,
                version=METRICS_VERSION,
                namespace=namespace,
                plural="pods",
                name=name,
                _request_timeout=self.timeout,
            )

    def list_node_metrics(self, limit: int = 1) -> dict:
        with translate_errors("list node metrics"):
            return self._get_custom().list_cluster_custom_object(
                group=METRICS_GROUP,
                version=METRICS_VERSION,
                plural="nodes",
                limit=limit,
                _request_timeout=self.timeout,
            )

    def create_event(self, namespace: str, body: dict) -> None:
        with translate_errors(f"create event in {namespace}"):
            self._get_core_v1().create_namespaced_event(
                namespace, body, _request_timeout=self.timeout
            )

    # ------------------------------------------------------------------
    # Watches
    # ------------------------------------------------------------------

    def watch_policies(self, namespace: str = "", timeout: int = 300) -> Iterator[dict]:
        """Stream policy watch events as {"type", "object"} dictionaries."""
        custom = self._get_custom()
        w = watch.Watch()
        if namespace:
            stream = w.stream(
                custom.list_namespaced_custom_object,
                group=self.config.CRD_GROUP,
                version=self.config.CRD_VERSION,
                namespace=namespace,
                plural=self.config.CRD_PLURAL,
                timeout_seconds=timeout,
            )
        else:
            stream = w.stream(
                custom.list_cluster_custom_object,
                group=self.config.CRD_GROUP,
                version=self.config.CRD_VERSION,
                plural=self.config.CRD_PLURAL,
                timeout_seconds=timeout,
            )
        for event in stream:
            yield {"type": event["type"], "object": self._to_dict(event["object"])}

    def watch_workloads(self, kind: WorkloadKind, timeout: int = 300) -> Iterator[dict]:
        """Stream workload watch events across all namespaces."""
        w = watch.Watch()
        stream = w.stream(self._workload_calls(kind)["list_all"], timeout_seconds=timeout)
        for event in stream:
            yield {
                "type": event["type"],
                "object": Workload.from_manifest(kind, self._to_dict(event["object"])),
            }
