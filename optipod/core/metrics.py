"""
Utilization metrics providers for OptiPod.

Every provider answers the same question: what CPU (millicores) and memory
(bytes) did one container use over a rolling window. The sizing engine
treats providers as interchangeable. Prometheus is queried over HTTP with
requests; metrics-server is sampled through the metrics.k8s.io API.
"""

import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import requests
from requests.exceptions import RequestException

from optipod.config import BaseConfig
from optipod.core.cluster import ClusterClient, ClusterError
from optipod.core.quantity import Quantity, QuantityError
from optipod.core.schemas import MetricsProviderType

logger = logging.getLogger(__name__)


class MetricsUnavailableError(Exception):
    """Base exception for a container whose utilization cannot be obtained."""
    pass


class MetricsBackendError(MetricsUnavailableError):
    """The metrics backend could not be reached or returned an error."""
    pass


class NoMetricsDataError(MetricsUnavailableError):
    """The backend answered but had no samples for the window."""
    pass


@dataclass
class UtilizationSeries:
    """Raw samples for one container over the rolling window."""
    cpu_millicores: list[int] = field(default_factory=list)
    memory_bytes: list[int] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.cpu_millicores or not self.memory_bytes


class MetricsProvider(ABC):
    """Interface shared by all metrics backends."""

    name: str = "custom"

    @abstractmethod
    def get_container_metrics(
        self,
        namespace: str,
        pod_name: str,
        container_name: str,
        window: timedelta,
    ) -> UtilizationSeries:
        """
        Return utilization samples for a container.

        Raises:
            MetricsBackendError: If the backend is unreachable.
            NoMetricsDataError: If there is no data for the window.
        """

    @abstractmethod
    def health_check(self) -> None:
        """Raise MetricsBackendError if the backend is not usable."""


def format_duration(window: timedelta) -> str:
    """Render a window as a PromQL range such as "30s", "5m", "24h" or "7d"."""
    seconds = int(window.total_seconds())
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h"
    return f"{hours // 24}d"


# ============================================================================
# Prometheus
# ============================================================================

@dataclass
class PrometheusConfig:
    """Configuration for Prometheus connection."""
    base_url: str = "http://prometheus:9090"
    timeout: int = 30
    verify_ssl: bool = True
    step: str = "30s"


class PromQLQueries:
    """
    PromQL query templates for per-container utilization.

    Parameterized with namespace, pod, container and window.
    """

    CPU_USAGE = (
        'rate(container_cpu_usage_seconds_total{{'
        'namespace="{namespace}",pod="{pod}",container="{container}"'
        '}}[{window}])'
    )

    MEMORY_USAGE = (
        'container_memory_working_set_bytes{{'
        'namespace="{namespace}",pod="{pod}",container="{container}"'
        '}}'
    )


class PrometheusProvider(MetricsProvider):
    """
    Metrics provider backed by the Prometheus HTTP API.

    Handles HTTP requests to the Prometheus API and parses responses.
    """

    name = MetricsProviderType.PROMETHEUS.value

    def __init__(
        self,
        config: Optional[PrometheusConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the Prometheus provider.

        Args:
            config: Prometheus connection configuration.
            clock: Returns the current UTC time; replaceable in tests.
        """
        self.config = config or PrometheusConfig()
        self._session = requests.Session()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def query_range(
        self,
        promql: str,
        start: datetime,
        end: datetime,
    ) -> list[float]:
        """
        Execute a range PromQL query and return the sample values of the first series.

        Raises:
            MetricsBackendError: If the request or query fails.
            NoMetricsDataError: If no series or samples are returned.
        """
        url = f"{self.config.base_url}/api/v1/query_range"
        params = {
            "query": promql.strip(),
            "start": start.timestamp(),
            "end": end.timestamp(),
            "step": self.config.step,
        }

        try:
            response = self._session.get(
                url,
                params=params,
                timeout=self.config.timeout,
                verify=self.config.verify_ssl,
            )
            response.raise_for_status()
            data = response.json()
        except (RequestException, ValueError) as e:
            logger.error(f"Prometheus range request failed: {e}")
            raise MetricsBackendError(f"Failed to query Prometheus range: {e}")

        if data.get("status") != "success":
            raise MetricsBackendError(
                f"Prometheus range query failed: {data.get('error', 'Unknown error')}"
            )

        result = data.get("data", {}).get("result", [])
        if not result:
            raise NoMetricsDataError("no data returned from Prometheus")

        samples = []
        for _, raw in result[0].get("values", []):
            try:
                value = float(raw)
            except (TypeError, ValueError):
                continue
            if math.isnan(value) or math.isinf(value):
                continue
            samples.append(value)

        if not samples:
            raise NoMetricsDataError("no samples in Prometheus result")
        return samples

    def get_container_metrics(
        self,
        namespace: str,
        pod_name: str,
        container_name: str,
        window: timedelta,
    ) -> UtilizationSeries:
        end = self._clock()
        start = end - window
        params = {
            "namespace": namespace,
            "pod": pod_name,
            "container": container_name,
            "window": format_duration(window),
        }

        cpu_cores = self.query_range(PromQLQueries.CPU_USAGE.format(**params), start, end)
        memory = self.query_range(PromQLQueries.MEMORY_USAGE.format(**params), start, end)

        return UtilizationSeries(
            cpu_millicores=[int(value * 1000) for value in cpu_cores],
            memory_bytes=[int(value) for value in memory],
        )

    def health_check(self) -> None:
        url = f"{self.config.base_url}/api/v1/status/buildinfo"
        try:
            response = self._session.get(
                url, timeout=self.config.timeout, verify=self.config.verify_ssl
            )
            response.raise_for_status()
        except RequestException as e:
            raise MetricsBackendError(f"prometheus health check failed: {e}")


# ============================================================================
# metrics-server
# ============================================================================

class MetricsServerProvider(MetricsProvider):
    """
    Metrics provider backed by metrics-server.

    metrics-server only reports the current usage, so a short burst of
    samples is taken instead of reading the whole rolling window.
    """

    name = MetricsProviderType.METRICS_SERVER.value

    def __init__(
        self,
        cluster: ClusterClient,
        max_samples: int = 10,
        sample_interval: float = 15.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cluster = cluster
        self.max_samples = max_samples
        self.sample_interval = sample_interval
        self._sleep = sleep

    def sample_count(self, window: timedelta) -> int:
        """Number of samples to take for a window, between 1 and max_samples."""
        if self.sample_interval <= 0:
            return max(1, self.max_samples)
        count = int(window.total_seconds() // self.sample_interval)
        return max(1, min(count, self.max_samples))

    def get_container_metrics(
        self,
        namespace: str,
        pod_name: str,
        container_name: str,
        window: timedelta,
    ) -> UtilizationSeries:
        count = self.sample_count(window)
        series = UtilizationSeries()

        for index in range(count):
            try:
                pod_metrics = self.cluster.get_pod_metrics(namespace, pod_name)
            except ClusterError as e:
                raise MetricsBackendError(f"failed to get pod metrics: {e}")

            usage = None
            for container in pod_metrics.get("containers", []):
                if container.get("name") == container_name:
                    usage = container.get("usage") or {}
                    break
            if usage is None:
                raise NoMetricsDataError(
                    f"container {container_name} not found in pod "
                    f"{namespace}/{pod_name} metrics"
                )

            try:
                series.cpu_millicores.append(Quantity.parse(usage.get("cpu", "0")).millicores)
                series.memory_bytes.append(Quantity.parse(usage.get("memory", "0")).bytes)
            except QuantityError as e:
                raise MetricsBackendError(f"unparseable usage for {container_name}: {e}")

            if index < count - 1:
                self._sleep(self.sample_interval)

        return series

    def health_check(self) -> None:
        try:
            self.cluster.list_node_metrics(limit=1)
        except ClusterError as e:
            raise MetricsBackendError(f"metrics-server health check failed: {e}")


# ============================================================================
# Factory
# ============================================================================

@dataclass
class ProviderConfig:
    """Settings for constructing a provider."""
    type: str
    prometheus_url: Optional[str] = None
    timeout: int = 30
    max_samples: int = 10
    sample_interval: float = 15.0


def create_provider(provider_config: ProviderConfig, cluster: Optional[ClusterClient] = None) -> MetricsProvider:
    """
    Create a metrics provider.

    Raises:
        ValueError: If the provider type is unknown or misconfigured.
    """
    if provider_config.type == MetricsProviderType.PROMETHEUS.value:
        if not provider_config.prometheus_url:
            raise ValueError("prometheus URL is required for prometheus provider")
        return PrometheusProvider(
            PrometheusConfig(
                base_url=provider_config.prometheus_url.rstrip("/"),
                timeout=provider_config.timeout,
            )
        )
    if provider_config.type == MetricsProviderType.METRICS_SERVER.value:
        if cluster is None:
            raise ValueError("a cluster client is required for metrics-server provider")
        return MetricsServerProvider(
            cluster,
            max_samples=provider_config.max_samples,
            sample_interval=provider_config.sample_interval,
        )
    raise ValueError(f"unknown provider type: {provider_config.type}")


def create_provider_with_fallback(
    primary: ProviderConfig,
    fallback: Optional[ProviderConfig],
    cluster: Optional[ClusterClient] = None,
) -> MetricsProvider:
    """
    Create the primary provider, falling back to a second one if it cannot be built.

    Raises:
        ValueError: If neither provider can be created.
    """
    try:
        return create_provider(primary, cluster)
    except ValueError as primary_error:
        if fallback is None:
            raise
        try:
            provider = create_provider(fallback, cluster)
        except ValueError as fallback_error:
            raise ValueError(
                f"primary provider failed ({primary_error}) and "
                f"fallback provider failed ({fallback_error})"
            )
        logger.warning(
            f"Primary provider failed ({primary_error}), using fallback provider {provider.name}"
        )
        return provider


def build_metrics_provider(app_config: BaseConfig, cluster: Optional[ClusterClient] = None) -> MetricsProvider:
    """Create the operator-wide provider from configuration."""
    def provider_config(provider_type: str) -> ProviderConfig:
        return ProviderConfig(
            type=provider_type,
            prometheus_url=app_config.PROMETHEUS_BASE_URL,
            timeout=app_config.PROMETHEUS_TIMEOUT,
            max_samples=app_config.METRICS_SERVER_MAX_SAMPLES,
            sample_interval=app_config.METRICS_SERVER_SAMPLE_INTERVAL,
        )

    fallback = None
    if app_config.FALLBACK_METRICS_PROVIDER:
        fallback = provider_config(app_config.FALLBACK_METRICS_PROVIDER)
    return create_provider_with_fallback(
        provider_config(app_config.METRICS_PROVIDER), fallback, cluster
    )
