"""
Configuration module for OptiPod.

Implements a Config class pattern with environment-based settings.
All configuration is read from environment variables following twelve-factor app principles.
"""

import os
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"


class BaseConfig:
    """Base configuration with defaults for all environments."""

    DEBUG: bool = False
    TESTING: bool = False

    # Controller behaviour
    DRY_RUN: bool = _env_bool("OPTIPOD_DRY_RUN", "false")
    WATCH_NAMESPACE: str = os.environ.get("OPTIPOD_WATCH_NAMESPACE", "")
    WORKER_POOL_SIZE: int = int(os.environ.get("OPTIPOD_WORKER_POOL_SIZE", "4"))
    DEFAULT_RECONCILIATION_INTERVAL: str = os.environ.get(
        "OPTIPOD_RECONCILIATION_INTERVAL", "5m"
    )
    WATCH_TIMEOUT_SECONDS: int = int(os.environ.get("OPTIPOD_WATCH_TIMEOUT", "300"))
    ANNOTATION_PREFIX: str = os.environ.get("OPTIPOD_ANNOTATION_PREFIX", "optipod.io")

    # Custom resource coordinates
    CRD_GROUP: str = os.environ.get("OPTIPOD_CRD_GROUP", "optipod.optipod.io")
    CRD_VERSION: str = os.environ.get("OPTIPOD_CRD_VERSION", "v1alpha1")
    CRD_PLURAL: str = os.environ.get("OPTIPOD_CRD_PLURAL", "optimizationpolicies")

    # Cluster access
    KUBECONFIG: Optional[str] = os.environ.get("KUBECONFIG")
    KUBECONFIG_CONTEXT: Optional[str] = os.environ.get("KUBECONFIG_CONTEXT")
    API_TIMEOUT: int = int(os.environ.get("OPTIPOD_API_TIMEOUT", "30"))

    # Metrics providers
    METRICS_PROVIDER: str = os.environ.get("OPTIPOD_METRICS_PROVIDER", "prometheus")
    FALLBACK_METRICS_PROVIDER: Optional[str] = os.environ.get(
        "OPTIPOD_FALLBACK_METRICS_PROVIDER", "metrics-server"
    )
    PROMETHEUS_BASE_URL: str = os.environ.get(
        "PROMETHEUS_BASE_URL",
        "http://prometheus:9090"
    )
    PROMETHEUS_TIMEOUT: int = int(os.environ.get("PROMETHEUS_TIMEOUT", "30"))
    METRICS_SERVER_MAX_SAMPLES: int = int(
        os.environ.get("OPTIPOD_METRICS_SERVER_MAX_SAMPLES", "10")
    )
    METRICS_SERVER_SAMPLE_INTERVAL: float = float(
        os.environ.get("OPTIPOD_METRICS_SERVER_SAMPLE_INTERVAL", "15")
    )

    # Retry/backoff for transient errors
    RETRY_MAX_ATTEMPTS: int = int(os.environ.get("OPTIPOD_RETRY_MAX_ATTEMPTS", "5"))
    RETRY_BASE_DELAY: float = float(os.environ.get("OPTIPOD_RETRY_BASE_DELAY", "0.1"))
    RETRY_MAX_DELAY: float = float(os.environ.get("OPTIPOD_RETRY_MAX_DELAY", "5.0"))
    RETRY_BACKOFF_FACTOR: float = float(os.environ.get("OPTIPOD_RETRY_BACKOFF_FACTOR", "2.0"))
    RETRY_JITTER: float = float(os.environ.get("OPTIPOD_RETRY_JITTER", "0.1"))

    # Probe server
    PROBE_HOST: str = os.environ.get("OPTIPOD_PROBE_HOST", "0.0.0.0")
    PROBE_PORT: int = int(os.environ.get("OPTIPOD_PROBE_PORT", "8081"))
    JSON_SORT_KEYS: bool = False

    # Logging
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = "json"  # 'json' or 'text'


class DevConfig(BaseConfig):
    """Development configuration."""

    DEBUG: bool = True
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "DEBUG")
    LOG_FORMAT: str = "text"


class TestConfig(BaseConfig):
    """Testing configuration."""

    TESTING: bool = True
    DEBUG: bool = True
    DRY_RUN: bool = False

    # Shorter timeouts and no real sleeping for tests
    PROMETHEUS_TIMEOUT: int = 5
    API_TIMEOUT: int = 5
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 0.0
    RETRY_MAX_DELAY: float = 0.0
    RETRY_JITTER: float = 0.0
    METRICS_SERVER_SAMPLE_INTERVAL: float = 0.0
    WORKER_POOL_SIZE: int = 2


class ProdConfig(BaseConfig):
    """Production configuration."""

    DEBUG: bool = False

    @classmethod
    def validate(cls) -> None:
        """Validate production configuration."""
        if cls.METRICS_PROVIDER == "prometheus" and not cls.PROMETHEUS_BASE_URL:
            raise ValueError("PROMETHEUS_BASE_URL must be set when using the prometheus provider")
        if cls.WORKER_POOL_SIZE < 1:
            raise ValueError("OPTIPOD_WORKER_POOL_SIZE must be at least 1")


# Configuration mapping
config_by_name: dict[str, type[BaseConfig]] = {
    "development": DevConfig,
    "dev": DevConfig,
    "testing": TestConfig,
    "test": TestConfig,
    "production": ProdConfig,
    "prod": ProdConfig,
}


def get_config() -> BaseConfig:
    """Get configuration based on OPTIPOD_ENV environment variable."""
    env = os.environ.get("OPTIPOD_ENV", "production").lower()
    config_class = config_by_name.get(env, ProdConfig)

    if config_class == ProdConfig:
        ProdConfig.validate()

    return config_class()
