"""
Admission-time validation for OptimizationPolicy objects.

Checks run in a fixed order and stop at the first failure, so an operator
always sees the most fundamental problem first. Validation never talks to
the cluster.
"""

import logging
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from optipod.core.quantity import Quantity, QuantityError
from optipod.core.schemas import (
    LabelSelector,
    MAX_WEIGHT,
    MIN_WEIGHT,
    MetricsProviderType,
    OptimizationPolicy,
    PERCENTILES,
    ResourceBound,
    WorkloadKind,
    parse_duration,
)

logger = logging.getLogger(__name__)

_VALUED_OPERATORS = {"In", "NotIn"}
_VALUELESS_OPERATORS = {"Exists", "DoesNotExist"}
_WORKLOAD_TYPES = {kind.value for kind in WorkloadKind}
_PROVIDERS = {provider.value for provider in MetricsProviderType}

MIN_LIMIT_MULTIPLIER = 1.0
MAX_LIMIT_MULTIPLIER = 10.0


class PolicyValidationError(ValueError):
    """Raised when a policy violates a static invariant."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


def _check_bound(bound: ResourceBound, label: str, field: str) -> None:
    try:
        minimum = Quantity.parse(bound.min)
    except QuantityError:
        raise PolicyValidationError(
            f"{label} min ({bound.min or 'unset'}) is required and must be greater than zero",
            field=f"{field}.min",
        )
    if not minimum.is_positive():
        raise PolicyValidationError(
            f"{label} min ({bound.min}) must be greater than zero",
            field=f"{field}.min",
        )

    try:
        maximum = Quantity.parse(bound.max)
    except QuantityError:
        raise PolicyValidationError(
            f"{label} max ({bound.max or 'unset'}) is not a valid quantity",
            field=f"{field}.max",
        )
    if minimum > maximum:
        raise PolicyValidationError(
            f"{label} min ({bound.min}) must be less than or equal to max ({bound.max})",
            field=field,
        )


def _check_label_selector(selector: Optional[LabelSelector], field: str) -> None:
    if selector is None:
        return
    for index, requirement in enumerate(selector.match_expressions):
        where = f"{field}.matchExpressions[{index}]"
        if not requirement.key:
            raise PolicyValidationError(f"{where}: key is required", field=where)
        if requirement.operator in _VALUED_OPERATORS:
            if not requirement.values:
                raise PolicyValidationError(
                    f"{where}: operator {requirement.operator} requires at least one value",
                    field=where,
                )
        elif requirement.operator in _VALUELESS_OPERATORS:
            if requirement.values:
                raise PolicyValidationError(
                    f"{where}: operator {requirement.operator} must not have values",
                    field=where,
                )
        else:
            raise PolicyValidationError(
                f"{where}: invalid operator {requirement.operator!r}, "
                f"must be one of In, NotIn, Exists, DoesNotExist",
                field=where,
            )


def validate_create(policy: OptimizationPolicy) -> None:
    """
    Validate a policy being created.

    Args:
        policy: The parsed policy.

    Raises:
        PolicyValidationError: On the first violated invariant.
    """
    spec = policy.spec
    bounds = spec.resource_bounds

    _check_bound(bounds.cpu, "CPU", "resourceBounds.cpu")
    _check_bound(bounds.memory, "memory", "resourceBounds.memory")

    safety_factor = spec.metrics_config.safety_factor
    if safety_factor < 1.0:
        raise PolicyValidationError(
            f"safety factor must be at least 1.0, got {safety_factor:f}",
            field="metricsConfig.safetyFactor",
        )

    selector = spec.selector
    has_namespace_selector = (
        selector.namespace_selector is not None and not selector.namespace_selector.is_empty()
    )
    has_workload_selector = (
        selector.workload_selector is not None and not selector.workload_selector.is_empty()
    )
    if not has_namespace_selector and not has_workload_selector:
        raise PolicyValidationError(
            "selector is required: at least one of namespaceSelector or "
            "workloadSelector must be specified",
            field="selector",
        )

    metrics_config = spec.metrics_config
    if not metrics_config.provider:
        raise PolicyValidationError(
            "metricsConfig.provider is required", field="metricsConfig.provider"
        )
    if metrics_config.provider not in _PROVIDERS:
        raise PolicyValidationError(
            f"metricsConfig.provider {metrics_config.provider!r} is not supported, "
            f"must be one of {', '.join(sorted(_PROVIDERS))}",
            field="metricsConfig.provider",
        )
    if metrics_config.percentile not in PERCENTILES:
        raise PolicyValidationError(
            f"metricsConfig.percentile {metrics_config.percentile!r} is not supported, "
            f"must be one of P50, P90, P99",
            field="metricsConfig.percentile",
        )
    for value, field in (
        (metrics_config.rolling_window, "metricsConfig.rollingWindow"),
        (spec.reconciliation_interval, "reconciliationInterval"),
    ):
        try:
            duration = parse_duration(value)
        except ValueError:
            raise PolicyValidationError(f"{field} {value!r} is not a valid duration", field=field)
        if duration.total_seconds() <= 0:
            raise PolicyValidationError(f"{field} must be greater than zero", field=field)

    if not MIN_WEIGHT <= spec.weight <= MAX_WEIGHT:
        raise PolicyValidationError(
            f"weight must be between {MIN_WEIGHT} and {MAX_WEIGHT}, got {spec.weight}",
            field="weight",
        )

    limit_config = spec.update_strategy.limit_config
    if limit_config is not None:
        for value, field in (
            (limit_config.cpu_limit_multiplier, "cpuLimitMultiplier"),
            (limit_config.memory_limit_multiplier, "memoryLimitMultiplier"),
        ):
            if not MIN_LIMIT_MULTIPLIER <= value <= MAX_LIMIT_MULTIPLIER:
                raise PolicyValidationError(
                    f"updateStrategy.limitConfig.{field} must be between "
                    f"{MIN_LIMIT_MULTIPLIER} and {MAX_LIMIT_MULTIPLIER}, got {value}",
                    field=f"updateStrategy.limitConfig.{field}",
                )

    _check_label_selector(selector.namespace_selector, "selector.namespaceSelector")
    _check_label_selector(selector.workload_selector, "selector.workloadSelector")

    if selector.workload_types is not None:
        for list_name in ("include", "exclude"):
            for kind in getattr(selector.workload_types, list_name):
                if kind not in _WORKLOAD_TYPES:
                    raise PolicyValidationError(
                        f"selector.workloadTypes.{list_name}: invalid workload type {kind!r}, "
                        f"must be one of Deployment, StatefulSet, DaemonSet",
                        field=f"selector.workloadTypes.{list_name}",
                    )


def validate_update(old: Optional[OptimizationPolicy], new: OptimizationPolicy) -> None:
    """Validate a policy update. The new object must satisfy every create check."""
    validate_create(new)


def validate_delete(policy: OptimizationPolicy) -> None:
    """Deletion is always permitted; already-applied changes are not reverted."""
    return None


def policy_from_manifest(obj: dict[str, Any]) -> OptimizationPolicy:
    """
    Parse and validate a policy custom object.

    Raises:
        PolicyValidationError: If the object cannot be parsed or is invalid.
    """
    try:
        policy = OptimizationPolicy.from_manifest(obj)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise PolicyValidationError(
            f"invalid policy spec at {location or 'spec'}: {first.get('msg')}",
            field=location or None,
        )
    validate_create(policy)
    return policy


def load_policy_manifests(path: str) -> list[dict[str, Any]]:
    """
    Read OptimizationPolicy objects from a (multi-document) YAML file.

    Documents of other kinds are ignored.

    Raises:
        PolicyValidationError: If the file is not valid YAML.
    """
    try:
        with open(path, "r") as f:
            documents = list(yaml.safe_load_all(f))
    except yaml.YAMLError as e:
        raise PolicyValidationError(f"Failed to parse {path}: {e}")
    return [
        doc for doc in documents
        if isinstance(doc, dict) and doc.get("kind") == "OptimizationPolicy"
    ]
