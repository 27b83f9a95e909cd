"""
Label selector evaluation for OptiPod.

Implements matchLabels/matchExpressions semantics so policies can be
matched against namespace and workload labels without a round trip.
"""

from typing import Optional

from optipod.core.schemas import LabelSelector, NamespaceFilter


def matches_labels(selector: Optional[LabelSelector], labels: Optional[dict]) -> bool:
    """
    Check whether a label set satisfies a selector.

    A missing or empty selector matches everything, as in Kubernetes.
    """
    if selector is None or selector.is_empty():
        return True

    labels = labels or {}

    for key, value in selector.match_labels.items():
        if labels.get(key) != value:
            return False

    for requirement in selector.match_expressions:
        present = requirement.key in labels
        if requirement.operator == "In":
            if not present or labels[requirement.key] not in requirement.values:
                return False
        elif requirement.operator == "NotIn":
            if present and labels[requirement.key] in requirement.values:
                return False
        elif requirement.operator == "Exists":
            if not present:
                return False
        elif requirement.operator == "DoesNotExist":
            if present:
                return False
        else:
            return False

    return True


def to_selector_string(selector: Optional[LabelSelector]) -> Optional[str]:
    """Render a selector in the label_selector query syntax, or None for 'everything'."""
    if selector is None or selector.is_empty():
        return None

    parts = [f"{key}={value}" for key, value in sorted(selector.match_labels.items())]
    for requirement in selector.match_expressions:
        values = ",".join(requirement.values)
        if requirement.operator == "In":
            parts.append(f"{requirement.key} in ({values})")
        elif requirement.operator == "NotIn":
            parts.append(f"{requirement.key} notin ({values})")
        elif requirement.operator == "Exists":
            parts.append(requirement.key)
        elif requirement.operator == "DoesNotExist":
            parts.append(f"!{requirement.key}")
    return ",".join(parts)


def namespace_allowed(namespace: str, namespace_filter: Optional[NamespaceFilter]) -> bool:
    """Apply the explicit allow/deny lists. Deny always wins."""
    if namespace_filter is None:
        return True
    if namespace in namespace_filter.deny:
        return False
    if namespace_filter.allow:
        return namespace in namespace_filter.allow
    return True
