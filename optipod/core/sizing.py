"""
Sizing engine for OptiPod.

Turns a container's utilization samples into a bounded recommendation:

1. pick the configured percentile from the samples,
2. multiply by the safety factor,
3. clamp into the policy's [min, max] bounds,
4. flag memory decreases of more than half the current request as unsafe.

CPU and memory are sized independently. All arithmetic after the
percentile step is exact (Decimal-backed quantities).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from optipod.core.metrics import NoMetricsDataError, UtilizationSeries
from optipod.core.quantity import Quantity
from optipod.core.schemas import LimitConfig, PERCENTILES, ResourceBounds

logger = logging.getLogger(__name__)

MAX_SAFE_MEMORY_DECREASE = Decimal("0.5")
DEFAULT_PERCENTILE = "P90"


def percentile(sorted_samples: list[int], p: int) -> int:
    """
    Compute the p-th percentile of an ascending list by linear interpolation.

    The rank is p/100 * (n-1); the result is truncated to an integer.
    """
    if not sorted_samples:
        return 0
    if len(sorted_samples) == 1:
        return sorted_samples[0]

    rank = Decimal(p) / Decimal(100) * Decimal(len(sorted_samples) - 1)
    lower_index = int(rank)
    upper_index = lower_index + 1
    if upper_index >= len(sorted_samples):
        return sorted_samples[-1]

    fraction = rank - lower_index
    lower = Decimal(sorted_samples[lower_index])
    upper = Decimal(sorted_samples[upper_index])
    return int(lower + fraction * (upper - lower))


def select_percentile(samples: list[int], name: Optional[str]) -> int:
    """Select the named percentile (P50, P90, P99; default P90) from raw samples."""
    p = PERCENTILES.get(name or DEFAULT_PERCENTILE, PERCENTILES[DEFAULT_PERCENTILE])
    return percentile(sorted(samples), p)


def clamp_to_bounds(value: Quantity, minimum: Quantity, maximum: Quantity) -> tuple[Quantity, bool]:
    """
    Force a value into [minimum, maximum].

    Returns:
        The clamped value (an exact copy of the bound when clamped) and
        whether clamping occurred.
    """
    if value < minimum:
        return minimum.copy(), True
    if value > maximum:
        return maximum.copy(), True
    return value.copy(), False


def is_unsafe_memory_decrease(original: Optional[Quantity], recommended: Quantity) -> bool:
    """
    Whether lowering memory from original to recommended is too aggressive.

    A decrease of more than half is unsafe; exactly half is allowed.
    """
    if original is None or not original.is_positive() or recommended >= original:
        return False
    decrease = (original.value - recommended.value) / original.value
    return decrease > MAX_SAFE_MEMORY_DECREASE


@dataclass
class ResolvedBounds:
    """Parsed policy bounds."""
    cpu_min: Quantity
    cpu_max: Quantity
    memory_min: Quantity
    memory_max: Quantity

    @classmethod
    def from_policy(cls, bounds: ResourceBounds) -> "ResolvedBounds":
        return cls(
            cpu_min=Quantity.parse(bounds.cpu.min),
            cpu_max=Quantity.parse(bounds.cpu.max),
            memory_min=Quantity.parse(bounds.memory.min),
            memory_max=Quantity.parse(bounds.memory.max),
        )


@dataclass
class ContainerRecommendation:
    """Computed target resources for one container."""
    container: str
    cpu: Quantity
    memory: Quantity
    cpu_clamped: bool = False
    memory_clamped: bool = False
    memory_unsafe: bool = False
    original_memory: Optional[Quantity] = None
    cpu_limit: Optional[Quantity] = None
    memory_limit: Optional[Quantity] = None
    explanation: str = ""
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def clamped(self) -> bool:
        return self.cpu_clamped or self.memory_clamped

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "container": self.container,
            "cpu": str(self.cpu),
            "memory": str(self.memory),
            "cpuClamped": self.cpu_clamped,
            "memoryClamped": self.memory_clamped,
            "memoryUnsafe": self.memory_unsafe,
            "explanation": self.explanation,
            "generatedAt": self.generated_at.isoformat(),
        }


class SizingEngine:
    """
    Computes per-container recommendations.

    The engine is stateless and kind-agnostic.
    """

    def recommend(
        self,
        container: str,
        series: UtilizationSeries,
        bounds: ResolvedBounds,
        safety_factor: float,
        percentile_name: Optional[str] = DEFAULT_PERCENTILE,
        original_memory: Optional[Quantity] = None,
        limit_config: Optional[LimitConfig] = None,
    ) -> ContainerRecommendation:
        """
        Size one container.

        Args:
            container: Container name.
            series: Raw utilization samples.
            bounds: Policy bounds.
            safety_factor: Headroom multiplier (>= 1.0).
            percentile_name: P50, P90 or P99.
            original_memory: The container's current memory request, used
                by the decrease guard.
            limit_config: Multipliers for deriving limits.

        Returns:
            ContainerRecommendation.

        Raises:
            NoMetricsDataError: If the series has no samples.
        """
        if series.empty:
            raise NoMetricsDataError(f"no utilization samples for container {container}")

        cpu_observed = Quantity.from_millicores(select_percentile(series.cpu_millicores, percentile_name))
        memory_observed = Quantity.from_bytes(select_percentile(series.memory_bytes, percentile_name))

        cpu_raw = cpu_observed.scale_millicores(safety_factor)
        memory_raw = memory_observed.scale_bytes(safety_factor)

        cpu, cpu_clamped = clamp_to_bounds(cpu_raw, bounds.cpu_min, bounds.cpu_max)
        memory, memory_clamped = clamp_to_bounds(memory_raw, bounds.memory_min, bounds.memory_max)

        memory_unsafe = is_unsafe_memory_decrease(original_memory, memory)
        if memory_unsafe:
            logger.warning(
                f"Container {container}: memory recommendation {memory} is less than half "
                f"of current request {original_memory}, flagged unsafe"
            )

        cpu_limit, memory_limit = self.compute_limits(cpu, memory, limit_config)

        explanation = (
            f"Computed from {percentile_name or DEFAULT_PERCENTILE} percentile "
            f"(CPU: {cpu_observed}, Memory: {memory_observed}) with safety factor "
            f"{safety_factor:.2f}, clamped to bounds (CPU: {bounds.cpu_min}-{bounds.cpu_max}, "
            f"Memory: {bounds.memory_min}-{bounds.memory_max})"
        )

        return ContainerRecommendation(
            container=container,
            cpu=cpu,
            memory=memory,
            cpu_clamped=cpu_clamped,
            memory_clamped=memory_clamped,
            memory_unsafe=memory_unsafe,
            original_memory=original_memory,
            cpu_limit=cpu_limit,
            memory_limit=memory_limit,
            explanation=explanation,
        )

    @staticmethod
    def compute_limits(
        cpu: Quantity,
        memory: Quantity,
        limit_config: Optional[LimitConfig] = None,
    ) -> tuple[Quantity, Quantity]:
        """Derive limits from requests using the policy multipliers."""
        limit_config = limit_config or LimitConfig()
        return (
            cpu.scale_millicores(limit_config.cpu_limit_multiplier),
            memory.scale_bytes(limit_config.memory_limit_multiplier),
        )
