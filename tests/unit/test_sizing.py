"""
Unit tests for the sizing engine.
"""

import pytest

from conftest import GI, MI
from optipod.core.metrics import NoMetricsDataError, UtilizationSeries
from optipod.core.quantity import Quantity
from optipod.core.schemas import LimitConfig, ResourceBound, ResourceBounds
from optipod.core.sizing import (
    ResolvedBounds,
    SizingEngine,
    clamp_to_bounds,
    is_unsafe_memory_decrease,
    percentile,
    select_percentile,
)


@pytest.fixture
def engine():
    """Create a sizing engine."""
    return SizingEngine()


@pytest.fixture
def bounds():
    """Bounds of 100m-4 CPU and 64Mi-8Gi memory."""
    return ResolvedBounds.from_policy(ResourceBounds(
        cpu=ResourceBound(min="100m", max="4"),
        memory=ResourceBound(min="64Mi", max="8Gi"),
    ))


def constant_series(cpu_millicores: int, memory_bytes: int, samples: int = 10) -> UtilizationSeries:
    """Create a series where every sample is the same."""
    return UtilizationSeries(
        cpu_millicores=[cpu_millicores] * samples,
        memory_bytes=[memory_bytes] * samples,
    )


class TestPercentile:
    """Tests for percentile selection."""

    def test_linear_interpolation(self):
        """Test interpolation between neighbouring samples."""
        samples = list(range(0, 101, 10))  # 0, 10, ..., 100
        assert percentile(samples, 50) == 50
        assert percentile(samples, 90) == 90
        assert percentile(samples, 99) == 99

    def test_truncates(self):
        assert percentile([100, 200], 90) == 190
        assert percentile([1, 2], 50) == 1

    def test_edge_cases(self):
        assert percentile([], 90) == 0
        assert percentile([42], 99) == 42

    def test_select_sorts_and_defaults(self):
        """Test unsorted input and the P90 default."""
        samples = [100, 0, 50, 30, 90, 10, 80, 20, 70, 40, 60]
        assert select_percentile(samples, "P50") == 50
        assert select_percentile(samples, None) == 90


class TestClamping:
    """Tests for clamping into policy bounds."""

    def test_below_minimum(self):
        value, clamped = clamp_to_bounds(
            Quantity.parse("50m"), Quantity.parse("200m"), Quantity.parse("1")
        )
        assert clamped
        assert value == Quantity.parse("200m")

    def test_above_maximum(self):
        value, clamped = clamp_to_bounds(
            Quantity.parse("3"), Quantity.parse("200m"), Quantity.parse("1")
        )
        assert clamped
        assert str(value) == "1"

    def test_inside_bounds(self):
        value, clamped = clamp_to_bounds(
            Quantity.parse("500m"), Quantity.parse("200m"), Quantity.parse("1")
        )
        assert not clamped
        assert str(value) == "500m"

    @pytest.mark.parametrize("cpu_millicores", [1, 99, 100, 1234, 4000, 99999])
    @pytest.mark.parametrize("memory_bytes", [1, 64 * MI, 3 * GI, 100 * GI])
    def test_recommendation_always_within_bounds(self, engine, bounds, cpu_millicores, memory_bytes):
        """Test min <= recommendation <= max for arbitrary usage."""
        rec = engine.recommend("app", constant_series(cpu_millicores, memory_bytes), bounds, 1.3)

        assert bounds.cpu_min <= rec.cpu <= bounds.cpu_max
        assert bounds.memory_min <= rec.memory <= bounds.memory_max


class TestMemoryDecreaseGuard:
    """Tests for the unsafe memory decrease check."""

    def test_seventy_five_percent_decrease_is_unsafe(self):
        assert is_unsafe_memory_decrease(Quantity.parse("1Gi"), Quantity.parse("256Mi"))

    def test_exactly_half_is_safe(self):
        assert not is_unsafe_memory_decrease(Quantity.parse("1Gi"), Quantity.parse("512Mi"))

    def test_increase_is_safe(self):
        assert not is_unsafe_memory_decrease(Quantity.parse("1Gi"), Quantity.parse("2Gi"))

    def test_no_original(self):
        assert not is_unsafe_memory_decrease(None, Quantity.parse("1Mi"))

    def test_engine_flags_unsafe(self, engine, bounds):
        """Test the engine marks but still reports an unsafe recommendation."""
        rec = engine.recommend(
            "app", constant_series(100, 256 * MI), bounds, 1.0,
            original_memory=Quantity.parse("1Gi"),
        )

        assert rec.memory_unsafe
        assert str(rec.memory) == "256Mi"
        assert rec.original_memory == Quantity.parse("1Gi")


class TestSizingEngine:
    """Tests for SizingEngine.recommend."""

    def test_applies_safety_factor(self, engine, bounds):
        rec = engine.recommend("app", constant_series(500, 512 * MI), bounds, 1.2)

        assert rec.cpu.millicores == 600
        assert rec.memory.bytes == int(512 * MI * 1.2)
        assert not rec.clamped

    def test_clamps_to_minimum(self, engine):
        """Test a tiny workload is raised to the bound."""
        bounds = ResolvedBounds.from_policy(ResourceBounds(
            cpu=ResourceBound(min="200m", max="2"),
            memory=ResourceBound(min="128Mi", max="1Gi"),
        ))

        rec = engine.recommend("app", constant_series(50, 10 * MI), bounds, 1.0)

        assert str(rec.cpu) == "200m"
        assert str(rec.memory) == "128Mi"
        assert rec.cpu_clamped and rec.memory_clamped

    def test_derives_limits(self, engine, bounds):
        """Test limits use the configured multipliers."""
        rec = engine.recommend(
            "app", constant_series(1000, GI), bounds, 1.0,
            limit_config=LimitConfig(cpu_limit_multiplier=2.0, memory_limit_multiplier=1.5),
        )

        assert str(rec.cpu_limit) == "2"
        assert str(rec.memory_limit) == "1536Mi"

    def test_default_limit_multipliers(self, engine, bounds):
        rec = engine.recommend("app", constant_series(1000, GI), bounds, 1.0)

        assert str(rec.cpu_limit) == "1"
        assert rec.memory_limit.bytes == int(GI * 1.1)

    def test_empty_series_raises(self, engine, bounds):
        with pytest.raises(NoMetricsDataError):
            engine.recommend("app", UtilizationSeries(), bounds, 1.0)

    def test_to_dict(self, engine, bounds):
        rec = engine.recommend("app", constant_series(500, 512 * MI), bounds, 1.0)

        data = rec.to_dict()

        assert data["container"] == "app"
        assert data["cpu"] == "500m"
        assert data["memory"] == "512Mi"
        assert "P90" in data["explanation"]
