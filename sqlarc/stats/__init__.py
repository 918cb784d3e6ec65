"""Per-chunk statistics collection."""

from .collector import DistinctSketch, StatisticsCollector

__all__ = ["DistinctSketch", "StatisticsCollector"]
