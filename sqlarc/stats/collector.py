"""
Per-chunk column statistics.

A StatisticsCollector is fed the physical-domain values of one column
chunk, one at a time, and produces an immutable ColumnStatistics.

Ordering per physical type:
    int64 / double  numeric (NaN never enters min/max)
    utf8            code point order, identical to UTF-8 byte order
    bytes           lexicographic
    bool            False < True

The distinct count is estimated with a HyperLogLog sketch of fixed size
(2^precision one-byte registers), so memory does not grow with the
chunk.

Invariants:
    - row_count counts every observed value, null_count every None
    - min/max bound every non-null, non-NaN observed value
    - The distinct estimate never decreases while values are observed and
      never exceeds the number of non-null values observed
    - A collector is finalized once and cannot be reused
"""

from __future__ import annotations

import hashlib
import math
import struct
from typing import Any

from ..container.model import ColumnStatistics
from ..schema.types import PhysicalType

MIN_PRECISION = 4
MAX_PRECISION = 16
DEFAULT_PRECISION = 10

_HASH_BITS = 64
_DOUBLE = struct.Struct("<d")


def _canonical_bytes(value: Any) -> bytes:
    if isinstance(value, bool):
        return b"b" + (b"\x01" if value else b"\x00")
    if isinstance(value, int):
        return b"i" + str(value).encode("ascii")
    if isinstance(value, float):
        return b"d" + _DOUBLE.pack(value)
    if isinstance(value, str):
        return b"s" + value.encode("utf-8")
    return b"x" + bytes(value)


def _alpha(m: int) -> float:
    if m == 16:
        return 0.673
    if m == 32:
        return 0.697
    if m == 64:
        return 0.709
    return 0.7213 / (1 + 1.079 / m)


class DistinctSketch:
    """HyperLogLog estimator of the number of distinct values.

    Args:
        precision: Number of index bits p; the sketch holds 2^p registers

    Example:
        >>> sketch = DistinctSketch()
        >>> for v in ["a", "b", "a"]:
        ...     sketch.add(v)
        >>> sketch.estimate()
        2
    """

    def __init__(self, precision: int = DEFAULT_PRECISION) -> None:
        if not MIN_PRECISION <= precision <= MAX_PRECISION:
            raise ValueError(
                f"precision must be between {MIN_PRECISION} and {MAX_PRECISION}, "
                f"got {precision}"
            )
        self.precision = precision
        self._registers = bytearray(1 << precision)
        self._observed = 0
        self._last_estimate = 0

    def add(self, value: Any) -> None:
        digest = hashlib.blake2b(_canonical_bytes(value), digest_size=8).digest()
        h = int.from_bytes(digest, "little")
        index = h >> (_HASH_BITS - self.precision)
        remaining_bits = _HASH_BITS - self.precision
        rest = h & ((1 << remaining_bits) - 1)
        rank = remaining_bits - rest.bit_length() + 1
        if rank > self._registers[index]:
            self._registers[index] = rank
        self._observed += 1

    def _raw_estimate(self) -> float:
        m = len(self._registers)
        harmonic = sum(2.0 ** -r for r in self._registers)
        estimate = _alpha(m) * m * m / harmonic
        zeros = self._registers.count(0)
        if estimate <= 2.5 * m and zeros:
            estimate = m * math.log(m / zeros)
        return estimate

    def estimate(self) -> int:
        """Current estimate, clamped to be monotone and at most the values added."""
        value = min(round(self._raw_estimate()), self._observed)
        self._last_estimate = max(self._last_estimate, value)
        return self._last_estimate


class StatisticsCollector:
    """Accumulates the statistics of one column chunk.

    Args:
        physical_type: Physical type of the observed values
        distinct_estimate: Whether to maintain a distinct-count sketch
        sketch_precision: HyperLogLog precision for the sketch
    """

    def __init__(
        self,
        physical_type: PhysicalType,
        distinct_estimate: bool = True,
        sketch_precision: int = DEFAULT_PRECISION,
    ) -> None:
        self.physical_type = physical_type
        self._min: Any = None
        self._max: Any = None
        self._nulls = 0
        self._rows = 0
        self._sketch = DistinctSketch(sketch_precision) if distinct_estimate else None
        self._finalized = False

    def _check_open(self) -> None:
        if self._finalized:
            raise RuntimeError("StatisticsCollector has been finalized and cannot be reused")

    def observe(self, value: Any) -> None:
        """Account for one physical-domain value (None for null)."""
        self._check_open()
        self._rows += 1
        if value is None:
            self._nulls += 1
            return

        if self._sketch is not None:
            self._sketch.add(value)
        if isinstance(value, float) and math.isnan(value):
            return
        if self._min is None or value < self._min:
            self._min = value
        if self._max is None or value > self._max:
            self._max = value

    def distinct_estimate(self) -> int | None:
        if self._sketch is None:
            return None
        return self._sketch.estimate()

    def finalize(self) -> ColumnStatistics:
        """Produce the chunk statistics and close the collector."""
        self._check_open()
        self._finalized = True
        return ColumnStatistics(
            min_value=self._min,
            max_value=self._max,
            null_count=self._nulls,
            row_count=self._rows,
            distinct_count=self.distinct_estimate(),
        )
