import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from .store import EndpointRecord

# Upper bound on bins per histogram
MAX_BINS = 10_000

@dataclass
class EndpointStats:
    total_calls: int
    successful_calls: int
    failed_calls: int
    timed_out_calls: int
    success_rate: float
    failure_rate: float
    timeout_rate: float
    samples: int
    mean: float | None
    p5: float | None
    p20: float | None
    p80: float | None
    p95: float | None
    last_updated: int | None

@dataclass
class HistogramBin:
    range_start: float
    range_end: float
    count: int

@dataclass
class Histogram:
    bin_size: float
    bin_edges: list[float] = field(default_factory=list)
    counts: list[int] = field(default_factory=list)
    bins: list[HistogramBin] = field(default_factory=list)
    samples: int = 0
    max_value: float = 0

def percentile(samples: Iterable[float], p: float) -> float | None:
    """
    Linear interpolation between closest ranks on a sorted copy.

    p=0 gives the minimum, p=1 the maximum, and an empty input gives None.
    """
    arr = sorted(samples)
    if not arr:
        return None
    if not 0.0 <= p <= 1.0:
        raise ValueError(f"percentile p must be within [0, 1], got {p!r}")
    idx = (len(arr) - 1) * p
    lo = math.floor(idx)
    hi = math.ceil(idx)
    if lo == hi:
        return arr[lo]
    return arr[lo] + (arr[hi] - arr[lo]) * (idx - lo)

def _rate(part: int, total: int) -> float:
    return part / total if total else 0.0

def compute_snapshot(record: "EndpointRecord") -> EndpointStats:
    rt = record.response_times.values()
    count = len(rt)
    total = record.total_calls
    return EndpointStats(
        total_calls=total,
        successful_calls=record.successful_calls,
        failed_calls=record.failed_calls,
        timed_out_calls=record.timed_out_calls,
        success_rate=_rate(record.successful_calls, total),
        failure_rate=_rate(record.failed_calls, total),
        timeout_rate=_rate(record.timed_out_calls, total),
        samples=count,
        mean=sum(rt) / count if count else None,
        p5=percentile(rt, 0.05),
        p20=percentile(rt, 0.20),
        p80=percentile(rt, 0.80),
        p95=percentile(rt, 0.95),
        last_updated=record.last_updated,
    )

def compute_histogram(
    record: "EndpointRecord",
    bin_size: float = 25,
    max_ms: float | None = None,
    max_bins: int = MAX_BINS,
) -> Histogram:
    """
    Bucket the record's samples into fixed-width bins starting at 0.

    A positive `max_ms` extends the range past the observed maximum. Samples
    beyond the last bin (or below 0) are clamped into the edge bins, so the
    counts always add up to `samples`. Raises ValueError for a non-finite or
    non-positive `bin_size`, a non-finite `max_ms`, or more than `max_bins` bins.
    """
    if not math.isfinite(bin_size) or bin_size <= 0:
        raise ValueError(f"bin_size must be a positive finite number, got {bin_size!r}")
    if max_ms is not None and not math.isfinite(max_ms):
        raise ValueError(f"max_ms must be finite, got {max_ms!r}")
    arr = [v for v in record.response_times.values() if math.isfinite(v)]
    if not arr:
        return Histogram(bin_size=bin_size)

    observed_max = max(arr)
    if max_ms is not None and max_ms > 0:
        max_value = max(max_ms, observed_max)
    else:
        max_value = observed_max
    span = (max_value + 1) / bin_size
    if not math.isfinite(span) or span > max_bins:
        raise ValueError(f"histogram would need more than {max_bins} bins; use a larger bin_size")
    num_bins = max(1, math.ceil(span))

    counts = [0] * num_bins
    for v in arr:
        idx = min(max(math.floor(v / bin_size), 0), num_bins - 1)
        counts[idx] += 1

    edges = [i * bin_size for i in range(num_bins)]
    bins = [HistogramBin(range_start=s, range_end=s + bin_size - 1, count=c) for s, c in zip(edges, counts)]
    return Histogram(
        bin_size=bin_size,
        bin_edges=edges,
        counts=counts,
        bins=bins,
        samples=len(arr),
        max_value=max_value,
    )
