import asyncio
import json
import logging
import math
import time
from collections import deque
from concurrent.futures import Executor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Iterator

from .export import ChartExporter, ExportResult
from .keys import resolve_endpoint_key
from .persistence import MemoryStorage, PersistenceAdapter, StorageResult
from .stats import EndpointStats, Histogram, compute_histogram, compute_snapshot

MAX_SAMPLES = 2000
AUTOSAVE_EVERY = 10

class Outcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"

def _now_ms() -> int:
    return int(time.time() * 1000)

def _is_sample(value: Any) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # ints too large for a float
        return False

def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0

class SampleBuffer:
    """Latency samples in arrival order; once full, each push evicts the oldest."""
    def __init__(self, capacity: int = MAX_SAMPLES, values: Iterable[float] = ()):
        self.capacity = capacity
        # deque(maxlen) keeps the newest `capacity` values, also when seeded
        self._dq: deque[float] = deque(values, maxlen=capacity)

    def push(self, value: float) -> None:
        self._dq.append(value)

    def values(self) -> list[float]:
        return list(self._dq)

    def __len__(self) -> int:
        return len(self._dq)

    def __iter__(self) -> Iterator[float]:
        return iter(self._dq)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SampleBuffer):
            return NotImplemented
        return list(self._dq) == list(other._dq)

    def __repr__(self) -> str:
        return f"SampleBuffer(capacity={self.capacity}, len={len(self._dq)})"

@dataclass
class EndpointRecord:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    timed_out_calls: int = 0
    response_times: SampleBuffer = field(default_factory=SampleBuffer)
    last_updated: int | None = field(default_factory=_now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalCalls": self.total_calls,
            "successfulCalls": self.successful_calls,
            "failedCalls": self.failed_calls,
            "timedOutCalls": self.timed_out_calls,
            "responseTimes": self.response_times.values(),
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Any, max_samples: int = MAX_SAMPLES) -> "EndpointRecord | None":
        """Build a record from its persisted shape; None if `data` is not an object."""
        if not isinstance(data, dict):
            return None

        def count(name: str) -> int:
            v = data.get(name)
            if _is_count(v):
                return v
            return int(v) if _is_sample(v) and v >= 0 else 0

        raw_times = data.get("responseTimes")
        times = [v for v in raw_times if _is_sample(v)] if isinstance(raw_times, list) else []
        last = data.get("lastUpdated")
        return cls(
            total_calls=count("totalCalls"),
            successful_calls=count("successfulCalls"),
            failed_calls=count("failedCalls"),
            timed_out_calls=count("timedOutCalls"),
            response_times=SampleBuffer(max_samples, times),
            last_updated=last if _is_count(last) else int(last) if _is_sample(last) else None,
        )

class MetricsStore:
    """
    Per-endpoint call counters and latency samples.

    Recording never raises: bad ids fall back to the raw string, storage
    problems are logged and ignored. Every `autosave_every`-th call on an
    endpoint saves the whole store, through `writer` when one is set so the
    caller does not wait on storage I/O.
    """
    def __init__(
        self,
        persistence: PersistenceAdapter | None = None,
        *,
        max_samples: int = MAX_SAMPLES,
        autosave_every: int = AUTOSAVE_EVERY,
        base_url: str | None = None,
        exporter: ChartExporter | None = None,
        clock: Callable[[], int] = _now_ms,
        writer: Executor | None = None,
    ):
        self.persistence = persistence or PersistenceAdapter(MemoryStorage())
        self.max_samples = max_samples
        self.autosave_every = autosave_every
        self.base_url = base_url
        self.exporter = exporter or ChartExporter()
        self._clock = clock
        self.writer = writer
        self._records: dict[str, EndpointRecord] = {}
        self._log = logging.getLogger(__name__)

    # Lifecycle
    def open(self) -> "MetricsStore":
        self.load()
        return self

    def close(self) -> None:
        self.save()

    def __enter__(self) -> "MetricsStore":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    # Recording
    def resolve_endpoint_key(self, raw_id: str) -> str:
        return resolve_endpoint_key(raw_id, self.base_url)

    def _ensure(self, key: str) -> EndpointRecord:
        rec = self._records.get(key)
        if rec is None:
            rec = EndpointRecord(response_times=SampleBuffer(self.max_samples), last_updated=self._clock())
            self._records[key] = rec
        return rec

    def record_event(self, raw_id: str, latency: float | None = None, outcome: Outcome | str = Outcome.SUCCESS) -> str | None:
        """Count one call; returns the endpoint key, or None if the event was dropped."""
        try:
            outcome = Outcome(outcome)
        except ValueError:
            self._log.warning(
                "dropping event with unknown outcome",
                extra={"event": "metrics.bad_outcome", "extra_fields": {"raw_id": str(raw_id), "outcome": repr(outcome)}},
            )
            return None

        key = self.resolve_endpoint_key(raw_id if isinstance(raw_id, str) else str(raw_id))
        rec = self._ensure(key)

        rec.total_calls += 1
        if outcome is Outcome.SUCCESS:
            rec.successful_calls += 1
        elif outcome is Outcome.FAILED:
            rec.failed_calls += 1
        else:
            rec.timed_out_calls += 1
        if _is_sample(latency):
            rec.response_times.push(latency)
        rec.last_updated = self._clock()

        if rec.total_calls % self.autosave_every == 0:
            self._autosave()
        return key

    def _autosave(self) -> None:
        if self.writer is None:
            self.save()
            return
        # serialize here, write elsewhere; a single-worker writer keeps saves ordered
        self.writer.submit(self.persistence.save, self.dumps())

    def clear(self, persist: bool = False) -> None:
        self._records.clear()
        self._log.info("metrics cleared", extra={"event": "metrics.clear", "extra_fields": {"persist": persist}})
        if persist:
            self.save()

    # Queries
    def keys(self) -> list[str]:
        return list(self._records)

    def record(self, endpoint_key: str) -> EndpointRecord | None:
        return self._records.get(endpoint_key)

    def snapshot(self, endpoint_key: str) -> EndpointStats | None:
        rec = self._records.get(endpoint_key)
        if rec is None:
            return None
        return compute_snapshot(rec)

    def all_snapshots(self) -> list[dict[str, Any]]:
        return [{"endpoint": k, "stats": compute_snapshot(rec)} for k, rec in self._records.items()]

    def histogram(self, endpoint_key: str, bin_size: float = 25, max_ms: float | None = None) -> Histogram:
        rec = self._records.get(endpoint_key) or EndpointRecord(last_updated=None)
        return compute_histogram(rec, bin_size, max_ms)

    # Persistence
    def dumps(self) -> str:
        return json.dumps({k: rec.to_dict() for k, rec in self._records.items()}, ensure_ascii=False)

    def save(self) -> StorageResult:
        result = self.persistence.save(self.dumps())
        if result.ok:
            self._log.debug(
                "metrics saved",
                extra={"event": "metrics.save", "extra_fields": {"endpoints": len(self._records)}},
            )
        return result

    def load(self) -> StorageResult:
        """
        Replace records with the persisted ones, key by key.

        The payload is parsed completely before anything is applied, so a
        corrupt payload leaves the in-memory state as it was.
        """
        return self.apply_loaded(self.persistence.load())

    def apply_loaded(self, result: StorageResult) -> StorageResult:
        """Apply a payload already read from storage; see `load`."""
        if not result.ok:
            return result
        try:
            parsed = json.loads(result.value)
        except ValueError as e:
            return self._corrupt(repr(e))
        if not isinstance(parsed, dict):
            return self._corrupt(f"expected an object, got {type(parsed).__name__}")

        loaded: dict[str, EndpointRecord] = {}
        for key, data in parsed.items():
            rec = EndpointRecord.from_dict(data, self.max_samples)
            if rec is None:
                self._log.warning(
                    "skipping malformed endpoint record",
                    extra={"event": "metrics.load_skip", "extra_fields": {"endpoint": key}},
                )
                continue
            loaded[key] = rec
        self._records.update(loaded)
        self._log.info("metrics loaded", extra={"event": "metrics.load", "extra_fields": {"endpoints": len(loaded)}})
        return StorageResult(ok=True, value=result.value)

    def _corrupt(self, detail: str) -> StorageResult:
        self._log.warning(
            "ignoring corrupt metrics payload",
            extra={"event": "metrics.load_error", "extra_fields": {"error": detail}},
        )
        return StorageResult(ok=False, error="corrupt", detail=detail)

    # Chart export
    def export_inputs(self, endpoint_key: str, bin_size: float = 25) -> tuple[Histogram, EndpointStats]:
        """Histogram and stats for an export; unknown keys give empty ones."""
        rec = self._records.get(endpoint_key) or EndpointRecord(last_updated=None)
        return compute_histogram(rec, bin_size), compute_snapshot(rec)

    def export_histogram(self, endpoint_key: str, bin_size: float = 25) -> ExportResult:
        hist, stats = self.export_inputs(endpoint_key, bin_size)
        return self.exporter.export(endpoint_key, hist, stats)

    async def export_histogram_async(self, endpoint_key: str, bin_size: float = 25) -> ExportResult:
        """Same as export_histogram, with rendering and the file write in a worker thread."""
        hist, stats = self.export_inputs(endpoint_key, bin_size)
        return await asyncio.to_thread(self.exporter.export, endpoint_key, hist, stats)

    def export_all_histograms(self, bin_size: float = 25) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        # one at a time: each export renders and writes a full image
        for k in self.keys():
            try:
                results.append(self._export_ok(k, self.export_histogram(k, bin_size)))
            except Exception as e:
                results.append(self._export_failed(k, e))
        return results

    async def export_all_histograms_async(self, bin_size: float = 25) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for k in self.keys():
            try:
                results.append(self._export_ok(k, await self.export_histogram_async(k, bin_size)))
            except Exception as e:
                results.append(self._export_failed(k, e))
        return results

    def _export_ok(self, endpoint_key: str, result: ExportResult) -> dict[str, Any]:
        return {"endpoint": endpoint_key, "ok": True, "result": result}

    def _export_failed(self, endpoint_key: str, error: Exception) -> dict[str, Any]:
        self._log.error(
            "histogram export failed",
            extra={"event": "export.error", "extra_fields": {"endpoint": endpoint_key, "error": repr(error)}},
        )
        return {"endpoint": endpoint_key, "ok": False, "error": repr(error)}
