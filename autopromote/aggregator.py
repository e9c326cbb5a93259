"""Accumulates per-request outcomes into fixed-width, per-variant buckets.

Buckets are open while wall-clock time is inside their window (plus a small
allowed lateness); after that they are closed, persisted and never written
again except by `rollup`. Readers only ever see closed buckets or copies of
open ones taken under the bucket's own lock.
"""

import logging
import math
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .config import ALLOWED_LATENESS_SECONDS, BUCKET_WIDTH_SECONDS, MAX_DELIVERY_DELAY_SECONDS
from .errors import InvariantViolation, StorageUnavailableError
from .experiment import Variant

logger = logging.getLogger(__name__)

BucketKey = Tuple[str, Variant, float]


class LatencySketch:
    """Mergeable log-bucketed latency histogram.

    Values land in bins of relative width GAMMA, so every quantile is within
    ~1% of the true sample. Merging is plain addition of bin counts, which
    makes results independent of the order buckets are combined in.
    """

    GAMMA = 1.02
    _LOG_GAMMA = math.log(GAMMA)
    MIN_VALUE = 1e-3  # ms; anything below is counted as zero

    def __init__(self, bins: Optional[Dict[int, int]] = None, zero_count: int = 0):
        self.bins: Dict[int, int] = dict(bins or {})
        self.zero_count = zero_count

    @property
    def count(self) -> int:
        return self.zero_count + sum(self.bins.values())

    def add(self, value: float) -> None:
        if value < self.MIN_VALUE:
            self.zero_count += 1
            return
        index = math.ceil(math.log(value) / self._LOG_GAMMA)
        self.bins[index] = self.bins.get(index, 0) + 1

    def merge(self, other: "LatencySketch") -> None:
        self.zero_count += other.zero_count
        for index, count in other.bins.items():
            self.bins[index] = self.bins.get(index, 0) + count

    def copy(self) -> "LatencySketch":
        return LatencySketch(self.bins, self.zero_count)

    def quantile(self, q: float) -> Optional[float]:
        total = self.count
        if total == 0:
            return None
        rank = q * (total - 1)
        seen = self.zero_count
        if rank < seen:
            return 0.0
        for index in sorted(self.bins):
            seen += self.bins[index]
            if rank < seen:
                # midpoint (in relative terms) of (GAMMA^(i-1), GAMMA^i]
                return 2.0 * self.GAMMA ** index / (self.GAMMA + 1.0)
        return 2.0 * self.GAMMA ** max(self.bins) / (self.GAMMA + 1.0)

    def to_dict(self) -> dict:
        return {"zero": self.zero_count, "bins": {str(k): v for k, v in self.bins.items()}}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "LatencySketch":
        if not data:
            return cls()
        return cls({int(k): v for k, v in data.get("bins", {}).items()}, data.get("zero", 0))


@dataclass
class Outcome:
    success: bool
    latency_ms: float
    cost_usd: float = 0.0
    quality_score: Optional[float] = None
    custom: Dict[str, float] = field(default_factory=dict)

    def validate(self) -> None:
        if self.latency_ms is None or self.latency_ms < 0:
            raise ValueError(f"latency_ms must be non-negative, got {self.latency_ms}")
        if self.cost_usd is None or self.cost_usd < 0:
            raise ValueError(f"cost_usd must be non-negative, got {self.cost_usd}")


@dataclass
class MetricBucket:
    experiment_id: str
    variant: Variant
    window_start: float
    window_seconds: float
    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    latency: LatencySketch = field(default_factory=LatencySketch)
    cost_sum: float = 0.0
    quality_score_sum: float = 0.0
    quality_score_count: int = 0
    custom_sums: Dict[str, float] = field(default_factory=dict)
    custom_counts: Dict[str, int] = field(default_factory=dict)
    closed: bool = False

    @property
    def window_end(self) -> float:
        return self.window_start + self.window_seconds

    def add(self, outcome: Outcome) -> None:
        self.request_count += 1
        if outcome.success:
            self.success_count += 1
        else:
            self.error_count += 1
        self.latency.add(outcome.latency_ms)
        self.cost_sum += outcome.cost_usd
        if outcome.quality_score is not None:
            self.quality_score_sum += outcome.quality_score
            self.quality_score_count += 1
        for name, value in outcome.custom.items():
            self.custom_sums[name] = self.custom_sums.get(name, 0.0) + value
            self.custom_counts[name] = self.custom_counts.get(name, 0) + 1

    def merge(self, other: "MetricBucket") -> None:
        self.request_count += other.request_count
        self.success_count += other.success_count
        self.error_count += other.error_count
        self.latency.merge(other.latency)
        self.cost_sum += other.cost_sum
        self.quality_score_sum += other.quality_score_sum
        self.quality_score_count += other.quality_score_count
        for name, value in other.custom_sums.items():
            self.custom_sums[name] = self.custom_sums.get(name, 0.0) + value
        for name, count in other.custom_counts.items():
            self.custom_counts[name] = self.custom_counts.get(name, 0) + count

    def copy(self) -> "MetricBucket":
        return MetricBucket(
            experiment_id=self.experiment_id,
            variant=self.variant,
            window_start=self.window_start,
            window_seconds=self.window_seconds,
            request_count=self.request_count,
            success_count=self.success_count,
            error_count=self.error_count,
            latency=self.latency.copy(),
            cost_sum=self.cost_sum,
            quality_score_sum=self.quality_score_sum,
            quality_score_count=self.quality_score_count,
            custom_sums=dict(self.custom_sums),
            custom_counts=dict(self.custom_counts),
            closed=self.closed,
        )

    def check_invariants(self) -> None:
        counts = (self.request_count, self.success_count, self.error_count, self.quality_score_count)
        if min(counts) < 0:
            raise InvariantViolation(f"negative counter in bucket {self.window_start} ({self.variant.value})")
        if self.success_count + self.error_count > self.request_count:
            raise InvariantViolation(
                f"successCount + errorCount > requestCount in bucket "
                f"{self.window_start} ({self.variant.value})"
            )


@dataclass(frozen=True)
class VariantAggregate:
    """Sum of a variant's buckets; derived on demand, never stored."""

    variant: Variant
    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    latency_p50: Optional[float] = None
    latency_p95: Optional[float] = None
    latency_p99: Optional[float] = None
    cost_sum: float = 0.0
    quality_score_sum: float = 0.0
    quality_score_count: int = 0
    custom_sums: Dict[str, float] = field(default_factory=dict)
    custom_counts: Dict[str, int] = field(default_factory=dict)
    bucket_count: int = 0
    provisional: bool = False

    @property
    def success_rate(self) -> Optional[float]:
        if self.request_count == 0:
            return None
        return self.success_count / self.request_count

    @property
    def error_rate(self) -> Optional[float]:
        if self.request_count == 0:
            return None
        return self.error_count / self.request_count

    @property
    def mean_cost(self) -> Optional[float]:
        if self.request_count == 0:
            return None
        return self.cost_sum / self.request_count

    @property
    def mean_quality_score(self) -> Optional[float]:
        if self.quality_score_count == 0:
            return None
        return self.quality_score_sum / self.quality_score_count

    def custom_mean(self, name: str) -> Optional[float]:
        count = self.custom_counts.get(name, 0)
        if count == 0:
            return None
        return self.custom_sums.get(name, 0.0) / count

    def latency_percentile(self, percentile: str) -> Optional[float]:
        return {"p50": self.latency_p50, "p95": self.latency_p95, "p99": self.latency_p99}[percentile]

    @classmethod
    def from_buckets(
        cls, variant: Variant, buckets: Iterable[MetricBucket], provisional: bool = False
    ) -> "VariantAggregate":
        total: Optional[MetricBucket] = None
        n = 0
        for bucket in buckets:
            if total is None:
                total = MetricBucket(bucket.experiment_id, variant, bucket.window_start, 0.0)
            total.merge(bucket)
            n += 1
        if total is None:
            return cls(variant=variant, provisional=provisional)
        total.check_invariants()
        return cls(
            variant=variant,
            request_count=total.request_count,
            success_count=total.success_count,
            error_count=total.error_count,
            latency_p50=total.latency.quantile(0.50),
            latency_p95=total.latency.quantile(0.95),
            latency_p99=total.latency.quantile(0.99),
            cost_sum=total.cost_sum,
            quality_score_sum=total.quality_score_sum,
            quality_score_count=total.quality_score_count,
            custom_sums=dict(total.custom_sums),
            custom_counts=dict(total.custom_counts),
            bucket_count=n,
            provisional=provisional,
        )


def window_start_for(timestamp: float, width: float) -> float:
    return math.floor(timestamp / width) * width


def rollup(buckets: Iterable[MetricBucket], width: float) -> List[MetricBucket]:
    """Merge closed buckets into coarser windows of `width` seconds."""
    merged: Dict[Tuple[Variant, float], MetricBucket] = {}
    for bucket in buckets:
        if not bucket.closed:
            raise InvariantViolation("only closed buckets can be rolled up")
        if width < bucket.window_seconds:
            raise ValueError("rollup width must not be smaller than the source buckets")
        start = window_start_for(bucket.window_start, width)
        target = merged.get((bucket.variant, start))
        if target is None:
            target = MetricBucket(bucket.experiment_id, bucket.variant, start, width, closed=True)
            merged[(bucket.variant, start)] = target
        target.merge(bucket)
    result = sorted(merged.values(), key=lambda b: (b.variant.value, b.window_start))
    for bucket in result:
        bucket.check_invariants()
    return result


class MetricsAggregator:
    """Concurrent, idempotent ingestion of outcome events.

    One lock per open bucket serializes its counters; the registry lock is held
    only long enough to find or create a bucket. Closed buckets go to `store`
    (anything with save_bucket / load_buckets / load_event_ids).
    """

    def __init__(
        self,
        store,
        bucket_width: float = BUCKET_WIDTH_SECONDS,
        allowed_lateness: float = ALLOWED_LATENESS_SECONDS,
        max_delivery_delay: float = MAX_DELIVERY_DELAY_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.bucket_width = bucket_width
        self.allowed_lateness = allowed_lateness
        self.dedup_window = bucket_width + allowed_lateness + max_delivery_delay
        self.clock = clock

        self._registry_lock = threading.Lock()
        self._open: Dict[BucketKey, MetricBucket] = {}
        self._bucket_locks: Dict[BucketKey, threading.Lock] = {}
        self._bucket_events: Dict[BucketKey, List[str]] = {}

        self._dedup_locks: Dict[str, threading.Lock] = {}
        self._seen: Dict[str, Dict[str, float]] = defaultdict(dict)

        # Closed buckets the store refused; retried on the next close.
        self._unpersisted: List[Tuple[MetricBucket, List[str]]] = []
        self._flush_lock = threading.Lock()
        # End of the newest closed window per (experiment, variant)
        self._closed_through: Dict[Tuple[str, Variant], float] = {}

        self.late_events: Dict[str, int] = defaultdict(int)
        self.duplicate_events: Dict[str, int] = defaultdict(int)

    # --- ingestion -----------------------------------------------------------

    def record(
        self,
        experiment_id: str,
        variant: Variant,
        timestamp: float,
        outcome: Outcome,
        event_id: Optional[str] = None,
    ) -> bool:
        """Add one outcome. Returns False when it was a duplicate or too late."""
        outcome.validate()
        variant = Variant(variant)
        now = self.clock()
        start = window_start_for(timestamp, self.bucket_width)
        closed_through = self._closed_through.get((experiment_id, variant), float("-inf"))
        if start + self.bucket_width + self.allowed_lateness <= now or start < closed_through:
            self.late_events[experiment_id] += 1
            logger.warning(
                "Dropping late event for %s/%s: window %s already closed",
                experiment_id, variant.value, start,
            )
            return False

        key = (experiment_id, variant, start)
        with self._registry_lock:
            bucket = self._open.get(key)
            if bucket is None:
                bucket = MetricBucket(experiment_id, variant, start, self.bucket_width)
                self._open[key] = bucket
                self._bucket_locks[key] = threading.Lock()
                self._bucket_events[key] = []
            bucket_lock = self._bucket_locks[key]
            events = self._bucket_events[key]
            dedup_lock = self._dedup_locks.setdefault(experiment_id, threading.Lock())

        with bucket_lock:
            if bucket.closed:
                self.late_events[experiment_id] += 1
                logger.warning("Dropping event for %s/%s: bucket closed meanwhile", experiment_id, variant.value)
                return False
            if event_id is not None:
                with dedup_lock:
                    seen = self._seen[experiment_id]
                    if event_id in seen:
                        self.duplicate_events[experiment_id] += 1
                        logger.debug("Ignoring duplicate event %s for %s", event_id, experiment_id)
                        return False
                    seen[event_id] = now
                events.append(event_id)
            bucket.add(outcome)
            bucket.check_invariants()
        return True

    def warm_dedup(self) -> int:
        """Reload recently persisted event ids so idempotency survives restarts."""
        since = self.clock() - self.dedup_window
        loaded = 0
        for experiment_id, event_id, recorded_at in self.store.load_event_ids(since):
            self._seen[experiment_id].setdefault(event_id, recorded_at)
            loaded += 1
        return loaded

    # --- closing -------------------------------------------------------------

    def close_expired(self, now: Optional[float] = None) -> List[MetricBucket]:
        """Close every bucket whose window (plus lateness) has passed and persist it."""
        now = self.clock() if now is None else now
        expired: List[Tuple[BucketKey, MetricBucket, threading.Lock, List[str]]] = []
        with self._registry_lock:
            for key, bucket in list(self._open.items()):
                if bucket.window_end + self.allowed_lateness <= now:
                    expired.append((key, self._open.pop(key), self._bucket_locks.pop(key), self._bucket_events.pop(key)))
                    series = (key[0], key[1])
                    self._closed_through[series] = max(
                        self._closed_through.get(series, float("-inf")), bucket.window_end
                    )

        closed = []
        with self._flush_lock:
            for _key, bucket, lock, events in expired:
                with lock:
                    bucket.closed = True
                    snapshot = bucket.copy()
                self._unpersisted.append((snapshot, list(events)))
                closed.append(snapshot)
            self._flush_unpersisted()
        self._prune_dedup(now)
        return closed

    def _flush_unpersisted(self) -> None:
        remaining = []
        failure = None
        for bucket, events in self._unpersisted:
            if failure is not None:
                remaining.append((bucket, events))
                continue
            try:
                self.store.save_bucket(bucket, events)
            except StorageUnavailableError as exc:
                logger.error("Could not persist bucket %s/%s@%s: %s",
                             bucket.experiment_id, bucket.variant.value, bucket.window_start, exc)
                failure = exc
                remaining.append((bucket, events))
        self._unpersisted = remaining
        if failure is not None:
            raise failure

    def _prune_dedup(self, now: float) -> None:
        cutoff = now - self.dedup_window
        for experiment_id, seen in list(self._seen.items()):
            with self._dedup_locks.setdefault(experiment_id, threading.Lock()):
                for event_id in [e for e, at in seen.items() if at < cutoff]:
                    del seen[event_id]

    # --- reading -------------------------------------------------------------

    def open_buckets(self, experiment_id: str, variant: Variant, since: Optional[float] = None) -> List[MetricBucket]:
        """Consistent copies of the currently open buckets."""
        with self._registry_lock:
            candidates = [
                (bucket, self._bucket_locks[key])
                for key, bucket in self._open.items()
                if key[0] == experiment_id and key[1] == variant
                and (since is None or bucket.window_end > since)
            ]
        copies = []
        for bucket, lock in candidates:
            with lock:
                if not bucket.closed:
                    copies.append(bucket.copy())
        return copies

    def get_aggregate(
        self,
        experiment_id: str,
        variant: Variant,
        since: Optional[float] = None,
        include_provisional: bool = False,
    ) -> VariantAggregate:
        """Sum closed buckets overlapping `since` (default: everything) up to now.

        With include_provisional, open buckets are added too and the result is
        flagged provisional. Raises StorageUnavailableError when closed buckets
        cannot be persisted or read.
        """
        variant = Variant(variant)
        self.close_expired()
        buckets = list(self.store.load_buckets(experiment_id, variant, since))
        provisional = False
        if include_provisional:
            open_copies = self.open_buckets(experiment_id, variant, since)
            provisional = bool(open_copies)
            buckets.extend(open_copies)
        return VariantAggregate.from_buckets(variant, buckets, provisional=provisional)

    def compact(self, experiment_id: str, older_than: float, width: float) -> int:
        """Roll closed buckets that ended before `older_than` up into `width`-second windows."""
        compacted = 0
        for variant in Variant:
            # Only whole target windows, so each one is rolled up exactly once.
            old = [
                b for b in self.store.load_buckets(experiment_id, variant, None)
                if window_start_for(b.window_start, width) + width <= older_than
                and b.window_seconds < width
            ]
            if not old:
                continue
            self.store.replace_buckets(experiment_id, variant, old, rollup(old, width))
            compacted += len(old)
        if compacted:
            logger.info("Compacted %d buckets for %s into %ss windows", compacted, experiment_id, width)
        return compacted
