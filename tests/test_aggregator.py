import threading

import pytest

from autopromote.aggregator import (
    LatencySketch,
    MetricBucket,
    MetricsAggregator,
    Outcome,
    rollup,
    window_start_for,
)
from autopromote.errors import InvariantViolation, StorageUnavailableError
from autopromote.experiment import Variant

from conftest import T0


def _outcome(success=True, latency_ms=100.0, **kwargs):
    return Outcome(success=success, latency_ms=latency_ms, **kwargs)


def test_window_start_for():
    assert window_start_for(T0 + 299, 300) == T0
    assert window_start_for(T0 + 300, 300) == T0 + 300


def test_duplicate_event_id_is_counted_once(aggregator, clock):
    assert aggregator.record("exp-1", Variant.A, T0 + 1, _outcome(), "evt-1") is True
    assert aggregator.record("exp-1", Variant.A, T0 + 2, _outcome(), "evt-1") is False
    assert aggregator.duplicate_events["exp-1"] == 1

    clock.advance(400)
    aggregate = aggregator.get_aggregate("exp-1", Variant.A)
    assert aggregate.request_count == 1


def test_event_ids_survive_restart(aggregator, store, clock):
    aggregator.record("exp-1", Variant.A, T0 + 1, _outcome(), "evt-1")
    clock.advance(400)
    aggregator.close_expired()

    restarted = MetricsAggregator(store, bucket_width=300, allowed_lateness=30,
                                  max_delivery_delay=600, clock=clock)
    assert restarted.warm_dedup() == 1
    assert restarted.record("exp-1", Variant.A, clock() - 1, _outcome(), "evt-1") is False


def test_late_event_is_dropped(aggregator, clock):
    clock.advance(400)
    assert aggregator.record("exp-1", Variant.B, T0 + 10, _outcome()) is False
    assert aggregator.late_events["exp-1"] == 1


def test_closed_window_is_never_reopened(aggregator, clock):
    aggregator.record("exp-1", Variant.A, T0 + 1, _outcome())
    aggregator.close_expired(now=T0 + 1000)
    assert aggregator.record("exp-1", Variant.A, T0 + 5, _outcome()) is False


def test_provisional_aggregate_includes_open_buckets(aggregator):
    for _ in range(3):
        aggregator.record("exp-1", Variant.B, T0 + 1, _outcome(success=False))

    closed_only = aggregator.get_aggregate("exp-1", Variant.B)
    assert closed_only.request_count == 0
    assert closed_only.success_rate is None

    live = aggregator.get_aggregate("exp-1", Variant.B, include_provisional=True)
    assert live.provisional is True
    assert live.request_count == 3
    assert live.error_rate == pytest.approx(1.0)


def test_aggregate_sums_metrics(aggregator, clock):
    aggregator.record("exp-1", Variant.A, T0 + 1, _outcome(True, 100.0, cost_usd=0.02, quality_score=4.0))
    aggregator.record("exp-1", Variant.A, T0 + 2, _outcome(False, 300.0, cost_usd=0.04, quality_score=2.0))
    aggregator.record("exp-1", Variant.A, T0 + 301, _outcome(True, 200.0, custom={"tokens": 10.0}))
    clock.advance(700)

    aggregate = aggregator.get_aggregate("exp-1", Variant.A)
    assert aggregate.request_count == 3
    assert aggregate.bucket_count == 2
    assert aggregate.success_rate == pytest.approx(2 / 3)
    assert aggregate.mean_cost == pytest.approx(0.02)
    assert aggregate.mean_quality_score == pytest.approx(3.0)
    assert aggregate.custom_mean("tokens") == pytest.approx(10.0)
    assert aggregate.latency_p50 == pytest.approx(200.0, rel=0.02)


def test_since_includes_window_overlapping_start(aggregator, clock):
    aggregator.record("exp-1", Variant.A, T0 + 100, _outcome())
    clock.advance(400)
    assert aggregator.get_aggregate("exp-1", Variant.A, since=T0 + 50).request_count == 1
    assert aggregator.get_aggregate("exp-1", Variant.A, since=T0 + 300).request_count == 0


def test_concurrent_records_are_all_counted(aggregator, clock):
    def worker(offset):
        for i in range(200):
            aggregator.record("exp-1", Variant.B, T0 + 1, _outcome(), f"evt-{offset}-{i}")

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    clock.advance(400)
    assert aggregator.get_aggregate("exp-1", Variant.B).request_count == 1600


class FlakyStore:
    def __init__(self, inner):
        self.inner = inner
        self.fail = True

    def save_bucket(self, bucket, event_ids=()):
        if self.fail:
            raise StorageUnavailableError("database is locked")
        self.inner.save_bucket(bucket, event_ids)

    def __getattr__(self, name):
        return getattr(self.inner, name)


def test_failed_persist_is_retried(store, clock):
    flaky = FlakyStore(store)
    aggregator = MetricsAggregator(flaky, bucket_width=300, allowed_lateness=30,
                                   max_delivery_delay=600, clock=clock)
    aggregator.record("exp-1", Variant.A, T0 + 1, _outcome())
    clock.advance(400)
    with pytest.raises(StorageUnavailableError):
        aggregator.close_expired()

    flaky.fail = False
    aggregator.close_expired()
    assert aggregator.get_aggregate("exp-1", Variant.A).request_count == 1


def test_sketch_merge_is_order_independent():
    values = [5.0, 12.0, 80.0, 120.0, 450.0, 900.0, 0.0]
    left, right = LatencySketch(), LatencySketch()
    for v in values[:3]:
        left.add(v)
    for v in values[3:]:
        right.add(v)

    ab = left.copy()
    ab.merge(right)
    ba = right.copy()
    ba.merge(left)
    assert ab.bins == ba.bins
    assert ab.count == len(values)
    assert ab.quantile(0.5) == ba.quantile(0.5)


def test_sketch_quantile_is_within_relative_error():
    sketch = LatencySketch()
    for v in range(1, 1001):
        sketch.add(float(v))
    assert sketch.quantile(0.95) == pytest.approx(950.0, rel=0.02)
    assert LatencySketch.from_dict(sketch.to_dict()).bins == sketch.bins


def test_bucket_invariant_violation():
    bucket = MetricBucket("exp-1", Variant.A, T0, 300, request_count=1, success_count=1, error_count=1)
    with pytest.raises(InvariantViolation):
        bucket.check_invariants()


def test_rollup_preserves_totals():
    buckets = []
    for i in range(4):
        bucket = MetricBucket("exp-1", Variant.A, T0 + 300 * i, 300, closed=True)
        bucket.add(_outcome(success=i % 2 == 0))
        buckets.append(bucket)

    rolled = rollup(buckets, 600)
    assert [b.window_start for b in rolled] == [T0, T0 + 600]
    assert sum(b.request_count for b in rolled) == 4
    assert sum(b.success_count for b in rolled) == 2

    buckets[0].closed = False
    with pytest.raises(InvariantViolation):
        rollup(buckets, 600)


def test_compact_keeps_aggregate(aggregator, clock):
    for i in range(12):
        aggregator.record("exp-1", Variant.A, T0 + 300 * i + 1, _outcome())
        clock.advance(300)
    clock.advance(100)
    before = aggregator.get_aggregate("exp-1", Variant.A)

    compacted = aggregator.compact("exp-1", older_than=clock(), width=3600)
    after = aggregator.get_aggregate("exp-1", Variant.A)
    assert compacted > 0
    assert after.request_count == before.request_count == 12
    assert after.bucket_count < before.bucket_count
