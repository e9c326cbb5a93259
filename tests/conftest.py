import pytest

from autopromote.aggregator import MetricsAggregator, Outcome
from autopromote.db import make_engine, make_session_factory
from autopromote.experiment import (
    AutoPromoteConfig,
    Direction,
    ExperimentConfig,
    Metric,
    SuccessCriterion,
    TrafficSplit,
    Variant,
)
from autopromote.service import ExperimentService
from autopromote.split_client import SplitPublisher
from autopromote.store import ExperimentStore

# Start of a 5-minute window, so test events land in predictable buckets
T0 = 1_000_200.0


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    # In-memory SQLite shared through a StaticPool
    return make_engine("sqlite://")


@pytest.fixture
def store(engine):
    store = ExperimentStore(make_session_factory(engine))
    store.create_tables(engine)
    return store


@pytest.fixture
def aggregator(store, clock):
    return MetricsAggregator(store, bucket_width=300, allowed_lateness=30, max_delivery_delay=600, clock=clock)


@pytest.fixture
def service(store, aggregator, clock):
    return ExperimentService(store, aggregator=aggregator, publisher=SplitPublisher(base_url=""), clock=clock)


def make_config(experiment_id="exp-1", **overrides) -> ExperimentConfig:
    values = dict(
        id=experiment_id,
        name="Checkout model v2",
        variant_a_ref="deploy_abc",
        variant_b_ref="deploy_def",
        traffic_split=TrafficSplit(variant_b_percentage=50.0),
        success_criteria=(
            SuccessCriterion(Metric.SUCCESS_RATE, Direction.HIGHER_IS_BETTER, threshold=0.90),
        ),
        auto_promote=AutoPromoteConfig(
            min_samples_per_variant=1000,
            promotion_delay_seconds=3600.0,
            max_error_rate=0.10,
        ),
        created_at=T0,
    )
    values.update(overrides)
    return ExperimentConfig(**values)


def feed(target, experiment_id, variant, total, successes, timestamp, latency_ms=100.0, cost_usd=0.0):
    """Record `total` outcomes of which the first `successes` succeed."""
    for i in range(total):
        target.record(
            experiment_id,
            variant,
            timestamp,
            Outcome(success=i < successes, latency_ms=latency_ms, cost_usd=cost_usd),
        )
