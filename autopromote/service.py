"""Keyed registry of experiments and the engine's external operations.

Each experiment is an independent unit: its own lock, config and machine
state, addressed by id. Allocation reads the current (immutable) config
reference without locking, so a slow or stalled evaluation never holds up
routing.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from . import allocator
from .aggregator import MetricsAggregator, Outcome
from .config import COMPACT_AFTER_SECONDS, COMPACT_WINDOW_SECONDS, EVALUATION_TIMEOUT_SECONDS
from .errors import (
    ExperimentNotFoundError,
    ExperimentStateError,
    InvariantViolation,
    SplitDeliveryError,
    StorageUnavailableError,
)
from .experiment import (
    ExperimentConfig,
    ExperimentStatus,
    SplitStrategy,
    Variant,
    apply_patch,
    validate_config,
)
from .ingest import iter_outcomes
from .promotion import (
    Evaluation,
    MachineState,
    PromotionDecision,
    PromotionStateMachine,
    evaluate_gates,
    safety_violation,
)
from .split_client import SplitPublisher
from .store import ExperimentStore

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    config: ExperimentConfig
    state: MachineState
    lock: threading.RLock = field(default_factory=threading.RLock)
    version: int = 0
    # Runtime view for status queries; rebuilt after every cycle
    last_decision: Optional[PromotionDecision] = None
    last_evaluation: Optional[Evaluation] = None
    last_evaluated_at: Optional[float] = None
    stalled_since: Optional[float] = None
    last_error: Optional[str] = None


class ExperimentService:
    def __init__(
        self,
        store: ExperimentStore,
        aggregator: Optional[MetricsAggregator] = None,
        publisher: Optional[SplitPublisher] = None,
        clock: Callable[[], float] = time.time,
        evaluation_timeout: float = EVALUATION_TIMEOUT_SECONDS,
        compact_after: float = COMPACT_AFTER_SECONDS,
        compact_window: float = COMPACT_WINDOW_SECONDS,
    ):
        self.store = store
        self.clock = clock
        self.aggregator = aggregator or MetricsAggregator(store, clock=clock)
        self.publisher = publisher or SplitPublisher()
        self.evaluation_timeout = evaluation_timeout
        self.compact_after = compact_after
        self.compact_window = compact_window
        self._entries: Dict[str, _Entry] = {}
        self._registry_lock = threading.Lock()

    # --- registry ------------------------------------------------------------

    def load(self) -> int:
        """Restore experiments and recent event ids from the store."""
        restored = self.store.list_experiments()
        with self._registry_lock:
            for config, state in restored:
                self._entries[config.id] = _Entry(config=config, state=state)
        self.aggregator.warm_dedup()
        logger.info("Restored %d experiments", len(restored))
        return len(restored)

    def _get(self, experiment_id: str) -> _Entry:
        entry = self._entries.get(experiment_id)
        if entry is None:
            raise ExperimentNotFoundError(experiment_id)
        return entry

    def get_config(self, experiment_id: str) -> ExperimentConfig:
        return self._get(experiment_id).config

    def list_experiments(self) -> List[ExperimentConfig]:
        return [entry.config for entry in list(self._entries.values())]

    def create_experiment(self, config: ExperimentConfig, actor: Optional[str] = None) -> ExperimentConfig:
        validate_config(config)
        if config.status != ExperimentStatus.DRAFT:
            raise ExperimentStateError(config.id, "new experiments start as draft")
        with self._registry_lock:
            if config.id in self._entries:
                existing = self._entries[config.id].config
                if existing == config:
                    return existing
                raise ExperimentStateError(config.id, "an experiment with this id already exists")
            state = MachineState()
            self.store.save_experiment(config, state)
            self._entries[config.id] = _Entry(config=config, state=state)
        self._audit(config.id, "create", actor, {"name": config.name})
        logger.info("Created experiment %s (%s)", config.id, config.name)
        return config

    # --- traffic and ingestion -----------------------------------------------

    def assign(
        self,
        experiment_id: str,
        subject_key: str,
        attributes: Optional[Mapping[str, str]] = None,
    ) -> Optional[Variant]:
        return allocator.assign(experiment_id, subject_key, self._get(experiment_id).config, attributes)

    def record(
        self,
        experiment_id: str,
        variant: Variant,
        timestamp: Optional[float],
        outcome: Outcome,
        event_id: Optional[str] = None,
    ) -> bool:
        entry = self._get(experiment_id)
        if entry.config.status == ExperimentStatus.DRAFT:
            raise ExperimentStateError(experiment_id, "draft experiments do not accept events", "draft")
        when = self.clock() if timestamp is None else timestamp
        return self.aggregator.record(experiment_id, variant, when, outcome, event_id)

    def import_outcomes(self, experiment_id: str, df) -> Tuple[int, int]:
        """Record every row of a load_outcomes_csv frame. Returns (recorded, skipped)."""
        recorded = skipped = 0
        for variant, timestamp, outcome, event_id in iter_outcomes(df):
            if self.record(experiment_id, variant, timestamp, outcome, event_id):
                recorded += 1
            else:
                skipped += 1
        logger.info("Imported %d outcomes into %s (%d skipped)", recorded, experiment_id, skipped)
        return recorded, skipped

    # --- evaluation ----------------------------------------------------------

    def evaluate(self, experiment_id: str) -> Optional[PromotionDecision]:
        """Run one evaluation cycle. Returns None when the cycle was skipped."""
        entry = self._get(experiment_id)
        deadline = time.monotonic() + self.evaluation_timeout
        with entry.lock:
            config, state, version = entry.config, entry.state.copy(), entry.version
        if not PromotionStateMachine(config, state).evaluable:
            return None

        now = self.clock()
        try:
            since = state.aggregation_since
            aggregate_a = self.aggregator.get_aggregate(experiment_id, Variant.A, since)
            aggregate_b = self.aggregator.get_aggregate(experiment_id, Variant.B, since)
            # Recent traffic only, so a late spike is not diluted by a healthy history
            safety_since = max(filter(None, (since, state.safety_since)), default=None)
            live_b = self.aggregator.get_aggregate(
                experiment_id, Variant.B, safety_since, include_provisional=True
            )
            stage_samples_b = None
            if config.traffic_split.strategy == SplitStrategy.CANARY:
                stage_since = max(filter(None, (since, state.stage_started_at)), default=None)
                stage_samples_b = self.aggregator.get_aggregate(
                    experiment_id, Variant.B, stage_since
                ).request_count
        except StorageUnavailableError as exc:
            self._mark_stalled(entry, now, f"storage unavailable: {exc}")
            return None
        except InvariantViolation as exc:
            return self._halt(entry, str(exc), now)

        if time.monotonic() > deadline:
            self._mark_stalled(entry, now, "evaluation timed out")
            return None

        try:
            evaluation = evaluate_gates(config, aggregate_a, aggregate_b)
        except InvariantViolation as exc:
            return self._halt(entry, str(exc), now)
        safety = safety_violation(live_b, config.auto_promote.max_error_rate)

        with entry.lock:
            if entry.version != version:
                logger.info("Experiment %s changed during evaluation; discarding cycle", experiment_id)
                return None
            machine = PromotionStateMachine(entry.config, entry.state.copy())
            try:
                decision = machine.step(evaluation, now, safety, stage_samples_b)
            except InvariantViolation as exc:
                return self._halt(entry, str(exc), now)
            if not self._commit(entry, machine, decision, now):
                return None
            entry.last_evaluation = evaluation
            entry.last_evaluated_at = now
            entry.stalled_since = None
            entry.last_error = None

        if machine.state.pending_split:
            self._deliver_split(experiment_id)
        return decision

    def run_cycle(self) -> Dict[str, Optional[PromotionDecision]]:
        """Evaluate every running experiment and retry undelivered splits."""
        try:
            self.aggregator.close_expired()
        except StorageUnavailableError as exc:
            logger.error("Could not close buckets: %s", exc)
        results = {}
        for experiment_id in list(self._entries):
            results[experiment_id] = self.evaluate(experiment_id)
        self.flush_pending_splits()
        self.compact_history()
        return results

    def compact_history(self, now: Optional[float] = None) -> int:
        """Roll old closed buckets of every experiment into coarser windows."""
        now = self.clock() if now is None else now
        older_than = now - self.compact_after
        compacted = 0
        for experiment_id in list(self._entries):
            try:
                compacted += self.aggregator.compact(experiment_id, older_than, self.compact_window)
            except StorageUnavailableError as exc:
                logger.error("Compaction of %s skipped: %s", experiment_id, exc)
        return compacted

    def _commit(self, entry: _Entry, machine: PromotionStateMachine,
                decision: Optional[PromotionDecision], now: float) -> bool:
        """Persist then publish the new config/state. Caller holds entry.lock."""
        try:
            self.store.save_experiment(machine.config, machine.state)
            if decision is not None:
                self.store.save_decision(machine.config.id, decision)
        except StorageUnavailableError as exc:
            self._mark_stalled(entry, now, f"storage unavailable: {exc}")
            return False
        entry.config = machine.config
        entry.state = machine.state
        entry.version += 1
        if decision is not None:
            entry.last_decision = decision
        return True

    def _mark_stalled(self, entry: _Entry, now: float, reason: str) -> None:
        if entry.stalled_since is None:
            entry.stalled_since = now
        entry.last_error = reason
        logger.error("Evaluation of %s skipped: %s", entry.config.id, reason)

    def _halt(self, entry: _Entry, reason: str, now: float) -> Optional[PromotionDecision]:
        with entry.lock:
            machine = PromotionStateMachine(entry.config, entry.state.copy())
            if machine.state.halted:
                return None
            decision = machine.halt(reason, now)
            if not self._commit(entry, machine, decision, now):
                return None
            return decision

    # --- promotion effect ----------------------------------------------------

    def _deliver_split(self, experiment_id: str) -> bool:
        entry = self._get(experiment_id)
        instruction = entry.state.pending_split
        if not instruction:
            return True
        try:
            self.publisher.deliver(instruction)
        except SplitDeliveryError as exc:
            logger.error("Apply-split for %s still pending: %s", experiment_id, exc)
            return False
        with entry.lock:
            if entry.state.pending_split != instruction:
                return True
            machine = PromotionStateMachine(entry.config, entry.state.copy())
            machine.state.pending_split = None
            return self._commit(entry, machine, None, self.clock())

    def flush_pending_splits(self) -> int:
        delivered = 0
        for experiment_id, entry in list(self._entries.items()):
            if entry.state.pending_split and self._deliver_split(experiment_id):
                delivered += 1
        return delivered

    # --- administrative commands ---------------------------------------------

    def _command(self, experiment_id: str, command: str, actor: Optional[str],
                 payload: Optional[dict], apply: Callable[[PromotionStateMachine, float], Any]) -> Any:
        entry = self._get(experiment_id)
        now = self.clock()
        with entry.lock:
            machine = PromotionStateMachine(entry.config, entry.state.copy())
            result = apply(machine, now)
            decision = result if isinstance(result, PromotionDecision) else None
            changed = machine.config != entry.config or machine.state != entry.state
            if changed or decision is not None:
                if not self._commit(entry, machine, decision, now):
                    raise StorageUnavailableError(f"could not persist {command} for {experiment_id}")
        self._audit(experiment_id, command, actor, payload)
        logger.info("Experiment %s: %s by %s (%s)", experiment_id, command, actor or "unknown",
                    "applied" if changed else "no change")
        if entry.state.pending_split:
            self._deliver_split(experiment_id)
        return result

    def start(self, experiment_id: str, actor: Optional[str] = None) -> ExperimentConfig:
        self._command(experiment_id, "start", actor, None, lambda m, now: m.start(now))
        return self.get_config(experiment_id)

    def pause(self, experiment_id: str, actor: Optional[str] = None) -> ExperimentConfig:
        self._command(experiment_id, "pause", actor, None, lambda m, now: m.pause())
        return self.get_config(experiment_id)

    def resume(self, experiment_id: str, actor: Optional[str] = None) -> ExperimentConfig:
        self._command(experiment_id, "resume", actor, None, lambda m, now: m.resume(now))
        return self.get_config(experiment_id)

    def reset(self, experiment_id: str, actor: Optional[str] = None) -> ExperimentConfig:
        self._command(experiment_id, "reset", actor, None, lambda m, now: m.reset(now))
        return self.get_config(experiment_id)

    def force_promote(self, experiment_id: str, variant: Variant,
                      actor: Optional[str] = None) -> PromotionDecision:
        variant = Variant(variant)
        return self._command(experiment_id, "force_promote", actor, {"variant": variant.value},
                             lambda m, now: m.force(variant, now))

    def update_config(self, experiment_id: str, patch: Dict[str, Any],
                      actor: Optional[str] = None) -> ExperimentConfig:
        def apply(machine: PromotionStateMachine, now: float) -> None:
            if machine.is_terminal:
                raise ExperimentStateError(experiment_id, "finished experiments cannot be changed",
                                           machine.state.state.value)
            before = machine.config.traffic_split.current_stage
            machine.config = apply_patch(machine.config, patch)
            if machine.config.traffic_split.current_stage != before:
                machine.state.stage_started_at = now

        self._command(experiment_id, "update_config", actor, patch, apply)
        return self.get_config(experiment_id)

    def _audit(self, experiment_id: str, command: str, actor: Optional[str], payload: Optional[dict]) -> None:
        try:
            self.store.append_audit(experiment_id, command, actor, payload, self.clock())
        except StorageUnavailableError as exc:
            logger.error("Audit entry for %s/%s lost: %s", experiment_id, command, exc)

    # --- queries -------------------------------------------------------------

    def get_status(self, experiment_id: str) -> Dict[str, Any]:
        """Read-only snapshot for dashboards; never triggers a cycle."""
        entry = self._get(experiment_id)
        with entry.lock:
            config, state = entry.config, entry.state.copy()
            evaluation, decision = entry.last_evaluation, entry.last_decision
            last_evaluated_at, stalled_since, last_error = (
                entry.last_evaluated_at, entry.stalled_since, entry.last_error
            )

        scores = None
        significance = None
        advisory = None
        if evaluation is not None:
            scores = {
                "variant_a": evaluation.score_a.score,
                "variant_b": evaluation.score_b.score,
                "winner": evaluation.winner.value,
                "criteria": [
                    {
                        "criterion": c.criterion.label,
                        "actual": c.actual,
                        "normalized": c.normalized,
                        "weight": c.criterion.weight,
                        "met": c.met,
                    }
                    for c in evaluation.score_b.criteria
                ],
            }
            if evaluation.significance is not None:
                significance = evaluation.significance.to_dict()
                if evaluation.significance.underpowered:
                    advisory = "keep running: statistical power below 80%"
            else:
                advisory = "keep running: insufficient data"

        split = config.traffic_split
        return {
            "experiment_id": config.id,
            "name": config.name,
            "status": config.status.value,
            "state": state.state.value,
            "winner": config.winner.value if config.winner else None,
            "halted": state.halted,
            "halt_reason": state.halt_reason,
            "traffic_split": {
                "strategy": split.strategy.value,
                "variant_a_percentage": split.effective_a_percentage(),
                "variant_b_percentage": split.effective_b_percentage(),
                "current_stage": split.current_stage if split.strategy == SplitStrategy.CANARY else None,
            },
            "criteria_first_met_at": state.criteria_first_met_at,
            "scores": scores,
            "significance": significance,
            "advisory": advisory,
            "last_decision": decision.to_dict() if decision else None,
            "evaluation": {
                "last_evaluated_at": last_evaluated_at,
                "stalled_since": stalled_since,
                "last_error": last_error,
            },
            "pending_split": state.pending_split,
            "ingestion": {
                "late_events": self.aggregator.late_events.get(experiment_id, 0),
                "duplicate_events": self.aggregator.duplicate_events.get(experiment_id, 0),
            },
        }

    def list_decisions(self, experiment_id: str, limit: int = 100) -> List[PromotionDecision]:
        self._get(experiment_id)
        return self.store.list_decisions(experiment_id, limit)

    def list_audit(self, experiment_id: str) -> List[dict]:
        self._get(experiment_id)
        return self.store.list_audit(experiment_id)
