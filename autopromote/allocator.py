"""Deterministic, sticky traffic assignment.

Assignment is a pure function of (experiment id, subject key, config): no
random state and no locks, so routing never waits on ingestion or evaluation.
"""

import hashlib
from typing import Mapping, Optional

from .experiment import (
    ExperimentConfig,
    ExperimentStatus,
    SplitStrategy,
    Variant,
    validate_traffic_split,
)

_HASH_SPACE = float(1 << 64)


def hash_unit(experiment_id: str, subject_key: str) -> float:
    """Map (experiment_id, subject_key) uniformly onto [0, 1)."""
    digest = hashlib.sha256(f"{experiment_id}:{subject_key}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") / _HASH_SPACE


def assign(
    experiment_id: str,
    subject_key: str,
    config: ExperimentConfig,
    attributes: Optional[Mapping[str, str]] = None,
) -> Optional[Variant]:
    """
    Return the variant `subject_key` should be served, or None for no assignment.

    None is returned for draft experiments and for subjects that fall into the
    holdout (when variant_a_percentage + variant_b_percentage < 100). Raises
    ConfigurationError for a malformed split instead of guessing.
    """
    if config.status == ExperimentStatus.DRAFT:
        return None
    if config.status == ExperimentStatus.COMPLETED:
        return config.winner
    if config.status == ExperimentStatus.PAUSED:
        # B is suspect while paused; keep everyone on the incumbent.
        return Variant.A

    split = config.traffic_split
    validate_traffic_split(split)

    if split.strategy in (SplitStrategy.GEOGRAPHIC, SplitStrategy.SEGMENT) and attributes:
        value = attributes.get(split.attribute_name())
        if value is not None and value in split.target_values:
            return Variant.B

    point = hash_unit(experiment_id, subject_key) * 100.0
    b_percentage = split.effective_b_percentage()
    if point < b_percentage:
        return Variant.B
    if split.strategy == SplitStrategy.CANARY or split.variant_a_percentage is None:
        return Variant.A
    if point < b_percentage + split.variant_a_percentage:
        return Variant.A
    return None
