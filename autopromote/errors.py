"""Error taxonomy for the auto-promotion engine."""

from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(EngineError):
    """Malformed experiment configuration.

    Always raised synchronously to whoever submitted the config, carrying the
    offending field so it can be reported back as-is.
    """

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class InsufficientDataError(EngineError):
    """Not enough samples to compute significance (soft, never a failure)."""


class StorageUnavailableError(EngineError):
    """Buckets or experiment state could not be read or written."""


class InvariantViolation(EngineError):
    """Internal state broke an invariant. Halts automatic transitions."""


class ExperimentNotFoundError(EngineError):
    def __init__(self, experiment_id: str):
        super().__init__(f"Experiment {experiment_id} not found")
        self.experiment_id = experiment_id


class ExperimentStateError(EngineError):
    """Command not valid for the experiment's current state."""

    def __init__(self, experiment_id: str, message: str, state: Optional[str] = None):
        super().__init__(f"Experiment {experiment_id}: {message}")
        self.experiment_id = experiment_id
        self.state = state


class SplitDeliveryError(EngineError):
    """Apply-split instruction was not acknowledged by the configuration store."""
