"""
Engine error taxonomy.

Training errors are fatal to one run. Serving errors are recovered per
algorithm and per query; only NoPredictionAvailable reaches the caller.
"""

from typing import Optional


class EngineError(Exception):
    """Base class for every error raised by the engine."""


class DataUnavailable(EngineError):
    """The data source could not be reached or its content is malformed."""


class InvalidTrainingData(EngineError):
    """The preparator rejected the training data."""


class TrainFailure(EngineError):
    """An algorithm could not produce a model."""

    def __init__(self, cause: str, algorithm: Optional[str] = None):
        self.cause = cause
        self.algorithm = algorithm
        prefix = f"[{algorithm}] " if algorithm else ""
        super().__init__(f"{prefix}training failed: {cause}")


class PredictionFailure(EngineError):
    """An algorithm could not answer one query."""

    def __init__(self, cause: str, algorithm: Optional[str] = None):
        self.cause = cause
        self.algorithm = algorithm
        prefix = f"[{algorithm}] " if algorithm else ""
        super().__init__(f"{prefix}prediction failed: {cause}")


class NoPredictionAvailable(EngineError):
    """Every algorithm failed for a query."""


class DeployInconsistency(EngineError):
    """An instance that is not deployable was asked to become current."""


class ModelStoreError(EngineError):
    """A store record is missing, unreadable or written with an unknown schema."""


class EngineNotDeployed(EngineError):
    """The serving runtime has no current instance loaded."""
