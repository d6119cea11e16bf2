"""Exceptions raised by the estimators and the estimator service."""


class EstimatorError(Exception):
    """Base class for estimator failures."""


class ModelNotTrainedError(EstimatorError, RuntimeError):
    """Raised when predict() is called before train() completed."""

    def __init__(self, algorithm: str = "model"):
        self.algorithm = algorithm
        super().__init__(f"{algorithm} must be trained before making predictions")


class TrainingCancelledError(EstimatorError):
    """Raised inside train() when its cancel event is set.

    The estimator keeps whatever state it had before the cancelled run.
    """
