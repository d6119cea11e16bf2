"""
Estimator Service

Owns one estimator per algorithm for a single DatasetProvider and produces the
caller-facing result envelope:

    {price, confidence, algorithm, processing_time_ms}

Training can run synchronously (train) or on a worker thread
(train_in_background) with cooperative cancellation. Estimators are created
on first use; predicting with an algorithm that has not finished training
raises ModelNotTrainedError.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .config import DEFAULT_CONFIG, model_params
from .data_loader import DatasetProvider, MarketStatistics, compute_market_statistics
from .evaluation import evaluate_estimator
from .exceptions import TrainingCancelledError
from .features import PropertyQuery
from .models import (
    BaseEstimator,
    DecisionTreeEstimator,
    KNNEstimator,
    LinearRegressionEstimator,
    RandomForestEstimator,
)
from .neural_network import NeuralNetworkEstimator, ProgressCallback

logger = logging.getLogger(__name__)


class Algorithm(str, Enum):
    LINEAR_REGRESSION = "linear_regression"
    KNN = "knn"
    DECISION_TREE = "decision_tree"
    RANDOM_FOREST = "random_forest"
    NEURAL_NETWORK = "neural_network"

    @classmethod
    def parse(cls, value: Union[str, "Algorithm"]) -> "Algorithm":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower().replace("-", "_"))
        except ValueError:
            raise ValueError(f"Unknown algorithm: {value}") from None

    @property
    def label(self) -> str:
        return ESTIMATOR_CLASSES[self].name


ESTIMATOR_CLASSES = {
    Algorithm.LINEAR_REGRESSION: LinearRegressionEstimator,
    Algorithm.KNN: KNNEstimator,
    Algorithm.DECISION_TREE: DecisionTreeEstimator,
    Algorithm.RANDOM_FOREST: RandomForestEstimator,
    Algorithm.NEURAL_NETWORK: NeuralNetworkEstimator,
}


@dataclass(frozen=True)
class PredictionResult:
    price: float
    confidence: float
    algorithm: str
    processing_time_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ComparisonSummary:
    results: Tuple[PredictionResult, ...]
    average_price: float
    average_processing_time_ms: float
    deviations_pct: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_results(cls, results: Sequence[PredictionResult]) -> "ComparisonSummary":
        if not results:
            raise ValueError("Cannot summarize an empty comparison")
        average_price = float(np.mean([result.price for result in results]))
        average_time = float(np.mean([result.processing_time_ms for result in results]))
        deviations = {
            result.algorithm: (result.price - average_price) / average_price * 100
            for result in results
        }
        return cls(tuple(results), average_price, average_time, deviations)


class TrainingJob:
    """Handle on a background training run."""

    def __init__(self, algorithm: Algorithm, future: Future, cancel_event: threading.Event):
        self.algorithm = algorithm
        self.future = future
        self.cancel_event = cancel_event

    def cancel(self) -> None:
        self.cancel_event.set()
        self.future.cancel()

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> BaseEstimator:
        return self.future.result(timeout=timeout)

    @property
    def status(self) -> str:
        if self.future.cancelled():
            return "cancelled"
        if not self.future.done():
            return "cancelling" if self.cancel_event.is_set() else "running"
        error = self.future.exception()
        if isinstance(error, TrainingCancelledError):
            return "cancelled"
        if error is not None:
            return "failed"
        return "completed"


class EstimatorService:
    """
    Args:
        provider: Dataset source shared by every estimator
        config: Nested configuration (see config.DEFAULT_CONFIG)
        rng: Generator used for the caller-facing confidence value
    """

    def __init__(
        self,
        provider: DatasetProvider,
        config: Optional[Mapping[str, Any]] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.provider = provider
        self.config = dict(config or DEFAULT_CONFIG)
        service_cfg = self.config.get("service", {})
        self.confidence_range = tuple(service_cfg.get("confidence_range", (0.7, 1.0)))
        self.rng = rng if rng is not None else np.random.default_rng()
        self._executor = ThreadPoolExecutor(max_workers=service_cfg.get("max_workers", 4),
                                            thread_name_prefix="estimator-training")
        self._estimators: Dict[Algorithm, BaseEstimator] = {}
        self._jobs: Dict[Algorithm, TrainingJob] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs) -> "EstimatorService":
        return cls(DatasetProvider.from_config(config), config=config, **kwargs)

    # ---------- estimators ----------

    def estimator(self, algorithm: Union[str, Algorithm]) -> BaseEstimator:
        """The estimator for `algorithm`, created (untrained) on first use."""
        algorithm = Algorithm.parse(algorithm)
        with self._lock:
            if algorithm not in self._estimators:
                params = model_params(self.config, algorithm.value)
                self._estimators[algorithm] = ESTIMATOR_CLASSES[algorithm](self.provider, **params)
            return self._estimators[algorithm]

    def is_trained(self, algorithm: Union[str, Algorithm]) -> bool:
        return self.estimator(algorithm).is_trained

    def status(self) -> Dict[str, Dict[str, Any]]:
        report = {}
        for algorithm in Algorithm:
            job = self._jobs.get(algorithm)
            estimator = self._estimators.get(algorithm)
            report[algorithm.value] = {
                "label": algorithm.label,
                "trained": bool(estimator is not None and estimator.is_trained),
                "job": job.status if job is not None else None,
            }
        return report

    # ---------- training ----------

    def train(
        self,
        algorithm: Union[str, Algorithm],
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BaseEstimator:
        """Train synchronously; returns the trained estimator."""
        algorithm = Algorithm.parse(algorithm)
        estimator = self.estimator(algorithm)
        started = time.perf_counter()
        logger.info("Training %s", algorithm.label)
        if isinstance(estimator, NeuralNetworkEstimator):
            estimator.train(cancel_event=cancel_event, on_progress=on_progress)
        else:
            estimator.train(cancel_event=cancel_event)
        logger.info("%s ready in %.1fs", algorithm.label, time.perf_counter() - started)
        return estimator

    def train_in_background(
        self,
        algorithm: Union[str, Algorithm],
        on_progress: Optional[ProgressCallback] = None,
    ) -> TrainingJob:
        """
        Submit training to the worker pool.

        A job already running for the same algorithm is returned as-is.
        """
        algorithm = Algorithm.parse(algorithm)
        with self._lock:
            job = self._jobs.get(algorithm)
            if job is not None and not job.done():
                return job
            cancel_event = threading.Event()
            future = self._executor.submit(self._run_job, algorithm, cancel_event, on_progress)
            job = TrainingJob(algorithm, future, cancel_event)
            self._jobs[algorithm] = job
        return job

    def _run_job(self, algorithm, cancel_event, on_progress):
        try:
            return self.train(algorithm, cancel_event=cancel_event, on_progress=on_progress)
        except TrainingCancelledError:
            logger.info("Training of %s cancelled", algorithm.label)
            raise
        except Exception:
            logger.exception("Training of %s failed", algorithm.label)
            raise

    def job(self, algorithm: Union[str, Algorithm]) -> Optional[TrainingJob]:
        return self._jobs.get(Algorithm.parse(algorithm))

    def cancel(self, algorithm: Union[str, Algorithm]) -> bool:
        job = self.job(algorithm)
        if job is None or job.done():
            return False
        job.cancel()
        return True

    # ---------- prediction ----------

    def _confidence(self) -> float:
        low, high = self.confidence_range
        with self._lock:
            return float(self.rng.uniform(low, high))

    def predict(self, algorithm: Union[str, Algorithm],
                query: Union[PropertyQuery, Mapping[str, Any]]) -> PredictionResult:
        """
        Predict with one algorithm and wrap the price in the result envelope.

        Raises:
            ModelNotTrainedError: if the algorithm has not finished training
        """
        algorithm = Algorithm.parse(algorithm)
        estimator = self.estimator(algorithm)

        started = time.perf_counter()
        price = estimator.predict(query)
        elapsed_ms = (time.perf_counter() - started) * 1000

        return PredictionResult(
            price=price,
            confidence=self._confidence(),
            algorithm=algorithm.label,
            processing_time_ms=elapsed_ms,
        )

    def compare_all(
        self,
        query: Union[PropertyQuery, Mapping[str, Any]],
        algorithms: Optional[Iterable[Union[str, Algorithm]]] = None,
        train_missing: bool = True,
    ) -> ComparisonSummary:
        """
        Run every algorithm on the same query.

        Untrained algorithms are trained concurrently first when train_missing
        is set; otherwise they raise ModelNotTrainedError.
        """
        selected: List[Algorithm] = [Algorithm.parse(a) for a in (algorithms or list(Algorithm))]

        if train_missing:
            jobs = [self.train_in_background(algorithm)
                    for algorithm in selected if not self.is_trained(algorithm)]
            for job in jobs:
                job.result()

        results = [self.predict(algorithm, query) for algorithm in selected]
        return ComparisonSummary.from_results(results)

    # ---------- dataset ----------

    def market_statistics(self) -> MarketStatistics:
        return compute_market_statistics(self.provider.load().properties)

    def evaluate(self, algorithm: Union[str, Algorithm]) -> Dict[str, float]:
        """In-sample metrics of a trained estimator over the loaded dataset."""
        estimator = self.estimator(algorithm)
        return evaluate_estimator(estimator, self.provider.load().properties)

    def shutdown(self) -> None:
        for job in list(self._jobs.values()):
            if not job.done():
                job.cancel()
        self._executor.shutdown(wait=False)
