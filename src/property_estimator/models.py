"""
Price Estimators

This module handles:
1. A common train/predict contract (predict before train raises
   ModelNotTrainedError)
2. Linear regression trained by batch gradient descent, corrected by empirical
   location/type multipliers
3. Distance-weighted k-nearest neighbours
4. Variance-reduction decision tree
5. Random forest averaging independently trained trees

Key Technical Decisions:
- Estimators receive a DatasetProvider instead of reaching for a global loader
- Learned state is built in locals and published as one frozen object only
  after training completes, so a cancelled run never exposes partial weights
- Only Linear Regression rounds to 1,000 and floors at 50,000; k-NN and the
  forest round to the nearest integer, the tree returns its raw leaf mean
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .data_loader import CONDITION_PRICE_MULTIPLIERS, DatasetProvider, PropertyRecord, records_to_frame
from .exceptions import ModelNotTrainedError, TrainingCancelledError
from .features import (
    TREE_FEATURES,
    Location,
    PropertyQuery,
    PropertyType,
    current_year,
    feature_matrix,
    finalize_price,
    knn_features,
    linear_features,
    round_half_up,
)

logger = logging.getLogger(__name__)

QueryLike = Union[PropertyQuery, Mapping[str, Any]]


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise TrainingCancelledError("Training cancelled")


def _as_query(query: QueryLike) -> PropertyQuery:
    if isinstance(query, PropertyQuery):
        return query
    return PropertyQuery.from_dict(query)


class BaseEstimator:
    """
    Shared lifecycle: Untrained -> Trained.

    train() loads the dataset from the provider and calls fit(); calling it
    again recomputes everything from scratch.
    """

    name = "Estimator"

    def __init__(self, provider: Optional[DatasetProvider] = None):
        self.provider = provider
        self.trained = False

    @property
    def is_trained(self) -> bool:
        return self.trained

    def train(self, cancel_event: Optional[threading.Event] = None) -> "BaseEstimator":
        if self.provider is None:
            raise ValueError(f"{self.name} has no dataset provider to train from")
        dataset = self.provider.load()
        return self.fit(dataset.properties, cancel_event=cancel_event)

    def fit(self, records: Sequence[PropertyRecord],
            cancel_event: Optional[threading.Event] = None) -> "BaseEstimator":
        raise NotImplementedError

    def predict(self, query: QueryLike) -> float:
        if not self.trained:
            raise ModelNotTrainedError(self.name)
        return self._predict(_as_query(query))

    def _predict(self, query: PropertyQuery) -> float:
        raise NotImplementedError


# ==================== LINEAR REGRESSION ====================

FALLBACK_LOCATION_MULTIPLIERS: Dict[Location, float] = {
    Location.BRUSSELS: 1.4,
    Location.ANTWERP: 1.2,
    Location.BRUGES: 1.3,
    Location.LEUVEN: 1.25,
    Location.GHENT: 1.1,
    Location.LIEGE: 0.9,
    Location.NAMUR: 1.0,
    Location.CHARLEROI: 0.8,
    Location.MONS: 0.85,
    Location.AALST: 0.95,
    Location.MECHELEN: 1.05,
    Location.LA_LOUVIERE: 0.8,
    Location.KORTRIJK: 0.9,
    Location.HASSELT: 0.95,
}

FALLBACK_TYPE_MULTIPLIERS: Dict[PropertyType, float] = {
    PropertyType.STUDIO: 0.6,
    PropertyType.APARTMENT: 0.9,
    PropertyType.HOUSE: 1.0,
    PropertyType.TOWNHOUSE: 1.1,
    PropertyType.VILLA: 1.5,
}


def gradient_descent(
    X: np.ndarray,
    y: np.ndarray,
    learning_rate: float,
    iterations: int,
    cancel_event: Optional[threading.Event] = None,
    log_every: int = 100,
) -> Tuple[np.ndarray, float, float]:
    """
    Least-squares batch gradient descent from zero weights.

    Each iteration applies w -= lr * sum(err * x) / n (same for the bias).
    A step that would increase the MSE (or overflow) is discarded and the
    learning rate halved before retrying; on raw features the initial rate
    otherwise diverges.

    Args:
        X: Feature matrix (n, d)
        y: Target prices (n,)
        learning_rate: Initial step size
        iterations: Number of accepted steps
        cancel_event: Checked once per iteration
        log_every: Log the MSE every N iterations

    Returns:
        coef, intercept, final learning rate
    """
    n, d = X.shape
    coef = np.zeros(d)
    intercept = 0.0
    errors = -y.astype(float)
    mse = float(np.mean(errors ** 2))

    for iteration in range(iterations):
        _check_cancelled(cancel_event)
        if iteration % log_every == 0:
            logger.info("Iteration %d, MSE: %.2f (lr=%.3g)", iteration, mse, learning_rate)

        coef_grad = X.T @ errors / n
        bias_grad = float(errors.mean())

        while True:
            candidate_coef = coef - learning_rate * coef_grad
            candidate_bias = intercept - learning_rate * bias_grad
            with np.errstate(over='ignore', invalid='ignore'):
                candidate_errors = X @ candidate_coef + candidate_bias - y
                candidate_mse = float(np.mean(candidate_errors ** 2))
            if np.isfinite(candidate_mse) and candidate_mse <= mse:
                break
            learning_rate /= 2

        coef, intercept = candidate_coef, candidate_bias
        errors, mse = candidate_errors, candidate_mse

    return coef, intercept, learning_rate


DEFAULT_COEF = np.array([2800.0, 15000.0, 8000.0, -800.0, 25000.0, 15000.0])
DEFAULT_INTERCEPT = 50000.0


@dataclass(frozen=True)
class LinearState:
    """Everything a trained linear model predicts from, published in one assignment."""

    coef: np.ndarray
    intercept: float
    training_data: Tuple[PropertyRecord, ...] = ()
    location_multipliers: Mapping[Location, float] = field(default_factory=dict)
    type_multipliers: Mapping[PropertyType, float] = field(default_factory=dict)


class LinearRegressionEstimator(BaseEstimator):
    """
    Linear model over {surface, rooms, bathrooms, age, garden, parking}.

    The raw prediction is multiplied by location and property-type
    multipliers (group mean price / overall mean price in the training data)
    and a fixed condition multiplier, then rounded to 1,000 and floored at
    50,000. Trained on no records, it keeps the prior weights
    DEFAULT_COEF / DEFAULT_INTERCEPT and the fallback multipliers.
    """

    name = "Linear Regression"

    def __init__(self, provider: Optional[DatasetProvider] = None,
                 learning_rate: float = 1e-4, iterations: int = 1000):
        super().__init__(provider)
        self.learning_rate = learning_rate
        self.iterations = iterations
        self.state_ = LinearState(coef=DEFAULT_COEF.copy(), intercept=DEFAULT_INTERCEPT)

    @property
    def coef_(self) -> np.ndarray:
        return self.state_.coef

    @property
    def intercept_(self) -> float:
        return self.state_.intercept

    @property
    def training_data(self) -> Tuple[PropertyRecord, ...]:
        return self.state_.training_data

    @property
    def location_multipliers_(self) -> Mapping[Location, float]:
        return self.state_.location_multipliers

    @property
    def type_multipliers_(self) -> Mapping[PropertyType, float]:
        return self.state_.type_multipliers

    def fit(self, records, cancel_event=None):
        records = tuple(records)
        if not records:
            _check_cancelled(cancel_event)
            state = LinearState(coef=DEFAULT_COEF.copy(), intercept=DEFAULT_INTERCEPT)
        else:
            X = feature_matrix(records, linear_features, current_year())
            y = np.array([record.price for record in records], dtype=float)
            coef, intercept, final_lr = gradient_descent(
                X, y, self.learning_rate, self.iterations, cancel_event
            )
            if final_lr < self.learning_rate:
                logger.info("Learning rate reduced to %.3g to keep descent stable", final_lr)
            location_multipliers, type_multipliers = self._empirical_multipliers(records)
            state = LinearState(coef, intercept, records, location_multipliers, type_multipliers)

        self.state_ = state
        self.trained = True
        logger.info("Linear Regression trained with %d properties", len(records))
        return self

    @staticmethod
    def _empirical_multipliers(records) -> Tuple[Dict[Location, float], Dict[PropertyType, float]]:
        df = records_to_frame(records)
        overall = df['price'].mean()

        location_means = df.groupby('location')['price'].mean()
        type_means = df.groupby('property_type')['price'].mean()

        location_multipliers = {
            Location.parse(name): float(mean / overall)
            for name, mean in location_means.items()
            if Location.parse(name) is not Location.UNKNOWN
        }
        type_multipliers = {
            PropertyType.parse(name): float(mean / overall)
            for name, mean in type_means.items()
            if PropertyType.parse(name) is not PropertyType.UNKNOWN
        }
        return location_multipliers, type_multipliers

    def location_multiplier(self, location: Location,
                            state: Optional[LinearState] = None) -> float:
        state = state or self.state_
        multiplier = state.location_multipliers.get(location)
        if multiplier is None:
            return FALLBACK_LOCATION_MULTIPLIERS.get(location, 1.0)
        return multiplier

    def type_multiplier(self, property_type: PropertyType,
                        state: Optional[LinearState] = None) -> float:
        state = state or self.state_
        multiplier = state.type_multipliers.get(property_type)
        if multiplier is None:
            return FALLBACK_TYPE_MULTIPLIERS.get(property_type, 1.0)
        return multiplier

    @staticmethod
    def condition_multiplier(condition) -> float:
        return CONDITION_PRICE_MULTIPLIERS.get(condition, 1.0)

    def raw_predict(self, query: PropertyQuery, state: Optional[LinearState] = None) -> float:
        """Linear combination before any multiplier."""
        state = state or self.state_
        return float(state.coef @ linear_features(query) + state.intercept)

    def _predict(self, query):
        state = self.state_
        price = self.raw_predict(query, state)
        price *= self.location_multiplier(query.location, state)
        price *= self.type_multiplier(query.property_type, state)
        price *= self.condition_multiplier(query.condition)
        return finalize_price(price)


# ==================== K-NEAREST NEIGHBOURS ====================

@dataclass(frozen=True)
class KNNState:
    features: np.ndarray
    prices: np.ndarray
    training_data: Tuple[PropertyRecord, ...]


class KNNEstimator(BaseEstimator):
    """Inverse-distance weighted average of the k closest training prices."""

    name = "k-NN"

    def __init__(self, provider: Optional[DatasetProvider] = None, k: int = 5):
        super().__init__(provider)
        if k < 1:
            raise ValueError("k must be at least 1")
        self.k = k
        self.state_: Optional[KNNState] = None

    @property
    def training_data(self) -> Tuple[PropertyRecord, ...]:
        return self.state_.training_data if self.state_ is not None else ()

    def fit(self, records, cancel_event=None):
        records = tuple(records)
        if not records:
            raise ValueError("k-NN needs at least one training record")
        _check_cancelled(cancel_event)

        features = feature_matrix(records, knn_features, current_year())
        prices = np.array([record.price for record in records], dtype=float)

        self.state_ = KNNState(features, prices, records)
        self.trained = True
        logger.info("k-NN trained with %d properties", len(records))
        return self

    def neighbours(self, query: QueryLike, state: Optional[KNNState] = None) -> Tuple[np.ndarray, np.ndarray]:
        """Indices and distances of the k nearest records, closest first."""
        state = state or self.state_
        if not self.trained or state is None:
            raise ModelNotTrainedError(self.name)
        point = knn_features(_as_query(query))
        distances = np.sqrt(((state.features - point) ** 2).sum(axis=1))
        nearest = np.argsort(distances, kind='stable')[:self.k]
        return nearest, distances[nearest]

    def _predict(self, query):
        state = self.state_
        nearest, distances = self.neighbours(query, state)
        weights = 1 / (distances + 0.001)
        weights = weights / weights.sum()
        return round_half_up(float(weights @ state.prices[nearest]))


# ==================== DECISION TREE ====================

MISSING_LEFT_PRICE = 300000
MISSING_RIGHT_PRICE = 400000


@dataclass(frozen=True)
class Leaf:
    value: float
    n_samples: int


@dataclass(frozen=True)
class Split:
    feature: str
    threshold: float
    left: "TreeNode"
    right: "TreeNode"


TreeNode = Union[Leaf, Split]


def find_best_split(X: np.ndarray, y: np.ndarray) -> Optional[Tuple[int, float]]:
    """
    Best (feature index, threshold) by size-weighted variance of the halves.

    Every midpoint between consecutive distinct values of every feature is
    scored; the first strictly smallest score wins (feature order, then
    ascending threshold). Returns None when no split leaves both sides
    non-empty.
    """
    n = len(y)
    centered = y - y.mean()
    best_score = np.inf
    best = None

    for feature_index in range(X.shape[1]):
        order = np.argsort(X[:, feature_index], kind='stable')
        values = X[order, feature_index]
        targets = centered[order]

        boundaries = np.nonzero(values[:-1] != values[1:])[0]
        if boundaries.size == 0:
            continue

        cum_sum = np.cumsum(targets)
        cum_sq = np.cumsum(targets ** 2)

        n_left = boundaries + 1
        n_right = n - n_left
        sum_left = cum_sum[boundaries]
        sq_left = cum_sq[boundaries]
        sum_right = cum_sum[-1] - sum_left
        sq_right = cum_sq[-1] - sq_left

        var_left = sq_left / n_left - (sum_left / n_left) ** 2
        var_right = sq_right / n_right - (sum_right / n_right) ** 2
        scores = (n_left * var_left + n_right * var_right) / n

        position = int(np.argmin(scores))
        if scores[position] < best_score:
            best_score = scores[position]
            boundary = boundaries[position]
            best = (feature_index, float((values[boundary] + values[boundary + 1]) / 2))

    return best


def count_leaves(node: TreeNode) -> int:
    if isinstance(node, Leaf):
        return 1
    return sum(count_leaves(child) for child in (node.left, node.right) if child is not None)


def tree_depth(node: TreeNode) -> int:
    if isinstance(node, Leaf):
        return 0
    return 1 + max(tree_depth(child) for child in (node.left, node.right) if child is not None)


class DecisionTreeEstimator(BaseEstimator):
    """
    Regression tree over surface, rooms, bathrooms and construction year.

    Stops at max_depth, below min_samples_split records, or when no split
    separates the partition; leaves hold the mean partition price.
    """

    name = "Decision Tree"

    def __init__(self, provider: Optional[DatasetProvider] = None,
                 max_depth: int = 5, min_samples_split: int = 10):
        super().__init__(provider)
        self.max_depth = max_depth
        self.min_samples_split = min_samples_split
        self.root_: Optional[TreeNode] = None

    def fit(self, records, cancel_event=None):
        records = tuple(records)
        if not records:
            raise ValueError("Decision tree needs at least one training record")

        X = np.array([[getattr(record, name) for name in TREE_FEATURES] for record in records],
                     dtype=float)
        y = np.array([record.price for record in records], dtype=float)
        root = self._build(X, y, 0, cancel_event)

        self.root_ = root
        self.trained = True
        logger.info("Decision Tree trained with %d properties (%d leaves, depth %d)",
                    len(records), count_leaves(root), tree_depth(root))
        return self

    def _build(self, X: np.ndarray, y: np.ndarray, depth: int,
               cancel_event: Optional[threading.Event]) -> TreeNode:
        _check_cancelled(cancel_event)

        if depth >= self.max_depth or len(y) < self.min_samples_split:
            return Leaf(value=float(y.mean()), n_samples=len(y))

        split = find_best_split(X, y)
        if split is None:
            return Leaf(value=float(y.mean()), n_samples=len(y))

        feature_index, threshold = split
        mask = X[:, feature_index] <= threshold
        return Split(
            feature=TREE_FEATURES[feature_index],
            threshold=threshold,
            left=self._build(X[mask], y[mask], depth + 1, cancel_event),
            right=self._build(X[~mask], y[~mask], depth + 1, cancel_event),
        )

    def _predict(self, query):
        node = self.root_
        while isinstance(node, Split):
            value = float(getattr(query, node.feature))
            if value <= node.threshold:
                if node.left is None:
                    return MISSING_LEFT_PRICE
                node = node.left
            else:
                if node.right is None:
                    return MISSING_RIGHT_PRICE
                node = node.right
        return node.value


# ==================== RANDOM FOREST ====================

class RandomForestEstimator(BaseEstimator):
    """
    Mean of n_trees decision trees.

    Every tree trains through its own provider call, which returns the same
    cached dataset, so the trees see identical data (no bootstrap sampling).
    """

    name = "Random Forest"

    def __init__(self, provider: Optional[DatasetProvider] = None, n_trees: int = 10,
                 max_depth: int = 5, min_samples_split: int = 10):
        super().__init__(provider)
        if n_trees < 1:
            raise ValueError("n_trees must be at least 1")
        self.n_trees = n_trees
        self.max_depth = max_depth
        self.min_samples_split = min_samples_split
        self.trees: List[DecisionTreeEstimator] = []

    def _new_tree(self) -> DecisionTreeEstimator:
        return DecisionTreeEstimator(self.provider, max_depth=self.max_depth,
                                     min_samples_split=self.min_samples_split)

    def train(self, cancel_event=None):
        if self.provider is None:
            raise ValueError(f"{self.name} has no dataset provider to train from")
        trees = []
        for _ in range(self.n_trees):
            trees.append(self._new_tree().train(cancel_event=cancel_event))
        return self._publish(trees)

    def fit(self, records, cancel_event=None):
        records = tuple(records)
        trees = [self._new_tree().fit(records, cancel_event=cancel_event)
                 for _ in range(self.n_trees)]
        return self._publish(trees)

    def _publish(self, trees):
        self.trees = trees
        self.trained = True
        logger.info("Random Forest trained with %d trees", len(trees))
        return self

    def _predict(self, query):
        predictions = [tree.predict(query) for tree in self.trees]
        return round_half_up(float(np.mean(predictions)))
