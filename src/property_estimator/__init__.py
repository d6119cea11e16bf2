"""
Belgian Property Price Estimator

Interchangeable price models trained on a shared augmented dataset:
- Linear regression with empirical location/type corrections
- Distance-weighted k-nearest neighbours
- Variance-reduction decision tree and a random forest of them
- Small feed-forward neural network (PyTorch)
- FastAPI service for training, prediction and algorithm comparison
"""

from .data_loader import Dataset, DatasetProvider, MarketStatistics, PropertyRecord
from .exceptions import EstimatorError, ModelNotTrainedError, TrainingCancelledError
from .features import Condition, Location, PropertyQuery, PropertyType
from .models import (
    DecisionTreeEstimator,
    KNNEstimator,
    LinearRegressionEstimator,
    RandomForestEstimator,
)
from .neural_network import NeuralNetworkEstimator
from .service import Algorithm, EstimatorService, PredictionResult

__version__ = "1.0.0"

__all__ = [
    "Algorithm",
    "Condition",
    "Dataset",
    "DatasetProvider",
    "DecisionTreeEstimator",
    "EstimatorError",
    "EstimatorService",
    "KNNEstimator",
    "LinearRegressionEstimator",
    "Location",
    "MarketStatistics",
    "ModelNotTrainedError",
    "NeuralNetworkEstimator",
    "PredictionResult",
    "PropertyQuery",
    "PropertyRecord",
    "PropertyType",
    "RandomForestEstimator",
    "TrainingCancelledError",
]
