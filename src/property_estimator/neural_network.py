"""
Neural Network Estimator (PyTorch)

Architecture:
    9 inputs -> Dense 64 (ReLU) -> Dropout 0.2 -> Dense 32 (ReLU) -> Dropout 0.2
             -> Dense 16 (ReLU) -> Dense 1 (linear)

Training:
- Adam (lr 0.003), MSE loss, MAE reported per epoch
- Surface, rooms, bathrooms, age and the price target are z-score normalized
  with training-set statistics; garden, parking and the categorical codes are
  used as-is
- 30 epochs, batch size 64, last 15% of rows held out for validation,
  training rows reshuffled every epoch
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import torch
from torch import nn
from torch.utils.data import DataLoader, TensorDataset

from .data_loader import DatasetProvider, PropertyRecord
from .exceptions import TrainingCancelledError
from .features import CONTINUOUS_FEATURES, categorical_features, current_year, finalize_price, property_age
from .models import BaseEstimator

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, float], None]


@dataclass(frozen=True)
class FeatureStats:
    """Min/max/mean/std of one continuous column (population std)."""
    min: float
    max: float
    mean: float
    std: float

    @classmethod
    def from_values(cls, values: Sequence[float]) -> "FeatureStats":
        array = np.asarray(values, dtype=float)
        return cls(
            min=float(array.min()),
            max=float(array.max()),
            mean=float(array.mean()),
            std=float(array.std()),
        )

    @property
    def scale(self) -> float:
        return self.std or 1.0

    def normalize(self, value):
        return (value - self.mean) / self.scale

    def denormalize(self, value):
        return value * self.scale + self.mean


def _continuous_values(item, year: int) -> Dict[str, float]:
    return {
        "surface": item.surface,
        "rooms": item.rooms,
        "bathrooms": item.bathrooms,
        "age": property_age(item.construction_year, year),
    }


def compute_normalization_stats(records: Sequence[PropertyRecord],
                                year: Optional[int] = None) -> Dict[str, FeatureStats]:
    """Statistics for every continuous feature plus the price target."""
    if year is None:
        year = current_year()
    rows = [_continuous_values(record, year) for record in records]
    stats = {
        name: FeatureStats.from_values([row[name] for row in rows])
        for name in CONTINUOUS_FEATURES
    }
    stats["price"] = FeatureStats.from_values([record.price for record in records])
    return stats


def encode_features(item, stats: Dict[str, FeatureStats], year: Optional[int] = None) -> np.ndarray:
    """Normalized continuous features followed by the raw categorical codes."""
    if year is None:
        year = current_year()
    values = _continuous_values(item, year)
    continuous = [stats[name].normalize(values[name]) for name in CONTINUOUS_FEATURES]
    return np.concatenate([np.array(continuous, dtype=float), categorical_features(item)])


def build_network(n_features: int = 9, dropout: float = 0.2) -> nn.Sequential:
    return nn.Sequential(
        nn.Linear(n_features, 64),
        nn.ReLU(),
        nn.Dropout(dropout),
        nn.Linear(64, 32),
        nn.ReLU(),
        nn.Dropout(dropout),
        nn.Linear(32, 16),
        nn.ReLU(),
        nn.Linear(16, 1),
    )


@dataclass(frozen=True)
class NetworkState:
    """A trained network with the statistics its inputs were normalized by."""
    network: nn.Sequential
    stats: Dict[str, FeatureStats]
    history: List[Dict[str, float]]
    training_size: int


class NeuralNetworkEstimator(BaseEstimator):
    """
    Feed-forward regressor; predictions are denormalized, rounded to 1,000
    and floored at 50,000.
    """

    name = "Neural Network"

    def __init__(
        self,
        provider: Optional[DatasetProvider] = None,
        learning_rate: float = 0.003,
        epochs: int = 30,
        batch_size: int = 64,
        validation_split: float = 0.15,
        dropout: float = 0.2,
        seed: Optional[int] = None,
    ):
        super().__init__(provider)
        if not 0 <= validation_split < 1:
            raise ValueError("validation_split must be in [0, 1)")
        self.learning_rate = learning_rate
        self.epochs = epochs
        self.batch_size = batch_size
        self.validation_split = validation_split
        self.dropout = dropout
        self.seed = seed
        self.state_: Optional[NetworkState] = None

    @property
    def network_(self) -> Optional[nn.Sequential]:
        return self.state_.network if self.state_ is not None else None

    @property
    def stats_(self) -> Dict[str, FeatureStats]:
        return self.state_.stats if self.state_ is not None else {}

    @property
    def history_(self) -> List[Dict[str, float]]:
        return self.state_.history if self.state_ is not None else []

    @property
    def training_size(self) -> int:
        return self.state_.training_size if self.state_ is not None else 0

    def train(self, cancel_event: Optional[threading.Event] = None,
              on_progress: Optional[ProgressCallback] = None):
        if self.provider is None:
            raise ValueError(f"{self.name} has no dataset provider to train from")
        dataset = self.provider.load()
        return self.fit(dataset.properties, cancel_event=cancel_event, on_progress=on_progress)

    def fit(self, records, cancel_event=None, on_progress: Optional[ProgressCallback] = None):
        """
        Train a fresh network on `records`.

        Args:
            records: Training PropertyRecords
            cancel_event: Checked before every batch
            on_progress: Called as on_progress(epoch, training_loss) after each epoch

        Returns:
            self
        """
        records = tuple(records)
        if not records:
            raise ValueError("Neural network needs at least one training record")

        seeded = self.seed is not None
        with torch.random.fork_rng(devices=[], enabled=seeded):
            if seeded:
                torch.manual_seed(self.seed)
            network, stats, history = self._fit(records, cancel_event, on_progress)

        self.state_ = NetworkState(network, stats, history, len(records))
        self.trained = True
        logger.info("Neural Network trained with %d properties", len(records))
        return self

    def _fit(self, records, cancel_event, on_progress):
        year = current_year()
        stats = compute_normalization_stats(records, year)

        features = np.vstack([encode_features(record, stats, year) for record in records])
        labels = stats["price"].normalize(np.array([record.price for record in records], dtype=float))

        x = torch.tensor(features, dtype=torch.float32)
        y = torch.tensor(labels, dtype=torch.float32).unsqueeze(1)

        split_at = int(len(records) * (1 - self.validation_split))
        if split_at == 0:
            split_at = len(records)
        x_train, y_train = x[:split_at], y[:split_at]
        x_val, y_val = x[split_at:], y[split_at:]

        generator = None
        if self.seed is not None:
            generator = torch.Generator()
            generator.manual_seed(self.seed)
        loader = DataLoader(TensorDataset(x_train, y_train), batch_size=self.batch_size,
                            shuffle=True, generator=generator)

        network = build_network(x.shape[1], self.dropout)
        optimizer = torch.optim.Adam(network.parameters(), lr=self.learning_rate)
        criterion = nn.MSELoss()
        history = []

        for epoch in range(self.epochs):
            network.train()
            total_loss = 0.0
            total_abs_error = 0.0
            for batch_x, batch_y in loader:
                if cancel_event is not None and cancel_event.is_set():
                    raise TrainingCancelledError("Neural network training cancelled")
                optimizer.zero_grad()
                output = network(batch_x)
                loss = criterion(output, batch_y)
                loss.backward()
                optimizer.step()
                total_loss += loss.item() * len(batch_x)
                total_abs_error += (output.detach() - batch_y).abs().sum().item()

            epoch_log = {
                "epoch": epoch,
                "loss": total_loss / split_at,
                "mae": total_abs_error / split_at,
            }
            if len(x_val) > 0:
                network.eval()
                with torch.no_grad():
                    val_output = network(x_val)
                    epoch_log["val_loss"] = criterion(val_output, y_val).item()
                    epoch_log["val_mae"] = (val_output - y_val).abs().mean().item()
            history.append(epoch_log)

            logger.info("Epoch %d/%d - loss: %.4f - mae: %.4f - val_loss: %s",
                        epoch + 1, self.epochs, epoch_log["loss"], epoch_log["mae"],
                        f"{epoch_log['val_loss']:.4f}" if "val_loss" in epoch_log else "n/a")
            if on_progress is not None:
                on_progress(epoch, epoch_log["loss"])

        network.eval()
        return network, stats, history

    def _predict(self, query):
        state = self.state_
        features = encode_features(query, state.stats)
        x = torch.tensor(features, dtype=torch.float32).unsqueeze(0)
        with torch.no_grad():
            normalized = state.network(x).item()
        return finalize_price(state.stats["price"].denormalize(normalized))
