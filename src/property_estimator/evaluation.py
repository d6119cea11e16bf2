"""
Model Evaluation Utilities

Metrics are computed in price space:
- R² Score: proportion of variance explained (higher is better, max 1.0)
- MAE: mean absolute error in euros (lower is better)
- MAPE: mean absolute percentage error (rows with non-positive prices skipped)

Also provides simple baselines (global median, city mean) and per-category
breakdowns so a model can be compared against "guess the typical price".
"""

import logging
from typing import Dict, List, Sequence

import numpy as np
import pandas as pd
from sklearn.metrics import mean_absolute_error, mean_absolute_percentage_error, r2_score

from .data_loader import PropertyRecord, records_to_frame
from .features import PropertyQuery

logger = logging.getLogger(__name__)


def compute_metrics(
    y_true: np.ndarray,
    y_pred: np.ndarray,
    dataset_name: str = "Dataset",
    safe_mape_threshold: float = 0.0
) -> Dict[str, float]:
    """
    Compute regression metrics.

    Args:
        y_true: True prices
        y_pred: Predicted prices
        dataset_name: Label used in the log line
        safe_mape_threshold: Minimum y_true value for MAPE computation

    Returns:
        Dictionary with r2, mae, mape and mape_excluded_count
    """
    y_true = np.asarray(y_true, dtype=float)
    y_pred = np.asarray(y_pred, dtype=float)

    r2 = float(r2_score(y_true, y_pred)) if len(y_true) > 1 else float('nan')
    mae = float(mean_absolute_error(y_true, y_pred))

    valid_mask = y_true > safe_mape_threshold
    if valid_mask.sum() > 0:
        mape = float(mean_absolute_percentage_error(y_true[valid_mask], y_pred[valid_mask]) * 100)
    else:
        mape = float('nan')

    metrics = {
        'r2': r2,
        'mae': mae,
        'mape': mape,
        'mape_excluded_count': int(len(y_true) - valid_mask.sum()),
    }
    logger.info("%s metrics - R²: %.4f | MAE: %.0f | MAPE: %.2f%%",
                dataset_name, r2, mae, mape)
    return metrics


def predict_records(estimator, records: Sequence[PropertyRecord]) -> np.ndarray:
    """Run a trained estimator over dataset records."""
    return np.array([estimator.predict(PropertyQuery.from_record(record)) for record in records],
                    dtype=float)


def evaluate_estimator(estimator, records: Sequence[PropertyRecord]) -> Dict[str, float]:
    y_true = np.array([record.price for record in records], dtype=float)
    y_pred = predict_records(estimator, records)
    return compute_metrics(y_true, y_pred, dataset_name=estimator.name)


def baseline_metrics(records: Sequence[PropertyRecord]) -> Dict[str, Dict[str, float]]:
    """
    Metrics of two naive predictors over the same records.

    - global_median: every property priced at the median price
    - city_mean: every property priced at the mean price of its city
    """
    df = records_to_frame(records)
    y_true = df['price'].to_numpy(dtype=float)

    global_median = df['price'].median()
    city_means = df.groupby('location')['price'].transform('mean')

    return {
        'global_median': compute_metrics(y_true, np.full(len(y_true), global_median), "Global median"),
        'city_mean': compute_metrics(y_true, city_means.to_numpy(dtype=float), "City mean"),
    }


def evaluate_by_category(
    records: Sequence[PropertyRecord],
    y_pred: np.ndarray,
    category: str = 'location',
    min_samples: int = 30
) -> pd.DataFrame:
    """
    Evaluate model performance per category value.

    Shows if the model performs differently across cities, property types, etc.

    Args:
        records: Records the predictions were made for
        y_pred: Predicted prices, aligned with records
        category: Record column to group by ('location', 'property_type', 'condition')
        min_samples: Minimum rows for a category to be reported

    Returns:
        DataFrame with one row per category, sorted by sample count
    """
    df = records_to_frame(records)
    df['predicted'] = np.asarray(y_pred, dtype=float)

    results: List[Dict[str, float]] = []
    for cat_value, group in df.groupby(category):
        if len(group) < min_samples:
            continue
        results.append({
            'category': cat_value,
            'n_samples': len(group),
            'price_median': float(group['price'].median()),
            'mae': float(mean_absolute_error(group['price'], group['predicted'])),
            'mape': float(mean_absolute_percentage_error(group['price'], group['predicted']) * 100),
        })

    columns = ['category', 'n_samples', 'price_median', 'mae', 'mape']
    if not results:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame(results, columns=columns).sort_values('n_samples', ascending=False)
