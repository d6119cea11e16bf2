"""
Configuration for the Property Price Estimator

Defaults live in DEFAULT_CONFIG and can be overridden by:
1. A YAML file (path argument or PROPERTY_ESTIMATOR_CONFIG)
2. PROPERTY_ESTIMATOR_DATA_URL for the seed dataset location

Example YAML:

    dataset:
      url: https://example.org/data/belgian-real-estate-data.json
    models:
      knn:
        k: 7
"""

import copy
import logging
import os
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "PROPERTY_ESTIMATOR_CONFIG"
DATA_URL_ENV_VAR = "PROPERTY_ESTIMATOR_DATA_URL"

DEFAULT_CONFIG: Dict[str, Any] = {
    "dataset": {
        "url": "http://localhost:3000/data/belgian-real-estate-data.json",
        "timeout_seconds": 30,
        "retries": 2,
        "retry_status_codes": [408, 413, 429, 500, 502, 503, 504],
        "expansion_size": 2500,
        "fallback_size": 1000,
        "seed": None,
    },
    "models": {
        "linear_regression": {"learning_rate": 1e-4, "iterations": 1000},
        "knn": {"k": 5},
        "decision_tree": {"max_depth": 5, "min_samples_split": 10},
        "random_forest": {"n_trees": 10, "max_depth": 5, "min_samples_split": 10},
        "neural_network": {
            "learning_rate": 0.003,
            "epochs": 30,
            "batch_size": 64,
            "validation_split": 0.15,
            "dropout": 0.2,
            "seed": None,
        },
    },
    "service": {
        "confidence_range": [0.7, 1.0],
        "max_workers": 4,
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Build the effective configuration.

    Args:
        path: Optional YAML file. Falls back to $PROPERTY_ESTIMATOR_CONFIG.

    Returns:
        Nested dict with the same shape as DEFAULT_CONFIG
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    path = path or os.environ.get(CONFIG_ENV_VAR)
    if path:
        with open(path, "r") as f:
            overrides = yaml.safe_load(f) or {}
        if not isinstance(overrides, dict):
            raise ValueError(f"Config file {path} must contain a mapping at the top level")
        config = _deep_merge(config, overrides)
        logger.info("Loaded configuration overrides from %s", path)

    data_url = os.environ.get(DATA_URL_ENV_VAR)
    if data_url:
        config["dataset"]["url"] = data_url

    return config


def model_params(config: Dict[str, Any], algorithm: str) -> Dict[str, Any]:
    """Hyperparameters for one algorithm, as constructor keyword arguments."""
    return dict(config.get("models", {}).get(algorithm, {}))
