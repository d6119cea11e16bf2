"""
Model validation and sanity checks

Trains every estimator on the configured dataset and reports in-sample
metrics against naive baselines (global median, city mean).

Usage:
    python validate_models.py [--config config.yaml] [--seed 42]
                              [--algorithms knn decision_tree] [--by-category location]
"""
import argparse
import logging
import sys

import numpy as np

from property_estimator.config import load_config
from property_estimator.evaluation import baseline_metrics, evaluate_by_category, evaluate_estimator, predict_records
from property_estimator.service import Algorithm, EstimatorService

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Validate the property price estimators")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--seed", type=int, help="Seed for dataset generation and network training")
    parser.add_argument("--algorithms", nargs="+", choices=[a.value for a in Algorithm],
                        help="Algorithms to validate (default: all)")
    parser.add_argument("--by-category", choices=["location", "property_type", "condition"],
                        help="Also break metrics down by this column")
    return parser.parse_args(argv)


def format_metrics(metrics):
    return f"R²={metrics['r2']:.4f}, MAE=€{metrics['mae']:,.0f}, MAPE={metrics['mape']:.2f}%"


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

    config = load_config(args.config)
    if args.seed is not None:
        config["dataset"]["seed"] = args.seed
        config["models"]["neural_network"]["seed"] = args.seed

    rng = np.random.default_rng(args.seed)
    service = EstimatorService.from_config(config, rng=rng)
    algorithms = [Algorithm.parse(a) for a in (args.algorithms or [a.value for a in Algorithm])]

    print("=" * 80)
    print("MODEL VALIDATION & SANITY CHECKS")
    print("=" * 80)

    dataset = service.provider.load()
    records = dataset.properties
    print(f"\nTotal properties: {len(records):,}")
    if dataset.metadata.get("fallback"):
        print("⚠️  Seed dataset unavailable - validating on the synthetic fallback dataset")

    stats = service.market_statistics()
    print(f"Average price: €{stats.average_price:,.0f} | Median: €{stats.median_price:,.0f}")

    # CHECK 1: Baselines
    print("\n" + "=" * 80)
    print("CHECK 1: BASELINE MODELS")
    print("=" * 80)

    baselines = baseline_metrics(records)
    for name, metrics in baselines.items():
        print(f"  {name:<20} {format_metrics(metrics)}")
    best_name, best = max(baselines.items(), key=lambda item: item[1]['r2'])

    # CHECK 2: Estimators
    print("\n" + "=" * 80)
    print("CHECK 2: ESTIMATORS (in-sample)")
    print("=" * 80)

    results = {}
    for algorithm in algorithms:
        estimator = service.train(algorithm)
        results[algorithm] = evaluate_estimator(estimator, records)
        print(f"  {algorithm.label:<20} {format_metrics(results[algorithm])}")

        if args.by_category:
            breakdown = evaluate_by_category(records, predict_records(estimator, records),
                                             category=args.by_category)
            if not breakdown.empty:
                print(breakdown.to_string(index=False))

    # CHECK 3: Estimators vs best baseline
    print("\n" + "=" * 80)
    print("CHECK 3: ESTIMATORS VS BEST BASELINE")
    print("=" * 80)
    print(f"\nBest baseline ({best_name}): {format_metrics(best)}")

    worse = []
    for algorithm, metrics in results.items():
        if metrics['r2'] < best['r2']:
            worse.append(algorithm)
            print(f"⚠️  {algorithm.label} is WORSE than the {best_name} baseline")
        else:
            improvement = (best['mae'] - metrics['mae']) / best['mae'] * 100
            print(f"✓ {algorithm.label} beats baseline by {improvement:.1f}% MAE reduction")

    service.shutdown()
    return 1 if results and len(worse) == len(results) else 0


if __name__ == "__main__":
    sys.exit(main())
