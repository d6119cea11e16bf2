import threading
from dataclasses import FrozenInstanceError, replace

import numpy as np
import pytest

from property_estimator.exceptions import ModelNotTrainedError, TrainingCancelledError
from property_estimator.features import Location, PropertyQuery, finalize_price, property_age, round_half_up
from property_estimator.models import (
    DEFAULT_COEF,
    DEFAULT_INTERCEPT,
    MISSING_LEFT_PRICE,
    MISSING_RIGHT_PRICE,
    DecisionTreeEstimator,
    KNNEstimator,
    Leaf,
    LinearRegressionEstimator,
    RandomForestEstimator,
    Split,
    count_leaves,
    find_best_split,
    gradient_descent,
    tree_depth,
)
from property_estimator.neural_network import NeuralNetworkEstimator

ALL_ESTIMATORS = [
    LinearRegressionEstimator,
    KNNEstimator,
    DecisionTreeEstimator,
    RandomForestEstimator,
    NeuralNetworkEstimator,
]


def _query(**overrides):
    fields = dict(surface=100, rooms=3, bathrooms=1, construction_year=2000,
                  location="Brussels", property_type="house", condition="good",
                  has_garden=False, has_parking=False)
    fields.update(overrides)
    return PropertyQuery(**fields)


def _two_level_records(make_record):
    """Ten small cheap properties and ten large expensive ones."""
    small = [make_record(id=i, surface=50, price=100000) for i in range(10)]
    large = [make_record(id=10 + i, surface=150, price=300000) for i in range(10)]
    return small + large


@pytest.mark.parametrize("estimator_cls", ALL_ESTIMATORS)
def test_predict_before_train_raises(estimator_cls):
    estimator = estimator_cls()
    assert not estimator.is_trained
    with pytest.raises(ModelNotTrainedError) as excinfo:
        estimator.predict(_query())
    assert isinstance(excinfo.value, RuntimeError)
    assert estimator.name in str(excinfo.value)


@pytest.mark.parametrize("estimator_cls", ALL_ESTIMATORS)
def test_train_without_provider_is_rejected(estimator_cls):
    with pytest.raises(ValueError):
        estimator_cls().train()


# ==================== LINEAR REGRESSION ====================

class TestGradientDescent:
    def test_fits_a_line(self):
        X = np.linspace(0, 1, 50).reshape(-1, 1)
        y = 2 * X[:, 0] + 1
        coef, intercept, _ = gradient_descent(X, y, learning_rate=0.5, iterations=5000)
        assert coef[0] == pytest.approx(2, abs=0.05)
        assert intercept == pytest.approx(1, abs=0.05)

    def test_raw_scale_features_do_not_diverge(self):
        X = np.array([[120, 3, 1, 29, 1, 0], [85, 2, 1, 14, 0, 1], [150, 4, 2, 44, 1, 1]], dtype=float)
        y = np.array([450000, 320000, 360000], dtype=float)
        coef, intercept, final_lr = gradient_descent(X, y, learning_rate=1e-4, iterations=100)

        assert np.all(np.isfinite(coef))
        assert final_lr <= 1e-4
        assert np.mean((X @ coef + intercept - y) ** 2) < np.mean(y ** 2)

    def test_cancellation(self):
        event = threading.Event()
        event.set()
        with pytest.raises(TrainingCancelledError):
            gradient_descent(np.ones((3, 2)), np.ones(3), 0.1, 10, cancel_event=event)


class TestLinearRegression:
    @pytest.fixture
    def brussels_model(self, make_record):
        records = [
            make_record(id=1, location="Brussels", price=450000),
            make_record(id=2, location="Ghent", price=250000),
        ]
        model = LinearRegressionEstimator(iterations=10).fit(records)
        model.state_ = replace(model.state_, coef=np.zeros(6), intercept=300000.0)
        return model

    def test_empirical_location_multiplier(self, brussels_model):
        # 300,000 × 450,000/350,000 ≈ 385,714 -> 386,000
        assert brussels_model.predict(_query(location="Brussels")) == 386000
        assert brussels_model.location_multipliers_ == {
            Location.BRUSSELS: pytest.approx(450000 / 350000),
            Location.GHENT: pytest.approx(250000 / 350000),
        }

    def test_unknown_city_is_neutral(self, brussels_model):
        assert brussels_model.predict(_query(location="Atlantis")) == 300000

    def test_fallback_multipliers_for_unseen_categories(self, brussels_model):
        assert brussels_model.predict(_query(location="Antwerp")) == 360000
        # villa fallback 1.5, fair condition 0.9
        assert brussels_model.predict(
            _query(location="Atlantis", property_type="villa", condition="fair")
        ) == 405000

    def test_price_floor(self, brussels_model):
        brussels_model.state_ = replace(brussels_model.state_, intercept=1000.0)
        assert brussels_model.predict(_query()) == 50000

    def test_accepts_mapping_queries(self, brussels_model):
        price = brussels_model.predict({
            "surface": 100, "rooms": 3, "bathrooms": 1, "constructionYear": 2000,
            "location": "Brussels", "propertyType": "house", "condition": "good",
        })
        assert price == 386000

    def test_trained_from_provider(self, small_provider):
        model = LinearRegressionEstimator(small_provider, iterations=50).train()
        assert model.is_trained
        assert len(model.training_data) == 206
        for location in ("Brussels", "Charleroi", "Atlantis"):
            price = model.predict(_query(location=location))
            assert price >= 50000
            assert price % 1000 == 0

    def test_empty_training_set_keeps_prior_weights(self):
        model = LinearRegressionEstimator().fit([])

        np.testing.assert_array_equal(model.coef_, DEFAULT_COEF)
        assert model.intercept_ == DEFAULT_INTERCEPT
        assert model.training_data == ()
        # 100×2,800 + 3×15,000 + 1×8,000 − age×800 + 50,000, Brussels fallback 1.4
        expected = finalize_price((383000 - 800 * property_age(2000)) * 1.4)
        assert model.predict(_query()) == expected
        assert model.predict(_query(property_type="studio")) < model.predict(_query(property_type="villa"))
        assert model.predict(_query(surface=50)) < model.predict(_query(surface=200))

    def test_prior_weights_do_not_alias(self):
        model = LinearRegressionEstimator().fit([])
        model.coef_[0] = 0
        assert DEFAULT_COEF[0] == 2800

    def test_retrain_swaps_state_as_one_object(self, make_record):
        model = LinearRegressionEstimator(iterations=10)
        prior = model.state_
        model.fit([make_record(id=1, location="Brussels", price=450000),
                   make_record(id=2, location="Ghent", price=250000)])
        trained = model.state_

        assert trained is not prior
        assert len(trained.training_data) == 2
        assert set(trained.location_multipliers) == {Location.BRUSSELS, Location.GHENT}
        with pytest.raises(FrozenInstanceError):
            trained.intercept = 0.0

        model.fit([make_record(id=3, location="Namur", price=200000)])
        assert model.state_ is not trained
        assert set(model.location_multipliers_) == {Location.NAMUR}
        assert len(trained.training_data) == 2

    def test_cancelled_retrain_keeps_previous_state(self, make_record):
        model = LinearRegressionEstimator(iterations=10).fit([make_record(id=1)])
        previous = model.state_
        event = threading.Event()
        event.set()
        with pytest.raises(TrainingCancelledError):
            model.fit([make_record(id=2, price=900000)], cancel_event=event)
        assert model.state_ is previous


# ==================== K-NEAREST NEIGHBOURS ====================

class TestKNN:
    @pytest.fixture
    def records(self, make_record):
        return [
            make_record(id=1, surface=100, price=310000),
            make_record(id=2, surface=200, price=500000),
            make_record(id=3, surface=300, price=700000),
            make_record(id=4, surface=50, rooms=1, price=150000),
        ]

    def test_exact_match_with_k1(self, records):
        model = KNNEstimator(k=1).fit(records)
        assert model.predict(_query(surface=100)) == 310000

    def test_exact_match_dominates(self, records):
        model = KNNEstimator(k=3).fit(records)
        assert model.predict(_query(surface=100)) == pytest.approx(310000, rel=0.01)

    def test_neighbours_are_sorted(self, records):
        model = KNNEstimator(k=4).fit(records)
        indices, distances = model.neighbours(_query(surface=190))
        assert indices[0] == 1
        assert list(distances) == sorted(distances)

    def test_k_larger_than_dataset(self, records):
        model = KNNEstimator(k=50).fit(records)
        indices, _ = model.neighbours(_query())
        assert len(indices) == 4

    def test_prediction_is_integer_without_floor(self, make_record):
        model = KNNEstimator(k=2).fit([make_record(id=1, price=1234), make_record(id=2, surface=101, price=1236)])
        price = model.predict(_query(location="Atlantis"))
        assert price == round_half_up(price)
        assert price < 50000

    def test_invalid_k(self):
        with pytest.raises(ValueError):
            KNNEstimator(k=0)


# ==================== DECISION TREE ====================

class TestFindBestSplit:
    def test_constant_features_cannot_split(self):
        assert find_best_split(np.ones((5, 3)), np.arange(5.0)) is None

    def test_midpoint_threshold(self):
        X = np.array([[1.0], [2.0], [10.0], [11.0]])
        y = np.array([1.0, 1.0, 5.0, 5.0])
        assert find_best_split(X, y) == (0, 6.0)

    def test_first_feature_wins_ties(self):
        column = np.array([1.0, 2.0, 10.0, 11.0])
        X = np.column_stack([column, column])
        y = np.array([1.0, 1.0, 5.0, 5.0])
        assert find_best_split(X, y)[0] == 0


class TestDecisionTree:
    def test_leaf_means(self, make_record):
        tree = DecisionTreeEstimator().fit(_two_level_records(make_record))

        assert isinstance(tree.root_, Split)
        assert tree.root_.feature == "surface"
        assert tree.root_.threshold == 100
        assert tree.predict(_query(surface=60)) == 100000
        assert tree.predict(_query(surface=140)) == 300000
        assert count_leaves(tree.root_) == 2
        assert tree_depth(tree.root_) == 1

    def test_max_depth_zero_is_a_single_leaf(self, make_record):
        tree = DecisionTreeEstimator(max_depth=0).fit(_two_level_records(make_record))
        assert tree.root_ == Leaf(value=200000, n_samples=20)
        assert tree.predict(_query(surface=10)) == 200000

    def test_min_samples_split(self, make_record):
        tree = DecisionTreeEstimator(min_samples_split=21).fit(_two_level_records(make_record))
        assert isinstance(tree.root_, Leaf)

    def test_partitions_follow_thresholds(self, small_provider):
        tree = DecisionTreeEstimator(small_provider).train()
        records = small_provider.load().properties

        def check(node, subset):
            if isinstance(node, Leaf):
                assert node.n_samples == len(subset)
                assert node.value == pytest.approx(np.mean([r.price for r in subset]))
                return
            left = [r for r in subset if getattr(r, node.feature) <= node.threshold]
            right = [r for r in subset if getattr(r, node.feature) > node.threshold]
            assert left and right
            check(node.left, left)
            check(node.right, right)

        check(tree.root_, list(records))
        assert tree_depth(tree.root_) <= 5

    def test_missing_children_use_sentinels(self):
        tree = DecisionTreeEstimator()
        tree.root_ = Split("surface", 100.0, left=None, right=Leaf(1.0, 1))
        tree.trained = True
        assert tree.predict(_query(surface=50)) == MISSING_LEFT_PRICE

        tree.root_ = Split("surface", 100.0, left=Leaf(1.0, 1), right=None)
        assert tree.predict(_query(surface=150)) == MISSING_RIGHT_PRICE

    def test_cancelled_training_leaves_model_untrained(self, make_record):
        event = threading.Event()
        event.set()
        tree = DecisionTreeEstimator()
        with pytest.raises(TrainingCancelledError):
            tree.fit(_two_level_records(make_record), cancel_event=event)
        assert not tree.is_trained
        assert tree.root_ is None


# ==================== RANDOM FOREST ====================

class TestRandomForest:
    def test_each_tree_loads_through_the_provider(self, make_record, stub_provider):
        provider = stub_provider(_two_level_records(make_record))
        forest = RandomForestEstimator(provider, n_trees=4).train()

        assert provider.load_calls == 4
        assert len(forest.trees) == 4
        assert all(tree.is_trained for tree in forest.trees)

    def test_prediction_is_mean_of_trees(self, small_provider):
        forest = RandomForestEstimator(small_provider, n_trees=3).train()
        query = _query(surface=180, rooms=4)
        expected = round_half_up(float(np.mean([tree.predict(query) for tree in forest.trees])))
        assert forest.predict(query) == expected
        # identical data gives identical trees
        assert forest.predict(query) == round_half_up(forest.trees[0].predict(query))

    def test_fit_on_records(self, make_record):
        forest = RandomForestEstimator(n_trees=2).fit(_two_level_records(make_record))
        assert forest.predict(_query(surface=60)) == 100000

    def test_invalid_tree_count(self):
        with pytest.raises(ValueError):
            RandomForestEstimator(n_trees=0)


@pytest.mark.parametrize("estimator_cls", [LinearRegressionEstimator, KNNEstimator,
                                           DecisionTreeEstimator, RandomForestEstimator])
def test_unknown_city_predicts(estimator_cls, small_provider):
    estimator = estimator_cls(small_provider).train()
    price = estimator.predict(_query(location="Atlantis", property_type="castle", condition="ruined"))
    assert np.isfinite(price)
    assert price > 0
