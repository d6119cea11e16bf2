import copy

import numpy as np
import pytest

from property_estimator.config import DEFAULT_CONFIG
from property_estimator.data_loader import (
    FALLBACK_MARKET_STATISTICS,
    Dataset,
    DatasetProvider,
    PropertyRecord,
)
from property_estimator.features import Condition, Location, PropertyType

SEED_PAYLOAD = {
    "metadata": {
        "description": "Belgian Real Estate Dataset",
        "total_properties": 6,
        "date_range": "2020-2024",
        "cities_covered": 6,
        "last_updated": "2024-01-15",
    },
    "properties": [
        {"id": 1, "surface": 120, "rooms": 3, "bathrooms": 1, "construction_year": 1995,
         "location": "Brussels", "property_type": "house", "condition": "good",
         "has_garden": True, "has_parking": False, "price": 450000, "price_per_sqm": 3750},
        {"id": 2, "surface": 85, "rooms": 2, "bathrooms": 1, "construction_year": 2010,
         "location": "Antwerp", "property_type": "apartment", "condition": "excellent",
         "has_garden": False, "has_parking": True, "price": 320000, "price_per_sqm": 3765},
        {"id": 3, "surface": 150, "rooms": 4, "bathrooms": 2, "construction_year": 1980,
         "location": "Ghent", "property_type": "townhouse", "condition": "fair",
         "has_garden": True, "has_parking": True, "price": 360000, "price_per_sqm": 2400},
        {"id": 4, "surface": 45, "rooms": 1, "bathrooms": 1, "construction_year": 2018,
         "location": "Leuven", "property_type": "studio", "condition": "excellent",
         "has_garden": False, "has_parking": False, "price": 190000, "price_per_sqm": 4222},
        {"id": 5, "surface": 250, "rooms": 6, "bathrooms": 3, "construction_year": 1970,
         "location": "Bruges", "property_type": "villa", "condition": "good",
         "has_garden": True, "has_parking": True, "price": 780000, "price_per_sqm": 3120},
        {"id": 6, "surface": 110, "rooms": 3, "bathrooms": 1, "construction_year": 1960,
         "location": "Charleroi", "property_type": "house", "condition": "needs_renovation",
         "has_garden": True, "has_parking": False, "price": 165000, "price_per_sqm": 1500},
    ],
    "market_statistics": {
        "average_price": 377500,
        "median_price": 340000,
        "average_price_per_sqm": 3126,
        "price_range": {"min": 165000, "max": 780000},
        "average_surface": 127,
        "most_common_rooms": 3,
        "property_type_distribution": {"house": 0.33, "apartment": 0.17, "townhouse": 0.17,
                                       "studio": 0.17, "villa": 0.16},
        "city_price_averages": {"Brussels": 450000, "Antwerp": 320000, "Ghent": 360000,
                                "Leuven": 190000, "Bruges": 780000, "Charleroi": 165000},
    },
}


def _build_record(id=1, surface=100, rooms=3, bathrooms=1, construction_year=2000,
                  location="Brussels", property_type="house", condition="good",
                  has_garden=False, has_parking=False, price=300000):
    return PropertyRecord(
        id=id,
        surface=surface,
        rooms=rooms,
        bathrooms=bathrooms,
        construction_year=construction_year,
        location=Location.parse(location),
        property_type=PropertyType.parse(property_type),
        condition=Condition.parse(condition),
        has_garden=has_garden,
        has_parking=has_parking,
        price=price,
    )


class StubProvider:
    """Serves a fixed record set and counts load() calls."""

    def __init__(self, records, market_statistics=FALLBACK_MARKET_STATISTICS):
        self.dataset = Dataset(
            metadata={"description": "stub", "total_properties": len(records)},
            properties=tuple(records),
            market_statistics=market_statistics,
        )
        self.load_calls = 0

    @property
    def is_loaded(self):
        return True

    def load(self):
        self.load_calls += 1
        return self.dataset


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def seed_payload():
    return copy.deepcopy(SEED_PAYLOAD)


@pytest.fixture
def make_record():
    return _build_record


@pytest.fixture
def stub_provider():
    return StubProvider


@pytest.fixture
def small_provider(seed_payload, rng):
    """Real provider over the in-memory seed with a short expansion."""
    return DatasetProvider.from_payload(seed_payload, rng=rng, expansion_size=200)


@pytest.fixture
def fast_config():
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["models"]["linear_regression"]["iterations"] = 200
    config["models"]["random_forest"]["n_trees"] = 3
    config["models"]["neural_network"]["epochs"] = 2
    config["models"]["neural_network"]["seed"] = 0
    return config
