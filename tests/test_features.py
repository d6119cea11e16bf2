import math

import numpy as np
import pytest

from property_estimator.features import (
    Condition,
    Location,
    PropertyQuery,
    PropertyType,
    categorical_features,
    encode_condition,
    encode_location,
    encode_property_type,
    finalize_price,
    knn_features,
    linear_features,
    property_age,
    round_half_up,
)


class TestCategories:
    def test_exact_and_case_insensitive_parse(self):
        assert Location.parse("Brussels") is Location.BRUSSELS
        assert Location.parse("brussels") is Location.BRUSSELS
        assert Location.parse("liège") is Location.LIEGE
        assert Location.parse("la louvière") is Location.LA_LOUVIERE
        assert Condition.parse("Needs Renovation") is Condition.NEEDS_RENOVATION

    @pytest.mark.parametrize("value", ["Atlantis", "", None, 42])
    def test_unrecognised_values_become_unknown(self, value):
        assert Location.parse(value) is Location.UNKNOWN
        assert PropertyType.parse(value) is PropertyType.UNKNOWN
        assert Condition.parse(value) is Condition.UNKNOWN

    def test_known_excludes_unknown(self):
        assert PropertyType.UNKNOWN not in PropertyType.known()
        assert len(Location.known()) == 14


class TestEncodings:
    def test_known_codes(self):
        assert encode_location("Brussels") == 1.0
        assert encode_location("Charleroi") == 0.3
        assert encode_property_type("villa") == 1.0
        assert encode_property_type("studio") == 0.2
        assert encode_condition("excellent") == 1.0
        assert encode_condition("needs_renovation") == 0.25

    def test_unknown_codes_are_neutral(self):
        assert encode_location("Atlantis") == 0.5
        assert encode_property_type("castle") == 0.5
        assert encode_condition("ruined") == 0.5


def test_property_age_is_never_negative():
    assert property_age(2000, year=2024) == 24
    assert property_age(2030, year=2024) == 0


class TestPropertyQuery:
    def test_strings_are_coerced(self):
        query = PropertyQuery(100, 3, 1, 2000, "Ghent", "apartment", "fair", 1, 0)
        assert query.location is Location.GHENT
        assert query.property_type is PropertyType.APARTMENT
        assert query.condition is Condition.FAIR
        assert query.has_garden is True
        assert query.has_parking is False

    def test_from_dict_accepts_camel_case(self):
        query = PropertyQuery.from_dict({
            "surface": 120,
            "rooms": 3,
            "bathrooms": 1,
            "constructionYear": 1995,
            "location": "Brussels",
            "propertyType": "house",
            "condition": "good",
            "hasGarden": True,
            "hasParking": False,
            "ignored": "field",
        })
        assert query.construction_year == 1995
        assert query.property_type is PropertyType.HOUSE
        assert query.has_garden is True

    def test_from_record_drops_price(self, make_record):
        record = make_record(location="Namur", price=123000)
        query = PropertyQuery.from_record(record)
        assert query.location is Location.NAMUR
        assert not hasattr(query, "price")


class TestFeatureVectors:
    def test_linear_features(self):
        query = PropertyQuery(100, 3, 2, 2004, "Brussels", "house", "good", True, False)
        np.testing.assert_array_equal(linear_features(query, year=2024), [100, 3, 2, 20, 1, 0])

    def test_knn_features_scaling(self):
        query = PropertyQuery(200, 3, 2, 1974, "Brussels", "villa", "excellent", False, True)
        expected = [2.0, 3, 2, 1.0, 0, 1, 1.0, 1.0, 1.0]
        np.testing.assert_allclose(knn_features(query, year=2024), expected)

    def test_categorical_features_with_unknowns(self):
        query = PropertyQuery(80, 2, 1, 2000, "Atlantis", "castle", "ruined")
        np.testing.assert_array_equal(categorical_features(query), [0, 0, 0.5, 0.5, 0.5])


class TestPriceFinalization:
    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(2.4999) == 2
        assert round_half_up(-0.5) == 0

    def test_rounds_to_nearest_thousand(self):
        assert finalize_price(300000 * 450000 / 350000) == 386000
        assert finalize_price(386500) == 387000
        assert finalize_price(386499) == 386000

    def test_floor(self):
        assert finalize_price(10) == 50000
        assert finalize_price(-250000) == 50000

    def test_non_finite_input_is_floored(self):
        assert finalize_price(math.nan) == 50000
        assert finalize_price(math.inf) == 50000
