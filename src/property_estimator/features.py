"""
Feature Encoding for Property Price Estimation

Shared by every estimator, both at training and at inference time:
1. Closed enumerations for location, property type and condition
   (unrecognised inputs map to UNKNOWN instead of failing)
2. Numeric encodings of those categories
3. Derived features (property age)
4. Per-model feature extraction
5. The final rounding/floor step for reported prices

Records (PropertyRecord) and queries (PropertyQuery) expose the same attribute
names, so every extractor accepts either.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional

import numpy as np

PRICE_FLOOR = 50000
PRICE_STEP = 1000


# ==================== CATEGORICAL DOMAINS ====================

class _Category(str, Enum):
    """String-valued enum whose parse() never fails."""

    @classmethod
    def parse(cls, value: Any) -> "_Category":
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.UNKNOWN
        text = str(value).strip()
        try:
            return cls(text)
        except ValueError:
            pass
        lowered = text.lower().replace(" ", "_").replace("-", "_")
        for member in cls:
            if member.value.lower().replace(" ", "_").replace("-", "_") == lowered:
                return member
        return cls.UNKNOWN

    @classmethod
    def known(cls):
        return [member for member in cls if member.name != "UNKNOWN"]


class Location(_Category):
    BRUSSELS = "Brussels"
    ANTWERP = "Antwerp"
    GHENT = "Ghent"
    BRUGES = "Bruges"
    LEUVEN = "Leuven"
    LIEGE = "Liège"
    NAMUR = "Namur"
    CHARLEROI = "Charleroi"
    MONS = "Mons"
    AALST = "Aalst"
    MECHELEN = "Mechelen"
    LA_LOUVIERE = "La Louvière"
    KORTRIJK = "Kortrijk"
    HASSELT = "Hasselt"
    UNKNOWN = "unknown"


class PropertyType(_Category):
    STUDIO = "studio"
    APARTMENT = "apartment"
    HOUSE = "house"
    TOWNHOUSE = "townhouse"
    VILLA = "villa"
    UNKNOWN = "unknown"


class Condition(_Category):
    NEEDS_RENOVATION = "needs_renovation"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"
    UNKNOWN = "unknown"


# ==================== ENCODINGS ====================

DEFAULT_ENCODING = 0.5

LOCATION_ENCODING: Dict[Location, float] = {
    Location.BRUSSELS: 1.0,
    Location.ANTWERP: 0.8,
    Location.GHENT: 0.6,
    Location.BRUGES: 0.7,
    Location.LEUVEN: 0.75,
    Location.LIEGE: 0.4,
    Location.NAMUR: 0.5,
    Location.CHARLEROI: 0.3,
    Location.MONS: 0.35,
    Location.AALST: 0.45,
    Location.MECHELEN: 0.55,
    Location.LA_LOUVIERE: 0.3,
    Location.KORTRIJK: 0.4,
    Location.HASSELT: 0.45,
}

PROPERTY_TYPE_ENCODING: Dict[PropertyType, float] = {
    PropertyType.STUDIO: 0.2,
    PropertyType.APARTMENT: 0.4,
    PropertyType.HOUSE: 0.6,
    PropertyType.TOWNHOUSE: 0.7,
    PropertyType.VILLA: 1.0,
}

CONDITION_ENCODING: Dict[Condition, float] = {
    Condition.NEEDS_RENOVATION: 0.25,
    Condition.FAIR: 0.5,
    Condition.GOOD: 0.75,
    Condition.EXCELLENT: 1.0,
}


def encode_location(location: Any) -> float:
    return LOCATION_ENCODING.get(Location.parse(location), DEFAULT_ENCODING)


def encode_property_type(property_type: Any) -> float:
    return PROPERTY_TYPE_ENCODING.get(PropertyType.parse(property_type), DEFAULT_ENCODING)


def encode_condition(condition: Any) -> float:
    return CONDITION_ENCODING.get(Condition.parse(condition), DEFAULT_ENCODING)


def current_year() -> int:
    return datetime.now().year


def property_age(construction_year: float, year: Optional[int] = None) -> float:
    """Age in years, floored at 0 for future construction years."""
    if year is None:
        year = current_year()
    return max(0, year - construction_year)


# ==================== QUERY ====================

_CAMEL_CASE_KEYS = {
    "constructionYear": "construction_year",
    "propertyType": "property_type",
    "hasGarden": "has_garden",
    "hasParking": "has_parking",
}


@dataclass(frozen=True)
class PropertyQuery:
    """
    A property description supplied by a caller for a single prediction.

    Categorical fields accept enum members or raw strings; strings outside
    the known domains become UNKNOWN.
    """
    surface: float
    rooms: float
    bathrooms: float
    construction_year: int
    location: Location = Location.UNKNOWN
    property_type: PropertyType = PropertyType.UNKNOWN
    condition: Condition = Condition.UNKNOWN
    has_garden: bool = False
    has_parking: bool = False

    def __post_init__(self):
        object.__setattr__(self, "location", Location.parse(self.location))
        object.__setattr__(self, "property_type", PropertyType.parse(self.property_type))
        object.__setattr__(self, "condition", Condition.parse(self.condition))
        object.__setattr__(self, "has_garden", bool(self.has_garden))
        object.__setattr__(self, "has_parking", bool(self.has_parking))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PropertyQuery":
        """Build a query from snake_case or camelCase keys."""
        normalized = {_CAMEL_CASE_KEYS.get(key, key): value for key, value in data.items()}
        fields = cls.__dataclass_fields__
        return cls(**{key: value for key, value in normalized.items() if key in fields})

    @classmethod
    def from_record(cls, record) -> "PropertyQuery":
        """Query describing an existing dataset record (price left out)."""
        return cls(**{name: getattr(record, name) for name in cls.__dataclass_fields__})


# ==================== FEATURE EXTRACTION ====================

LINEAR_FEATURES = ("surface", "rooms", "bathrooms", "age", "has_garden", "has_parking")
TREE_FEATURES = ("surface", "rooms", "bathrooms", "construction_year")
CONTINUOUS_FEATURES = ("surface", "rooms", "bathrooms", "age")


def linear_features(item, year: Optional[int] = None) -> np.ndarray:
    return np.array([
        item.surface,
        item.rooms,
        item.bathrooms,
        property_age(item.construction_year, year),
        1.0 if item.has_garden else 0.0,
        1.0 if item.has_parking else 0.0,
    ], dtype=float)


def categorical_features(item) -> np.ndarray:
    """Garden, parking, location, type and condition codes (never z-scored)."""
    return np.array([
        1.0 if item.has_garden else 0.0,
        1.0 if item.has_parking else 0.0,
        encode_location(item.location),
        encode_property_type(item.property_type),
        encode_condition(item.condition),
    ], dtype=float)


def knn_features(item, year: Optional[int] = None) -> np.ndarray:
    """
    The 9-dimension vector used for nearest-neighbour distances.

    [surface/100, rooms, bathrooms, age/50, garden, parking,
     location code, type code, condition code]
    """
    scaled = np.array([
        item.surface / 100,
        item.rooms,
        item.bathrooms,
        property_age(item.construction_year, year) / 50,
    ], dtype=float)
    return np.concatenate([scaled, categorical_features(item)])


def feature_matrix(items: Iterable, extractor, year: Optional[int] = None) -> np.ndarray:
    rows = [extractor(item, year) for item in items]
    if not rows:
        return np.empty((0, 0))
    return np.vstack(rows)


# ==================== PRICE FINALIZATION ====================

def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def finalize_price(raw_price: float) -> int:
    """Round to the nearest 1,000 and floor at 50,000."""
    if not math.isfinite(raw_price):
        return PRICE_FLOOR
    return max(PRICE_FLOOR, round_half_up(raw_price / PRICE_STEP) * PRICE_STEP)
