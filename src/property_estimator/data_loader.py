"""
Dataset Acquisition and Augmentation

This module handles:
1. Fetching the seed dataset (JSON) over HTTP with bounded retries
2. Expanding the seed into ~2,500 extra records by randomized perturbation
   priced with a hand-built realistic pricing formula
3. Generating a purely random fallback dataset when the fetch fails
4. Market statistics over any record collection

Key Technical Decisions:
- Acquisition failures never propagate: the provider always ends with a
  usable dataset (degraded fallback if needed)
- The first successful load is cached per provider instance; concurrent first
  callers share a single fetch
- All random draws go through an injectable numpy Generator
"""

import logging
import threading
from dataclasses import asdict, dataclass, field, replace
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .features import (
    Condition,
    Location,
    PropertyType,
    finalize_price,
    property_age,
    round_half_up,
)

logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = (408, 413, 429, 500, 502, 503, 504)
EXPANSION_SIZE = 2500
FALLBACK_SIZE = 1000

# (variation, min, max) per perturbed field
PERTURBATION_RULES: Dict[str, Tuple[float, int, int]] = {
    "surface": (0.3, 30, 400),
    "rooms": (0.2, 1, 8),
    "bathrooms": (0.3, 1, 5),
    "construction_year": (0.1, 1950, 2024),
}

TYPE_PRICE_MULTIPLIERS: Dict[PropertyType, float] = {
    PropertyType.STUDIO: 0.6,
    PropertyType.APARTMENT: 0.9,
    PropertyType.HOUSE: 1.0,
    PropertyType.TOWNHOUSE: 1.1,
    PropertyType.VILLA: 1.6,
}

CONDITION_PRICE_MULTIPLIERS: Dict[Condition, float] = {
    Condition.NEEDS_RENOVATION: 0.75,
    Condition.FAIR: 0.9,
    Condition.GOOD: 1.0,
    Condition.EXCELLENT: 1.15,
}

GARDEN_PREMIUM = 20000
PARKING_PREMIUM = 15000


# ==================== DATA MODEL ====================

_TRUE_STRINGS = {"true", "yes", "1"}
_FALSE_STRINGS = {"false", "no", "0"}


def parse_flag(value: Any) -> bool:
    """Strict boolean for JSON fields: bools, 0/1 and true/false/yes/no strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ValueError(f"Expected a boolean, got {value!r}")


@dataclass(frozen=True)
class PropertyRecord:
    """One dataset row. price_per_sqm is always round(price / surface)."""
    id: int
    surface: float
    rooms: int
    bathrooms: int
    construction_year: int
    location: Location
    property_type: PropertyType
    condition: Condition
    has_garden: bool
    has_parking: bool
    price: int
    price_per_sqm: int = 0

    def __post_init__(self):
        if not self.surface > 0:
            raise ValueError(f"Property {self.id} has non-positive surface {self.surface}")
        object.__setattr__(self, "price_per_sqm", round_half_up(self.price / self.surface))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PropertyRecord":
        return cls(
            id=int(data["id"]),
            surface=float(data["surface"]),
            rooms=int(data["rooms"]),
            bathrooms=int(data["bathrooms"]),
            construction_year=int(data["construction_year"]),
            location=Location.parse(data["location"]),
            property_type=PropertyType.parse(data["property_type"]),
            condition=Condition.parse(data["condition"]),
            has_garden=parse_flag(data["has_garden"]),
            has_parking=parse_flag(data["has_parking"]),
            price=int(data["price"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        row = asdict(self)
        row["location"] = self.location.value
        row["property_type"] = self.property_type.value
        row["condition"] = self.condition.value
        return row


@dataclass(frozen=True)
class MarketStatistics:
    average_price: float
    median_price: float
    average_price_per_sqm: float
    price_range: Dict[str, float]
    average_surface: float
    most_common_rooms: int
    property_type_distribution: Dict[str, float] = field(default_factory=dict)
    city_price_averages: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MarketStatistics":
        """
        Raises:
            ValueError: if average_price is not positive or a nested table is
                not a mapping
        """
        for key in ("price_range", "property_type_distribution", "city_price_averages"):
            if not isinstance(data.get(key, {}), Mapping):
                raise ValueError(f"market_statistics.{key} must be a mapping")
        if not float(data["average_price"]) > 0:
            raise ValueError("market_statistics.average_price must be positive")

        return cls(
            average_price=float(data["average_price"]),
            median_price=float(data["median_price"]),
            average_price_per_sqm=float(data["average_price_per_sqm"]),
            price_range={"min": float(data["price_range"]["min"]),
                         "max": float(data["price_range"]["max"])},
            average_surface=float(data["average_surface"]),
            most_common_rooms=int(data["most_common_rooms"]),
            property_type_distribution={str(k): float(v) for k, v in
                                        data.get("property_type_distribution", {}).items()},
            city_price_averages={str(k): float(v) for k, v in
                                 data.get("city_price_averages", {}).items()},
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Dataset:
    metadata: Dict[str, Any]
    properties: Tuple[PropertyRecord, ...]
    market_statistics: MarketStatistics

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Dataset":
        """
        Parse the seed JSON document {metadata, properties[], market_statistics}.

        Raises:
            KeyError, TypeError, ValueError: on a malformed payload
        """
        properties = tuple(PropertyRecord.from_dict(row) for row in payload["properties"])
        if not properties:
            raise ValueError("Seed dataset contains no properties")
        return cls(
            metadata=dict(payload.get("metadata", {})),
            properties=properties,
            market_statistics=MarketStatistics.from_dict(payload["market_statistics"]),
        )

    def __len__(self) -> int:
        return len(self.properties)

    def to_frame(self) -> pd.DataFrame:
        return records_to_frame(self.properties)


def records_to_frame(records: Sequence[PropertyRecord]) -> pd.DataFrame:
    columns = list(PropertyRecord.__dataclass_fields__)
    return pd.DataFrame([record.to_dict() for record in records], columns=columns)


def compute_market_statistics(records: Sequence[PropertyRecord]) -> MarketStatistics:
    """
    Descriptive statistics over a record collection.

    Args:
        records: Non-empty sequence of PropertyRecord

    Returns:
        MarketStatistics with the same fields as the seed document
    """
    if not records:
        raise ValueError("Cannot compute market statistics of an empty record set")

    df = records_to_frame(records)
    type_distribution = df['property_type'].value_counts(normalize=True)
    city_averages = df.groupby('location')['price'].mean()

    return MarketStatistics(
        average_price=float(df['price'].mean()),
        median_price=float(df['price'].median()),
        average_price_per_sqm=float(df['price_per_sqm'].mean()),
        price_range={"min": float(df['price'].min()), "max": float(df['price'].max())},
        average_surface=float(df['surface'].mean()),
        most_common_rooms=int(df['rooms'].mode().iloc[0]),
        property_type_distribution={str(k): float(v) for k, v in type_distribution.items()},
        city_price_averages={str(k): float(v) for k, v in city_averages.items()},
    )


# ==================== EXPANSION ====================

def vary_value(rng: np.random.Generator, base_value: float, variation_percent: float,
               min_value: int, max_value: int) -> int:
    """Multiply by a uniform factor in [1 - pct, 1 + pct], round, clamp."""
    variation = (rng.random() - 0.5) * 2 * variation_percent
    new_value = round_half_up(base_value * (1 + variation))
    return max(min_value, min(max_value, new_value))


def calculate_realistic_price(
    surface: float,
    rooms: float,
    bathrooms: float,
    construction_year: int,
    city: str,
    property_type: PropertyType,
    condition: Condition,
    has_garden: bool,
    has_parking: bool,
    stats: MarketStatistics,
    rng: np.random.Generator,
    year: Optional[int] = None,
) -> int:
    """
    Synthetic price used for expanded records.

    base 100,000 + surface×2,500 + rooms×12,000 + bathrooms×8,000 − age×500,
    scaled by location, type and condition multipliers, plus garden/parking
    premiums, ±5% random variance, floored at 50,000 and rounded to 1,000.
    """
    price = 100000.0
    price += surface * 2500
    price += rooms * 12000
    price += bathrooms * 8000
    price -= property_age(construction_year, year) * 500

    city_avg = stats.city_price_averages.get(city, stats.average_price)
    price *= city_avg / stats.average_price
    price *= TYPE_PRICE_MULTIPLIERS.get(property_type, 1.0)
    price *= CONDITION_PRICE_MULTIPLIERS.get(condition, 1.0)

    if has_garden:
        price += GARDEN_PREMIUM
    if has_parking:
        price += PARKING_PREMIUM

    variance = (rng.random() - 0.5) * 0.1
    price *= 1 + variance

    return finalize_price(price)


def _pick(rng: np.random.Generator, options: Sequence):
    return options[int(rng.integers(len(options)))]


def expand_dataset(
    seed: Dataset,
    rng: np.random.Generator,
    size: int = EXPANSION_SIZE,
    year: Optional[int] = None,
) -> Dataset:
    """
    Append `size` perturbed records to the seed.

    Base records are taken cyclically from the seed; numeric fields are
    perturbed and clamped per PERTURBATION_RULES, categorical fields and
    booleans are redrawn independently.
    """
    base_records = seed.properties
    stats = seed.market_statistics
    cities = list(stats.city_price_averages) or [loc.value for loc in Location.known()]
    property_types = PropertyType.known()
    conditions = Condition.known()

    expanded: List[PropertyRecord] = list(base_records)
    next_id = len(base_records) + 1

    for i in range(size):
        base = base_records[i % len(base_records)]
        varied = {
            name: vary_value(rng, getattr(base, name), pct, low, high)
            for name, (pct, low, high) in PERTURBATION_RULES.items()
        }
        city = _pick(rng, cities)
        property_type = _pick(rng, property_types)
        condition = _pick(rng, conditions)
        has_garden = bool(rng.random() > 0.4)
        has_parking = bool(rng.random() > 0.3)

        price = calculate_realistic_price(
            city=city,
            property_type=property_type,
            condition=condition,
            has_garden=has_garden,
            has_parking=has_parking,
            stats=stats,
            rng=rng,
            year=year,
            **varied,
        )
        expanded.append(PropertyRecord(
            id=next_id + i,
            location=Location.parse(city),
            property_type=property_type,
            condition=condition,
            has_garden=has_garden,
            has_parking=has_parking,
            price=price,
            **varied,
        ))

    metadata = dict(seed.metadata)
    metadata["total_properties"] = len(expanded)
    return replace(seed, metadata=metadata, properties=tuple(expanded))


# ==================== FALLBACK ====================

FALLBACK_CITIES = (
    Location.BRUSSELS,
    Location.ANTWERP,
    Location.GHENT,
    Location.BRUGES,
    Location.LEUVEN,
    Location.LIEGE,
    Location.CHARLEROI,
    Location.NAMUR,
)

FALLBACK_MARKET_STATISTICS = MarketStatistics(
    average_price=350000,
    median_price=320000,
    average_price_per_sqm=3200,
    price_range={"min": 150000, "max": 650000},
    average_surface=120,
    most_common_rooms=3,
    property_type_distribution={
        "apartment": 0.35,
        "house": 0.35,
        "townhouse": 0.15,
        "villa": 0.1,
        "studio": 0.05,
    },
    city_price_averages={
        "Brussels": 450000,
        "Antwerp": 380000,
        "Ghent": 320000,
        "Bruges": 410000,
        "Leuven": 390000,
        "Liège": 280000,
        "Charleroi": 220000,
        "Namur": 310000,
    },
)


def generate_fallback_dataset(rng: np.random.Generator, size: int = FALLBACK_SIZE) -> Dataset:
    """
    Purely random records with independent prices in [150,000, 650,000).

    Deliberately does not use the realistic pricing formula.
    """
    property_types = PropertyType.known()
    conditions = Condition.known()
    properties = []

    for i in range(1, size + 1):
        surface = int(rng.integers(40, 240))
        price = int(rng.integers(150000, 650000))
        properties.append(PropertyRecord(
            id=i,
            surface=surface,
            rooms=int(rng.integers(1, 7)),
            bathrooms=int(rng.integers(1, 4)),
            construction_year=int(rng.integers(1950, 2020)),
            location=_pick(rng, FALLBACK_CITIES),
            property_type=_pick(rng, property_types),
            condition=_pick(rng, conditions),
            has_garden=bool(rng.random() > 0.5),
            has_parking=bool(rng.random() > 0.3),
            price=price,
        ))

    metadata = {
        "description": "Fallback Belgian Real Estate Dataset",
        "total_properties": len(properties),
        "date_range": "2020-2024",
        "cities_covered": len(FALLBACK_CITIES),
        "last_updated": date.today().isoformat(),
        "fallback": True,
    }
    return Dataset(metadata=metadata, properties=tuple(properties),
                   market_statistics=FALLBACK_MARKET_STATISTICS)


# ==================== PROVIDER ====================

class DatasetProvider:
    """
    Loads the dataset once and hands the same object to every estimator.

    Construct one provider per service and pass it to the estimators that
    should share its cache.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: float = 30,
        retries: int = 2,
        retry_status_codes: Sequence[int] = RETRY_STATUS_CODES,
        expansion_size: int = EXPANSION_SIZE,
        fallback_size: int = FALLBACK_SIZE,
        rng: Optional[np.random.Generator] = None,
        session: Optional[requests.Session] = None,
        seed_payload: Optional[Mapping[str, Any]] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.retries = retries
        self.retry_status_codes = tuple(retry_status_codes)
        self.expansion_size = expansion_size
        self.fallback_size = fallback_size
        self.rng = rng if rng is not None else np.random.default_rng()
        self._session = session
        self._seed_payload = seed_payload
        self._dataset: Optional[Dataset] = None
        self._lock = threading.Lock()
        self.fetch_count = 0

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs) -> "DatasetProvider":
        dataset_cfg = config.get("dataset", {})
        seed = dataset_cfg.get("seed")
        return cls(
            url=dataset_cfg.get("url"),
            timeout=dataset_cfg.get("timeout_seconds", 30),
            retries=dataset_cfg.get("retries", 2),
            retry_status_codes=dataset_cfg.get("retry_status_codes", RETRY_STATUS_CODES),
            expansion_size=dataset_cfg.get("expansion_size", EXPANSION_SIZE),
            fallback_size=dataset_cfg.get("fallback_size", FALLBACK_SIZE),
            rng=np.random.default_rng(seed),
            **kwargs,
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], **kwargs) -> "DatasetProvider":
        """Provider around an already-parsed seed document (no HTTP)."""
        return cls(seed_payload=payload, **kwargs)

    @property
    def is_loaded(self) -> bool:
        return self._dataset is not None

    def load(self) -> Dataset:
        """Return the cached dataset, populating it on first call."""
        dataset = self._dataset
        if dataset is not None:
            return dataset

        with self._lock:
            if self._dataset is None:
                self._dataset = self._build()
            return self._dataset

    def reset(self) -> None:
        with self._lock:
            self._dataset = None

    def _build(self) -> Dataset:
        try:
            seed = Dataset.from_payload(self._fetch_seed())
            dataset = expand_dataset(seed, self.rng, self.expansion_size)
        except (requests.RequestException, KeyError, TypeError, ValueError) as e:
            logger.warning("Error loading real estate data (%s), using fallback dataset", e)
            dataset = generate_fallback_dataset(self.rng, self.fallback_size)
            logger.info("Generated %d fallback properties", len(dataset))
            return dataset

        logger.info("Expanded %d seed properties to %d", len(seed), len(dataset))
        return dataset

    def _fetch_seed(self) -> Mapping[str, Any]:
        if self._seed_payload is not None:
            return self._seed_payload
        if not self.url:
            raise ValueError("No dataset URL configured")

        self.fetch_count += 1
        session = self._session or self._build_session()
        logger.info("Fetching seed dataset from %s", self.url)
        response = session.get(self.url, timeout=self.timeout)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("Seed dataset must be a JSON object")
        return payload

    def _build_session(self) -> requests.Session:
        retry = Retry(
            total=self.retries,
            status_forcelist=self.retry_status_codes,
            allowed_methods=frozenset(["GET"]),
            backoff_factor=0.3,
            raise_on_status=False,
        )
        session = requests.Session()
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session
