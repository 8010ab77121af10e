"""
Geo resolution from edge/proxy headers.

CloudFront, Cloudflare and Vercel each expose the viewer's country, region,
city and coordinates under their own header names. `extract_geo` normalizes
them into a GeoInfo. `GeoResolver` adds nearest-city enrichment from the
bundled city dataset and the optional privacy transform, which must run
before anything is persisted.
"""

import json
import logging
import math
from functools import lru_cache
from importlib import resources
from typing import Dict, List, Mapping, Optional, Tuple
from urllib.parse import unquote

from pydantic import BaseModel

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
ENRICH_RADIUS_KM = 50.0
UNKNOWN_COUNTRY = "XX"

COUNTRY_NAMES = {
    "US": "United States", "GB": "United Kingdom", "CA": "Canada", "AU": "Australia",
    "DE": "Germany", "FR": "France", "JP": "Japan", "CN": "China", "IN": "India",
    "BR": "Brazil", "MX": "Mexico", "ES": "Spain", "IT": "Italy", "NL": "Netherlands",
    "SE": "Sweden", "NO": "Norway", "DK": "Denmark", "FI": "Finland", "CH": "Switzerland",
    "AT": "Austria", "BE": "Belgium", "PL": "Poland", "RU": "Russia", "KR": "South Korea",
    "SG": "Singapore", "HK": "Hong Kong", "TW": "Taiwan", "NZ": "New Zealand",
    "IE": "Ireland", "PT": "Portugal", "CZ": "Czech Republic", "GR": "Greece",
    "IL": "Israel", "ZA": "South Africa", "AR": "Argentina", "CL": "Chile",
    "CO": "Colombia", "PH": "Philippines", "TH": "Thailand", "MY": "Malaysia",
    "ID": "Indonesia", "VN": "Vietnam", "AE": "UAE", "SA": "Saudi Arabia",
    "TR": "Turkey", "UA": "Ukraine", "RO": "Romania", "HU": "Hungary",
}

# Header names per edge provider, checked in this order.
_PROVIDER_HEADERS = [
    (
        "cloudfront",
        {
            "country_code": "cloudfront-viewer-country",
            "region_code": "cloudfront-viewer-country-region",
            "region": "cloudfront-viewer-country-region-name",
            "city": "cloudfront-viewer-city",
            "postal_code": "cloudfront-viewer-postal-code",
            "metro": "cloudfront-viewer-metro-code",
            "latitude": "cloudfront-viewer-latitude",
            "longitude": "cloudfront-viewer-longitude",
            "timezone": "cloudfront-viewer-time-zone",
        },
    ),
    (
        "cloudflare",
        {
            "country_code": "cf-ipcountry",
            "region_code": "cf-region-code",
            "region": "cf-region",
            "city": "cf-ipcity",
            "postal_code": "cf-postal-code",
            "metro": "cf-metro-code",
            "latitude": "cf-iplat",
            "longitude": "cf-iplon",
            "timezone": "cf-timezone",
        },
    ),
    (
        "vercel",
        {
            "country_code": "x-vercel-ip-country",
            "region_code": "x-vercel-ip-country-region",
            "city": "x-vercel-ip-city",
            "latitude": "x-vercel-ip-latitude",
            "longitude": "x-vercel-ip-longitude",
            "timezone": "x-vercel-ip-timezone",
        },
    ),
]


class GeoInfo(BaseModel):
    country_code: Optional[str] = None
    country: Optional[str] = None
    region_code: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    metro: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None
    source: Optional[str] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


def country_name(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    code = code.upper()
    return COUNTRY_NAMES.get(code, code)


def _parse_float(value: Optional[str]) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def extract_geo(headers: Optional[Mapping[str, str]]) -> Optional[GeoInfo]:
    """
    Build a GeoInfo from request headers, or None when no geo headers are present.

    Header names are matched case-insensitively. A country of "XX" (unknown to
    the edge) is treated as absent.
    """
    if not headers:
        return None
    lowered = {k.lower(): v for k, v in headers.items() if v is not None}

    for source, names in _PROVIDER_HEADERS:
        code = (lowered.get(names["country_code"]) or "").strip().upper()
        if not code or code == UNKNOWN_COUNTRY:
            continue

        values = {field: lowered.get(header) for field, header in names.items()}
        city = values.get("city")
        if city and source == "vercel":
            city = unquote(city)

        return GeoInfo(
            country_code=code,
            country=country_name(code),
            region_code=values.get("region_code") or None,
            region=values.get("region") or None,
            city=city or None,
            postal_code=values.get("postal_code") or None,
            metro=values.get("metro") or None,
            latitude=_parse_float(values.get("latitude")),
            longitude=_parse_float(values.get("longitude")),
            timezone=values.get("timezone") or None,
            source=source,
        )

    code = (lowered.get("x-country-code") or "").strip().upper()
    if code and code != UNKNOWN_COUNTRY:
        return GeoInfo(country_code=code, country=country_name(code), source="header")
    return None


def apply_privacy(geo: GeoInfo) -> GeoInfo:
    """Drop city-level fields and round coordinates to whole degrees. Lossy and one-way."""
    return geo.model_copy(
        update={
            "city": None,
            "postal_code": None,
            "metro": None,
            "latitude": float(round(geo.latitude)) if geo.latitude is not None else None,
            "longitude": float(round(geo.longitude)) if geo.longitude is not None else None,
        }
    )


def format_geo_location(geo: Optional[GeoInfo]) -> str:
    """"City, Region, Country" with whatever parts are known."""
    if geo is None:
        return "Unknown"
    parts = [geo.city, geo.region or geo.region_code, geo.country or geo.country_code]
    text = ", ".join(part for part in parts if part)
    return text or "Unknown"


def format_geo_location_short(geo: Optional[GeoInfo]) -> str:
    if geo is None:
        return "Unknown"
    if geo.city and geo.region_code:
        return f"{geo.city}, {geo.region_code}"
    return geo.city or geo.region or geo.country or geo.country_code or "Unknown"


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometers."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


class City(BaseModel):
    id: str
    name: str
    country_code: str
    state: Optional[str] = None
    metro: Optional[str] = None
    latitude: float
    longitude: float
    population: int = 0
    timezone: Optional[str] = None


class CityDataset:
    """Static per-country city list with id, name, state, metro and distance lookups."""

    def __init__(self, cities_by_country: Dict[str, List[City]]):
        self._by_country = {code.upper(): list(cities) for code, cities in cities_by_country.items()}
        self._by_id = {city.id: city for cities in self._by_country.values() for city in cities}

    @classmethod
    def from_json(cls, raw: Dict[str, list]) -> "CityDataset":
        return cls(
            {
                code: [City(country_code=code.upper(), **entry) for entry in entries]
                for code, entries in raw.items()
            }
        )

    def countries(self) -> List[str]:
        return list(self._by_country)

    def cities(self, country_code: Optional[str] = None) -> List[City]:
        if country_code is None:
            return [city for cities in self._by_country.values() for city in cities]
        return list(self._by_country.get(country_code.upper(), []))

    def get(self, city_id: str) -> Optional[City]:
        return self._by_id.get(city_id)

    def search(self, country_code: str, query: str) -> List[City]:
        """Case-insensitive name search; exact name matches sort first."""
        q = query.strip().lower()
        if not q:
            return []
        matches = [city for city in self.cities(country_code) if q in city.name.lower()]
        return sorted(matches, key=lambda city: city.name.lower() != q)

    def by_state(self, country_code: str, state: str) -> List[City]:
        return [c for c in self.cities(country_code) if c.state and c.state.lower() == state.lower()]

    def by_metro(self, country_code: str, metro: str) -> List[City]:
        return [c for c in self.cities(country_code) if c.metro and c.metro.lower() == metro.lower()]

    def largest(self, country_code: str, k: int) -> List[City]:
        """The k most populous cities in a country."""
        return sorted(self.cities(country_code), key=lambda city: -city.population)[: max(k, 0)]

    def nearest(
        self, latitude: float, longitude: float, country_code: Optional[str] = None
    ) -> Optional[Tuple[City, float]]:
        """
        Closest city to a coordinate as (city, distance_km).

        Equal distances resolve to the city listed first in the dataset.
        """
        best = None
        for city in self.cities(country_code):
            distance = haversine_km(latitude, longitude, city.latitude, city.longitude)
            if best is None or distance < best[1]:
                best = (city, distance)
        return best

    def within_radius(
        self, latitude: float, longitude: float, radius_km: float, country_code: Optional[str] = None
    ) -> List[Tuple[City, float]]:
        """All cities at most radius_km away, nearest first."""
        hits = []
        for city in self.cities(country_code):
            distance = haversine_km(latitude, longitude, city.latitude, city.longitude)
            if distance <= radius_km:
                hits.append((city, distance))
        return sorted(hits, key=lambda hit: hit[1])


@lru_cache(maxsize=1)
def load_city_dataset() -> CityDataset:
    """Load the bundled city data once per container."""
    path = resources.files("analytics_collector").joinpath("data/cities.json")
    raw = json.loads(path.read_text(encoding="utf-8"))
    dataset = CityDataset.from_json(raw)
    logger.debug(f"Loaded {len(dataset.cities())} cities for {len(dataset.countries())} countries")
    return dataset


class GeoResolver:
    """Headers in, persisted-safe GeoInfo out."""

    def __init__(self, privacy_mode: bool = False, dataset: Optional[CityDataset] = None):
        self.privacy_mode = privacy_mode
        self._dataset = dataset

    @property
    def dataset(self) -> CityDataset:
        if self._dataset is None:
            self._dataset = load_city_dataset()
        return self._dataset

    def enrich(self, geo: GeoInfo) -> GeoInfo:
        if geo.city or not geo.has_coordinates:
            return geo
        hit = self.dataset.nearest(geo.latitude, geo.longitude, geo.country_code)
        if hit is None or hit[1] > ENRICH_RADIUS_KM:
            return geo
        city, _ = hit
        return geo.model_copy(
            update={
                "city": city.name,
                "region_code": geo.region_code or city.state,
                "metro": geo.metro or city.metro,
                "timezone": geo.timezone or city.timezone,
            }
        )

    def resolve(self, headers: Optional[Mapping[str, str]]) -> Optional[GeoInfo]:
        geo = extract_geo(headers)
        if geo is None:
            return None
        geo = self.enrich(geo)
        if self.privacy_mode:
            geo = apply_privacy(geo)
        return geo
