"""Shape adapter for hand-curated hotel and logistics files.

The hotel master arrives either as a flat list of records or as a nested
countries -> cities -> hotels tree (lists or name-keyed mappings at each
level); logistics rules keep their route list under `routes`, `segments`, or
at the top level. Everything that guesses at those shapes lives here:
classify the raw JSON into a tagged intermediate form, then normalize it into
HotelEntry / RouteRule values. Malformed records are skipped, never raised.
"""

import re
from dataclasses import dataclass, field
from typing import Any

from tourpro.core.logging import get_logger
from tourpro.core.schemas import HotelEntry

logger = get_logger(__name__)

NAME_KEYS = ("name", "hotel_name", "hotelName", "hotel", "title")
CITY_KEYS = ("city", "location", "destination", "town")
CATEGORY_KEYS = ("category", "type", "segment", "class")
STARS_KEYS = ("stars", "star_rating", "starRating", "rating")
TAG_KEYS = ("tags", "themes", "interests")
DESCRIPTION_KEYS = ("description", "desc", "summary", "notes", "highlights")
PRICE_KEYS = ("price_range", "priceRange", "price", "rate")

ROUTE_FROM_KEYS = ("from", "departure", "origin")
ROUTE_TO_KEYS = ("to", "arrival", "destination")
ROUTE_LIST_KEYS = ("routes", "segments")

# keyword -> inferred tags, matched against name + category + description
TAG_KEYWORDS: list[tuple[tuple[str, ...], tuple[str, ...]]] = [
    (("spa", "wellness", "massage", "yoga", "retreat"), ("wellness",)),
    (("beach", "resort", "island", "bay", "seaside"), ("beach", "relaxation")),
    (("heritage", "colonial", "historic", "old quarter", "ancient"), ("culture", "heritage")),
    (("family", "kids", "children"), ("family",)),
    (("honeymoon", "romantic", "couples"), ("romance", "honeymoon")),
    (("eco", "jungle", "mountain", "lodge", "river", "nature"), ("nature",)),
    (("boutique",), ("boutique",)),
    (("trek", "adventure", "homestay"), ("adventure",)),
    (("cuisine", "culinary", "gastronomy", "restaurant"), ("food",)),
]
LUXURY_STARS = 5.0
BUDGET_STARS = 3.0


# =============================================================================
# Tagged intermediate forms
# =============================================================================


@dataclass(frozen=True)
class FlatHotelList:
    """Records that each carry their own city."""

    records: list[Any]


@dataclass(frozen=True)
class NestedHotelTree:
    """(country, city, records) triples flattened out of a tree."""

    groups: list[tuple[str, str, list[Any]]]


@dataclass(frozen=True)
class UnknownShape:
    """Input that matches no known layout."""

    reason: str


HotelShape = FlatHotelList | NestedHotelTree | UnknownShape


@dataclass
class RouteRule:
    """One logistics record with its resolved endpoints."""

    origin: str
    destination: str
    record: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Field helpers
# =============================================================================


def _first(record: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = record.get(key)
        if value not in (None, "", []):
            return value
    return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_stars(value: Any) -> float | None:
    """Parse 4, "4", "4.5", "5*", "5 stars" or "★★★★" into a float; None otherwise."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    text = str(value).strip()
    if text and set(text) == {"★"}:
        return float(len(text))
    match = re.search(r"\d+(?:\.\d+)?", text)
    if not match:
        return None
    stars = float(match.group())
    return stars if stars > 0 else None


def _dedupe(tags: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for tag in tags:
        key = tag.strip().lower()
        if key and key not in seen:
            seen.add(key)
            result.append(tag.strip())
    return result


def _explicit_tags(value: Any) -> list[str]:
    if isinstance(value, str):
        return [part for part in re.split(r"[,;|]", value) if part.strip()]
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None and str(item).strip()]
    return []


def infer_tags(name: str, description: str | None, category: str | None, stars: float | None) -> list[str]:
    """Best-effort classification tags from free text and star rating."""
    haystack = " ".join(part for part in (name, category, description) if part).lower()
    tags: list[str] = []
    for keywords, inferred in TAG_KEYWORDS:
        if any(keyword in haystack for keyword in keywords):
            tags.extend(inferred)
    if stars is not None:
        if stars >= LUXURY_STARS:
            tags.append("luxury")
        elif stars <= BUDGET_STARS:
            tags.append("budget")
    return _dedupe(tags)


# =============================================================================
# Hotels
# =============================================================================


def _named_children(node: Any, child_key: str) -> list[tuple[str, Any]] | None:
    """Children of a tree level as (name, payload), from a list or a name-keyed mapping."""
    children = node.get(child_key) if isinstance(node, dict) else None
    if isinstance(children, list):
        pairs = []
        for child in children:
            if isinstance(child, dict):
                pairs.append((str(_first(child, ("name", "country", "city")) or ""), child))
        return pairs
    if isinstance(children, dict):
        return [(str(name), payload) for name, payload in children.items()]
    return None


def _city_records(payload: Any) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        hotels = payload.get("hotels")
        if isinstance(hotels, list):
            return hotels
    return []


def classify_hotel_shape(raw: Any) -> HotelShape:
    """Decide which known layout the raw hotel master uses."""
    if isinstance(raw, list):
        return FlatHotelList(records=raw)
    if not isinstance(raw, dict):
        return UnknownShape(reason=f"unsupported top-level type {type(raw).__name__}")

    if isinstance(raw.get("hotels"), list):
        return FlatHotelList(records=raw["hotels"])

    countries = _named_children(raw, "countries")
    if countries is None:
        # Bare mapping: {"Vietnam": {"Hanoi": [...]}} or {"Vietnam": {"cities": ...}}
        countries = [(str(name), payload) for name, payload in raw.items() if isinstance(payload, dict)]
        if not countries:
            return UnknownShape(reason="no hotels, countries or country mapping")

    groups: list[tuple[str, str, list[Any]]] = []
    for country, payload in countries:
        cities = _named_children(payload, "cities")
        if cities is None and isinstance(payload, dict):
            cities = [(str(name), value) for name, value in payload.items() if name != "name"]
        for city, city_payload in cities or []:
            groups.append((country, city, _city_records(city_payload)))

    if not groups:
        return UnknownShape(reason="tree contains no cities")
    return NestedHotelTree(groups=groups)


def _to_hotel(record: Any, city_hint: str | None = None) -> HotelEntry | None:
    if not isinstance(record, dict):
        return None
    name = _text(_first(record, NAME_KEYS))
    city = _text(_first(record, CITY_KEYS)) or _text(city_hint)
    if not name or not city:
        return None

    category = _text(_first(record, CATEGORY_KEYS)) or ""
    stars = parse_stars(_first(record, STARS_KEYS))
    description = _text(_first(record, DESCRIPTION_KEYS))
    tags = _dedupe(_explicit_tags(_first(record, TAG_KEYS)))
    if not tags:
        tags = infer_tags(name, description, category, stars)

    return HotelEntry(
        name=name,
        city=city,
        category=category,
        stars=stars,
        tags=tags,
        description=description,
        price_range=_text(_first(record, PRICE_KEYS)),
    )


def normalize_hotels(raw: Any) -> list[HotelEntry]:
    """Normalize any known hotel master layout into HotelEntry values."""
    shape = classify_hotel_shape(raw)
    hotels: list[HotelEntry] = []
    skipped = 0

    if isinstance(shape, FlatHotelList):
        candidates = [(record, None) for record in shape.records]
    elif isinstance(shape, NestedHotelTree):
        candidates = [(record, city) for _, city, records in shape.groups for record in records]
    else:
        logger.warning(f"Hotel master not recognised: {shape.reason}")
        return []

    for record, city in candidates:
        try:
            hotel = _to_hotel(record, city)
        except (TypeError, ValueError) as e:
            logger.debug(f"Skipping malformed hotel record: {e}")
            hotel = None
        if hotel is None:
            skipped += 1
        else:
            hotels.append(hotel)

    if skipped:
        logger.warning(f"Skipped {skipped} malformed hotel records")
    return hotels


# =============================================================================
# Logistics
# =============================================================================


def normalize_routes(rules: Any) -> list[RouteRule]:
    """Extract route records from `routes`, `segments`, or a bare list."""
    if isinstance(rules, dict):
        routes = next(
            (rules[key] for key in ROUTE_LIST_KEYS if isinstance(rules.get(key), list)), None
        )
    elif isinstance(rules, list):
        routes = rules
    else:
        routes = None

    if routes is None:
        return []

    result = []
    for record in routes:
        if not isinstance(record, dict):
            continue
        origin = _text(_first(record, ROUTE_FROM_KEYS))
        destination = _text(_first(record, ROUTE_TO_KEYS))
        if origin and destination:
            result.append(RouteRule(origin=origin, destination=destination, record=record))
    return result
