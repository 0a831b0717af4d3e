"""Structured Knowledge Hub: authoritative brand, principle, logistics and hotel data.

The four files outrank anything retrieved from the vector index. They are
loaded once per cache lifetime (remote store first, local directory only if
the remote yields nothing at all) and the cache is dropped after every save.
"""

import json
import logging
import re
from functools import lru_cache
from typing import Any

from tourpro.core.knowledge_shapes import normalize_hotels, normalize_routes
from tourpro.core.logging import get_logger, log_with_context
from tourpro.core.schemas import HotelEntry, StructuredKnowledge, TravelStyle
from tourpro.db.structured_store import StructuredStore, StructuredStoreError, get_structured_stores

logger = get_logger(__name__)

BRAND_FILE = "1_brand_guidelines.md"
PRINCIPLES_FILE = "2_core_principles.md"
LOGISTICS_FILE = "3_logistics_rules.json"
HOTELS_FILE = "4_hotel_master.json"

STRUCTURED_FILES = (BRAND_FILE, PRINCIPLES_FILE, LOGISTICS_FILE, HOTELS_FILE)

# Filename pattern -> canonical slot file
_SLOT_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"brand[\s_-]*guidelines?", re.IGNORECASE), BRAND_FILE),
    (re.compile(r"core[\s_-]*principles?", re.IGNORECASE), PRINCIPLES_FILE),
    (re.compile(r"logistics?[\s_-]*rules?", re.IGNORECASE), LOGISTICS_FILE),
    (re.compile(r"hotel[\s_-]*master", re.IGNORECASE), HOTELS_FILE),
]

TRUNCATION_MARKER = "\n... [truncated - use route-specific lookup]"


def classify_structured_file(filename: str) -> str | None:
    """Map an uploaded filename to its canonical structured slot, if any."""
    for pattern, canonical in _SLOT_PATTERNS:
        if pattern.search(filename):
            return canonical
    return None


class KnowledgeCache:
    """In-process cache for one StructuredKnowledge aggregate."""

    def __init__(self) -> None:
        self._value: StructuredKnowledge | None = None

    def get(self) -> StructuredKnowledge | None:
        return self._value

    def set(self, value: StructuredKnowledge) -> None:
        self._value = value

    def invalidate(self) -> None:
        self._value = None


class KnowledgeHub:
    """Loads, caches and saves the structured knowledge files."""

    def __init__(
        self,
        local: StructuredStore,
        remote: StructuredStore | None = None,
        cache: KnowledgeCache | None = None,
    ):
        self.local = local
        self.remote = remote
        self.cache = cache or KnowledgeCache()

    async def load(self) -> StructuredKnowledge:
        """
        Return the cached aggregate, loading it on a cache miss.

        The local directory is consulted only when the remote store yields a
        completely empty aggregate; fields are never mixed across stores.
        """
        cached = self.cache.get()
        if cached is not None:
            return cached

        knowledge = StructuredKnowledge()
        if self.remote is not None:
            knowledge = await self._load_from(self.remote)
        if knowledge.is_empty:
            if self.remote is not None:
                logger.info("Remote structured store empty, falling back to local files")
            knowledge = await self._load_from(self.local)

        self.cache.set(knowledge)
        log_with_context(
            logger,
            logging.INFO,
            "Structured knowledge loaded",
            brand=bool(knowledge.brand_guidelines),
            principles=bool(knowledge.core_principles),
            logistics=knowledge.logistics_rules is not None,
            hotels=len(knowledge.hotel_master),
        )
        return knowledge

    def invalidate(self) -> None:
        """Drop the cache; the next load re-fetches."""
        self.cache.invalidate()

    async def _read(self, store: StructuredStore, filename: str) -> str | None:
        try:
            return await store.get(filename)
        except StructuredStoreError as e:
            logger.warning(f"Failed to read {filename} from {store.name} store: {e}")
            return None

    async def _load_from(self, store: StructuredStore) -> StructuredKnowledge:
        brand = await self._read(store, BRAND_FILE)
        principles = await self._read(store, PRINCIPLES_FILE)
        logistics_raw = await self._read(store, LOGISTICS_FILE)
        hotels_raw = await self._read(store, HOTELS_FILE)

        logistics: Any = None
        if logistics_raw and logistics_raw.strip():
            try:
                logistics = json.loads(logistics_raw)
            except json.JSONDecodeError:
                # Kept verbatim; the knowledge block embeds it as text
                logistics = logistics_raw

        hotels: list[HotelEntry] = []
        if hotels_raw and hotels_raw.strip():
            try:
                hotels = normalize_hotels(json.loads(hotels_raw))
            except json.JSONDecodeError as e:
                logger.warning(f"Hotel master in {store.name} store is not valid JSON: {e}")

        return StructuredKnowledge(
            brand_guidelines=brand.strip() if brand and brand.strip() else None,
            core_principles=principles.strip() if principles and principles.strip() else None,
            logistics_rules=logistics,
            hotel_master=hotels,
        )

    async def save(self, filename: str, content: str | bytes) -> str:
        """
        Store a structured file under its canonical slot name.

        Writes to the remote store when configured, falling back to local disk
        if that write fails. The cache is invalidated afterwards in every case.

        Returns:
            Canonical filename the content was saved as

        Raises:
            ValueError: If the filename matches no structured slot
            StructuredStoreError: If no store accepted the write
        """
        canonical = classify_structured_file(filename)
        if canonical is None:
            raise ValueError(f"{filename} is not a recognised structured knowledge file")

        text = content.decode("utf-8-sig") if isinstance(content, bytes) else content

        try:
            if self.remote is not None:
                try:
                    await self.remote.upsert(canonical, text)
                    logger.info(f"Saved {canonical} to {self.remote.name} store")
                    return canonical
                except StructuredStoreError as e:
                    logger.warning(f"Remote save of {canonical} failed, writing locally: {e}")
            await self.local.upsert(canonical, text)
            logger.info(f"Saved {canonical} to {self.local.name} store")
            return canonical
        finally:
            self.invalidate()

    async def present_files(self) -> list[str]:
        """Canonical structured files available in either store."""
        found: set[str] = set()
        for store in (self.remote, self.local):
            if store is None:
                continue
            try:
                found.update(await store.list())
            except StructuredStoreError as e:
                logger.warning(f"Failed to list {store.name} store: {e}")
        return [name for name in STRUCTURED_FILES if name in found]


@lru_cache(maxsize=1)
def get_knowledge_hub() -> KnowledgeHub:
    """Process-wide hub over the configured stores."""
    remote, local = get_structured_stores()
    return KnowledgeHub(local=local, remote=remote)


# =============================================================================
# Query helpers
# =============================================================================


def _interest_matches(tag: str, interests: list[str]) -> bool:
    tag_lower = tag.lower()
    return any(i in tag_lower or tag_lower in i for i in interests)


def match_hotels(
    hotels: list[HotelEntry] | None,
    interests: list[str],
    city: str | None = None,
    travel_style: TravelStyle | str | None = None,
) -> list[HotelEntry]:
    """
    Filter hotels by city and travel style, ranked by interest-tag overlap.

    Budget excludes hotels above 3 stars, Luxury excludes hotels below 4
    stars; unrated hotels pass both. Ties keep their original order.
    """
    if not hotels:
        return []

    style = travel_style.value if isinstance(travel_style, TravelStyle) else travel_style
    city_lower = city.lower() if city else None
    interest_lower = [i.lower() for i in interests if i and i.strip()]

    candidates = []
    for hotel in hotels:
        if city_lower and city_lower not in hotel.city.lower():
            continue
        if hotel.stars is not None:
            if style == TravelStyle.BUDGET.value and hotel.stars > 3:
                continue
            if style == TravelStyle.LUXURY.value and hotel.stars < 4:
                continue
        candidates.append(hotel)

    def score(hotel: HotelEntry) -> int:
        return sum(1 for tag in hotel.tags if _interest_matches(tag, interest_lower))

    return sorted(candidates, key=score, reverse=True)


def lookup_logistics(rules: Any, origin: str, destination: str) -> dict[str, Any] | None:
    """First route record whose endpoints match origin/destination (substring, either direction)."""
    if not rules or not origin or not destination:
        return None

    origin_lower = origin.lower()
    destination_lower = destination.lower()

    for route in normalize_routes(rules):
        route_from = route.origin.lower()
        route_to = route.destination.lower()
        if (route_from in origin_lower or origin_lower in route_from) and (
            route_to in destination_lower or destination_lower in route_to
        ):
            return route.record
    return None


def _format_stars(stars: float | None) -> str:
    if stars is None:
        return "?"
    return str(int(stars)) if float(stars).is_integer() else f"{stars:g}"


def format_hotel_line(hotel: HotelEntry) -> str:
    tags = ", ".join(hotel.tags) if hotel.tags else "-"
    return f"- {hotel.name} ({hotel.city}) | {_format_stars(hotel.stars)} stars | Tags: {tags}"


def build_knowledge_block(
    knowledge: StructuredKnowledge,
    max_logistics_chars: int = 4000,
    hotel_limit: int = 50,
) -> str:
    """
    Render present sections in fixed order: brand, principles, logistics, hotels.

    Returns an empty string when nothing is loaded.
    """
    sections: list[str] = []

    if knowledge.brand_guidelines:
        sections.append(f"=== BRAND GUIDELINES (MANDATORY) ===\n{knowledge.brand_guidelines}")

    if knowledge.core_principles:
        sections.append(f"=== CORE PRINCIPLES (MANDATORY) ===\n{knowledge.core_principles}")

    if knowledge.logistics_rules:
        rules = knowledge.logistics_rules
        text = rules if isinstance(rules, str) else json.dumps(rules, indent=2, ensure_ascii=False)
        if len(text) > max_logistics_chars:
            text = text[:max_logistics_chars] + TRUNCATION_MARKER
        sections.append(f"=== LOGISTICS RULES (HIGHEST PRIORITY for Transport) ===\n{text}")

    if knowledge.hotel_master:
        summary = "\n".join(format_hotel_line(h) for h in knowledge.hotel_master[:hotel_limit])
        sections.append(
            f"=== HOTEL MASTER DATABASE (Use for accommodation selection) ===\n{summary}"
        )

    if not sections:
        return ""

    body = "\n\n".join(sections)
    return (
        "--- STRUCTURED KNOWLEDGE HUB (Supreme Authority) ---\n"
        f"{body}\n"
        "--- END KNOWLEDGE HUB ---"
    )
