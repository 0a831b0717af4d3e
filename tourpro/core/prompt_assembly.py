"""Context assembly and prompt builders for itinerary generation.

Prompt layout is fixed: the system message carries the persona followed by
the structured knowledge (brand, principles, logistics, hotels, then the
per-destination hotel and route matches); retrieved passages only appear
afterwards, in the user message.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

from tourpro.core.config import Settings, get_settings
from tourpro.core.knowledge_hub import (
    KnowledgeHub,
    build_knowledge_block,
    format_hotel_line,
    lookup_logistics,
    match_hotels,
)
from tourpro.core.logging import get_logger
from tourpro.core.retrieval import Retriever
from tourpro.core.schemas import (
    ChatTurn,
    HotelEntry,
    Itinerary,
    ItineraryRequest,
    StructuredKnowledge,
    VectorMatch,
)

logger = get_logger(__name__)

# ruff: noqa: E501
SYSTEM_PROMPT = """You are a master Indochina tour planner with 20 years of experience.
You build DETAILED, REALISTIC day-by-day itineraries grounded in a library of past tour programs.

MANDATORY RULES:
- Every day MUST include: highlights, experience, pickup_place, pickup_time, dropoff_place, dropoff_time, meals (breakfast/lunch/dinner), transportation, hotel, image_keyword
- "highlights" lists the key places of the day separated by " | "
- "experience" blends a step-by-step schedule (specific times and actions) with an evocative narrative
- Use REAL places, restaurants and hotels; prefer hotels from the HOTEL MASTER DATABASE
- Meals: name the restaurant, or write "Included" / "Not Included"
- Transportation: vehicle / train / flight, operator, departure and arrival with times, service class
- The STRUCTURED KNOWLEDGE HUB below is the supreme authority and overrides reference material
- All output in professional English

Return PURE JSON only. No markdown, no commentary."""

DAY_SCHEMA = """{
  "title": "Journey title",
  "subtitle": "Short tagline",
  "overview": "2-3 sentence overview",
  "highlights": ["highlight 1", "highlight 2", "highlight 3"],
  "days": [
    {
      "day_number": 1,
      "highlights": "Old Quarter | Hoan Kiem Lake | Water Puppet Show",
      "experience": "08:00 Pick-up at the hotel... evocative narrative of the day",
      "pickup_place": "Hotel or exact meeting point",
      "pickup_time": "08:00",
      "dropoff_place": "Hotel or exact end point",
      "dropoff_time": "20:00",
      "meals": {"breakfast": "Included", "lunch": "Restaurant X - local specialities", "dinner": "Not Included"},
      "transportation": [
        {"type": "Car", "operator": "Private 7-seat car", "departure": "Hanoi", "arrival": "Ninh Binh", "etd": "08:00", "eta": "10:30", "class": "Private", "notes": "English-speaking driver"}
      ],
      "hotel": "Hotel name for the night",
      "image_keyword": "Ninh Binh landscape",
      "activities": ["Trang An boat ride"],
      "notes": "Optional practical notes"
    }
  ]
}"""


@dataclass
class RouteLogistics:
    """A matched logistics record for one leg of the trip."""

    origin: str
    destination: str
    record: dict[str, Any]


@dataclass
class GenerationContext:
    """Everything fetched before the generation call."""

    knowledge: StructuredKnowledge
    knowledge_block: str
    passages: list[VectorMatch] = field(default_factory=list)
    hotel_suggestions: dict[str, list[HotelEntry]] = field(default_factory=dict)
    route_logistics: list[RouteLogistics] = field(default_factory=list)

    @property
    def rag_sources(self) -> list[str]:
        """Distinct source names of the retrieved passages, in rank order."""
        sources: list[str] = []
        for passage in self.passages:
            source = passage.metadata.get("source")
            if source and source not in sources:
                sources.append(source)
        if not sources and self.passages:
            return [f"{len(self.passages)} passages from database"]
        return sources


def build_rag_query(request: ItineraryRequest) -> str:
    """Free-text retrieval query from destinations, interests and duration."""
    return " ".join(
        [*request.destinations, *request.interests, f"{request.duration} day tour"]
    ).strip()


def _trip_legs(request: ItineraryRequest) -> list[tuple[str, str]]:
    stops = [request.start_point, *request.destinations]
    return [(a, b) for a, b in zip(stops, stops[1:]) if a and b and a.lower() != b.lower()]


async def assemble_context(
    request: ItineraryRequest,
    retriever: Retriever,
    hub: KnowledgeHub,
    settings: Settings | None = None,
) -> GenerationContext:
    """Run retrieval and the knowledge load concurrently, then derive matches."""
    settings = settings or get_settings()

    passages, knowledge = await asyncio.gather(
        retriever.search(build_rag_query(request), settings.RAG_TOP_K),
        hub.load(),
    )

    suggestions = {}
    for destination in request.destinations:
        matched = match_hotels(
            knowledge.hotel_master,
            request.interests,
            city=destination,
            travel_style=request.travel_style,
        )
        if matched:
            suggestions[destination] = matched[: settings.HOTEL_SUGGESTIONS_PER_CITY]

    routes = []
    for origin, destination in _trip_legs(request):
        record = lookup_logistics(knowledge.logistics_rules, origin, destination)
        if record is not None:
            routes.append(RouteLogistics(origin=origin, destination=destination, record=record))

    logger.info(
        f"Context assembled: {len(passages)} passages, {len(suggestions)} cities with hotels, "
        f"{len(routes)} route rules"
    )

    return GenerationContext(
        knowledge=knowledge,
        knowledge_block=build_knowledge_block(
            knowledge,
            max_logistics_chars=settings.LOGISTICS_MAX_CHARS,
            hotel_limit=settings.HOTEL_SUMMARY_LIMIT,
        ),
        passages=passages,
        hotel_suggestions=suggestions,
        route_logistics=routes,
    )


def build_system_prompt(context: GenerationContext, persona: str = SYSTEM_PROMPT) -> str:
    """Persona, then structured knowledge, then per-trip matches."""
    parts = [persona]
    if context.knowledge_block:
        parts.append(context.knowledge_block)

    if context.hotel_suggestions:
        lines = ["=== RECOMMENDED HOTELS FOR THIS TRIP ==="]
        for city, hotels in context.hotel_suggestions.items():
            lines.append(f"{city}:")
            lines.extend(f"  {format_hotel_line(h)}" for h in hotels)
        parts.append("\n".join(lines))

    if context.route_logistics:
        lines = ["=== ROUTE LOGISTICS FOR THIS TRIP (follow exactly) ==="]
        for route in context.route_logistics:
            lines.append(
                f"{route.origin} -> {route.destination}: "
                f"{json.dumps(route.record, ensure_ascii=False)}"
            )
        parts.append("\n".join(lines))

    return "\n\n".join(parts)


def build_user_prompt(request: ItineraryRequest, context: GenerationContext, passage_limit: int = 5) -> str:
    """Trip parameters, reference passages and the exact day count expected."""
    lines = [
        f"Create a {request.duration}-day itinerary for:",
        f"- Start point: {request.start_point}",
        f"- Destinations: {', '.join(request.destinations)}",
        f"- Interests: {', '.join(request.interests) or 'General sightseeing'}",
        f"- Group size: {request.group_size or 'Not specified'}",
        f"- Travel style: {request.travel_style.value}",
        f"- Special requirements: {request.special_requirements or 'None'}",
    ]

    passages = [p.content for p in context.passages[:passage_limit]]
    if passages:
        lines.append("")
        lines.append("REFERENCE MATERIAL FROM PAST TOURS (lower priority than the Knowledge Hub):")
        lines.append("\n---\n".join(passages))

    lines.extend(
        [
            "",
            f'The "days" array MUST contain EXACTLY {request.duration} entries, '
            f"with day_number 1 through {request.duration}.",
            "",
            "Return JSON with this structure:",
            DAY_SCHEMA,
        ]
    )
    return "\n".join(lines)


def build_correction_prompt(duration: int, returned: int) -> str:
    """Follow-up turn after a response with too few days."""
    return (
        f"Your previous response contained {returned} day(s), but the trip is {duration} days. "
        f'Regenerate the COMPLETE itinerary JSON with exactly {duration} entries in "days" '
        f"(day_number 1 through {duration}). Keep the days you already wrote and add the "
        "missing ones. Return PURE JSON only."
    )


def build_parse_fix_prompt(duration: int) -> str:
    """Follow-up turn after a response that was not valid JSON."""
    return (
        "Your previous response was not valid JSON. Return the complete itinerary as a single "
        f'JSON object with exactly {duration} entries in "days". No markdown, no commentary.'
    )


REFINE_SYSTEM_PROMPT = """You are a master travel consultant for an Indochina tour operator.
A client has an existing itinerary and wants changes. Your job is to:

1. Read the current itinerary JSON
2. Apply the client's requested changes
3. Return the COMPLETE updated itinerary JSON

RULES:
- ONLY modify the days/fields the client asked to change
- Keep ALL other days and fields EXACTLY as they are
- Keep the same JSON structure and snake_case field names for every day
- "experience" blends a step-by-step schedule with an evocative narrative
- Use REAL location names, restaurants and hotels
- All output in professional English

Return the FULL itinerary JSON (title, subtitle, overview, highlights and ALL days), not just the changed days.
Return PURE JSON only. No markdown, no commentary."""

REFINE_FIELDS = {"title", "subtitle", "overview", "highlights", "days"}


def build_refine_messages(
    itinerary: Itinerary,
    user_prompt: str,
    chat_history: list[ChatTurn],
    context: GenerationContext,
    history_turns: int = 6,
) -> list[dict[str, str]]:
    """System prompt with knowledge, the current itinerary, recent turns, then the change request."""
    current = itinerary.model_dump(mode="json", include=REFINE_FIELDS, by_alias=True)
    history = [
        {"role": turn.role, "content": turn.content}
        for turn in chat_history
        if turn.role in ("user", "assistant")
    ]
    history = history[-history_turns:] if history_turns > 0 else []

    return [
        {"role": "system", "content": build_system_prompt(context, persona=REFINE_SYSTEM_PROMPT)},
        {
            "role": "user",
            "content": "Here is the current itinerary:\n\n"
            + json.dumps(current, indent=2, ensure_ascii=False),
        },
        *history,
        {
            "role": "user",
            "content": f'Client request: "{user_prompt}"\n\n'
            "Please apply this change and return the COMPLETE updated itinerary JSON.",
        },
    ]
