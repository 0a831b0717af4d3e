"""Tests for context assembly and prompt layout."""

import json
from datetime import datetime, timezone

import pytest

from tests.fakes.fake_stores import FakeStructuredStore, FakeVectorStore, fake_embed_query
from tests.fakes.itineraries import make_payload
from tourpro.core.day_contract import normalize_days
from tourpro.core.knowledge_hub import BRAND_FILE, HOTELS_FILE, LOGISTICS_FILE, PRINCIPLES_FILE, KnowledgeHub
from tourpro.core.prompt_assembly import (
    GenerationContext,
    assemble_context,
    build_rag_query,
    build_refine_messages,
    build_system_prompt,
    build_user_prompt,
)
from tourpro.core.retrieval import Retriever
from tourpro.core.schemas import (
    ChatTurn,
    IndexedVector,
    Itinerary,
    ItineraryRequest,
    StructuredKnowledge,
    TravelStyle,
    VectorMatch,
)

HOTELS = [
    {"name": "Metropole", "city": "Hanoi", "stars": 5, "tags": ["heritage", "luxury"]},
    {"name": "Little Hanoi Hostel", "city": "Hanoi", "stars": 2, "tags": ["budget"]},
    {"name": "Azerai", "city": "Hue", "stars": 5, "tags": ["riverside"]},
]

ROUTES = {"routes": [{"from": "Hanoi", "to": "Hue", "mode": "Flight", "duration": "1h10"}]}


def _request(**overrides) -> ItineraryRequest:
    data = {
        "duration": 4,
        "start_point": "Hanoi",
        "destinations": ["Hue"],
        "interests": ["heritage"],
        "travel_style": TravelStyle.LUXURY,
    }
    data.update(overrides)
    return ItineraryRequest(**data)


def _hub(files: dict[str, str] | None = None) -> KnowledgeHub:
    return KnowledgeHub(local=FakeStructuredStore("local", files))


async def _store_with_passages() -> FakeVectorStore:
    store = FakeVectorStore()
    await store.upsert(
        [
            IndexedVector(content="PAST TOUR: Hue imperial city", metadata={"source": "hue.docx"}, embedding=[0.1]),
            IndexedVector(content="PAST TOUR: Hue food walk", metadata={"source": "hue.docx"}, embedding=[0.1]),
            IndexedVector(content="PAST TOUR: Hanoi", metadata={"source": "hanoi.docx"}, embedding=[0.1]),
        ]
    )
    return store


def test_build_rag_query():
    assert build_rag_query(_request()) == "Hue heritage 4 day tour"


@pytest.mark.asyncio
async def test_assemble_context_matches_hotels_and_routes(settings):
    files = {
        BRAND_FILE: "Warm, expert voice.",
        LOGISTICS_FILE: json.dumps(ROUTES),
        HOTELS_FILE: json.dumps(HOTELS),
    }
    retriever = Retriever(await _store_with_passages(), embed=fake_embed_query, settings=settings)

    context = await assemble_context(_request(destinations=["Hanoi", "Hue"]), retriever, _hub(files), settings)

    assert len(context.passages) == 3
    assert [h.name for h in context.hotel_suggestions["Hanoi"]] == ["Metropole"]
    assert [h.name for h in context.hotel_suggestions["Hue"]] == ["Azerai"]
    # Start point equals the first destination, so the only leg is Hanoi -> Hue
    assert [(r.origin, r.destination) for r in context.route_logistics] == [("Hanoi", "Hue")]
    assert context.route_logistics[0].record["mode"] == "Flight"
    assert context.rag_sources == ["hue.docx", "hanoi.docx"]


@pytest.mark.asyncio
async def test_assemble_context_without_knowledge_or_index(settings):
    retriever = Retriever(FakeVectorStore(), embed=fake_embed_query, settings=settings)

    context = await assemble_context(_request(), retriever, _hub(), settings)

    assert context.passages == []
    assert context.knowledge_block == ""
    assert context.hotel_suggestions == {}
    assert context.rag_sources == []
    assert build_system_prompt(context).startswith("You are a master Indochina tour planner")


def test_rag_sources_fallback_without_source_metadata():
    context = GenerationContext(
        knowledge=StructuredKnowledge(),
        knowledge_block="",
        passages=[VectorMatch(content="a"), VectorMatch(content="b")],
    )
    assert context.rag_sources == ["2 passages from database"]


@pytest.mark.asyncio
async def test_knowledge_precedes_reference_passages(settings):
    files = {
        BRAND_FILE: "BRAND-MARKER",
        PRINCIPLES_FILE: "PRINCIPLES-MARKER",
        LOGISTICS_FILE: json.dumps(ROUTES),
        HOTELS_FILE: json.dumps(HOTELS),
    }
    retriever = Retriever(await _store_with_passages(), embed=fake_embed_query, settings=settings)
    request = _request()
    context = await assemble_context(request, retriever, _hub(files), settings)

    system = build_system_prompt(context)
    user = build_user_prompt(request, context)
    prompt = system + "\n\n" + user

    positions = [
        prompt.index("BRAND-MARKER"),
        prompt.index("PRINCIPLES-MARKER"),
        prompt.index("=== LOGISTICS RULES"),
        prompt.index("=== HOTEL MASTER DATABASE"),
        prompt.index("=== RECOMMENDED HOTELS FOR THIS TRIP"),
        prompt.index("=== ROUTE LOGISTICS FOR THIS TRIP"),
        prompt.index("PAST TOUR: Hue imperial city"),
    ]
    assert positions == sorted(positions)
    assert "PAST TOUR" not in system


def test_user_prompt_states_exact_day_count_and_limits_passages():
    request = _request(duration=7, special_requirements="Vegetarian")
    context = GenerationContext(
        knowledge=StructuredKnowledge(),
        knowledge_block="",
        passages=[VectorMatch(content=f"passage {i}") for i in range(8)],
    )

    prompt = build_user_prompt(request, context, passage_limit=3)

    assert "EXACTLY 7 entries" in prompt
    assert "Vegetarian" in prompt
    assert "passage 2" in prompt
    assert "passage 3" not in prompt
    assert "Travel style: Luxury" in prompt


def _itinerary(request: ItineraryRequest) -> Itinerary:
    payload = make_payload(request.duration, "Hue")
    return Itinerary(
        id="itin-1",
        title=payload["title"],
        subtitle=payload["subtitle"],
        request=request,
        days=normalize_days(payload["days"], request.destinations),
        overview=payload["overview"],
        highlights=payload["highlights"],
        generated_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
        rag_sources=["hue.docx"],
    )


def test_refine_messages_layout_and_history_window():
    request = _request()
    context = GenerationContext(knowledge=StructuredKnowledge(), knowledge_block="KNOWLEDGE-MARKER")
    history = [ChatTurn(role="user" if i % 2 == 0 else "assistant", content=f"turn {i}") for i in range(10)]
    history.insert(5, ChatTurn(role="system", content="ignored"))

    messages = build_refine_messages(_itinerary(request), "Swap day 2 for a cooking class", history, context)

    assert messages[0]["role"] == "system"
    assert "KNOWLEDGE-MARKER" in messages[0]["content"]
    assert messages[1]["content"].startswith("Here is the current itinerary:")
    current = json.loads(messages[1]["content"].split("\n\n", 1)[1])
    assert set(current) == {"title", "subtitle", "overview", "highlights", "days"}
    assert current["days"][0]["transportation"][0]["class"] == "Private"

    replayed = messages[2:-1]
    assert [m["content"] for m in replayed] == [f"turn {i}" for i in range(4, 10)]
    assert messages[-1] == {
        "role": "user",
        "content": 'Client request: "Swap day 2 for a cooking class"\n\n'
        "Please apply this change and return the COMPLETE updated itinerary JSON.",
    }


def test_refine_messages_without_history():
    request = _request()
    context = GenerationContext(knowledge=StructuredKnowledge(), knowledge_block="")

    messages = build_refine_messages(_itinerary(request), "Make it slower", [], context, history_turns=0)

    assert [m["role"] for m in messages] == ["system", "user", "user"]
