"""Itinerary generation chain: generate, stream and refine."""

import json
import uuid
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from tourpro.core.config import Settings, get_settings
from tourpro.core.day_contract import DayCountContract, diff_days, normalize_days, pad_days
from tourpro.core.knowledge_hub import KnowledgeHub, get_knowledge_hub
from tourpro.core.llm import (
    GenerationError,
    GenerationProvider,
    GenerationTimeoutError,
    generation_token_budget,
    parse_llm_json_dict,
)
from tourpro.core.logging import get_logger
from tourpro.core.prompt_assembly import (
    assemble_context,
    build_refine_messages,
    build_system_prompt,
    build_user_prompt,
)
from tourpro.core.retrieval import Retriever
from tourpro.core.schemas import (
    ChatTurn,
    GeneratedDay,
    Itinerary,
    ItineraryRequest,
    RefineResult,
    StreamEvent,
    StreamEventType,
)
from tourpro.db.vector_store import get_vector_store

logger = get_logger(__name__)


def _text_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if isinstance(value, list):
        return [str(item).strip() for item in value if item is not None and str(item).strip()]
    return []


def _text_or(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def refine_summary(changed: list[int]) -> str:
    if not changed:
        return "Changes applied to the itinerary."
    plural = "s" if len(changed) > 1 else ""
    return f"Updated Day{plural} {', '.join(str(n) for n in changed)}. The itinerary has been refreshed."


class ItineraryGenerator:
    """Orchestrates context assembly, the generation call and the day-count contract."""

    def __init__(
        self,
        retriever: Retriever,
        hub: KnowledgeHub,
        provider: GenerationProvider,
        settings: Settings | None = None,
    ):
        self.retriever = retriever
        self.hub = hub
        self.provider = provider
        self.settings = settings or get_settings()

    async def generate(self, request: ItineraryRequest) -> Itinerary:
        """
        Generate an itinerary with exactly `request.duration` days.

        Raises:
            GenerationTimeoutError: If the provider call exceeds its bound
            GenerationError: If the provider fails or never returns parseable JSON
        """
        settings = self.settings
        logger.info(
            f"Generating {request.duration}-day itinerary",
            extra={"extra_data": {"destinations": ",".join(request.destinations)}},
        )

        context = await assemble_context(request, self.retriever, self.hub, settings)
        messages = [
            {"role": "system", "content": build_system_prompt(context)},
            {
                "role": "user",
                "content": build_user_prompt(request, context, settings.RAG_CONTEXT_LIMIT),
            },
        ]
        max_tokens = generation_token_budget(request.duration, settings)

        async def complete(conversation: list[dict[str, str]]) -> str:
            return await self.provider.complete(conversation, max_tokens)

        contract = DayCountContract(
            request.duration, request.destinations, max_attempts=settings.GENERATION_MAX_ATTEMPTS
        )
        outcome = await contract.run(complete, messages)

        logger.info(
            f"Itinerary generated after {outcome.attempts} attempt(s), "
            f"{outcome.padded_days} padded day(s)"
        )
        return self._build_itinerary(request, outcome.payload, outcome.days, context.rag_sources)

    async def stream(self, request: ItineraryRequest) -> AsyncIterator[StreamEvent]:
        """
        Stream generation as typed events.

        Order: status(searching), status(found), status(generating), chunk*,
        then exactly one of done(buffer) or error. Nothing follows a terminal event.
        """
        settings = self.settings
        yield StreamEvent(type=StreamEventType.STATUS, message="Searching tour database...")

        try:
            context = await assemble_context(request, self.retriever, self.hub, settings)
            yield StreamEvent(
                type=StreamEventType.STATUS,
                message=f"Found {len(context.passages)} reference passages",
            )
            yield StreamEvent(type=StreamEventType.STATUS, message="Generating itinerary...")

            messages = [
                {"role": "system", "content": build_system_prompt(context)},
                {
                    "role": "user",
                    "content": build_user_prompt(request, context, settings.RAG_CONTEXT_LIMIT),
                },
            ]
            buffer = []
            max_tokens = generation_token_budget(request.duration, settings)
            async for fragment in self.provider.stream(messages, max_tokens):
                buffer.append(fragment)
                yield StreamEvent(type=StreamEventType.CHUNK, content=fragment)
        except GenerationError as e:
            logger.error(f"Streaming generation failed: {e}")
            yield StreamEvent(type=StreamEventType.ERROR, error=str(e))
            return
        except Exception as e:
            logger.exception(f"Unexpected streaming failure: {e}")
            yield StreamEvent(type=StreamEventType.ERROR, error="Itinerary generation failed")
            return

        yield StreamEvent(type=StreamEventType.DONE, buffer="".join(buffer))

    async def refine(
        self,
        itinerary: Itinerary,
        user_prompt: str,
        chat_history: list[ChatTurn] | None = None,
    ) -> RefineResult:
        """
        Apply a natural-language change and report which days changed.

        Identity fields (id, request, generated_at, rag_sources) always come
        from the current itinerary.

        Raises:
            GenerationTimeoutError: If the provider call exceeds its bound
            GenerationError: If the provider fails or returns no usable days
        """
        settings = self.settings
        request = itinerary.request

        context = await assemble_context(request, self.retriever, self.hub, settings)
        messages = build_refine_messages(
            itinerary,
            user_prompt,
            chat_history or [],
            context,
            history_turns=settings.REFINE_HISTORY_TURNS,
        )

        raw_output = await self.provider.complete(messages, settings.GENERATION_MAX_TOKENS)
        try:
            payload = parse_llm_json_dict(raw_output)
        except (json.JSONDecodeError, ValueError) as e:
            logger.error(f"Refinement output could not be parsed: {e}")
            # Do NOT leak raw model output
            raise GenerationError("Model returned an invalid itinerary structure") from e

        days = normalize_days(payload.get("days"), request.destinations)
        if not days:
            raise GenerationError("Model returned an invalid itinerary structure")
        if len(days) != request.duration:
            logger.warning(
                f"Refinement returned {len(days)} days for a {request.duration}-day trip; adjusting"
            )
        days = pad_days(days, request.duration, request.destinations)

        changed = diff_days(itinerary.days, days)
        refined = itinerary.model_copy(
            update={
                "title": _text_or(payload.get("title"), itinerary.title),
                "subtitle": _text_or(payload.get("subtitle"), itinerary.subtitle),
                "overview": _text_or(payload.get("overview"), itinerary.overview),
                "highlights": _text_list(payload.get("highlights")) or itinerary.highlights,
                "days": days,
            }
        )
        logger.info(f"Refinement changed days {changed}")
        return RefineResult(itinerary=refined, changed_day_numbers=changed, summary=refine_summary(changed))

    def _build_itinerary(
        self,
        request: ItineraryRequest,
        payload: dict[str, Any],
        days: list[GeneratedDay],
        rag_sources: list[str],
    ) -> Itinerary:
        return Itinerary(
            id=str(uuid.uuid4()),
            title=_text_or(payload.get("title"), f"Journey through {' - '.join(request.destinations)}"),
            subtitle=_text_or(payload.get("subtitle"), f"{request.duration} days exploring Indochina"),
            request=request,
            days=days,
            overview=_text_or(payload.get("overview"), ""),
            highlights=_text_list(payload.get("highlights")),
            generated_at=datetime.now(timezone.utc),
            rag_sources=rag_sources,
        )


@lru_cache(maxsize=1)
def get_itinerary_generator() -> ItineraryGenerator:
    """Process-wide generator over the configured stores and provider."""
    return ItineraryGenerator(
        retriever=Retriever(get_vector_store()),
        hub=get_knowledge_hub(),
        provider=GenerationProvider(),
    )


async def generate_itinerary(request: ItineraryRequest) -> Itinerary:
    return await get_itinerary_generator().generate(request)


def generate_itinerary_stream(request: ItineraryRequest) -> AsyncIterator[StreamEvent]:
    return get_itinerary_generator().stream(request)


async def refine_itinerary(
    itinerary: Itinerary, user_prompt: str, chat_history: list[ChatTurn] | None = None
) -> RefineResult:
    return await get_itinerary_generator().refine(itinerary, user_prompt, chat_history)


__all__ = [
    "GenerationError",
    "GenerationTimeoutError",
    "ItineraryGenerator",
    "generate_itinerary",
    "generate_itinerary_stream",
    "get_itinerary_generator",
    "refine_itinerary",
    "refine_summary",
]
