"""Generation provider: OpenAI chat completions in JSON mode, with timeouts."""

import asyncio
import json
import re
from collections.abc import AsyncIterator
from typing import Any

from openai import AsyncOpenAI, OpenAIError

from tourpro.core.config import Settings, get_settings
from tourpro.core.logging import get_logger

logger = get_logger(__name__)


class GenerationError(Exception):
    """Hard failure of the generation provider (quota, invalid or unparseable output)."""


class GenerationTimeoutError(GenerationError):
    """The generation call exceeded its wall-clock bound."""


def _strip_llm_fences(raw_output: str) -> str:
    """Strip markdown code fences from LLM output.

    Handles: ```json ... ```, ``` ... ```, leading/trailing whitespace.
    """
    cleaned = raw_output.strip()

    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()

    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_llm_json_dict(raw_output: str) -> dict:
    """
    Parse LLM output as a JSON object.

    Args:
        raw_output: Raw string from LLM response

    Returns:
        Parsed dict

    Raises:
        json.JSONDecodeError: If JSON parsing fails after cleanup
        ValueError: If the JSON value is not an object
    """
    parsed = json.loads(_strip_llm_fences(raw_output))
    if not isinstance(parsed, dict):
        raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


def generation_token_budget(duration: int, settings: Settings | None = None) -> int:
    """Max completion tokens for a trip of the given length, capped at the ceiling."""
    settings = settings or get_settings()
    budget = settings.GENERATION_BASE_TOKENS + settings.GENERATION_TOKENS_PER_DAY * max(duration, 1)
    return min(budget, settings.GENERATION_MAX_TOKENS)


class GenerationProvider:
    """Thin async wrapper over chat completions constrained to JSON output."""

    def __init__(self, client: AsyncOpenAI | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.client = client or AsyncOpenAI(api_key=self.settings.OPENAI_API_KEY)

    def _request_args(self, messages: list[dict[str, str]], max_tokens: int) -> dict[str, Any]:
        return {
            "model": self.settings.GENERATION_MODEL,
            "messages": messages,
            "temperature": self.settings.GENERATION_TEMPERATURE,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }

    async def complete(self, messages: list[dict[str, str]], max_tokens: int) -> str:
        """
        Run one completion and return the raw message content.

        Raises:
            GenerationTimeoutError: If the call exceeds GENERATION_TIMEOUT_SECONDS
            GenerationError: If the provider rejects the call
        """
        timeout = self.settings.GENERATION_TIMEOUT_SECONDS
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(**self._request_args(messages, max_tokens)),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise GenerationTimeoutError(f"Generation timed out after {timeout:.0f}s") from e
        except OpenAIError as e:
            logger.error(f"Generation provider error: {e}")
            raise GenerationError(f"Generation provider error: {e}") from e

        content = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.info(
                f"Completion finished: {usage.prompt_tokens} prompt / "
                f"{usage.completion_tokens} completion tokens",
            )
        return content

    async def stream(self, messages: list[dict[str, str]], max_tokens: int) -> AsyncIterator[str]:
        """
        Stream completion content fragments.

        The whole stream shares one wall-clock deadline.

        Raises:
            GenerationTimeoutError: If the deadline passes mid-stream
            GenerationError: If the provider rejects the call
        """
        loop = asyncio.get_running_loop()
        timeout = self.settings.GENERATION_TIMEOUT_SECONDS
        deadline = loop.time() + timeout

        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    **self._request_args(messages, max_tokens), stream=True
                ),
                timeout=timeout,
            )
            iterator = response.__aiter__()
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    break
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content or ""
                if delta:
                    yield delta
        except asyncio.TimeoutError as e:
            raise GenerationTimeoutError(f"Generation timed out after {timeout:.0f}s") from e
        except OpenAIError as e:
            logger.error(f"Generation provider stream error: {e}")
            raise GenerationError(f"Generation provider error: {e}") from e
