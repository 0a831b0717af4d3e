"""Day-count contract: the returned itinerary always has exactly `duration` days.

The generator is asked once; a short answer gets one corrective turn that
replays its own output; whatever is still missing afterwards is padded with
template days. Day records are normalized on the way through so every day
carries the full field set.
"""

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import ValidationError

from tourpro.core.llm import GenerationError, GenerationTimeoutError, parse_llm_json_dict
from tourpro.core.logging import get_logger, log_with_context
from tourpro.core.prompt_assembly import build_correction_prompt, build_parse_fix_prompt
from tourpro.core.schemas import GeneratedDay, Meals, TransportDetail

logger = get_logger(__name__)

DEFAULT_PICKUP_PLACE = "Hotel"
DEFAULT_PICKUP_TIME = "08:00"
DEFAULT_DROPOFF_PLACE = "Hotel"
DEFAULT_DROPOFF_TIME = "21:00"
DEFAULT_MEAL = "Included"

# snake_case field -> accepted aliases, first non-empty wins
_DAY_ALIASES: dict[str, tuple[str, ...]] = {
    "day_number": ("day_number", "dayNumber", "day"),
    "highlights": ("highlights", "title", "summary"),
    "experience": ("experience", "description", "narrative"),
    "pickup_place": ("pickup_place", "pickupPlace"),
    "pickup_time": ("pickup_time", "pickupTime"),
    "dropoff_place": ("dropoff_place", "dropoffPlace"),
    "dropoff_time": ("dropoff_time", "dropoffTime"),
    "meals": ("meals",),
    "transportation": ("transportation", "transport"),
    "hotel": ("hotel", "accommodation"),
    "image_keyword": ("image_keyword", "imageKeyword", "imageQuery", "image_query"),
    "activities": ("activities",),
    "notes": ("notes",),
}

_TRANSPORT_ALIASES: dict[str, tuple[str, ...]] = {
    "type": ("type", "mode"),
    "operator": ("operator", "carrier"),
    "flight_number": ("flight_number", "flightNumber"),
    "train_number": ("train_number", "trainNumber"),
    "departure": ("departure", "from"),
    "arrival": ("arrival", "to"),
    "etd": ("etd",),
    "eta": ("eta",),
    "class": ("class", "service_class", "serviceClass"),
    "notes": ("notes",),
}


# =============================================================================
# Normalization
# =============================================================================


def _pick(record: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = record.get(key)
        if value not in (None, "", [], {}):
            return value
    return None


def _as_text(value: Any, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, list):
        value = " | ".join(str(item).strip() for item in value if str(item).strip())
    text = str(value).strip()
    return text or default


def _normalize_meals(value: Any) -> Meals:
    if not isinstance(value, dict):
        return Meals()
    return Meals(
        breakfast=_as_text(value.get("breakfast"), DEFAULT_MEAL),
        lunch=_as_text(value.get("lunch"), DEFAULT_MEAL),
        dinner=_as_text(value.get("dinner"), DEFAULT_MEAL),
    )


def _normalize_transport(value: Any) -> list[TransportDetail]:
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, list):
        return []

    legs = []
    for item in value:
        if not isinstance(item, dict):
            continue
        data = {}
        for name, aliases in _TRANSPORT_ALIASES.items():
            picked = _pick(item, aliases)
            if picked is not None:
                data[name] = _as_text(picked)
        try:
            legs.append(TransportDetail.model_validate(data))
        except ValidationError as e:
            logger.debug(f"Dropping malformed transport leg: {e}")
    return legs


def _parse_day_number(value: Any) -> int | None:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number >= 1 else None


def normalize_day(raw: dict[str, Any], position: int, fallback_destination: str = "") -> GeneratedDay:
    """Coerce one model-produced day into a GeneratedDay with defaults backfilled.

    `position` is the 1-based index of the day in the returned list and is used
    when the record has no usable day number.
    """
    picked = {name: _pick(raw, aliases) for name, aliases in _DAY_ALIASES.items()}

    activities = picked["activities"]
    if isinstance(activities, str):
        activities = [activities]
    elif not isinstance(activities, list):
        activities = []

    notes = _as_text(picked["notes"]) or None

    return GeneratedDay(
        day_number=_parse_day_number(picked["day_number"]) or position,
        highlights=_as_text(picked["highlights"], fallback_destination or f"Day {position}"),
        experience=_as_text(picked["experience"]),
        pickup_place=_as_text(picked["pickup_place"], DEFAULT_PICKUP_PLACE),
        pickup_time=_as_text(picked["pickup_time"], DEFAULT_PICKUP_TIME),
        dropoff_place=_as_text(picked["dropoff_place"], DEFAULT_DROPOFF_PLACE),
        dropoff_time=_as_text(picked["dropoff_time"], DEFAULT_DROPOFF_TIME),
        meals=_normalize_meals(picked["meals"]),
        transportation=_normalize_transport(picked["transportation"]),
        hotel=_as_text(picked["hotel"]),
        image_keyword=_as_text(picked["image_keyword"], fallback_destination),
        activities=[str(a).strip() for a in activities if a is not None and str(a).strip()],
        notes=notes,
    )


def normalize_days(raw_days: Any, destinations: list[str]) -> list[GeneratedDay]:
    """Normalize a raw `days` value; non-object entries are dropped."""
    if not isinstance(raw_days, list):
        return []
    fallback = destinations[0] if destinations else ""
    days = []
    for raw in raw_days:
        if isinstance(raw, dict):
            days.append(normalize_day(raw, len(days) + 1, fallback))
    return days


def renumber(days: list[GeneratedDay]) -> list[GeneratedDay]:
    """Set day_number to the 1-based position of each day."""
    return [
        day if day.day_number == i else day.model_copy(update={"day_number": i})
        for i, day in enumerate(days, start=1)
    ]


def placeholder_day(day_number: int, destination: str, hotel: str) -> GeneratedDay:
    """Template day used to fill gaps the generator left."""
    return GeneratedDay(
        day_number=day_number,
        highlights=f"{destination} | Free exploration",
        experience=f"A flexible day in {destination} to explore at your own pace.",
        pickup_place=DEFAULT_PICKUP_PLACE,
        pickup_time=DEFAULT_PICKUP_TIME,
        dropoff_place=DEFAULT_DROPOFF_PLACE,
        dropoff_time=DEFAULT_DROPOFF_TIME,
        meals=Meals(),
        transportation=[],
        hotel=hotel,
        image_keyword=f"{destination} travel",
        activities=[],
        notes="Details to be confirmed with your travel consultant.",
    )


def pad_days(days: list[GeneratedDay], duration: int, destinations: list[str]) -> list[GeneratedDay]:
    """
    Return exactly `duration` days numbered 1..duration.

    Extra days are dropped. Missing days rotate through the destinations and
    keep the previous day's hotel.
    """
    result = renumber(days[:duration])
    stops = destinations or ["Destination"]
    while len(result) < duration:
        number = len(result) + 1
        previous_hotel = result[-1].hotel if result else ""
        result.append(placeholder_day(number, stops[(number - 1) % len(stops)], previous_hotel))
    return result


def diff_days(original: list[GeneratedDay], updated: list[GeneratedDay]) -> list[int]:
    """Day numbers (by position) whose content differs structurally."""
    changed = []
    for index in range(max(len(original), len(updated))):
        before = original[index].model_dump() if index < len(original) else None
        after = updated[index].model_dump() if index < len(updated) else None
        if before != after:
            changed.append(index + 1)
    return changed


# =============================================================================
# State machine
# =============================================================================


class ContractState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    VALIDATING = "validating"
    ACCEPTED = "accepted"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"
    PADDING = "padding"
    DONE = "done"


_TRANSITIONS: dict[ContractState, set[ContractState]] = {
    ContractState.IDLE: {ContractState.REQUESTING},
    ContractState.REQUESTING: {ContractState.VALIDATING},
    ContractState.VALIDATING: {ContractState.ACCEPTED, ContractState.RETRYING, ContractState.EXHAUSTED},
    ContractState.RETRYING: {ContractState.REQUESTING},
    ContractState.ACCEPTED: {ContractState.DONE},
    ContractState.EXHAUSTED: {ContractState.PADDING},
    ContractState.PADDING: {ContractState.DONE},
    ContractState.DONE: set(),
}


class ContractViolation(RuntimeError):
    """Illegal state transition; indicates a bug in the contract driver."""


@dataclass
class ContractOutcome:
    """Result of one contract run."""

    payload: dict[str, Any]
    days: list[GeneratedDay]
    attempts: int
    padded_days: int = 0
    states: list[ContractState] = field(default_factory=list)


Completion = Callable[[list[dict[str, str]]], Awaitable[str]]


class DayCountContract:
    """
    Drive the generator until it returns `duration` days, then pad if needed.

    At most `max_attempts` requests are made. Provider errors and unparseable
    output consume an attempt; if no attempt ever produced a parseable object
    the run fails with GenerationError. Timeouts are not retried.
    """

    def __init__(self, duration: int, destinations: list[str], max_attempts: int = 2):
        if duration < 1:
            raise ValueError("duration must be at least 1")
        self.duration = duration
        self.destinations = list(destinations)
        self.max_attempts = max(1, max_attempts)
        self.state = ContractState.IDLE
        self.states: list[ContractState] = [ContractState.IDLE]

    def _advance(self, new_state: ContractState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise ContractViolation(f"Illegal transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.states.append(new_state)

    async def run(self, complete: Completion, messages: list[dict[str, str]]) -> ContractOutcome:
        """
        Run the contract against a completion function.

        Args:
            complete: Coroutine taking chat messages and returning raw model text
            messages: Initial system/user messages

        Returns:
            ContractOutcome with exactly `duration` days

        Raises:
            GenerationTimeoutError: If a request exceeds its wall-clock bound
            GenerationError: If no attempt produced a parseable JSON object
        """
        conversation = list(messages)
        best_payload: dict[str, Any] | None = None
        best_days: list[GeneratedDay] = []
        last_error: Exception | None = None
        attempts = 0

        self._advance(ContractState.REQUESTING)
        while True:
            attempts += 1
            raw_output: str | None = None
            follow_up: str | None = None

            try:
                raw_output = await complete(conversation)
            except GenerationTimeoutError:
                raise
            except GenerationError as e:
                last_error = e
                logger.warning(f"Generation attempt {attempts} failed: {e}")

            self._advance(ContractState.VALIDATING)

            if raw_output is not None:
                try:
                    payload = parse_llm_json_dict(raw_output)
                except (json.JSONDecodeError, ValueError) as e:
                    last_error = e
                    logger.warning(f"Generation attempt {attempts} returned unparseable output: {e}")
                    follow_up = build_parse_fix_prompt(self.duration)
                else:
                    days = normalize_days(payload.get("days"), self.destinations)
                    if best_payload is None or len(days) > len(best_days):
                        best_payload, best_days = payload, days
                    if len(days) >= self.duration:
                        self._advance(ContractState.ACCEPTED)
                        if len(days) > self.duration:
                            logger.info(f"Truncating {len(days) - self.duration} extra days")
                        self._advance(ContractState.DONE)
                        return self._outcome(payload, pad_days(days, self.duration, self.destinations), attempts)
                    log_with_context(
                        logger,
                        logging.WARNING,
                        "Day count short",
                        attempt=attempts,
                        expected=self.duration,
                        returned=len(days),
                    )
                    follow_up = build_correction_prompt(self.duration, len(days))

            if attempts >= self.max_attempts:
                self._advance(ContractState.EXHAUSTED)
                break

            self._advance(ContractState.RETRYING)
            if raw_output is not None and follow_up is not None:
                conversation = [
                    *conversation,
                    {"role": "assistant", "content": raw_output},
                    {"role": "user", "content": follow_up},
                ]
            self._advance(ContractState.REQUESTING)

        if best_payload is None:
            # Do not leak raw model output
            raise GenerationError("Model output could not be parsed as an itinerary") from last_error

        self._advance(ContractState.PADDING)
        padded = pad_days(best_days, self.duration, self.destinations)
        missing = self.duration - len(best_days)
        log_with_context(
            logger,
            logging.WARNING,
            "Padding itinerary",
            expected=self.duration,
            returned=len(best_days),
            padded=missing,
        )
        self._advance(ContractState.DONE)
        return self._outcome(best_payload, padded, attempts, padded_days=missing)

    def _outcome(
        self,
        payload: dict[str, Any],
        days: list[GeneratedDay],
        attempts: int,
        padded_days: int = 0,
    ) -> ContractOutcome:
        return ContractOutcome(
            payload=payload,
            days=days,
            attempts=attempts,
            padded_days=padded_days,
            states=list(self.states),
        )
