"""Pydantic schemas for itinerary generation, ingestion and structured knowledge."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TravelStyle(str, Enum):
    """Travel style selected in the request wizard."""

    BUDGET = "Budget"
    STANDARD = "Standard"
    LUXURY = "Luxury"


class IngestMode(str, Enum):
    """Duplicate policy for an ingestion run."""

    APPEND = "append"
    SKIP_DUPLICATES = "skip_duplicates"
    OVERWRITE = "overwrite"


# =============================================================================
# Requests and generated itineraries
# =============================================================================


class ItineraryRequest(BaseModel):
    """Trip parameters collected from the user."""

    model_config = ConfigDict(frozen=True)

    duration: int = Field(..., ge=1, le=60, description="Trip length in days")
    start_point: str = Field(..., min_length=1, description="Arrival / departure city")
    destinations: list[str] = Field(..., min_length=1, description="Desired destinations")
    interests: list[str] = Field(default_factory=list, description="Interest themes")
    special_requirements: str | None = Field(default=None, description="Free-text requirements")
    group_size: int | None = Field(default=None, ge=1, description="Number of travellers")
    travel_style: TravelStyle = Field(default=TravelStyle.STANDARD, description="Budget tier")


class TransportDetail(BaseModel):
    """One transport leg within a day."""

    model_config = ConfigDict(populate_by_name=True)

    type: str = "Car"
    operator: str | None = None
    flight_number: str | None = None
    train_number: str | None = None
    departure: str = ""
    arrival: str = ""
    etd: str = ""
    eta: str = ""
    service_class: str = Field(default="Standard", alias="class")
    notes: str | None = None


class Meals(BaseModel):
    """Meal plan for a day."""

    breakfast: str = "Included"
    lunch: str = "Included"
    dinner: str = "Included"


class GeneratedDay(BaseModel):
    """A single structured itinerary day."""

    day_number: int = Field(..., ge=1)
    highlights: str
    experience: str = ""
    pickup_place: str
    pickup_time: str
    dropoff_place: str
    dropoff_time: str
    meals: Meals = Field(default_factory=Meals)
    transportation: list[TransportDetail] = Field(default_factory=list)
    hotel: str = ""
    image_keyword: str = ""
    activities: list[str] = Field(default_factory=list)
    notes: str | None = None


class Itinerary(BaseModel):
    """A complete generated trip."""

    id: str
    title: str
    subtitle: str
    request: ItineraryRequest
    days: list[GeneratedDay]
    overview: str = ""
    highlights: list[str] = Field(default_factory=list)
    generated_at: datetime
    rag_sources: list[str] = Field(default_factory=list)


class ChatTurn(BaseModel):
    """A prior conversation turn replayed during refinement."""

    role: str
    content: str


class RefineRequest(BaseModel):
    """Request schema for conversational refinement."""

    current_itinerary: Itinerary
    user_prompt: str = Field(..., min_length=1)
    chat_history: list[ChatTurn] = Field(default_factory=list)


class RefineResult(BaseModel):
    """Refined itinerary plus the day numbers that actually changed."""

    itinerary: Itinerary
    changed_day_numbers: list[int]
    summary: str


class RetrieveRequest(BaseModel):
    """Request schema for raw passage retrieval."""

    query: str = Field(..., min_length=1)
    k: int = Field(default=8, ge=1, le=50)


# =============================================================================
# Streaming events
# =============================================================================


class StreamEventType(str, Enum):
    """Closed set of streaming event kinds."""

    STATUS = "status"
    CHUNK = "chunk"
    DONE = "done"
    ERROR = "error"


class StreamEvent(BaseModel):
    """One event of a streaming generation."""

    type: StreamEventType
    message: str | None = None
    content: str | None = None
    buffer: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (StreamEventType.DONE, StreamEventType.ERROR)


# =============================================================================
# Structured knowledge
# =============================================================================


class HotelEntry(BaseModel):
    """Normalized hotel master record."""

    name: str
    city: str
    category: str = ""
    stars: float | None = None
    tags: list[str] = Field(default_factory=list)
    description: str | None = None
    price_range: str | None = None


class StructuredKnowledge(BaseModel):
    """The four authoritative documents, all optional."""

    brand_guidelines: str | None = None
    core_principles: str | None = None
    logistics_rules: Any = None
    hotel_master: list[HotelEntry] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.brand_guidelines
            or self.core_principles
            or self.logistics_rules
            or self.hotel_master
        )


# =============================================================================
# Ingestion
# =============================================================================


@dataclass
class NamedDocument:
    """A source document identified by its base filename."""

    name: str
    content: bytes | str


class IndexedVector(BaseModel):
    """A chunk with its embedding, as stored in the vector index."""

    content: str
    metadata: dict[str, Any]
    embedding: list[float]


class VectorMatch(BaseModel):
    """A similarity search hit."""

    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    similarity: float = 0.0


class IngestProgress(BaseModel):
    """Progress snapshot emitted while ingesting."""

    processed_files: int
    total_files: int
    current_file: str
    vectors_created: int


class IngestResult(BaseModel):
    """Summary of one ingestion run."""

    vectors_created: int = 0
    files_processed: int = 0
    errors: int = Field(default=0, description="Chunks lost to batches that exhausted retries")
    extraction_errors: int = 0
    failed_files: list[str] = Field(default_factory=list)
    skipped_files: list[str] = Field(default_factory=list)
    duplicate_files: list[str] = Field(default_factory=list)
    structured_files: list[str] = Field(default_factory=list)


class IngestMetadata(BaseModel):
    """Status record persisted after each ingestion run."""

    document_count: int = 0
    file_count: int = 0
    last_ingested_at: datetime | None = None
    embedding_model: str | None = None


class StatusResponse(BaseModel):
    """Readiness of the index and structured knowledge."""

    index_ready: bool
    document_count: int
    file_count: int = 0
    last_ingested_at: datetime | None = None
    embedding_model: str | None = None
    structured_files_present: list[str] = Field(default_factory=list)
