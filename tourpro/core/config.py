"""Configuration management for Tour Pro itinerary engine."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # OpenAI configuration (required)
    OPENAI_API_KEY: str = Field(..., description="OpenAI API key")

    # Supabase configuration (optional: both set selects the remote backends)
    SUPABASE_URL: str | None = Field(default=None, description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str | None = Field(
        default=None, description="Supabase service role key"
    )

    # Environment
    TOURPRO_ENV: str = Field(default="dev", description="Environment: dev, test, staging, prod")

    # Embedding configuration (shared by ingestion and retrieval)
    EMBEDDING_MODEL: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )
    EMBEDDING_DIM: int = Field(default=1536, description="Embedding vector dimension")

    # Local storage
    VECTOR_STORE_PATH: str = Field(
        default="./data/vector-store", description="Directory of the local vector index"
    )
    STRUCTURED_DATA_DIR: str = Field(
        default="./data/structured", description="Directory of local structured knowledge files"
    )

    # Chunking
    CHUNK_SIZE: int = Field(default=1500, description="Max characters per chunk")
    CHUNK_STRIDE: int = Field(
        default=1500, description="Forward stride between chunk starts (< CHUNK_SIZE overlaps)"
    )
    MIN_DOCUMENT_CHARS: int = Field(
        default=100, description="Documents with less extracted text are skipped"
    )
    PRIORITY_PREFIX: str = Field(
        default="PRIORITY_", description="Filename prefix marking priority sources"
    )

    # Ingestion
    INGEST_BATCH_SIZE: int = Field(default=50, description="Chunks embedded and written per batch")
    INGEST_MAX_ATTEMPTS: int = Field(default=3, description="Attempts per batch before counting errors")
    INGEST_BACKOFF_SECONDS: float = Field(
        default=2.0, description="Backoff base; sleep = base * attempt"
    )
    SOURCE_PAGE_SIZE: int = Field(default=1000, description="Page size when listing indexed sources")
    MAX_UPLOAD_BYTES: int = Field(default=50 * 1024 * 1024, description="Max upload size in bytes")

    # Retrieval
    RAG_TOP_K: int = Field(default=8, description="Passages retrieved per generation")
    RAG_CONTEXT_LIMIT: int = Field(default=5, description="Passages injected into the prompt")

    # Knowledge block
    LOGISTICS_MAX_CHARS: int = Field(
        default=4000, description="Logistics rules truncated beyond this length"
    )
    HOTEL_SUMMARY_LIMIT: int = Field(default=50, description="Hotels listed in the knowledge block")
    HOTEL_SUGGESTIONS_PER_CITY: int = Field(
        default=5, description="Matched hotels suggested per destination"
    )

    # Generation
    GENERATION_MODEL: str = Field(default="gpt-4o", description="Model for itinerary generation")
    GENERATION_TEMPERATURE: float = Field(default=0.7, description="Sampling temperature")
    GENERATION_BASE_TOKENS: int = Field(default=2000, description="Token budget independent of days")
    GENERATION_TOKENS_PER_DAY: int = Field(default=1200, description="Token budget added per day")
    GENERATION_MAX_TOKENS: int = Field(default=16384, description="Absolute token ceiling")
    GENERATION_TIMEOUT_SECONDS: float = Field(
        default=120.0, description="Wall-clock bound for one generation call"
    )
    GENERATION_MAX_ATTEMPTS: int = Field(
        default=2, description="Generation attempts before padding missing days"
    )
    REFINE_HISTORY_TURNS: int = Field(
        default=6, description="Recent chat turns replayed during refinement"
    )

    @property
    def supabase_enabled(self) -> bool:
        """Whether the remote Supabase backends are configured."""
        return bool(self.SUPABASE_URL and self.SUPABASE_SERVICE_ROLE_KEY)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    return Settings()
