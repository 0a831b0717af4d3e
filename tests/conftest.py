"""Pytest configuration and fixtures."""

import os

import pytest

# Set before any tourpro module builds its settings or loggers
os.environ["OPENAI_API_KEY"] = "test-openai-key"
os.environ["TOURPRO_ENV"] = "test"
os.environ.pop("SUPABASE_URL", None)
os.environ.pop("SUPABASE_SERVICE_ROLE_KEY", None)


@pytest.fixture(scope="session", autouse=True)
def setup_test_env(tmp_path_factory):
    """Set up test environment variables and point local stores at a temp dir."""
    data_dir = tmp_path_factory.mktemp("data")
    os.environ["VECTOR_STORE_PATH"] = str(data_dir / "vector-store")
    os.environ["STRUCTURED_DATA_DIR"] = str(data_dir / "structured")

    from tourpro.core.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    """Settings with small, test-friendly batch and retry values."""
    from tourpro.core.config import Settings

    return Settings(
        OPENAI_API_KEY="test-openai-key",
        TOURPRO_ENV="test",
        INGEST_BATCH_SIZE=50,
        INGEST_MAX_ATTEMPTS=3,
        INGEST_BACKOFF_SECONDS=2.0,
        MIN_DOCUMENT_CHARS=100,
        CHUNK_SIZE=1500,
        CHUNK_STRIDE=1500,
    )
