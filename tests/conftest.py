"""Configuración común de pytest."""

import pytest

from storyboard_sync.config import SyncSettings
from storyboard_sync.utils.cache import ArtifactRegistry

from fakes import FakeBackend


@pytest.fixture
def anyio_backend() -> str:
    """Los tests async corren sobre asyncio."""
    return "asyncio"


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def settings() -> SyncSettings:
    """Tiempos reducidos para que los tests no esperen segundos reales."""
    return SyncSettings(
        api_base_url="http://test/api",
        poll_interval=0.02,
        max_poll_failures=3,
        max_stream_failures=2,
        autosave_quiet_period=0.05,
        verify_max_retries=2,
        verify_backoff=0.01,
        min_artifact_size=100,
        list_cache_max_age=5.0,
    )


@pytest.fixture
def registry() -> ArtifactRegistry:
    registry = ArtifactRegistry(min_content_length=100)
    yield registry
    registry.clear()
