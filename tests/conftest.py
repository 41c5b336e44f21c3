import io
from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from PIL import Image

from shiori.config.settings import Settings
from shiori.infra.database import Database
from shiori.main import create_app
from shiori.v1.bookmarks.metadata import (
    DescriptionCandidate,
    FetchedMetadata,
    IconCandidate,
)
from shiori.v1.bookmarks.models import Bookmark
from shiori.v1.core.registries import JobRegistry
from shiori.v1.infra.jobs.service import JobService
from shiori.v1.infra.jobs.store import JobStore
from shiori.v1.infra.jobs.worker import JobDispatcher


def encode_image(size: int, format: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (size, size), "white").save(buffer, format=format)
    return buffer.getvalue()


PNG_192 = encode_image(192)


class StubFetcher:
    """MetadataFetcher double that records calls and can be told to fail."""

    def __init__(self, metadata: FetchedMetadata | None = None, error: Exception | None = None):
        self.metadata = metadata
        self.error = error
        self.calls: list[str] = []

    async def fetch(self, url: str, timeout: float = 15.0) -> FetchedMetadata:
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return self.metadata or FetchedMetadata(url=url)


def sample_metadata(url: str = "https://example.com") -> FetchedMetadata:
    return FetchedMetadata(
        url=url,
        title="Example Domain",
        icons=[
            IconCandidate(
                href=f"{url}/favicon.ico",
                rel="icon",
                source="default",
                width=16,
                height=16,
                format="ico",
                mime_type="image/x-icon",
                data=b"\x00\x00\x01\x00\x01\x00\x10\x10",
            ),
            IconCandidate(
                href=f"{url}/icon-192.png",
                rel="icon",
                source="manifest",
                width=192,
                height=192,
                format="png",
                mime_type="image/png",
                data=PNG_192,
            ),
        ],
        descriptions=[
            DescriptionCandidate(value="Plain description", source="html"),
            DescriptionCandidate(value="OpenGraph description", source="opengraph"),
        ],
    )


@pytest.fixture
def app_settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite file."""
    return Settings(
        _env_file=None,
        environment="test",
        debug=False,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'shiori-test.db'}",
        batch_size=3,
        max_workers=2,
        worker_autostart=False,
    )


@pytest.fixture
async def database(app_settings) -> AsyncGenerator[Database, None]:
    """Create a fresh database with all tables for each test."""
    database = Database(app_settings)
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
def registry() -> JobRegistry:
    """Empty job registry; tests register the handlers they need."""
    return JobRegistry()


@pytest.fixture
def job_store(database, registry) -> JobStore:
    return JobStore(database.SessionLocal, registry, default_max_retries=3)


@pytest.fixture
def job_service(job_store, app_settings) -> JobService:
    return JobService(job_store, app_settings)


@pytest.fixture
def dispatcher(job_store, registry) -> JobDispatcher:
    return JobDispatcher(job_store, registry, batch_size=3, max_workers=2, worker_id="test-worker")


@pytest.fixture
def stub_fetcher() -> StubFetcher:
    return StubFetcher(metadata=sample_metadata())


@pytest.fixture
def failing_fetcher() -> StubFetcher:
    """Fetcher whose every call fails like an unreachable host."""
    return StubFetcher(error=ConnectionError("connection refused"))


@pytest.fixture
def empty_fetcher() -> StubFetcher:
    return StubFetcher(metadata=FetchedMetadata(url="https://example.com"))


@pytest.fixture
def png_192() -> bytes:
    return PNG_192


@pytest.fixture
def image_encoder():
    """Encode a blank square image: image_encoder(size, format)."""
    return encode_image


@pytest.fixture
async def sample_bookmark(database) -> Bookmark:
    """Create a bookmark owned by user u1."""
    bookmark = Bookmark(id="b1", user_id="u1", url="https://example.com", title="Example")
    async with database.SessionLocal() as session:
        async with session.begin():
            session.add(bookmark)
    return bookmark


@pytest.fixture
async def app(app_settings, stub_fetcher):
    """Create a test FastAPI application with its own database and registry."""
    app = create_app(settings=app_settings, registry=JobRegistry(), fetcher=stub_fetcher)
    await app.state.database.create_all()

    yield app

    await app.state.jobs.lifecycle.shutdown(timeout=5)
    await app.state.database.close()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
