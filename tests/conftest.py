"""pytest fixtures for the generation engine tests.

Provides:
- settings: Test settings pointing at a temp-file SQLite database
- http_routes / http_router: httpx MockTransport handler keyed by (method, url)
- context: EngineContext with fresh schema, local storage and a fake thumbnailer
- input_images: Factory storing input artifacts for a user
- Fake sync/async providers
"""

import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./atelier-test.db")
os.environ["TZ"] = "UTC"

from typing import Any, Callable, Optional  # noqa: E402
from uuid import UUID, uuid4  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from atelier.context import EngineContext, build_context  # noqa: E402
from atelier.core.config import Settings  # noqa: E402
from atelier.core.database import create_schema, get_engine, setup_db_session  # noqa: E402
from atelier.models.image_asset import ImageAsset, ImageKind  # noqa: E402
from atelier.services.providers.base import (  # noqa: E402
    GeneratedImage,
    GenerationRequest,
    ProviderKind,
    SubmittedTask,
)
from atelier.services.thumbnails import Thumbnail  # noqa: E402

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class MockRouter:
    """httpx handler answering from a {(method, url): response} table."""

    def __init__(self, routes: dict):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).split("?")[0]
        responder = self.routes.get((request.method, url))
        if responder is None:
            return httpx.Response(404, json={"error": "no route"})
        if callable(responder):
            return responder(request)
        return responder


class FakeThumbnailer:
    """Returns a truncated copy of the input; sizes in ``fail_sizes`` raise."""

    def __init__(self, fail_sizes: tuple[int, ...] = ()):
        self.fail_sizes = fail_sizes
        self.calls: list[int] = []

    async def render(self, data: bytes, mime_type: str, size: int) -> Thumbnail:
        self.calls.append(size)
        if size in self.fail_sizes:
            raise RuntimeError(f"cannot resize to {size}")
        return Thumbnail(data=data[: max(size // 32, 1)], width=size, height=size)


class FakeSyncProvider:
    """Synchronous provider returning a fixed image or raising a fixed error."""

    kind = ProviderKind.GEMINI

    def __init__(
        self,
        image: Optional[GeneratedImage] = None,
        error: Optional[Exception] = None,
    ):
        self.image = image or GeneratedImage(data=PNG_BYTES, mime_type="image/png", model="fake")
        self.error = error
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> GeneratedImage:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.image


class FakeAsyncProvider:
    """Asynchronous provider handing out sequential task ids."""

    kind = ProviderKind.NANOBANANA

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.requests: list[GenerationRequest] = []

    async def submit(self, request: GenerationRequest) -> SubmittedTask:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return SubmittedTask(
            task_id=f"task-{len(self.requests)}", request={"prompt": request.prompt}
        )


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Test settings with a per-test SQLite file and storage directory."""
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'atelier.db'}",
        APP_ENV="test",
        DB_POOL_SIZE=5,
        STORAGE_ROOT=str(tmp_path / "storage"),
        STORAGE_PUBLIC_BASE_URL="http://files.test",
        RETRY_BASE_DELAY_MS=30000,
        MAX_ATTEMPTS=3,
        THUMBNAIL_SIZES="512,256",
        WEBHOOK_SECRET="",
        RATE_LIMIT_MAX=0,
        QUEUE_ENQUEUE_TIMEOUT_SECONDS=5.0,
    )  # type: ignore[call-arg]


@pytest.fixture
def http_routes() -> dict:
    return {}


@pytest.fixture
def http_router(http_routes) -> MockRouter:
    return MockRouter(http_routes)


@pytest.fixture
def thumbnailer() -> FakeThumbnailer:
    return FakeThumbnailer()


@pytest_asyncio.fixture
async def context(settings, http_router, thumbnailer) -> EngineContext:
    """Engine context on a fresh schema; closed after the test."""
    session_factory = setup_db_session(settings.database_url, pool_size=settings.db_pool_size)
    await create_schema(get_engine(session_factory))
    ctx = build_context(
        settings,
        session_factory=session_factory,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(http_router)),
        thumbnailer=thumbnailer,
    )
    yield ctx
    await ctx.aclose()


@pytest.fixture
def user_id() -> UUID:
    return uuid4()


@pytest.fixture
def input_images(context) -> Callable[..., Any]:
    """Factory storing ``count`` input images for a user and returning their assets."""

    async def _create(owner: UUID, count: int = 2) -> list[ImageAsset]:
        assets = []
        for i in range(count):
            key = f"inputs/{owner}/input-{i}-{uuid4().hex}.png"
            await context.storage.put_object(PNG_BYTES, key, "image/png")
            async with await context.uow_factory() as uow:
                asset = await uow.images.add(
                    ImageAsset(
                        kind=ImageKind.INPUT,
                        user_id=owner,
                        storage_key=key,
                        url=await context.storage.get_download_url(key),
                        mime_type="image/png",
                        size_bytes=len(PNG_BYTES),
                    )
                )
            assets.append(asset)
        return assets

    return _create
