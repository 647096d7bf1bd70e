"""Object storage and artifact download tests."""

from uuid import uuid4

import httpx
import pytest

from atelier.services.exceptions import (
    ProviderNetworkError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    StorageUnavailableError,
)
from atelier.services.storage.downloads import fetch_bytes
from atelier.services.storage.object_storage import LocalObjectStorage, make_storage_key


def test_storage_keys_are_unique_for_identical_inputs():
    owner = uuid4()

    keys = {make_storage_key("outputs", "output.png", owner) for _ in range(50)}

    assert len(keys) == 50
    assert all(key.startswith(f"outputs/{owner}/") for key in keys)


def test_storage_key_strips_directories_and_unsafe_characters():
    key = make_storage_key("/outputs/", "../../etc/pass wd?.png", "user")

    assert key.startswith("outputs/user/")
    assert key.endswith("-pass-wd-.png")
    assert ".." not in key


@pytest.mark.asyncio
async def test_local_storage_round_trip(tmp_path):
    storage = LocalObjectStorage(tmp_path, "http://files.test/")

    await storage.put_object(b"image-bytes", "outputs/u/a.png", "image/png")

    assert storage.exists("outputs/u/a.png")
    assert await storage.get_object("outputs/u/a.png") == b"image-bytes"
    assert await storage.get_download_url("outputs/u/a.png") == "http://files.test/outputs/u/a.png"


@pytest.mark.asyncio
async def test_missing_object_is_storage_error(tmp_path):
    storage = LocalObjectStorage(tmp_path)

    with pytest.raises(StorageUnavailableError):
        await storage.get_object("outputs/u/missing.png")


def test_keys_cannot_escape_the_root(tmp_path):
    storage = LocalObjectStorage(tmp_path / "root")

    with pytest.raises(ValueError, match="escapes"):
        storage.exists("../outside.png")


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_fetch_bytes_returns_content_and_mime_type():
    async with client_for(
        lambda request: httpx.Response(
            200, content=b"png", headers={"content-type": "image/png; charset=binary"}
        )
    ) as client:
        data, mime_type = await fetch_bytes(client, "https://cdn.test/a.png")

    assert data == b"png"
    assert mime_type == "image/png"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "handler, error",
    [
        (lambda request: httpx.Response(404), ProviderUnavailableError),
        (lambda request: httpx.Response(200, content=b""), ProviderNetworkError),
    ],
)
async def test_fetch_bytes_errors(handler, error):
    async with client_for(handler) as client:
        with pytest.raises(error):
            await fetch_bytes(client, "https://cdn.test/a.png")


@pytest.mark.asyncio
async def test_fetch_bytes_transport_failures():
    def timeout(request):
        raise httpx.ReadTimeout("slow", request=request)

    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    async with client_for(timeout) as client:
        with pytest.raises(ProviderTimeoutError):
            await fetch_bytes(client, "https://cdn.test/a.png", timeout=1.0)
    async with client_for(refused) as client:
        with pytest.raises(ProviderNetworkError):
            await fetch_bytes(client, "https://cdn.test/a.png")
