from __future__ import annotations

import json

import allure
import httpx
import pytest

from comicgen.config import StorageSettings
from comicgen.http.storage import StorageError, SupabaseReferenceStorage

pytestmark = [
    allure.epic("Comic Generation"),
    allure.feature("Reference Image Retention"),
]

SETTINGS = StorageSettings(
    supabase_url="https://project.supabase.co/",
    supabase_key="service-key",
)
PUBLIC_PREFIX = "https://project.supabase.co/storage/v1/object/public/comic-uploads"


def _storage(handler) -> SupabaseReferenceStorage:  # noqa: ANN001
    return SupabaseReferenceStorage(SETTINGS, transport=httpx.MockTransport(handler))


def test_delete_files_sends_bucket_relative_paths() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    storage = _storage(handler)
    storage.delete_files(
        [
            f"{PUBLIC_PREFIX}/user-1/front.png",
            f"{PUBLIC_PREFIX}/user-1/side.png?token=abc",
            "https://elsewhere.example.com/other.png",
        ],
    )

    [request] = seen
    assert request.method == "DELETE"
    assert str(request.url) == "https://project.supabase.co/storage/v1/object/comic-uploads"
    assert request.headers["apikey"] == "service-key"
    assert request.headers["Authorization"] == "Bearer service-key"
    assert json.loads(request.content) == {"prefixes": ["user-1/front.png", "user-1/side.png"]}


def test_delete_files_skips_request_when_nothing_matches() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    _storage(handler).delete_files(["https://elsewhere.example.com/other.png"])

    assert seen == []


def test_delete_files_raises_on_error_status() -> None:
    storage = _storage(lambda request: httpx.Response(500, text="boom"))

    with pytest.raises(StorageError, match="500"):
        storage.delete_files([f"{PUBLIC_PREFIX}/a.png"])


def test_download_image_returns_bytes() -> None:
    storage = _storage(lambda request: httpx.Response(200, content=b"\x89PNG"))

    assert storage.download_image(f"{PUBLIC_PREFIX}/a.png") == b"\x89PNG"


def test_download_image_raises_on_missing_file() -> None:
    storage = _storage(lambda request: httpx.Response(404))

    with pytest.raises(StorageError, match="404"):
        storage.download_image(f"{PUBLIC_PREFIX}/missing.png")
