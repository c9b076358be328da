"""Reference-image storage client for Supabase Storage."""

from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx

from comicgen.config import StorageSettings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class StorageError(Exception):
    """Storage request failed."""


class SupabaseReferenceStorage:
    """Downloads uploaded reference images and deletes them once a job is done."""

    def __init__(
        self,
        settings: StorageSettings,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.bucket = settings.uploads_bucket
        self._base_url = settings.supabase_url.rstrip("/")
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "apikey": settings.supabase_key,
                "Authorization": f"Bearer {settings.supabase_key}",
            },
            transport=transport,
            follow_redirects=True,
        )

    def download_image(self, url: str) -> bytes:
        try:
            response = self._client.get(url)
        except httpx.HTTPError as exc:
            raise StorageError(f"Failed to download image {url}: {exc}") from exc
        if not response.is_success:
            raise StorageError(f"Failed to download image: {response.status_code}")
        return response.content

    def delete_files(self, urls: Sequence[str]) -> None:
        """Delete uploaded objects; URLs outside the uploads bucket are skipped."""

        paths = [path for path in (self.object_path(url) for url in urls) if path]
        if not paths:
            return
        try:
            response = self._client.request(
                "DELETE",
                f"{self._base_url}/storage/v1/object/{self.bucket}",
                json={"prefixes": paths},
            )
        except httpx.HTTPError as exc:
            raise StorageError(f"Failed to delete files: {exc}") from exc
        if not response.is_success:
            raise StorageError(
                f"Failed to delete files: HTTP {response.status_code} {response.text[:200]}",
            )
        logger.info("Deleted files from storage: count=%d", len(paths))

    def object_path(self, url: str) -> str | None:
        """Object path of a public bucket URL, e.g. `.../comic-uploads/a.png` -> `a.png`."""

        marker = f"{self.bucket}/"
        if marker not in url:
            return None
        path = url.split(marker, 1)[1].split("?", 1)[0]
        return path or None

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> SupabaseReferenceStorage:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
