"""Runtime configuration for the comic generation orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_PROVIDER_BASE_URL = "https://api.kie.ai/api/v1/jobs"


@dataclass(slots=True)
class ProviderSettings:
    """Image-generation provider settings."""

    api_key: str = ""
    base_url: str = DEFAULT_PROVIDER_BASE_URL
    callback_url: str | None = None
    model: str = "nano-banana-pro"
    aspect_ratio: str = "3:4"
    resolution: str = "2K"
    output_format: str = "png"
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class PollingSettings:
    """Per-task polling ceiling."""

    max_attempts: int = 60
    interval_seconds: float = 5.0
    max_transient_errors: int = 3


@dataclass(slots=True)
class StorageSettings:
    """Reference-image storage settings."""

    supabase_url: str = ""
    supabase_key: str = ""
    uploads_bucket: str = "comic-uploads"
    retention_hours: int = 24


@dataclass(slots=True)
class WebSettings:
    """Webhook/status HTTP server settings."""

    host: str = "127.0.0.1"
    port: int = 8000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".comicgen.db")
    sqlite_busy_timeout_ms: int = 5_000
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    polling: PollingSettings = field(default_factory=PollingSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    web: WebSettings = field(default_factory=WebSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("COMICGEN_DB_PATH", ".comicgen.db")),
            sqlite_busy_timeout_ms=int(os.getenv("COMICGEN_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            provider=ProviderSettings(
                api_key=os.getenv("NANO_BANANA_API_KEY", ""),
                base_url=os.getenv("NANO_BANANA_BASE_URL", DEFAULT_PROVIDER_BASE_URL),
                callback_url=os.getenv("NANO_BANANA_CALLBACK_URL") or None,
                model=os.getenv("NANO_BANANA_MODEL", "nano-banana-pro"),
                aspect_ratio=os.getenv("NANO_BANANA_ASPECT_RATIO", "3:4"),
                resolution=os.getenv("NANO_BANANA_RESOLUTION", "2K"),
                output_format=os.getenv("NANO_BANANA_OUTPUT_FORMAT", "png"),
                request_timeout_seconds=float(
                    os.getenv("NANO_BANANA_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
            ),
            polling=PollingSettings(
                max_attempts=int(os.getenv("COMICGEN_POLL_MAX_ATTEMPTS", "60")),
                interval_seconds=float(os.getenv("COMICGEN_POLL_INTERVAL_SECONDS", "5.0")),
                max_transient_errors=int(os.getenv("COMICGEN_POLL_MAX_TRANSIENT_ERRORS", "3")),
            ),
            storage=StorageSettings(
                supabase_url=os.getenv("SUPABASE_URL", ""),
                supabase_key=os.getenv("SUPABASE_KEY", ""),
                uploads_bucket=os.getenv("COMICGEN_UPLOADS_BUCKET", "comic-uploads"),
                retention_hours=int(os.getenv("COMICGEN_RETENTION_HOURS", "24")),
            ),
            web=WebSettings(
                host=os.getenv("COMICGEN_WEB_HOST", "127.0.0.1"),
                port=int(os.getenv("COMICGEN_WEB_PORT", "8000")),
            ),
        )

    def validate_for_provider(self) -> None:
        """Raise configuration error if the provider cannot be reached as configured."""

        if not self.provider.api_key:
            raise ValueError("NANO_BANANA_API_KEY is required to submit generation tasks.")
        _validate_http_url(self.provider.base_url, name="NANO_BANANA_BASE_URL")
        if self.provider.callback_url is not None:
            _validate_http_url(self.provider.callback_url, name="NANO_BANANA_CALLBACK_URL")
        if self.provider.request_timeout_seconds <= 0:
            raise ValueError("NANO_BANANA_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.polling.max_attempts <= 0:
            raise ValueError("COMICGEN_POLL_MAX_ATTEMPTS must be a positive integer.")
        if self.polling.interval_seconds < 0:
            raise ValueError("COMICGEN_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.polling.max_transient_errors < 0:
            raise ValueError("COMICGEN_POLL_MAX_TRANSIENT_ERRORS must be >= 0.")

    def validate_for_storage(self) -> None:
        """Raise configuration error if reference-image storage is not configured."""

        if not self.storage.supabase_url or not self.storage.supabase_key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_KEY are required for reference-image cleanup.",
            )
        _validate_http_url(self.storage.supabase_url, name="SUPABASE_URL")
        if not self.storage.uploads_bucket.strip():
            raise ValueError("COMICGEN_UPLOADS_BUCKET must not be empty.")
        if self.storage.retention_hours < 0:
            raise ValueError("COMICGEN_RETENTION_HOURS must be >= 0.")


def _validate_http_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
