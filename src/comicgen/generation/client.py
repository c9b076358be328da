"""HTTP client for the nano-banana image-generation jobs API."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import httpx

from comicgen.config import ProviderSettings
from comicgen.generation.errors import (
    PollTimeout,
    ProviderRejected,
    ProviderUnavailable,
    TaskFailed,
)
from comicgen.generation.models import AspectSpec, TaskState, TaskStatusSnapshot

logger = logging.getLogger(__name__)

ENVELOPE_OK = 200
PROMPT_LOG_PREVIEW_CHARS = 100


class NanoBananaClient:
    """Request/response wrapper around the provider's createTask/recordInfo endpoints.

    No retries happen here; callers own retry policy. The poll helpers only
    sleep between reads and never hold locks while doing so.
    """

    def __init__(
        self,
        settings: ProviderSettings,
        *,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self._sleep = sleep
        if not settings.api_key:
            logger.warning("NANO_BANANA_API_KEY not set")
        self._client = httpx.Client(
            base_url=settings.base_url.rstrip("/"),
            timeout=httpx.Timeout(settings.request_timeout_seconds, connect=10.0),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {settings.api_key}",
            },
            transport=transport,
        )

    def submit(
        self,
        prompt: str,
        reference_images: Sequence[str] = (),
        aspect: AspectSpec | None = None,
    ) -> str:
        """Create one generation task and return the provider task id."""

        aspect = aspect or AspectSpec()
        body: dict[str, Any] = {
            "model": self.settings.model,
            "input": {
                "prompt": prompt,
                "image_input": list(reference_images),
                "aspect_ratio": aspect.aspect_ratio or self.settings.aspect_ratio,
                "resolution": aspect.resolution or self.settings.resolution,
                "output_format": aspect.output_format or self.settings.output_format,
            },
        }
        if self.settings.callback_url:
            body["callBackUrl"] = self.settings.callback_url

        logger.info("Creating generation task: %s", prompt[:PROMPT_LOG_PREVIEW_CHARS])
        data = self._request("POST", "/createTask", payload=body)
        task_id = data.get("taskId") if isinstance(data, Mapping) else None
        if not isinstance(task_id, str) or not task_id:
            raise ProviderRejected("createTask response carries no taskId")
        logger.info("Task created: %s", task_id)
        return task_id

    def fetch_status(self, task_id: str) -> TaskStatusSnapshot:
        """Read the current provider state of a task without mutating it."""

        data = self._request("GET", "/recordInfo", params={"taskId": task_id})
        if not isinstance(data, Mapping):
            raise ProviderRejected(f"recordInfo response for {task_id} carries no data")
        return parse_task_record(data, task_id=task_id)

    def wait_until_terminal(
        self,
        task_id: str,
        *,
        max_attempts: int = 60,
        interval_seconds: float = 5.0,
        max_transient_errors: int = 3,
    ) -> TaskStatusSnapshot:
        """Poll until success and return the terminal snapshot.

        Raises `TaskFailed` as soon as the provider reports failure,
        `PollTimeout` when every attempt still saw `waiting`, and
        `ProviderUnavailable` once more than `max_transient_errors`
        consecutive reads failed at the transport level.
        """

        consecutive_errors = 0
        for attempt in range(1, max_attempts + 1):
            try:
                snapshot = self.fetch_status(task_id)
            except ProviderUnavailable as error:
                consecutive_errors += 1
                if consecutive_errors > max_transient_errors:
                    raise
                logger.warning(
                    "Transient status error for %s (attempt %d/%d): %s",
                    task_id,
                    attempt,
                    max_attempts,
                    error,
                )
            else:
                consecutive_errors = 0
                if snapshot.state is TaskState.SUCCESS:
                    logger.info(
                        "Task completed: %s cost_time_ms=%s",
                        task_id,
                        snapshot.cost_time_ms,
                    )
                    return snapshot
                if snapshot.state is TaskState.FAILED:
                    detail = snapshot.failure_detail or "provider reported failure"
                    logger.error("Task failed: %s %s", task_id, detail)
                    raise TaskFailed(task_id, detail)

            if attempt < max_attempts:
                self._sleep(interval_seconds)

        raise PollTimeout(task_id, max_attempts)

    def poll_until_terminal(
        self,
        task_id: str,
        max_attempts: int = 60,
        interval_seconds: float = 5.0,
    ) -> list[str]:
        """Poll until success and return the task's result URLs."""

        snapshot = self.wait_until_terminal(
            task_id,
            max_attempts=max_attempts,
            interval_seconds=interval_seconds,
        )
        return list(snapshot.result_refs)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> NanoBananaClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Mapping[str, Any] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> Any:
        try:
            response = self._client.request(method, path, json=payload, params=params)
        except httpx.TimeoutException as error:
            raise ProviderUnavailable(f"Timeout calling {path}") from error
        except httpx.HTTPError as error:
            raise ProviderUnavailable(f"HTTP error calling {path}: {error}") from error

        if not response.is_success:
            logger.error("Provider API error: %s %s", response.status_code, response.text[:500])
            raise ProviderUnavailable(
                f"API error: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            envelope = response.json()
        except ValueError as error:
            raise ProviderRejected(f"Non-JSON response from {path}") from error
        if not isinstance(envelope, Mapping):
            raise ProviderRejected(f"Unexpected response shape from {path}")
        code = envelope.get("code")
        if code != ENVELOPE_OK:
            raise ProviderRejected(f"API returned error: {envelope.get('msg')}", code=code)
        return envelope.get("data")


def parse_task_record(data: Mapping[str, Any], *, task_id: str | None = None) -> TaskStatusSnapshot:
    """Adapt the provider's task record (recordInfo data or callback data) to a snapshot.

    A `success` record without result URLs is still treated as waiting:
    the provider has not published the images yet.
    """

    record_task_id = data.get("taskId") or task_id
    if not isinstance(record_task_id, str) or not record_task_id:
        raise ProviderRejected("Task record carries no taskId")

    raw_state = str(data.get("state") or "").lower()
    cost_time = data.get("costTime")
    cost_time_ms = int(cost_time) if isinstance(cost_time, int | float) else None

    if raw_state == "success":
        result_refs = _parse_result_urls(data.get("resultJson"))
        if result_refs:
            return TaskStatusSnapshot(
                task_id=record_task_id,
                state=TaskState.SUCCESS,
                result_refs=result_refs,
                cost_time_ms=cost_time_ms,
            )
        return TaskStatusSnapshot(task_id=record_task_id, state=TaskState.WAITING)

    if raw_state in {"fail", "failed"}:
        fail_msg = data.get("failMsg")
        fail_code = data.get("failCode")
        detail = str(fail_msg) if fail_msg else "provider reported failure"
        if fail_code:
            detail = f"{detail} (code={fail_code})"
        return TaskStatusSnapshot(
            task_id=record_task_id,
            state=TaskState.FAILED,
            failure_detail=detail,
            cost_time_ms=cost_time_ms,
        )

    return TaskStatusSnapshot(task_id=record_task_id, state=TaskState.WAITING)


def _parse_result_urls(raw: object) -> tuple[str, ...]:
    if raw is None or raw == "":
        return ()
    parsed: object = raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError as error:
            raise ProviderRejected(f"Invalid resultJson: {raw[:200]!r}") from error
    if not isinstance(parsed, Mapping):
        raise ProviderRejected("resultJson must be an object")
    urls = parsed.get("resultUrls") or []
    if not isinstance(urls, list):
        raise ProviderRejected("resultJson.resultUrls must be a list")
    return tuple(str(url) for url in urls if url)
