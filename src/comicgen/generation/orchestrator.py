"""Fan-out of page prompts into provider tasks with one supervised poller per task."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence

from comicgen.config import PollingSettings
from comicgen.generation.collaborators import TaskClient
from comicgen.generation.errors import GenerationError, JobNotFound, TaskFailed
from comicgen.generation.models import (
    AspectSpec,
    JobStatus,
    LaunchReceipt,
    TaskLogCreate,
    TaskOutcome,
    TaskState,
)
from comicgen.generation.reconciler import CompletionReconciler
from comicgen.generation.repository import JobRepository

logger = logging.getLogger(__name__)


def local_task_id(job_id: str, page_num: int) -> str:
    """Stand-in id for a page whose submission never produced a provider task."""

    return f"local-{job_id}-{page_num}"


class GenerationOrchestrator:
    """Submits one provider task per page and drives each to a terminal state.

    `launch` returns right after fan-out. Each submitted task gets its own
    daemon thread that polls the provider and hands the outcome to the
    reconciler; a failing page never stops its siblings. The webhook may
    resolve the same task first, in which case the poller's report is a no-op.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        client: TaskClient,
        reconciler: CompletionReconciler,
        polling: PollingSettings | None = None,
        aspect: AspectSpec | None = None,
    ) -> None:
        self.repository = repository
        self.client = client
        self.reconciler = reconciler
        self.polling = polling or PollingSettings()
        self.aspect = aspect
        self._registry_lock = threading.Lock()
        self._threads: dict[str, list[threading.Thread]] = {}
        self._active_task_ids: set[str] = set()
        self._closed = False

    def launch(
        self,
        job_id: str,
        prompts: Sequence[str],
        reference_images: Sequence[str] = (),
    ) -> LaunchReceipt:
        """Submit every page in order and schedule its poller."""

        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if len(prompts) != job.page_count:
            raise ValueError(
                f"Job {job_id} expects {job.page_count} prompts, got {len(prompts)}",
            )

        receipt = LaunchReceipt(job_id=job_id, submitted_task_ids=[], failed_pages=[])
        for page_num, prompt in enumerate(prompts, start=1):
            task_id = self._submit_page(
                job_id=job_id,
                page_num=page_num,
                prompt=prompt,
                reference_images=reference_images,
            )
            if task_id is None:
                receipt.failed_pages.append(page_num)
                continue

            receipt.submitted_task_ids.append(task_id)
            self._schedule(job_id=job_id, task_id=task_id)

        logger.info(
            "Job %s launched: submitted=%d failed=%d",
            job_id,
            len(receipt.submitted_task_ids),
            len(receipt.failed_pages),
        )
        return receipt

    def resume(self, job_id: str) -> list[str]:
        """Reschedule pollers for pages still waiting, e.g. after a restart."""

        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status is not JobStatus.GENERATING:
            return []

        status, _ = self.reconciler.reevaluate_job(job_id)
        if status is not JobStatus.GENERATING:
            return []

        scheduled: list[str] = []
        for log in self.repository.list_task_logs(job_id):
            if log.status is not TaskState.WAITING:
                continue
            if self._schedule(job_id=job_id, task_id=log.task_id):
                scheduled.append(log.task_id)
        if scheduled:
            logger.info("Job %s resumed: %d pollers", job_id, len(scheduled))
        return scheduled

    def wait(self, job_id: str, timeout: float | None = None) -> bool:
        """Join the pollers of one job; True when all of them have finished."""

        with self._registry_lock:
            threads = list(self._threads.get(job_id, ()))
        return _join_all(threads, timeout)

    def shutdown(self, timeout: float | None = None) -> bool:
        """Stop accepting pollers and join the running ones."""

        with self._registry_lock:
            self._closed = True
            threads = [thread for group in self._threads.values() for thread in group]
        return _join_all(threads, timeout)

    def _submit_page(
        self,
        *,
        job_id: str,
        page_num: int,
        prompt: str,
        reference_images: Sequence[str],
    ) -> str | None:
        try:
            task_id = self.client.submit(prompt, list(reference_images), self.aspect)
        except Exception as error:  # noqa: BLE001
            logger.error("Submission failed for job %s page %d: %s", job_id, page_num, error)
            self._record_submission_failure(job_id=job_id, page_num=page_num, error=error)
            return None

        try:
            self.repository.create_task_log(
                TaskLogCreate(task_id=task_id, job_id=job_id, page_num=page_num),
            )
        except Exception as error:  # noqa: BLE001
            # The provider task keeps running; its webhook will not find a log.
            logger.error(
                "Provider task %s orphaned: log for job %s page %d not written: %s",
                task_id,
                job_id,
                page_num,
                error,
            )
            self._record_submission_failure(job_id=job_id, page_num=page_num, error=error)
            return None
        return task_id

    def _record_submission_failure(
        self,
        *,
        job_id: str,
        page_num: int,
        error: Exception,
    ) -> None:
        task_id = local_task_id(job_id, page_num)
        self.repository.create_task_log(
            TaskLogCreate(task_id=task_id, job_id=job_id, page_num=page_num),
        )
        self.reconciler.resolve_task(task_id, TaskOutcome.failure(f"Submission failed: {error}"))

    def _schedule(self, *, job_id: str, task_id: str) -> bool:
        with self._registry_lock:
            if self._closed:
                logger.warning("Orchestrator closed; task %s not scheduled", task_id)
                return False
            if task_id in self._active_task_ids:
                return False
            thread = threading.Thread(
                target=self._poll_and_resolve,
                args=(job_id, task_id),
                daemon=True,
                name=f"poll-{task_id[:16]}",
            )
            self._active_task_ids.add(task_id)
            self._threads.setdefault(job_id, []).append(thread)
            thread.start()
        return True

    def _poll_and_resolve(self, job_id: str, task_id: str) -> None:
        try:
            outcome = self._poll(task_id)
            self.reconciler.resolve_task(task_id, outcome)
        except Exception:
            logger.exception("Poller for task %s could not record its outcome", task_id)
        finally:
            with self._registry_lock:
                self._active_task_ids.discard(task_id)
                group = self._threads.get(job_id, [])
                if threading.current_thread() in group:
                    group.remove(threading.current_thread())
                if not group:
                    self._threads.pop(job_id, None)

    def _poll(self, task_id: str) -> TaskOutcome:
        try:
            snapshot = self.client.wait_until_terminal(
                task_id,
                max_attempts=self.polling.max_attempts,
                interval_seconds=self.polling.interval_seconds,
                max_transient_errors=self.polling.max_transient_errors,
            )
        except TaskFailed as error:
            return TaskOutcome.failure(error.detail)
        except GenerationError as error:
            logger.warning("Task %s ended without result: %s", task_id, error)
            return TaskOutcome.failure(str(error))
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error polling task %s", task_id)
            return TaskOutcome.failure(f"Unexpected poll error: {error}")
        return TaskOutcome.from_snapshot(snapshot)


def _join_all(threads: Sequence[threading.Thread], timeout: float | None) -> bool:
    deadline = None if timeout is None else time.monotonic() + timeout
    for thread in threads:
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        thread.join(remaining)
    return not any(thread.is_alive() for thread in threads)
