"""Completion reconciliation shared by the poll routines and the webhook."""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence

from comicgen.generation.collaborators import ReferenceStorage
from comicgen.generation.errors import JobNotFound, PersistenceConflict
from comicgen.generation.models import (
    JobDecision,
    JobStatus,
    JobView,
    ResolveResult,
    TaskLogView,
    TaskOutcome,
    TaskState,
)
from comicgen.generation.repository import JobRepository

logger = logging.getLogger(__name__)


def evaluate_job(page_count: int, logs: Sequence[TaskLogView]) -> JobDecision | None:
    """Derive the terminal job transition from all page logs, or None while pending.

    A job with fewer logs than pages is still pending. Once every page is
    terminal, any success completes the job with the successful pages in page
    order; failed pages are omitted. No success at all fails the job.
    """

    if len(logs) < page_count:
        return None
    if any(not log.status.is_terminal for log in logs):
        return None

    succeeded = sorted(
        (log for log in logs if log.status is TaskState.SUCCESS),
        key=lambda log: log.page_num,
    )
    if succeeded:
        return JobDecision(
            status=JobStatus.COMPLETED,
            generated_images=[log.result_url for log in succeeded if log.result_url],
        )
    return JobDecision(status=JobStatus.FAILED, generated_images=[])


class CompletionReconciler:
    """Single authority for terminal task writes and job finalization."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        storage: ReferenceStorage | None = None,
        background_release: bool = True,
    ) -> None:
        self.repository = repository
        self.storage = storage
        self.background_release = background_release

    def resolve_task(self, task_id: str, outcome: TaskOutcome) -> ResolveResult:
        """Apply one terminal outcome; redundant or late reports are no-ops."""

        log = self.repository.get_task_log(task_id)
        if log is None:
            logger.warning("Outcome for unknown task %s ignored", task_id)
            return ResolveResult(found=False)

        if log.status.is_terminal:
            logger.debug("Task %s already %s; outcome ignored", task_id, log.status.value)
            return self._settle(log.job_id)

        try:
            self.repository.update_task_log(
                task_id=task_id,
                expected=TaskState.WAITING,
                outcome=outcome,
            )
        except PersistenceConflict:
            logger.debug("Task %s resolved concurrently; outcome ignored", task_id)
            return self._settle(log.job_id)

        logger.info(
            "Task %s (job %s page %d) resolved as %s",
            task_id,
            log.job_id,
            log.page_num,
            outcome.state.value,
        )
        job_status, finalized = self.reevaluate_job(log.job_id)
        return ResolveResult(
            found=True,
            applied=True,
            job_id=log.job_id,
            job_status=job_status,
            job_finalized=finalized,
        )

    def reevaluate_job(self, job_id: str) -> tuple[JobStatus, bool]:
        """Finalize the job if all its pages are terminal.

        Returns the job status after evaluation and whether this call was the
        one that finalized it.
        """

        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status.is_terminal:
            return job.status, False

        decision = evaluate_job(job.page_count, self.repository.list_task_logs(job_id))
        if decision is None:
            return JobStatus.GENERATING, False

        try:
            finalized = self.repository.update_job_status(
                job_id=job_id,
                expected=JobStatus.GENERATING,
                new=decision.status,
                generated_images=decision.generated_images,
            )
        except PersistenceConflict:
            current = self.repository.get_job(job_id)
            logger.debug("Job %s finalized concurrently", job_id)
            return (current.status if current is not None else decision.status), False

        logger.info(
            "Job %s %s with %d/%d pages",
            job_id,
            finalized.status.value,
            len(finalized.generated_images),
            finalized.page_count,
        )
        self._release_reference_images(finalized)
        return finalized.status, True

    def _settle(self, job_id: str) -> ResolveResult:
        """Skipped task write; still finish a job an earlier pass left unfinalized."""

        job_status, finalized = self.reevaluate_job(job_id)
        return ResolveResult(
            found=True,
            applied=False,
            job_id=job_id,
            job_status=job_status,
            job_finalized=finalized,
        )

    def _release_reference_images(self, job: JobView) -> None:
        if self.storage is None or not job.reference_images:
            return
        if self.background_release:
            threading.Thread(
                target=self._delete_reference_images,
                args=(job,),
                daemon=True,
                name=f"release-{job.job_id[:8]}",
            ).start()
            return
        self._delete_reference_images(job)

    def _delete_reference_images(self, job: JobView) -> None:
        """Best-effort cleanup; a failure here never touches job status."""

        storage = self.storage
        if storage is None:
            return
        try:
            storage.delete_files(job.reference_images)
            self.repository.mark_reference_images_released(job_id=job.job_id)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Failed to release reference images for job %s",
                job.job_id,
                exc_info=True,
            )
