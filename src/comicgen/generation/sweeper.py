"""Retention sweep for uploaded reference images."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from comicgen.generation.collaborators import ReferenceStorage
from comicgen.generation.repository import JobRepository
from comicgen.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepSummary:
    checked_jobs: int = 0
    released_jobs: int = 0
    deleted_files: int = 0
    failed_jobs: list[str] = field(default_factory=list)


class ReferenceImageSweeper:
    """Deletes reference images of jobs older than the retention window.

    Catches jobs whose release on finalization failed or never ran.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        storage: ReferenceStorage,
        retention_hours: int = 24,
    ) -> None:
        if retention_hours < 0:
            raise ValueError("retention_hours must be >= 0")
        self.repository = repository
        self.storage = storage
        self.retention = timedelta(hours=retention_hours)

    def sweep(self, now: datetime | None = None) -> SweepSummary:
        cutoff = (now or utc_now()) - self.retention
        summary = SweepSummary()
        for job in self.repository.list_jobs_pending_reference_release(created_before=cutoff):
            summary.checked_jobs += 1
            try:
                if job.reference_images:
                    self.storage.delete_files(job.reference_images)
            except Exception:  # noqa: BLE001
                logger.warning("Cleanup failed for job %s", job.job_id, exc_info=True)
                summary.failed_jobs.append(job.job_id)
                continue
            if self.repository.mark_reference_images_released(job_id=job.job_id):
                summary.released_jobs += 1
                summary.deleted_files += len(job.reference_images)

        logger.info(
            "Reference sweep done: checked=%d released=%d files=%d failed=%d",
            summary.checked_jobs,
            summary.released_jobs,
            summary.deleted_files,
            len(summary.failed_jobs),
        )
        return summary
