"""Persistent job store for comic jobs and their page tasks."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from comicgen.generation.errors import JobNotFound, PersistenceConflict
from comicgen.generation.models import (
    JobCreate,
    JobStatus,
    JobView,
    Product,
    TaskLogCreate,
    TaskLogView,
    TaskOutcome,
    TaskState,
)
from comicgen.storage.alembic_runner import upgrade_head
from comicgen.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from comicgen.storage.sqlmodel_models import ComicJob, GenerationLog


class JobRepository:
    """Job store facade backed by SQLModel + SQLite.

    Every status transition is a conditional UPDATE keyed on the expected
    current status, so concurrent writers (poll threads, webhook requests,
    other processes sharing the database) cannot overwrite a terminal state.
    A lost race surfaces as `PersistenceConflict`.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- jobs ------------------------------------------------------------------

    def create_job(self, payload: JobCreate) -> JobView:
        """Create a job in GENERATING state."""

        if payload.page_count <= 0:
            raise ValueError(f"page_count must be positive, got {payload.page_count}")
        now = utc_now()
        with Session(self.engine) as session:
            row = ComicJob(
                job_id=payload.job_id or str(uuid4()),
                user_id=payload.user_id,
                product=payload.product.value,
                page_count=payload.page_count,
                status=JobStatus.GENERATING.value,
                theme=payload.theme,
                style=payload.style,
                story=payload.story,
                character1_name=payload.character1_name,
                character2_name=payload.character2_name,
                payment_ref=payload.payment_ref,
                reference_images=list(payload.reference_images),
                generated_images=[],
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(ComicJob, job_id)
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, newest first, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(ComicJob).order_by(col(ComicJob.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(ComicJob.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def update_job_status(
        self,
        *,
        job_id: str,
        expected: JobStatus,
        new: JobStatus,
        generated_images: list[str] | None = None,
    ) -> JobView:
        """Move a job from `expected` to `new`, writing results in the same statement."""

        now = utc_now()
        values: dict[str, object] = {
            "status": new.value,
            "updated_at": to_db_datetime(now),
        }
        if new.is_terminal:
            values["finished_at"] = to_db_datetime(now)
            values["generated_images"] = list(generated_images or [])

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ComicJob)
                .where(
                    col(ComicJob.job_id) == job_id,
                    col(ComicJob.status) == expected.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                if session.get(ComicJob, job_id) is None:
                    raise JobNotFound(job_id)
                raise PersistenceConflict("Job", job_id, expected.value)
            session.commit()
            row = session.get(ComicJob, job_id)
            if row is None:
                raise JobNotFound(job_id)
            session.refresh(row)
            return _to_job_view(row)

    def list_jobs_pending_reference_release(self, *, created_before: datetime) -> list[JobView]:
        """Jobs older than the cutoff whose reference images are still stored."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ComicJob)
                .where(
                    col(ComicJob.created_at) < to_db_datetime(created_before),
                    col(ComicJob.reference_images_released_at).is_(None),
                )
                .order_by(col(ComicJob.created_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def mark_reference_images_released(self, *, job_id: str) -> bool:
        """Record reference-image release once; later calls are no-ops."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ComicJob)
                .where(
                    col(ComicJob.job_id) == job_id,
                    col(ComicJob.reference_images_released_at).is_(None),
                )
                .values(
                    reference_images_released_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # -- task logs -------------------------------------------------------------

    def create_task_log(self, payload: TaskLogCreate) -> TaskLogView:
        """Register one page task; a log created terminal is already finished."""

        if payload.page_num <= 0:
            raise ValueError(f"page_num must be 1-based, got {payload.page_num}")
        if payload.status is TaskState.SUCCESS:
            raise ValueError("A task log cannot be created in success state.")
        now = utc_now()
        with Session(self.engine) as session:
            row = GenerationLog(
                task_id=payload.task_id,
                job_id=payload.job_id,
                page_num=payload.page_num,
                status=payload.status.value,
                error=payload.error,
                created_at=to_db_datetime(now),
                finished_at=to_db_datetime(now) if payload.status.is_terminal else None,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_log_view(row)

    def get_task_log(self, task_id: str) -> TaskLogView | None:
        with Session(self.engine) as session:
            row = session.get(GenerationLog, task_id)
            return _to_task_log_view(row) if row is not None else None

    def update_task_log(
        self,
        *,
        task_id: str,
        expected: TaskState,
        outcome: TaskOutcome,
    ) -> TaskLogView:
        """Apply a terminal outcome if the log is still in `expected` state."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationLog)
                .where(
                    col(GenerationLog.task_id) == task_id,
                    col(GenerationLog.status) == expected.value,
                )
                .values(
                    status=outcome.state.value,
                    result_url=outcome.result_url,
                    error=outcome.detail,
                    cost_time_ms=outcome.cost_time_ms,
                    finished_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise PersistenceConflict("Task log", task_id, expected.value)
            session.commit()
            row = session.get(GenerationLog, task_id)
            if row is None:
                raise PersistenceConflict("Task log", task_id, expected.value)
            session.refresh(row)
            return _to_task_log_view(row)

    def list_task_logs(self, job_id: str) -> list[TaskLogView]:
        """All page logs of a job in page order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationLog)
                .where(GenerationLog.job_id == job_id)
                .order_by(col(GenerationLog.page_num).asc()),
            ).all()
        return [_to_task_log_view(row) for row in rows]


def _to_job_view(row: ComicJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        user_id=row.user_id,
        product=Product(row.product),
        page_count=row.page_count,
        status=JobStatus(row.status),
        theme=row.theme,
        style=row.style,
        story=row.story,
        character1_name=row.character1_name,
        character2_name=row.character2_name,
        payment_ref=row.payment_ref,
        reference_images=list(row.reference_images or []),
        generated_images=list(row.generated_images or []),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
        reference_images_released_at=(
            to_utc_aware_datetime(row.reference_images_released_at)
            if row.reference_images_released_at is not None
            else None
        ),
    )


def _to_task_log_view(row: GenerationLog) -> TaskLogView:
    return TaskLogView(
        task_id=row.task_id,
        job_id=row.job_id,
        page_num=row.page_num,
        status=TaskState(row.status),
        result_url=row.result_url,
        error=row.error,
        cost_time_ms=row.cost_time_ms,
        created_at=to_utc_aware_datetime(row.created_at),
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
    )
