"""SQLModel ORM tables for comic job storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class ComicJob(SQLModel, table=True):
    __tablename__ = "comic_jobs"  # type: ignore[bad-override]

    job_id: str = Field(primary_key=True)
    user_id: str | None = Field(default=None, index=True)
    product: str = Field(index=True)
    page_count: int
    status: str = Field(index=True)
    theme: str | None = None
    style: str | None = None
    story: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    character1_name: str | None = None
    character2_name: str | None = None
    payment_ref: str | None = None
    reference_images: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    generated_images: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    reference_images_released_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class GenerationLog(SQLModel, table=True):
    __tablename__ = "generation_logs"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", "page_num", name="uq_generation_logs_job_page"),
    )

    task_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("comic_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    page_num: int
    status: str = Field(index=True)
    result_url: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    cost_time_ms: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
