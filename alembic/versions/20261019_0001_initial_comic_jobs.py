"""Initial comic job and generation log schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "comic_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("product", sa.String(), nullable=False),
        sa.Column("page_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("theme", sa.String(), nullable=True),
        sa.Column("style", sa.String(), nullable=True),
        sa.Column("story", sa.Text(), nullable=True),
        sa.Column("character1_name", sa.String(), nullable=True),
        sa.Column("character2_name", sa.String(), nullable=True),
        sa.Column("payment_ref", sa.String(), nullable=True),
        sa.Column("reference_images", sa.JSON(), nullable=False),
        sa.Column("generated_images", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reference_images_released_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_comic_jobs_user_id", "comic_jobs", ["user_id"], unique=False)
    op.create_index("ix_comic_jobs_product", "comic_jobs", ["product"], unique=False)
    op.create_index("ix_comic_jobs_status", "comic_jobs", ["status"], unique=False)
    op.create_index("ix_comic_jobs_created_at", "comic_jobs", ["created_at"], unique=False)

    op.create_table(
        "generation_logs",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("page_num", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("result_url", sa.String(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("cost_time_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["job_id"], ["comic_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
        sa.UniqueConstraint("job_id", "page_num", name="uq_generation_logs_job_page"),
    )
    op.create_index("ix_generation_logs_job_id", "generation_logs", ["job_id"], unique=False)
    op.create_index("ix_generation_logs_status", "generation_logs", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_generation_logs_status", table_name="generation_logs")
    op.drop_index("ix_generation_logs_job_id", table_name="generation_logs")
    op.drop_table("generation_logs")
    op.drop_index("ix_comic_jobs_created_at", table_name="comic_jobs")
    op.drop_index("ix_comic_jobs_status", table_name="comic_jobs")
    op.drop_index("ix_comic_jobs_product", table_name="comic_jobs")
    op.drop_index("ix_comic_jobs_user_id", table_name="comic_jobs")
    op.drop_table("comic_jobs")
