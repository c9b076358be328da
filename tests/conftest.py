"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from pathlib import Path

import pytest

from comicgen.generation.models import JobCreate, JobView, Product, TaskLogCreate
from comicgen.generation.reconciler import CompletionReconciler
from comicgen.generation.repository import JobRepository
from tests.fakes import RecordingStorage


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "comicgen.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def storage() -> RecordingStorage:
    return RecordingStorage()


@pytest.fixture()
def reconciler(repository: JobRepository, storage: RecordingStorage) -> CompletionReconciler:
    return CompletionReconciler(
        repository=repository,
        storage=storage,
        background_release=False,
    )


@pytest.fixture()
def make_job(repository: JobRepository) -> Callable[..., JobView]:
    def _make_job(
        page_count: int = 1,
        *,
        product: Product = Product.PREVIEW,
        reference_images: Sequence[str] = ("https://cdn.example.com/comic-uploads/ref.png",),
        task_ids: Sequence[str] = (),
    ) -> JobView:
        job = repository.create_job(
            JobCreate(
                product=product,
                page_count=page_count,
                reference_images=list(reference_images),
            ),
        )
        for page_num, task_id in enumerate(task_ids, start=1):
            repository.create_task_log(
                TaskLogCreate(task_id=task_id, job_id=job.job_id, page_num=page_num),
            )
        return job

    return _make_job
