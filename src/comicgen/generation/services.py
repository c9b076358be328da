"""Use-case services: start a generation job and read job progress."""

from __future__ import annotations

import logging

from comicgen.generation.collaborators import (
    PaymentVerification,
    PromptBuilder,
    PromptPlan,
    UserIdentity,
)
from comicgen.generation.errors import JobNotFound, PaymentRequired, PersistenceConflict
from comicgen.generation.models import (
    GenerationRequest,
    JobCreate,
    JobStatus,
    JobStatusView,
    JobView,
    TaskLogView,
    TaskState,
)
from comicgen.generation.orchestrator import GenerationOrchestrator
from comicgen.generation.repository import JobRepository

logger = logging.getLogger(__name__)


class ExplicitPromptBuilder:
    """Uses the page prompts carried on the request as-is."""

    def build(self, request: GenerationRequest) -> PromptPlan:
        return PromptPlan(
            prompts=list(request.page_prompts),
            reference_images=list(request.reference_images),
        )


class GenerationService:
    """Creates the job record and hands its prompts to the orchestrator."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        orchestrator: GenerationOrchestrator,
        prompt_builder: PromptBuilder | None = None,
    ) -> None:
        self.repository = repository
        self.orchestrator = orchestrator
        self.prompt_builder = prompt_builder or ExplicitPromptBuilder()

    def start_generation(
        self,
        request: GenerationRequest,
        *,
        payment: PaymentVerification | None = None,
        user: UserIdentity | None = None,
    ) -> JobView:
        """Gate on payment, create the job and launch its pages.

        Only a failure to create the job record, or a launch precondition
        failure, reaches the caller; per-page failures are settled inside
        the orchestrator.
        """

        product = request.product
        if product.requires_payment and (payment is None or not payment.verified):
            raise PaymentRequired(f"Product {product.value!r} requires a verified payment")

        plan = self.prompt_builder.build(request)
        if len(plan.prompts) != product.page_count:
            raise ValueError(
                f"Product {product.value!r} needs {product.page_count} prompts, "
                f"got {len(plan.prompts)}",
            )

        job = self.repository.create_job(
            JobCreate(
                product=product,
                page_count=product.page_count,
                reference_images=list(plan.reference_images),
                user_id=user.user_id if user is not None else None,
                theme=request.theme,
                style=request.style,
                story=request.story,
                character1_name=request.character1_name,
                character2_name=request.character2_name,
                payment_ref=payment.reference if payment is not None else None,
            ),
        )
        logger.info("Job %s created: product=%s pages=%d", job.job_id, product.value, job.page_count)

        try:
            self.orchestrator.launch(job.job_id, plan.prompts, plan.reference_images)
        except Exception:
            logger.exception("Launch failed for job %s", job.job_id)
            self._fail_unlaunched(job.job_id)
            raise
        return job

    def _fail_unlaunched(self, job_id: str) -> None:
        try:
            self.repository.update_job_status(
                job_id=job_id,
                expected=JobStatus.GENERATING,
                new=JobStatus.FAILED,
            )
        except PersistenceConflict:
            logger.debug("Job %s already finalized", job_id)


class JobStatusQuery:
    """Read path for job progress (status endpoint, gallery, CLI)."""

    def __init__(self, *, repository: JobRepository) -> None:
        self.repository = repository

    def get_job_status(self, job_id: str) -> JobStatusView:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return build_job_status(job, self.repository.list_task_logs(job_id))

    def list_recent(self, *, limit: int = 50) -> list[JobStatusView]:
        return [
            build_job_status(job, self.repository.list_task_logs(job.job_id))
            for job in self.repository.list_jobs(limit=limit)
        ]


def build_job_status(job: JobView, logs: list[TaskLogView]) -> JobStatusView:
    completed = sum(1 for log in logs if log.status is TaskState.SUCCESS)
    failed = sum(1 for log in logs if log.status is TaskState.FAILED)
    progress = round(completed / job.page_count * 100) if job.page_count else 0
    return JobStatusView(
        job_id=job.job_id,
        status=job.status,
        page_count=job.page_count,
        completed_page_count=completed,
        failed_page_count=failed,
        progress=progress,
        result_refs=list(job.generated_images),
        created_at=job.created_at,
        theme=job.theme,
        style=job.style,
    )
