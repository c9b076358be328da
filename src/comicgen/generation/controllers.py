"""Controllers for generation CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path

from comicgen.config import Settings
from comicgen.generation.callbacks import CallbackIngress
from comicgen.generation.client import NanoBananaClient
from comicgen.generation.collaborators import PaymentVerification, ReferenceStorage
from comicgen.generation.errors import JobNotFound, PaymentRequired, ProviderRejected
from comicgen.generation.models import (
    AspectSpec,
    GenerationRequest,
    JobStatus,
    JobStatusView,
    Product,
)
from comicgen.generation.orchestrator import GenerationOrchestrator
from comicgen.generation.reconciler import CompletionReconciler
from comicgen.generation.repository import JobRepository
from comicgen.generation.services import GenerationService, JobStatusQuery
from comicgen.generation.sweeper import ReferenceImageSweeper
from comicgen.http.storage import SupabaseReferenceStorage

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobsLaunchCommand:
    """CLI input for launching one comic job."""

    db_path: Path | None
    product: str
    prompts: tuple[str, ...]
    reference_images: tuple[str, ...]
    theme: str | None = None
    style: str | None = None
    payment_ref: str | None = None
    wait: bool = True
    timeout_seconds: float | None = None


@dataclass(slots=True)
class JobsStatusCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobsListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobsResumeCommand:
    """CLI input for resuming pollers after a restart."""

    db_path: Path | None
    job_id: str | None
    wait: bool = True
    timeout_seconds: float | None = None


@dataclass(slots=True)
class CallbackApplyCommand:
    """CLI input for replaying a provider callback body."""

    db_path: Path | None
    payload_path: Path


@dataclass(slots=True)
class CleanupCommand:
    """CLI input for the reference-image retention sweep."""

    db_path: Path | None
    retention_hours: int | None


@dataclass(slots=True)
class ServeCommand:
    """CLI input for the webhook/status HTTP server."""

    db_path: Path | None
    host: str | None
    port: int | None
    resume_pending: bool = True


class CommandError(Exception):
    """User-facing CLI failure."""


@dataclass(slots=True)
class GenerationRuntime:
    """Wired object graph shared by CLI commands and the HTTP server."""

    repository: JobRepository
    reconciler: CompletionReconciler
    orchestrator: GenerationOrchestrator
    ingress: CallbackIngress
    status_query: JobStatusQuery
    service: GenerationService
    storage: ReferenceStorage | None


class GenerationCliController:
    """Coordinates job launch, inspection, callback and cleanup CLI operations."""

    def launch(self, command: JobsLaunchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            settings.validate_for_provider()
        except ValueError as error:
            raise CommandError(str(error)) from error

        product = _parse_product(command.product)
        payment = (
            PaymentVerification(verified=True, reference=command.payment_ref)
            if command.payment_ref
            else None
        )
        request = GenerationRequest(
            product=product,
            reference_images=list(command.reference_images),
            theme=command.theme,
            style=command.style,
            page_prompts=list(command.prompts),
        )
        with _runtime(settings) as runtime:
            try:
                job = runtime.service.start_generation(request, payment=payment)
            except PaymentRequired as error:
                raise CommandError(f"{error}. Pass --payment-ref for paid products.") from error
            except ValueError as error:
                raise CommandError(str(error)) from error

            lines = [
                f"Job launched: job_id={job.job_id} product={product.value} pages={job.page_count}",
            ]
            if not command.wait:
                runtime.orchestrator.shutdown(timeout=0)
                lines.append(f"Pollers detached; run `comicgen jobs resume {job.job_id}` to finish.")
                return lines

            finished = runtime.orchestrator.wait(job.job_id, timeout=command.timeout_seconds)
            if not finished:
                lines.append("Timed out waiting for pollers; job is still generating.")
            lines.extend(_status_lines(runtime.status_query.get_job_status(job.job_id)))
        return lines

    def status(self, command: JobsStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            query = JobStatusQuery(repository=repository)
            try:
                view = query.get_job_status(command.job_id)
            except JobNotFound as error:
                raise CommandError(f"Job not found: {command.job_id}") from error
            logs = repository.list_task_logs(command.job_id)

        lines = _status_lines(view)
        lines.append("Pages:")
        for log in logs:
            detail = log.result_url or log.error or "-"
            lines.append(f"  page={log.page_num} task_id={log.task_id} status={log.status.value} {detail}")
        return lines

    def list_jobs(self, command: JobsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = _parse_job_status(command.status) if command.status else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status, limit=command.limit)

        if not jobs:
            return ["No jobs found."]
        return [
            f"{job.job_id} status={job.status.value} product={job.product.value} "
            f"pages={len(job.generated_images)}/{job.page_count} "
            f"created_at={job.created_at.isoformat()}"
            for job in jobs
        ]

    def resume(self, command: JobsResumeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            settings.validate_for_provider()
        except ValueError as error:
            raise CommandError(str(error)) from error

        with _runtime(settings) as runtime:
            if command.job_id:
                job_ids = [command.job_id]
            else:
                job_ids = [
                    job.job_id
                    for job in runtime.repository.list_jobs(status=JobStatus.GENERATING, limit=1000)
                ]
            if not job_ids:
                return ["No generating jobs to resume."]

            lines: list[str] = []
            for job_id in job_ids:
                try:
                    scheduled = runtime.orchestrator.resume(job_id)
                except JobNotFound as error:
                    raise CommandError(f"Job not found: {job_id}") from error
                lines.append(f"Job resumed: job_id={job_id} pollers={len(scheduled)}")

            if command.wait:
                for job_id in job_ids:
                    runtime.orchestrator.wait(job_id, timeout=command.timeout_seconds)
                    lines.extend(_status_lines(runtime.status_query.get_job_status(job_id)))
        return lines

    def apply_callback(self, command: CallbackApplyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            payload = json.loads(command.payload_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise CommandError(f"Cannot read callback payload: {error}") from error
        if not isinstance(payload, dict):
            raise CommandError("Callback payload must be a JSON object.")

        with _runtime(settings) as runtime:
            try:
                result = runtime.ingress.handle_envelope(payload)
            except ProviderRejected as error:
                raise CommandError(f"Rejected callback payload: {error}") from error

        if not result.found:
            return ["Task not found; callback ignored."]
        if not result.terminal:
            return ["Callback acknowledged: task still waiting."]
        return [f"Callback applied: changed={str(result.applied).lower()}"]

    def cleanup(self, command: CleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.retention_hours is not None:
            settings.storage.retention_hours = command.retention_hours
        try:
            settings.validate_for_storage()
        except ValueError as error:
            raise CommandError(str(error)) from error

        with (
            _repository(settings) as repository,
            SupabaseReferenceStorage(settings.storage) as storage,
        ):
            summary = ReferenceImageSweeper(
                repository=repository,
                storage=storage,
                retention_hours=settings.storage.retention_hours,
            ).sweep()

        lines = [
            "Cleanup summary: "
            f"checked={summary.checked_jobs} released={summary.released_jobs} "
            f"files={summary.deleted_files} failed={len(summary.failed_jobs)}",
        ]
        lines.extend(f"  failed job_id={job_id}" for job_id in summary.failed_jobs)
        return lines

    def serve(self, command: ServeCommand) -> None:
        import uvicorn

        from comicgen.web.app import create_app

        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings, background_release=True) as runtime:
            if command.resume_pending and settings.provider.api_key:
                for job in runtime.repository.list_jobs(status=JobStatus.GENERATING, limit=1000):
                    runtime.orchestrator.resume(job.job_id)
            app = create_app(
                ingress=runtime.ingress,
                status_query=runtime.status_query,
                generation_service=runtime.service if settings.provider.api_key else None,
            )
            uvicorn.run(
                app,
                host=command.host or settings.web.host,
                port=command.port or settings.web.port,
            )


def _status_lines(view: JobStatusView) -> list[str]:
    lines = [
        f"Job {view.job_id}: status={view.status.value} progress={view.progress}% "
        f"pages={view.completed_page_count}/{view.page_count} failed={view.failed_page_count}",
    ]
    lines.extend(f"  result: {ref}" for ref in view.result_refs)
    return lines


def _parse_product(raw: str) -> Product:
    try:
        return Product(raw.lower())
    except ValueError as error:
        raise CommandError(f"Unknown product: {raw}") from error


def _parse_job_status(raw: str) -> JobStatus:
    try:
        return JobStatus(raw.upper())
    except ValueError as error:
        raise CommandError(f"Unknown job status: {raw}") from error


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _runtime(
    settings: Settings,
    *,
    background_release: bool = False,
) -> Iterator[GenerationRuntime]:
    with ExitStack() as stack:
        repository = stack.enter_context(_repository(settings))
        storage: SupabaseReferenceStorage | None = None
        if settings.storage.supabase_url and settings.storage.supabase_key:
            storage = stack.enter_context(SupabaseReferenceStorage(settings.storage))
        client = NanoBananaClient(settings.provider)

        reconciler = CompletionReconciler(
            repository=repository,
            storage=storage,
            background_release=background_release,
        )
        orchestrator = GenerationOrchestrator(
            repository=repository,
            client=client,
            reconciler=reconciler,
            polling=settings.polling,
            aspect=AspectSpec(
                aspect_ratio=settings.provider.aspect_ratio,
                resolution=settings.provider.resolution,
                output_format=settings.provider.output_format,
            ),
        )
        stack.callback(_detach, orchestrator, client)
        yield GenerationRuntime(
            repository=repository,
            reconciler=reconciler,
            orchestrator=orchestrator,
            ingress=CallbackIngress(reconciler=reconciler),
            status_query=JobStatusQuery(repository=repository),
            service=GenerationService(repository=repository, orchestrator=orchestrator),
            storage=storage,
        )


def _detach(orchestrator: GenerationOrchestrator, client: NanoBananaClient) -> None:
    # Pollers still running keep the client; they die with the process.
    if orchestrator.shutdown(timeout=0):
        client.close()
    else:
        logger.info("Leaving running pollers detached")
