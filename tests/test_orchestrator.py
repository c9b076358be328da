from __future__ import annotations

import json
import threading
from collections.abc import Callable

import allure
import httpx
import pytest

from comicgen.config import PollingSettings, ProviderSettings
from comicgen.generation.client import NanoBananaClient
from comicgen.generation.errors import JobNotFound, PollTimeout, ProviderUnavailable
from comicgen.generation.models import (
    JobStatus,
    JobView,
    Product,
    TaskLogCreate,
    TaskLogView,
    TaskState,
)
from comicgen.generation.orchestrator import GenerationOrchestrator, local_task_id
from comicgen.generation.reconciler import CompletionReconciler
from comicgen.generation.repository import JobRepository
from tests.fakes import FakeTaskClient, failure, success, wait_for

pytestmark = [
    allure.epic("Comic Generation"),
    allure.feature("Fan-out Orchestration"),
]


def _orchestrator(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    client: FakeTaskClient,
) -> GenerationOrchestrator:
    return GenerationOrchestrator(repository=repository, client=client, reconciler=reconciler)


def test_launch_completes_job_with_results_in_page_order(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
) -> None:
    job = make_job(3, product=Product.FULL)
    client = FakeTaskClient({"p1": success("a"), "p2": success("b"), "p3": success("c")})
    orchestrator = _orchestrator(repository, reconciler, client)

    receipt = orchestrator.launch(job.job_id, ["p1", "p2", "p3"], job.reference_images)

    assert orchestrator.wait(job.job_id, timeout=5)
    assert receipt.submitted_task_ids == ["task-1", "task-2", "task-3"]
    assert receipt.failed_pages == []
    assert [prompt for _, prompt, _ in client.submitted] == ["p1", "p2", "p3"]
    assert all(refs == tuple(job.reference_images) for _, _, refs in client.submitted)
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.COMPLETED
    assert stored.generated_images == ["a", "b", "c"]


def test_pages_resolving_out_of_order_keep_page_order(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
) -> None:
    job = make_job(3)
    gates = {prompt: threading.Event() for prompt in ("p1", "p2", "p3")}
    client = FakeTaskClient(
        {"p1": success("a"), "p2": failure(), "p3": success("c")},
        gates=gates,
    )
    orchestrator = _orchestrator(repository, reconciler, client)
    orchestrator.launch(job.job_id, ["p1", "p2", "p3"])

    for prompt in ("p2", "p3", "p1"):
        gates[prompt].set()
        task_id = client.task_id_for(prompt)
        wait_for(lambda task_id=task_id: _is_terminal(repository, task_id))

    assert orchestrator.wait(job.job_id, timeout=5)
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.COMPLETED
    assert stored.generated_images == ["a", "c"]


def test_every_page_failing_fails_the_job(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
) -> None:
    job = make_job(2)
    client = FakeTaskClient(
        {
            "p1": failure("nsfw"),
            "p2": PollTimeout("task-2", 60),
        },
    )
    orchestrator = _orchestrator(repository, reconciler, client)

    orchestrator.launch(job.job_id, ["p1", "p2"])

    assert orchestrator.wait(job.job_id, timeout=5)
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.FAILED
    assert stored.generated_images == []
    logs = repository.list_task_logs(job.job_id)
    assert [log.status for log in logs] == [TaskState.FAILED, TaskState.FAILED]
    assert logs[0].error == "nsfw"
    assert logs[1].error is not None and "60" in logs[1].error


def test_submission_failure_records_failed_page_and_keeps_siblings(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
) -> None:
    job = make_job(2)
    client = FakeTaskClient(
        {"p1": success("a")},
        submit_errors={"p2": ProviderUnavailable("API error: 503", status_code=503)},
    )
    orchestrator = _orchestrator(repository, reconciler, client)

    receipt = orchestrator.launch(job.job_id, ["p1", "p2"])

    assert orchestrator.wait(job.job_id, timeout=5)
    assert receipt.failed_pages == [2]
    failed_log = repository.get_task_log(local_task_id(job.job_id, 2))
    assert failed_log is not None
    assert failed_log.status is TaskState.FAILED
    assert failed_log.error is not None and failed_log.error.startswith("Submission failed")
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.COMPLETED
    assert stored.generated_images == ["a"]


def test_unexpected_poll_error_becomes_page_failure(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
) -> None:
    job = make_job(1)
    client = FakeTaskClient({"p1": RuntimeError("boom")})
    orchestrator = _orchestrator(repository, reconciler, client)

    orchestrator.launch(job.job_id, ["p1"])

    assert orchestrator.wait(job.job_id, timeout=5)
    log = repository.get_task_log("task-1")
    assert log is not None
    assert log.status is TaskState.FAILED
    assert log.error == "Unexpected poll error: boom"
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.FAILED


def test_launch_rejects_prompt_count_mismatch(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
) -> None:
    job = make_job(2)
    client = FakeTaskClient()
    orchestrator = _orchestrator(repository, reconciler, client)

    with pytest.raises(ValueError, match="expects 2 prompts"):
        orchestrator.launch(job.job_id, ["only one"])
    with pytest.raises(JobNotFound):
        orchestrator.launch("missing", ["p1"])
    assert client.submitted == []


def test_resume_polls_only_waiting_pages(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
) -> None:
    job = make_job(2)
    gates = {"p2": threading.Event()}
    client = FakeTaskClient({"p1": success("a"), "p2": success("b")}, gates=gates)
    first_run = _orchestrator(repository, reconciler, client)
    first_run.launch(job.job_id, ["p1", "p2"])
    wait_for(lambda: _is_terminal(repository, "task-1"))
    # Simulate a restart: the first orchestrator's p2 poller never reports.
    first_run.shutdown(timeout=0)

    restarted = _orchestrator(repository, reconciler, client)
    scheduled = restarted.resume(job.job_id)
    gates["p2"].set()

    assert scheduled == ["task-2"]
    assert restarted.wait(job.job_id, timeout=5)
    assert first_run.wait(job.job_id, timeout=5)
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.COMPLETED
    assert stored.generated_images == ["a", "b"]


def test_shutdown_stops_scheduling(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
) -> None:
    job = make_job(1)
    client = FakeTaskClient({"p1": success("a")})
    orchestrator = _orchestrator(repository, reconciler, client)

    assert orchestrator.shutdown(timeout=1)
    receipt = orchestrator.launch(job.job_id, ["p1"])

    assert receipt.submitted_task_ids == ["task-1"]
    assert client.polled == []
    log = repository.get_task_log("task-1")
    assert log is not None
    assert log.status is TaskState.WAITING


def _is_terminal(repository: JobRepository, task_id: str) -> bool:
    log = repository.get_task_log(task_id)
    return log is not None and log.status.is_terminal


def test_single_page_job_completes_on_third_poll(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
) -> None:
    job = make_job(1)
    states = iter(["waiting", "waiting", "success"])

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/createTask"):
            data: dict[str, object] = {"taskId": "task-1"}
        else:
            data = {"taskId": "task-1", "state": next(states)}
            if data["state"] == "success":
                data["resultJson"] = json.dumps({"resultUrls": ["r1"]})
        return httpx.Response(200, json={"code": 200, "msg": "success", "data": data})

    client = NanoBananaClient(
        ProviderSettings(api_key="secret"),
        transport=httpx.MockTransport(handler),
        sleep=lambda _: None,
    )
    orchestrator = GenerationOrchestrator(
        repository=repository,
        client=client,
        reconciler=reconciler,
        polling=PollingSettings(max_attempts=5, interval_seconds=0),
    )

    orchestrator.launch(job.job_id, ["cover"])

    assert orchestrator.wait(job.job_id, timeout=5)
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.COMPLETED
    assert stored.generated_images == ["r1"]


def test_finished_pollers_leave_the_registry(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
) -> None:
    client = FakeTaskClient({"cover": success("r")})
    orchestrator = _orchestrator(repository, reconciler, client)

    job_ids = []
    for _ in range(20):
        job = make_job(1)
        orchestrator.launch(job.job_id, ["cover"])
        job_ids.append(job.job_id)
    for job_id in job_ids:
        assert orchestrator.wait(job_id, timeout=5)

    assert orchestrator._threads == {}
    assert orchestrator._active_task_ids == set()


def test_log_write_failure_after_submit_reports_orphaned_task(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    job = make_job(2)
    client = FakeTaskClient({"p1": success("a"), "p2": success("b")})
    orchestrator = _orchestrator(repository, reconciler, client)
    real_create = repository.create_task_log

    def _create(payload: TaskLogCreate) -> TaskLogView:
        if payload.task_id == "task-2":
            raise RuntimeError("disk full")
        return real_create(payload)

    monkeypatch.setattr(repository, "create_task_log", _create)

    receipt = orchestrator.launch(job.job_id, ["p1", "p2"])

    assert orchestrator.wait(job.job_id, timeout=5)
    assert receipt.submitted_task_ids == ["task-1"]
    assert receipt.failed_pages == [2]
    assert "Provider task task-2 orphaned" in caplog.text
    failed_log = repository.get_task_log(local_task_id(job.job_id, 2))
    assert failed_log is not None
    assert failed_log.status is TaskState.FAILED
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.COMPLETED
    assert stored.generated_images == ["a"]
