from __future__ import annotations

import json
from collections.abc import Callable

import allure
import pytest

from comicgen.generation.callbacks import CallbackIngress
from comicgen.generation.errors import ProviderRejected
from comicgen.generation.models import JobStatus, JobView, TaskOutcome, TaskState
from comicgen.generation.reconciler import CompletionReconciler
from comicgen.generation.repository import JobRepository

pytestmark = [
    allure.epic("Comic Generation"),
    allure.feature("Provider Callbacks"),
]


def _callback(task_id: str, state: str, **fields: object) -> dict[str, object]:
    return {"code": 200, "msg": "success", "data": {"taskId": task_id, "state": state, **fields}}


def test_success_callback_resolves_task_and_job(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
) -> None:
    job = make_job(1, task_ids=("T1",))
    ingress = CallbackIngress(reconciler=reconciler)

    result = ingress.handle_envelope(
        _callback("T1", "success", resultJson=json.dumps({"resultUrls": ["r1"]}), costTime=800),
    )

    assert result.found is True
    assert result.applied is True
    log = repository.get_task_log("T1")
    assert log is not None
    assert log.result_url == "r1"
    assert log.cost_time_ms == 800
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.COMPLETED
    assert stored.generated_images == ["r1"]


def test_failure_callback_records_detail(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
) -> None:
    make_job(1, task_ids=("T1",))
    ingress = CallbackIngress(reconciler=reconciler)

    ingress.handle_envelope(_callback("T1", "fail", failMsg="blocked"))

    log = repository.get_task_log("T1")
    assert log is not None
    assert log.status is TaskState.FAILED
    assert log.error == "blocked"


def test_waiting_callback_is_acknowledged_without_change(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
) -> None:
    make_job(1, task_ids=("T1",))
    ingress = CallbackIngress(reconciler=reconciler)

    result = ingress.handle_envelope(_callback("T1", "waiting"))

    assert result.found is True
    assert result.terminal is False
    log = repository.get_task_log("T1")
    assert log is not None
    assert log.status is TaskState.WAITING


def test_unknown_task_callback_returns_not_found(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
) -> None:
    job = make_job(1, task_ids=("T1",))
    ingress = CallbackIngress(reconciler=reconciler)

    result = ingress.handle_provider_callback("unknown", TaskOutcome.success("x"))

    assert result.found is False
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.GENERATING
    assert [log.status for log in repository.list_task_logs(job.job_id)] == [TaskState.WAITING]


def test_callback_after_poll_is_a_no_op(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
) -> None:
    make_job(1, task_ids=("T1",))
    ingress = CallbackIngress(reconciler=reconciler)
    reconciler.resolve_task("T1", TaskOutcome.success("from-poll"))

    result = ingress.handle_envelope(
        _callback("T1", "success", resultJson=json.dumps({"resultUrls": ["from-callback"]})),
    )

    assert result.found is True
    assert result.applied is False
    log = repository.get_task_log("T1")
    assert log is not None
    assert log.result_url == "from-poll"


def test_envelope_without_data_is_rejected(reconciler: CompletionReconciler) -> None:
    ingress = CallbackIngress(reconciler=reconciler)

    with pytest.raises(ProviderRejected):
        ingress.handle_envelope({"code": 200, "msg": "success"})
