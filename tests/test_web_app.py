from __future__ import annotations

import json
from collections.abc import Callable

import allure
import pytest
from fastapi.testclient import TestClient

from comicgen.generation.callbacks import CallbackIngress
from comicgen.generation.collaborators import PaymentVerification, UserIdentity
from comicgen.generation.models import JobStatus, JobView, TaskOutcome
from comicgen.generation.orchestrator import GenerationOrchestrator
from comicgen.generation.reconciler import CompletionReconciler
from comicgen.generation.repository import JobRepository
from comicgen.generation.services import GenerationService, JobStatusQuery
from comicgen.web.app import create_app
from tests.fakes import FakeTaskClient, success

pytestmark = [
    allure.epic("Comic Generation"),
    allure.feature("HTTP Surface"),
]


class StaticIdentity:
    def resolve(self, bearer_token: str) -> UserIdentity:
        return UserIdentity(user_id=f"user-for-{bearer_token}")


class TokenPayments:
    def verify(self, payment_token: str) -> PaymentVerification:
        return PaymentVerification(verified=payment_token == "paid", reference=payment_token)


@pytest.fixture()
def orchestrator(
    repository: JobRepository,
    reconciler: CompletionReconciler,
) -> GenerationOrchestrator:
    client = FakeTaskClient({f"page {index}": success(f"r{index}") for index in range(1, 8)})
    return GenerationOrchestrator(repository=repository, client=client, reconciler=reconciler)


@pytest.fixture()
def api(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    orchestrator: GenerationOrchestrator,
) -> TestClient:
    app = create_app(
        ingress=CallbackIngress(reconciler=reconciler),
        status_query=JobStatusQuery(repository=repository),
        generation_service=GenerationService(repository=repository, orchestrator=orchestrator),
        identity_provider=StaticIdentity(),
        payment_verifier=TokenPayments(),
    )
    return TestClient(app)


def test_callback_resolves_known_task(
    api: TestClient,
    repository: JobRepository,
    make_job: Callable[..., JobView],
) -> None:
    job = make_job(1, task_ids=("T1",))

    response = api.post(
        "/api/callback",
        json={
            "code": 200,
            "msg": "success",
            "data": {
                "taskId": "T1",
                "state": "success",
                "resultJson": json.dumps({"resultUrls": ["r1"]}),
            },
        },
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "applied": True}
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.COMPLETED


def test_callback_for_unknown_task_is_404(api: TestClient) -> None:
    response = api.post(
        "/api/callback",
        json={"code": 200, "data": {"taskId": "ghost", "state": "success", "resultJson": "{}"}},
    )

    assert response.status_code == 404
    assert response.json() == {"error": "Task not found"}


def test_callback_without_data_is_400(api: TestClient) -> None:
    response = api.post("/api/callback", json={"code": 200})

    assert response.status_code == 400


def test_job_status_reports_progress(
    api: TestClient,
    reconciler: CompletionReconciler,
    make_job: Callable[..., JobView],
) -> None:
    job = make_job(2, task_ids=("T1", "T2"))
    reconciler.resolve_task("T1", TaskOutcome.success("a"))

    response = api.get(f"/api/jobs/{job.job_id}/status")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "GENERATING"
    assert body["page_count"] == 2
    assert body["completed_page_count"] == 1
    assert body["progress"] == 50
    assert body["result_refs"] == []


def test_job_status_unknown_job_is_404(api: TestClient) -> None:
    assert api.get("/api/jobs/missing/status").status_code == 404


def test_gallery_lists_newest_first(api: TestClient, make_job: Callable[..., JobView]) -> None:
    older = make_job(1)
    newer = make_job(1)

    response = api.get("/api/jobs")

    assert response.status_code == 200
    assert [item["job_id"] for item in response.json()] == [newer.job_id, older.job_id]


def test_generate_preview(
    api: TestClient,
    repository: JobRepository,
    orchestrator: GenerationOrchestrator,
) -> None:
    response = api.post(
        "/api/generate/preview",
        json={"reference_images": ["ref"], "page_prompts": ["page 1"]},
        headers={"Authorization": "Bearer abc"},
    )

    assert response.status_code == 202
    job_id = response.json()["job_id"]
    assert orchestrator.wait(job_id, timeout=5)
    stored = repository.get_job(job_id)
    assert stored is not None
    assert stored.user_id == "user-for-abc"
    assert stored.generated_images == ["r1"]


def test_generate_full_requires_payment(api: TestClient) -> None:
    body = {"reference_images": ["ref"], "page_prompts": [f"page {i}" for i in range(1, 8)]}
    headers = {"Authorization": "Bearer abc"}

    unpaid = api.post("/api/generate/full", json=body, headers=headers)
    declined = api.post(
        "/api/generate/full",
        json=body,
        headers={**headers, "X-Payment-Token": "declined"},
    )

    assert unpaid.status_code == 402
    assert declined.status_code == 402


def test_generate_requires_bearer_token(api: TestClient) -> None:
    response = api.post(
        "/api/generate/preview",
        json={"reference_images": ["ref"], "page_prompts": ["page 1"]},
    )

    assert response.status_code == 401


def test_generate_rejects_unknown_product(api: TestClient) -> None:
    response = api.post(
        "/api/generate/poster",
        json={"reference_images": ["ref"], "page_prompts": ["page 1"]},
        headers={"Authorization": "Bearer abc"},
    )

    assert response.status_code == 422


def test_full_product_is_not_offered_without_payment_verifier(
    repository: JobRepository,
    reconciler: CompletionReconciler,
    orchestrator: GenerationOrchestrator,
) -> None:
    api = TestClient(
        create_app(
            ingress=CallbackIngress(reconciler=reconciler),
            status_query=JobStatusQuery(repository=repository),
            generation_service=GenerationService(repository=repository, orchestrator=orchestrator),
        ),
    )
    body = {"reference_images": ["ref"], "page_prompts": [f"page {i}" for i in range(1, 8)]}

    full = api.post("/api/generate/full", json=body, headers={"X-Payment-Token": "paid"})

    assert full.status_code == 404
    assert full.json() == {"detail": "Product full is not offered"}
    assert repository.list_jobs() == []

    preview = api.post(
        "/api/generate/preview",
        json={"reference_images": ["ref"], "page_prompts": ["page 1"]},
    )

    assert preview.status_code == 202
    assert orchestrator.wait(preview.json()["job_id"], timeout=5)
