"""HTTP surface: provider webhook, job status and generation endpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Body, FastAPI, Header, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from comicgen import __version__
from comicgen.generation.callbacks import CallbackIngress
from comicgen.generation.collaborators import IdentityProvider, PaymentVerifier, UserIdentity
from comicgen.generation.errors import JobNotFound, PaymentRequired, ProviderRejected
from comicgen.generation.models import GenerationRequest, JobStatusView, Product
from comicgen.generation.services import GenerationService, JobStatusQuery

logger = logging.getLogger(__name__)

GALLERY_LIMIT = 50


class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    page_count: int
    completed_page_count: int
    failed_page_count: int
    progress: int
    result_refs: list[str]
    created_at: datetime
    theme: str | None = None
    style: str | None = None

    @classmethod
    def from_view(cls, view: JobStatusView) -> JobStatusResponse:
        return cls(
            job_id=view.job_id,
            status=view.status.value,
            page_count=view.page_count,
            completed_page_count=view.completed_page_count,
            failed_page_count=view.failed_page_count,
            progress=view.progress,
            result_refs=view.result_refs,
            created_at=view.created_at,
            theme=view.theme,
            style=view.style,
        )


class GenerateBody(BaseModel):
    reference_images: list[str] = Field(min_length=1)
    page_prompts: list[str]
    theme: str | None = None
    style: str | None = None
    story: str | None = None
    character1_name: str | None = None
    character2_name: str | None = None


class GenerateResponse(BaseModel):
    job_id: str
    status: str
    page_count: int


def create_router(
    *,
    ingress: CallbackIngress,
    status_query: JobStatusQuery,
    generation_service: GenerationService | None = None,
    identity_provider: IdentityProvider | None = None,
    payment_verifier: PaymentVerifier | None = None,
) -> APIRouter:
    """Create API router with injected dependencies."""

    router = APIRouter(prefix="/api")

    @router.post("/callback")
    def provider_callback(payload: Annotated[dict[str, Any], Body()]) -> JSONResponse:
        try:
            result = ingress.handle_envelope(payload)
        except ProviderRejected as error:
            logger.warning("Rejected callback payload: %s", error)
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"error": str(error)},
            )
        if not result.found:
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"error": "Task not found"},
            )
        return JSONResponse(content={"received": True, "applied": result.applied})

    @router.get("/jobs/{job_id}/status", response_model=JobStatusResponse)
    def job_status(job_id: str) -> JobStatusResponse:
        try:
            view = status_query.get_job_status(job_id)
        except JobNotFound as error:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Job not found",
            ) from error
        return JobStatusResponse.from_view(view)

    @router.get("/jobs", response_model=list[JobStatusResponse])
    def list_jobs() -> list[JobStatusResponse]:
        views = status_query.list_recent(limit=GALLERY_LIMIT)
        return [JobStatusResponse.from_view(view) for view in views]

    @router.post(
        "/generate/{product}",
        response_model=GenerateResponse,
        status_code=status.HTTP_202_ACCEPTED,
    )
    def generate(
        product: Product,
        body: GenerateBody,
        authorization: Annotated[str | None, Header()] = None,
        x_payment_token: Annotated[str | None, Header()] = None,
    ) -> GenerateResponse:
        if generation_service is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Generation is not configured",
            )
        if product.requires_payment and payment_verifier is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Product {product.value} is not offered",
            )
        user = _resolve_user(identity_provider, authorization)
        payment = (
            payment_verifier.verify(x_payment_token)
            if payment_verifier is not None and x_payment_token
            else None
        )
        request = GenerationRequest(
            product=product,
            reference_images=body.reference_images,
            theme=body.theme,
            style=body.style,
            story=body.story,
            character1_name=body.character1_name,
            character2_name=body.character2_name,
            page_prompts=body.page_prompts,
        )
        try:
            job = generation_service.start_generation(request, payment=payment, user=user)
        except PaymentRequired as error:
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail=str(error),
            ) from error
        except ValueError as error:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=str(error),
            ) from error
        return GenerateResponse(
            job_id=job.job_id,
            status=job.status.value,
            page_count=job.page_count,
        )

    return router


def create_app(
    *,
    ingress: CallbackIngress,
    status_query: JobStatusQuery,
    generation_service: GenerationService | None = None,
    identity_provider: IdentityProvider | None = None,
    payment_verifier: PaymentVerifier | None = None,
) -> FastAPI:
    app = FastAPI(title="comicgen", version=__version__)
    app.include_router(
        create_router(
            ingress=ingress,
            status_query=status_query,
            generation_service=generation_service,
            identity_provider=identity_provider,
            payment_verifier=payment_verifier,
        ),
    )
    return app


def _resolve_user(
    identity_provider: IdentityProvider | None,
    authorization: str | None,
) -> UserIdentity | None:
    if identity_provider is None:
        return None
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return identity_provider.resolve(authorization[len("bearer ") :].strip())
