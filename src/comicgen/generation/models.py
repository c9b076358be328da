"""Domain models for comic jobs and per-page generation tasks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    """Job lifecycle states."""

    GENERATING = "GENERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.GENERATING


class TaskState(str, Enum):
    """Provider task states, persisted as-is on generation logs."""

    WAITING = "waiting"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TaskState.WAITING


class Product(str, Enum):
    """Sellable comic products."""

    PREVIEW = "preview"
    FULL = "full"

    @property
    def page_count(self) -> int:
        return PRODUCT_PAGE_COUNTS[self]

    @property
    def requires_payment(self) -> bool:
        return self is Product.FULL


# Full comic: front cover + 5 story pages + back cover.
PRODUCT_PAGE_COUNTS: dict[Product, int] = {
    Product.PREVIEW: 1,
    Product.FULL: 7,
}


@dataclass(slots=True)
class JobCreate:
    """Input payload for creating a comic job."""

    product: Product
    page_count: int
    reference_images: list[str] = field(default_factory=list)
    job_id: str | None = None
    user_id: str | None = None
    theme: str | None = None
    style: str | None = None
    story: str | None = None
    character1_name: str | None = None
    character2_name: str | None = None
    payment_ref: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for services, CLI and HTTP routes."""

    job_id: str
    user_id: str | None
    product: Product
    page_count: int
    status: JobStatus
    theme: str | None
    style: str | None
    story: str | None
    character1_name: str | None
    character2_name: str | None
    payment_ref: str | None
    reference_images: list[str]
    generated_images: list[str]
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None
    reference_images_released_at: datetime | None


@dataclass(slots=True)
class TaskLogCreate:
    """Input payload for registering one page task."""

    task_id: str
    job_id: str
    page_num: int
    status: TaskState = TaskState.WAITING
    error: str | None = None


@dataclass(slots=True)
class TaskLogView:
    """Persisted state of one page task."""

    task_id: str
    job_id: str
    page_num: int
    status: TaskState
    result_url: str | None
    error: str | None
    cost_time_ms: int | None
    created_at: datetime
    finished_at: datetime | None


@dataclass(frozen=True, slots=True)
class AspectSpec:
    """Output geometry requested from the provider."""

    aspect_ratio: str | None = None
    resolution: str | None = None
    output_format: str | None = None


@dataclass(frozen=True, slots=True)
class TaskStatusSnapshot:
    """One observation of a provider task."""

    task_id: str
    state: TaskState
    result_refs: tuple[str, ...] = ()
    failure_detail: str | None = None
    cost_time_ms: int | None = None


@dataclass(frozen=True, slots=True)
class TaskOutcome:
    """Terminal result of one task, as reported by poll or callback."""

    state: TaskState
    result_url: str | None = None
    detail: str | None = None
    cost_time_ms: int | None = None

    def __post_init__(self) -> None:
        if self.state is TaskState.WAITING:
            raise ValueError("Task outcome must be terminal.")
        if self.state is TaskState.SUCCESS and not self.result_url:
            raise ValueError("Successful task outcome requires a result URL.")

    @classmethod
    def success(cls, result_url: str, *, cost_time_ms: int | None = None) -> TaskOutcome:
        return cls(state=TaskState.SUCCESS, result_url=result_url, cost_time_ms=cost_time_ms)

    @classmethod
    def failure(cls, detail: str, *, cost_time_ms: int | None = None) -> TaskOutcome:
        return cls(state=TaskState.FAILED, detail=detail, cost_time_ms=cost_time_ms)

    @classmethod
    def from_snapshot(cls, snapshot: TaskStatusSnapshot) -> TaskOutcome:
        if snapshot.state is TaskState.SUCCESS and snapshot.result_refs:
            return cls.success(snapshot.result_refs[0], cost_time_ms=snapshot.cost_time_ms)
        if snapshot.state is TaskState.FAILED:
            return cls.failure(
                snapshot.failure_detail or "provider reported failure",
                cost_time_ms=snapshot.cost_time_ms,
            )
        raise ValueError(f"Snapshot for {snapshot.task_id} is not terminal")


@dataclass(slots=True)
class JobDecision:
    """Terminal job transition derived from the full set of page logs."""

    status: JobStatus
    generated_images: list[str]


@dataclass(slots=True)
class ResolveResult:
    """What one `resolve_task` call did."""

    found: bool
    applied: bool = False
    job_id: str | None = None
    job_status: JobStatus | None = None
    job_finalized: bool = False


@dataclass(slots=True)
class LaunchReceipt:
    """Outcome of fan-out for one job."""

    job_id: str
    submitted_task_ids: list[str]
    failed_pages: list[int]


@dataclass(slots=True)
class JobStatusView:
    """Externally readable job progress."""

    job_id: str
    status: JobStatus
    page_count: int
    completed_page_count: int
    failed_page_count: int
    progress: int
    result_refs: list[str]
    created_at: datetime
    theme: str | None = None
    style: str | None = None


@dataclass(slots=True)
class GenerationRequest:
    """Validated user request handed over by the request layer."""

    product: Product
    reference_images: list[str]
    theme: str | None = None
    style: str | None = None
    story: str | None = None
    character1_name: str | None = None
    character2_name: str | None = None
    page_prompts: list[str] = field(default_factory=list)
