"""Interfaces consumed from collaborators outside the orchestration core."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from comicgen.generation.models import AspectSpec, GenerationRequest, TaskStatusSnapshot


@dataclass(slots=True)
class UserIdentity:
    """Authenticated caller, trusted as given."""

    user_id: str
    email: str | None = None
    is_pro: bool = False


@dataclass(slots=True)
class PaymentVerification:
    """Payment signal gating paid products."""

    verified: bool
    amount: int | None = None
    reference: str | None = None


@dataclass(slots=True)
class PromptPlan:
    """Ordered page prompts plus the reference images every page uses."""

    prompts: list[str]
    reference_images: list[str] = field(default_factory=list)


class IdentityProvider(Protocol):
    def resolve(self, bearer_token: str) -> UserIdentity: ...


class PaymentVerifier(Protocol):
    def verify(self, payment_token: str) -> PaymentVerification: ...


class PromptBuilder(Protocol):
    def build(self, request: GenerationRequest) -> PromptPlan: ...


@runtime_checkable
class ReferenceStorage(Protocol):
    """Storage holding the user's uploaded reference images."""

    def download_image(self, url: str) -> bytes: ...

    def delete_files(self, urls: Sequence[str]) -> None: ...


class TaskClient(Protocol):
    """Subset of the provider client the orchestrator depends on."""

    def submit(
        self,
        prompt: str,
        reference_images: Sequence[str] = (),
        aspect: AspectSpec | None = None,
    ) -> str: ...

    def wait_until_terminal(
        self,
        task_id: str,
        *,
        max_attempts: int = 60,
        interval_seconds: float = 5.0,
        max_transient_errors: int = 3,
    ) -> TaskStatusSnapshot: ...
