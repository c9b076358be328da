"""Error taxonomy for provider calls, task resolution and job requests."""

from __future__ import annotations


class GenerationError(Exception):
    """Base class for comic generation errors."""


class ProviderUnavailable(GenerationError):
    """Transport or HTTP-layer failure talking to the provider."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderRejected(GenerationError):
    """Provider answered but its envelope carries an application error."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class TaskFailed(GenerationError):
    """Provider declared the task failed. Terminal."""

    def __init__(self, task_id: str, detail: str) -> None:
        super().__init__(f"Task {task_id} failed: {detail}")
        self.task_id = task_id
        self.detail = detail


class PollTimeout(GenerationError):
    """Task still waiting after the polling ceiling. Terminal."""

    def __init__(self, task_id: str, attempts: int) -> None:
        super().__init__(f"Task {task_id} still waiting after {attempts} polls")
        self.task_id = task_id
        self.attempts = attempts


class PersistenceConflict(GenerationError):
    """A conditional update lost its race to another writer."""

    def __init__(self, entity: str, key: str, expected: str) -> None:
        super().__init__(f"{entity} {key} is no longer {expected}")
        self.entity = entity
        self.key = key
        self.expected = expected


class JobNotFound(GenerationError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class PaymentRequired(GenerationError):
    """Paid product requested without a verified payment."""
