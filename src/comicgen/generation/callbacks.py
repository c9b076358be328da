"""Inbound provider notifications, racing the orchestrator's own pollers."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from comicgen.generation.client import parse_task_record
from comicgen.generation.errors import ProviderRejected
from comicgen.generation.models import TaskOutcome, TaskState
from comicgen.generation.reconciler import CompletionReconciler

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CallbackResult:
    """Acknowledgement returned to the webhook route."""

    found: bool
    applied: bool = False
    terminal: bool = True


class CallbackIngress:
    """Feeds provider-pushed task results into the reconciler."""

    def __init__(self, *, reconciler: CompletionReconciler) -> None:
        self.reconciler = reconciler

    def handle_provider_callback(self, task_id: str, outcome: TaskOutcome) -> CallbackResult:
        result = self.reconciler.resolve_task(task_id, outcome)
        return CallbackResult(found=result.found, applied=result.applied)

    def handle_envelope(self, payload: Mapping[str, Any]) -> CallbackResult:
        """Decode the provider's `{code, msg, data}` callback body."""

        data = payload.get("data")
        if not isinstance(data, Mapping):
            raise ProviderRejected("Callback payload carries no data object")
        snapshot = parse_task_record(data)
        logger.info("Received callback for %s: %s", snapshot.task_id, data.get("state"))

        if snapshot.state is TaskState.WAITING:
            known = self.reconciler.repository.get_task_log(snapshot.task_id) is not None
            return CallbackResult(found=known, applied=False, terminal=False)

        return self.handle_provider_callback(snapshot.task_id, TaskOutcome.from_snapshot(snapshot))

