from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from .config import Settings
from .logging import get_logger
from .models.common import Clock, system_clock
from .scheduling.due_queue import DueQueueBuilder
from .scheduling.memory_model import SchedulerParams
from .scheduling.recorder import ReviewRecorder
from .store.firestore_store import AppFirestoreStore


@dataclass(frozen=True)
class SchedulerServices:
    """Per-application wiring of the store, clock and scheduler components."""

    store: AppFirestoreStore
    due_queue: DueQueueBuilder
    recorder: ReviewRecorder
    clock: Clock
    params: SchedulerParams

    @classmethod
    def build(
        cls,
        store: AppFirestoreStore,
        settings: Settings,
        *,
        clock: Clock = system_clock,
    ) -> "SchedulerServices":
        params = SchedulerParams.from_settings(settings)
        return cls(
            store=store,
            due_queue=DueQueueBuilder(store, clock=clock, logger=get_logger("due_queue")),
            recorder=ReviewRecorder(
                store, clock=clock, params=params, logger=get_logger("review_recorder")
            ),
            clock=clock,
            params=params,
        )


def get_services(request: Request) -> SchedulerServices:
    return request.app.state.services
