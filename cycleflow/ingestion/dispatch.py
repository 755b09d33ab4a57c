"""Hand-off of stored ingest events to asynchronous processing.

Every dispatcher has the same contract: submit(event_id) returns a handle
immediately and never waits for the processing to finish.

- BackgroundTaskDispatcher: FastAPI BackgroundTasks, runs after the
  response is sent (handle is the event id)
- ExecutorDispatcher: process-wide thread pool (handle is a Future)
- CeleryDispatcher: Celery worker via Redis (handle is an AsyncResult)
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Protocol

from fastapi import BackgroundTasks
from loguru import logger

from cycleflow.config.settings import settings
from cycleflow.integrations.garmin.jobs import process_ingest_event


class EventDispatcher(Protocol):
    def submit(self, event_id: str) -> Any: ...


class BackgroundTaskDispatcher:
    def __init__(
        self,
        background_tasks: BackgroundTasks,
        task: Callable[[str], None] = process_ingest_event,
    ):
        self.background_tasks = background_tasks
        self.task = task

    def submit(self, event_id: str) -> str:
        self.background_tasks.add_task(self.task, event_id)
        logger.debug(f"[GARMIN_WEBHOOK] Scheduled background processing for event: {event_id}")
        return event_id


_executor: ThreadPoolExecutor | None = None
_executor_lock = threading.Lock()


def get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(
                max_workers=settings.event_executor_workers,
                thread_name_prefix="ingest-event",
            )
    return _executor


def shutdown_executor(wait: bool = True) -> None:
    global _executor
    with _executor_lock:
        if _executor is not None:
            _executor.shutdown(wait=wait)
            _executor = None


class ExecutorDispatcher:
    def __init__(
        self,
        executor: ThreadPoolExecutor | None = None,
        task: Callable[[str], None] = process_ingest_event,
    ):
        self.executor = executor or get_executor()
        self.task = task

    def submit(self, event_id: str) -> Future:
        future = self.executor.submit(self.task, event_id)
        logger.debug(f"[GARMIN_WEBHOOK] Submitted event {event_id} to executor")
        return future


class CeleryDispatcher:
    def submit(self, event_id: str) -> Any:
        from cycleflow.ingestion.tasks import process_ingest_event_task

        result = process_ingest_event_task.delay(event_id)
        logger.debug(f"[GARMIN_WEBHOOK] Enqueued event {event_id} on Celery: task_id={result.id}")
        return result


def get_dispatcher(background_tasks: BackgroundTasks) -> EventDispatcher:
    """Build the dispatcher selected by EVENT_DISPATCH_BACKEND."""
    backend = settings.event_dispatch_backend
    if backend == "celery":
        return CeleryDispatcher()
    if backend == "executor":
        return ExecutorDispatcher()
    return BackgroundTaskDispatcher(background_tasks)
