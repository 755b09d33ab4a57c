from concurrent.futures import ThreadPoolExecutor

from fastapi import BackgroundTasks

from cycleflow.ingestion import dispatch, tasks
from cycleflow.ingestion.dispatch import (
    BackgroundTaskDispatcher,
    CeleryDispatcher,
    ExecutorDispatcher,
    get_dispatcher,
)


def test_background_task_dispatcher_schedules_without_running():
    ran = []
    background_tasks = BackgroundTasks()

    handle = BackgroundTaskDispatcher(background_tasks, task=ran.append).submit("event-1")

    assert handle == "event-1"
    assert ran == []
    assert len(background_tasks.tasks) == 1
    assert background_tasks.tasks[0].args == ("event-1",)


def test_executor_dispatcher_returns_future():
    processed = []
    with ThreadPoolExecutor(max_workers=1) as executor:
        future = ExecutorDispatcher(executor, task=processed.append).submit("event-1")
        future.result(timeout=5)

    assert processed == ["event-1"]


def test_celery_dispatcher_enqueues(monkeypatch):
    queued = []

    class FakeResult:
        id = "task-1"

    def fake_delay(event_id):
        queued.append(event_id)
        return FakeResult()

    monkeypatch.setattr(tasks.process_ingest_event_task, "delay", fake_delay)

    result = CeleryDispatcher().submit("event-1")

    assert queued == ["event-1"]
    assert result.id == "task-1"


def test_celery_task_runs_event_processing(monkeypatch):
    processed = []
    monkeypatch.setattr(tasks, "process_ingest_event", processed.append)

    tasks.process_ingest_event_task.run("event-1")

    assert processed == ["event-1"]


def test_get_dispatcher_follows_settings(monkeypatch):
    background_tasks = BackgroundTasks()

    monkeypatch.setattr(dispatch.settings, "event_dispatch_backend", "background")
    assert isinstance(get_dispatcher(background_tasks), BackgroundTaskDispatcher)

    monkeypatch.setattr(dispatch.settings, "event_dispatch_backend", "celery")
    assert isinstance(get_dispatcher(background_tasks), CeleryDispatcher)

    monkeypatch.setattr(dispatch.settings, "event_dispatch_backend", "executor")
    try:
        assert isinstance(get_dispatcher(background_tasks), ExecutorDispatcher)
    finally:
        dispatch.shutdown_executor()
