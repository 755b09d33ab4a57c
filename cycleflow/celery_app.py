from celery import Celery

from cycleflow.config.settings import settings

celery_app = Celery(
    "cycleflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["cycleflow.ingestion.tasks"],
)

celery_app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
)
