from loguru import logger

from cycleflow.celery_app import celery_app
from cycleflow.integrations.garmin.jobs import process_ingest_event


@celery_app.task(name="cycleflow.process_ingest_event")
def process_ingest_event_task(event_id: str) -> None:
    """Process one stored ingest event on a Celery worker.

    No automatic retries: every failure is recorded on the event and a
    retry only happens through a webhook resend.
    """
    logger.info(f"[CELERY] Processing ingest event: {event_id}")
    process_ingest_event(event_id)
