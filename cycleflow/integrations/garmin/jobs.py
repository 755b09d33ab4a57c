"""Background processing of stored Garmin ingest events.

Webhook-driven sync: ACK fast, process async. For each event:
- resolve the integration from the Garmin user id
- short-circuit when the activity is already stored
- download the FIT file with the integration's token
- decode, normalize, dedupe and write the activity with its track
- mark the event processed and append a sync history row

Every failure is terminal for the event: it is marked processed with the
error and never retried automatically (a webhook resend is the retry).
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx
from loguru import logger

from cycleflow.config.settings import settings
from cycleflow.core.errors import (
    DuplicateActivityError,
    NonCyclingSkip,
    NotFoundError,
    PipelineError,
    UpstreamError,
)
from cycleflow.db.models import IngestEvent, Integration
from cycleflow.db.session import get_session
from cycleflow.ingestion.dedupe import DuplicateCandidate, DuplicateResolver, find_exact_duplicate
from cycleflow.ingestion.normalize import normalize_fit_activity
from cycleflow.ingestion.sync_history import TRIGGER_WEBHOOK, record_sync
from cycleflow.ingestion.writer import BatchWriter
from cycleflow.integrations.credentials import IntegrationCredentialSource
from cycleflow.integrations.garmin.fit_decoder import decode_fit
from cycleflow.utils.timezone import utcnow

PROVIDER = "garmin"
GARMIN_ACTIVITY_URL = "https://connect.garmin.com/modern/activity/{activity_id}"

OUTCOME_IMPORTED = "imported"
OUTCOME_ALREADY_IMPORTED = "already_imported"
OUTCOME_NON_CYCLING = "skipped_non_cycling"
OUTCOME_FAILED = "failed"
OUTCOME_NOOP = "noop"

ALREADY_IMPORTED_MESSAGE = "Activity already imported"


def download_activity_file(file_url: str, access_token: str) -> bytes:
    """Download a raw activity file from Garmin.

    Raises:
        UpstreamError: Transport failure or a non-success HTTP status
    """
    try:
        resp = httpx.get(
            file_url,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=settings.http_timeout_seconds,
            follow_redirects=True,
        )
    except httpx.HTTPError as e:
        raise UpstreamError(f"Failed to download FIT file: {e}") from e

    if not resp.is_success:
        raise UpstreamError(f"Failed to download FIT file: {resp.status_code}", status_code=resp.status_code)
    return resp.content


class EventProcessor:
    def __init__(
        self,
        session,
        fetch_file: Callable[[str, str], bytes] = download_activity_file,
        decode: Callable[[bytes], dict[str, Any]] = decode_fit,
        writer: BatchWriter | None = None,
    ):
        self.session = session
        self.fetch_file = fetch_file
        self.decode = decode
        self.writer = writer or BatchWriter(session)
        self.credentials = IntegrationCredentialSource(session)

    def process(self, event_id: str) -> str:
        """Process one event and return the outcome tag."""
        event = self.session.get(IngestEvent, event_id)
        if event is None:
            logger.error(f"[GARMIN_JOB] Ingest event not found: {event_id}")
            return OUTCOME_NOOP

        # Replay safety
        if event.processed:
            logger.debug(f"[GARMIN_JOB] Event already processed: {event_id}")
            return OUTCOME_NOOP

        try:
            return self._process(event)
        except PipelineError as e:
            logger.error(f"[GARMIN_JOB] Event {event_id} failed: {e}")
            self._mark_failed(event_id, str(e))
        except Exception as e:
            logger.exception(f"[GARMIN_JOB] Unexpected error processing event {event_id}: {e}")
            self.session.rollback()
            self._mark_failed(event_id, f"Unexpected error: {e}")
        return OUTCOME_FAILED

    def _process(self, event: IngestEvent) -> str:
        integration = self.credentials.find_by_provider_user(PROVIDER, event.provider_user_id)
        if integration is None:
            raise NotFoundError("No integration found for this Garmin user")

        event.user_id = integration.user_id
        event.integration_id = integration.id
        user_id = integration.user_id

        if event.provider_activity_id:
            existing = find_exact_duplicate(
                self.session,
                DuplicateCandidate(PROVIDER, event.provider_activity_id, user_id),
            )
            if existing:
                logger.info(
                    f"[GARMIN_JOB] Activity {event.provider_activity_id} already imported as {existing.id}, "
                    f"marking event {event.id} processed"
                )
                return self._mark_already_imported(event, existing.id)

        if not event.file_url:
            raise NotFoundError("No file URL provided in webhook")

        data = self.fetch_file(event.file_url, integration.access_token)
        logger.info(f"[GARMIN_JOB] Downloaded {len(data)} bytes for event {event.id}")
        decoded = self.decode(data)

        try:
            normalized = normalize_fit_activity(
                decoded,
                user_id=user_id,
                provider=PROVIDER,
                provider_activity_id=event.provider_activity_id,
                provider_url=(
                    GARMIN_ACTIVITY_URL.format(activity_id=event.provider_activity_id)
                    if event.provider_activity_id
                    else None
                ),
                fallback_start=event.upload_timestamp,
            )
        except NonCyclingSkip as skip:
            return self._mark_non_cycling(event, integration, skip)

        draft = normalized.activity
        resolution = DuplicateResolver(self.session).resolve(
            DuplicateCandidate(
                provider=PROVIDER,
                provider_activity_id=draft.provider_activity_id,
                user_id=user_id,
                start_time=draft.started_at,
                distance_km=draft.distance_km,
            )
        )
        if not resolution.accepted:
            return self._mark_already_imported(event, resolution.existing_activity_id)

        try:
            result = self.writer.write(draft, normalized.track_points)
        except DuplicateActivityError:
            # The writer rolled back, so the event bookkeeping is set again
            event.user_id = user_id
            event.integration_id = integration.id
            existing = find_exact_duplicate(
                self.session,
                DuplicateCandidate(PROVIDER, draft.provider_activity_id, user_id),
            )
            return self._mark_already_imported(event, existing.id if existing else None)

        now = utcnow()
        event.processed = True
        event.processed_at = now
        event.process_error = None
        event.activity_id = result.activity_id
        integration.last_sync_at = now
        integration.last_error = None
        record_sync(
            self.session,
            user_id=user_id,
            provider=PROVIDER,
            trigger=TRIGGER_WEBHOOK,
            status="success",
            fetched=1,
            imported=1,
            errors=[str(error) for error in result.failed_chunks],
            provider_activity_id=event.provider_activity_id,
            activity_id=result.activity_id,
        )
        self.session.commit()

        logger.info(
            f"[GARMIN_JOB] Event {event.id} imported activity {result.activity_id} "
            f"with {result.track_points_written} track points"
        )
        return OUTCOME_IMPORTED

    def _mark_already_imported(self, event: IngestEvent, activity_id: str | None) -> str:
        event.processed = True
        event.processed_at = utcnow()
        event.process_error = ALREADY_IMPORTED_MESSAGE
        event.activity_id = activity_id
        self.session.commit()
        return OUTCOME_ALREADY_IMPORTED

    def _mark_non_cycling(self, event: IngestEvent, integration: Integration, skip: NonCyclingSkip) -> str:
        event.processed = True
        event.processed_at = utcnow()
        event.process_error = str(skip)
        record_sync(
            self.session,
            user_id=integration.user_id,
            provider=PROVIDER,
            trigger=TRIGGER_WEBHOOK,
            status="skipped",
            fetched=1,
            skipped=1,
            provider_activity_id=event.provider_activity_id,
        )
        self.session.commit()
        logger.info(f"[GARMIN_JOB] Event {event.id} skipped: {skip}")
        return OUTCOME_NON_CYCLING

    def _mark_failed(self, event_id: str, message: str) -> None:
        event = self.session.get(IngestEvent, event_id)
        if event is None:
            return
        event.processed = True
        event.processed_at = utcnow()
        event.process_error = message

        # Bookkeeping set during processing is gone after a rollback
        integration = self.credentials.find_by_provider_user(PROVIDER, event.provider_user_id)
        if integration is not None:
            event.user_id = integration.user_id
            event.integration_id = integration.id
            integration.last_error = message
            record_sync(
                self.session,
                user_id=integration.user_id,
                provider=PROVIDER,
                trigger=TRIGGER_WEBHOOK,
                status="error",
                fetched=1,
                errors=[message],
                provider_activity_id=event.provider_activity_id,
            )
        self.session.commit()


def process_ingest_event(event_id: str) -> None:
    """Process a stored ingest event. Entry point for every dispatcher.

    Never raises: the outcome is recorded on the event row.
    """
    logger.info(f"[GARMIN_JOB] Processing ingest event: {event_id}")
    try:
        with get_session() as session:
            outcome = EventProcessor(session).process(event_id)
    except Exception as e:
        logger.exception(f"[GARMIN_JOB] Could not record outcome for event {event_id}: {e}")
        return
    logger.info(f"[GARMIN_JOB] Event {event_id} finished: {outcome}")
