"""Strava bulk import.

Pages through the athlete's activities, keeps cycling types, runs each
through duplicate detection and the batch writer, and attaches GPS tracks
from the streams endpoint (summary polyline as fallback). One bad activity
never stops the import; a failed page ends pagination.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from cycleflow.config.settings import settings
from cycleflow.core.errors import DuplicateActivityError, UpstreamError, ValidationError
from cycleflow.ingestion.dedupe import DuplicateCandidate, DuplicateResolver
from cycleflow.ingestion.normalize import TrackPointDraft, track_points_from_polyline, track_points_from_streams
from cycleflow.ingestion.sync_history import TRIGGER_BULK_IMPORT, record_sync
from cycleflow.ingestion.writer import BatchWriter
from cycleflow.integrations.credentials import IntegrationCredentialSource
from cycleflow.integrations.strava.client import StravaClient
from cycleflow.integrations.strava.schemas import CYCLING_TYPES, StravaActivity, map_strava_activity
from cycleflow.utils.timezone import to_utc, utcnow

PROVIDER = "strava"

IMPORTED = "imported"
SKIPPED = "skipped"


@dataclass
class BulkImportResult:
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    total: int = 0
    fetched: int = 0
    pages: int = 0
    error_samples: list[dict[str, Any]] = field(default_factory=list)

    def add_error(self, sample: dict[str, Any], limit: int) -> None:
        self.errors += 1
        if len(self.error_samples) < limit:
            self.error_samples.append(sample)

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": self.errors,
            "total": self.total,
            "errorSamples": self.error_samples,
        }


class StravaBulkImporter:
    def __init__(
        self,
        session: Session,
        client: StravaClient,
        writer: BatchWriter | None = None,
        resolver: DuplicateResolver | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session
        self.client = client
        self.writer = writer or BatchWriter(session)
        self.resolver = resolver or DuplicateResolver(session)
        self.sleep = sleep

    def run(
        self,
        user_id: str,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        force: bool = False,
    ) -> BulkImportResult:
        result = BulkImportResult()
        sample_size = settings.bulk_import_error_sample_size
        if force:
            logger.warning(f"[STRAVA_IMPORT] Force mode for user {user_id}: duplicate checks disabled")

        pages = self.client.iter_activity_pages(
            after=to_utc(start_date) if start_date else None,
            before=to_utc(end_date) if end_date else None,
            sleep=self.sleep,
        )
        try:
            for page in pages:
                result.pages += 1
                result.fetched += len(page)
                for raw in page:
                    activity = self._parse_item(raw, result, sample_size)
                    if activity is None or not activity.is_cycling:
                        continue
                    result.total += 1
                    self._import_item(activity, user_id, force, result, sample_size)
        except UpstreamError as e:
            logger.error(f"[STRAVA_IMPORT] Stopping pagination for user {user_id}: {e}")
            result.add_error({"page": result.pages + 1, "error": str(e)}, sample_size)

        logger.info(
            f"[STRAVA_IMPORT] User {user_id}: imported={result.imported}, skipped={result.skipped}, "
            f"errors={result.errors}, total={result.total} ({result.pages} pages)"
        )
        return result

    def _parse_item(self, raw: Any, result: BulkImportResult, sample_size: int) -> StravaActivity | None:
        """Validate one page item; a malformed cycling item is counted as an error."""
        fields = raw if isinstance(raw, dict) else {}
        kind = fields.get("type")
        if isinstance(kind, str) and kind not in CYCLING_TYPES:
            return None

        try:
            return StravaActivity.from_api(raw)
        except (PydanticValidationError, TypeError) as e:
            activity_id = fields.get("id")
            logger.error(f"[STRAVA_IMPORT] Malformed Strava activity {activity_id}: {e}")
            result.total += 1
            result.add_error(
                {"activityId": activity_id, "activityName": fields.get("name"), "error": f"Malformed activity: {e}"},
                sample_size,
            )
            return None

    def _import_item(
        self,
        activity: StravaActivity,
        user_id: str,
        force: bool,
        result: BulkImportResult,
        sample_size: int,
    ) -> None:
        try:
            outcome = self.import_activity(activity, user_id, force=force)
        except Exception as e:
            logger.error(f"[STRAVA_IMPORT] Error importing activity {activity.id}: {e}")
            self.session.rollback()
            result.add_error(
                {"activityId": activity.id, "activityName": activity.name, "error": str(e)},
                sample_size,
            )
            return

        if outcome == IMPORTED:
            result.imported += 1
        else:
            result.skipped += 1

    def import_activity(self, activity: StravaActivity, user_id: str, force: bool = False) -> str:
        """Import one Strava activity. Returns "imported" or "skipped"."""
        draft = map_strava_activity(activity, user_id)

        if not force:
            resolution = self.resolver.resolve(
                DuplicateCandidate(
                    provider=PROVIDER,
                    provider_activity_id=draft.provider_activity_id,
                    user_id=user_id,
                    start_time=draft.started_at,
                    distance_km=draft.distance_km,
                ),
                check_near_duplicates=True,
            )
            if not resolution.accepted:
                logger.debug(
                    f"[STRAVA_IMPORT] Activity {activity.id} skipped ({resolution.action}, "
                    f"existing={resolution.existing_activity_id})"
                )
                return SKIPPED

        track_points = self._track_points(activity)

        try:
            written = self.writer.write(draft, track_points)
        except DuplicateActivityError:
            return SKIPPED

        logger.info(
            f"[STRAVA_IMPORT] Imported activity {activity.id} as {written.activity_id} "
            f"({written.track_points_written} track points)"
        )
        return IMPORTED

    def _track_points(self, activity: StravaActivity) -> list[TrackPointDraft]:
        if not activity.should_have_gps:
            return []

        points: list[TrackPointDraft] = []
        try:
            points = track_points_from_streams(self.client.fetch_streams(activity.id))
            if not points:
                logger.warning(f"[STRAVA_IMPORT] No GPS data in streams for activity {activity.id}")
        except UpstreamError as e:
            logger.warning(f"[STRAVA_IMPORT] Failed to fetch streams for activity {activity.id}: {e}")
        finally:
            self.sleep(settings.strava_stream_delay_seconds)

        if not points and activity.summary_polyline:
            points = track_points_from_polyline(activity.summary_polyline)
            logger.info(
                f"[STRAVA_IMPORT] Using summary polyline for activity {activity.id} ({len(points)} points)"
            )
        return points


def import_strava_activities(
    session: Session,
    user_id: str,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    force: bool = False,
    client: StravaClient | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> BulkImportResult:
    """Run a Strava bulk import for a user and record it in sync history.

    Raises:
        NotFoundError: The user has not connected Strava
        ValidationError: Sync is disabled for the integration
    """
    credentials = IntegrationCredentialSource(session)
    token = credentials.get_credentials(user_id, PROVIDER)
    if not token.sync_enabled:
        raise ValidationError("Strava sync is disabled for this user")

    logger.info(
        f"[STRAVA_IMPORT] Starting bulk import for user {user_id} "
        f"(start={start_date}, end={end_date}, force={force})"
    )
    importer = StravaBulkImporter(session, client or StravaClient(token.access_token), sleep=sleep)
    result = importer.run(user_id, start_date=start_date, end_date=end_date, force=force)

    status = "success" if not result.errors else ("partial" if result.imported else "error")
    record_sync(
        session,
        user_id=user_id,
        provider=PROVIDER,
        trigger=TRIGGER_BULK_IMPORT,
        status=status,
        fetched=result.fetched,
        imported=result.imported,
        skipped=result.skipped,
        errors=[sample["error"] for sample in result.error_samples],
        error_count=result.errors,
    )
    integration = credentials.find_integration(user_id, PROVIDER)
    integration.last_sync_at = utcnow()
    integration.last_error = result.error_samples[0]["error"] if result.error_samples else None
    session.commit()
    return result
