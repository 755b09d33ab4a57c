"""GPS backfill for Strava activities imported without a track.

Activities flagged has_gps_data with no stored track points get the
full-resolution polyline from the activity detail endpoint, decoded into
track points. An activity whose detail carries no polyline loses its GPS
flag.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from cycleflow.config.settings import settings
from cycleflow.core.errors import NotFoundError, UpstreamError
from cycleflow.db.models import Activity
from cycleflow.ingestion.normalize import track_points_from_polyline
from cycleflow.ingestion.writer import BatchWriter
from cycleflow.integrations.credentials import IntegrationCredentialSource
from cycleflow.integrations.strava.client import StravaClient

PROVIDER = "strava"

UPDATED = "updated"
CLEARED = "cleared"
FAILED = "failed"


def activities_missing_gps(session: Session, user_id: str) -> list[Activity]:
    return list(
        session.execute(
            select(Activity)
            .where(
                Activity.user_id == user_id,
                Activity.source == PROVIDER,
                Activity.has_gps_data.is_(True),
                or_(Activity.track_points_count.is_(None), Activity.track_points_count == 0),
            )
            .order_by(Activity.started_at)
        ).scalars()
    )


def backfill_activity(session: Session, client: StravaClient, activity: Activity) -> str:
    """Fill in the track of one activity. Returns updated, cleared or failed."""
    try:
        detail = client.fetch_activity(activity.provider_activity_id)
    except UpstreamError as e:
        logger.error(f"[GPS_BACKFILL] Failed to fetch Strava activity {activity.provider_activity_id}: {e}")
        return FAILED

    encoded = detail.detail_polyline or detail.summary_polyline
    if not encoded:
        activity.has_gps_data = False
        session.commit()
        logger.info(f"[GPS_BACKFILL] Activity {activity.id} has no GPS data, flag cleared")
        return CLEARED

    points = track_points_from_polyline(encoded)
    if not points:
        logger.warning(f"[GPS_BACKFILL] Polyline for activity {activity.id} decoded to no points")
        return FAILED

    result = BatchWriter(session).append_track_points(activity.id, points)
    if not result.track_points_written:
        return FAILED
    if not activity.polyline:
        activity.polyline = encoded
        session.commit()

    logger.info(
        f"[GPS_BACKFILL] Backfilled {result.track_points_written} GPS points for activity {activity.id} "
        f"({activity.name})"
    )
    return UPDATED


def _client_for(session: Session, user_id: str, client: StravaClient | None) -> StravaClient:
    if client is not None:
        return client
    token = IntegrationCredentialSource(session).get_credentials(user_id, PROVIDER)
    return StravaClient(token.access_token)


def backfill_gps(
    session: Session,
    user_id: str,
    client: StravaClient | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    """Backfill GPS tracks for every Strava activity of a user that lacks one.

    Returns:
        {updated, failed, total}; cleared counts activities that turned out
        to have no GPS data at all

    Raises:
        NotFoundError: The user has not connected Strava
    """
    client = _client_for(session, user_id, client)
    activities = activities_missing_gps(session, user_id)
    logger.info(f"[GPS_BACKFILL] Found {len(activities)} activities needing GPS data for user {user_id}")

    counts = {UPDATED: 0, CLEARED: 0, FAILED: 0}
    for index, activity in enumerate(activities):
        if index > 0:
            sleep(settings.strava_stream_delay_seconds)
        try:
            outcome = backfill_activity(session, client, activity)
        except Exception as e:
            logger.exception(f"[GPS_BACKFILL] Unexpected error for activity {activity.id}: {e}")
            session.rollback()
            outcome = FAILED
        counts[outcome] += 1

    logger.info(
        f"[GPS_BACKFILL] Done for user {user_id}: updated={counts[UPDATED]}, failed={counts[FAILED]}, "
        f"cleared={counts[CLEARED]}, total={len(activities)}"
    )
    return {
        "updated": counts[UPDATED],
        "failed": counts[FAILED],
        "cleared": counts[CLEARED],
        "total": len(activities),
    }


def backfill_single_activity(
    session: Session,
    user_id: str,
    activity_id: str,
    client: StravaClient | None = None,
) -> str:
    """Backfill one activity by id.

    Raises:
        NotFoundError: No Strava activity with that id for the user
    """
    activity = session.get(Activity, activity_id)
    if activity is None or activity.user_id != user_id or activity.source != PROVIDER:
        raise NotFoundError(f"Strava activity not found: {activity_id}")
    return backfill_activity(session, _client_for(session, user_id, client), activity)
