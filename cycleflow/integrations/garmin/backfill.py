"""Garmin historical backfill requests.

Garmin is push-only: history cannot be paged, it has to be requested.
Each request covers at most GARMIN_BACKFILL_CHUNK_DAYS; Garmin answers 202
and later delivers the activities to the webhook. A 409 means the window
was already requested and is safe to ignore.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta
from typing import Any

import httpx
from loguru import logger
from sqlalchemy.orm import Session

from cycleflow.config.settings import settings
from cycleflow.core.errors import ValidationError
from cycleflow.integrations.credentials import IntegrationCredentialSource
from cycleflow.utils.timezone import to_utc, utcnow

PROVIDER = "garmin"
DEFAULT_LOOKBACK_DAYS = 30


def backfill_windows(start: datetime, end: datetime, chunk_days: int) -> Iterator[tuple[datetime, datetime]]:
    cursor = start
    while cursor < end:
        window_end = min(cursor + timedelta(days=chunk_days), end)
        yield cursor, window_end
        cursor = window_end


def request_backfill_window(access_token: str, start: datetime, end: datetime) -> dict[str, Any]:
    """Request one backfill window and classify Garmin's answer."""
    params = {
        "summaryStartTimeInSeconds": int(start.timestamp()),
        "summaryEndTimeInSeconds": int(end.timestamp()),
    }
    window = {"start": start.isoformat(), "end": end.isoformat()}

    try:
        resp = httpx.get(
            f"{settings.garmin_api_base_url}/backfill/activities",
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            params=params,
            timeout=settings.http_timeout_seconds,
        )
    except httpx.HTTPError as e:
        logger.error(f"[GARMIN_BACKFILL] Request failed for {start.date()} to {end.date()}: {e}")
        return {**window, "status": "error", "status_code": 0, "message": str(e)}

    if resp.status_code == 202:
        logger.info(f"[GARMIN_BACKFILL] Backfill accepted (202): {start.date()} to {end.date()}")
        return {**window, "status": "accepted", "status_code": 202, "message": "Backfill request accepted"}

    if resp.status_code == 409:
        logger.info(f"[GARMIN_BACKFILL] Duplicate backfill request (409, ignored): {start.date()} to {end.date()}")
        return {
            **window,
            "status": "duplicate",
            "status_code": 409,
            "message": "Duplicate request (already requested)",
        }

    logger.error(f"[GARMIN_BACKFILL] API error {resp.status_code}: {resp.text[:500]} (params={params})")
    return {
        **window,
        "status": "error",
        "status_code": resp.status_code,
        "message": f"Unexpected status code: {resp.status_code}",
    }


def request_garmin_backfill(
    session: Session,
    user_id: str,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    """Request Garmin history for a user, one window at a time.

    Args:
        session: Database session
        user_id: Internal user id
        start_date: Start of the range (default: DEFAULT_LOOKBACK_DAYS ago)
        end_date: End of the range (default: now)
        sleep: Delay function between requests

    Returns:
        {total_requests, accepted_count, duplicate_count, error_count, results}

    Raises:
        NotFoundError: The user has no Garmin integration
        ValidationError: Sync is disabled or the range is empty
    """
    credentials = IntegrationCredentialSource(session)
    integration = credentials.find_integration(user_id, PROVIDER)
    token = credentials.get_credentials(user_id, PROVIDER)
    if not token.sync_enabled:
        raise ValidationError("Garmin sync is disabled for this user")

    end = to_utc(end_date) if end_date else utcnow()
    start = to_utc(start_date) if start_date else end - timedelta(days=DEFAULT_LOOKBACK_DAYS)
    if start >= end:
        raise ValidationError("start_date must be before end_date")

    logger.info(f"[GARMIN_BACKFILL] Requesting history for user {user_id}: {start.date()} to {end.date()}")

    results: list[dict[str, Any]] = []
    for index, (window_start, window_end) in enumerate(
        backfill_windows(start, end, settings.garmin_backfill_chunk_days)
    ):
        if index > 0:
            sleep(settings.garmin_backfill_request_delay_seconds)
        results.append(request_backfill_window(token.access_token, window_start, window_end))

    accepted = sum(1 for result in results if result["status"] == "accepted")
    duplicates = sum(1 for result in results if result["status"] == "duplicate")
    errors = len(results) - accepted - duplicates

    integration.last_sync_at = utcnow()
    if errors:
        integration.last_error = f"Garmin backfill: {errors} request(s) failed"
    session.commit()

    logger.info(
        f"[GARMIN_BACKFILL] Done for user {user_id}: requests={len(results)}, accepted={accepted}, "
        f"duplicates={duplicates}, errors={errors}"
    )
    return {
        "total_requests": len(results),
        "accepted_count": accepted,
        "duplicate_count": duplicates,
        "error_count": errors,
        "results": results,
    }
