from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from datetime import datetime
from typing import Any

import httpx
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from cycleflow.config.settings import settings
from cycleflow.core.errors import UpstreamError
from cycleflow.integrations.strava.schemas import StravaActivity

STREAM_KEYS = "latlng,time,altitude,distance"


class StravaClient:
    """Thin Strava API client.

    - One call per method; paging is driven by iter_activity_pages
    - Every HTTP failure surfaces as UpstreamError
    """

    def __init__(self, access_token: str, base_url: str | None = None):
        self._access_token = access_token
        self._base_url = (base_url or settings.strava_api_base_url).rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self._base_url}{path}"
        try:
            resp = httpx.get(
                url,
                headers=self._headers(),
                params=params,
                timeout=settings.http_timeout_seconds,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.warning(f"[STRAVA_CLIENT] {path} returned {status_code}")
            raise UpstreamError(f"Strava API error {status_code} for {path}", status_code=status_code) from e
        except httpx.HTTPError as e:
            logger.warning(f"[STRAVA_CLIENT] {path} failed: {e}")
            raise UpstreamError(f"Strava request failed for {path}: {e}") from e

        try:
            return resp.json()
        except ValueError as e:
            logger.warning(f"[STRAVA_CLIENT] {path} returned a non-JSON body")
            raise UpstreamError(f"Strava returned invalid JSON for {path}", status_code=resp.status_code) from e

    def fetch_activities_page(
        self,
        *,
        page: int,
        per_page: int,
        after: datetime | None = None,
        before: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch ONE page of the athlete's activities (1-based page).

        Items are returned as raw dicts; callers validate them one by one
        so a single malformed item cannot sink the page.
        """
        params: dict[str, Any] = {"page": page, "per_page": per_page}
        if after:
            params["after"] = int(after.timestamp())
        if before:
            params["before"] = int(before.timestamp())

        payload = self._get("/athlete/activities", params)
        if not payload:
            return []
        if not isinstance(payload, list):
            raise UpstreamError("Strava returned an unexpected payload for /athlete/activities")
        return payload

    def iter_activity_pages(
        self,
        *,
        after: datetime | None = None,
        before: datetime | None = None,
        per_page: int | None = None,
        max_pages: int | None = None,
        sleep_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Iterator[list[dict[str, Any]]]:
        """Yield activity pages until a short or empty page.

        Sleeps between page requests and never requests more than
        max_pages pages.
        """
        per_page = per_page or settings.strava_page_size
        max_pages = max_pages or settings.strava_max_pages
        sleep_seconds = settings.strava_page_delay_seconds if sleep_seconds is None else sleep_seconds

        for page in range(1, max_pages + 1):
            if page > 1:
                sleep(sleep_seconds)

            activities = self.fetch_activities_page(page=page, per_page=per_page, after=after, before=before)
            logger.info(f"[STRAVA_CLIENT] Page {page}: {len(activities)} activities")
            if not activities:
                return

            yield activities

            if len(activities) < per_page:
                return

        logger.warning(f"[STRAVA_CLIENT] Stopped after max_pages={max_pages}")

    def fetch_activity(self, activity_id: str | int) -> StravaActivity:
        raw = self._get(f"/activities/{activity_id}")
        try:
            return StravaActivity.from_api(raw)
        except (PydanticValidationError, TypeError) as e:
            logger.warning(f"[STRAVA_CLIENT] Malformed activity {activity_id}: {e}")
            raise UpstreamError(f"Strava returned a malformed activity {activity_id}") from e

    def fetch_streams(self, activity_id: str | int) -> dict[str, Any]:
        """Fetch latlng/time/altitude/distance streams keyed by type."""
        payload = self._get(
            f"/activities/{activity_id}/streams",
            {"keys": STREAM_KEYS, "key_by_type": "true"},
        )
        return payload if isinstance(payload, dict) else {}
