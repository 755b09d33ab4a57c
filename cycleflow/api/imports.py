"""Internal import triggers. Not exposed to third parties."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from cycleflow.core.errors import NotFoundError, PipelineError, ValidationError
from cycleflow.db.session import get_db
from cycleflow.integrations.garmin.backfill import request_garmin_backfill
from cycleflow.integrations.strava.bulk_import import import_strava_activities
from cycleflow.integrations.strava.gps_backfill import backfill_gps

router = APIRouter(prefix="/imports", tags=["imports"])


class UserRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(validation_alias=AliasChoices("userId", "user_id"), min_length=1)


class DateRangeRequest(UserRequest):
    start_date: datetime | None = Field(default=None, validation_alias=AliasChoices("startDate", "start_date"))
    end_date: datetime | None = Field(default=None, validation_alias=AliasChoices("endDate", "end_date"))


class StravaImportRequest(DateRangeRequest):
    force: bool = False


def _to_http_error(e: PipelineError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=e.status_code, detail=str(e))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.post("/strava")
def strava_bulk_import(body: StravaImportRequest, session: Session = Depends(get_db)) -> dict[str, Any]:
    try:
        result = import_strava_activities(
            session,
            body.user_id,
            start_date=body.start_date,
            end_date=body.end_date,
            force=body.force,
        )
    except PipelineError as e:
        logger.warning(f"[STRAVA_IMPORT] Import rejected for user {body.user_id}: {e}")
        raise _to_http_error(e) from e
    return {"success": True, **result.to_dict()}


@router.post("/strava/gps-backfill")
def strava_gps_backfill(body: UserRequest, session: Session = Depends(get_db)) -> dict[str, Any]:
    try:
        result = backfill_gps(session, body.user_id)
    except PipelineError as e:
        logger.warning(f"[GPS_BACKFILL] Backfill rejected for user {body.user_id}: {e}")
        raise _to_http_error(e) from e
    return {"success": True, **result}


@router.post("/garmin/backfill")
def garmin_backfill(body: DateRangeRequest, session: Session = Depends(get_db)) -> dict[str, Any]:
    try:
        result = request_garmin_backfill(
            session,
            body.user_id,
            start_date=body.start_date,
            end_date=body.end_date,
        )
    except PipelineError as e:
        logger.warning(f"[GARMIN_BACKFILL] Backfill rejected for user {body.user_id}: {e}")
        raise _to_http_error(e) from e
    return {"success": True, **result}
