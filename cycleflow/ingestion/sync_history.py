from __future__ import annotations

from loguru import logger
from sqlalchemy.orm import Session

from cycleflow.db.models import SyncHistoryRecord

TRIGGER_WEBHOOK = "webhook"
TRIGGER_BULK_IMPORT = "bulk_import"


def record_sync(
    session: Session,
    *,
    user_id: str,
    provider: str,
    trigger: str,
    status: str,
    fetched: int = 0,
    imported: int = 0,
    skipped: int = 0,
    errors: list[str] | None = None,
    error_count: int | None = None,
    provider_activity_id: str | None = None,
    activity_id: str | None = None,
) -> SyncHistoryRecord:
    """Append one sync history row. The caller owns the commit."""
    record = SyncHistoryRecord(
        user_id=user_id,
        provider=provider,
        trigger=trigger,
        status=status,
        provider_activity_id=provider_activity_id,
        activity_id=activity_id,
        fetched_count=fetched,
        imported_count=imported,
        skipped_count=skipped,
        error_count=error_count if error_count is not None else len(errors or []),
        errors=list(errors) if errors else None,
    )
    session.add(record)
    logger.debug(
        f"Sync history: user={user_id} provider={provider} trigger={trigger} status={status} "
        f"fetched={fetched} imported={imported} skipped={skipped} errors={record.error_count}"
    )
    return record
