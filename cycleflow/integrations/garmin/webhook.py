"""Garmin webhook receiver.

Rules: answer fast, no provider calls inline. A request is rate limited,
size checked, content-type checked, signature checked and structurally
validated, in that order. Accepted events are stored unprocessed and
handed to a dispatcher; the response never waits for processing.

The receiver is framework agnostic (bytes and headers in, status and JSON
body out); the FastAPI route in cycleflow.api.webhooks.garmin adapts it.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from sqlalchemy import select

from cycleflow.config.settings import settings
from cycleflow.core.errors import ValidationError
from cycleflow.core.rate_limit import RateLimiter, get_webhook_rate_limiter
from cycleflow.db.models import IngestEvent
from cycleflow.db.session import get_session
from cycleflow.ingestion.dispatch import EventDispatcher
from cycleflow.utils.timezone import parse_timestamp, utcnow

PROVIDER = "garmin"
DEFAULT_EVENT_TYPE = "activity"
DEFAULT_FILE_TYPE = "FIT"


@dataclass(frozen=True)
class WebhookRequest:
    body: bytes
    client_ip: str
    content_type: str | None = None
    signature: str | None = None


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


def client_ip_from_headers(headers: dict[str, str] | Any, fallback: str | None) -> str:
    """First hop of X-Forwarded-For, else the socket peer address."""
    forwarded = headers.get("x-forwarded-for") if headers else None
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip") if headers else None
    if real_ip:
        return real_ip.strip()
    return fallback or "unknown"


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    if not signature:
        return False
    expected = compute_signature(secret, body)
    return hmac.compare_digest(expected, signature.strip().lower())


def parse_payload(body: bytes) -> dict[str, Any]:
    """Parse and structurally validate a webhook body.

    Raises:
        ValidationError: Not a JSON object, missing userId, or a non-string
            activityId
    """
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"Invalid JSON payload: {e}") from e

    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object")

    user_id = payload.get("userId")
    if user_id is None or user_id == "":
        raise ValidationError("Missing required field: userId")
    if not isinstance(user_id, (str, int)) or isinstance(user_id, bool):
        raise ValidationError("userId must be a string")

    activity_id = payload.get("activityId")
    if activity_id is not None and not isinstance(activity_id, str):
        raise ValidationError("activityId must be a string")

    return payload


def payload_too_large() -> ValidationError:
    return ValidationError("Payload too large", status_code=413)


def build_event(payload: dict[str, Any]) -> IngestEvent:
    upload_timestamp = parse_timestamp(
        payload.get("uploadTimestamp") or payload.get("startTimeInSeconds") or payload.get("startTime")
    )
    return IngestEvent(
        provider=PROVIDER,
        event_type=payload.get("eventType") or DEFAULT_EVENT_TYPE,
        provider_user_id=str(payload["userId"]),
        provider_activity_id=payload.get("activityId"),
        file_url=payload.get("fileUrl") or payload.get("activityFileUrl"),
        file_type=payload.get("fileType") or DEFAULT_FILE_TYPE,
        upload_timestamp=upload_timestamp,
        received_at=utcnow(),
        payload=payload,
        processed=False,
    )


class WebhookReceiver:
    def __init__(
        self,
        dispatcher: EventDispatcher,
        rate_limiter: RateLimiter | None = None,
        secret: str | None = None,
        max_payload_bytes: int | None = None,
    ):
        self.dispatcher = dispatcher
        self.rate_limiter = rate_limiter or get_webhook_rate_limiter()
        self.secret = settings.garmin_webhook_secret if secret is None else secret
        self.max_payload_bytes = max_payload_bytes or settings.webhook_max_payload_bytes

    def handle(self, request: WebhookRequest, admitted: bool = False) -> WebhookResponse:
        """Run the full receive flow.

        admitted=True means admit() already ran for this request, so the
        rate limit is not charged twice.
        """
        try:
            return self._handle(request, admitted)
        except ValidationError as e:
            return self.reject(request.client_ip, e)
        except Exception as e:
            logger.exception(f"[GARMIN_WEBHOOK] Webhook processing failed: {e}")
            return WebhookResponse(500, {"error": "Webhook processing failed"})

    def admit(self, client_ip: str, content_length: int | None = None) -> WebhookResponse | None:
        """Checks that need no body: rate limit, then the declared length.

        Returns a rejection, or None when the body should be read.
        """
        try:
            return self._admit(client_ip, content_length)
        except ValidationError as e:
            return self.reject(client_ip, e)
        except Exception as e:
            logger.exception(f"[GARMIN_WEBHOOK] Webhook admission failed: {e}")
            return WebhookResponse(500, {"error": "Webhook processing failed"})

    def reject(self, client_ip: str, error: ValidationError) -> WebhookResponse:
        logger.warning(f"[GARMIN_WEBHOOK] Rejected webhook from {client_ip}: {error} ({error.status_code})")
        return WebhookResponse(error.status_code, {"error": str(error)})

    def _admit(self, client_ip: str, content_length: int | None) -> WebhookResponse | None:
        limit = self.rate_limiter.check(client_ip)
        if not limit.allowed:
            logger.warning(f"[GARMIN_WEBHOOK] Rate limit exceeded for {client_ip}")
            return WebhookResponse(
                429,
                {"error": "Too many requests"},
                headers={"Retry-After": str(limit.retry_after)},
            )

        if content_length is not None and content_length > self.max_payload_bytes:
            raise payload_too_large()
        return None

    def _handle(self, request: WebhookRequest, admitted: bool) -> WebhookResponse:
        if not admitted:
            rejection = self._admit(request.client_ip, None)
            if rejection is not None:
                return rejection

        if len(request.body) > self.max_payload_bytes:
            raise payload_too_large()

        if "application/json" not in (request.content_type or "").lower():
            raise ValidationError("Content-Type must be application/json", status_code=415)

        if self.secret and not verify_signature(self.secret, request.body, request.signature):
            raise ValidationError("Invalid signature", status_code=401)

        payload = parse_payload(request.body)
        provider_user_id = str(payload["userId"])
        activity_id = payload.get("activityId")

        with get_session() as session:
            if activity_id is not None:
                existing = session.execute(
                    select(IngestEvent).where(
                        IngestEvent.provider_activity_id == activity_id,
                        IngestEvent.provider_user_id == provider_user_id,
                    )
                ).first()
                if existing:
                    existing_id = existing[0].id
                    logger.info(
                        f"[GARMIN_WEBHOOK] Duplicate webhook for activity {activity_id} "
                        f"(user {provider_user_id}), existing event: {existing_id}"
                    )
                    return WebhookResponse(
                        200,
                        {"success": True, "message": "Webhook already processed", "eventId": existing_id},
                    )

            event = build_event(payload)
            session.add(event)
            session.commit()
            event_id = event.id

        logger.info(
            f"[GARMIN_WEBHOOK] Stored event {event_id}: user={provider_user_id}, activity={activity_id}"
        )

        try:
            self.dispatcher.submit(event_id)
        except Exception as e:
            # Event is stored unprocessed and can be picked up by process-event
            logger.error(f"[GARMIN_WEBHOOK] Failed to dispatch event {event_id}: {e}")

        return WebhookResponse(
            200,
            {"success": True, "eventId": event_id, "message": "Webhook received and queued for processing"},
        )
