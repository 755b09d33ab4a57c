"""Garmin webhook endpoints.

Rules: always ACK fast, no logic inline. The route rejects on rate limit
and declared Content-Length before touching the body, then reads the body
with a running size cap and hands it to WebhookReceiver.
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse
from loguru import logger

from cycleflow.ingestion.dispatch import get_dispatcher
from cycleflow.integrations.garmin.webhook import (
    WebhookReceiver,
    WebhookRequest,
    WebhookResponse,
    client_ip_from_headers,
    payload_too_large,
)
from cycleflow.utils.timezone import utcnow

router = APIRouter(tags=["webhooks", "garmin"])

SIGNATURE_HEADERS = ("x-garmin-signature", "x-webhook-signature")


def _declared_length(request: Request) -> int | None:
    value = request.headers.get("content-length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


async def _read_capped_body(request: Request, limit: int) -> bytes | None:
    """Read the body chunk by chunk; None once it grows past limit."""
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            return None
    return bytes(body)


def _json_response(response: WebhookResponse) -> JSONResponse:
    return JSONResponse(status_code=response.status_code, content=response.body, headers=response.headers)


@router.post("/webhook")
async def garmin_webhook(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
    """Receive a Garmin activity push.

    Returns:
        200 on accept or duplicate; 400/401/413/415/429 on rejection;
        500 on unexpected failure
    """
    headers = request.headers
    client_ip = client_ip_from_headers(headers, request.client.host if request.client else None)
    receiver = WebhookReceiver(dispatcher=get_dispatcher(background_tasks))

    rejection = await asyncio.to_thread(receiver.admit, client_ip, _declared_length(request))
    if rejection is not None:
        return _json_response(rejection)

    body = await _read_capped_body(request, receiver.max_payload_bytes)
    if body is None:
        return _json_response(receiver.reject(client_ip, payload_too_large()))

    webhook_request = WebhookRequest(
        body=body,
        client_ip=client_ip,
        content_type=headers.get("content-type"),
        signature=next((headers[name] for name in SIGNATURE_HEADERS if headers.get(name)), None),
    )
    response = await asyncio.to_thread(receiver.handle, webhook_request, True)
    return _json_response(response)


@router.get("/webhook")
def garmin_webhook_health() -> dict[str, str]:
    logger.debug("[GARMIN_WEBHOOK] Health probe")
    return {"status": "ok", "service": "garmin-webhook", "timestamp": utcnow().isoformat()}
