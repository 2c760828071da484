"""Google Calendar push-notification receiver.

Mounted at ``/api/calendar/webhook``:
- ``POST``: parse the ``X-Goog-*`` headers and resolve the notification.
  Once parsed, the sender always gets a 200 acknowledgement, even when
  resolution fails; a notification missing its channel or resource id is
  rejected with 400.
- ``GET``: liveness probe for the endpoint.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Request

from calsync.api.deps import get_sync_service
from calsync.api.models import ErrorResponse, WebhookAck, WebhookProbe
from calsync.sync.errors import UnknownChannelError, build_structured_error
from calsync.sync.service import CalendarSyncService
from calsync.sync.webhook import parse_notification_headers

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar", tags=["calendar", "webhook"])


@router.post(
    "/webhook",
    response_model=WebhookAck,
    responses={400: {"model": ErrorResponse}},
)
async def receive_notification(
    request: Request,
    service: CalendarSyncService = Depends(get_sync_service),
) -> WebhookAck:
    notification = parse_notification_headers(request.headers)
    logger.info(
        "Calendar notification: channel=%s resource=%s message=%s kind=%s",
        notification.channel_id,
        notification.resource_id,
        notification.message_number,
        notification.kind,
    )

    try:
        resolution = await service.handle_notification(notification)
    except UnknownChannelError as exc:
        logger.warning("Ignoring notification for unknown channel %s", exc.channel_id)
        return WebhookAck(status="ignored")
    except Exception as exc:
        error = build_structured_error(exc)
        logger.error(
            "Calendar notification processing failed: %s (%s)",
            error["error"],
            error["error_type"],
            exc_info=True,
        )
        return WebhookAck(status="error")

    return WebhookAck(
        action=str(resolution.action),
        synced=resolution.result.synced,
        deleted=resolution.result.deleted,
    )


@router.get("/webhook", response_model=WebhookProbe)
async def probe_webhook() -> WebhookProbe:
    return WebhookProbe(
        message="Google Calendar webhook endpoint is active",
        timestamp=datetime.now(UTC),
    )
