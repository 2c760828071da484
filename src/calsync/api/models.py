"""Pydantic response models for the calsync HTTP surface."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class WebhookAck(BaseModel):
    """Acknowledgement returned for every parsed push notification.

    ``status`` is ``ok`` when the notification was resolved, ``ignored`` for
    an unknown channel, and ``error`` when processing failed internally.
    """

    success: bool = True
    status: str = "ok"
    action: str | None = None
    synced: int = 0
    deleted: int = 0


class WebhookProbe(BaseModel):
    message: str
    timestamp: datetime


class HealthResponse(BaseModel):
    status: str = "ok"
