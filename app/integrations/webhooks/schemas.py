from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, HttpUrl


class WebhookCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    url: HttpUrl
    secret: str | None = Field(default=None, min_length=16, max_length=128)
    events: list[str] = Field(min_length=1)
    is_active: bool = True


class WebhookUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    url: HttpUrl | None = None
    secret: str | None = Field(default=None, min_length=16, max_length=128)
    events: list[str] | None = Field(default=None, min_length=1)
    is_active: bool | None = None


class WebhookRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    name: str
    url: str
    secret: str
    events: list[str]
    is_active: bool
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class WebhookDeliveryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    webhook_id: UUID
    organization_id: UUID
    event_type: str
    payload: dict[str, Any]
    status: str
    attempt_count: int
    next_retry_at: datetime | None
    response_status: int | None
    response_body: str | None
    error: str | None
    delivered_at: datetime | None
    created_at: datetime


class RetrySweepResult(BaseModel):
    processed: int = 0
    delivered: int = 0
    retrying: int = 0
    failed: int = 0
