from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, Field


class CheckoutSessionCreate(BaseModel):
    subscription_plan_id: UUID
    customer_email: str | None = Field(default=None, max_length=320)


class CheckoutSessionRead(BaseModel):
    session_id: str
    url: str | None


class PortalSessionRead(BaseModel):
    url: str


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: bool = False
    outcome: str = "processed"
