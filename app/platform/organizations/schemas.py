from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


MemberRole = Literal["owner", "admin", "member"]


class OrganizationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    slug: str = Field(min_length=1, max_length=128, pattern=r"^[a-z0-9][a-z0-9-]*$")


class OrganizationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    slug: str
    subscription_tier: str
    stripe_customer_id: str | None
    created_at: datetime
    updated_at: datetime


class MemberCreate(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    role: MemberRole = "member"


class MemberRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    user_id: str
    role: MemberRole | str
    created_at: datetime
