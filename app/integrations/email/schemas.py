from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


ProviderType = Literal["google", "microsoft"]


class EmailAccountCreate(BaseModel):
    email: EmailStr
    display_name: str | None = Field(default=None, max_length=255)
    provider_type: ProviderType
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_in: int | None = Field(default=None, ge=0)


class EmailAccountUpdate(BaseModel):
    display_name: str | None = Field(default=None, max_length=255)
    is_active: bool | None = None


class EmailAccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    user_id: str
    email: str
    display_name: str | None
    provider_type: ProviderType
    token_expires_at: datetime | None
    has_refresh_token: bool
    is_active: bool
    last_refreshed_at: datetime | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime


class AccessTokenRead(BaseModel):
    account_id: UUID
    access_token: str
    token_expires_at: datetime | None
    refreshed: bool


class TokenGrant(BaseModel):
    access_token: str
    refresh_token: str | None = None
    expires_in: int = 3600


class RefreshSweepResult(BaseModel):
    processed: int = 0
    refreshed: int = 0
    failed: int = 0
