from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


EmailType = Literal["customer_service", "sales", "product_inquiry", "complaint"]


class SettingUpsert(BaseModel):
    setting_value: Any
    description: str | None = None
    is_active: bool = True


class SettingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    setting_key: str
    setting_value: Any
    description: str | None
    is_active: bool
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class FeatureEnabledRead(BaseModel):
    path: str
    enabled: bool


class EmailDelayRead(BaseModel):
    email_type: EmailType
    delay_minutes: int


class FeatureFlagsRead(BaseModel):
    tier: str
    flags: dict[str, bool | int | float] = Field(default_factory=dict)
    overrides: dict[str, bool | int | float] = Field(default_factory=dict)


class FeatureFlagRead(BaseModel):
    flag: str
    enabled: bool
