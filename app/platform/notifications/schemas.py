from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class NotificationCreate(BaseModel):
    user_id: str | None = Field(default=None, max_length=128)
    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1)
    type: str = Field(default="info", min_length=1, max_length=64)
    action_url: str | None = Field(default=None, max_length=1024)
    metadata: dict[str, Any] | None = None


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    user_id: str | None
    title: str
    message: str
    type: str
    action_url: str | None
    metadata: dict[str, Any] | None
    read_at: datetime | None
    created_at: datetime


class UnreadCountRead(BaseModel):
    count: int


class MarkAllReadResult(BaseModel):
    updated: int


class AILearningStats(BaseModel):
    patterns_learned: int = Field(ge=0)
    confidence_score: float = Field(ge=0, le=1)
    emails_processed: int = Field(ge=0)
    response_templates: int = 0
    languages_detected: list[str] = Field(default_factory=list)
    processing_time_ms: int = 0


class WeeklyLearningStats(BaseModel):
    new_patterns: int = Field(ge=0)
    improved_patterns: int = Field(ge=0)
    total_emails: int = Field(ge=0)
    accuracy_improvement: float = 0
    week_number: int = Field(ge=1)


class Milestone(BaseModel):
    type: Literal["emails_processed", "patterns_learned", "time_saved", "accuracy_reached"]
    value: float
    unit: str | None = None


LearningQuality = Literal["low", "medium", "high"]
LearningTrigger = Literal["initial", "weekly", "manual", "threshold"]
