from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Path, Response, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.platform.security.context import AuthContext
from app.platform.security.dependencies import get_auth_context, require_organization
from app.platform.settings.schemas import (
    EmailDelayRead,
    EmailType,
    FeatureEnabledRead,
    FeatureFlagRead,
    FeatureFlagsRead,
    SettingRead,
    SettingUpsert,
)
from app.platform.settings.service import feature_flag_service, settings_service


router = APIRouter(prefix="/api/settings", tags=["settings"])
feature_flags_router = APIRouter(prefix="/api/feature-flags", tags=["feature-flags"])

SettingKey = Annotated[str, Path(min_length=1, max_length=128, pattern=r"^[a-z0-9_.-]+$")]


@router.get("", response_model=dict[str, Any])
def get_settings(session: Session = Depends(get_db), ctx: AuthContext = Depends(get_auth_context)) -> dict[str, Any]:
    return settings_service.get_settings(session, ctx, require_organization(ctx))


@router.get("/rows", response_model=list[SettingRead])
def list_setting_rows(
    session: Session = Depends(get_db), ctx: AuthContext = Depends(get_auth_context)
) -> list[SettingRead]:
    return settings_service.list_setting_rows(session, ctx, require_organization(ctx))


@router.get("/features/{path}", response_model=FeatureEnabledRead)
def is_feature_enabled(
    path: str,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> FeatureEnabledRead:
    enabled = settings_service.is_feature_enabled(session, ctx, require_organization(ctx), path)
    return FeatureEnabledRead(path=path, enabled=enabled)


@router.get("/email-delays/{email_type}", response_model=EmailDelayRead)
def get_email_delay(
    email_type: EmailType,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> EmailDelayRead:
    delay = settings_service.get_email_delay_for_type(session, ctx, require_organization(ctx), email_type)
    return EmailDelayRead(email_type=email_type, delay_minutes=delay)


@router.get("/{setting_key}")
def get_setting(
    setting_key: SettingKey,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> Any:
    return settings_service.get_setting(session, ctx, require_organization(ctx), setting_key)


@router.put("/{setting_key}", response_model=SettingRead)
def update_setting(
    payload: SettingUpsert,
    setting_key: SettingKey,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SettingRead:
    return settings_service.update_setting(session, ctx, require_organization(ctx), setting_key, payload)


@router.delete("/{setting_key}", status_code=status.HTTP_204_NO_CONTENT)
def delete_setting(
    setting_key: SettingKey,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> Response:
    settings_service.delete_setting(session, ctx, require_organization(ctx), setting_key)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@feature_flags_router.get("", response_model=FeatureFlagsRead)
def get_feature_flags(
    session: Session = Depends(get_db), ctx: AuthContext = Depends(get_auth_context)
) -> FeatureFlagsRead:
    return feature_flag_service.get_feature_flags(session, ctx, require_organization(ctx))


@feature_flags_router.get("/{flag}", response_model=FeatureFlagRead)
def is_flag_enabled(
    flag: str,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> FeatureFlagRead:
    return FeatureFlagRead(flag=flag, enabled=feature_flag_service.is_enabled(session, ctx, require_organization(ctx), flag))
