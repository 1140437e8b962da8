from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import events
from app.business.subscription import plans as catalog
from app.platform.audit.service import audit_log_service
from app.platform.organizations.service import organization_service
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, ForbiddenFieldError
from app.platform.settings.models import OrganizationSetting
from app.platform.settings.repository import OrganizationSettingRepository
from app.platform.settings.schemas import EmailType, FeatureFlagsRead, SettingRead, SettingUpsert

logger = logging.getLogger(__name__)

FEATURE_FLAGS_KEY = "feature_flags"
EMAIL_DELAYS_KEY = "email_delays"
AI_PROCESSING_KEY = "ai_processing"

DEFAULT_AI_PROCESSING_CONFIG: dict[str, Any] = {
    "openai_model": "gpt-4o",
    "use_responses_api": True,
    "enable_web_search": False,
    "enable_function_calling": True,
    "temperature": 0.7,
    "max_tokens": 1000,
    "context_window": 8000,
}

DEFAULT_EMAIL_DELAY_CONFIG: dict[str, dict[str, Any]] = {
    "customer_service": {"delay_minutes": 0, "description": "No delay for customer service emails", "enabled": True},
    "sales": {"delay_minutes": 0, "description": "No delay for sales emails", "enabled": True},
    "product_inquiry": {"delay_minutes": 0, "description": "No delay for product inquiry emails", "enabled": True},
    "complaint": {"delay_minutes": 0, "description": "No delay for complaint emails", "enabled": True},
}


def resolve_path(settings: dict[str, Any], path: str) -> Any:
    """Walk a dotted path such as ``automotive_matching.enabled``; missing segments give None."""

    current: Any = settings
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return None
    return current


def flag_enabled(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value > 0 or value == catalog.UNLIMITED
    return False


@dataclass(slots=True)
class SettingsService:
    setting_repository: OrganizationSettingRepository = OrganizationSettingRepository()

    def get_setting(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, setting_key: str) -> Any:
        organization_service.load(session, ctx, organization_id)
        row = session.scalar(
            select(OrganizationSetting).where(
                OrganizationSetting.organization_id == organization_id,
                OrganizationSetting.setting_key == setting_key,
                OrganizationSetting.is_active.is_(True),
            )
        )
        return copy.deepcopy(row.setting_value) if row is not None else None

    def get_all_settings(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> dict[str, Any]:
        organization_service.load(session, ctx, organization_id)
        query = select(OrganizationSetting).where(
            OrganizationSetting.organization_id == organization_id,
            OrganizationSetting.is_active.is_(True),
        )
        rows = session.scalars(self.setting_repository.apply_scope_query(query, ctx)).all()
        return {row.setting_key: copy.deepcopy(row.setting_value) for row in rows}

    def get_settings(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> dict[str, Any]:
        """All active settings layered over the default AI processing config."""

        return {**copy.deepcopy(DEFAULT_AI_PROCESSING_CONFIG), **self.get_all_settings(session, ctx, organization_id)}

    def list_setting_rows(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> list[SettingRead]:
        organization_service.load(session, ctx, organization_id)
        query = select(OrganizationSetting).where(OrganizationSetting.organization_id == organization_id)
        rows = session.scalars(
            self.setting_repository.apply_scope_query(query, ctx).order_by(OrganizationSetting.setting_key.asc())
        ).all()
        return [self._to_setting_read(row, ctx) for row in rows]

    def update_setting(
        self,
        session: Session,
        ctx: AuthContext,
        organization_id: uuid.UUID,
        setting_key: str,
        payload: SettingUpsert,
    ) -> SettingRead:
        organization_service.load(session, ctx, organization_id)
        data = {"organization_id": organization_id, "setting_key": setting_key, **payload.model_dump(mode="json")}
        try:
            self.setting_repository.validate_write_security(data, ctx, action="upsert")
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        row = self._find(session, organization_id, setting_key)
        previous = self._snapshot(row) if row is not None else None
        if row is None:
            row = OrganizationSetting(organization_id=organization_id, setting_key=setting_key)
            session.add(row)
        row.setting_value = payload.setting_value
        row.description = payload.description
        row.is_active = payload.is_active
        row.created_by = ctx.user_id

        audit_log_service.record(
            session,
            ctx,
            organization_id=organization_id,
            action_type="settings.updated" if previous is not None else "settings.created",
            entity_type="organization_setting",
            entity_id=setting_key,
            previous_state=previous,
            new_state=self._snapshot(row),
        )
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="setting was modified concurrently")
        session.refresh(row)

        events.publish(
            {
                "event_type": "settings.updated",
                "organization_id": str(organization_id),
                "setting_key": setting_key,
                "correlation_id": ctx.correlation_id,
            }
        )
        return self._to_setting_read(row, ctx)

    def delete_setting(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, setting_key: str
    ) -> None:
        organization_service.load(session, ctx, organization_id)
        row = self._find(session, organization_id, setting_key)
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="setting not found")
        try:
            self.setting_repository.validate_write_security(
                {}, ctx, existing_scope={"organization_id": str(organization_id)}, action="delete"
            )
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        audit_log_service.record(
            session,
            ctx,
            organization_id=organization_id,
            action_type="settings.deleted",
            entity_type="organization_setting",
            entity_id=setting_key,
            previous_state=self._snapshot(row),
        )
        session.delete(row)
        session.commit()

    def is_feature_enabled(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, path: str) -> bool:
        return bool(resolve_path(self.get_all_settings(session, ctx, organization_id), path))

    def get_email_delay_config(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> dict[str, Any]:
        config = self.get_setting(session, ctx, organization_id, EMAIL_DELAYS_KEY)
        return config if isinstance(config, dict) else copy.deepcopy(DEFAULT_EMAIL_DELAY_CONFIG)

    def get_email_delay_for_type(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, email_type: EmailType
    ) -> int:
        config = self.get_setting(session, ctx, organization_id, EMAIL_DELAYS_KEY)
        entry = config.get(email_type) if isinstance(config, dict) else None
        if not isinstance(entry, dict) or not entry.get("enabled"):
            return 0
        return int(entry.get("delay_minutes") or 0)

    @staticmethod
    def _find(session: Session, organization_id: uuid.UUID, setting_key: str) -> OrganizationSetting | None:
        return session.scalar(
            select(OrganizationSetting).where(
                OrganizationSetting.organization_id == organization_id,
                OrganizationSetting.setting_key == setting_key,
            )
        )

    @staticmethod
    def _snapshot(row: OrganizationSetting) -> dict[str, Any]:
        return {
            "setting_value": copy.deepcopy(row.setting_value),
            "description": row.description,
            "is_active": row.is_active,
        }

    def _to_setting_read(self, row: OrganizationSetting, ctx: AuthContext) -> SettingRead:
        payload = SettingRead.model_validate(row).model_dump(mode="python")
        return SettingRead.model_validate(self.setting_repository.apply_read_security(payload, ctx))


@dataclass(slots=True)
class FeatureFlagService:
    """Plan features for the organization's tier, overridden per organization.

    Overrides live in the ``feature_flags`` setting as a flat ``{FLAG: value}``
    object and always win over the plan value.
    """

    def get_feature_flags(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> FeatureFlagsRead:
        organization = organization_service.load(session, ctx, organization_id)
        overrides = self._overrides(session, ctx, organization_id)
        flags = {
            key: value
            for key, value in catalog.features_for_tier(organization.subscription_tier).items()
            if isinstance(value, (bool, int, float))
        }
        flags.update(overrides)
        return FeatureFlagsRead(tier=organization.subscription_tier, flags=flags, overrides=overrides)

    def get_flag_value(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, flag: str) -> Any:
        return self.get_feature_flags(session, ctx, organization_id).flags.get(flag)

    def is_enabled(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, flag: str) -> bool:
        return flag_enabled(self.get_flag_value(session, ctx, organization_id, flag))

    @staticmethod
    def _overrides(session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> dict[str, bool | int | float]:
        raw = settings_service.get_setting(session, ctx, organization_id, FEATURE_FLAGS_KEY)
        if not isinstance(raw, dict):
            return {}
        return {str(key): value for key, value in raw.items() if isinstance(value, (bool, int, float))}


settings_service = SettingsService()
feature_flag_service = FeatureFlagService()
