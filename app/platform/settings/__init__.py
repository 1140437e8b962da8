from app.platform.settings.api import feature_flags_router, router
from app.platform.settings.models import OrganizationSetting
from app.platform.settings.service import FeatureFlagService, SettingsService, feature_flag_service, settings_service

__all__ = [
    "router",
    "feature_flags_router",
    "OrganizationSetting",
    "SettingsService",
    "FeatureFlagService",
    "settings_service",
    "feature_flag_service",
]
