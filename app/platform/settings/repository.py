from __future__ import annotations

from app.platform.security.repository import BaseRepository


class OrganizationSettingRepository(BaseRepository):
    resource = "platform.organization_setting"
