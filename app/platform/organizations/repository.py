from __future__ import annotations

from app.platform.security.repository import BaseRepository


class OrganizationRepository(BaseRepository):
    resource = "platform.organization"


class OrganizationMemberRepository(BaseRepository):
    resource = "platform.organization_member"
