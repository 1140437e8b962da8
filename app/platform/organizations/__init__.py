from app.platform.organizations.api import router
from app.platform.organizations.models import Organization, OrganizationMember
from app.platform.organizations.schemas import MemberCreate, MemberRead, OrganizationCreate, OrganizationRead
from app.platform.organizations.service import OrganizationService, organization_service

__all__ = [
    "router",
    "Organization",
    "OrganizationMember",
    "OrganizationCreate",
    "OrganizationRead",
    "MemberCreate",
    "MemberRead",
    "OrganizationService",
    "organization_service",
]
