from app.platform.audit.api import router
from app.platform.audit.models import AuditLog
from app.platform.audit.schemas import AuditLogCreate, AuditLogPage, AuditLogRead
from app.platform.audit.service import AuditLogService, audit_log_service

__all__ = [
    "router",
    "AuditLog",
    "AuditLogCreate",
    "AuditLogPage",
    "AuditLogRead",
    "AuditLogService",
    "audit_log_service",
]
