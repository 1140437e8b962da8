from __future__ import annotations

from app.platform.security.repository import BaseRepository


class AuditLogRepository(BaseRepository):
    resource = "platform.audit_log"
