from __future__ import annotations

from app.platform.security.repository import BaseRepository


class EmailAccountRepository(BaseRepository):
    resource = "integrations.email_account"
    system_fields = frozenset({"organization_id", "user_id", "access_token", "refresh_token", "token_expires_at"})
