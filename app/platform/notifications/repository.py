from __future__ import annotations

from app.platform.security.repository import BaseRepository


class NotificationRepository(BaseRepository):
    resource = "platform.notification"
