from app.platform.notifications.ai import AINotificationService, ai_notification_service
from app.platform.notifications.api import router
from app.platform.notifications.models import Notification
from app.platform.notifications.schemas import NotificationCreate, NotificationRead
from app.platform.notifications.service import NotificationService, notification_service

__all__ = [
    "router",
    "Notification",
    "NotificationCreate",
    "NotificationRead",
    "NotificationService",
    "notification_service",
    "AINotificationService",
    "ai_notification_service",
]
