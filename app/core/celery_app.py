from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "aris_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.integrations.webhooks.tasks", "app.integrations.email.tasks"],
)
celery_app.conf.beat_schedule = {
    "webhooks-process-due-retries": {
        "task": "app.tasks.webhooks.process_due_retries",
        "schedule": float(settings.webhook_retry_interval_seconds),
    },
    "email-refresh-expiring-tokens": {
        "task": "app.tasks.email.refresh_expiring_tokens",
        "schedule": float(settings.oauth_refresh_interval_seconds),
    },
}


@celery_app.task(name="app.tasks.ping")
def ping_task() -> str:
    return "pong"
