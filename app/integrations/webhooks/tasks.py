from __future__ import annotations

import logging
import time

from app.core.celery_app import celery_app
from app.core.database import SessionLocal
from app.integrations.webhooks.service import build_http_client, webhook_service
from app.metrics import observe_background_task

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.webhooks.process_due_retries")
def process_due_retries_task() -> dict[str, int]:
    started = time.perf_counter()
    session = SessionLocal()
    try:
        with build_http_client() as client:
            result = webhook_service.process_due_retries(session, client)
    except Exception:
        session.rollback()
        observe_background_task("webhooks.process_due_retries", "error", time.perf_counter() - started)
        logger.exception("webhook.retry_sweep.failed", extra={"task": "webhooks.process_due_retries"})
        raise
    finally:
        session.close()
    observe_background_task("webhooks.process_due_retries", "ok", time.perf_counter() - started)
    if result.processed:
        logger.info(
            "webhook.retry_sweep.completed",
            extra={"task": "webhooks.process_due_retries", "messages": result.processed},
        )
    return result.model_dump()
