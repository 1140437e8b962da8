from __future__ import annotations

import logging
import time

from app.core.celery_app import celery_app
from app.core.database import SessionLocal
from app.integrations.email.oauth import OAuthTokenClient, build_oauth_http_client
from app.integrations.email.service import email_account_service
from app.metrics import observe_background_task

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.email.refresh_expiring_tokens")
def refresh_expiring_tokens_task() -> dict[str, int]:
    started = time.perf_counter()
    session = SessionLocal()
    try:
        with build_oauth_http_client() as http:
            result = email_account_service.refresh_expiring_tokens(session, OAuthTokenClient(http))
    except Exception:
        session.rollback()
        observe_background_task("email.refresh_expiring_tokens", "error", time.perf_counter() - started)
        logger.exception("email_account.refresh_sweep.failed", extra={"task": "email.refresh_expiring_tokens"})
        raise
    finally:
        session.close()
    observe_background_task("email.refresh_expiring_tokens", "ok", time.perf_counter() - started)
    if result.processed:
        logger.info(
            "email_account.refresh_sweep.completed",
            extra={"task": "email.refresh_expiring_tokens", "messages": result.processed},
        )
    return result.model_dump()
