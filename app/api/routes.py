from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.business.billing import router as billing_router, webhook_router as stripe_webhook_router
from app.business.subscription import router as subscription_router
from app.business.usage import router as usage_router, topup_router
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.crm.api import contacts_router, lead_scoring_router, pipeline_router
from app.integrations.email import router as email_accounts_router
from app.integrations.webhooks import router as webhooks_router
from app.metrics import generate_metrics_payload, metrics_content_type
from app.platform.audit import router as audit_router
from app.platform.notifications import router as notifications_router
from app.platform.organizations import router as organizations_router
from app.platform.settings import feature_flags_router, router as settings_router

router = APIRouter()
router.include_router(organizations_router)
router.include_router(subscription_router)
router.include_router(billing_router)
# /api/webhooks/stripe must be matched before the /api/webhooks/{webhook_id} routes.
router.include_router(stripe_webhook_router)
router.include_router(webhooks_router)
router.include_router(usage_router)
router.include_router(topup_router)
router.include_router(contacts_router)
router.include_router(lead_scoring_router)
router.include_router(pipeline_router)
router.include_router(email_accounts_router)
router.include_router(settings_router)
router.include_router(feature_flags_router)
router.include_router(notifications_router)
router.include_router(audit_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
