from app.business.usage.api import router, topup_router
from app.business.usage.limits import AI_FEATURE_MAPPING, check_ai_limits_with_topup, get_usage_status, log_ai_usage_with_topup
from app.business.usage.models import AIUsageRecord, TopUpPurchase
from app.business.usage.service import AIUsageService, TopUpService, ai_usage_service, topup_service

__all__ = [
    "router",
    "topup_router",
    "AI_FEATURE_MAPPING",
    "check_ai_limits_with_topup",
    "get_usage_status",
    "log_ai_usage_with_topup",
    "AIUsageRecord",
    "TopUpPurchase",
    "AIUsageService",
    "TopUpService",
    "ai_usage_service",
    "topup_service",
]
