"""Static catalog of subscription tiers and AI message top-up packages.

Plan ids double as ``Organization.subscription_tier`` values. Numeric features
use ``-1`` for unlimited.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

PremiumTier = Literal["basic", "advanced", "enterprise"]
FeatureValue = bool | int | float | str

UNLIMITED = -1
DEFAULT_MESSAGE_LIMIT = 50


@dataclass(frozen=True, slots=True)
class PlanDefinition:
    id: str
    name: str
    description: str
    monthly_price: int
    annual_price: int
    annual_savings_percent: int
    features: dict[str, FeatureValue]
    trial_days: int
    user_limit: int
    badge: str | None = None
    highlight: str | None = None
    popular: bool = False
    additional_user_price: int | None = None
    is_organization_plan: bool = False
    premium_tier: PremiumTier | None = None

    @property
    def message_limit(self) -> int:
        return int(self.features.get("AI_MESSAGES_LIMIT", DEFAULT_MESSAGE_LIMIT))


@dataclass(frozen=True, slots=True)
class TopUpPackage:
    id: str
    name: str
    description: str
    messages: int
    price_usd: float
    price_per_message: float
    discount_percent: int | None = None
    popular: bool = False


TOPUP_PACKAGES: tuple[TopUpPackage, ...] = (
    TopUpPackage("topup_100", "100 Messages", "Perfect for light usage", 100, 5, 0.05),
    TopUpPackage("topup_500", "500 Messages", "Great for regular usage", 500, 20, 0.04, discount_percent=20, popular=True),
    TopUpPackage("topup_1000", "1000 Messages", "Best value for heavy usage", 1000, 35, 0.035, discount_percent=30),
)

_PREMIUM_OFF = {
    "ERP_INTEGRATION": False,
    "PHONE_SUPPORT": False,
    "DEDICATED_SUCCESS_AGENT": False,
    "CUSTOM_INTEGRATIONS": False,
    "ADVANCED_ANALYTICS": False,
    "WHITE_LABEL": False,
    "AI_CUSTOMIZATION": False,
}

_CORE = {
    "MAX_CONTACTS": UNLIMITED,
    "EMAIL_SUPPORT": True,
    "CORE_AUTOMATION": True,
    "EMAIL_SYNC": True,
    "MOBILE_APP_ACCESS": True,
    "TOPUP_AVAILABLE": True,
}

_PRO_SUITE = {
    "PSYCHOLOGICAL_PROFILING": True,
    "ADVANCED_PSYCHOLOGICAL_PROFILING": True,
    "PRIORITY_SUPPORT": True,
    "CRM_ASSISTANT": True,
    "SALES_TACTICS": True,
    "PERSONALITY_INSIGHTS": True,
    "AI_DRAFTING_ASSISTANCE": True,
    "TEAM_COLLABORATION": True,
    "AI_FUTURE_ACCESS": True,
}


def _premium_features(users: int, messages: int, *, advanced: bool) -> dict[str, FeatureValue]:
    return {
        **_CORE,
        **_PRO_SUITE,
        "MAX_USERS": users,
        "AI_MESSAGES_LIMIT": messages,
        "AI_FUTURE_MESSAGES_LIMIT": messages,
        "AI_FUTURE_PRIORITY_SUPPORT": True,
        "PHONE_SUPPORT": True,
        "ERP_INTEGRATION": True,
        "ADVANCED_ANALYTICS": True,
        "CUSTOM_INTEGRATIONS": advanced,
        "WHITE_LABEL": advanced,
        "AI_CUSTOMIZATION": advanced,
        "DEDICATED_SUCCESS_AGENT": advanced,
    }


PLANS: tuple[PlanDefinition, ...] = (
    PlanDefinition(
        id="starter",
        name="Starter",
        description="Perfect for Solo Entrepreneurs",
        monthly_price=0,
        annual_price=0,
        annual_savings_percent=0,
        badge="ALWAYS FREE",
        highlight="Great to get started",
        features={
            **_CORE,
            **_PREMIUM_OFF,
            **{key: False for key in _PRO_SUITE},
            "MAX_USERS": 1,
            "AI_MESSAGES_LIMIT": 50,
            "TOPUP_PRICE_PER_MESSAGE": 0.05,
        },
        trial_days=0,
        user_limit=1,
    ),
    PlanDefinition(
        id="pro",
        name="Pro",
        description="Perfect for growing teams",
        monthly_price=29,
        annual_price=24,
        annual_savings_percent=17,
        badge="MOST POPULAR",
        highlight="Best Value",
        popular=True,
        features={
            **_CORE,
            **_PREMIUM_OFF,
            **_PRO_SUITE,
            "MAX_USERS": 5,
            "AI_MESSAGES_LIMIT": 500,
            "AI_FUTURE_MESSAGES_LIMIT": 500,
            "TOPUP_PRICE_PER_MESSAGE": 0.04,
        },
        trial_days=0,
        user_limit=5,
    ),
    PlanDefinition(
        id="premium_basic",
        name="Premium Basic",
        description="Perfect for medium businesses",
        monthly_price=197,
        annual_price=157,
        annual_savings_percent=20,
        badge="ENTERPRISE",
        highlight="Best for growing companies",
        premium_tier="basic",
        features={**_premium_features(20, 5000, advanced=False), "TOPUP_PRICE_PER_MESSAGE": 0.035},
        trial_days=14,
        user_limit=20,
        additional_user_price=15,
        is_organization_plan=True,
    ),
    PlanDefinition(
        id="premium_advanced",
        name="Premium Advanced",
        description="Perfect for large teams",
        monthly_price=297,
        annual_price=237,
        annual_savings_percent=20,
        badge="ENTERPRISE",
        highlight="Advanced features",
        premium_tier="advanced",
        features={**_premium_features(50, 15000, advanced=True), "TOPUP_PRICE_PER_MESSAGE": 0.03},
        trial_days=14,
        user_limit=50,
        additional_user_price=12,
        is_organization_plan=True,
    ),
    PlanDefinition(
        id="premium_enterprise",
        name="Premium Enterprise",
        description="Perfect for large organizations",
        monthly_price=497,
        annual_price=397,
        annual_savings_percent=20,
        badge="ENTERPRISE",
        highlight="Unlimited usage",
        premium_tier="enterprise",
        features={**_premium_features(100, UNLIMITED, advanced=True), "TOPUP_AVAILABLE": False},
        trial_days=14,
        user_limit=100,
        additional_user_price=10,
        is_organization_plan=True,
    ),
)


def get_plan(plan_id: str) -> PlanDefinition | None:
    return next((plan for plan in PLANS if plan.id == plan_id), None)


def get_plan_by_name(name: str) -> PlanDefinition | None:
    base_name = name.removesuffix(" (Annual)")
    return next((plan for plan in PLANS if plan.name == base_name), None)


def get_individual_plans() -> list[PlanDefinition]:
    return [plan for plan in PLANS if not plan.is_organization_plan]


def get_organization_plans() -> list[PlanDefinition]:
    return [plan for plan in PLANS if plan.is_organization_plan]


def get_premium_plans() -> list[PlanDefinition]:
    return [plan for plan in PLANS if plan.premium_tier is not None]


def get_premium_plan(tier: PremiumTier) -> PlanDefinition:
    return next(plan for plan in PLANS if plan.premium_tier == tier)


def recommend_premium_tier(user_count: int, monthly_ai_messages: int) -> PlanDefinition:
    if user_count >= 100 or monthly_ai_messages > 15000:
        return get_premium_plan("enterprise")
    if user_count >= 50 or monthly_ai_messages > 5000:
        return get_premium_plan("advanced")
    return get_premium_plan("basic")


def get_default_plan(is_organization: bool) -> PlanDefinition | None:
    if is_organization:
        return next(iter(get_organization_plans()), None)
    individual = get_individual_plans()
    return next((plan for plan in individual if plan.popular), None) or next(iter(individual), None)


def calculate_annual_savings(plan: PlanDefinition) -> int:
    return (plan.monthly_price - plan.annual_price) * 12


def get_topup_package(package_id: str) -> TopUpPackage | None:
    return next((package for package in TOPUP_PACKAGES if package.id == package_id), None)


def recommend_topup_package(needed_messages: int) -> TopUpPackage:
    if needed_messages > 750:
        return _package("topup_1000")
    if needed_messages > 300:
        return _package("topup_500")
    return _package("topup_100")


def message_limit_for_tier(tier: str | None) -> int:
    plan = get_plan(tier) if tier else None
    return plan.message_limit if plan is not None else DEFAULT_MESSAGE_LIMIT


def features_for_tier(tier: str | None) -> dict[str, FeatureValue]:
    plan = (get_plan(tier) if tier else None) or PLANS[0]
    return dict(plan.features)


def _package(package_id: str) -> TopUpPackage:
    return next(package for package in TOPUP_PACKAGES if package.id == package_id)


def plan_as_dict(plan: PlanDefinition) -> dict[str, object]:
    return {
        "id": plan.id,
        "name": plan.name,
        "description": plan.description,
        "monthly_price": plan.monthly_price,
        "annual_price": plan.annual_price,
        "annual_savings_percent": plan.annual_savings_percent,
        "annual_savings": calculate_annual_savings(plan),
        "badge": plan.badge,
        "highlight": plan.highlight,
        "popular": plan.popular,
        "features": dict(plan.features),
        "trial_days": plan.trial_days,
        "user_limit": plan.user_limit,
        "additional_user_price": plan.additional_user_price,
        "is_organization_plan": plan.is_organization_plan,
        "premium_tier": plan.premium_tier,
    }


def package_as_dict(package: TopUpPackage) -> dict[str, object]:
    return {
        "id": package.id,
        "name": package.name,
        "description": package.description,
        "messages": package.messages,
        "price_usd": package.price_usd,
        "price_per_message": package.price_per_message,
        "discount_percent": package.discount_percent,
        "popular": package.popular,
    }
