from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.business.subscription import plans as catalog
from app.business.subscription.plans import PlanDefinition
from app.business.subscription.schemas import (
    CostAnalysis,
    OrganizationMetricsRead,
    PricingCalculatorRead,
    ProjectedScenario,
    TierComparisonEntry,
    TierComparisonRead,
    TierRecommendationRead,
)
from app.business.usage.models import AIUsageRecord
from app.core.clock import ensure_utc
from app.crm.models import Contact
from app.platform.organizations.service import OrganizationService
from app.platform.security.context import AuthContext


METRICS_WINDOW_DAYS = 30

_BENEFITS: dict[str, list[str]] = {
    "basic": [
        "ERP integration (Metakocka)",
        "Advanced analytics",
        "Priority support with phone access",
        "5,000 AI messages/month",
        "Up to 20 team members",
    ],
    "advanced": [
        "Custom integrations",
        "White label options",
        "AI customization",
        "Dedicated success agent",
        "15,000 AI messages/month",
        "Up to 50 team members",
    ],
    "enterprise": [
        "Unlimited AI messages",
        "Up to 100 team members",
        "All advanced features",
        "Priority everything",
        "Custom enterprise features",
    ],
}

_MIGRATION_PATHS: dict[str, str] = {
    "basic": (
        "Start with Premium Basic to get enterprise features, then upgrade to Advanced as your team grows beyond 20 users."
    ),
    "advanced": (
        "Premium Advanced provides the perfect balance of features and capacity for growing organizations. "
        "Upgrade to Enterprise when you need unlimited usage."
    ),
    "enterprise": (
        "Premium Enterprise gives you unlimited capacity and all features. "
        "Perfect for large organizations with high AI usage."
    ),
}

_GROWTH_SCENARIOS = (
    ("3 months", 1.2, 1.3),
    ("6 months", 1.5, 1.6),
    ("12 months", 2.0, 2.2),
)


@dataclass(slots=True)
class PremiumTierService:
    """Sizes an organization against the premium tiers from its last 30 days of activity."""

    def get_organization_metrics(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID
    ) -> OrganizationMetricsRead:
        user_count = OrganizationService.count_members(session, organization_id)
        contact_count = int(
            session.scalar(select(func.count()).select_from(Contact).where(Contact.organization_id == organization_id)) or 0
        )

        window_start = datetime.now(timezone.utc) - timedelta(days=METRICS_WINDOW_DAYS)
        timestamps = [
            ensure_utc(value)
            for value in session.scalars(
                select(AIUsageRecord.created_at).where(
                    AIUsageRecord.organization_id == organization_id,
                    AIUsageRecord.created_at >= window_start,
                )
            ).all()
        ]

        total_messages = len(timestamps)
        average_daily = total_messages / METRICS_WINDOW_DAYS
        daily: dict[str, int] = {}
        for value in timestamps:
            key = value.date().isoformat()
            daily[key] = daily.get(key, 0) + 1
        peak_days = sum(1 for count in daily.values() if count > average_daily * 2)

        mid_window = window_start + timedelta(days=15)
        first_half = sum(1 for value in timestamps if value < mid_window)
        second_half = total_messages - first_half
        growth_rate = ((second_half - first_half) / first_half) * 100 if first_half > 0 else 0.0

        return OrganizationMetricsRead(
            user_count=user_count,
            monthly_ai_messages=total_messages,
            contact_count=contact_count,
            average_daily_messages=average_daily,
            peak_usage_days=peak_days,
            growth_rate=growth_rate,
            team_size=user_count,
        )

    def get_tier_recommendation(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID
    ) -> TierRecommendationRead:
        metrics = self.get_organization_metrics(session, ctx, organization_id)
        return self._recommend(metrics)

    def compare_tiers(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> TierComparisonRead:
        metrics = self.get_organization_metrics(session, ctx, organization_id)
        entries = {}
        for tier in ("basic", "advanced", "enterprise"):
            plan = catalog.get_premium_plan(tier)
            entries[tier] = TierComparisonEntry(
                plan=catalog.plan_as_dict(plan),
                fit=self.calculate_fit_score(plan, metrics),
                pros=self._pros(plan, metrics),
                cons=self._cons(plan, metrics),
            )
        return TierComparisonRead(**entries)

    def get_pricing_calculator(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID
    ) -> PricingCalculatorRead:
        metrics = self.get_organization_metrics(session, ctx, organization_id)
        current = self._recommend(metrics)

        scenarios = []
        for timeframe, user_factor, message_factor in _GROWTH_SCENARIOS:
            projected_users = math.ceil(metrics.user_count * user_factor)
            projected_messages = math.ceil(metrics.monthly_ai_messages * message_factor)
            plan = catalog.recommend_premium_tier(projected_users, projected_messages)
            scenarios.append(
                ProjectedScenario(
                    timeframe=timeframe,
                    projected_users=projected_users,
                    projected_messages=projected_messages,
                    recommended_plan=catalog.plan_as_dict(plan),
                    cost=plan.monthly_price,
                    reasoning=(
                        f"Based on {round((user_factor - 1) * 100)}% user growth "
                        f"and {round((message_factor - 1) * 100)}% message growth"
                    ),
                )
            )

        return PricingCalculatorRead(
            current_scenario={
                "plan": current.recommended_tier["name"],
                "cost": current.recommended_tier["monthly_price"],
                "fit": current.current_fit,
            },
            projected_scenarios=scenarios,
        )

    def _recommend(self, metrics: OrganizationMetricsRead) -> TierRecommendationRead:
        plan = catalog.recommend_premium_tier(metrics.user_count, metrics.monthly_ai_messages)
        user_utilization = metrics.user_count / (plan.user_limit or 1)
        message_utilization = metrics.monthly_ai_messages / (plan.message_limit or 1)

        if user_utilization > 0.9 or message_utilization > 0.9:
            fit, urgency = "tight", "high"
            reasoning = "Your current usage is very close to the limits. Consider upgrading soon to avoid restrictions."
        elif user_utilization > 0.7 or message_utilization > 0.7:
            fit, urgency = "tight", "medium"
            reasoning = "You're using a significant portion of your limits. An upgrade might be beneficial."
        elif user_utilization < 0.3 and message_utilization < 0.3:
            fit, urgency = "over", "low"
            reasoning = "You might be over-provisioned. Consider if a lower tier could meet your needs."
        else:
            fit, urgency = "perfect", "low"
            reasoning = "Your current plan seems well-suited to your usage patterns."

        tier = plan.premium_tier or "enterprise"
        # Current cost is zero while organizations are on the beta program.
        current_cost = 0.0
        recommended_cost = float(plan.monthly_price)
        cost_per_message = 0.0 if plan.message_limit == catalog.UNLIMITED else recommended_cost / plan.message_limit

        return TierRecommendationRead(
            recommended_tier=catalog.plan_as_dict(plan),
            current_fit=fit,
            reasoning=reasoning,
            cost_analysis=CostAnalysis(
                current_cost=current_cost,
                recommended_cost=recommended_cost,
                savings=current_cost - recommended_cost,
                cost_per_user=recommended_cost / max(metrics.user_count, 1),
                cost_per_message=cost_per_message,
            ),
            alternatives=[catalog.plan_as_dict(item) for item in catalog.get_premium_plans() if item.id != plan.id],
            urgency=urgency,
            benefits=list(_BENEFITS[tier]),
            migration_path=_MIGRATION_PATHS[tier],
        )

    @staticmethod
    def calculate_fit_score(plan: PlanDefinition, metrics: OrganizationMetricsRead) -> int:
        score = 100

        user_utilization = metrics.user_count / (plan.user_limit or 1)
        if user_utilization > 1:
            score -= 30
        elif user_utilization > 0.8:
            score -= 10
        elif user_utilization < 0.2:
            score -= 15

        if plan.message_limit != catalog.UNLIMITED:
            message_utilization = metrics.monthly_ai_messages / plan.message_limit
            if message_utilization > 1:
                score -= 30
            elif message_utilization > 0.8:
                score -= 10
            elif message_utilization < 0.2:
                score -= 15

        if metrics.growth_rate > 50:
            if plan.premium_tier == "basic":
                score -= 20
            if plan.premium_tier == "enterprise":
                score += 10

        if metrics.peak_usage_days > 5:
            if plan.premium_tier == "basic":
                score -= 15
            if plan.premium_tier == "enterprise":
                score += 5

        return max(0, min(100, score))

    @staticmethod
    def _pros(plan: PlanDefinition, metrics: OrganizationMetricsRead) -> list[str]:
        pros: list[str] = []
        if plan.premium_tier == "basic":
            pros += [
                "Most cost-effective Premium option",
                "Perfect for growing teams",
                "Includes essential enterprise features",
            ]
            if metrics.user_count <= 15:
                pros.append("Room to grow your team")
        if plan.premium_tier == "advanced":
            pros += ["Advanced customization options", "White label capabilities", "Dedicated success support"]
            if metrics.user_count > 20:
                pros.append("Better fit for larger teams")
        if plan.premium_tier == "enterprise":
            pros += [
                "Unlimited AI messages",
                "No usage restrictions",
                "Maximum team size support",
                "All premium features included",
            ]

        if plan.message_limit == catalog.UNLIMITED:
            pros.append("Never worry about message limits")
        elif plan.message_limit > metrics.monthly_ai_messages * 2:
            pros.append("Plenty of room for growth")
        return pros

    @staticmethod
    def _cons(plan: PlanDefinition, metrics: OrganizationMetricsRead) -> list[str]:
        cons: list[str] = []
        limited_users = plan.user_limit != catalog.UNLIMITED
        if limited_users and metrics.user_count > plan.user_limit * 0.8:
            cons.append("Close to user limit")
        if limited_users and metrics.user_count > plan.user_limit:
            cons.append("Exceeds user limit")

        limited_messages = plan.message_limit != catalog.UNLIMITED
        if limited_messages and metrics.monthly_ai_messages > plan.message_limit * 0.8:
            cons.append("Close to message limit")
        if limited_messages and metrics.monthly_ai_messages > plan.message_limit:
            cons.append("Exceeds message limit")

        if plan.premium_tier == "enterprise" and metrics.user_count < 30:
            cons.append("May be over-provisioned for current team size")
        if plan.premium_tier == "basic" and metrics.growth_rate > 50:
            cons.append("May outgrow this tier quickly")
        if plan.premium_tier == "basic":
            cons += ["No white label options", "No custom integrations"]
        if plan.premium_tier != "enterprise" and metrics.peak_usage_days > 10:
            cons.append("Message limits during peak usage")
        return cons


premium_tier_service = PremiumTierService()
