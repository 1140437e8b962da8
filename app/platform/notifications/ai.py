"""Notification copy for AI learning events.

Each sender returns the created notification, or ``None`` when the event is not
worth surfacing to the user.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.platform.notifications.schemas import (
    AILearningStats,
    LearningQuality,
    LearningTrigger,
    Milestone,
    NotificationCreate,
    NotificationRead,
    WeeklyLearningStats,
)
from app.platform.notifications.service import notification_service
from app.platform.security.context import AuthContext

EMAIL_DASHBOARD_URL = "/dashboard/email"
EMAIL_ACCOUNTS_URL = "/settings/email-accounts"


def _initial_learning_message(stats: AILearningStats) -> str:
    emails = f"{stats.emails_processed:,}"
    if stats.patterns_learned > 50:
        message = (
            f"Wow! I've analyzed {emails} emails and discovered {stats.patterns_learned} unique patterns in your "
            f"communication style. I'm now ready to draft emails that sound exactly like you - with "
            f"{round(stats.confidence_score * 100)}% confidence! Let's make email magical! ✨"
        )
    elif stats.patterns_learned > 20:
        message = (
            f"I've successfully learned your email style from {emails} messages! With {stats.patterns_learned} "
            "patterns identified, I can now draft responses in your voice. Ready to save hours on email? 🚀"
        )
    elif stats.patterns_learned > 5:
        message = (
            f"AI learning complete! I've analyzed {emails} emails and found {stats.patterns_learned} key patterns. "
            "I'm ready to help you respond faster while maintaining your unique style. Let's go! 💪"
        )
    else:
        message = (
            f"Initial learning complete! I've processed {emails} emails to understand your style. "
            "As we work together, I'll keep learning and improving. Ready to start? 🌟"
        )
    if len(stats.languages_detected) > 1:
        languages = " and ".join(stats.languages_detected)
        message += f" (I noticed you communicate in {languages} - I've got you covered in both!)"
    return message


def _weekly_message(stats: WeeklyLearningStats) -> str | None:
    if stats.new_patterns > 0 and stats.improved_patterns > 0:
        message = (
            f"This week I learned {stats.new_patterns} new response patterns and improved {stats.improved_patterns} "
            f"existing ones from your {stats.total_emails} emails. "
        )
        if stats.accuracy_improvement > 0:
            message += f"Draft accuracy improved by {stats.accuracy_improvement:g}%! 📈 "
        return message + "Your AI is getting smarter every week!"
    if stats.new_patterns > 0:
        return (
            f"Discovered {stats.new_patterns} new patterns this week! Your AI keeps evolving with your communication "
            f"style. Week {stats.week_number} of continuous learning complete. 🎯"
        )
    if stats.improved_patterns > 0:
        return (
            f"Refined {stats.improved_patterns} response patterns for even better accuracy. "
            "Your AI assistant is fine-tuning to perfection! ⚡"
        )
    return None


def _milestone_copy(milestone: Milestone) -> tuple[str, str] | None:
    value = milestone.value
    if milestone.type == "emails_processed":
        if value >= 10000:
            return (
                "🏆 10,000 Emails Mastered!",
                "Your AI has now processed over 10,000 emails! That's enterprise-level learning. "
                "You're basically email royalty now! 👑",
            )
        if value >= 5000:
            return (
                "🎊 5,000 Email Milestone!",
                "Half way to email mastery! Your AI has learned from 5,000 emails and counting. "
                "The patterns are getting crystal clear!",
            )
        if value >= 1000:
            return (
                "🎯 1,000 Emails Analyzed!",
                "Your AI assistant has now studied 1,000 of your emails. The learning curve is accelerating! 📊",
            )
        if value >= 100:
            return (
                "✨ First 100 Emails Complete!",
                "Milestone reached! Your AI has learned from 100 emails. Watch as it gets better with every message!",
            )
        return None
    if milestone.type == "patterns_learned":
        if value >= 100:
            return (
                "🧠 100 Patterns Mastered!",
                f"Your AI now knows {value:g} unique response patterns. It's practically reading your mind at this point! 🔮",
            )
        if value >= 50:
            return (
                "📚 50 Patterns Learned!",
                "Half a hundred patterns identified! Your AI is becoming a true extension of your communication style.",
            )
        return None
    if milestone.type == "time_saved":
        return (
            "⏰ Time Savings Milestone!",
            f"You've saved approximately {value:g} {milestone.unit or 'hours'} with AI-powered drafts! "
            "That's time back in your day for what matters most. 🎈",
        )
    if value >= 95:
        return (
            "🎖️ 95% Accuracy Achieved!",
            "Your AI drafts are now 95% accurate! That's near-perfect replication of your writing style. Impressive! 🌟",
        )
    if value >= 90:
        return (
            "📈 90% Accuracy Milestone!",
            "Breaking through the 90% accuracy barrier! Your AI is now drafting with exceptional precision.",
        )
    return None


@dataclass(slots=True)
class AINotificationService:
    def send_initial_learning_complete(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, user_id: str, stats: AILearningStats
    ) -> NotificationRead:
        return self._send(
            session,
            ctx,
            organization_id,
            user_id=user_id,
            title="🎉 Your AI assistant just learned your voice!",
            message=_initial_learning_message(stats),
            type="success",
            action_url=EMAIL_DASHBOARD_URL,
            metadata={"category": "ai", "event": "initial_learning_complete", "stats": stats.model_dump()},
        )

    def send_weekly_learning_update(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, user_id: str, stats: WeeklyLearningStats
    ) -> NotificationRead | None:
        message = _weekly_message(stats)
        if message is None:
            return None
        return self._send(
            session,
            ctx,
            organization_id,
            user_id=user_id,
            title="🧠 AI Brain Upgrade Complete!",
            message=message,
            type="success",
            action_url=EMAIL_DASHBOARD_URL,
            metadata={"category": "ai", "event": "weekly_learning_update", "stats": stats.model_dump()},
        )

    def send_milestone_achieved(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, user_id: str, milestone: Milestone
    ) -> NotificationRead | None:
        copy = _milestone_copy(milestone)
        if copy is None:
            return None
        title, message = copy
        return self._send(
            session,
            ctx,
            organization_id,
            user_id=user_id,
            title=title,
            message=message,
            type="success",
            action_url=EMAIL_DASHBOARD_URL,
            metadata={"category": "ai", "event": "milestone_achieved", "milestone": milestone.model_dump()},
        )

    def send_learning_quality_update(
        self,
        session: Session,
        ctx: AuthContext,
        organization_id: uuid.UUID,
        user_id: str,
        quality: LearningQuality,
        suggestion: str | None = None,
    ) -> NotificationRead | None:
        if quality == "high":
            return None
        if quality == "low":
            title = "💡 Improve Your AI's Learning"
            message = (
                "Your AI needs more data to learn effectively. "
                + (suggestion or "Try syncing more sent emails or waiting a week for more email activity.")
                + " The more emails I analyze, the better I become! 🚀"
            )
        else:
            title = "📊 AI Learning Tip"
            message = (
                "Good progress on AI learning! "
                + (suggestion or "Keep using the AI drafts and providing feedback to improve accuracy.")
                + " We're on the right track! 📈"
            )
        return self._send(
            session,
            ctx,
            organization_id,
            user_id=user_id,
            title=title,
            message=message,
            type="info",
            action_url=EMAIL_ACCOUNTS_URL,
            metadata={"category": "ai", "event": "learning_quality_update", "quality": quality},
        )

    def send_learning_started(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, user_id: str, trigger: LearningTrigger
    ) -> NotificationRead | None:
        # Scheduled runs stay silent.
        if trigger != "manual":
            return None
        return self._send(
            session,
            ctx,
            organization_id,
            user_id=user_id,
            title="🔄 AI Learning in Progress",
            message=(
                "I'm analyzing your recent emails to improve my responses. This will take about 30-60 seconds. "
                "I'll notify you when complete!"
            ),
            type="info",
            action_url=EMAIL_DASHBOARD_URL,
            metadata={"category": "ai", "event": "learning_started", "trigger": trigger},
        )

    @staticmethod
    def _send(
        session: Session, ctx: AuthContext, organization_id: uuid.UUID, **fields: object
    ) -> NotificationRead:
        return notification_service.create_notification(session, ctx, organization_id, NotificationCreate(**fields))


ai_notification_service = AINotificationService()
