from __future__ import annotations

from app.platform.security.repository import BaseRepository


class AIUsageRepository(BaseRepository):
    resource = "usage.ai_record"


class TopUpPurchaseRepository(BaseRepository):
    resource = "usage.topup_purchase"
