from __future__ import annotations

from app.platform.security.repository import BaseRepository


class ContactRepository(BaseRepository):
    resource = "crm.contact"


class LeadScoreRepository(BaseRepository):
    resource = "crm.lead_score"


class PipelineRepository(BaseRepository):
    resource = "crm.pipeline"


class OpportunityRepository(BaseRepository):
    resource = "crm.opportunity"
    system_fields = frozenset({"organization_id", "created_by", "status", "actual_close_date"})

