from __future__ import annotations

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nexus_api.ai.errors import InvalidArgumentError
from nexus_api.ai.models import AIAutonomySetting
from nexus_api.ai.schemas import AUTONOMY_TIERS, PROPOSAL_TYPES
from nexus_api.crm.models import utcnow

DEFAULT_TIERS: dict[str, str] = {
    "add_tag": "auto_approve",
    "add_task": "auto_approve",
    "update_lead_score": "auto_approve",
    "book_appointment": "require_approval",
    "update_contact_status": "require_approval",
    "run_workflow": "require_approval",
    "send_message": "require_approval_preview",
}


def default_tier(proposal_type: str) -> str:
    return DEFAULT_TIERS.get(proposal_type, "require_approval")


def _validate(proposal_type: str, tier: str | None = None) -> None:
    if proposal_type not in PROPOSAL_TYPES:
        raise InvalidArgumentError(f"unknown proposal type: {proposal_type}", details={"proposal_type": proposal_type})
    if tier is not None and tier not in AUTONOMY_TIERS:
        raise InvalidArgumentError(f"unknown autonomy tier: {tier}", details={"tier": tier})


class AutonomyResolver:
    def resolve(self, session: Session, tenant_id: str, proposal_type: str) -> str:
        _validate(proposal_type)
        stored = session.scalar(
            select(AIAutonomySetting.tier).where(
                and_(AIAutonomySetting.tenant_id == tenant_id, AIAutonomySetting.proposal_type == proposal_type)
            )
        )
        return stored or default_tier(proposal_type)

    def set_tier(self, session: Session, tenant_id: str, proposal_type: str, tier: str) -> AIAutonomySetting:
        _validate(proposal_type, tier)
        existing = self._get(session, tenant_id, proposal_type)
        if existing is None:
            existing = AIAutonomySetting(tenant_id=tenant_id, proposal_type=proposal_type, tier=tier)
            try:
                with session.begin_nested():
                    session.add(existing)
            except IntegrityError:
                existing = self._get(session, tenant_id, proposal_type)
                if existing is None:
                    raise
        existing.tier = tier
        existing.updated_at = utcnow()
        session.flush()
        return existing

    def effective_tiers(self, session: Session, tenant_id: str) -> dict[str, str]:
        rows = session.execute(
            select(AIAutonomySetting.proposal_type, AIAutonomySetting.tier).where(AIAutonomySetting.tenant_id == tenant_id)
        ).all()
        stored = {proposal_type: tier for proposal_type, tier in rows}
        return {proposal_type: stored.get(proposal_type, DEFAULT_TIERS[proposal_type]) for proposal_type in PROPOSAL_TYPES}

    def _get(self, session: Session, tenant_id: str, proposal_type: str) -> AIAutonomySetting | None:
        return session.scalar(
            select(AIAutonomySetting).where(
                and_(AIAutonomySetting.tenant_id == tenant_id, AIAutonomySetting.proposal_type == proposal_type)
            )
        )


autonomy_resolver = AutonomyResolver()
