from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from nexus_api.ai.errors import ProposalError
from nexus_api.ai.models import AIUsageLog
from nexus_api.ai.oracle import Oracle
from nexus_api.ai.schemas import (
    PROPOSAL_TYPES,
    ProactiveInsightsResult,
    ProactiveProposalBatch,
    ProactiveProposalDraft,
    ProposalCreate,
)
from nexus_api.ai.service import ActorUser, ProposalService, proposal_service
from nexus_api.ai.stats import StatsTracker, stats_tracker
from nexus_api.core.config import get_settings
from nexus_api.crm.models import CRMAppointment, CRMContact, CRMMessage, utcnow
from nexus_api.metrics import observe_proactive_run

logger = logging.getLogger("nexus_api.ai.proactive")

PROACTIVE_USAGE_TYPE = "ai_proactive_insights"
_CONTACT_SAMPLE = 30
_MESSAGE_SAMPLE = 20
_APPOINTMENT_SAMPLE = 10


def _as_aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    return value if value.tzinfo is not None else value.replace(tzinfo=utcnow().tzinfo)


class CooldownGate:
    """Rate gate keyed by (tenant, usage type), backed by the usage log so restarts keep the window."""

    def last_run_at(self, session: Session, tenant_id: str, usage_type: str) -> datetime | None:
        last = session.scalar(
            select(AIUsageLog.created_at)
            .where(and_(AIUsageLog.tenant_id == tenant_id, AIUsageLog.usage_type == usage_type))
            .order_by(AIUsageLog.created_at.desc())
            .limit(1)
        )
        return _as_aware(last) if last is not None else None

    def should_skip(
        self,
        session: Session,
        tenant_id: str,
        usage_type: str,
        window: timedelta,
        now: datetime | None = None,
    ) -> bool:
        last = self.last_run_at(session, tenant_id, usage_type)
        if last is None:
            return False
        return (now or utcnow()) - last < window

    def record(
        self,
        session: Session,
        tenant_id: str,
        usage_type: str,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> AIUsageLog:
        entry = AIUsageLog(
            tenant_id=tenant_id,
            usage_type=usage_type,
            usage_metadata=metadata or {},
            created_at=now or utcnow(),
        )
        session.add(entry)
        session.flush()
        return entry


cooldown_gate = CooldownGate()


SYSTEM_PROMPT = """You are a proactive CRM advisor. Analyze the CRM data and generate up to {limit} actionable proposals.

Return a JSON object with:
- "proposals": array of objects, each with:
  - "type": one of {types}
  - "title": short action title (5-8 words max)
  - "description": 1-2 sentence explanation
  - "contactId": the contact's UUID if relevant
  - "contactName": the contact's name if relevant
  - "module": "pipeline"
  - "payload": object with action-specific data (e.g. {{"content": "...", "channel": "email"}} for send_message,
    {{"newScore": 85, "previousScore": 40}} for update_lead_score, {{"tag": "..."}} for add_tag, {{"title": "..."}} for add_task)

Focus on stale deals, high-score leads needing follow-up, at-risk contacts, and quick wins.{suppression}"""

_SUGGESTED_TYPES = ("send_message", "update_lead_score", "add_tag", "add_task", "update_contact_status")


class ProactiveInsightService:
    def __init__(
        self,
        oracle: Oracle,
        proposals: ProposalService = proposal_service,
        stats: StatsTracker = stats_tracker,
        gate: CooldownGate = cooldown_gate,
    ) -> None:
        self.oracle = oracle
        self.proposals = proposals
        self.stats = stats
        self.gate = gate

    def run(self, session: Session, actor_user: ActorUser, now: datetime | None = None) -> ProactiveInsightsResult:
        settings = get_settings()
        tenant_id = actor_user.tenant_id
        window = timedelta(minutes=settings.proactive_cooldown_minutes)
        if self.gate.should_skip(session, tenant_id, PROACTIVE_USAGE_TYPE, window, now=now):
            observe_proactive_run("skipped")
            logger.info("ai.proactive.skipped", extra={"tenant_id": tenant_id, "outcome": "cooldown"})
            return ProactiveInsightsResult(skipped=True)

        suppressed = self.stats.suppressed_types(session, tenant_id)
        system_prompt, prompt = self.build_prompt(session, tenant_id, suppressed, settings.proactive_max_proposals)
        try:
            batch = self.oracle.generate_structured(system_prompt, prompt, ProactiveProposalBatch)
        except ProposalError:
            observe_proactive_run("failed")
            raise

        created = []
        duplicates = 0
        for draft in self._eligible(batch.proposals, suppressed)[: settings.proactive_max_proposals]:
            dto = self._to_create(draft)
            if dto is None:
                continue
            try:
                result = self.proposals.create_proposal(session, actor_user, dto)
            except ProposalError as exc:
                session.rollback()
                logger.warning(
                    "ai.proactive.draft_rejected",
                    extra={"tenant_id": tenant_id, "proposal_type": draft.type, "error": exc.message[:500]},
                )
                continue
            if result.duplicate:
                duplicates += 1
                continue
            created.append(result.proposal)

        self.gate.record(
            session, tenant_id, PROACTIVE_USAGE_TYPE, {"created": len(created), "duplicates": duplicates}, now=now
        )
        session.commit()
        observe_proactive_run("completed")
        logger.info("ai.proactive.completed", extra={"tenant_id": tenant_id, "count": len(created)})
        return ProactiveInsightsResult(skipped=False, proposals=created, suppressed_types=suppressed)

    def build_prompt(self, session: Session, tenant_id: str, suppressed: list[str], limit: int) -> tuple[str, str]:
        contacts = session.scalars(
            select(CRMContact).where(CRMContact.tenant_id == tenant_id).order_by(CRMContact.created_at.desc())
        ).all()
        messages = session.scalars(
            select(CRMMessage)
            .join(CRMContact, CRMContact.id == CRMMessage.contact_id)
            .where(CRMContact.tenant_id == tenant_id)
            .order_by(CRMMessage.created_at.desc())
            .limit(_MESSAGE_SAMPLE)
        ).all()
        appointments = session.scalars(
            select(CRMAppointment)
            .join(CRMContact, CRMContact.id == CRMAppointment.contact_id)
            .where(CRMContact.tenant_id == tenant_id)
            .order_by(CRMAppointment.start_time.desc())
            .limit(_APPOINTMENT_SAMPLE)
        ).all()

        contact_lines = [
            f"- [{c.id}] {c.name} ({c.email}) | {c.status} | Score: {c.lead_score} | Last: {c.last_activity} "
            f"| Tags: {', '.join(c.tags or [])}"
            for c in contacts[:_CONTACT_SAMPLE]
        ]
        message_lines = [
            f'- {m.direction} via {m.channel} to {m.contact_id}: "{m.content[:80]}" ({m.created_at.isoformat()})'
            for m in messages
        ]
        appointment_lines = [
            f'- "{a.title}" with {a.contact_name} at {a.start_time.isoformat()} ({a.status})' for a in appointments
        ]

        suppression = ""
        if suppressed:
            suppression = (
                "\n\nIMPORTANT: Do NOT suggest actions of these types (the user frequently dismisses them): "
                + ", ".join(suppressed)
            )
        system_prompt = SYSTEM_PROMPT.format(
            limit=limit,
            types=", ".join(f'"{item}"' for item in _SUGGESTED_TYPES if item not in suppressed),
            suppression=suppression,
        )
        prompt = "\n".join(
            [
                "Analyze my CRM and suggest proactive actions.",
                "",
                f"Contacts ({len(contacts)}):",
                "\n".join(contact_lines) or "None",
                "",
                f"Recent Messages ({len(messages)}):",
                "\n".join(message_lines) or "None",
                "",
                f"Appointments ({len(appointments)}):",
                "\n".join(appointment_lines) or "None",
            ]
        )
        return system_prompt, prompt

    def _eligible(self, drafts: list[ProactiveProposalDraft], suppressed: list[str]) -> list[ProactiveProposalDraft]:
        eligible = []
        for draft in drafts:
            if draft.type not in PROPOSAL_TYPES or draft.type in suppressed:
                logger.info("ai.proactive.draft_dropped", extra={"proposal_type": draft.type, "outcome": "filtered"})
                continue
            eligible.append(draft)
        return eligible

    def _to_create(self, draft: ProactiveProposalDraft) -> ProposalCreate | None:
        contact_id: uuid.UUID | None = None
        if draft.contact_id:
            try:
                contact_id = uuid.UUID(draft.contact_id)
            except ValueError:
                logger.info("ai.proactive.draft_dropped", extra={"proposal_type": draft.type, "outcome": "bad_contact"})
                return None
        return ProposalCreate(
            type=draft.type,
            title=draft.title or "AI suggestion",
            description=draft.description,
            module=draft.module or "pipeline",
            contact_id=contact_id,
            contact_name=draft.contact_name,
            payload=draft.payload,
            source="proactive",
        )
