from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from opentelemetry import trace
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from nexus_api.ai.errors import DispatchFailureError
from nexus_api.ai.schemas import (
    AddTagAction,
    AddTaskAction,
    BookAppointmentAction,
    ProposalAction,
    RunWorkflowAction,
    SendMessageAction,
    UpdateContactStatusAction,
    UpdateLeadScoreAction,
)
from nexus_api.crm.models import (
    CRMAppointment,
    CRMContact,
    CRMMessage,
    CRMTask,
    CRMWorkflowLog,
    utcnow,
)
from nexus_api.otel import ai_span

logger = logging.getLogger("nexus_api.ai.dispatcher")
tracer = trace.get_tracer("nexus_api.ai.dispatcher")

REVERSIBLE_TYPES = frozenset({"add_tag", "update_lead_score"})


@dataclass
class DispatchOutcome:
    applied: bool
    detail: str = ""


@dataclass
class DispatchTarget:
    tenant_id: str
    contact_id: uuid.UUID | None
    contact_name: str | None


class ActionDispatcher:
    """Applies one approved action to CRM state. Each branch performs at most one write."""

    def dispatch(self, session: Session, target: DispatchTarget, action: ProposalAction) -> DispatchOutcome:
        with ai_span(tracer, "ai.dispatch", proposal_type=action.type, tenant_id=target.tenant_id) as span:
            try:
                outcome = self._apply(session, target, action)
                session.flush()
            except DispatchFailureError:
                raise
            except Exception as exc:
                span.record_exception(exc)
                raise DispatchFailureError(action.type, str(exc)) from exc
            span.set_attribute("applied", outcome.applied)
            if not outcome.applied:
                logger.info(
                    "ai.dispatch.skipped",
                    extra={"proposal_type": action.type, "tenant_id": target.tenant_id, "outcome": outcome.detail},
                )
            return outcome

    def reverse(self, session: Session, target: DispatchTarget, action: ProposalAction) -> DispatchOutcome:
        if action.type not in REVERSIBLE_TYPES:
            return DispatchOutcome(applied=False, detail="no compensating action")
        with ai_span(tracer, "ai.dispatch.reverse", proposal_type=action.type, tenant_id=target.tenant_id) as span:
            try:
                outcome = self._reverse(session, target, action)
                session.flush()
            except Exception as exc:
                span.record_exception(exc)
                raise DispatchFailureError(action.type, str(exc)) from exc
            span.set_attribute("applied", outcome.applied)
            return outcome

    def _apply(self, session: Session, target: DispatchTarget, action: ProposalAction) -> DispatchOutcome:
        if isinstance(action, SendMessageAction):
            return self._apply_send_message(session, target, action)
        if isinstance(action, UpdateLeadScoreAction):
            return self._apply_update_lead_score(session, target, action)
        if isinstance(action, AddTagAction):
            return self._apply_add_tag(session, target, action)
        if isinstance(action, AddTaskAction):
            return self._apply_add_task(session, target, action)
        if isinstance(action, UpdateContactStatusAction):
            return self._apply_update_contact_status(session, target, action)
        if isinstance(action, BookAppointmentAction):
            return self._apply_book_appointment(session, target, action)
        return self._apply_run_workflow(session, target, action)

    def _apply_send_message(self, session: Session, target: DispatchTarget, action: SendMessageAction) -> DispatchOutcome:
        contact = self._load_contact(session, target)
        if contact is None:
            return DispatchOutcome(applied=False, detail="contact not found")
        channel = action.payload.channel
        address = contact.email if channel == "email" else contact.phone
        if not address:
            return DispatchOutcome(applied=False, detail=f"contact has no address for channel {channel}")
        session.add(
            CRMMessage(
                contact_id=contact.id,
                channel=channel,
                direction="outbound",
                subject=action.payload.subject,
                content=action.payload.content,
                status="queued",
            )
        )
        return DispatchOutcome(applied=True, detail=f"{channel} message queued")

    def _apply_update_lead_score(
        self, session: Session, target: DispatchTarget, action: UpdateLeadScoreAction
    ) -> DispatchOutcome:
        contact = self._load_contact(session, target)
        if contact is None:
            return DispatchOutcome(applied=False, detail="contact not found")
        contact.lead_score = action.payload.new_score
        return DispatchOutcome(applied=True, detail=f"lead score set to {action.payload.new_score}")

    def _apply_add_tag(self, session: Session, target: DispatchTarget, action: AddTagAction) -> DispatchOutcome:
        contact = self._load_contact(session, target)
        if contact is None:
            return DispatchOutcome(applied=False, detail="contact not found")
        tags = list(contact.tags or [])
        if action.payload.tag in tags:
            return DispatchOutcome(applied=False, detail="tag already present")
        contact.tags = [*tags, action.payload.tag]
        return DispatchOutcome(applied=True, detail=f"tag {action.payload.tag} added")

    def _apply_add_task(self, session: Session, target: DispatchTarget, action: AddTaskAction) -> DispatchOutcome:
        if target.contact_id is None:
            return DispatchOutcome(applied=False, detail="no contact reference")
        contact = self._load_contact(session, target)
        if contact is None:
            return DispatchOutcome(applied=False, detail="contact not found")
        session.add(
            CRMTask(
                contact_id=contact.id,
                title=action.payload.title,
                due_date=action.payload.due_date or utcnow(),
            )
        )
        return DispatchOutcome(applied=True, detail="task created")

    def _apply_update_contact_status(
        self, session: Session, target: DispatchTarget, action: UpdateContactStatusAction
    ) -> DispatchOutcome:
        contact = self._load_contact(session, target)
        if contact is None:
            return DispatchOutcome(applied=False, detail="contact not found")
        contact.status = action.payload.status
        return DispatchOutcome(applied=True, detail=f"status set to {action.payload.status}")

    def _apply_book_appointment(
        self, session: Session, target: DispatchTarget, action: BookAppointmentAction
    ) -> DispatchOutcome:
        payload = action.payload
        if payload.start_time is None or payload.end_time is None:
            return DispatchOutcome(applied=False, detail="start and end time required")
        contact_name = target.contact_name or ""
        if target.contact_id is not None:
            contact = self._load_contact(session, target)
            if contact is None:
                return DispatchOutcome(applied=False, detail="contact not found")
            contact_name = target.contact_name or contact.name
        session.add(
            CRMAppointment(
                calendar_id=payload.calendar_id,
                contact_id=target.contact_id,
                contact_name=contact_name,
                title=payload.title,
                start_time=payload.start_time,
                end_time=payload.end_time,
                status="booked",
                notes=payload.notes,
            )
        )
        return DispatchOutcome(applied=True, detail="appointment booked")

    def _apply_run_workflow(self, session: Session, target: DispatchTarget, action: RunWorkflowAction) -> DispatchOutcome:
        session.add(
            CRMWorkflowLog(
                contact_name=target.contact_name or "Unknown",
                workflow_name=action.payload.workflow_name,
                current_step="Initial Step",
                status="success",
            )
        )
        return DispatchOutcome(applied=True, detail=f"workflow {action.payload.workflow_name} started")

    def _reverse(self, session: Session, target: DispatchTarget, action: ProposalAction) -> DispatchOutcome:
        contact = self._load_contact(session, target)
        if contact is None:
            return DispatchOutcome(applied=False, detail="contact not found")
        if isinstance(action, AddTagAction):
            tags = list(contact.tags or [])
            if action.payload.tag not in tags:
                return DispatchOutcome(applied=False, detail="tag not present")
            contact.tags = [tag for tag in tags if tag != action.payload.tag]
            return DispatchOutcome(applied=True, detail=f"tag {action.payload.tag} removed")
        if isinstance(action, UpdateLeadScoreAction) and action.payload.previous_score is not None:
            contact.lead_score = action.payload.previous_score
            return DispatchOutcome(applied=True, detail=f"lead score restored to {action.payload.previous_score}")
        return DispatchOutcome(applied=False, detail="no previous score recorded")

    def _load_contact(self, session: Session, target: DispatchTarget) -> CRMContact | None:
        if target.contact_id is None:
            return None
        return session.scalar(
            select(CRMContact).where(and_(CRMContact.id == target.contact_id, CRMContact.tenant_id == target.tenant_id))
        )


action_dispatcher = ActionDispatcher()
