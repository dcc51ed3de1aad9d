from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from nexus_api import audit, events
from nexus_api.ai.dispatcher import ActionDispatcher, DispatchOutcome, DispatchTarget
from nexus_api.ai.errors import ConflictError, InvalidArgumentError, NotFoundError
from nexus_api.ai.models import AIProposal
from nexus_api.ai.schemas import ProposalAction, ProposalCreate
from nexus_api.ai.service import ActorUser, ProposalService
from nexus_api.ai.stats import StatsTracker
from nexus_api.ai.store import ActionStore
from nexus_api.core.config import get_settings
from nexus_api.core.database import Base
from nexus_api.crm.models import CRMContact, CRMMessage, CRMTask, utcnow


TENANT = "tenant-a"


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id="user-1", tenant_id=TENANT, permissions=set(), correlation_id="corr-lifecycle")


@pytest.fixture()
def contact(db_session: Session) -> CRMContact:
    row = CRMContact(tenant_id=TENANT, name="Carla Contact", email="carla@example.com", phone="", tags=["Existing"])
    db_session.add(row)
    db_session.commit()
    return row


class FailingDispatcher(ActionDispatcher):
    def __init__(self, failing_types: set[str]) -> None:
        self.failing_types = failing_types

    def _apply(self, session: Session, target: DispatchTarget, action: ProposalAction) -> DispatchOutcome:
        if action.type in self.failing_types:
            raise RuntimeError("crm write refused")
        return super()._apply(session, target, action)


def _stat_total(service: ProposalService, session: Session, proposal_type: str) -> int:
    stat = service.stats.get(session, TENANT, proposal_type)
    if stat is None:
        return 0
    return stat.approved_count + stat.dismissed_count + stat.auto_approved_count


def test_auto_approved_add_tag_applies_tag_and_counts(db_session: Session, actor: ActorUser, contact: CRMContact) -> None:
    service = ProposalService()
    result = service.create_proposal(
        db_session,
        actor,
        ProposalCreate(type="add_tag", title="Tag as hot", contact_id=contact.id, payload={"tag": "Hot"}),
    )

    assert result.tier == "auto_approve"
    assert result.auto_approved is True
    assert result.proposal.status == "auto_approved"
    assert result.proposal.resolved_at is not None
    assert result.dispatch_error is None

    db_session.refresh(contact)
    assert "Hot" in contact.tags
    stat = service.stats.get(db_session, TENANT, "add_tag")
    assert stat is not None
    assert stat.auto_approved_count == 1


def test_send_message_requires_approval_then_conflicts_on_second_approve(
    db_session: Session, actor: ActorUser, contact: CRMContact
) -> None:
    service = ProposalService()
    created = service.create_proposal(
        db_session,
        actor,
        ProposalCreate(
            type="send_message",
            title="Follow up",
            contact_id=contact.id,
            payload={"channel": "email", "content": "Checking in"},
        ),
    )
    assert created.tier == "require_approval_preview"
    assert created.proposal.status == "pending"
    assert created.proposal.resolved_at is None

    approved = service.approve_proposal(db_session, actor, created.proposal.id)
    assert approved.proposal.status == "approved"
    assert approved.applied is True

    messages = db_session.scalars(select(CRMMessage).where(CRMMessage.contact_id == contact.id)).all()
    assert len(messages) == 1
    assert messages[0].status == "queued"
    assert messages[0].direction == "outbound"
    assert service.stats.get(db_session, TENANT, "send_message").approved_count == 1

    with pytest.raises(ConflictError):
        service.approve_proposal(db_session, actor, created.proposal.id)
    with pytest.raises(ConflictError):
        service.dismiss_proposal(db_session, actor, created.proposal.id)

    assert db_session.scalar(select(func.count()).select_from(CRMMessage)) == 1
    assert service.stats.get(db_session, TENANT, "send_message").approved_count == 1


def test_losing_transition_returns_conflict_and_mutates_nothing(
    db_session: Session, actor: ActorUser, contact: CRMContact
) -> None:
    service = ProposalService()
    created = service.create_proposal(
        db_session,
        actor,
        ProposalCreate(type="run_workflow", title="Nurture", contact_id=contact.id, payload={"workflowName": "Nurture"}),
    )
    store = ActionStore()
    store.transition(db_session, TENANT, created.proposal.id, "pending", "dismissed", {"resolved_at": utcnow()})
    db_session.commit()

    with pytest.raises(ConflictError):
        store.transition(db_session, TENANT, created.proposal.id, "pending", "approved", {"resolved_at": utcnow()})
    db_session.rollback()
    assert store.get(db_session, TENANT, created.proposal.id).status == "dismissed"


def test_unknown_or_foreign_proposal_is_not_found(db_session: Session, actor: ActorUser, contact: CRMContact) -> None:
    service = ProposalService()
    with pytest.raises(NotFoundError):
        service.approve_proposal(db_session, actor, uuid.uuid4())

    created = service.create_proposal(
        db_session,
        actor,
        ProposalCreate(type="book_appointment", title="Demo", contact_id=contact.id, payload={}),
    )
    other_tenant = ActorUser(user_id="user-2", tenant_id="tenant-b")
    with pytest.raises(NotFoundError):
        service.dismiss_proposal(db_session, other_tenant, created.proposal.id)


def test_pending_duplicate_is_returned_instead_of_inserted(
    db_session: Session, actor: ActorUser, contact: CRMContact
) -> None:
    service = ProposalService()
    dto = ProposalCreate(
        type="update_contact_status",
        title="Mark interested",
        contact_id=contact.id,
        payload={"status": "Interested"},
    )
    first = service.create_proposal(db_session, actor, dto)
    second = service.create_proposal(db_session, actor, dto)

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.proposal.id == first.proposal.id
    count = db_session.scalar(select(func.count()).select_from(AIProposal).where(AIProposal.type == "update_contact_status"))
    assert count == 1


def test_stat_total_grows_by_one_per_resolution_and_not_on_undo(
    db_session: Session, actor: ActorUser, contact: CRMContact
) -> None:
    service = ProposalService()
    assert _stat_total(service, db_session, "add_tag") == 0

    auto = service.create_proposal(
        db_session,
        actor,
        ProposalCreate(type="add_tag", title="VIP", contact_id=contact.id, payload={"tag": "VIP"}),
    )
    assert _stat_total(service, db_session, "add_tag") == 1

    service.undo_proposal(db_session, actor, auto.proposal.id)
    assert _stat_total(service, db_session, "add_tag") == 1

    created = [
        service.create_proposal(
            db_session,
            actor,
            ProposalCreate(type="run_workflow", title=f"Flow {index}", payload={"workflowName": f"Flow {index}"}),
        )
        for index in range(3)
    ]
    service.approve_proposal(db_session, actor, created[0].proposal.id)
    assert _stat_total(service, db_session, "run_workflow") == 1
    service.dismiss_proposal(db_session, actor, created[1].proposal.id)
    assert _stat_total(service, db_session, "run_workflow") == 2
    service.bulk_dismiss(db_session, actor, [created[1].proposal.id, created[2].proposal.id])
    assert _stat_total(service, db_session, "run_workflow") == 3


def test_undo_add_tag_removes_tag_and_marks_dismissed(db_session: Session, actor: ActorUser, contact: CRMContact) -> None:
    service = ProposalService()
    created = service.create_proposal(
        db_session,
        actor,
        ProposalCreate(type="add_tag", title="Hot lead", contact_id=contact.id, payload={"tag": "Hot"}),
    )

    undone = service.undo_proposal(db_session, actor, created.proposal.id)
    assert undone.proposal.status == "dismissed"
    assert undone.proposal.resolved_at is not None
    assert undone.applied is True

    db_session.refresh(contact)
    assert contact.tags == ["Existing"]
    assert any(item["event_type"] == "ai.proposal.undone" for item in events.published_events)


def test_undo_add_task_only_marks_dismissed(db_session: Session, actor: ActorUser, contact: CRMContact) -> None:
    service = ProposalService()
    created = service.create_proposal(
        db_session,
        actor,
        ProposalCreate(type="add_task", title="Call back", contact_id=contact.id, payload={"title": "Call Carla"}),
    )
    assert db_session.scalar(select(func.count()).select_from(CRMTask)) == 1

    undone = service.undo_proposal(db_session, actor, created.proposal.id)
    assert undone.proposal.status == "dismissed"
    assert undone.applied is False
    assert db_session.scalar(select(func.count()).select_from(CRMTask)) == 1


def test_undo_lead_score_restores_previous_score(db_session: Session, actor: ActorUser, contact: CRMContact) -> None:
    service = ProposalService()
    created = service.create_proposal(
        db_session,
        actor,
        ProposalCreate(
            type="update_lead_score",
            title="Bump score",
            contact_id=contact.id,
            payload={"newScore": 85, "previousScore": 40},
        ),
    )
    db_session.refresh(contact)
    assert contact.lead_score == 85

    service.undo_proposal(db_session, actor, created.proposal.id)
    db_session.refresh(contact)
    assert contact.lead_score == 40


def test_undo_requires_auto_approved(db_session: Session, actor: ActorUser, contact: CRMContact) -> None:
    service = ProposalService()
    created = service.create_proposal(
        db_session,
        actor,
        ProposalCreate(type="send_message", title="Hello", contact_id=contact.id, payload={"content": "Hi"}),
    )
    with pytest.raises(ConflictError):
        service.undo_proposal(db_session, actor, created.proposal.id)


def test_approve_with_override_replaces_payload(db_session: Session, actor: ActorUser, contact: CRMContact) -> None:
    service = ProposalService()
    created = service.create_proposal(
        db_session,
        actor,
        ProposalCreate(type="send_message", title="Hello", contact_id=contact.id, payload={"content": "Draft"}),
    )
    approved = service.approve_proposal(db_session, actor, created.proposal.id, {"channel": "email", "content": "Final"})

    assert approved.proposal.payload["content"] == "Final"
    message = db_session.scalar(select(CRMMessage).where(CRMMessage.contact_id == contact.id))
    assert message is not None
    assert message.content == "Final"


def test_invalid_payload_is_rejected_before_insert(db_session: Session, actor: ActorUser, contact: CRMContact) -> None:
    service = ProposalService()
    with pytest.raises(InvalidArgumentError):
        service.create_proposal(
            db_session,
            actor,
            ProposalCreate(type="update_contact_status", title="Bad", contact_id=contact.id, payload={"status": "Gone"}),
        )
    assert db_session.scalar(select(func.count()).select_from(AIProposal)) == 0


def test_auto_approve_dispatch_failure_keeps_status_and_reports_error(
    db_session: Session, actor: ActorUser, contact: CRMContact
) -> None:
    service = ProposalService(dispatcher=FailingDispatcher({"add_tag"}))
    result = service.create_proposal(
        db_session,
        actor,
        ProposalCreate(type="add_tag", title="Tag", contact_id=contact.id, payload={"tag": "Hot"}),
    )

    assert result.proposal.status == "auto_approved"
    assert result.dispatch_error is not None
    assert "crm write refused" in result.dispatch_error
    db_session.refresh(contact)
    assert "Hot" not in contact.tags
    assert service.stats.get(db_session, TENANT, "add_tag").auto_approved_count == 1
    assert any(entry["action"] == "dispatch_failed" for entry in audit.audit_entries)


def test_bulk_approve_isolates_dispatch_failures(db_session: Session, actor: ActorUser, contact: CRMContact) -> None:
    service = ProposalService(dispatcher=FailingDispatcher({"book_appointment"}))
    workflow = service.create_proposal(
        db_session,
        actor,
        ProposalCreate(type="run_workflow", title="Flow", payload={"workflowName": "Welcome"}),
    )
    appointment = service.create_proposal(
        db_session,
        actor,
        ProposalCreate(
            type="book_appointment",
            title="Demo",
            contact_id=contact.id,
            payload={"startTime": "2026-11-01T10:00:00Z", "endTime": "2026-11-01T10:30:00Z"},
        ),
    )
    status_change = service.create_proposal(
        db_session,
        actor,
        ProposalCreate(type="update_contact_status", title="Closed", contact_id=contact.id, payload={"status": "Closed"}),
    )
    ids = [workflow.proposal.id, appointment.proposal.id, status_change.proposal.id, uuid.uuid4()]

    result = service.bulk_approve(db_session, actor, ids)

    assert result.count == 3
    assert result.failed_ids == [appointment.proposal.id]
    store = ActionStore()
    assert store.get(db_session, TENANT, appointment.proposal.id).status == "approved"
    db_session.refresh(contact)
    assert contact.status == "Closed"

    again = service.bulk_approve(db_session, actor, ids)
    assert again.count == 0


def test_list_proposals_newest_first_with_status_filter(db_session: Session, actor: ActorUser, contact: CRMContact) -> None:
    service = ProposalService()
    for index in range(3):
        service.create_proposal(
            db_session,
            actor,
            ProposalCreate(type="run_workflow", title=f"Flow {index}", payload={"workflowName": f"Flow {index}"}),
        )
    service.create_proposal(
        db_session,
        actor,
        ProposalCreate(type="add_tag", title="Tag", contact_id=contact.id, payload={"tag": "Warm"}),
    )

    pending = service.list_proposals(db_session, actor, status="pending")
    assert [item.title for item in pending] == ["Flow 2", "Flow 1", "Flow 0"]
    everything = service.list_proposals(db_session, actor, limit=2)
    assert len(everything) == 2
    assert everything[0].title == "Tag"


def test_stats_tracker_row_is_unique_per_tenant_and_type(db_session: Session) -> None:
    tracker = StatsTracker()
    tracker.increment(db_session, TENANT, "add_task", "approved")
    tracker.increment(db_session, TENANT, "add_task", "dismissed")
    tracker.increment(db_session, TENANT, "add_task", "dismissed", 2)
    db_session.commit()

    rows = tracker.list_for_tenant(db_session, TENANT)
    assert len(rows) == 1
    assert (rows[0].approved_count, rows[0].dismissed_count, rows[0].auto_approved_count) == (1, 3, 0)
