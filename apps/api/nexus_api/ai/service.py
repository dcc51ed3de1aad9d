from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError
from sqlalchemy.orm import Session

from nexus_api import audit, events
from nexus_api.ai.autonomy import AutonomyResolver, autonomy_resolver
from nexus_api.ai.dispatcher import ActionDispatcher, DispatchTarget, action_dispatcher
from nexus_api.ai.errors import ConflictError, DispatchFailureError, InvalidArgumentError
from nexus_api.ai.models import AIProposal
from nexus_api.ai.schemas import (
    BulkResolveResult,
    ProposalAction,
    ProposalCreate,
    ProposalCreateResult,
    ProposalRead,
    ProposalResolveResult,
    dump_payload,
    parse_proposal_action,
)
from nexus_api.ai.stats import StatsTracker, stats_tracker
from nexus_api.ai.store import ActionStore, action_store
from nexus_api.core.config import get_settings
from nexus_api.crm.models import utcnow
from nexus_api.metrics import observe_dispatch_failure, observe_proposal

logger = logging.getLogger("nexus_api.ai.proposals")


@dataclass
class ActorUser:
    user_id: str
    tenant_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def build_action(proposal_type: str, payload: dict[str, Any] | None) -> ProposalAction:
    try:
        return parse_proposal_action(proposal_type, payload)
    except ValidationError as exc:
        raise InvalidArgumentError(
            f"invalid payload for {proposal_type}",
            details=exc.errors(include_url=False, include_context=False, include_input=False),
        ) from exc


def _target(proposal: AIProposal) -> DispatchTarget:
    return DispatchTarget(tenant_id=proposal.tenant_id, contact_id=proposal.contact_id, contact_name=proposal.contact_name)


def _snapshot(proposal: AIProposal) -> dict[str, Any]:
    return ProposalRead.model_validate(proposal).model_dump(mode="json")


class ProposalService:
    def __init__(
        self,
        store: ActionStore = action_store,
        resolver: AutonomyResolver = autonomy_resolver,
        stats: StatsTracker = stats_tracker,
        dispatcher: ActionDispatcher = action_dispatcher,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.stats = stats
        self.dispatcher = dispatcher

    def list_proposals(
        self,
        session: Session,
        actor_user: ActorUser,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[ProposalRead]:
        resolved_limit = min(limit or get_settings().proposal_list_limit, get_settings().proposal_list_limit)
        rows = self.store.list_for_tenant(session, actor_user.tenant_id, status=status, limit=resolved_limit)
        return [ProposalRead.model_validate(row) for row in rows]

    def create_proposal(self, session: Session, actor_user: ActorUser, dto: ProposalCreate) -> ProposalCreateResult:
        action = build_action(dto.type, dto.payload)
        tier = self.resolver.resolve(session, actor_user.tenant_id, dto.type)
        auto_approve = tier == "auto_approve"

        if not auto_approve and dto.contact_id is not None:
            existing = self.store.find_pending_duplicate(session, actor_user.tenant_id, dto.type, dto.contact_id)
            if existing is not None:
                logger.info(
                    "ai.proposal.duplicate",
                    extra={
                        "proposal_id": str(existing.id),
                        "proposal_type": dto.type,
                        "tenant_id": actor_user.tenant_id,
                    },
                )
                return ProposalCreateResult(
                    proposal=ProposalRead.model_validate(existing),
                    tier=tier,
                    auto_approved=False,
                    duplicate=True,
                )

        now = utcnow()
        proposal = self.store.create(
            session,
            AIProposal(
                tenant_id=actor_user.tenant_id,
                type=dto.type,
                status="auto_approved" if auto_approve else "pending",
                title=dto.title,
                description=dto.description,
                module=dto.module,
                contact_id=dto.contact_id,
                contact_name=dto.contact_name,
                payload=dump_payload(action),
                source=dto.source,
                resolved_at=now if auto_approve else None,
                created_at=now,
            ),
        )
        if auto_approve:
            self.stats.increment(session, actor_user.tenant_id, dto.type, "auto_approved")

        after = _snapshot(proposal)
        audit.record(
            actor_user_id=actor_user.user_id,
            tenant_id=actor_user.tenant_id,
            entity_type="ai_proposal",
            entity_id=str(proposal.id),
            action="create",
            before=None,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "ai.proposal.created",
                tenant_id=actor_user.tenant_id,
                actor_user_id=actor_user.user_id,
                payload={"proposal_id": str(proposal.id), "type": dto.type, "status": proposal.status, "tier": tier},
            )
        )
        session.commit()
        observe_proposal(dto.type, proposal.status)
        logger.info(
            "ai.proposal.created",
            extra={
                "proposal_id": str(proposal.id),
                "proposal_type": dto.type,
                "tenant_id": actor_user.tenant_id,
                "status": proposal.status,
            },
        )

        dispatch_error: str | None = None
        if auto_approve:
            try:
                self.dispatcher.dispatch(session, _target(proposal), action)
                session.commit()
            except DispatchFailureError as exc:
                session.rollback()
                dispatch_error = exc.message
                self._record_dispatch_failure(actor_user, proposal, exc)

        return ProposalCreateResult(
            proposal=ProposalRead.model_validate(self.store.get(session, actor_user.tenant_id, proposal.id)),
            tier=tier,
            auto_approved=auto_approve,
            dispatch_error=dispatch_error,
        )

    def approve_proposal(
        self,
        session: Session,
        actor_user: ActorUser,
        proposal_id: uuid.UUID,
        payload_override: dict[str, Any] | None = None,
    ) -> ProposalResolveResult:
        existing = self.store.get(session, actor_user.tenant_id, proposal_id)
        if existing.status != "pending":
            raise ConflictError(
                "proposal already resolved",
                details={"proposal_id": str(proposal_id), "status": existing.status},
            )
        before = _snapshot(existing)
        action = build_action(existing.type, payload_override if payload_override is not None else existing.payload)

        patch: dict[str, Any] = {"resolved_at": utcnow()}
        if payload_override is not None:
            patch["payload"] = dump_payload(action)
        try:
            proposal = self.store.transition(session, actor_user.tenant_id, proposal_id, "pending", "approved", patch)
        except ConflictError:
            session.rollback()
            raise
        self.stats.increment(session, actor_user.tenant_id, proposal.type, "approved")
        self._record_resolution(actor_user, proposal, before, "approve")
        session.commit()
        observe_proposal(proposal.type, "approved")

        try:
            outcome = self.dispatcher.dispatch(session, _target(proposal), action)
            session.commit()
        except DispatchFailureError as exc:
            session.rollback()
            self._record_dispatch_failure(actor_user, proposal, exc)
            raise

        return ProposalResolveResult(
            proposal=ProposalRead.model_validate(self.store.get(session, actor_user.tenant_id, proposal_id)),
            applied=outcome.applied,
            detail=outcome.detail,
        )

    def dismiss_proposal(self, session: Session, actor_user: ActorUser, proposal_id: uuid.UUID) -> ProposalResolveResult:
        existing = self.store.get(session, actor_user.tenant_id, proposal_id)
        before = _snapshot(existing)
        try:
            proposal = self.store.transition(
                session,
                actor_user.tenant_id,
                proposal_id,
                "pending",
                "dismissed",
                {"resolved_at": utcnow()},
            )
        except ConflictError:
            session.rollback()
            raise
        self.stats.increment(session, actor_user.tenant_id, proposal.type, "dismissed")
        self._record_resolution(actor_user, proposal, before, "dismiss")
        session.commit()
        observe_proposal(proposal.type, "dismissed")
        return ProposalResolveResult(proposal=ProposalRead.model_validate(proposal))

    def bulk_approve(self, session: Session, actor_user: ActorUser, proposal_ids: list[uuid.UUID]) -> BulkResolveResult:
        transitioned = self.store.bulk_transition(
            session,
            actor_user.tenant_id,
            proposal_ids,
            "pending",
            "approved",
            {"resolved_at": utcnow()},
        )
        self._count_bulk(session, actor_user, transitioned, "approved", "bulk_approve")
        session.commit()

        pending_dispatch = [(row.id, row.type, dict(row.payload or {}), _target(row)) for row in transitioned]
        failed_ids: list[uuid.UUID] = []
        for proposal_id, proposal_type, payload, target in pending_dispatch:
            try:
                action = build_action(proposal_type, payload)
                self.dispatcher.dispatch(session, target, action)
                session.commit()
            except (DispatchFailureError, InvalidArgumentError) as exc:
                session.rollback()
                failed_ids.append(proposal_id)
                observe_dispatch_failure(proposal_type)
                logger.exception(
                    "ai.proposal.bulk_dispatch_failed",
                    extra={
                        "proposal_id": str(proposal_id),
                        "proposal_type": proposal_type,
                        "tenant_id": actor_user.tenant_id,
                        "error": str(exc)[:500],
                    },
                )

        logger.info(
            "ai.proposal.bulk_approved",
            extra={"tenant_id": actor_user.tenant_id, "count": len(transitioned), "outcome": f"{len(failed_ids)} failed"},
        )
        return BulkResolveResult(count=len(transitioned), failed_ids=failed_ids)

    def bulk_dismiss(self, session: Session, actor_user: ActorUser, proposal_ids: list[uuid.UUID]) -> BulkResolveResult:
        transitioned = self.store.bulk_transition(
            session,
            actor_user.tenant_id,
            proposal_ids,
            "pending",
            "dismissed",
            {"resolved_at": utcnow()},
        )
        self._count_bulk(session, actor_user, transitioned, "dismissed", "bulk_dismiss")
        session.commit()
        logger.info("ai.proposal.bulk_dismissed", extra={"tenant_id": actor_user.tenant_id, "count": len(transitioned)})
        return BulkResolveResult(count=len(transitioned))

    def undo_proposal(self, session: Session, actor_user: ActorUser, proposal_id: uuid.UUID) -> ProposalResolveResult:
        existing = self.store.get(session, actor_user.tenant_id, proposal_id)
        if existing.status != "auto_approved":
            raise ConflictError(
                "only auto-approved proposals can be undone",
                details={"proposal_id": str(proposal_id), "status": existing.status},
            )
        before = _snapshot(existing)
        try:
            action: ProposalAction | None = build_action(existing.type, existing.payload)
        except InvalidArgumentError:
            action = None

        try:
            proposal = self.store.transition(
                session,
                actor_user.tenant_id,
                proposal_id,
                "auto_approved",
                "dismissed",
                {"resolved_at": utcnow()},
            )
            outcome = None
            if action is not None:
                outcome = self.dispatcher.reverse(session, _target(proposal), action)
        except (ConflictError, DispatchFailureError):
            session.rollback()
            raise

        after = _snapshot(proposal)
        audit.record(
            actor_user_id=actor_user.user_id,
            tenant_id=actor_user.tenant_id,
            entity_type="ai_proposal",
            entity_id=str(proposal.id),
            action="undo",
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "ai.proposal.undone",
                tenant_id=actor_user.tenant_id,
                actor_user_id=actor_user.user_id,
                payload={
                    "proposal_id": str(proposal.id),
                    "type": proposal.type,
                    "reversed": bool(outcome and outcome.applied),
                },
            )
        )
        session.commit()
        observe_proposal(proposal.type, "undone")
        logger.info(
            "ai.proposal.undone",
            extra={"proposal_id": str(proposal.id), "proposal_type": proposal.type, "tenant_id": actor_user.tenant_id},
        )
        return ProposalResolveResult(
            proposal=ProposalRead.model_validate(proposal),
            applied=bool(outcome and outcome.applied),
            detail=outcome.detail if outcome is not None else "payload not reversible",
        )

    def _count_bulk(
        self,
        session: Session,
        actor_user: ActorUser,
        transitioned: list[AIProposal],
        outcome: str,
        audit_action: str,
    ) -> None:
        per_type = Counter(row.type for row in transitioned)
        for proposal_type, amount in per_type.items():
            self.stats.increment(session, actor_user.tenant_id, proposal_type, outcome, amount)
            observe_proposal(proposal_type, outcome, amount)
        for row in transitioned:
            self._record_resolution(actor_user, row, None, audit_action)

    def _record_resolution(
        self,
        actor_user: ActorUser,
        proposal: AIProposal,
        before: dict[str, Any] | None,
        audit_action: str,
    ) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            tenant_id=actor_user.tenant_id,
            entity_type="ai_proposal",
            entity_id=str(proposal.id),
            action=audit_action,
            before=before,
            after=_snapshot(proposal),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "ai.proposal.resolved",
                tenant_id=actor_user.tenant_id,
                actor_user_id=actor_user.user_id,
                payload={"proposal_id": str(proposal.id), "type": proposal.type, "status": proposal.status},
            )
        )
        logger.info(
            "ai.proposal.resolved",
            extra={
                "proposal_id": str(proposal.id),
                "proposal_type": proposal.type,
                "tenant_id": actor_user.tenant_id,
                "status": proposal.status,
            },
        )

    def _record_dispatch_failure(self, actor_user: ActorUser, proposal: AIProposal, exc: DispatchFailureError) -> None:
        observe_dispatch_failure(proposal.type)
        audit.record(
            actor_user_id=actor_user.user_id,
            tenant_id=actor_user.tenant_id,
            entity_type="ai_proposal",
            entity_id=str(proposal.id),
            action="dispatch_failed",
            before=None,
            after={"status": proposal.status, "error": exc.message},
            correlation_id=actor_user.correlation_id,
        )
        logger.error(
            "ai.proposal.dispatch_failed",
            extra={
                "proposal_id": str(proposal.id),
                "proposal_type": proposal.type,
                "tenant_id": actor_user.tenant_id,
                "status": proposal.status,
                "error": exc.message[:500],
            },
        )


proposal_service = ProposalService()
