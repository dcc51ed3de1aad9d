from __future__ import annotations

import uuid
from collections.abc import Sequence
from typing import Any

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from nexus_api.ai.errors import ConflictError, NotFoundError
from nexus_api.ai.models import AIProposal


class ActionStore:
    """Keyed table of proposals; status changes only go through conditional updates."""

    def create(self, session: Session, proposal: AIProposal) -> AIProposal:
        session.add(proposal)
        session.flush()
        return proposal

    def get(self, session: Session, tenant_id: str, proposal_id: uuid.UUID) -> AIProposal:
        proposal = session.scalar(
            select(AIProposal)
            .where(and_(AIProposal.id == proposal_id, AIProposal.tenant_id == tenant_id))
            .execution_options(populate_existing=True)
        )
        if proposal is None:
            raise NotFoundError("proposal not found", details={"proposal_id": str(proposal_id)})
        return proposal

    def list_for_tenant(
        self,
        session: Session,
        tenant_id: str,
        status: str | None = None,
        limit: int = 100,
    ) -> list[AIProposal]:
        stmt = select(AIProposal).where(AIProposal.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(AIProposal.status == status)
        stmt = stmt.order_by(AIProposal.created_at.desc(), AIProposal.id.desc()).limit(limit)
        return list(session.scalars(stmt).all())

    def find_pending_duplicate(
        self,
        session: Session,
        tenant_id: str,
        proposal_type: str,
        contact_id: uuid.UUID,
    ) -> AIProposal | None:
        return session.scalar(
            select(AIProposal)
            .where(
                and_(
                    AIProposal.tenant_id == tenant_id,
                    AIProposal.type == proposal_type,
                    AIProposal.contact_id == contact_id,
                    AIProposal.status == "pending",
                )
            )
            .order_by(AIProposal.created_at.desc())
            .limit(1)
        )

    def transition(
        self,
        session: Session,
        tenant_id: str,
        proposal_id: uuid.UUID,
        from_status: str,
        to_status: str,
        patch: dict[str, Any] | None = None,
    ) -> AIProposal:
        values = dict(patch or {})
        values["status"] = to_status
        result = session.execute(
            update(AIProposal)
            .where(
                and_(
                    AIProposal.id == proposal_id,
                    AIProposal.tenant_id == tenant_id,
                    AIProposal.status == from_status,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = self.get(session, tenant_id, proposal_id)
            raise ConflictError(
                "proposal already resolved",
                details={"proposal_id": str(proposal_id), "status": current.status, "expected": from_status},
            )
        return self.get(session, tenant_id, proposal_id)

    def bulk_transition(
        self,
        session: Session,
        tenant_id: str,
        proposal_ids: Sequence[uuid.UUID],
        from_status: str,
        to_status: str,
        patch: dict[str, Any] | None = None,
    ) -> list[AIProposal]:
        if not proposal_ids:
            return []
        values = dict(patch or {})
        values["status"] = to_status
        transitioned_ids = session.scalars(
            update(AIProposal)
            .where(
                and_(
                    AIProposal.id.in_(list(proposal_ids)),
                    AIProposal.tenant_id == tenant_id,
                    AIProposal.status == from_status,
                )
            )
            .values(**values)
            .returning(AIProposal.id)
            .execution_options(synchronize_session=False)
        ).all()
        if not transitioned_ids:
            return []
        rows = session.scalars(
            select(AIProposal)
            .where(AIProposal.id.in_(list(transitioned_ids)))
            .execution_options(populate_existing=True)
        ).all()
        by_id = {row.id: row for row in rows}
        return [by_id[item] for item in dict.fromkeys(proposal_ids) if item in by_id]


action_store = ActionStore()
