from __future__ import annotations

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nexus_api.ai.models import AIProposalStat
from nexus_api.core.config import get_settings
from nexus_api.crm.models import utcnow

_OUTCOME_COLUMNS = {
    "approved": "approved_count",
    "dismissed": "dismissed_count",
    "auto_approved": "auto_approved_count",
}


class StatsTracker:
    """Per-(tenant, type) resolution counters. Counters only ever move up."""

    def increment(self, session: Session, tenant_id: str, proposal_type: str, outcome: str, amount: int = 1) -> None:
        column_name = _OUTCOME_COLUMNS[outcome]
        if amount <= 0:
            return
        if self._bump(session, tenant_id, proposal_type, column_name, amount):
            return
        try:
            with session.begin_nested():
                session.add(
                    AIProposalStat(
                        tenant_id=tenant_id,
                        proposal_type=proposal_type,
                        **{column_name: amount},
                    )
                )
        except IntegrityError:
            # Lost the insert race; the row exists now.
            self._bump(session, tenant_id, proposal_type, column_name, amount)

    def list_for_tenant(self, session: Session, tenant_id: str) -> list[AIProposalStat]:
        return list(
            session.scalars(
                select(AIProposalStat)
                .where(AIProposalStat.tenant_id == tenant_id)
                .order_by(AIProposalStat.proposal_type.asc())
                .execution_options(populate_existing=True)
            ).all()
        )

    def get(self, session: Session, tenant_id: str, proposal_type: str) -> AIProposalStat | None:
        return session.scalar(
            select(AIProposalStat)
            .where(and_(AIProposalStat.tenant_id == tenant_id, AIProposalStat.proposal_type == proposal_type))
            .execution_options(populate_existing=True)
        )

    def suppressed_types(self, session: Session, tenant_id: str) -> list[str]:
        settings = get_settings()
        return [
            stat.proposal_type
            for stat in self.list_for_tenant(session, tenant_id)
            if is_suppressed(
                stat.approved_count,
                stat.dismissed_count,
                min_samples=settings.suppression_min_samples,
                dismiss_ratio=settings.suppression_dismiss_ratio,
            )
        ]

    def _bump(self, session: Session, tenant_id: str, proposal_type: str, column_name: str, amount: int) -> bool:
        column = getattr(AIProposalStat, column_name)
        result = session.execute(
            update(AIProposalStat)
            .where(and_(AIProposalStat.tenant_id == tenant_id, AIProposalStat.proposal_type == proposal_type))
            .values({column_name: column + amount, "last_updated": utcnow()})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0


def is_suppressed(approved: int, dismissed: int, *, min_samples: int = 5, dismiss_ratio: float = 0.7) -> bool:
    # auto-approved counts are excluded: they never went through a human decision
    total = approved + dismissed
    if total < min_samples:
        return False
    return dismissed / total > dismiss_ratio


stats_tracker = StatsTracker()
