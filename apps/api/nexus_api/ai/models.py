from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, JSON, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from nexus_api.core.database import Base
from nexus_api.crm.models import utcnow


class AIProposal(Base):
    __tablename__ = "ai_proposal"
    __table_args__ = (
        CheckConstraint(
            "(status = 'pending' AND resolved_at IS NULL) OR (status <> 'pending' AND resolved_at IS NOT NULL)",
            name="ck_ai_proposal_resolved_at_matches_status",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", server_default="pending")
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    module: Mapped[str] = mapped_column(String(64), nullable=False, default="pipeline", server_default="pipeline")
    contact_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    contact_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="manual", server_default="manual")
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AIAutonomySetting(Base):
    __tablename__ = "ai_autonomy_setting"
    __table_args__ = (UniqueConstraint("tenant_id", "proposal_type", name="uq_ai_autonomy_setting_tenant_type"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    proposal_type: Mapped[str] = mapped_column(String(64), nullable=False)
    tier: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class AIProposalStat(Base):
    __tablename__ = "ai_proposal_stat"
    __table_args__ = (UniqueConstraint("tenant_id", "proposal_type", name="uq_ai_proposal_stat_tenant_type"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    proposal_type: Mapped[str] = mapped_column(String(64), nullable=False)
    approved_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    dismissed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    auto_approved_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AIUsageLog(Base):
    __tablename__ = "ai_usage_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    usage_type: Mapped[str] = mapped_column(String(64), nullable=False)
    usage_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AISearchResult(Base):
    __tablename__ = "ai_search_result"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    search_type: Mapped[str] = mapped_column(String(64), nullable=False)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    result: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


Index("ix_ai_proposal_tenant_status_created", AIProposal.tenant_id, AIProposal.status, AIProposal.created_at)
Index("ix_ai_proposal_pending_dedup", AIProposal.tenant_id, AIProposal.type, AIProposal.contact_id, AIProposal.status)
Index("ix_ai_usage_log_tenant_type_created", AIUsageLog.tenant_id, AIUsageLog.usage_type, AIUsageLog.created_at)
Index(
    "ix_ai_search_result_tenant_query",
    AISearchResult.tenant_id,
    AISearchResult.search_type,
    AISearchResult.query,
    AISearchResult.created_at,
)
