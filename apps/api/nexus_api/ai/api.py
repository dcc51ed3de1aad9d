from __future__ import annotations

import math
import uuid
from dataclasses import asdict, dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from nexus_api.ai.autonomy import autonomy_resolver
from nexus_api.ai.batch import BatchJobRunner, batch_job_store, oracle_enricher
from nexus_api.ai.discovery import ApifyMapsProvider, DiscoveryService, OracleSearchProvider
from nexus_api.ai.errors import InvalidArgumentError, ProposalError, RateLimitedError
from nexus_api.ai.oracle import Oracle, get_oracle
from nexus_api.ai.proactive import ProactiveInsightService
from nexus_api.ai.schemas import (
    AutonomySettingsRead,
    AutonomySettingsUpdate,
    BatchEnrichAccepted,
    BatchEnrichRequest,
    BatchJobRead,
    BulkResolveRequest,
    BulkResolveResult,
    DiscoveryResult,
    LocalSeoRequest,
    ProactiveInsightsResult,
    ProposalApproveRequest,
    ProposalCreate,
    ProposalCreateResult,
    ProposalRead,
    ProposalResolveResult,
    ProposalStatRead,
    ProposalStatsResponse,
)
from nexus_api.ai.service import ActorUser, proposal_service
from nexus_api.ai.stats import stats_tracker
from nexus_api.audit import record as record_audit
from nexus_api.context import get_correlation_id
from nexus_api.core.auth import AuthUser, get_current_user as get_auth_user
from nexus_api.core.database import SessionLocal, get_db

proposals_router = APIRouter(prefix="/api/ai", tags=["ai.proposals"])
autonomy_router = APIRouter(prefix="/api/ai", tags=["ai.autonomy"])
insights_router = APIRouter(prefix="/api/ai", tags=["ai.insights"])
enrichment_router = APIRouter(prefix="/api/ai", tags=["ai.enrichment"])
discovery_router = APIRouter(prefix="/api/ai", tags=["ai.discovery"])

RATE_LIMIT_MESSAGE = "AI is cooling down. Please wait a moment and try again."


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__, headers=headers)


def domain_error_response(request: Request, exc: ProposalError) -> JSONResponse:
    if isinstance(exc, RateLimitedError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=RATE_LIMIT_MESSAGE,
            details={"retry_after_ms": exc.retry_after_ms, "reason": exc.message},
            headers={"Retry-After": str(max(1, math.ceil(exc.retry_after_ms / 1000)))},
        )
    return error_response(request, status_code=exc.status_code, code=exc.code, message=exc.message, details=exc.details)


def http_error_response(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(request, status_code=exc.status_code, code=code, message=str(exc.detail), details=exc.detail)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    tenant_id = request.headers.get("x-tenant-id") or getattr(getattr(request.state, "context", None), "tenant_id", None)
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Tenant-Id header is required")
    if tenant_id not in auth_user.tenant_ids:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Tenant not allowed")
    return ActorUser(
        user_id=auth_user.sub,
        tenant_id=tenant_id,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def get_ai_oracle() -> Oracle:
    return get_oracle()


def get_batch_runner(oracle: Oracle = Depends(get_ai_oracle)) -> BatchJobRunner:
    return BatchJobRunner(session_factory=SessionLocal, enrich=oracle_enricher(oracle))


def get_discovery_service(oracle: Oracle = Depends(get_ai_oracle)) -> DiscoveryService:
    return DiscoveryService(primary=ApifyMapsProvider(), secondary=OracleSearchProvider(oracle))


@proposals_router.get("/proposals", response_model=list[ProposalRead])
def list_proposals(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int | None = Query(default=None, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ProposalRead] | JSONResponse:
    try:
        require_permission(user, "ai.proposals.read")
        return proposal_service.list_proposals(db, user, status=status_filter, limit=limit)
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_proposal_list_failed")


@proposals_router.post("/proposals", response_model=ProposalCreateResult, status_code=status.HTTP_201_CREATED)
def create_proposal(
    request: Request,
    dto: ProposalCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProposalCreateResult | JSONResponse:
    try:
        require_permission(user, "ai.proposals.write")
        return proposal_service.create_proposal(db, user, dto)
    except ProposalError as exc:
        return domain_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_proposal_create_failed")


@proposals_router.post("/proposals/bulk-approve", response_model=BulkResolveResult)
def bulk_approve_proposals(
    request: Request,
    dto: BulkResolveRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkResolveResult | JSONResponse:
    try:
        require_permission(user, "ai.proposals.resolve")
        return proposal_service.bulk_approve(db, user, dto.ids)
    except ProposalError as exc:
        return domain_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_proposal_bulk_approve_failed")


@proposals_router.post("/proposals/bulk-dismiss", response_model=BulkResolveResult)
def bulk_dismiss_proposals(
    request: Request,
    dto: BulkResolveRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkResolveResult | JSONResponse:
    try:
        require_permission(user, "ai.proposals.resolve")
        return proposal_service.bulk_dismiss(db, user, dto.ids)
    except ProposalError as exc:
        return domain_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_proposal_bulk_dismiss_failed")


@proposals_router.post("/proposals/{proposal_id}/approve", response_model=ProposalResolveResult)
def approve_proposal(
    request: Request,
    proposal_id: uuid.UUID,
    dto: ProposalApproveRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProposalResolveResult | JSONResponse:
    try:
        require_permission(user, "ai.proposals.resolve")
        override = dto.payload if dto is not None else None
        return proposal_service.approve_proposal(db, user, proposal_id, override)
    except ProposalError as exc:
        return domain_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_proposal_approve_failed")


@proposals_router.post("/proposals/{proposal_id}/dismiss", response_model=ProposalResolveResult)
def dismiss_proposal(
    request: Request,
    proposal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProposalResolveResult | JSONResponse:
    try:
        require_permission(user, "ai.proposals.resolve")
        return proposal_service.dismiss_proposal(db, user, proposal_id)
    except ProposalError as exc:
        return domain_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_proposal_dismiss_failed")


@proposals_router.post("/proposals/{proposal_id}/undo", response_model=ProposalResolveResult)
def undo_proposal(
    request: Request,
    proposal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProposalResolveResult | JSONResponse:
    try:
        require_permission(user, "ai.proposals.resolve")
        return proposal_service.undo_proposal(db, user, proposal_id)
    except ProposalError as exc:
        return domain_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_proposal_undo_failed")


@autonomy_router.get("/autonomy-settings", response_model=AutonomySettingsRead)
def get_autonomy_settings(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutonomySettingsRead | JSONResponse:
    try:
        require_permission(user, "ai.proposals.read")
        return AutonomySettingsRead(settings=autonomy_resolver.effective_tiers(db, user.tenant_id))
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_autonomy_read_failed")


@autonomy_router.put("/autonomy-settings", response_model=AutonomySettingsRead)
def update_autonomy_settings(
    request: Request,
    dto: AutonomySettingsUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutonomySettingsRead | JSONResponse:
    try:
        require_permission(user, "ai.autonomy.manage")
        before = autonomy_resolver.effective_tiers(db, user.tenant_id)
        for proposal_type, tier in dto.settings.items():
            autonomy_resolver.set_tier(db, user.tenant_id, proposal_type, tier)
        after = autonomy_resolver.effective_tiers(db, user.tenant_id)
        record_audit(
            actor_user_id=user.user_id,
            tenant_id=user.tenant_id,
            entity_type="ai_autonomy_setting",
            entity_id=user.tenant_id,
            action="update",
            before=before,
            after=after,
            correlation_id=user.correlation_id,
        )
        db.commit()
        return AutonomySettingsRead(settings=after)
    except ProposalError as exc:
        db.rollback()
        return domain_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_autonomy_update_failed")


@autonomy_router.get("/proposal-stats", response_model=ProposalStatsResponse)
def get_proposal_stats(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProposalStatsResponse | JSONResponse:
    try:
        require_permission(user, "ai.proposals.read")
        rows = stats_tracker.list_for_tenant(db, user.tenant_id)
        return ProposalStatsResponse(
            stats=[ProposalStatRead.model_validate(row) for row in rows],
            suppressed_types=stats_tracker.suppressed_types(db, user.tenant_id),
        )
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_proposal_stats_failed")


@insights_router.post("/proactive-insights", response_model=ProactiveInsightsResult)
def run_proactive_insights(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    oracle: Oracle = Depends(get_ai_oracle),
) -> ProactiveInsightsResult | JSONResponse:
    try:
        require_permission(user, "ai.insights.run")
        return ProactiveInsightService(oracle).run(db, user)
    except ProposalError as exc:
        return domain_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_proactive_insights_failed")


@enrichment_router.post("/batch-enrich", response_model=BatchEnrichAccepted, status_code=status.HTTP_202_ACCEPTED)
def submit_batch_enrichment(
    request: Request,
    dto: BatchEnrichRequest,
    user: ActorUser = Depends(get_current_user),
    runner: BatchJobRunner = Depends(get_batch_runner),
) -> BatchEnrichAccepted | JSONResponse:
    try:
        require_permission(user, "ai.enrichment.run")
        job = runner.submit(user.tenant_id, dto.contact_ids, correlation_id=user.correlation_id)
        return BatchEnrichAccepted(batch_id=job.id, status=job.status, total=job.total)
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_batch_enrich_failed")


@enrichment_router.get("/batch-enrich/{batch_id}", response_model=BatchJobRead)
def poll_batch_enrichment(
    request: Request,
    batch_id: str,
    user: ActorUser = Depends(get_current_user),
) -> BatchJobRead | JSONResponse:
    try:
        require_permission(user, "ai.enrichment.run")
        job = batch_job_store.get(batch_id, tenant_id=user.tenant_id)
        return BatchJobRead.model_validate(asdict(job))
    except ProposalError as exc:
        return domain_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_batch_poll_failed")


@discovery_router.post("/local-seo", response_model=DiscoveryResult)
def local_seo_search(
    request: Request,
    dto: LocalSeoRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    discovery: DiscoveryService = Depends(get_discovery_service),
) -> DiscoveryResult | JSONResponse:
    try:
        require_permission(user, "ai.discovery.run")
        if not dto.industry.strip() or not dto.location.strip():
            raise InvalidArgumentError("industry and location are required")
        return discovery.search(
            db,
            user.tenant_id,
            dto.industry.strip(),
            dto.location.strip(),
            count=dto.count,
            force_refresh=dto.force_refresh,
        )
    except ProposalError as exc:
        return domain_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_local_seo_failed")
