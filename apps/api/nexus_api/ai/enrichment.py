from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from nexus_api.ai.errors import NotFoundError, RateLimitedError
from nexus_api.ai.oracle import Oracle
from nexus_api.ai.proactive import cooldown_gate
from nexus_api.ai.schemas import EnrichmentProfile
from nexus_api.core.config import get_settings
from nexus_api.crm.models import CRMActivity, CRMContact, utcnow

logger = logging.getLogger("nexus_api.ai.enrichment")

T = TypeVar("T")

ENRICHMENT_USAGE_TYPE = "ai_enrich_lead"

ENRICHMENT_SYSTEM_PROMPT = (
    "You research small businesses for a sales team. Given a business name, website, location and industry, "
    "return a JSON object with: email (best public contact address or null), owner_name, services (list), "
    "pain_points (list of likely marketing or reputation problems), social_links (platform -> url) and website. "
    "Never invent an email address; use null when none is publicly listed."
)


def with_rate_limit_retry(
    fn: Callable[[], T],
    *,
    max_attempts: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call `fn`, waiting out oracle backpressure between attempts. Other errors propagate at once."""
    settings = get_settings()
    attempts = max_attempts or settings.enrichment_max_attempts
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except RateLimitedError as exc:
            if attempt >= attempts:
                raise
            wait_ms = min(exc.retry_after_ms + settings.rate_limit_retry_buffer_ms, settings.rate_limit_retry_cap_ms)
            logger.info(
                "ai.enrichment.rate_limited",
                extra={"attempt": attempt, "total": attempts, "wait_ms": wait_ms},
            )
            sleep(wait_ms / 1000)
    raise RuntimeError("unreachable")


@dataclass
class EnrichmentOutcome:
    contact_id: uuid.UUID
    contact_name: str
    status: str
    detail: str = ""
    enriched_email: str | None = None


def enrich_contact(
    session: Session,
    tenant_id: str,
    contact_id: uuid.UUID,
    oracle: Oracle,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> EnrichmentOutcome:
    contact = session.scalar(
        select(CRMContact).where(and_(CRMContact.id == contact_id, CRMContact.tenant_id == tenant_id))
    )
    if contact is None:
        raise NotFoundError("contact not found", details={"contact_id": str(contact_id)})

    custom_fields = dict(contact.custom_fields or {})
    if custom_fields.get("enriched_at") and contact.email:
        return EnrichmentOutcome(
            contact_id=contact.id,
            contact_name=contact.name,
            status="skipped",
            detail="Already enriched with email",
            enriched_email=contact.email,
        )

    prompt = "\n".join(
        [
            f"Business: {contact.name}",
            f"Website: {custom_fields.get('website') or 'unknown'}",
            f"Location: {custom_fields.get('location') or 'unknown'}",
            f"Industry: {custom_fields.get('industry') or 'unknown'}",
        ]
    )
    profile = with_rate_limit_retry(
        lambda: oracle.generate_structured(ENRICHMENT_SYSTEM_PROMPT, prompt, EnrichmentProfile),
        sleep=sleep,
    )

    enriched_at = utcnow()
    custom_fields.update(
        {
            "owner_name": profile.owner_name or custom_fields.get("owner_name", ""),
            "services": ", ".join(profile.services) or custom_fields.get("services", ""),
            "pain_points": ", ".join(profile.pain_points) or custom_fields.get("pain_points", ""),
            "social_links": profile.social_links or custom_fields.get("social_links", {}),
            "enriched_at": enriched_at.isoformat(),
        }
    )
    if profile.website and not custom_fields.get("website"):
        custom_fields["website"] = profile.website
    contact.custom_fields = custom_fields
    if profile.email and not contact.email:
        contact.email = profile.email
    contact.last_activity = "AI enrichment"

    summary = f"Email: {profile.email}" if profile.email else "No email found"
    session.add(CRMActivity(contact_id=contact.id, activity_type="ai_enrichment", content=summary))
    cooldown_gate.record(session, tenant_id, ENRICHMENT_USAGE_TYPE, {"contact_id": str(contact.id)})
    session.commit()

    logger.info(
        "ai.enrichment.completed",
        extra={"tenant_id": tenant_id, "item_id": str(contact.id), "outcome": "email" if profile.email else "no_email"},
    )
    return EnrichmentOutcome(
        contact_id=contact.id,
        contact_name=contact.name,
        status="success",
        detail=summary,
        enriched_email=profile.email,
    )
