from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Protocol

import requests
from opentelemetry import trace
from sqlalchemy import and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from nexus_api.ai.models import AISearchResult
from nexus_api.ai.oracle import Oracle
from nexus_api.ai.proactive import cooldown_gate
from nexus_api.ai.schemas import DiscoveryEntry, DiscoveryResult, OracleDiscoveryBatch
from nexus_api.core.config import get_settings
from nexus_api.crm.models import CRMContact, utcnow
from nexus_api.metrics import observe_discovery_lookup
from nexus_api.otel import ai_span

logger = logging.getLogger("nexus_api.ai.discovery")
tracer = trace.get_tracer("nexus_api.ai.discovery")

DISCOVERY_SOURCE = "Local SEO Discovery"
SEARCH_TYPE = "local_seo"
MAX_RESULTS = 50

_APIFY_ACTOR_URL = "https://api.apify.com/v2/acts/compass~crawler-google-places/run-sync-get-dataset-items"


class ProviderError(Exception):
    pass


class DiscoveryProvider(Protocol):
    name: str

    def search(self, query: str, max_results: int) -> list[DiscoveryEntry]: ...


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=utcnow().tzinfo)


class ApifyMapsProvider:
    """Google Maps place search through the Apify crawler actor (synchronous run)."""

    name = "apify"

    def __init__(
        self,
        token: str | None = None,
        session: requests.Session | None = None,
        timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        self.token = token if token is not None else settings.apify_token
        self.timeout = timeout if timeout is not None else settings.apify_timeout_seconds
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.token)

    def search(self, query: str, max_results: int) -> list[DiscoveryEntry]:
        if not self.configured:
            raise ProviderError("APIFY_TOKEN is not configured")
        body = {
            "searchStringsArray": [query],
            "maxCrawledPlacesPerSearch": max_results,
            "maxCrawledPlaces": max_results,
            "language": "en",
            "maxReviews": 0,
            "maxImages": 0,
        }
        started = time.perf_counter()
        with ai_span(tracer, "ai.discovery.apify", query=query) as span:
            try:
                response = self.session.post(
                    _APIFY_ACTOR_URL,
                    params={"token": self.token},
                    json=body,
                    timeout=self.timeout,
                )
            except requests.Timeout as exc:
                raise ProviderError(f"Apify request timed out after {self.timeout}s") from exc
            except requests.RequestException as exc:
                raise ProviderError(f"Apify request failed: {exc}") from exc
            if response.status_code >= 400:
                raise ProviderError(f"Apify API error {response.status_code}: {response.text[:200]}")
            try:
                items = response.json()
            except ValueError as exc:
                raise ProviderError("Apify returned a non-JSON body") from exc
            if not isinstance(items, list):
                raise ProviderError("Apify returned an unexpected payload")
            places = [self._to_entry(item) for item in items[:max_results] if isinstance(item, dict) and item.get("title")]
            span.set_attribute("places", len(places))
        logger.info(
            "ai.discovery.apify_completed",
            extra={"query": query, "count": len(places), "duration_ms": round((time.perf_counter() - started) * 1000, 2)},
        )
        return places

    @staticmethod
    def _to_entry(item: dict[str, Any]) -> DiscoveryEntry:
        score = item.get("totalScore")
        reviews = item.get("reviewsCount")
        return DiscoveryEntry(
            title=str(item.get("title") or ""),
            rating=float(score) if isinstance(score, (int, float)) else None,
            reviews_count=int(reviews) if isinstance(reviews, int) else None,
            address=str(item.get("address") or ""),
            phone=item.get("phone") or None,
            website=item.get("website") or None,
            url=str(item.get("url") or ""),
            category_name=str(item.get("categoryName") or ""),
            categories=[str(value) for value in item.get("categories") or []],
        )


DISCOVERY_SYSTEM_PROMPT = (
    "You find local businesses. Return a JSON object with an `entries` array. Each entry has title, rating, "
    "reviews_count, address, phone, website, url, category_name and categories. Only list businesses you are "
    "confident exist; use null for unknown fields."
)


class OracleSearchProvider:
    name = "oracle"

    def __init__(self, oracle: Oracle) -> None:
        self.oracle = oracle

    def search(self, query: str, max_results: int) -> list[DiscoveryEntry]:
        batch = self.oracle.generate_structured(
            DISCOVERY_SYSTEM_PROMPT,
            f"List up to {max_results} businesses for: {query}",
            OracleDiscoveryBatch,
        )
        return batch.entries[:max_results]


def format_result_text(entries: list[DiscoveryEntry], industry: str, location: str, suffix: str = "") -> str:
    lines = []
    for index, entry in enumerate(entries, start=1):
        rating = entry.rating if entry.rating is not None else "N/A"
        lines.append(
            f"{index}. **{entry.title}**\n"
            f"   - **Website:** {entry.website or 'Not found'}\n"
            f"   - **Phone:** {entry.phone or 'Not found'}\n"
            f"   - **Google Rating:** {rating} ({entry.reviews_count or 0} reviews)\n"
            f"   - **Address:** {entry.address or 'N/A'}\n"
            f"   - **Category:** {entry.category_name or 'N/A'}"
        )
    return f"Found {len(entries)} {industry} businesses in {location}{suffix}:\n\n" + "\n\n".join(lines)


class DiscoveryService:
    """Four-layer lookup: saved contacts, recent cache, primary provider, oracle fallback."""

    def __init__(self, primary: ApifyMapsProvider | None, secondary: DiscoveryProvider) -> None:
        self.primary = primary
        self.secondary = secondary

    def search(
        self,
        session: Session,
        tenant_id: str,
        industry: str,
        location: str,
        count: int = 5,
        force_refresh: bool = False,
        now: datetime | None = None,
    ) -> DiscoveryResult:
        count = min(max(count or 5, 1), MAX_RESULTS)
        query = f"{industry} in {location}"
        now = now or utcnow()

        if not force_refresh:
            existing = self._from_contacts(session, tenant_id, industry, location)
            if len(existing) >= count:
                return self._served(
                    "database",
                    query,
                    DiscoveryResult(
                        result_text=format_result_text(existing, industry, location, " (from database)"),
                        entries=existing,
                        data_source="database",
                        from_database=True,
                    ),
                )
            cached = self._from_cache(session, tenant_id, query, now)
            if cached is not None:
                return self._served("cache", query, cached)

        entries: list[DiscoveryEntry] = []
        data_source = "oracle"
        if self.primary is not None and self.primary.configured:
            try:
                entries = self.primary.search(query, count)
                data_source = "apify"
            except ProviderError as exc:
                logger.warning("ai.discovery.primary_failed", extra={"query": query, "error": str(exc)[:500]})
                entries = []
            if not entries:
                logger.info("ai.discovery.primary_empty", extra={"query": query, "layer": "apify"})
        if not entries:
            entries = self.secondary.search(query, count)
            data_source = "oracle"

        result = DiscoveryResult(
            result_text=format_result_text(entries, industry, location),
            entries=entries,
            data_source=data_source,
        )
        self._write_cache(session, tenant_id, query, result, now)
        return self._served(data_source, query, result)

    def _served(self, layer: str, query: str, result: DiscoveryResult) -> DiscoveryResult:
        observe_discovery_lookup(layer)
        logger.info("ai.discovery.served", extra={"layer": layer, "query": query, "count": len(result.entries)})
        return result

    def _from_contacts(self, session: Session, tenant_id: str, industry: str, location: str) -> list[DiscoveryEntry]:
        rows = session.scalars(
            select(CRMContact)
            .where(and_(CRMContact.tenant_id == tenant_id, CRMContact.source == DISCOVERY_SOURCE))
            .order_by(CRMContact.created_at.desc())
        ).all()
        entries = []
        for contact in rows:
            fields = contact.custom_fields or {}
            if fields.get("industry") != industry or fields.get("location") != location:
                continue
            rating = fields.get("rating")
            try:
                parsed_rating = float(rating) if rating not in (None, "") else None
            except (TypeError, ValueError):
                parsed_rating = None
            entries.append(
                DiscoveryEntry(
                    title=contact.name,
                    rating=parsed_rating,
                    reviews_count=fields.get("reviews_count"),
                    address=fields.get("address") or "",
                    phone=contact.phone or None,
                    website=fields.get("website") or None,
                    url=fields.get("google_maps_url") or "",
                    category_name=fields.get("category") or "",
                    categories=list(fields.get("categories") or []),
                )
            )
        return entries

    def _from_cache(
        self,
        session: Session,
        tenant_id: str,
        query: str,
        now: datetime,
    ) -> DiscoveryResult | None:
        threshold = now - timedelta(hours=get_settings().search_cache_ttl_hours)
        row = session.scalar(
            select(AISearchResult)
            .where(
                and_(
                    AISearchResult.tenant_id == tenant_id,
                    AISearchResult.search_type == SEARCH_TYPE,
                    AISearchResult.query == query,
                    AISearchResult.created_at >= threshold,
                )
            )
            .order_by(AISearchResult.created_at.desc())
            .limit(1)
        )
        if row is None:
            return None
        stored = DiscoveryResult.model_validate(row.result)
        # a short cached list is still served rather than re-querying the providers
        if not stored.entries:
            return None
        age_minutes = round((now - _as_aware(row.created_at)).total_seconds() / 60)
        return stored.model_copy(
            update={"data_source": "cache", "cached": True, "cache_age_minutes": age_minutes}
        )

    def _write_cache(self, session: Session, tenant_id: str, query: str, result: DiscoveryResult, now: datetime) -> None:
        try:
            session.add(
                AISearchResult(
                    tenant_id=tenant_id,
                    search_type=SEARCH_TYPE,
                    query=query,
                    result=result.model_dump(mode="json"),
                    created_at=now,
                )
            )
            cooldown_gate.record(session, tenant_id, "ai_local_seo", {"query": query, "source": result.data_source})
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning("ai.discovery.cache_write_failed", extra={"query": query, "error": str(exc)[:500]})
