from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from nexus_api.ai.enrichment import enrich_contact, with_rate_limit_retry
from nexus_api.ai.errors import NotFoundError, OracleError, RateLimitedError
from nexus_api.ai.models import AIUsageLog
from nexus_api.ai.schemas import EnrichmentProfile
from nexus_api.core.config import get_settings
from nexus_api.core.database import Base
from nexus_api.crm.models import CRMActivity, CRMContact


TENANT = "tenant-a"


class ScriptedOracle:
    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.calls = 0

    def generate_structured(self, system_prompt, prompt, schema):
        self.calls += 1
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


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
def clear_settings_cache() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_retry_waits_retry_after_plus_buffer() -> None:
    waits: list[float] = []
    attempts = {"count": 0}

    def flaky() -> str:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise RateLimitedError("slow down", 2000)
        return "ok"

    assert with_rate_limit_retry(flaky, sleep=waits.append) == "ok"
    assert waits == [2.5, 2.5]


def test_retry_wait_is_capped() -> None:
    waits: list[float] = []
    outcomes = [RateLimitedError("slow down", 60_000)]

    def flaky() -> str:
        if outcomes:
            raise outcomes.pop()
        return "ok"

    with_rate_limit_retry(flaky, sleep=waits.append)
    assert waits == [15.0]


def test_retry_gives_up_after_max_attempts() -> None:
    waits: list[float] = []
    calls = {"count": 0}

    def always_limited() -> str:
        calls["count"] += 1
        raise RateLimitedError("slow down", 1000)

    with pytest.raises(RateLimitedError):
        with_rate_limit_retry(always_limited, sleep=waits.append)
    assert calls["count"] == 3
    assert len(waits) == 2


def test_other_errors_are_not_retried() -> None:
    waits: list[float] = []
    calls = {"count": 0}

    def broken() -> str:
        calls["count"] += 1
        raise OracleError("bad response")

    with pytest.raises(OracleError):
        with_rate_limit_retry(broken, sleep=waits.append)
    assert calls["count"] == 1
    assert waits == []


def test_enrich_contact_merges_profile(db_session: Session) -> None:
    contact = CRMContact(
        tenant_id=TENANT,
        name="Bright Smile Dental",
        custom_fields={"website": "https://brightsmile.example", "industry": "dentist", "location": "Austin"},
    )
    db_session.add(contact)
    db_session.commit()
    oracle = ScriptedOracle(
        RateLimitedError("slow down", 100),
        EnrichmentProfile(
            email="hello@brightsmile.example",
            owner_name="Dr. Reyes",
            services=["Cleaning", "Implants"],
            pain_points=["Few reviews"],
            social_links={"facebook": "https://facebook.com/brightsmile"},
            website="https://other.example",
        ),
    )
    waits: list[float] = []

    outcome = enrich_contact(db_session, TENANT, contact.id, oracle, sleep=waits.append)

    assert outcome.status == "success"
    assert outcome.enriched_email == "hello@brightsmile.example"
    assert oracle.calls == 2
    assert waits == [0.6]
    db_session.refresh(contact)
    assert contact.email == "hello@brightsmile.example"
    assert contact.custom_fields["owner_name"] == "Dr. Reyes"
    assert contact.custom_fields["services"] == "Cleaning, Implants"
    assert contact.custom_fields["website"] == "https://brightsmile.example"
    assert contact.custom_fields["enriched_at"]
    activity = db_session.scalar(select(CRMActivity).where(CRMActivity.contact_id == contact.id))
    assert activity is not None
    assert activity.activity_type == "ai_enrichment"
    assert db_session.scalar(select(AIUsageLog.usage_type)) == "ai_enrich_lead"


def test_already_enriched_contact_is_skipped(db_session: Session) -> None:
    contact = CRMContact(
        tenant_id=TENANT,
        name="Done Already",
        email="done@example.com",
        custom_fields={"enriched_at": "2026-10-01T00:00:00+00:00"},
    )
    db_session.add(contact)
    db_session.commit()
    oracle = ScriptedOracle()

    outcome = enrich_contact(db_session, TENANT, contact.id, oracle)

    assert outcome.status == "skipped"
    assert oracle.calls == 0


def test_enrich_contact_from_other_tenant_is_not_found(db_session: Session) -> None:
    contact = CRMContact(tenant_id="tenant-b", name="Elsewhere")
    db_session.add(contact)
    db_session.commit()

    with pytest.raises(NotFoundError):
        enrich_contact(db_session, TENANT, contact.id, ScriptedOracle())
