from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from nexus_api import audit, events
from nexus_api.core.auth import AuthUser, get_current_user as auth_get_current_user
from nexus_api.core.config import get_settings
from nexus_api.core.database import Base, get_db
from nexus_api.crm.models import CRMContact
from nexus_api.main import app
from nexus_api.middleware.correlation_id import resolve_correlation_id
from nexus_api.middleware.rate_limit import reset_rate_limiter


TENANT = "tenant-a"
ALL_PERMISSIONS = ["ai.proposals.read", "ai.proposals.write", "ai.proposals.resolve"]


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
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=ALL_PERMISSIONS, tenant_ids=[TENANT])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _contact(db_session: Session) -> CRMContact:
    contact = CRMContact(tenant_id=TENANT, name="Corr Contact", email="corr@example.com")
    db_session.add(contact)
    db_session.commit()
    return contact


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.post(f"/api/ai/proposals/{uuid.uuid4()}/dismiss", headers={"X-Tenant-Id": TENANT})
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.post(
        f"/api/ai/proposals/{uuid.uuid4()}/dismiss",
        headers={"X-Tenant-Id": TENANT, "X-Correlation-Id": "abc-123"},
    )
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_audit_and_events_use_request_correlation_id(client: TestClient, db_session: Session) -> None:
    contact = _contact(db_session)
    response = client.post(
        "/api/ai/proposals",
        json={"type": "add_tag", "title": "Tag", "contact_id": str(contact.id), "payload": {"tag": "Hot"}},
        headers={"X-Tenant-Id": TENANT, "X-Correlation-Id": "corr-audit-1"},
    )
    assert response.status_code == 201

    proposal_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "ai_proposal"]
    assert proposal_audits
    assert proposal_audits[-1]["correlation_id"] == "corr-audit-1"

    created_events = [item for item in events.published_events if item.get("event_type") == "ai.proposal.created"]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-audit-1"


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_AI_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    body = {"type": "run_workflow", "title": "Flow", "payload": {"workflowName": "Welcome"}}
    first = client.post(
        "/api/ai/proposals",
        json=body,
        headers={"X-Tenant-Id": TENANT, "X-Correlation-Id": "corr-rate-1"},
    )
    assert first.status_code == 201

    second = client.post(
        "/api/ai/proposals",
        json=body,
        headers={"X-Tenant-Id": TENANT, "X-Correlation-Id": "corr-rate-1"},
    )
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"


@pytest.mark.parametrize("raw", [None, "", "   ", "x" * 129])
def test_unusable_correlation_ids_are_replaced(raw: str | None) -> None:
    resolved = resolve_correlation_id(raw)
    assert resolved != raw
    assert uuid.UUID(resolved)


def test_correlation_id_is_trimmed() -> None:
    assert resolve_correlation_id("  abc-123 ") == "abc-123"


def test_published_events_and_audit_trail_are_bounded() -> None:
    limit = events.published_events.maxlen
    assert limit is not None
    for index in range(limit + 3):
        events.publish(events.build_envelope("ai.test.tick", tenant_id=TENANT, actor_user_id="user-1", payload={"n": index}))

    assert len(events.published_events) == limit
    assert events.published_events[-1]["payload"] == {"n": limit + 2}
    assert audit.audit_entries.maxlen is not None
