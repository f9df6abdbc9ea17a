from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import MANAGE_PERMISSION, READ_PERMISSION
from app.crm.models import CRMCompany, CRMIntegrityReport
from app.main import app


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
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=[READ_PERMISSION, MANAGE_PERMISSION])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get("/api/crm/associations/integrity-reports/latest", params={"tenant_id": "tenant-a"})
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(
        "/api/crm/associations/integrity-reports/latest",
        params={"tenant_id": "tenant-a"},
        headers={"X-Correlation-Id": "abc-123"},
    )
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_integrity_report_stores_request_correlation_id(client: TestClient, db_session: Session) -> None:
    response = client.post(
        "/api/crm/associations/integrity-reports",
        json={"tenant_id": "tenant-a"},
        headers={"X-Correlation-Id": "corr-report-1"},
    )
    assert response.status_code == 201
    assert response.json()["correlation_id"] == "corr-report-1"

    report = db_session.get(CRMIntegrityReport, response.json()["id"])
    assert report is not None
    assert report.correlation_id == "corr-report-1"


def test_audit_uses_request_correlation_id(client: TestClient, db_session: Session) -> None:
    db_session.add_all(
        [
            CRMCompany(tenant_id="tenant-a", id="c1", name="Acme"),
            CRMCompany(tenant_id="tenant-a", id="c2", name="Acme"),
        ]
    )
    db_session.commit()

    response = client.post(
        "/api/crm/associations/companies/resolve-duplicates",
        json={"tenant_id": "tenant-a", "mode": "name", "apply": True},
        headers={"X-Correlation-Id": "corr-audit-1"},
    )
    assert response.status_code == 200

    company_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "crm.company"]
    assert company_audits
    assert company_audits[-1]["correlation_id"] == "corr-audit-1"


def test_malformed_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get(
        "/api/crm/associations/integrity-reports/latest",
        params={"tenant_id": "tenant-a"},
        headers={"X-Correlation-Id": "bad id;" + "x" * 200},
    )
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert not header_value.startswith("bad id")
    assert response.json()["correlation_id"] == header_value
