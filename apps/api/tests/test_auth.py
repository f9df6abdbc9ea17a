from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from httpx import Response
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import MANAGE_PERMISSION, READ_PERMISSION
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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _token(roles: object, secret: str | None = None) -> str:
    settings = get_settings()
    return jwt.encode(
        {"sub": "ops-user", "roles": roles},
        secret or settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )


def _create_report(client: TestClient, token: str | None = None) -> Response:
    headers = {"Authorization": f"Bearer {token}"} if token is not None else {}
    return client.post("/api/crm/associations/integrity-reports", json={"tenant_id": "tenant-a"}, headers=headers)


def test_missing_token_is_a_guest_without_permissions(client: TestClient) -> None:
    response = _create_report(client)

    assert response.status_code == 403


def test_malformed_token_is_rejected(client: TestClient) -> None:
    response = _create_report(client, "not-a-jwt")

    assert response.status_code == 401
    assert response.headers.get("www-authenticate") == "Bearer"


def test_token_signed_with_another_secret_is_rejected(client: TestClient) -> None:
    response = _create_report(client, _token([READ_PERMISSION], secret="someone-else"))

    assert response.status_code == 401


def test_valid_token_grants_its_roles(client: TestClient) -> None:
    response = _create_report(client, _token([READ_PERMISSION, MANAGE_PERMISSION]))

    assert response.status_code == 201


def test_roles_may_be_a_space_separated_scope_string(client: TestClient) -> None:
    response = _create_report(client, _token(f"{READ_PERMISSION} {MANAGE_PERMISSION}"))

    assert response.status_code == 201


def test_token_without_roles_has_no_permissions(client: TestClient) -> None:
    response = _create_report(client, _token(None))

    assert response.status_code == 403
