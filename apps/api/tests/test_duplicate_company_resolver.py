from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.core.config import get_settings
from app.core.database import Base
from app.crm.associations.duplicates import (
    DuplicateCompanyResolver,
    normalize_company_name,
    normalize_domain,
)
from app.crm.associations.errors import InternalError, InvalidArgumentError
from app.crm.models import CRMCompany, CRMDeal


NOW = datetime(2026, 10, 1, tzinfo=timezone.utc)


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


def _add_company(session: Session, company_id: str, tenant_id: str = "tenant-a", **fields: Any) -> None:
    session.add(CRMCompany(tenant_id=tenant_id, id=company_id, **fields))
    session.commit()


def _company_ids(session: Session, tenant_id: str = "tenant-a") -> list[str]:
    return list(
        session.scalars(select(CRMCompany.id).where(CRMCompany.tenant_id == tenant_id).order_by(CRMCompany.id)).all()
    )


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("acme.com", "acme.com"),
        ("www.acme.com", "acme.com"),
        ("https://www.Acme.com/about?ref=x", "acme.com"),
        ("HTTP://acme.com:8080/", "acme.com"),
        ("acme.com/contact", "acme.com"),
        ("  ", ""),
        (None, ""),
    ],
)
def test_normalize_domain(raw: str | None, expected: str) -> None:
    assert normalize_domain(raw) == expected


def test_normalize_company_name_collapses_punctuation() -> None:
    assert normalize_company_name("ABC, Inc.") == "abc inc"
    assert normalize_company_name("  ABC   Inc ") == "abc inc"
    assert normalize_company_name(None) == ""


def test_domain_mode_groups_www_variants(db_session: Session) -> None:
    _add_company(db_session, "c1", name="Acme", domain="acme.com", updated_at=NOW)
    _add_company(db_session, "c2", name="Acme Corp", website="https://www.acme.com/", updated_at=NOW - timedelta(days=1))
    _add_company(db_session, "c3", name="Other", domain="other.io")

    resolution = DuplicateCompanyResolver().resolve_duplicates(db_session, "tenant-a", mode="domain")

    assert resolution.duplicate_groups == 1
    assert resolution.groups[0]["company_ids"] == ["c1", "c2"]
    assert resolution.groups[0]["survivor_id"] == "c1"
    assert resolution.groups[0]["candidate_ids"] == ["c2"]
    assert resolution.candidates == 1
    assert resolution.deleted == 0
    assert resolution.kept == 1


def test_domain_mode_skips_companies_without_domain(db_session: Session) -> None:
    _add_company(db_session, "c1", name="Acme")
    _add_company(db_session, "c2", name="Acme")

    resolution = DuplicateCompanyResolver().resolve_duplicates(db_session, "tenant-a", mode="domain")

    assert resolution.duplicate_groups == 0


def test_name_mode_groups_by_normalized_name(db_session: Session) -> None:
    _add_company(db_session, "c1", name="ABC Inc", domain="abc.com")
    _add_company(db_session, "c2", company_name="ABC, Inc.", domain="abc-holdings.com")

    resolution = DuplicateCompanyResolver().resolve_duplicates(db_session, "tenant-a", mode="name")

    assert resolution.duplicate_groups == 1
    assert resolution.groups[0]["key"] == "name:abc inc"


def test_both_mode_prefers_domain_and_falls_back_to_name(db_session: Session) -> None:
    # Same name but distinct domains: not duplicates in "both" mode.
    _add_company(db_session, "c1", name="ABC Inc", domain="abc.com")
    _add_company(db_session, "c2", name="ABC Inc", domain="abc.co.uk")
    # No domain on either: grouped by name.
    _add_company(db_session, "c3", name="Zeta LLC")
    _add_company(db_session, "c4", name="zeta llc")

    resolution = DuplicateCompanyResolver().resolve_duplicates(db_session, "tenant-a", mode="both")

    assert resolution.duplicate_groups == 1
    assert resolution.groups[0]["key"] == "name:zeta llc"


def test_dry_run_never_deletes(db_session: Session) -> None:
    for index in range(4):
        _add_company(db_session, f"c{index}", name="Acme", domain="acme.com")

    deletes: list[Any] = []

    @event.listens_for(db_session, "before_flush")
    def _capture(session: Session, flush_context: Any, instances: Any) -> None:
        deletes.extend(session.deleted)

    resolution = DuplicateCompanyResolver().resolve_duplicates(db_session, "tenant-a", mode="both", apply=False)

    assert resolution.candidates == 3
    assert resolution.deleted == 0
    assert resolution.applied is False
    assert deletes == []
    assert _company_ids(db_session) == ["c0", "c1", "c2", "c3"]


def test_apply_deletes_candidates_and_keeps_newest(db_session: Session) -> None:
    _add_company(db_session, "c1", name="Acme", updated_at=NOW - timedelta(days=3))
    _add_company(db_session, "c2", name="Acme", created_at=NOW)
    _add_company(db_session, "c3", name="Acme")

    resolution = DuplicateCompanyResolver().resolve_duplicates(db_session, "tenant-a", mode="name", apply=True)

    assert resolution.deleted == 2
    assert _company_ids(db_session) == ["c2"]


def test_companies_referenced_by_deals_are_never_deleted(db_session: Session) -> None:
    _add_company(db_session, "c1", name="Acme", associations={"deals": ["d1"]})
    _add_company(db_session, "c2", name="Acme", has_active_deals=True)
    _add_company(db_session, "c3", name="Acme")
    _add_company(db_session, "c4", name="Acme")
    _add_company(db_session, "c5", name="Acme", updated_at=NOW)
    db_session.add(CRMDeal(tenant_id="tenant-a", id="d9", associations={"companies": [{"id": "c3"}]}))
    db_session.commit()

    resolution = DuplicateCompanyResolver().resolve_duplicates(db_session, "tenant-a", mode="name", apply=True)

    group = resolution.groups[0]
    assert group["protected_ids"] == ["c1", "c2", "c3"]
    assert group["survivor_id"] == "c5"
    assert group["candidate_ids"] == ["c4"]
    assert set(group["candidate_ids"]).isdisjoint(group["protected_ids"])
    assert resolution.protected_count == 3
    assert resolution.kept == 4
    assert _company_ids(db_session) == ["c1", "c2", "c3", "c5"]


def test_empty_back_reference_does_not_protect(db_session: Session) -> None:
    _add_company(db_session, "c1", name="Acme", associations={"deals": [{}, ""]}, updated_at=NOW)
    _add_company(db_session, "c2", name="Acme")

    resolution = DuplicateCompanyResolver().resolve_duplicates(db_session, "tenant-a", mode="name")

    assert resolution.protected_count == 0
    assert resolution.groups[0]["candidate_ids"] == ["c2"]


def test_single_unreferenced_member_next_to_protected_is_kept(db_session: Session) -> None:
    _add_company(db_session, "c1", name="Acme", associations={"deals": ["d1"]})
    _add_company(db_session, "c2", name="Acme")

    resolution = DuplicateCompanyResolver().resolve_duplicates(db_session, "tenant-a", mode="name", apply=True)

    assert resolution.candidates == 0
    assert resolution.deleted == 0
    assert _company_ids(db_session) == ["c1", "c2"]


def test_timestamp_ties_break_by_id(db_session: Session) -> None:
    _add_company(db_session, "c-b", name="Acme")
    _add_company(db_session, "c-a", name="Acme")
    _add_company(db_session, "c-c", name="Acme")

    resolution = DuplicateCompanyResolver().resolve_duplicates(db_session, "tenant-a", mode="name")

    assert resolution.groups[0]["survivor_id"] == "c-a"
    assert resolution.groups[0]["candidate_ids"] == ["c-b", "c-c"]


def test_groups_do_not_cross_tenants(db_session: Session) -> None:
    _add_company(db_session, "c1", tenant_id="tenant-a", name="Acme")
    _add_company(db_session, "c2", tenant_id="tenant-b", name="Acme")

    resolution = DuplicateCompanyResolver().resolve_duplicates(db_session, "tenant-a", mode="name", apply=True)

    assert resolution.duplicate_groups == 0
    assert _company_ids(db_session, "tenant-b") == ["c2"]


def test_unknown_mode_is_rejected(db_session: Session) -> None:
    with pytest.raises(InvalidArgumentError):
        DuplicateCompanyResolver().resolve_duplicates(db_session, "tenant-a", mode="fuzzy")


def test_failed_batch_audits_only_committed_deletes(
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("ASSOCIATION_BATCH_MAX_MUTATIONS", "1")
    get_settings.cache_clear()
    audit.audit_entries.clear()
    _add_company(db_session, "c0", name="Acme")
    _add_company(db_session, "c1", name="Acme")
    _add_company(db_session, "c2", name="Acme")
    real_commit = db_session.commit
    calls = {"count": 0}

    def flaky_commit() -> None:
        calls["count"] += 1
        if calls["count"] == 2:
            raise OperationalError("COMMIT", {}, Exception("database is locked"))
        real_commit()

    monkeypatch.setattr(db_session, "commit", flaky_commit)
    try:
        with pytest.raises(InternalError):
            DuplicateCompanyResolver().resolve_duplicates(
                db_session, "tenant-a", mode="name", apply=True, actor_user_id="admin-1"
            )
    finally:
        get_settings.cache_clear()

    monkeypatch.undo()
    assert _company_ids(db_session) == ["c0", "c2"]
    deleted = [entry["entity_id"] for entry in audit.audit_entries if entry["action"] == "duplicate_company_deleted"]
    assert deleted == ["c1"]
