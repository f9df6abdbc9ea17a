from __future__ import annotations

from collections.abc import Generator
from typing import Any

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base
from app.crm.associations.errors import InternalError, PreconditionFailedError
from app.crm.associations.integrity import IntegrityReporter
from app.crm.associations.retirement import LegacyFieldRetirement
from app.crm.models import CRMDeal, CRMIntegrityReport


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


def _clean_deal(tenant_id: str, deal_id: str, **fields: Any) -> CRMDeal:
    values: dict[str, Any] = {
        "associations": {"companies": [{"id": "c1", "snapshot": {"name": "Acme"}}]},
        "company_ids": ["c1"],
        "contact_ids": [],
        "primary_company_id": "c1",
        "company_id": "c1",
        "company_name": "Acme",
    }
    values.update(fields)
    return CRMDeal(tenant_id=tenant_id, id=deal_id, **values)


def _deal(session: Session, tenant_id: str, deal_id: str) -> CRMDeal:
    deal = session.scalar(select(CRMDeal).where(CRMDeal.tenant_id == tenant_id, CRMDeal.id == deal_id))
    assert deal is not None
    return deal


def test_tenant_with_outstanding_issues_is_skipped(db_session: Session) -> None:
    db_session.add(_clean_deal("tenant-a", "d1"))
    db_session.add(CRMIntegrityReport(tenant_id="tenant-a", total_deals=1, missing_company_ids=1))
    db_session.commit()

    result = LegacyFieldRetirement().retire_legacy_deal_fields(db_session)

    assert result.updated_per_tenant == {}
    assert "tenant-a" in result.skipped_tenants
    deal = _deal(db_session, "tenant-a", "d1")
    assert deal.company_id == "c1"
    assert deal.company_name == "Acme"


def test_tenant_without_report_is_skipped(db_session: Session) -> None:
    db_session.add(_clean_deal("tenant-a", "d1"))
    db_session.commit()

    result = LegacyFieldRetirement().retire_legacy_deal_fields(db_session)

    assert result.skipped_tenants == {"tenant-a": "no integrity report for tenant"}
    assert _deal(db_session, "tenant-a", "d1").company_id == "c1"


def test_ensure_tenant_cleared_raises_precondition_failed(db_session: Session) -> None:
    db_session.add(CRMIntegrityReport(tenant_id="tenant-a", contacts_with_no_snapshot=2))
    db_session.commit()

    with pytest.raises(PreconditionFailedError) as exc_info:
        LegacyFieldRetirement().ensure_tenant_cleared(db_session, "tenant-a")

    assert exc_info.value.details["outstanding_issues"] == 2


def test_salesperson_and_location_gaps_do_not_block_retirement(db_session: Session) -> None:
    db_session.add(_clean_deal("tenant-a", "d1"))
    db_session.add(
        CRMIntegrityReport(tenant_id="tenant-a", salespeople_with_no_snapshot=3, locations_with_no_snapshot=1)
    )
    db_session.commit()

    result = LegacyFieldRetirement().retire_legacy_deal_fields(db_session)

    assert result.updated_per_tenant == {"tenant-a": 1}


def test_cleared_tenant_loses_legacy_scalars_only(db_session: Session) -> None:
    db_session.add_all(
        [
            _clean_deal("tenant-a", "d1", contact_ids=["p1"]),
            _clean_deal("tenant-a", "d2", company_id=None, company_name=None),
        ]
    )
    db_session.commit()
    IntegrityReporter().run_integrity_report(db_session, "tenant-a")

    result = LegacyFieldRetirement().retire_legacy_deal_fields(db_session)

    assert result.updated_per_tenant == {"tenant-a": 1}
    deal = _deal(db_session, "tenant-a", "d1")
    assert deal.company_id is None
    assert deal.company_name is None
    assert deal.company_ids == ["c1"]
    assert deal.contact_ids == ["p1"]


def test_remove_id_arrays_keeps_company_ids(db_session: Session) -> None:
    db_session.add(_clean_deal("tenant-a", "d1", contact_ids=["p1"], salesperson_ids=["s1"], location_ids=["l1"]))
    db_session.commit()
    IntegrityReporter().run_integrity_report(db_session, "tenant-a")

    LegacyFieldRetirement().retire_legacy_deal_fields(db_session, remove_id_arrays=True)

    deal = _deal(db_session, "tenant-a", "d1")
    assert deal.company_ids == ["c1"]
    assert deal.primary_company_id == "c1"
    assert deal.contact_ids is None
    assert deal.salesperson_ids is None
    assert deal.location_ids is None


def test_second_run_updates_nothing(db_session: Session) -> None:
    db_session.add(_clean_deal("tenant-a", "d1"))
    db_session.commit()
    IntegrityReporter().run_integrity_report(db_session, "tenant-a")
    retirement = LegacyFieldRetirement()

    first = retirement.retire_legacy_deal_fields(db_session)
    second = retirement.retire_legacy_deal_fields(db_session)

    assert first.total_updated == 1
    assert second.total_updated == 0
    assert second.updated_per_tenant == {"tenant-a": 0}


def test_tenants_are_gated_independently(db_session: Session) -> None:
    db_session.add_all([_clean_deal("tenant-a", "d1"), _clean_deal("tenant-b", "d1")])
    db_session.add(CRMIntegrityReport(tenant_id="tenant-a"))
    db_session.add(CRMIntegrityReport(tenant_id="tenant-b", missing_primary_company=1))
    db_session.commit()

    result = LegacyFieldRetirement().retire_legacy_deal_fields(db_session)

    assert result.updated_per_tenant == {"tenant-a": 1}
    assert list(result.skipped_tenants) == ["tenant-b"]
    assert _deal(db_session, "tenant-a", "d1").company_id is None
    assert _deal(db_session, "tenant-b", "d1").company_id == "c1"


def test_retirement_walks_every_page(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ASSOCIATION_SCAN_PAGE_SIZE", "2")
    monkeypatch.setenv("ASSOCIATION_BATCH_MAX_MUTATIONS", "3")
    get_settings.cache_clear()
    try:
        db_session.add_all([_clean_deal("tenant-a", f"d{index:02d}") for index in range(7)])
        db_session.add(CRMIntegrityReport(tenant_id="tenant-a"))
        db_session.commit()

        result = LegacyFieldRetirement().retire_legacy_deal_fields(db_session)
    finally:
        get_settings.cache_clear()

    assert result.updated_per_tenant == {"tenant-a": 7}
    remaining = db_session.scalars(select(CRMDeal.id).where(CRMDeal.company_id.is_not(None))).all()
    assert remaining == []


def test_failing_tenant_does_not_stop_the_run(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    db_session.add_all([_clean_deal("tenant-a", "d1"), _clean_deal("tenant-b", "d1")])
    db_session.add_all([CRMIntegrityReport(tenant_id="tenant-a"), CRMIntegrityReport(tenant_id="tenant-b")])
    db_session.commit()
    retirement = LegacyFieldRetirement()
    original = LegacyFieldRetirement.retire_tenant

    def flaky_retire(self: LegacyFieldRetirement, session: Session, tenant_id: str, **kwargs: Any) -> int:
        if tenant_id == "tenant-a":
            raise InternalError("batch commit failed after 0 committed mutations")
        return original(self, session, tenant_id, **kwargs)

    monkeypatch.setattr(LegacyFieldRetirement, "retire_tenant", flaky_retire)

    result = retirement.retire_legacy_deal_fields(db_session)

    assert list(result.failed_tenants) == ["tenant-a"]
    assert result.updated_per_tenant == {"tenant-b": 1}
