from __future__ import annotations

from collections.abc import Iterator
from typing import Any

from sqlalchemy import Select, cast, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.crm.models import CRMCompany, CRMContact, CRMDeal, CRMIntegrityReport, CRMLocation, CRMSalesperson


ENTITY_MODELS: dict[str, type[Any]] = {
    "company": CRMCompany,
    "contact": CRMContact,
    "salesperson": CRMSalesperson,
    "location": CRMLocation,
}


class TenantDocumentRepository:
    model: type[Any] = CRMDeal

    def get(self, session: Session, tenant_id: str, document_id: str) -> Any | None:
        return session.scalar(
            select(self.model).where(self.model.tenant_id == tenant_id, self.model.id == document_id)
        )

    def list_all(self, session: Session, tenant_id: str) -> list[Any]:
        return list(session.scalars(self._tenant_query(tenant_id).order_by(self.model.id.asc())).all())

    def iter_pages(self, session: Session, tenant_id: str, *, page_size: int | None = None) -> Iterator[list[Any]]:
        """Yield pages ordered by document id, keyed on the last id seen.

        Documents deleted elsewhere mid-scan never shift later pages.
        """
        size = page_size or get_settings().association_scan_page_size
        last_id: str | None = None
        while True:
            stmt = self._tenant_query(tenant_id)
            if last_id is not None:
                stmt = stmt.where(self.model.id > last_id)
            page = list(session.scalars(stmt.order_by(self.model.id.asc()).limit(size)).all())
            if not page:
                return
            last_id = page[-1].id
            yield page
            if len(page) < size:
                return

    def iter_all(self, session: Session, tenant_id: str, *, page_size: int | None = None) -> Iterator[Any]:
        for page in self.iter_pages(session, tenant_id, page_size=page_size):
            yield from page

    def _tenant_query(self, tenant_id: str) -> Select[Any]:
        return select(self.model).where(self.model.tenant_id == tenant_id)


class DealRepository(TenantDocumentRepository):
    model = CRMDeal

    def tenant_ids(self, session: Session) -> list[str]:
        rows = session.scalars(select(CRMDeal.tenant_id).distinct().order_by(CRMDeal.tenant_id.asc())).all()
        return list(rows)

    def ids_referencing(self, session: Session, tenant_id: str, id_column: str, entity_id: str) -> list[str]:
        column = getattr(CRMDeal, id_column)
        if session.get_bind().dialect.name == "postgresql":
            stmt = (
                select(CRMDeal.id)
                .where(CRMDeal.tenant_id == tenant_id, cast(column, JSONB).contains([entity_id]))
                .order_by(CRMDeal.id.asc())
            )
            return list(session.scalars(stmt).all())

        matched: list[str] = []
        for deal in self.iter_all(session, tenant_id):
            values = getattr(deal, id_column)
            if isinstance(values, list) and entity_id in values:
                matched.append(deal.id)
        return matched


class CompanyRepository(TenantDocumentRepository):
    model = CRMCompany


class EntityRepository(TenantDocumentRepository):
    def __init__(self, entity_type: str) -> None:
        self.entity_type = entity_type
        self.model = ENTITY_MODELS[entity_type]


class IntegrityReportRepository:
    def latest(self, session: Session, tenant_id: str) -> CRMIntegrityReport | None:
        return session.scalar(
            select(CRMIntegrityReport)
            .where(CRMIntegrityReport.tenant_id == tenant_id)
            .order_by(CRMIntegrityReport.created_at.desc(), CRMIntegrityReport.id.desc())
            .limit(1)
        )

    def tenant_ids(self, session: Session) -> list[str]:
        rows = session.scalars(
            select(CRMIntegrityReport.tenant_id).distinct().order_by(CRMIntegrityReport.tenant_id.asc())
        ).all()
        return list(rows)
