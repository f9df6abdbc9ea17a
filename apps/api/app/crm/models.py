from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, DateTime, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CRMDeal(Base):
    __tablename__ = "crm_deal"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    associations: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    company_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    contact_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    salesperson_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    location_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    primary_company_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # Superseded by associations.companies / company_ids.
    company_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    company_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    associations_rebuilt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=utcnow)


class CRMCompany(Base):
    __tablename__ = "crm_company"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    company_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    domain: Mapped[str | None] = mapped_column(Text, nullable=True)
    website: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(Text, nullable=True)
    has_active_deals: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    associations: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    reverse_index_rebuilt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Imported documents may carry no timestamps at all.
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CRMContact(Base):
    __tablename__ = "crm_contact"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    full_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    first_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    associations: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    reverse_index_rebuilt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=utcnow)


class CRMSalesperson(Base):
    __tablename__ = "crm_salesperson"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    associations: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    reverse_index_rebuilt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=utcnow)


class CRMLocation(Base):
    __tablename__ = "crm_location"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    nickname: Mapped[str | None] = mapped_column(Text, nullable=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(Text, nullable=True)
    company_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    associations: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    reverse_index_rebuilt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=utcnow)


class CRMIntegrityReport(Base):
    __tablename__ = "crm_integrity_report"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    total_deals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    missing_company_ids: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    missing_primary_company: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    companies_with_no_snapshot: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    contacts_with_no_snapshot: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    salespeople_with_no_snapshot: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    locations_with_no_snapshot: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    drifted_deal_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_crm_integrity_report_tenant_created", "tenant_id", "created_at"),
    )

    @property
    def outstanding_issues(self) -> int:
        # Issue counters that gate legacy field retirement.
        return (
            self.missing_company_ids
            + self.missing_primary_company
            + self.companies_with_no_snapshot
            + self.contacts_with_no_snapshot
        )
