from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


EntityType = Literal["company", "contact", "salesperson", "location"]
DuplicateMode = Literal["name", "domain", "both"]


class TenantRequest(BaseModel):
    tenant_id: str = Field(min_length=1)


class IntegrityReportRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    total_deals: int
    missing_company_ids: int
    missing_primary_company: int
    companies_with_no_snapshot: int
    contacts_with_no_snapshot: int
    salespeople_with_no_snapshot: int
    locations_with_no_snapshot: int
    outstanding_issues: int
    drifted_deal_ids: list[str] | None = None
    correlation_id: str | None = None
    created_at: datetime


class ResolveDuplicatesRequest(TenantRequest):
    mode: DuplicateMode = "both"
    apply: bool = False


class DuplicateGroupRead(BaseModel):
    key: str
    company_ids: list[str]
    protected_ids: list[str]
    survivor_id: str | None
    candidate_ids: list[str]


class ResolveDuplicatesResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    duplicate_groups: int
    candidates: int
    deleted: int
    kept: int
    protected_count: int
    applied: bool
    groups: list[DuplicateGroupRead]


class RebuildReverseIndexRequest(TenantRequest):
    entity_type: EntityType
    entity_id: str = Field(min_length=1)


class RebuildReverseIndexResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    entity_id: str
    deals: int
    deal_ids: list[str]


class RebuildDealRequest(TenantRequest):
    deal_id: str = Field(min_length=1)


class DealAssociationsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    company_ids: list[str]
    contact_ids: list[str]
    salesperson_ids: list[str]
    location_ids: list[str]
    primary_company_id: str | None


class RepairDealsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    scanned: int
    repaired: int


class BackfillSnapshotsRequest(TenantRequest):
    dry_run: bool = True


class BackfillSnapshotsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    deals_scanned: int
    deals_updated: int
    entries_migrated: int
    unresolved: int
    dry_run: bool


class RetireLegacyFieldsRequest(BaseModel):
    remove_id_arrays: bool = False


class RetireLegacyFieldsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    updated_per_tenant: dict[str, int]
    total_updated: int
    skipped_tenants: dict[str, str]
    failed_tenants: dict[str, str]
