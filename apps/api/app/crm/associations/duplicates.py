"""Duplicate company detection and collapse.

Companies are grouped by a normalized identity key. Inside a group, any
company that a deal still points at is protected and never deleted; among
the rest, the most recently touched company survives.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal
from urllib.parse import urlsplit

from sqlalchemy.orm import Session

from app import audit
from app.crm.associations.batching import BatchCommitter
from app.crm.associations.errors import InvalidArgumentError, require_text
from app.crm.associations.jobs import job_run
from app.crm.associations.normalization import bucket_entries, normalize_ids
from app.crm.models import CRMCompany
from app.crm.repositories import CompanyRepository, DealRepository
from app.metrics import observe_companies_deleted


logger = logging.getLogger("app.crm.associations.duplicates")

DuplicateMode = Literal["name", "domain", "both"]
DUPLICATE_MODES: tuple[str, ...] = ("name", "domain", "both")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_NON_ALNUM_RE = re.compile(r"[\W_]+")
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


def normalize_company_name(value: str | None) -> str:
    if not value:
        return ""
    return _NON_ALNUM_RE.sub(" ", value.lower()).strip()


def normalize_domain(value: str | None) -> str:
    """Reduce a domain or URL to its lowercase host without ``www.``."""
    if not value or not value.strip():
        return ""
    raw = value.strip()
    if not _SCHEME_RE.match(raw):
        raw = f"//{raw}"
    try:
        host = urlsplit(raw).hostname or ""
    except ValueError:
        return ""
    host = host.rstrip(".")
    if host.startswith("www."):
        host = host[4:]
    return host


def company_name_key(company: CRMCompany) -> str:
    return normalize_company_name(company.name or company.company_name)


def company_domain_key(company: CRMCompany) -> str:
    return normalize_domain(company.domain) or normalize_domain(company.website)


def grouping_key(company: CRMCompany, mode: str) -> str | None:
    if mode == "name":
        name_key = company_name_key(company)
        return f"name:{name_key}" if name_key else None
    if mode == "domain":
        domain_key = company_domain_key(company)
        return f"domain:{domain_key}" if domain_key else None
    domain_key = company_domain_key(company)
    if domain_key:
        return f"domain:{domain_key}"
    name_key = company_name_key(company)
    return f"name:{name_key}" if name_key else None


def effective_timestamp(company: CRMCompany) -> datetime:
    value = company.updated_at or company.created_at
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def has_deal_back_reference(company: CRMCompany) -> bool:
    return bool(normalize_ids(bucket_entries(company.associations, "deals")))


@dataclass(slots=True)
class DuplicateGroup:
    key: str
    companies: list[CRMCompany]
    protected: list[CRMCompany] = field(default_factory=list)
    survivor: CRMCompany | None = None
    candidates: list[CRMCompany] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "company_ids": [company.id for company in self.companies],
            "protected_ids": [company.id for company in self.protected],
            "survivor_id": self.survivor.id if self.survivor is not None else None,
            "candidate_ids": [company.id for company in self.candidates],
        }


def plan_group(key: str, companies: list[CRMCompany], referenced_ids: set[str]) -> DuplicateGroup:
    group = DuplicateGroup(key=key, companies=companies)
    unreferenced: list[CRMCompany] = []
    for company in companies:
        if company.id in referenced_ids or company.has_active_deals or has_deal_back_reference(company):
            group.protected.append(company)
        else:
            unreferenced.append(company)

    if len(unreferenced) > 1:
        # Newest first; equal timestamps fall back to ascending id.
        unreferenced.sort(key=lambda company: company.id)
        unreferenced.sort(key=effective_timestamp, reverse=True)
        group.survivor = unreferenced[0]
        group.candidates = unreferenced[1:]
    elif unreferenced:
        group.survivor = unreferenced[0]
    return group


def find_duplicate_groups(companies: list[CRMCompany], mode: str, referenced_ids: set[str]) -> list[DuplicateGroup]:
    buckets: dict[str, list[CRMCompany]] = defaultdict(list)
    for company in companies:
        key = grouping_key(company, mode)
        if key is not None:
            buckets[key].append(company)
    return [
        plan_group(key, members, referenced_ids)
        for key, members in sorted(buckets.items())
        if len(members) > 1
    ]


@dataclass(slots=True)
class DuplicateResolution:
    duplicate_groups: int
    candidates: int
    deleted: int
    kept: int
    protected_count: int
    applied: bool
    groups: list[dict[str, Any]]


@dataclass(slots=True)
class DuplicateCompanyResolver:
    company_repository: CompanyRepository = field(default_factory=CompanyRepository)
    deal_repository: DealRepository = field(default_factory=DealRepository)

    def referenced_company_ids(self, session: Session, tenant_id: str) -> set[str]:
        referenced: set[str] = set()
        for deal in self.deal_repository.iter_all(session, tenant_id):
            referenced.update(normalize_ids(deal.company_ids))
            referenced.update(normalize_ids(bucket_entries(deal.associations, "companies")))
            for value in (deal.primary_company_id, deal.company_id):
                if value:
                    referenced.add(value)
        return referenced

    def resolve_duplicates(
        self,
        session: Session,
        tenant_id: str,
        mode: str = "both",
        apply: bool = False,
        *,
        actor_user_id: str = "system",
    ) -> DuplicateResolution:
        tenant_id = require_text(tenant_id, "tenant_id")
        if mode not in DUPLICATE_MODES:
            raise InvalidArgumentError(f"mode must be one of {', '.join(DUPLICATE_MODES)}")

        with job_run("resolve_duplicate_companies", tenant_id=tenant_id, mode=mode, apply=apply) as result:
            companies = self.company_repository.list_all(session, tenant_id)
            referenced_ids = self.referenced_company_ids(session, tenant_id)
            groups = find_duplicate_groups(companies, mode, referenced_ids)

            candidates = [company for group in groups for company in group.candidates]
            protected_count = sum(len(group.protected) for group in groups)
            grouped_total = sum(len(group.companies) for group in groups)
            summaries = [group.summary() for group in groups]

            deleted = 0
            if apply and candidates:
                deleted = self._delete_candidates(session, tenant_id, candidates, actor_user_id)

            resolution = DuplicateResolution(
                duplicate_groups=len(groups),
                candidates=len(candidates),
                deleted=deleted,
                kept=grouped_total - len(candidates),
                protected_count=protected_count,
                applied=apply,
                groups=summaries,
            )
            result.update(
                duplicate_groups=resolution.duplicate_groups,
                candidates=resolution.candidates,
                deleted=resolution.deleted,
            )
        return resolution

    def _delete_candidates(
        self,
        session: Session,
        tenant_id: str,
        candidates: list[CRMCompany],
        actor_user_id: str,
    ) -> int:
        deleted_ids: list[str] = []

        def committed(company_ids: list[Any]) -> None:
            # Only ids whose delete has landed are audited.
            for company_id in company_ids:
                audit.record(
                    actor_user_id=actor_user_id,
                    entity_type="crm.company",
                    entity_id=company_id,
                    action="duplicate_company_deleted",
                    before={"tenant_id": tenant_id},
                    after=None,
                )
            deleted_ids.extend(company_ids)
            observe_companies_deleted(len(company_ids))

        try:
            with BatchCommitter(session, job_type="resolve_duplicate_companies", on_commit=committed) as batch:
                for company in candidates:
                    batch.delete(company, key=company.id)
        finally:
            logger.info(
                "duplicates.deleted",
                extra={"tenant_id": tenant_id, "deleted": len(deleted_ids)},
            )
        return len(deleted_ids)


duplicate_company_resolver = DuplicateCompanyResolver()
