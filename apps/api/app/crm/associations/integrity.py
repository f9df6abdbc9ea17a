from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.config import get_settings
from app.crm.associations.errors import require_text
from app.crm.associations.jobs import job_run
from app.crm.associations.normalization import (
    SNAPSHOT_FIELDS,
    bucket_entries,
    count_missing_snapshots,
    explicit_primary_company_id,
    normalize_ids,
)
from app.crm.models import CRMDeal, CRMIntegrityReport
from app.crm.repositories import DealRepository, IntegrityReportRepository
from app.metrics import observe_integrity_issues


logger = logging.getLogger("app.crm.associations.integrity")

_SNAPSHOT_COUNTERS: dict[str, str] = {
    "companies": "companies_with_no_snapshot",
    "contacts": "contacts_with_no_snapshot",
    "salespeople": "salespeople_with_no_snapshot",
    "locations": "locations_with_no_snapshot",
}


@dataclass(slots=True)
class IntegrityCounts:
    total_deals: int = 0
    missing_company_ids: int = 0
    missing_primary_company: int = 0
    companies_with_no_snapshot: int = 0
    contacts_with_no_snapshot: int = 0
    salespeople_with_no_snapshot: int = 0
    locations_with_no_snapshot: int = 0
    drifted_deal_ids: list[str] = field(default_factory=list)

    def add_deal(self, deal: CRMDeal, *, sample_size: int) -> None:
        self.total_deals += 1
        drifted = False

        assoc_company_ids = normalize_ids(bucket_entries(deal.associations, "companies"))
        if assoc_company_ids and not normalize_ids(deal.company_ids):
            self.missing_company_ids += 1
            drifted = True

        effective_primary = explicit_primary_company_id(deal.primary_company_id, deal.associations)
        if effective_primary is None and assoc_company_ids:
            effective_primary = assoc_company_ids[0]
        if assoc_company_ids and effective_primary is None:
            self.missing_primary_company += 1
            drifted = True

        for bucket, counter in _SNAPSHOT_COUNTERS.items():
            missing = count_missing_snapshots(bucket_entries(deal.associations, bucket), SNAPSHOT_FIELDS[bucket])
            if missing:
                setattr(self, counter, getattr(self, counter) + missing)

        if drifted and len(self.drifted_deal_ids) < sample_size:
            self.drifted_deal_ids.append(deal.id)

    def issue_counts(self) -> dict[str, int]:
        return {
            "missing_company_ids": self.missing_company_ids,
            "missing_primary_company": self.missing_primary_company,
            "companies_with_no_snapshot": self.companies_with_no_snapshot,
            "contacts_with_no_snapshot": self.contacts_with_no_snapshot,
            "salespeople_with_no_snapshot": self.salespeople_with_no_snapshot,
            "locations_with_no_snapshot": self.locations_with_no_snapshot,
        }


@dataclass(slots=True)
class IntegrityReporter:
    deal_repository: DealRepository = field(default_factory=DealRepository)
    report_repository: IntegrityReportRepository = field(default_factory=IntegrityReportRepository)

    def scan(self, session: Session, tenant_id: str) -> IntegrityCounts:
        """Aggregate drift counters for one tenant without writing anything."""
        counts = IntegrityCounts()
        sample_size = get_settings().integrity_report_sample_size
        for deal in self.deal_repository.iter_all(session, tenant_id):
            counts.add_deal(deal, sample_size=sample_size)
        return counts

    def run_integrity_report(self, session: Session, tenant_id: str) -> CRMIntegrityReport:
        tenant_id = require_text(tenant_id, "tenant_id")
        with job_run("integrity_report", tenant_id=tenant_id) as result:
            counts = self.scan(session, tenant_id)
            report = CRMIntegrityReport(
                tenant_id=tenant_id,
                total_deals=counts.total_deals,
                drifted_deal_ids=counts.drifted_deal_ids,
                correlation_id=get_correlation_id(),
                **counts.issue_counts(),
            )
            session.add(report)
            session.commit()
            session.refresh(report)
            observe_integrity_issues(counts.issue_counts())
            result.update(total_deals=counts.total_deals, outstanding_issues=report.outstanding_issues)
        return report

    def latest_report(self, session: Session, tenant_id: str) -> CRMIntegrityReport | None:
        tenant_id = require_text(tenant_id, "tenant_id")
        return self.report_repository.latest(session, tenant_id)

    def run_for_all_tenants(self, session: Session) -> dict[str, CRMIntegrityReport]:
        reports: dict[str, CRMIntegrityReport] = {}
        for tenant_id in self.deal_repository.tenant_ids(session):
            try:
                reports[tenant_id] = self.run_integrity_report(session, tenant_id)
            except Exception as exc:
                session.rollback()
                logger.exception(
                    "integrity.tenant_failed",
                    extra={"tenant_id": tenant_id, "error": str(exc)[:500]},
                )
        return reports


integrity_reporter = IntegrityReporter()
