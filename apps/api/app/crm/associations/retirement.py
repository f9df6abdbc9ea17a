from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from app import audit
from app.crm.associations.batching import BatchCommitter
from app.crm.associations.errors import PreconditionFailedError
from app.crm.associations.jobs import job_run
from app.crm.models import CRMDeal
from app.crm.repositories import DealRepository, IntegrityReportRepository


logger = logging.getLogger("app.crm.associations.retirement")

LEGACY_SCALAR_FIELDS: tuple[str, ...] = ("company_id", "company_name")
# company_ids is the canonical replacement and is never retired.
OPTIONAL_ID_ARRAY_FIELDS: tuple[str, ...] = ("contact_ids", "salesperson_ids", "location_ids")


@dataclass(slots=True)
class RetirementResult:
    updated_per_tenant: dict[str, int] = field(default_factory=dict)
    skipped_tenants: dict[str, str] = field(default_factory=dict)
    failed_tenants: dict[str, str] = field(default_factory=dict)

    @property
    def total_updated(self) -> int:
        return sum(self.updated_per_tenant.values())


@dataclass(slots=True)
class LegacyFieldRetirement:
    deal_repository: DealRepository = field(default_factory=DealRepository)
    report_repository: IntegrityReportRepository = field(default_factory=IntegrityReportRepository)

    def ensure_tenant_cleared(self, session: Session, tenant_id: str) -> None:
        report = self.report_repository.latest(session, tenant_id)
        if report is None:
            raise PreconditionFailedError(
                "no integrity report for tenant",
                details={"tenant_id": tenant_id},
            )
        if report.outstanding_issues > 0:
            raise PreconditionFailedError(
                "latest integrity report has outstanding issues",
                details={"tenant_id": tenant_id, "report_id": report.id, "outstanding_issues": report.outstanding_issues},
            )

    def retire_tenant(self, session: Session, tenant_id: str, *, remove_id_arrays: bool = False) -> int:
        self.ensure_tenant_cleared(session, tenant_id)
        fields = LEGACY_SCALAR_FIELDS + (OPTIONAL_ID_ARRAY_FIELDS if remove_id_arrays else ())
        updated = 0
        with BatchCommitter(session, job_type="retire_legacy_deal_fields") as batch:
            for page in self.deal_repository.iter_pages(session, tenant_id):
                for deal in page:
                    values = _cleared_fields(deal, fields)
                    if values:
                        batch.update(deal, values)
                        updated += 1
        return updated

    def retire_legacy_deal_fields(
        self,
        session: Session,
        remove_id_arrays: bool = False,
        *,
        actor_user_id: str = "system",
    ) -> RetirementResult:
        result = RetirementResult()
        with job_run("retire_legacy_deal_fields", remove_id_arrays=remove_id_arrays) as job_result:
            tenant_ids = sorted(
                set(self.deal_repository.tenant_ids(session)) | set(self.report_repository.tenant_ids(session))
            )
            for tenant_id in tenant_ids:
                try:
                    updated = self.retire_tenant(session, tenant_id, remove_id_arrays=remove_id_arrays)
                except PreconditionFailedError as exc:
                    result.skipped_tenants[tenant_id] = exc.message
                    logger.warning("retirement.tenant_skipped", extra={"tenant_id": tenant_id, "error": exc.message})
                    continue
                except Exception as exc:
                    session.rollback()
                    result.failed_tenants[tenant_id] = str(exc)[:500]
                    logger.exception("retirement.tenant_failed", extra={"tenant_id": tenant_id, "error": str(exc)[:500]})
                    continue

                result.updated_per_tenant[tenant_id] = updated
                audit.record(
                    actor_user_id=actor_user_id,
                    entity_type="crm.tenant",
                    entity_id=tenant_id,
                    action="legacy_deal_fields_retired",
                    before=None,
                    after={"updated": updated, "remove_id_arrays": remove_id_arrays},
                )
            job_result.update(total_updated=result.total_updated)
        return result


def _cleared_fields(deal: CRMDeal, fields: tuple[str, ...]) -> dict[str, None]:
    return {name: None for name in fields if getattr(deal, name) is not None}


legacy_field_retirement = LegacyFieldRetirement()
