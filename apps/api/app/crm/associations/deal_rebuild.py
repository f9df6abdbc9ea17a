from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from app.crm.associations.batching import BatchCommitter
from app.crm.associations.errors import NotFoundError, require_text
from app.crm.associations.jobs import job_run
from app.crm.associations.normalization import DerivedAssociations, derive_deal_associations
from app.crm.models import CRMDeal, utcnow
from app.crm.repositories import DealRepository


def derive_for_deal(deal: CRMDeal) -> DerivedAssociations:
    return derive_deal_associations(deal.associations, deal.primary_company_id)


def deal_is_drifted(deal: CRMDeal, derived: DerivedAssociations) -> bool:
    return any(
        [
            (deal.company_ids or []) != derived.company_ids,
            (deal.contact_ids or []) != derived.contact_ids,
            (deal.salesperson_ids or []) != derived.salesperson_ids,
            (deal.location_ids or []) != derived.location_ids,
            deal.primary_company_id != derived.primary_company_id,
        ]
    )


def _rebuild_values(derived: DerivedAssociations) -> dict[str, Any]:
    return {**derived.as_dict(), "associations_rebuilt_at": utcnow()}


@dataclass(slots=True)
class TenantRepairResult:
    scanned: int
    repaired: int


@dataclass(slots=True)
class DealAssociationRebuilder:
    deal_repository: DealRepository = field(default_factory=DealRepository)

    def rebuild_deal_associations(self, session: Session, tenant_id: str, deal_id: str) -> DerivedAssociations:
        tenant_id = require_text(tenant_id, "tenant_id")
        deal_id = require_text(deal_id, "deal_id")

        with job_run("rebuild_deal_associations", tenant_id=tenant_id, deal_id=deal_id):
            deal = self.deal_repository.get(session, tenant_id, deal_id)
            if deal is None:
                raise NotFoundError("deal not found", details={"tenant_id": tenant_id, "deal_id": deal_id})

            derived = derive_for_deal(deal)
            # All five derived fields land in one write.
            with BatchCommitter(session, job_type="rebuild_deal_associations") as batch:
                batch.update(deal, _rebuild_values(derived))
        return derived

    def repair_tenant_deals(self, session: Session, tenant_id: str) -> TenantRepairResult:
        """Rebuild every deal whose cached ids or primary pointer have drifted."""
        tenant_id = require_text(tenant_id, "tenant_id")
        scanned = 0
        repaired = 0

        with job_run("repair_tenant_deals", tenant_id=tenant_id) as result:
            with BatchCommitter(session, job_type="repair_tenant_deals") as batch:
                for deal in self.deal_repository.iter_all(session, tenant_id):
                    scanned += 1
                    derived = derive_for_deal(deal)
                    if not deal_is_drifted(deal, derived):
                        continue
                    batch.update(deal, _rebuild_values(derived))
                    repaired += 1
            result.update(scanned=scanned, repaired=repaired)
        return TenantRepairResult(scanned=scanned, repaired=repaired)


deal_association_rebuilder = DealAssociationRebuilder()
