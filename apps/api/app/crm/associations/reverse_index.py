from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from app.crm.associations.batching import BatchCommitter
from app.crm.associations.errors import InvalidArgumentError, NotFoundError, require_text
from app.crm.associations.jobs import job_run
from app.crm.associations.normalization import ENTITY_BUCKETS, ID_ARRAY_COLUMNS
from app.crm.models import utcnow
from app.crm.repositories import DealRepository, EntityRepository


@dataclass(slots=True)
class ReverseIndexResult:
    entity_type: str
    entity_id: str
    deal_ids: list[str]

    @property
    def deals(self) -> int:
        return len(self.deal_ids)


@dataclass(slots=True)
class ReverseIndexRebuilder:
    deal_repository: DealRepository = field(default_factory=DealRepository)

    def rebuild_reverse_index(
        self,
        session: Session,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
    ) -> ReverseIndexResult:
        """Recompute ``associations.deals`` on one entity from the deal collection."""
        tenant_id = require_text(tenant_id, "tenant_id")
        entity_type = require_text(entity_type, "entity_type").lower()
        entity_id = require_text(entity_id, "entity_id")
        if entity_type not in ENTITY_BUCKETS:
            raise InvalidArgumentError(f"entity_type must be one of {', '.join(sorted(ENTITY_BUCKETS))}")

        with job_run("rebuild_reverse_index", tenant_id=tenant_id, entity_type=entity_type) as result:
            entity = EntityRepository(entity_type).get(session, tenant_id, entity_id)
            if entity is None:
                raise NotFoundError(
                    f"{entity_type} not found",
                    details={"tenant_id": tenant_id, "entity_type": entity_type, "entity_id": entity_id},
                )

            id_column = ID_ARRAY_COLUMNS[ENTITY_BUCKETS[entity_type]]
            deal_ids = self.deal_repository.ids_referencing(session, tenant_id, id_column, entity_id)

            associations = dict(entity.associations) if isinstance(entity.associations, dict) else {}
            associations["deals"] = list(deal_ids)
            with BatchCommitter(session, job_type="rebuild_reverse_index") as batch:
                batch.update(entity, {"associations": associations, "reverse_index_rebuilt_at": utcnow()})
            result.update(deals=len(deal_ids))
        return ReverseIndexResult(entity_type=entity_type, entity_id=entity_id, deal_ids=deal_ids)


reverse_index_rebuilder = ReverseIndexRebuilder()
