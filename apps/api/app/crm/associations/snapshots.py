"""Backfill display snapshots onto deal association entries.

Bare ids and entries with an incomplete snapshot are rewritten as
``{"id": ..., "snapshot": {...}}`` using the referenced entity in the same
tenant. Entries whose entity cannot be found are left as they are.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from app.crm.associations.batching import BatchCommitter, Throttle
from app.crm.associations.errors import require_text
from app.crm.associations.jobs import job_run
from app.crm.associations.normalization import BUCKETS, ENTITY_BUCKETS, SNAPSHOT_FIELDS, has_complete_snapshot, parse_entry
from app.crm.models import CRMCompany, CRMContact, CRMLocation, CRMSalesperson
from app.crm.repositories import DealRepository, EntityRepository


_BUCKET_ENTITIES = {bucket: entity_type for entity_type, bucket in ENTITY_BUCKETS.items()}


def _compact(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value not in (None, "")}


def build_snapshot(entity: Any) -> dict[str, Any]:
    if isinstance(entity, CRMCompany):
        name = entity.name or entity.company_name
        return _compact({"name": name, "companyName": entity.company_name or name, "domain": entity.domain})
    if isinstance(entity, CRMContact):
        full_name = entity.full_name or " ".join(part for part in (entity.first_name, entity.last_name) if part)
        return _compact({"fullName": full_name, "email": entity.email, "title": entity.title})
    if isinstance(entity, CRMSalesperson):
        return _compact({"displayName": entity.display_name, "email": entity.email})
    if isinstance(entity, CRMLocation):
        return _compact({"nickname": entity.nickname, "name": entity.name, "city": entity.city})
    return {}


@dataclass(slots=True)
class SnapshotBackfillResult:
    deals_scanned: int = 0
    deals_updated: int = 0
    entries_migrated: int = 0
    unresolved: int = 0
    dry_run: bool = True


@dataclass(slots=True)
class SnapshotBackfiller:
    deal_repository: DealRepository = field(default_factory=DealRepository)

    def backfill_snapshots(
        self,
        session: Session,
        tenant_id: str,
        dry_run: bool = True,
        *,
        throttle: Throttle | None = None,
    ) -> SnapshotBackfillResult:
        tenant_id = require_text(tenant_id, "tenant_id")
        limiter = throttle or Throttle()
        result = SnapshotBackfillResult(dry_run=dry_run)
        lookup = _EntityLookup(session, tenant_id)

        with job_run("backfill_snapshots", tenant_id=tenant_id, dry_run=dry_run) as job_result:
            with BatchCommitter(session, job_type="backfill_snapshots", throttle=limiter) as batch:
                for deal in self.deal_repository.iter_all(session, tenant_id):
                    result.deals_scanned += 1
                    if not isinstance(deal.associations, dict):
                        continue

                    updated = dict(deal.associations)
                    migrated = 0
                    for bucket in BUCKETS:
                        entries = updated.get(bucket)
                        if not isinstance(entries, list):
                            continue
                        rewritten, bucket_migrated, bucket_unresolved = self._rewrite_bucket(bucket, entries, lookup)
                        result.unresolved += bucket_unresolved
                        if bucket_migrated:
                            updated[bucket] = rewritten
                            migrated += bucket_migrated

                    if not migrated:
                        continue
                    result.deals_updated += 1
                    result.entries_migrated += migrated
                    if not dry_run:
                        batch.update(deal, {"associations": updated})
            job_result.update(
                deals_updated=result.deals_updated,
                entries_migrated=result.entries_migrated,
                unresolved=result.unresolved,
            )
        return result

    @staticmethod
    def _rewrite_bucket(bucket: str, entries: list[Any], lookup: _EntityLookup) -> tuple[list[Any], int, int]:
        required = SNAPSHOT_FIELDS[bucket]
        rewritten: list[Any] = []
        migrated = 0
        unresolved = 0
        for element in entries:
            if has_complete_snapshot(element, required):
                rewritten.append(element)
                continue
            entry = parse_entry(element)
            if entry is None:
                rewritten.append(element)
                continue
            snapshot = lookup.snapshot_for(_BUCKET_ENTITIES[bucket], entry.id)
            if snapshot is None or not any(snapshot.get(name) for name in required):
                unresolved += 1
                rewritten.append(element)
                continue
            base = dict(element) if isinstance(element, dict) else {}
            rewritten.append({**base, "id": entry.id, "snapshot": dict(snapshot)})
            migrated += 1
        return rewritten, migrated, unresolved


class _EntityLookup:
    """Per-run cache of entity snapshots, keyed by entity type and id."""

    def __init__(self, session: Session, tenant_id: str) -> None:
        self.session = session
        self.tenant_id = tenant_id
        self._repositories: dict[str, EntityRepository] = {}
        self._cache: dict[tuple[str, str], dict[str, Any] | None] = {}

    def snapshot_for(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        key = (entity_type, entity_id)
        if key not in self._cache:
            repository = self._repositories.setdefault(entity_type, EntityRepository(entity_type))
            entity = repository.get(self.session, self.tenant_id, entity_id)
            self._cache[key] = build_snapshot(entity) if entity is not None else None
        return self._cache[key]


snapshot_backfiller = SnapshotBackfiller()
