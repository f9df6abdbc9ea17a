from app.crm.associations.deal_rebuild import DealAssociationRebuilder, deal_association_rebuilder
from app.crm.associations.duplicates import DuplicateCompanyResolver, duplicate_company_resolver
from app.crm.associations.errors import (
    AssociationError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    PreconditionFailedError,
)
from app.crm.associations.integrity import IntegrityReporter, integrity_reporter
from app.crm.associations.normalization import count_missing_snapshots, normalize_ids
from app.crm.associations.retirement import LegacyFieldRetirement, legacy_field_retirement
from app.crm.associations.reverse_index import ReverseIndexRebuilder, reverse_index_rebuilder
from app.crm.associations.snapshots import SnapshotBackfiller, snapshot_backfiller

__all__ = [
    "AssociationError",
    "InternalError",
    "InvalidArgumentError",
    "NotFoundError",
    "PreconditionFailedError",
    "normalize_ids",
    "count_missing_snapshots",
    "IntegrityReporter",
    "integrity_reporter",
    "DuplicateCompanyResolver",
    "duplicate_company_resolver",
    "ReverseIndexRebuilder",
    "reverse_index_rebuilder",
    "DealAssociationRebuilder",
    "deal_association_rebuilder",
    "LegacyFieldRetirement",
    "legacy_field_retirement",
    "SnapshotBackfiller",
    "snapshot_backfiller",
]
