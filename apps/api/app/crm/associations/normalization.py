"""Canonical forms for deal association payloads.

An association bucket on a stored document is a list whose elements are
either bare id strings or objects carrying ``id`` (``dealId`` for deal-typed
entries) and an optional ``snapshot`` of display fields. Everything in this
module is pure: no session, no logging, and no exceptions for malformed
elements.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

BUCKETS: tuple[str, ...] = ("companies", "contacts", "salespeople", "locations")

SNAPSHOT_FIELDS: dict[str, tuple[str, ...]] = {
    "companies": ("name", "companyName"),
    "contacts": ("fullName", "name", "email"),
    "salespeople": ("displayName", "email"),
    "locations": ("nickname", "name", "city"),
}

# Deal column holding the canonical id cache for each bucket.
ID_ARRAY_COLUMNS: dict[str, str] = {
    "companies": "company_ids",
    "contacts": "contact_ids",
    "salespeople": "salesperson_ids",
    "locations": "location_ids",
}

ENTITY_BUCKETS: dict[str, str] = {
    "company": "companies",
    "contact": "contacts",
    "salesperson": "salespeople",
    "location": "locations",
}


@dataclass(frozen=True, slots=True)
class BareId:
    id: str

    @property
    def snapshot(self) -> None:
        return None


@dataclass(frozen=True, slots=True)
class AssociationRef:
    id: str
    snapshot: dict[str, Any] | None = field(default=None, compare=False)


AssociationEntry = BareId | AssociationRef


def _usable_id(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def parse_entry(value: Any) -> AssociationEntry | None:
    if isinstance(value, str):
        return BareId(value) if value else None
    if isinstance(value, dict):
        entry_id = _usable_id(value.get("id")) or _usable_id(value.get("dealId"))
        if entry_id is None:
            return None
        snapshot = value.get("snapshot")
        return AssociationRef(entry_id, snapshot if isinstance(snapshot, dict) else None)
    return None


def _elements(value: Any) -> Iterable[Any]:
    if value is None:
        return ()
    if isinstance(value, (str, dict)):
        return (value,)
    if isinstance(value, (list, tuple)):
        return value
    return ()


def parse_entries(value: Any) -> list[AssociationEntry]:
    parsed: list[AssociationEntry] = []
    for element in _elements(value):
        entry = parse_entry(element)
        if entry is not None:
            parsed.append(entry)
    return parsed


def normalize_ids(value: Any) -> list[str]:
    """Return the ids in ``value`` in first-seen order with duplicates removed.

    Never raises; elements without a usable id are skipped.
    """
    seen: set[str] = set()
    ids: list[str] = []
    for entry in parse_entries(value):
        if entry.id in seen:
            continue
        seen.add(entry.id)
        ids.append(entry.id)
    return ids


def has_complete_snapshot(value: Any, required_fields: Sequence[str] = ()) -> bool:
    if not isinstance(value, dict):
        return False
    snapshot = value.get("snapshot")
    if not isinstance(snapshot, dict):
        return False
    if not required_fields:
        return True
    return any(snapshot.get(name) for name in required_fields)


def count_missing_snapshots(entries: Any, required_fields: Sequence[str] = ()) -> int:
    """Count entries that carry no usable display snapshot.

    Bare ids always count as missing. When ``required_fields`` is given, a
    snapshot only counts as present if at least one of them is truthy.
    """
    return sum(1 for element in _elements(entries) if not has_complete_snapshot(element, required_fields))


def bucket_entries(associations: Any, bucket: str) -> Any:
    if not isinstance(associations, dict):
        return None
    return associations.get(bucket)


@dataclass(slots=True)
class DerivedAssociations:
    company_ids: list[str]
    contact_ids: list[str]
    salesperson_ids: list[str]
    location_ids: list[str]
    primary_company_id: str | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "company_ids": list(self.company_ids),
            "contact_ids": list(self.contact_ids),
            "salesperson_ids": list(self.salesperson_ids),
            "location_ids": list(self.location_ids),
            "primary_company_id": self.primary_company_id,
        }


def explicit_primary_company_id(primary_company_id: str | None, associations: Any) -> str | None:
    if primary_company_id:
        return primary_company_id
    if isinstance(associations, dict):
        return _usable_id(associations.get("primaryCompanyId"))
    return None


def derive_deal_associations(associations: Any, primary_company_id: str | None = None) -> DerivedAssociations:
    company_ids = normalize_ids(bucket_entries(associations, "companies"))
    primary = explicit_primary_company_id(primary_company_id, associations)
    if primary is None and company_ids:
        primary = company_ids[0]
    return DerivedAssociations(
        company_ids=company_ids,
        contact_ids=normalize_ids(bucket_entries(associations, "contacts")),
        salesperson_ids=normalize_ids(bucket_entries(associations, "salespeople")),
        location_ids=normalize_ids(bucket_entries(associations, "locations")),
        primary_company_id=primary,
    )
