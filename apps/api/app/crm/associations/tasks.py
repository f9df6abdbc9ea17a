from __future__ import annotations

from typing import Any

from app.core import database
from app.core.celery_app import celery_app
from app.crm.associations.integrity import integrity_reporter
from app.crm.associations.retirement import legacy_field_retirement


@celery_app.task(name="app.tasks.associations.integrity_nightly")
def integrity_nightly_task() -> dict[str, Any]:
    session = database.SessionLocal()
    try:
        reports = integrity_reporter.run_for_all_tenants(session)
        return {tenant_id: report.outstanding_issues for tenant_id, report in reports.items()}
    finally:
        session.close()


@celery_app.task(name="app.tasks.associations.retire_legacy_deal_fields")
def retire_legacy_deal_fields_task(remove_id_arrays: bool = False) -> dict[str, Any]:
    session = database.SessionLocal()
    try:
        result = legacy_field_retirement.retire_legacy_deal_fields(session, remove_id_arrays=remove_id_arrays)
        return {
            "updated_per_tenant": result.updated_per_tenant,
            "total_updated": result.total_updated,
            "skipped_tenants": result.skipped_tenants,
            "failed_tenants": result.failed_tenants,
        }
    finally:
        session.close()
