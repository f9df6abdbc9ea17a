from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user
from app.core.database import get_db
from app.crm.associations import (
    AssociationError,
    deal_association_rebuilder,
    duplicate_company_resolver,
    integrity_reporter,
    legacy_field_retirement,
    reverse_index_rebuilder,
    snapshot_backfiller,
)
from app.crm.schemas import (
    BackfillSnapshotsRequest,
    BackfillSnapshotsResponse,
    DealAssociationsRead,
    IntegrityReportRead,
    RebuildDealRequest,
    RebuildReverseIndexRequest,
    RebuildReverseIndexResponse,
    RepairDealsResponse,
    ResolveDuplicatesRequest,
    ResolveDuplicatesResponse,
    RetireLegacyFieldsRequest,
    RetireLegacyFieldsResponse,
    TenantRequest,
)

router = APIRouter(prefix="/api/crm/associations", tags=["crm.associations"])

READ_PERMISSION = "crm.associations.read"
MANAGE_PERMISSION = "crm.associations.manage"


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failure(request: Request, exc: AssociationError | HTTPException, fallback_code: str) -> JSONResponse:
    if isinstance(exc, AssociationError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=fallback_code,
        message=str(exc.detail),
        details=exc.detail,
    )


def require_permission(user: AuthUser, permission: str) -> None:
    if permission not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@router.post("/integrity-reports", response_model=IntegrityReportRead, status_code=status.HTTP_201_CREATED)
def run_integrity_report(
    request: Request,
    dto: TenantRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> IntegrityReportRead | JSONResponse:
    try:
        require_permission(user, READ_PERMISSION)
        report = integrity_reporter.run_integrity_report(db, dto.tenant_id)
        return IntegrityReportRead.model_validate(report)
    except (AssociationError, HTTPException) as exc:
        return _failure(request, exc, "crm_integrity_report_failed")


@router.get("/integrity-reports/latest", response_model=IntegrityReportRead)
def get_latest_integrity_report(
    request: Request,
    tenant_id: str = Query(min_length=1),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> IntegrityReportRead | JSONResponse:
    try:
        require_permission(user, READ_PERMISSION)
        report = integrity_reporter.latest_report(db, tenant_id)
        if report is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="integrity report not found")
        return IntegrityReportRead.model_validate(report)
    except (AssociationError, HTTPException) as exc:
        return _failure(request, exc, "crm_integrity_report_get_failed")


@router.post("/companies/resolve-duplicates", response_model=ResolveDuplicatesResponse)
def resolve_duplicate_companies(
    request: Request,
    dto: ResolveDuplicatesRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ResolveDuplicatesResponse | JSONResponse:
    try:
        require_permission(user, MANAGE_PERMISSION if dto.apply else READ_PERMISSION)
        resolution = duplicate_company_resolver.resolve_duplicates(
            db,
            dto.tenant_id,
            mode=dto.mode,
            apply=dto.apply,
            actor_user_id=user.sub,
        )
        return ResolveDuplicatesResponse.model_validate(resolution)
    except (AssociationError, HTTPException) as exc:
        return _failure(request, exc, "crm_resolve_duplicates_failed")


@router.post("/reverse-index/rebuild", response_model=RebuildReverseIndexResponse)
def rebuild_reverse_index(
    request: Request,
    dto: RebuildReverseIndexRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> RebuildReverseIndexResponse | JSONResponse:
    try:
        require_permission(user, MANAGE_PERMISSION)
        result = reverse_index_rebuilder.rebuild_reverse_index(db, dto.tenant_id, dto.entity_type, dto.entity_id)
        return RebuildReverseIndexResponse.model_validate(result)
    except (AssociationError, HTTPException) as exc:
        return _failure(request, exc, "crm_reverse_index_rebuild_failed")


@router.post("/deals/rebuild", response_model=DealAssociationsRead)
def rebuild_deal_associations(
    request: Request,
    dto: RebuildDealRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> DealAssociationsRead | JSONResponse:
    try:
        require_permission(user, MANAGE_PERMISSION)
        derived = deal_association_rebuilder.rebuild_deal_associations(db, dto.tenant_id, dto.deal_id)
        return DealAssociationsRead.model_validate(derived)
    except (AssociationError, HTTPException) as exc:
        return _failure(request, exc, "crm_deal_rebuild_failed")


@router.post("/deals/repair", response_model=RepairDealsResponse)
def repair_tenant_deals(
    request: Request,
    dto: TenantRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> RepairDealsResponse | JSONResponse:
    try:
        require_permission(user, MANAGE_PERMISSION)
        result = deal_association_rebuilder.repair_tenant_deals(db, dto.tenant_id)
        return RepairDealsResponse.model_validate(result)
    except (AssociationError, HTTPException) as exc:
        return _failure(request, exc, "crm_deal_repair_failed")


@router.post("/snapshots/backfill", response_model=BackfillSnapshotsResponse)
def backfill_snapshots(
    request: Request,
    dto: BackfillSnapshotsRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> BackfillSnapshotsResponse | JSONResponse:
    try:
        require_permission(user, READ_PERMISSION if dto.dry_run else MANAGE_PERMISSION)
        result = snapshot_backfiller.backfill_snapshots(db, dto.tenant_id, dry_run=dto.dry_run)
        return BackfillSnapshotsResponse.model_validate(result)
    except (AssociationError, HTTPException) as exc:
        return _failure(request, exc, "crm_snapshot_backfill_failed")


@router.post("/legacy-fields/retire", response_model=RetireLegacyFieldsResponse)
def retire_legacy_deal_fields(
    request: Request,
    dto: RetireLegacyFieldsRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> RetireLegacyFieldsResponse | JSONResponse:
    try:
        require_permission(user, MANAGE_PERMISSION)
        result = legacy_field_retirement.retire_legacy_deal_fields(
            db,
            remove_id_arrays=dto.remove_id_arrays,
            actor_user_id=user.sub,
        )
        return RetireLegacyFieldsResponse.model_validate(result)
    except (AssociationError, HTTPException) as exc:
        return _failure(request, exc, "crm_legacy_field_retirement_failed")
