from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from crm_automation.context import get_correlation_id
from crm_automation.core.database import get_db
from crm_automation.crm.errors import DependencyFailure, DmlError
from crm_automation.crm.schemas import (
    BulkIdsRequest,
    BulkInsertRequest,
    BulkUpdateRequest,
    OpportunityRead,
    SaveResult,
)
from crm_automation.crm.service import OpportunityService

opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])
opportunity_service = OpportunityService()

HTTP_424_FAILED_DEPENDENCY = 424


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
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def dml_error_response(request: Request, exc: DependencyFailure, code: str) -> JSONResponse:
    if isinstance(exc, DmlError):
        return error_response(
            request,
            status_code=422,
            code=code,
            message=exc.message,
            details=[result.model_dump(mode="json") for result in exc.results],
        )
    return error_response(
        request,
        status_code=HTTP_424_FAILED_DEPENDENCY,
        code=code,
        message=str(exc),
        details={"operation": exc.operation},
    )


@opportunities_router.post("/opportunities/bulk", response_model=list[SaveResult])
def bulk_insert_opportunities(
    request: Request,
    dto: BulkInsertRequest,
    db: Session = Depends(get_db),
) -> list[SaveResult] | JSONResponse:
    try:
        return opportunity_service.insert_opportunities(db, dto.records, all_or_none=dto.all_or_none)
    except DependencyFailure as exc:
        return dml_error_response(request, exc, "crm_opportunity_insert_failed")


@opportunities_router.patch("/opportunities/bulk", response_model=list[SaveResult])
def bulk_update_opportunities(
    request: Request,
    dto: BulkUpdateRequest,
    db: Session = Depends(get_db),
) -> list[SaveResult] | JSONResponse:
    try:
        return opportunity_service.update_opportunities(db, dto.records, all_or_none=dto.all_or_none)
    except DependencyFailure as exc:
        return dml_error_response(request, exc, "crm_opportunity_update_failed")


@opportunities_router.post("/opportunities/bulk-delete", response_model=list[SaveResult])
def bulk_delete_opportunities(
    request: Request,
    dto: BulkIdsRequest,
    db: Session = Depends(get_db),
) -> list[SaveResult] | JSONResponse:
    try:
        return opportunity_service.delete_opportunities(db, dto.ids, all_or_none=dto.all_or_none)
    except DependencyFailure as exc:
        return dml_error_response(request, exc, "crm_opportunity_delete_failed")


@opportunities_router.post("/opportunities/bulk-undelete", response_model=list[SaveResult])
def bulk_undelete_opportunities(
    request: Request,
    dto: BulkIdsRequest,
    db: Session = Depends(get_db),
) -> list[SaveResult] | JSONResponse:
    try:
        return opportunity_service.undelete_opportunities(db, dto.ids, all_or_none=dto.all_or_none)
    except DependencyFailure as exc:
        return dml_error_response(request, exc, "crm_opportunity_undelete_failed")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    include_deleted: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.get_opportunity(db, opportunity_id, include_deleted=include_deleted)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_opportunity_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
