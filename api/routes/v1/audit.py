"""
api/routes/v1/audit.py -- Read-only audit trail queries.

All routes require roles_permissions R and return one AuditPageResponse,
newest first. page and size are clamped by AuditStore (page >= 1,
1 <= size <= 100), never rejected.

Routes:
  GET /api/v1/audit/logs
  GET /api/v1/audit/logs/user/{user_id}
  GET /api/v1/audit/logs/module/{module}
  GET /api/v1/audit/logs/date-range?start_date=YYYY-MM-DD&end_date=YYYY-MM-DD
  GET /api/v1/audit/logs/filter?email=&role=&action=
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import AuditPageResponse, ErrorDetail
from audit.store import DEFAULT_PAGE_SIZE, AuditStore
from auth.dependencies import require_permission
from auth.models import Principal
from rbac.models import READ, ROLES_MODULE

router = APIRouter()

_gate = require_permission(ROLES_MODULE, READ)


def _store(request: Request) -> AuditStore:
    return request.app.state.audit_store


@router.get("/audit/logs", response_model=AuditPageResponse)
def list_logs(
    request: Request,
    page: int = 1,
    size: int = DEFAULT_PAGE_SIZE,
    principal: Principal = Depends(_gate),
) -> AuditPageResponse:
    return AuditPageResponse.from_page(_store(request).list_all(page, size))


@router.get("/audit/logs/user/{user_id}", response_model=AuditPageResponse)
def list_logs_by_user(
    request: Request,
    user_id: int,
    page: int = 1,
    size: int = DEFAULT_PAGE_SIZE,
    principal: Principal = Depends(_gate),
) -> AuditPageResponse:
    return AuditPageResponse.from_page(_store(request).list_by_user(user_id, page, size))


@router.get("/audit/logs/module/{module}", response_model=AuditPageResponse)
def list_logs_by_module(
    request: Request,
    module: str,
    page: int = 1,
    size: int = DEFAULT_PAGE_SIZE,
    principal: Principal = Depends(_gate),
) -> AuditPageResponse:
    return AuditPageResponse.from_page(_store(request).list_by_module(module, page, size))


@router.get("/audit/logs/date-range", response_model=AuditPageResponse)
def list_logs_by_date_range(
    request: Request,
    start_date: date,
    end_date: date,
    page: int = 1,
    size: int = DEFAULT_PAGE_SIZE,
    principal: Principal = Depends(_gate),
) -> AuditPageResponse:
    """Events from the start of start_date through the end of end_date (UTC), inclusive."""
    if end_date < start_date:
        raise HTTPException(
            status_code=422,
            detail=ErrorDetail(code="invalid_range", message="end_date must not be before start_date.").model_dump(),
        )
    start = datetime.combine(start_date, time.min, tzinfo=timezone.utc)
    end = datetime.combine(end_date, time.max, tzinfo=timezone.utc)
    return AuditPageResponse.from_page(_store(request).list_by_date_range(start, end, page, size))


@router.get("/audit/logs/filter", response_model=AuditPageResponse)
def filter_logs(
    request: Request,
    email: Optional[str] = None,
    role: Optional[str] = None,
    action: Optional[str] = None,
    page: int = 1,
    size: int = DEFAULT_PAGE_SIZE,
    principal: Principal = Depends(_gate),
) -> AuditPageResponse:
    return AuditPageResponse.from_page(_store(request).list_by_filters(email, role, action, page, size))
