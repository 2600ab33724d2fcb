# routers/reports.py — Compliance report, obligation listing and CSV export
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from auth import OrgContext, require_org_role
from clock import Clock, get_clock
from compliance_engine import Role
from database import get_db_session
from pagination import ok
from routers.obligations import get_obligation_filters
from services.obligations import ObligationFilters
from services.reports import ReportsService

router = APIRouter(prefix="/api/v1/organizations/{organization_id}/reports", tags=["Reports"])

require_report_reader = require_org_role(Role.OWNER, Role.ADMIN, Role.ACCOUNTANT)


@router.get("/compliance")
async def compliance_report(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    ctx: OrgContext = Depends(require_report_reader),
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    """Defaults to the last month, filtered on obligation creation time"""
    return ok(await ReportsService(db, clock).compliance_report(ctx.organization_id, start_date, end_date))


@router.get("/obligations")
async def obligations_report(
    filters: ObligationFilters = Depends(get_obligation_filters),
    ctx: OrgContext = Depends(require_report_reader),
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    return ok(await ReportsService(db, clock).obligations_report(ctx.organization_id, filters))


@router.get("/export/csv")
async def export_csv(
    filters: ObligationFilters = Depends(get_obligation_filters),
    ctx: OrgContext = Depends(require_report_reader),
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    service = ReportsService(db, clock)
    content = await service.export_csv(ctx.organization_id, filters)
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{service.export_filename()}"'},
    )
