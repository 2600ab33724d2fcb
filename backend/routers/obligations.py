# routers/obligations.py — Obligations, traffic-light dashboard and calendar
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from auth import OrgContext, require_org_role, require_org_member
from clock import Clock, get_clock
from compliance_engine import (
    Role, ObligationType, ObligationStatus, TrafficLight, EnrichedObligation, DashboardSummary,
)
from database import get_db_session
from mailer import Mailer, get_mailer
from models import Location, User
from pagination import APIModel, PaginationParams, get_pagination, ok, paginated
from services.audit import RequestMeta
from services.notifications import NotificationsService
from services.obligations import (
    ObligationsService, ObligationCreate, ObligationUpdate, ObligationStatusUpdate, ObligationFilters,
)

router = APIRouter(prefix="/api/v1/organizations/{organization_id}/obligations", tags=["Obligations"])

require_obligation_admin = require_org_role(Role.OWNER, Role.ADMIN)
require_status_change = require_org_role(Role.OWNER, Role.ADMIN, Role.MANAGER, Role.ACCOUNTANT)


# --- Schemas ---

class ObligationOut(APIModel):
    id: str
    organization_id: str
    location_id: Optional[str] = None
    template_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    type: ObligationType
    status: ObligationStatus
    due_date: datetime
    recurrence_rule: Optional[str] = None
    requires_review: bool
    required_evidence_count: int
    owner_user_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    traffic_light: TrafficLight
    days_until_due: int


class LocationRef(APIModel):
    id: str
    name: str
    address: Optional[str] = None


class OwnerRef(APIModel):
    id: str
    full_name: str
    email: str


class ObligationCounts(APIModel):
    documents: int
    tasks: int
    reviews: int


class ObligationDetailOut(ObligationOut):
    location: Optional[LocationRef] = None
    owner: Optional[OwnerRef] = None
    counts: ObligationCounts


class DashboardOut(APIModel):
    total: int
    completed: int
    overdue: int
    red: int
    yellow: int
    green: int
    upcoming_7_days: List[ObligationOut]
    overdue_list: List[ObligationOut]


def obligation_out(item: EnrichedObligation) -> ObligationOut:
    obligation = item.snapshot.ref
    return ObligationOut(
        id=obligation.id,
        organization_id=obligation.organization_id,
        location_id=obligation.location_id,
        template_id=obligation.template_id,
        title=obligation.title,
        description=obligation.description,
        type=obligation.type,
        status=obligation.status,
        due_date=obligation.due_date,
        recurrence_rule=obligation.recurrence_rule,
        requires_review=obligation.requires_review,
        required_evidence_count=obligation.required_evidence_count,
        owner_user_id=obligation.owner_user_id,
        created_at=obligation.created_at,
        updated_at=obligation.updated_at,
        traffic_light=item.traffic_light,
        days_until_due=item.days_until_due,
    )


def _dashboard_out(summary: DashboardSummary) -> DashboardOut:
    return DashboardOut(
        total=summary.total,
        completed=summary.completed,
        overdue=summary.overdue,
        red=summary.red,
        yellow=summary.yellow,
        green=summary.green,
        upcoming_7_days=[obligation_out(e) for e in summary.upcoming_7_days],
        overdue_list=[obligation_out(e) for e in summary.overdue_list],
    )


def get_obligation_filters(
    status: Optional[ObligationStatus] = None,
    type: Optional[ObligationType] = None,
    location_id: Optional[str] = Query(None, alias="locationId"),
    owner_user_id: Optional[str] = Query(None, alias="ownerUserId"),
    due_date_from: Optional[date] = Query(None, alias="dueDateFrom"),
    due_date_to: Optional[date] = Query(None, alias="dueDateTo"),
    traffic_light: Optional[TrafficLight] = Query(None, alias="trafficLight"),
) -> ObligationFilters:
    return ObligationFilters(
        status=status,
        type=type,
        location_id=location_id,
        owner_user_id=owner_user_id,
        due_date_from=due_date_from,
        due_date_to=due_date_to,
        traffic_light=traffic_light,
    )


# --- Endpoints ---

@router.post("", status_code=201)
async def create_obligation(
    data: ObligationCreate,
    request: Request,
    ctx: OrgContext = Depends(require_obligation_admin),
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
    mailer: Mailer = Depends(get_mailer),
):
    created = await ObligationsService(db, clock).create(ctx, data, RequestMeta.from_request(request))
    if created.snapshot.ref.requires_review:
        await NotificationsService(db, mailer, clock).notify_review_required(created.snapshot.ref)
    return ok(obligation_out(created))


@router.get("")
async def list_obligations(
    filters: ObligationFilters = Depends(get_obligation_filters),
    params: PaginationParams = Depends(get_pagination),
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    items, total = await ObligationsService(db, clock).find_all(ctx.organization_id, params, filters)
    return paginated([obligation_out(item) for item in items], total, params)


@router.get("/dashboard")
async def get_dashboard(
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    summary, _org = await ObligationsService(db, clock).dashboard(ctx.organization_id)
    return ok(_dashboard_out(summary))


@router.get("/calendar")
async def get_calendar(
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    items = await ObligationsService(db, clock).calendar(ctx.organization_id, start_date, end_date)
    return ok([obligation_out(item) for item in items])


@router.get("/{obligation_id}")
async def get_obligation(
    obligation_id: str,
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    detail = await ObligationsService(db, clock).find_one(ctx.organization_id, obligation_id)
    base = obligation_out(detail.enriched).model_dump()
    return ok(ObligationDetailOut(
        **base,
        location=LocationRef.model_validate(detail.location) if detail.location else None,
        owner=OwnerRef.model_validate(detail.owner) if detail.owner else None,
        counts=ObligationCounts(
            documents=detail.documents_count, tasks=detail.tasks_count, reviews=detail.reviews_count
        ),
    ))


@router.patch("/{obligation_id}")
async def update_obligation(
    obligation_id: str,
    data: ObligationUpdate,
    request: Request,
    ctx: OrgContext = Depends(require_obligation_admin),
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    updated = await ObligationsService(db, clock).update(ctx, obligation_id, data, RequestMeta.from_request(request))
    return ok(obligation_out(updated))


@router.patch("/{obligation_id}/status")
async def update_obligation_status(
    obligation_id: str,
    data: ObligationStatusUpdate,
    request: Request,
    ctx: OrgContext = Depends(require_status_change),
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    """Completion requires the evidence count and, when flagged, an approved review"""
    updated = await ObligationsService(db, clock).update_status(
        ctx, obligation_id, data.status, RequestMeta.from_request(request)
    )
    return ok(obligation_out(updated))


@router.delete("/{obligation_id}")
async def delete_obligation(
    obligation_id: str,
    request: Request,
    ctx: OrgContext = Depends(require_obligation_admin),
    db: AsyncSession = Depends(get_db_session),
):
    await ObligationsService(db).delete(ctx, obligation_id, RequestMeta.from_request(request))
    return ok({"success": True})
