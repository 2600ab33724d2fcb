# routers/locations.py — Premises of an organisation
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from auth import OrgContext, require_org_role, require_org_member
from compliance_engine import Role
from database import get_db_session
from pagination import APIModel, PaginationParams, get_pagination, ok, paginated
from services.audit import RequestMeta
from services.locations import LocationsService, LocationCreate, LocationUpdate

router = APIRouter(prefix="/api/v1/organizations/{organization_id}/locations", tags=["Locations"])

require_location_admin = require_org_role(Role.OWNER, Role.ADMIN)


class LocationOut(APIModel):
    id: str
    organization_id: str
    name: str
    address: Optional[str] = None
    rubric: Optional[str] = None
    active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LocationDetailOut(LocationOut):
    obligation_count: int = 0


@router.post("", status_code=201)
async def create_location(
    data: LocationCreate,
    request: Request,
    ctx: OrgContext = Depends(require_location_admin),
    db: AsyncSession = Depends(get_db_session),
):
    location = await LocationsService(db).create(ctx, data, RequestMeta.from_request(request))
    return ok(LocationOut.model_validate(location))


@router.get("")
async def list_locations(
    include_inactive: bool = Query(False, alias="includeInactive"),
    params: PaginationParams = Depends(get_pagination),
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
):
    items, total = await LocationsService(db).find_all(ctx.organization_id, params, include_inactive)
    return paginated([LocationOut.model_validate(loc) for loc in items], total, params)


@router.get("/{location_id}")
async def get_location(
    location_id: str,
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
):
    service = LocationsService(db)
    location = await service.find_one(ctx.organization_id, location_id)
    out = LocationDetailOut.model_validate(location)
    out.obligation_count = await service.obligation_count(location.id)
    return ok(out)


@router.patch("/{location_id}")
async def update_location(
    location_id: str,
    data: LocationUpdate,
    request: Request,
    ctx: OrgContext = Depends(require_location_admin),
    db: AsyncSession = Depends(get_db_session),
):
    location = await LocationsService(db).update(ctx, location_id, data, RequestMeta.from_request(request))
    return ok(LocationOut.model_validate(location))


@router.delete("/{location_id}")
async def deactivate_location(
    location_id: str,
    request: Request,
    ctx: OrgContext = Depends(require_location_admin),
    db: AsyncSession = Depends(get_db_session),
):
    await LocationsService(db).deactivate(ctx, location_id, RequestMeta.from_request(request))
    return ok({"success": True})
