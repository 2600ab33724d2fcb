# routers/jurisdictions.py — Jurisdiction registry (public read, platform-admin write)
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_platform_admin
from database import get_db_session
from pagination import APIModel, PaginationParams, get_pagination, ok, paginated
from services.jurisdictions import JurisdictionsService

router = APIRouter(prefix="/api/v1/jurisdictions", tags=["Jurisdictions"])

JURISDICTION_CODE_PATTERN = r"^[a-zA-Z]{2}-[a-zA-Z]{2,3}-[a-zA-Z0-9-]+$"


# --- Schemas ---

class JurisdictionCreate(APIModel):
    code: str = Field(..., max_length=50, pattern=JURISDICTION_CODE_PATTERN)
    name: str = Field(..., min_length=1, max_length=255)
    country: str = Field("AR", min_length=2, max_length=10)
    province: Optional[str] = Field(None, max_length=100)


class JurisdictionUpdate(APIModel):
    code: Optional[str] = Field(None, max_length=50, pattern=JURISDICTION_CODE_PATTERN)
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    country: Optional[str] = Field(None, min_length=2, max_length=10)
    province: Optional[str] = Field(None, max_length=100)
    is_active: Optional[bool] = None


class JurisdictionOut(APIModel):
    id: str
    code: str
    name: str
    country: str
    province: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class JurisdictionDetailOut(JurisdictionOut):
    template_count: int = 0
    organization_count: int = 0


# --- Endpoints ---

@router.get("")
async def list_jurisdictions(
    params: PaginationParams = Depends(get_pagination),
    db: AsyncSession = Depends(get_db_session),
):
    items, total = await JurisdictionsService(db).find_all(params, active_only=True)
    return paginated([JurisdictionOut.model_validate(j) for j in items], total, params)


@router.get("/all")
async def list_all_jurisdictions(
    params: PaginationParams = Depends(get_pagination),
    _admin=Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Including inactive jurisdictions"""
    items, total = await JurisdictionsService(db).find_all(params, active_only=False)
    return paginated([JurisdictionOut.model_validate(j) for j in items], total, params)


@router.get("/default")
async def get_default_jurisdiction(db: AsyncSession = Depends(get_db_session)):
    jurisdiction = await JurisdictionsService(db).get_or_create_default()
    await db.commit()
    return ok(JurisdictionOut.model_validate(jurisdiction))


@router.get("/by-code/{code}")
async def get_jurisdiction_by_code(code: str, db: AsyncSession = Depends(get_db_session)):
    return ok(JurisdictionOut.model_validate(await JurisdictionsService(db).find_by_code(code)))


@router.get("/{jurisdiction_id}")
async def get_jurisdiction(jurisdiction_id: str, db: AsyncSession = Depends(get_db_session)):
    service = JurisdictionsService(db)
    jurisdiction = await service.find_one(jurisdiction_id)
    templates, organizations = await service.counts(jurisdiction.id)
    out = JurisdictionDetailOut.model_validate(jurisdiction)
    out.template_count = templates
    out.organization_count = organizations
    return ok(out)


@router.post("", status_code=201)
async def create_jurisdiction(
    data: JurisdictionCreate,
    _admin=Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db_session),
):
    jurisdiction = await JurisdictionsService(db).create(data.code, data.name, data.country, data.province)
    return ok(JurisdictionOut.model_validate(jurisdiction))


@router.patch("/{jurisdiction_id}")
async def update_jurisdiction(
    jurisdiction_id: str,
    data: JurisdictionUpdate,
    _admin=Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db_session),
):
    jurisdiction = await JurisdictionsService(db).update(jurisdiction_id, data.model_dump(exclude_unset=True))
    return ok(JurisdictionOut.model_validate(jurisdiction))


@router.delete("/{jurisdiction_id}")
async def deactivate_jurisdiction(
    jurisdiction_id: str,
    _admin=Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db_session),
):
    await JurisdictionsService(db).deactivate(jurisdiction_id)
    return ok({"success": True})
