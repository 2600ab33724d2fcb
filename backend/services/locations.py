# services/locations.py — Premises within an organisation
from typing import List, Optional, Tuple

from pydantic import Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import OrgContext
from errors import ConflictError, NotFoundError
from models import Location, Obligation
from pagination import APIModel, PaginationParams
from services.audit import AuditService, AuditActions, RequestMeta


class LocationCreate(APIModel):
    name: str = Field(..., min_length=1, max_length=255)
    address: Optional[str] = Field(None, max_length=500)
    rubric: Optional[str] = Field(None, max_length=255)


class LocationUpdate(APIModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    address: Optional[str] = Field(None, max_length=500)
    rubric: Optional[str] = Field(None, max_length=255)
    active: Optional[bool] = None


class LocationsService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    async def create(self, ctx: OrgContext, data: LocationCreate, meta: Optional[RequestMeta] = None) -> Location:
        name = data.name.strip()
        if await self._active_named(ctx.organization_id, name):
            raise ConflictError("Ya existe un local con ese nombre en esta organización")

        location = Location(
            organization_id=ctx.organization_id,
            name=name,
            address=data.address,
            rubric=data.rubric,
            active=True,
        )
        self.db.add(location)
        await self.db.flush()
        self.audit.log(
            ctx.organization_id, AuditActions.LOCATION_CREATED, "Location", location.id, ctx.user_id,
            {"name": location.name}, meta,
        )
        await self.db.commit()
        await self.db.refresh(location)
        return location

    async def find_all(
        self, organization_id: str, params: PaginationParams, include_inactive: bool = False
    ) -> Tuple[List[Location], int]:
        conditions = [Location.organization_id == organization_id]
        if not include_inactive:
            conditions.append(Location.active.is_(True))

        total = (await self.db.execute(select(func.count(Location.id)).where(*conditions))).scalar() or 0
        order = Location.name.desc() if params.descending else Location.name.asc()
        stmt = select(Location).where(*conditions).order_by(order).offset(params.offset).limit(params.limit)
        return list((await self.db.execute(stmt)).scalars().all()), total

    async def find_one(self, organization_id: str, location_id: str) -> Location:
        location = await self.db.get(Location, location_id)
        if not location or location.organization_id != organization_id:
            raise NotFoundError("Local no encontrado")
        return location

    async def obligation_count(self, location_id: str) -> int:
        result = await self.db.execute(select(func.count(Obligation.id)).where(Obligation.location_id == location_id))
        return result.scalar() or 0

    async def update(
        self, ctx: OrgContext, location_id: str, data: LocationUpdate, meta: Optional[RequestMeta] = None
    ) -> Location:
        location = await self.find_one(ctx.organization_id, location_id)
        changes = data.model_dump(exclude_unset=True)

        if changes.get("name"):
            changes["name"] = changes["name"].strip()
            if changes["name"] != location.name:
                clash = await self._active_named(ctx.organization_id, changes["name"])
                if clash and clash.id != location.id:
                    raise ConflictError("Ya existe un local con ese nombre en esta organización")

        for field, value in changes.items():
            setattr(location, field, value)
        self.audit.log(
            ctx.organization_id, AuditActions.LOCATION_UPDATED, "Location", location.id, ctx.user_id,
            {"changes": changes}, meta,
        )
        await self.db.commit()
        await self.db.refresh(location)
        return location

    async def deactivate(self, ctx: OrgContext, location_id: str, meta: Optional[RequestMeta] = None) -> None:
        location = await self.find_one(ctx.organization_id, location_id)
        location.active = False
        self.audit.log(
            ctx.organization_id, AuditActions.LOCATION_DEACTIVATED, "Location", location.id, ctx.user_id,
            {"name": location.name}, meta,
        )
        await self.db.commit()

    async def _active_named(self, organization_id: str, name: str) -> Optional[Location]:
        result = await self.db.execute(
            select(Location).where(
                Location.organization_id == organization_id,
                Location.name == name,
                Location.active.is_(True),
            )
        )
        return result.scalars().first()
