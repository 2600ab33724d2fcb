# services/jurisdictions.py — Jurisdiction registry
from typing import List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ConflictError, NotFoundError
from models import (
    Jurisdiction, ObligationTemplate, Organization,
    DEFAULT_JURISDICTION_ID, DEFAULT_JURISDICTION_CODE,
)
from pagination import PaginationParams


class JurisdictionsService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, code: str, name: str, country: str = "AR", province: Optional[str] = None) -> Jurisdiction:
        code = code.lower()
        if await self._by_code(code):
            raise ConflictError(f"Ya existe una jurisdicción con el código: {code}")

        jurisdiction = Jurisdiction(code=code, name=name, country=country or "AR", province=province, is_active=True)
        self.db.add(jurisdiction)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(f"Ya existe una jurisdicción con el código: {code}")
        await self.db.refresh(jurisdiction)
        return jurisdiction

    async def find_all(self, params: PaginationParams, active_only: bool = True) -> Tuple[List[Jurisdiction], int]:
        conditions = [Jurisdiction.is_active.is_(True)] if active_only else []
        total = (await self.db.execute(select(func.count(Jurisdiction.id)).where(*conditions))).scalar() or 0
        order = Jurisdiction.name.desc() if params.descending else Jurisdiction.name.asc()
        stmt = select(Jurisdiction).where(*conditions).order_by(order).offset(params.offset).limit(params.limit)
        return list((await self.db.execute(stmt)).scalars().all()), total

    async def find_one(self, jurisdiction_id: str) -> Jurisdiction:
        jurisdiction = await self.db.get(Jurisdiction, jurisdiction_id)
        if not jurisdiction:
            raise NotFoundError(f"Jurisdicción no encontrada: {jurisdiction_id}")
        return jurisdiction

    async def counts(self, jurisdiction_id: str) -> Tuple[int, int]:
        """(template count, organization count)"""
        templates = await self.db.execute(
            select(func.count(ObligationTemplate.id)).where(ObligationTemplate.jurisdiction_id == jurisdiction_id)
        )
        organizations = await self.db.execute(
            select(func.count(Organization.id)).where(Organization.jurisdiction_id == jurisdiction_id)
        )
        return templates.scalar() or 0, organizations.scalar() or 0

    async def find_by_code(self, code: str) -> Jurisdiction:
        jurisdiction = await self._by_code(code.lower())
        if not jurisdiction:
            raise NotFoundError(f"Jurisdicción no encontrada con código: {code}")
        return jurisdiction

    async def update(self, jurisdiction_id: str, changes: dict) -> Jurisdiction:
        jurisdiction = await self.find_one(jurisdiction_id)

        new_code = changes.get("code")
        if new_code:
            new_code = new_code.lower()
            changes["code"] = new_code
            if new_code != jurisdiction.code and await self._by_code(new_code):
                raise ConflictError(f"Ya existe una jurisdicción con el código: {new_code}")

        for field, value in changes.items():
            setattr(jurisdiction, field, value)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(f"Ya existe una jurisdicción con el código: {new_code}")
        await self.db.refresh(jurisdiction)
        return jurisdiction

    async def deactivate(self, jurisdiction_id: str) -> None:
        jurisdiction = await self.find_one(jurisdiction_id)
        jurisdiction.is_active = False
        await self.db.commit()

    async def get_or_create_default(self) -> Jurisdiction:
        jurisdiction = await self._by_code(DEFAULT_JURISDICTION_CODE)
        if jurisdiction:
            return jurisdiction

        jurisdiction = Jurisdiction(
            id=DEFAULT_JURISDICTION_ID,
            code=DEFAULT_JURISDICTION_CODE,
            name="Rosario",
            country="AR",
            province="Santa Fe",
            is_active=True,
        )
        self.db.add(jurisdiction)
        await self.db.flush()
        return jurisdiction

    async def _by_code(self, code: str) -> Optional[Jurisdiction]:
        result = await self.db.execute(select(Jurisdiction).where(Jurisdiction.code == code))
        return result.scalar_one_or_none()
