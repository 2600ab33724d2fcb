# services/obligations.py — Obligation lifecycle, dashboard and overdue sweep
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple

from pydantic import Field
from sqlalchemy import select, func, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from auth import OrgContext
from clock import Clock, as_utc
from compliance_engine import (
    ObligationType, ObligationStatus, ReviewStatus, TrafficLight, OPEN_STATUSES,
    ObligationSnapshot, EnrichedObligation, DashboardSummary,
    enrich, build_dashboard, check_completion,
)
from errors import BadRequestError, NotFoundError
from models import Obligation, Organization, Location, User, UserOrg, Task, TaskItem, Review, Document
from pagination import APIModel, PaginationParams
from services.audit import AuditService, AuditActions, RequestMeta

logger = logging.getLogger("cumpliros.obligations")


# ── Schemas ──

class ObligationCreate(APIModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    type: ObligationType
    due_date: datetime
    location_id: Optional[str] = None
    recurrence_rule: Optional[str] = Field(None, max_length=100)
    requires_review: bool = False
    required_evidence_count: int = Field(0, ge=0, le=10)
    owner_user_id: str


class ObligationUpdate(APIModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    type: Optional[ObligationType] = None
    due_date: Optional[datetime] = None
    location_id: Optional[str] = None
    recurrence_rule: Optional[str] = Field(None, max_length=100)
    requires_review: Optional[bool] = None
    required_evidence_count: Optional[int] = Field(None, ge=0, le=10)
    owner_user_id: Optional[str] = None


class ObligationStatusUpdate(APIModel):
    status: ObligationStatus


@dataclass
class ObligationFilters:
    status: Optional[ObligationStatus] = None
    type: Optional[ObligationType] = None
    location_id: Optional[str] = None
    owner_user_id: Optional[str] = None
    due_date_from: Optional[date] = None
    due_date_to: Optional[date] = None
    traffic_light: Optional[TrafficLight] = None


@dataclass
class ObligationDetail:
    enriched: EnrichedObligation
    location: Optional[Location]
    owner: Optional[User]
    documents_count: int
    tasks_count: int
    reviews_count: int


# ── Service ──

class ObligationsService:
    def __init__(self, db: AsyncSession, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()
        self.audit = AuditService(db)

    # enrichment

    def normalize_due_date(self, value: datetime) -> datetime:
        """Naive due dates are wall-clock times in the business timezone."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=self.clock.tz)
        return as_utc(value)

    def snapshot(self, obligation: Obligation) -> ObligationSnapshot:
        return ObligationSnapshot(
            id=obligation.id,
            title=obligation.title,
            status=ObligationStatus(obligation.status),
            due_date=self.clock.local_date(obligation.due_date),
            ref=obligation,
        )

    def enrich(self, obligation: Obligation, org: Organization) -> EnrichedObligation:
        return enrich(
            self.snapshot(obligation), org.threshold_yellow_days, org.threshold_red_days, self.clock.today()
        )

    async def organization(self, organization_id: str) -> Organization:
        org = await self.db.get(Organization, organization_id)
        if not org:
            raise NotFoundError("Organización no encontrada")
        return org

    # CRUD

    async def create(self, ctx: OrgContext, data: ObligationCreate, meta: Optional[RequestMeta] = None) -> EnrichedObligation:
        org = await self.organization(ctx.organization_id)
        await self._check_location(ctx.organization_id, data.location_id)
        await self._check_owner(ctx.organization_id, data.owner_user_id)

        obligation = Obligation(
            organization_id=ctx.organization_id,
            location_id=data.location_id,
            title=data.title.strip(),
            description=data.description,
            type=data.type,
            status=ObligationStatus.PENDING,
            due_date=self.normalize_due_date(data.due_date),
            recurrence_rule=data.recurrence_rule,
            requires_review=data.requires_review,
            required_evidence_count=data.required_evidence_count,
            owner_user_id=data.owner_user_id,
        )
        self.db.add(obligation)
        await self.db.flush()
        self.audit.log(
            ctx.organization_id, AuditActions.OBLIGATION_CREATED, "Obligation", obligation.id, ctx.user_id,
            {"title": obligation.title, "type": data.type.value}, meta,
        )
        await self.db.commit()
        await self.db.refresh(obligation)
        return self.enrich(obligation, org)

    async def find_all(
        self, organization_id: str, params: PaginationParams, filters: ObligationFilters
    ) -> Tuple[List[EnrichedObligation], int]:
        org = await self.organization(organization_id)
        conditions = self._conditions(organization_id, filters)

        total = (await self.db.execute(select(func.count(Obligation.id)).where(*conditions))).scalar() or 0
        order = Obligation.due_date.desc() if params.descending else Obligation.due_date.asc()
        stmt = select(Obligation).where(*conditions).order_by(order).offset(params.offset).limit(params.limit)
        items = [self.enrich(o, org) for o in (await self.db.execute(stmt)).scalars().all()]

        # Traffic light is derived, so it filters the enriched page
        if filters.traffic_light:
            items = [item for item in items if item.traffic_light == filters.traffic_light]
        return items, total

    async def find_rows(self, organization_id: str, filters: ObligationFilters) -> List[Obligation]:
        """Unpaginated, due-date ordered; used by reports."""
        stmt = (
            select(Obligation)
            .where(*self._conditions(organization_id, filters))
            .order_by(Obligation.due_date.asc())
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def get(self, organization_id: str, obligation_id: str) -> Obligation:
        obligation = await self.db.get(Obligation, obligation_id)
        if not obligation or obligation.organization_id != organization_id:
            raise NotFoundError("Obligación no encontrada")
        return obligation

    async def find_one(self, organization_id: str, obligation_id: str) -> ObligationDetail:
        org = await self.organization(organization_id)
        obligation = await self.get(organization_id, obligation_id)

        async def _count(column, condition) -> int:
            return (await self.db.execute(select(func.count(column)).where(condition))).scalar() or 0

        return ObligationDetail(
            enriched=self.enrich(obligation, org),
            location=await self.db.get(Location, obligation.location_id) if obligation.location_id else None,
            owner=await self.db.get(User, obligation.owner_user_id),
            documents_count=await _count(Document.id, Document.obligation_id == obligation.id),
            tasks_count=await _count(Task.id, Task.obligation_id == obligation.id),
            reviews_count=await _count(Review.id, Review.obligation_id == obligation.id),
        )

    async def update(
        self, ctx: OrgContext, obligation_id: str, data: ObligationUpdate, meta: Optional[RequestMeta] = None
    ) -> EnrichedObligation:
        org = await self.organization(ctx.organization_id)
        obligation = await self.get(ctx.organization_id, obligation_id)
        changes = data.model_dump(exclude_unset=True)

        if changes.get("location_id"):
            await self._check_location(ctx.organization_id, changes["location_id"])
        if "owner_user_id" in changes:
            if not changes["owner_user_id"]:
                raise BadRequestError("El usuario responsable no pertenece a esta organización")
            await self._check_owner(ctx.organization_id, changes["owner_user_id"])
        if changes.get("due_date"):
            changes["due_date"] = self.normalize_due_date(changes["due_date"])

        for field, value in changes.items():
            setattr(obligation, field, value)
        self.audit.log(
            ctx.organization_id, AuditActions.OBLIGATION_UPDATED, "Obligation", obligation.id, ctx.user_id,
            {"fields": sorted(changes.keys())}, meta,
        )
        await self.db.commit()
        await self.db.refresh(obligation)
        return self.enrich(obligation, org)

    async def update_status(
        self, ctx: OrgContext, obligation_id: str, new_status: ObligationStatus, meta: Optional[RequestMeta] = None
    ) -> EnrichedObligation:
        org = await self.organization(ctx.organization_id)
        obligation = await self.get(ctx.organization_id, obligation_id)
        old_status = ObligationStatus(obligation.status)

        if new_status == ObligationStatus.COMPLETED:
            documents = await self.db.execute(
                select(func.count(Document.id)).where(Document.obligation_id == obligation.id)
            )
            approved = await self.db.execute(
                select(func.count(Review.id)).where(
                    Review.obligation_id == obligation.id, Review.status == ReviewStatus.APPROVED
                )
            )
            gate = check_completion(
                documents.scalar() or 0,
                obligation.required_evidence_count or 0,
                bool(obligation.requires_review),
                (approved.scalar() or 0) > 0,
            )
            if not gate.allowed:
                raise BadRequestError(gate.reason)

        obligation.status = new_status
        self.audit.log(
            ctx.organization_id, AuditActions.OBLIGATION_STATUS_CHANGED, "Obligation", obligation.id, ctx.user_id,
            {"from": old_status.value, "to": new_status.value}, meta,
        )
        await self.db.commit()
        await self.db.refresh(obligation)
        return self.enrich(obligation, org)

    async def delete(self, ctx: OrgContext, obligation_id: str, meta: Optional[RequestMeta] = None) -> None:
        obligation = await self.get(ctx.organization_id, obligation_id)
        task_ids = select(Task.id).where(Task.obligation_id == obligation.id)

        # Evidence outlives the obligation; it is only detached
        await self.db.execute(
            update(Document).where(Document.task_id.in_(task_ids)).values(task_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(Document).where(Document.obligation_id == obligation.id).values(obligation_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            delete(TaskItem).where(TaskItem.task_id.in_(task_ids))
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(delete(Task).where(Task.obligation_id == obligation.id))
        await self.db.execute(delete(Review).where(Review.obligation_id == obligation.id))
        await self.db.delete(obligation)
        self.audit.log(
            ctx.organization_id, AuditActions.OBLIGATION_DELETED, "Obligation", obligation.id, ctx.user_id,
            {"title": obligation.title}, meta,
        )
        await self.db.commit()

    # Views

    async def dashboard(self, organization_id: str) -> Tuple[DashboardSummary, Organization]:
        org = await self.organization(organization_id)
        result = await self.db.execute(select(Obligation).where(Obligation.organization_id == organization_id))
        snapshots = [self.snapshot(o) for o in result.scalars().all()]
        summary = build_dashboard(snapshots, org.threshold_yellow_days, org.threshold_red_days, self.clock.today())
        return summary, org

    async def calendar(self, organization_id: str, start_date: date, end_date: date) -> List[EnrichedObligation]:
        if end_date < start_date:
            raise BadRequestError("La fecha de fin debe ser posterior a la fecha de inicio")
        org = await self.organization(organization_id)
        stmt = (
            select(Obligation)
            .where(
                Obligation.organization_id == organization_id,
                Obligation.due_date >= self.clock.start_of_day(start_date),
                Obligation.due_date < self.clock.start_of_day(end_date + timedelta(days=1)),
            )
            .order_by(Obligation.due_date.asc())
        )
        return [self.enrich(o, org) for o in (await self.db.execute(stmt)).scalars().all()]

    # Batch

    async def update_overdue_obligations(self) -> int:
        """Flip PENDING/IN_PROGRESS obligations due before local midnight today to OVERDUE."""
        result = await self.db.execute(
            update(Obligation)
            .where(
                Obligation.status.in_(OPEN_STATUSES),
                Obligation.due_date < self.clock.start_of_today(),
            )
            .values(status=ObligationStatus.OVERDUE, updated_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        count = result.rowcount or 0
        logger.info(f"Overdue sweep: {count} obligation(s) marked OVERDUE")
        return count

    # helpers

    def _conditions(self, organization_id: str, filters: ObligationFilters) -> list:
        conditions = [Obligation.organization_id == organization_id]
        if filters.status:
            conditions.append(Obligation.status == filters.status)
        if filters.type:
            conditions.append(Obligation.type == filters.type)
        if filters.location_id:
            conditions.append(Obligation.location_id == filters.location_id)
        if filters.owner_user_id:
            conditions.append(Obligation.owner_user_id == filters.owner_user_id)
        if filters.due_date_from:
            conditions.append(Obligation.due_date >= self.clock.start_of_day(filters.due_date_from))
        if filters.due_date_to:
            conditions.append(Obligation.due_date < self.clock.start_of_day(filters.due_date_to + timedelta(days=1)))
        return conditions

    async def _check_location(self, organization_id: str, location_id: Optional[str]) -> None:
        if not location_id:
            return
        location = await self.db.get(Location, location_id)
        if not location or location.organization_id != organization_id or not location.active:
            raise BadRequestError("Local no encontrado o no pertenece a esta organización")

    async def _check_owner(self, organization_id: str, user_id: str) -> None:
        result = await self.db.execute(
            select(UserOrg.id).where(UserOrg.organization_id == organization_id, UserOrg.user_id == user_id)
        )
        if result.scalar_one_or_none() is None:
            raise BadRequestError("El usuario responsable no pertenece a esta organización")
