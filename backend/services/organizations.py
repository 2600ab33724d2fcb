# services/organizations.py — Tenants, memberships and invitations
import logging
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from pydantic import EmailStr, Field
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import OrgContext
from clock import Clock
from compliance_engine import (
    Role, Plan, ObligationStatus, InvitationStatus, OPEN_STATUSES,
    DEFAULT_THRESHOLD_YELLOW_DAYS, DEFAULT_THRESHOLD_RED_DAYS, validate_thresholds,
)
from errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from models import Organization, UserOrg, User, Invitation, Location, Obligation, Jurisdiction, utcnow
from pagination import APIModel
from services.audit import AuditService, AuditActions, RequestMeta
from services.notifications import NotificationsService

logger = logging.getLogger("cumpliros.organizations")

INVITATION_EXPIRE_DAYS = 7
CUIT_PATTERN = r"^\d{2}-\d{8}-\d{1}$"


# ── Schemas ──

class OrganizationCreate(APIModel):
    cuit: str = Field(..., pattern=CUIT_PATTERN)
    name: str = Field(..., min_length=2, max_length=255)
    plan: Plan = Plan.BASIC
    threshold_yellow_days: int = Field(DEFAULT_THRESHOLD_YELLOW_DAYS, ge=1, le=90)
    threshold_red_days: int = Field(DEFAULT_THRESHOLD_RED_DAYS, ge=1, le=30)
    jurisdiction_id: Optional[str] = None
    retention_months: int = Field(0, ge=0, le=120)


class OrganizationUpdate(APIModel):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    plan: Optional[Plan] = None
    threshold_yellow_days: Optional[int] = Field(None, ge=1, le=90)
    threshold_red_days: Optional[int] = Field(None, ge=1, le=30)
    jurisdiction_id: Optional[str] = None
    retention_months: Optional[int] = Field(None, ge=0, le=120)


class InvitationCreate(APIModel):
    email: EmailStr
    role: Role


class MemberRoleUpdate(APIModel):
    role: Role


# ── Service ──

class OrganizationsService:
    def __init__(self, db: AsyncSession, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()
        self.audit = AuditService(db)

    async def create(self, data: OrganizationCreate, user_id: str, meta: Optional[RequestMeta] = None) -> Organization:
        error = validate_thresholds(data.threshold_yellow_days, data.threshold_red_days)
        if error:
            raise BadRequestError(error)
        if await self._by_cuit(data.cuit):
            raise ConflictError("Ya existe una organización con ese CUIT")
        if data.jurisdiction_id:
            await self._require_jurisdiction(data.jurisdiction_id)

        org = Organization(
            cuit=data.cuit,
            name=data.name.strip(),
            plan=data.plan,
            threshold_yellow_days=data.threshold_yellow_days,
            threshold_red_days=data.threshold_red_days,
            jurisdiction_id=data.jurisdiction_id,
            retention_months=data.retention_months,
            active=True,
        )
        self.db.add(org)
        await self.db.flush()
        self.db.add(UserOrg(user_id=user_id, organization_id=org.id, role=Role.OWNER))
        self.audit.log(
            org.id, AuditActions.ORGANIZATION_CREATED, "Organization", org.id, user_id,
            {"name": org.name, "cuit": org.cuit}, meta,
        )
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError("Ya existe una organización con ese CUIT")
        await self.db.refresh(org)
        logger.info(f"Organization created: {org.id} by {user_id}")
        return org

    async def find_for_user(self, user_id: str) -> List[Tuple[Organization, Role]]:
        stmt = (
            select(Organization, UserOrg.role)
            .join(UserOrg, UserOrg.organization_id == Organization.id)
            .where(UserOrg.user_id == user_id, Organization.active.is_(True))
            .order_by(Organization.name)
        )
        return [(org, Role(role)) for org, role in (await self.db.execute(stmt)).all()]

    async def find_one(self, organization_id: str) -> Organization:
        org = await self.db.get(Organization, organization_id)
        if not org:
            raise NotFoundError("Organización no encontrada")
        return org

    async def counts(self, organization_id: str) -> Dict[str, int]:
        async def _count(column, *conditions) -> int:
            return (await self.db.execute(select(func.count(column)).where(*conditions))).scalar() or 0

        return {
            "locations": await _count(
                Location.id, Location.organization_id == organization_id, Location.active.is_(True)
            ),
            "obligations": await _count(Obligation.id, Obligation.organization_id == organization_id),
            "members": await _count(UserOrg.id, UserOrg.organization_id == organization_id),
        }

    async def update(
        self, organization_id: str, data: OrganizationUpdate, user_id: str, meta: Optional[RequestMeta] = None
    ) -> Organization:
        org = await self.find_one(organization_id)
        changes = data.model_dump(exclude_unset=True)

        yellow = changes.get("threshold_yellow_days") or org.threshold_yellow_days
        red = changes.get("threshold_red_days") or org.threshold_red_days
        error = validate_thresholds(yellow, red)
        if error:
            raise BadRequestError(error)
        if changes.get("jurisdiction_id"):
            await self._require_jurisdiction(changes["jurisdiction_id"])

        for field, value in changes.items():
            setattr(org, field, value)
        self.audit.log(
            org.id, AuditActions.ORGANIZATION_UPDATED, "Organization", org.id, user_id,
            {"changes": {k: (v.value if hasattr(v, "value") else v) for k, v in changes.items()}}, meta,
        )
        await self.db.commit()
        await self.db.refresh(org)
        return org

    async def deactivate(self, organization_id: str, user_id: str, meta: Optional[RequestMeta] = None) -> None:
        org = await self.find_one(organization_id)
        org.active = False
        self.audit.log(org.id, AuditActions.ORGANIZATION_DEACTIVATED, "Organization", org.id, user_id, None, meta)
        await self.db.commit()
        logger.info(f"Organization deactivated: {org.id}")

    async def stats(self, organization_id: str) -> Dict[str, int]:
        today = self.clock.today()
        start = self.clock.start_of_day(today)
        in_7 = self.clock.start_of_day(today + timedelta(days=8))
        in_15 = self.clock.start_of_day(today + timedelta(days=16))

        async def _count(*conditions) -> int:
            stmt = select(func.count(Obligation.id)).where(Obligation.organization_id == organization_id, *conditions)
            return (await self.db.execute(stmt)).scalar() or 0

        locations = await self.db.execute(
            select(func.count(Location.id)).where(
                Location.organization_id == organization_id, Location.active.is_(True)
            )
        )
        return {
            "totalLocations": locations.scalar() or 0,
            "totalObligations": await _count(),
            "overdueObligations": await _count(Obligation.status == ObligationStatus.OVERDUE),
            "upcomingObligations7Days": await _count(
                Obligation.status.in_(OPEN_STATUSES), Obligation.due_date >= start, Obligation.due_date < in_7
            ),
            "upcomingObligations15Days": await _count(
                Obligation.status.in_(OPEN_STATUSES), Obligation.due_date >= start, Obligation.due_date < in_15
            ),
            "completedObligations": await _count(Obligation.status == ObligationStatus.COMPLETED),
        }

    # ── Members ──

    async def members(self, organization_id: str) -> List[Tuple[UserOrg, User]]:
        stmt = (
            select(UserOrg, User)
            .join(User, User.id == UserOrg.user_id)
            .where(UserOrg.organization_id == organization_id)
            .order_by(UserOrg.created_at)
        )
        return [(membership, user) for membership, user in (await self.db.execute(stmt)).all()]

    async def change_member_role(
        self, ctx: OrgContext, member_user_id: str, new_role: Role, meta: Optional[RequestMeta] = None
    ) -> UserOrg:
        if member_user_id == ctx.user_id:
            raise ForbiddenError("No puedes cambiar tu propio rol")
        membership = await self._membership(ctx.organization_id, member_user_id)

        old_role = Role(membership.role)
        if old_role == Role.OWNER and new_role != Role.OWNER and await self._owner_count(ctx.organization_id) <= 1:
            raise ForbiddenError("Debe haber al menos un propietario en la organización")

        membership.role = new_role
        self.audit.log(
            ctx.organization_id, AuditActions.USER_ROLE_CHANGED, "User", member_user_id, ctx.user_id,
            {"from": old_role.value, "to": new_role.value}, meta,
        )
        await self.db.commit()
        await self.db.refresh(membership)
        return membership

    async def remove_member(self, ctx: OrgContext, member_user_id: str, meta: Optional[RequestMeta] = None) -> None:
        if member_user_id == ctx.user_id:
            raise ForbiddenError("No puedes eliminarte a ti mismo de la organización")
        membership = await self._membership(ctx.organization_id, member_user_id)

        role = Role(membership.role)
        if role == Role.OWNER and await self._owner_count(ctx.organization_id) <= 1:
            raise ForbiddenError("No puedes eliminar al único propietario de la organización")

        await self.db.delete(membership)
        self.audit.log(
            ctx.organization_id, AuditActions.USER_REMOVED, "User", member_user_id, ctx.user_id,
            {"role": role.value}, meta,
        )
        await self.db.commit()

    # ── Invitations ──

    async def invite(
        self,
        ctx: OrgContext,
        data: InvitationCreate,
        notifications: Optional[NotificationsService] = None,
        meta: Optional[RequestMeta] = None,
    ) -> Invitation:
        org = await self.find_one(ctx.organization_id)
        email = str(data.email).lower()

        member = await self.db.execute(
            select(UserOrg.id)
            .join(User, User.id == UserOrg.user_id)
            .where(UserOrg.organization_id == org.id, User.email == email)
        )
        if member.scalar_one_or_none():
            raise ConflictError("El usuario ya es miembro de esta organización")

        pending = await self.db.execute(
            select(Invitation.id).where(
                Invitation.organization_id == org.id,
                Invitation.email == email,
                Invitation.status == InvitationStatus.PENDING,
                Invitation.expires_at > utcnow(),
            )
        )
        if pending.scalar_one_or_none():
            raise ConflictError("Ya existe una invitación pendiente para este email")

        invitation = Invitation(
            organization_id=org.id,
            email=email,
            role=data.role,
            status=InvitationStatus.PENDING,
            invited_by_user_id=ctx.user_id,
            expires_at=utcnow() + timedelta(days=INVITATION_EXPIRE_DAYS),
        )
        self.db.add(invitation)
        await self.db.flush()
        self.audit.log(
            org.id, AuditActions.USER_INVITED, "Invitation", invitation.id, ctx.user_id,
            {"email": email, "role": data.role.value}, meta,
        )
        await self.db.commit()
        await self.db.refresh(invitation)

        if notifications:
            await notifications.send_invitation(invitation, org.name, ctx.user.full_name)
        return invitation

    async def pending_invitations(self, organization_id: str) -> List[Invitation]:
        stmt = (
            select(Invitation)
            .where(Invitation.organization_id == organization_id, Invitation.status == InvitationStatus.PENDING)
            .order_by(Invitation.created_at.desc())
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def cancel_invitation(self, ctx: OrgContext, invitation_id: str, meta: Optional[RequestMeta] = None) -> None:
        invitation = await self.db.get(Invitation, invitation_id)
        if not invitation or invitation.organization_id != ctx.organization_id:
            raise NotFoundError("Invitación no encontrada")
        if invitation.status != InvitationStatus.PENDING:
            raise BadRequestError("La invitación ya fue procesada")

        invitation.status = InvitationStatus.CANCELLED
        self.audit.log(
            ctx.organization_id, AuditActions.INVITATION_CANCELLED, "Invitation", invitation.id, ctx.user_id,
            {"email": invitation.email}, meta,
        )
        await self.db.commit()

    # ── helpers ──

    async def _by_cuit(self, cuit: str) -> Optional[Organization]:
        result = await self.db.execute(select(Organization).where(Organization.cuit == cuit))
        return result.scalar_one_or_none()

    async def _require_jurisdiction(self, jurisdiction_id: str) -> None:
        if not await self.db.get(Jurisdiction, jurisdiction_id):
            raise NotFoundError(f"Jurisdicción no encontrada: {jurisdiction_id}")

    async def _membership(self, organization_id: str, user_id: str) -> UserOrg:
        result = await self.db.execute(
            select(UserOrg).where(UserOrg.organization_id == organization_id, UserOrg.user_id == user_id)
        )
        membership = result.scalar_one_or_none()
        if not membership:
            raise NotFoundError("Miembro no encontrado")
        return membership

    async def _owner_count(self, organization_id: str) -> int:
        result = await self.db.execute(
            select(func.count(UserOrg.id)).where(
                UserOrg.organization_id == organization_id, UserOrg.role == Role.OWNER
            )
        )
        return result.scalar() or 0

