# routers/organizations.py — Organisations, members and invitations
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, OrgContext, get_current_user, require_org_role, require_org_member
from clock import Clock, get_clock
from compliance_engine import Role, Plan, InvitationStatus
from database import get_db_session
from mailer import Mailer, get_mailer
from models import Organization, UserOrg, User
from pagination import APIModel, ok
from services.audit import RequestMeta
from services.notifications import NotificationsService
from services.organizations import (
    OrganizationsService, OrganizationCreate, OrganizationUpdate, InvitationCreate, MemberRoleUpdate,
)

router = APIRouter(prefix="/api/v1/organizations", tags=["Organizations"])

require_owner = require_org_role(Role.OWNER)
require_owner_or_admin = require_org_role(Role.OWNER, Role.ADMIN)


# --- Schemas ---

class OrganizationOut(APIModel):
    id: str
    cuit: str
    name: str
    plan: Plan
    threshold_yellow_days: int
    threshold_red_days: int
    jurisdiction_id: Optional[str] = None
    retention_months: int
    active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrganizationWithRoleOut(OrganizationOut):
    role: Role


class OrganizationCountsOut(APIModel):
    locations: int = 0
    obligations: int = 0
    members: int = 0


class OrganizationDetailOut(OrganizationOut):
    counts: OrganizationCountsOut


class MemberOut(APIModel):
    id: str
    user_id: str
    email: str
    full_name: str
    role: Role
    joined_at: Optional[datetime] = None


class InvitationOut(APIModel):
    id: str
    organization_id: str
    email: str
    role: Role
    status: InvitationStatus
    expires_at: datetime
    created_at: Optional[datetime] = None


def _member_out(membership: UserOrg, user: User) -> MemberOut:
    return MemberOut(
        id=membership.id,
        user_id=user.id,
        email=user.email,
        full_name=user.full_name,
        role=membership.role,
        joined_at=membership.created_at,
    )


def _org_with_role(org: Organization, role: Role) -> OrganizationWithRoleOut:
    return OrganizationWithRoleOut(**OrganizationOut.model_validate(org).model_dump(), role=role)


# --- Organisations ---

@router.post("", status_code=201)
async def create_organization(
    data: OrganizationCreate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    """Create an organisation; the caller becomes its OWNER"""
    org = await OrganizationsService(db, clock).create(data, user.id, RequestMeta.from_request(request))
    return ok(_org_with_role(org, Role.OWNER))


@router.get("")
async def list_my_organizations(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    rows = await OrganizationsService(db).find_for_user(user.id)
    return ok([_org_with_role(org, role) for org, role in rows])


@router.get("/{organization_id}")
async def get_organization(
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
):
    service = OrganizationsService(db)
    org = await service.find_one(ctx.organization_id)
    counts = OrganizationCountsOut(**await service.counts(org.id))
    return ok(OrganizationDetailOut(**OrganizationOut.model_validate(org).model_dump(), counts=counts))


@router.patch("/{organization_id}")
async def update_organization(
    data: OrganizationUpdate,
    request: Request,
    ctx: OrgContext = Depends(require_owner_or_admin),
    db: AsyncSession = Depends(get_db_session),
):
    org = await OrganizationsService(db).update(
        ctx.organization_id, data, ctx.user_id, RequestMeta.from_request(request)
    )
    return ok(OrganizationOut.model_validate(org))


@router.delete("/{organization_id}")
async def deactivate_organization(
    request: Request,
    ctx: OrgContext = Depends(require_owner),
    db: AsyncSession = Depends(get_db_session),
):
    await OrganizationsService(db).deactivate(ctx.organization_id, ctx.user_id, RequestMeta.from_request(request))
    return ok({"success": True})


@router.get("/{organization_id}/stats")
async def get_organization_stats(
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    return ok(await OrganizationsService(db, clock).stats(ctx.organization_id))


# --- Members ---

@router.get("/{organization_id}/members")
async def list_members(
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
):
    rows = await OrganizationsService(db).members(ctx.organization_id)
    return ok([_member_out(membership, user) for membership, user in rows])


@router.patch("/{organization_id}/members/{member_user_id}")
async def change_member_role(
    member_user_id: str,
    data: MemberRoleUpdate,
    request: Request,
    ctx: OrgContext = Depends(require_owner),
    db: AsyncSession = Depends(get_db_session),
):
    service = OrganizationsService(db)
    membership = await service.change_member_role(ctx, member_user_id, data.role, RequestMeta.from_request(request))
    user = await db.get(User, membership.user_id)
    return ok(_member_out(membership, user))


@router.delete("/{organization_id}/members/{member_user_id}")
async def remove_member(
    member_user_id: str,
    request: Request,
    ctx: OrgContext = Depends(require_owner_or_admin),
    db: AsyncSession = Depends(get_db_session),
):
    await OrganizationsService(db).remove_member(ctx, member_user_id, RequestMeta.from_request(request))
    return ok({"success": True})


# --- Invitations ---

@router.post("/{organization_id}/invitations", status_code=201)
async def invite_member(
    data: InvitationCreate,
    request: Request,
    ctx: OrgContext = Depends(require_owner_or_admin),
    db: AsyncSession = Depends(get_db_session),
    mailer: Mailer = Depends(get_mailer),
    clock: Clock = Depends(get_clock),
):
    """Invite by email; the invitation email is best-effort"""
    invitation = await OrganizationsService(db, clock).invite(
        ctx, data, NotificationsService(db, mailer, clock), RequestMeta.from_request(request)
    )
    return ok(InvitationOut.model_validate(invitation))


@router.get("/{organization_id}/invitations")
async def list_invitations(
    ctx: OrgContext = Depends(require_owner_or_admin),
    db: AsyncSession = Depends(get_db_session),
):
    invitations = await OrganizationsService(db).pending_invitations(ctx.organization_id)
    return ok([InvitationOut.model_validate(i) for i in invitations])


@router.delete("/{organization_id}/invitations/{invitation_id}")
async def cancel_invitation(
    invitation_id: str,
    request: Request,
    ctx: OrgContext = Depends(require_owner_or_admin),
    db: AsyncSession = Depends(get_db_session),
):
    await OrganizationsService(db).cancel_invitation(ctx, invitation_id, RequestMeta.from_request(request))
    return ok({"success": True})
