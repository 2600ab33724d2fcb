# routers/audit.py — Read-only audit trail
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from auth import OrgContext, require_org_role
from clock import as_utc
from compliance_engine import Role
from database import get_db_session
from models import AuditEvent, User
from pagination import APIModel, PaginationParams, get_pagination, paginated
from services.audit import AuditService, AuditFilters

router = APIRouter(prefix="/api/v1/organizations/{organization_id}/audit", tags=["Audit"])

require_auditor = require_org_role(Role.OWNER, Role.ADMIN, Role.ACCOUNTANT)


class AuditUserRef(APIModel):
    id: str
    full_name: str
    email: str


class AuditEventOut(APIModel):
    id: str
    organization_id: str
    user_id: Optional[str] = None
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    metadata: Optional[Any] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None
    user: Optional[AuditUserRef] = None


def _event_out(event: AuditEvent, user: Optional[User]) -> AuditEventOut:
    return AuditEventOut(
        id=event.id,
        organization_id=event.organization_id,
        user_id=event.user_id,
        action=event.action,
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        metadata=event.event_metadata,
        ip_address=event.ip_address,
        user_agent=event.user_agent,
        created_at=event.created_at,
        user=AuditUserRef.model_validate(user) if user else None,
    )


@router.get("")
async def list_audit_events(
    action: Optional[str] = None,
    entity_type: Optional[str] = Query(None, alias="entityType"),
    entity_id: Optional[str] = Query(None, alias="entityId"),
    user_id: Optional[str] = Query(None, alias="userId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    params: PaginationParams = Depends(get_pagination),
    ctx: OrgContext = Depends(require_auditor),
    db: AsyncSession = Depends(get_db_session),
):
    """Newest first"""
    filters = AuditFilters(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        start_date=as_utc(start_date),
        end_date=as_utc(end_date),
    )
    rows, total = await AuditService(db).find_all(ctx.organization_id, params, filters)
    return paginated([_event_out(event, user) for event, user in rows], total, params)


@router.get("/{entity_type}/{entity_id}")
async def get_entity_history(
    entity_type: str,
    entity_id: str,
    params: PaginationParams = Depends(get_pagination),
    ctx: OrgContext = Depends(require_auditor),
    db: AsyncSession = Depends(get_db_session),
):
    rows, total = await AuditService(db).find_by_entity(ctx.organization_id, entity_type, entity_id, params)
    return paginated([_event_out(event, user) for event, user in rows], total, params)
