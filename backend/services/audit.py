# services/audit.py — Append-only audit trail
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Request
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from models import AuditEvent, User
from pagination import PaginationParams

logger = logging.getLogger("cumpliros.audit")


class AuditActions:
    ORGANIZATION_CREATED = "organization.created"
    ORGANIZATION_UPDATED = "organization.updated"
    ORGANIZATION_DEACTIVATED = "organization.deactivated"
    USER_INVITED = "user.invited"
    USER_JOINED = "user.joined"
    USER_ROLE_CHANGED = "user.role_changed"
    USER_REMOVED = "user.removed"
    INVITATION_CANCELLED = "invitation.cancelled"
    LOCATION_CREATED = "location.created"
    LOCATION_UPDATED = "location.updated"
    LOCATION_DEACTIVATED = "location.deactivated"
    OBLIGATION_CREATED = "obligation.created"
    OBLIGATION_UPDATED = "obligation.updated"
    OBLIGATION_STATUS_CHANGED = "obligation.status_changed"
    OBLIGATION_DELETED = "obligation.deleted"
    TASK_CREATED = "task.created"
    TASK_UPDATED = "task.updated"
    TASK_COMPLETED = "task.completed"
    TASK_DELETED = "task.deleted"
    TASK_ITEM_ADDED = "task.item_added"
    TASK_ITEM_UPDATED = "task.item_updated"
    TASK_ITEM_TOGGLED = "task.item_toggled"
    TASK_ITEM_DELETED = "task.item_deleted"
    DOCUMENT_UPLOADED = "document.uploaded"
    DOCUMENT_DELETED = "document.deleted"
    REVIEW_SUBMITTED = "review.submitted"
    REVIEW_APPROVED = "review.approved"
    REVIEW_REJECTED = "review.rejected"
    TEMPLATES_APPLIED = "templates.applied"


@dataclass
class RequestMeta:
    """Client details captured alongside an audit event."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_request(cls, request: Optional[Request]) -> "RequestMeta":
        if request is None:
            return cls()
        forwarded = request.headers.get("x-forwarded-for")
        ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
        return cls(ip_address=ip, user_agent=request.headers.get("user-agent"))


@dataclass
class AuditFilters:
    action: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    user_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class AuditService:
    """Audit events are added to the caller's session and commit with its business write."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def log(
        self,
        organization_id: str,
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        meta: Optional[RequestMeta] = None,
    ) -> AuditEvent:
        meta = meta or RequestMeta()
        event = AuditEvent(
            organization_id=organization_id,
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            event_metadata=metadata,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )
        self.db.add(event)
        logger.debug(f"{action} {entity_type}:{entity_id} org={organization_id} user={user_id}")
        return event

    async def find_all(
        self, organization_id: str, params: PaginationParams, filters: AuditFilters
    ) -> Tuple[List[Tuple[AuditEvent, Optional[User]]], int]:
        conditions = [AuditEvent.organization_id == organization_id]
        if filters.action:
            conditions.append(AuditEvent.action.contains(filters.action))
        if filters.entity_type:
            conditions.append(AuditEvent.entity_type == filters.entity_type)
        if filters.entity_id:
            conditions.append(AuditEvent.entity_id == filters.entity_id)
        if filters.user_id:
            conditions.append(AuditEvent.user_id == filters.user_id)
        if filters.start_date:
            conditions.append(AuditEvent.created_at >= filters.start_date)
        if filters.end_date:
            conditions.append(AuditEvent.created_at <= filters.end_date)
        return await self._page(conditions, params)

    async def find_by_entity(
        self, organization_id: str, entity_type: str, entity_id: str, params: PaginationParams
    ) -> Tuple[List[Tuple[AuditEvent, Optional[User]]], int]:
        conditions = [
            AuditEvent.organization_id == organization_id,
            AuditEvent.entity_type == entity_type,
            AuditEvent.entity_id == entity_id,
        ]
        return await self._page(conditions, params)

    async def _page(self, conditions, params: PaginationParams):
        total = (await self.db.execute(select(func.count(AuditEvent.id)).where(*conditions))).scalar() or 0
        stmt = (
            select(AuditEvent, User)
            .outerjoin(User, User.id == AuditEvent.user_id)
            .where(*conditions)
            .order_by(AuditEvent.created_at.desc())
            .offset(params.offset)
            .limit(params.limit)
        )
        rows = (await self.db.execute(stmt)).all()
        return [(event, user) for event, user in rows], total
