# services/reviews.py — Approval workflow for obligations that require review
import logging
from typing import Dict, List, Optional, Tuple

from pydantic import Field
from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import OrgContext
from compliance_engine import ObligationStatus, ReviewStatus, REVIEWER_ROLES, TERMINAL_STATUSES
from errors import BadRequestError, ForbiddenError, NotFoundError
from models import Review, Obligation, User
from pagination import APIModel, PaginationParams
from services.audit import AuditService, AuditActions, RequestMeta

logger = logging.getLogger("cumpliros.reviews")

REVIEW_AUDIT_ACTIONS = {
    ReviewStatus.APPROVED: AuditActions.REVIEW_APPROVED,
    ReviewStatus.REJECTED: AuditActions.REVIEW_REJECTED,
    ReviewStatus.PENDING: AuditActions.REVIEW_SUBMITTED,
}


class ReviewCreate(APIModel):
    obligation_id: str
    status: ReviewStatus
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewsService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    async def create(
        self, ctx: OrgContext, data: ReviewCreate, meta: Optional[RequestMeta] = None
    ) -> Tuple[Review, Obligation]:
        """Record a review; a rejection sends the obligation back to IN_PROGRESS in the same commit."""
        obligation = await self.db.get(Obligation, data.obligation_id)
        if not obligation or obligation.organization_id != ctx.organization_id:
            raise NotFoundError("Obligación no encontrada o no pertenece a esta organización")
        if not obligation.requires_review:
            raise BadRequestError("Esta obligación no requiere revisión")
        if ctx.role not in REVIEWER_ROLES:
            raise ForbiddenError("No tienes permisos para realizar revisiones")

        comment = (data.comment or "").strip() or None
        if data.status == ReviewStatus.REJECTED and not comment:
            raise BadRequestError("Se requiere un comentario para rechazar la revisión")

        review = Review(
            obligation_id=obligation.id,
            reviewer_user_id=ctx.user_id,
            status=data.status,
            comment=comment,
        )
        self.db.add(review)
        await self.db.flush()

        metadata = {"obligationId": obligation.id, "status": data.status.value}
        if data.status == ReviewStatus.REJECTED:
            metadata["previousStatus"] = ObligationStatus(obligation.status).value
            obligation.status = ObligationStatus.IN_PROGRESS
        self.audit.log(
            ctx.organization_id, REVIEW_AUDIT_ACTIONS[data.status], "Review", review.id, ctx.user_id, metadata, meta,
        )
        await self.db.commit()
        await self.db.refresh(review)
        logger.info(f"Review {data.status.value} on obligation {obligation.id} by {ctx.user_id}")
        return review, obligation

    async def find_pending(
        self, organization_id: str, params: PaginationParams
    ) -> Tuple[List[Tuple[Obligation, Optional[Review]]], int]:
        """Obligations awaiting approval, each with its most recent review if any."""
        approved = exists().where(
            Review.obligation_id == Obligation.id,
            Review.status == ReviewStatus.APPROVED,
        )
        conditions = [
            Obligation.organization_id == organization_id,
            Obligation.requires_review.is_(True),
            Obligation.status.notin_(TERMINAL_STATUSES),
            ~approved,
        ]
        total = (await self.db.execute(select(func.count(Obligation.id)).where(*conditions))).scalar() or 0

        order = Obligation.due_date.desc() if params.descending else Obligation.due_date.asc()
        stmt = (
            select(Obligation)
            .where(*conditions)
            .order_by(order, Obligation.id)
            .offset(params.offset)
            .limit(params.limit)
        )
        obligations = list((await self.db.execute(stmt)).scalars().all())
        if not obligations:
            return [], total

        reviews = await self.db.execute(
            select(Review)
            .where(Review.obligation_id.in_([o.id for o in obligations]))
            .order_by(Review.created_at.desc())
        )
        latest: Dict[str, Review] = {}
        for review in reviews.scalars().all():
            latest.setdefault(review.obligation_id, review)

        return [(o, latest.get(o.id)) for o in obligations], total

    async def find_by_obligation(
        self, organization_id: str, obligation_id: str, params: PaginationParams
    ) -> Tuple[List[Tuple[Review, Optional[User]]], int]:
        """Review history of one obligation, newest first."""
        obligation = await self.db.get(Obligation, obligation_id)
        if not obligation or obligation.organization_id != organization_id:
            raise NotFoundError("Obligación no encontrada o no pertenece a esta organización")

        total = (await self.db.execute(
            select(func.count(Review.id)).where(Review.obligation_id == obligation_id)
        )).scalar() or 0
        stmt = (
            select(Review, User)
            .outerjoin(User, User.id == Review.reviewer_user_id)
            .where(Review.obligation_id == obligation_id)
            .order_by(Review.created_at.desc(), Review.id)
            .offset(params.offset)
            .limit(params.limit)
        )
        return [(review, user) for review, user in (await self.db.execute(stmt)).all()], total
