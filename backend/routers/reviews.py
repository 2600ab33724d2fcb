# routers/reviews.py — Review workflow for obligations flagged requiresReview
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from auth import OrgContext, require_org_role, require_org_member
from clock import Clock, get_clock
from compliance_engine import ReviewStatus, REVIEWER_ROLES
from database import get_db_session
from mailer import Mailer, get_mailer
from models import Review, User
from pagination import APIModel, PaginationParams, get_pagination, ok, paginated
from routers.obligations import ObligationOut, obligation_out
from services.audit import RequestMeta
from services.notifications import NotificationsService
from services.obligations import ObligationsService
from services.reviews import ReviewsService, ReviewCreate

router = APIRouter(prefix="/api/v1/organizations/{organization_id}/reviews", tags=["Reviews"])

require_reviewer = require_org_role(*REVIEWER_ROLES)


class ReviewerRef(APIModel):
    id: str
    full_name: str
    email: str


class ReviewOut(APIModel):
    id: str
    obligation_id: str
    reviewer_user_id: str
    status: ReviewStatus
    comment: Optional[str] = None
    created_at: Optional[datetime] = None
    reviewer: Optional[ReviewerRef] = None


class PendingReviewOut(APIModel):
    obligation: ObligationOut
    latest_review: Optional[ReviewOut] = None


def _review_out(review: Review, reviewer: Optional[User] = None) -> ReviewOut:
    out = ReviewOut.model_validate(review)
    if reviewer:
        out.reviewer = ReviewerRef.model_validate(reviewer)
    return out


@router.post("", status_code=201)
async def create_review(
    data: ReviewCreate,
    request: Request,
    ctx: OrgContext = Depends(require_reviewer),
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
    mailer: Mailer = Depends(get_mailer),
):
    """Approve or reject; a rejection sends the obligation back to IN_PROGRESS"""
    review, obligation = await ReviewsService(db).create(ctx, data, RequestMeta.from_request(request))
    if review.status == ReviewStatus.REJECTED:
        await NotificationsService(db, mailer, clock).notify_review_rejected(
            obligation, ctx.user.full_name, review.comment or ""
        )
    reviewer = await db.get(User, review.reviewer_user_id)
    return ok(_review_out(review, reviewer))


@router.get("/pending")
async def list_pending_reviews(
    ctx: OrgContext = Depends(require_reviewer),
    params: PaginationParams = Depends(get_pagination),
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    """Obligations awaiting approval with their most recent review"""
    obligations = ObligationsService(db, clock)
    org = await obligations.organization(ctx.organization_id)
    rows, total = await ReviewsService(db).find_pending(ctx.organization_id, params)
    return paginated([
        PendingReviewOut(
            obligation=obligation_out(obligations.enrich(obligation, org)),
            latest_review=_review_out(latest) if latest else None,
        )
        for obligation, latest in rows
    ], total, params)


@router.get("/obligation/{obligation_id}")
async def list_obligation_reviews(
    obligation_id: str,
    ctx: OrgContext = Depends(require_org_member),
    params: PaginationParams = Depends(get_pagination),
    db: AsyncSession = Depends(get_db_session),
):
    """Review history, newest first"""
    rows, total = await ReviewsService(db).find_by_obligation(ctx.organization_id, obligation_id, params)
    return paginated([_review_out(review, user) for review, user in rows], total, params)
