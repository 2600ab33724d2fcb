# services/notifications.py — Compliance reminder and workflow emails
import logging
from collections import defaultdict
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import email_templates
from clock import Clock
from compliance_engine import ObligationStatus, OPEN_STATUSES, REVIEWER_ROLES, Role, days_until
from mailer import Mailer, MailDeliveryError
from models import Obligation, Organization, User, UserOrg, Invitation

logger = logging.getLogger("cumpliros.mail")


class NotificationsService:
    def __init__(self, db: AsyncSession, mailer: Mailer, clock: Optional[Clock] = None):
        self.db = db
        self.mailer = mailer
        self.clock = clock or Clock()

    async def _deliver(self, to: str, subject: str, html: str) -> bool:
        try:
            await self.mailer.send(to, subject, html)
            return True
        except MailDeliveryError as exc:
            logger.error(f"Email to {to} failed ({subject!r}): {exc}")
            return False
        except Exception as exc:
            logger.error(f"Email to {to} failed unexpectedly ({subject!r}): {exc}", exc_info=True)
            return False

    async def _active_organizations(self) -> List[Organization]:
        result = await self.db.execute(select(Organization).where(Organization.active.is_(True)))
        return list(result.scalars().all())

    # ── Scheduled reminders ──

    async def send_upcoming_notifications(self) -> int:
        """One email per owning user per organisation listing obligations due within the yellow window."""
        today = self.clock.today()
        sent = 0
        for org in await self._active_organizations():
            window_end = self.clock.start_of_day(today + timedelta(days=org.threshold_yellow_days + 1))
            stmt = (
                select(Obligation, User)
                .join(User, User.id == Obligation.owner_user_id)
                .where(
                    Obligation.organization_id == org.id,
                    Obligation.status.in_(OPEN_STATUSES),
                    Obligation.due_date >= self.clock.start_of_day(today),
                    Obligation.due_date < window_end,
                )
                .order_by(Obligation.due_date)
            )
            by_owner: Dict[str, List[Tuple[str, int]]] = defaultdict(list)
            owners: Dict[str, User] = {}
            for obligation, owner in (await self.db.execute(stmt)).all():
                days = days_until(self.clock.local_date(obligation.due_date), today)
                by_owner[owner.id].append((obligation.title, days))
                owners[owner.id] = owner

            for owner_id, items in by_owner.items():
                owner = owners[owner_id]
                urgent = sum(1 for _, days in items if days <= org.threshold_red_days)
                subject = email_templates.upcoming_subject(org.name, len(items), urgent)
                html = email_templates.upcoming_email(owner.full_name, org.name, items)
                if await self._deliver(owner.email, subject, html):
                    sent += 1
        logger.info(f"Upcoming reminders sent: {sent}")
        return sent

    async def send_overdue_notifications(self) -> int:
        """Email every OWNER of each organisation that has overdue obligations."""
        sent = 0
        for org in await self._active_organizations():
            stmt = (
                select(Obligation.title, User.full_name)
                .join(User, User.id == Obligation.owner_user_id)
                .where(Obligation.organization_id == org.id, Obligation.status == ObligationStatus.OVERDUE)
                .order_by(Obligation.due_date)
            )
            items = [(title, owner_name) for title, owner_name in (await self.db.execute(stmt)).all()]
            if not items:
                continue

            subject = email_templates.overdue_subject(org.name, len(items))
            html = email_templates.overdue_email(org.name, items)
            for owner in await self._members(org.id, (Role.OWNER,)):
                if await self._deliver(owner.email, subject, html):
                    sent += 1
        logger.info(f"Overdue alerts sent: {sent}")
        return sent

    # ── Workflow emails ──

    async def notify_review_required(self, obligation: Obligation) -> int:
        org = await self.db.get(Organization, obligation.organization_id)
        if not org:
            return 0
        subject = email_templates.review_required_subject(obligation.title, org.name)
        sent = 0
        for reviewer in await self._members(org.id, REVIEWER_ROLES):
            html = email_templates.review_required_email(reviewer.full_name, org.name, obligation.title)
            if await self._deliver(reviewer.email, subject, html):
                sent += 1
        return sent

    async def notify_review_rejected(self, obligation: Obligation, reviewer_name: str, comment: str) -> bool:
        org = await self.db.get(Organization, obligation.organization_id)
        owner = await self.db.get(User, obligation.owner_user_id)
        if not org or not owner:
            return False
        return await self._deliver(
            owner.email,
            email_templates.review_rejected_subject(obligation.title, org.name),
            email_templates.review_rejected_email(owner.full_name, org.name, obligation.title, reviewer_name, comment),
        )

    async def send_invitation(self, invitation: Invitation, org_name: str, inviter_name: str) -> bool:
        return await self._deliver(
            invitation.email,
            email_templates.invitation_subject(org_name),
            email_templates.invitation_email(org_name, inviter_name, invitation.role.value, invitation.token),
        )

    async def send_password_reset(self, email: str, full_name: str, token: str) -> bool:
        return await self._deliver(
            email,
            email_templates.password_reset_subject(),
            email_templates.password_reset_email(full_name, token),
        )

    async def _members(self, organization_id: str, roles) -> List[User]:
        stmt = (
            select(User)
            .join(UserOrg, UserOrg.user_id == User.id)
            .where(
                UserOrg.organization_id == organization_id,
                UserOrg.role.in_(list(roles)),
                User.active.is_(True),
            )
            .order_by(User.email)
        )
        return list((await self.db.execute(stmt)).scalars().all())
