# services/reports.py — Compliance summaries and CSV export
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from clock import Clock, as_utc
from compliance_engine import (
    ObligationStatus, ReviewStatus, OPEN_STATUSES,
    compliance_rate, sanitize_csv_field, week_start,
)
from errors import NotFoundError
from models import Obligation, Organization, Location, User, Document, Review
from services.obligations import ObligationFilters, ObligationsService

CSV_HEADERS = [
    "ID",
    "Título",
    "Tipo",
    "Estado",
    "Fecha de Vencimiento",
    "Local",
    "Responsable",
    "Documentos",
    "Revisión Aprobada",
]

NO_LOCATION_ID = "global"
NO_LOCATION_NAME = "Sin local"


class ReportsService:
    def __init__(self, db: AsyncSession, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()

    async def compliance_report(
        self,
        organization_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if not await self.db.get(Organization, organization_id):
            raise NotFoundError("Organización no encontrada")

        end = as_utc(end_date) if end_date else self.clock.now()
        start = as_utc(start_date) if start_date else end - relativedelta(months=1)

        stmt = (
            select(Obligation, Location.name)
            .outerjoin(Location, Location.id == Obligation.location_id)
            .where(
                Obligation.organization_id == organization_id,
                Obligation.created_at >= start,
                Obligation.created_at <= end,
            )
        )
        rows = (await self.db.execute(stmt)).all()

        total = len(rows)
        completed = sum(1 for o, _ in rows if o.status == ObligationStatus.COMPLETED)
        pending = sum(1 for o, _ in rows if o.status in OPEN_STATUSES)
        overdue = sum(1 for o, _ in rows if o.status == ObligationStatus.OVERDUE)

        by_type: Dict[str, Dict[str, int]] = OrderedDict()
        by_location: Dict[str, Dict[str, Any]] = OrderedDict()
        timeline: Dict[str, Dict[str, int]] = {}
        for obligation, location_name in rows:
            status = ObligationStatus(obligation.status)
            type_key = obligation.type.value if hasattr(obligation.type, "value") else str(obligation.type)

            group = by_type.setdefault(type_key, {"type": type_key, "total": 0, "completed": 0, "overdue": 0})
            group["total"] += 1

            loc_key = obligation.location_id or NO_LOCATION_ID
            loc = by_location.setdefault(loc_key, {
                "locationId": loc_key,
                "locationName": location_name or NO_LOCATION_NAME,
                "total": 0,
                "completed": 0,
                "overdue": 0,
            })
            loc["total"] += 1

            week = week_start(self.clock.local_date(obligation.due_date)).isoformat()
            entry = timeline.setdefault(week, {"week": week, "completed": 0, "overdue": 0})

            if status == ObligationStatus.COMPLETED:
                group["completed"] += 1
                loc["completed"] += 1
                entry["completed"] += 1
            elif status == ObligationStatus.OVERDUE:
                group["overdue"] += 1
                loc["overdue"] += 1
                entry["overdue"] += 1

        for bucket in list(by_type.values()) + list(by_location.values()):
            bucket["complianceRate"] = compliance_rate(bucket["completed"], bucket["total"])

        return {
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "summary": {
                "total": total,
                "completed": completed,
                "pending": pending,
                "overdue": overdue,
                "complianceRate": compliance_rate(completed, total),
            },
            "byType": list(by_type.values()),
            "byLocation": list(by_location.values()),
            "timeline": [timeline[key] for key in sorted(timeline)],
        }

    async def obligations_report(self, organization_id: str, filters: ObligationFilters) -> List[Dict[str, Any]]:
        obligations = await ObligationsService(self.db, self.clock).find_rows(organization_id, filters)
        if not obligations:
            return []
        ids = [o.id for o in obligations]

        locations = {
            loc.id: loc.name
            for loc in (await self.db.execute(
                select(Location).where(Location.organization_id == organization_id)
            )).scalars().all()
        }
        owner_ids = {o.owner_user_id for o in obligations}
        owners = {
            user.id: user.full_name
            for user in (await self.db.execute(select(User).where(User.id.in_(owner_ids)))).scalars().all()
        }
        documents = dict((await self.db.execute(
            select(Document.obligation_id, func.count(Document.id))
            .where(Document.obligation_id.in_(ids))
            .group_by(Document.obligation_id)
        )).all())
        approved = set((await self.db.execute(
            select(Review.obligation_id)
            .where(Review.obligation_id.in_(ids), Review.status == ReviewStatus.APPROVED)
            .distinct()
        )).scalars().all())

        return [
            {
                "id": o.id,
                "title": o.title,
                "type": o.type.value if hasattr(o.type, "value") else o.type,
                "status": o.status.value if hasattr(o.status, "value") else o.status,
                "dueDate": self.clock.local_date(o.due_date).isoformat(),
                "locationName": locations.get(o.location_id) if o.location_id else None,
                "ownerName": owners.get(o.owner_user_id),
                "documentsCount": documents.get(o.id, 0),
                "hasApprovedReview": o.id in approved,
            }
            for o in obligations
        ]

    async def export_csv(self, organization_id: str, filters: ObligationFilters) -> str:
        rows = await self.obligations_report(organization_id, filters)
        lines = [",".join(sanitize_csv_field(h) for h in CSV_HEADERS)]
        for row in rows:
            lines.append(",".join(sanitize_csv_field(value) for value in (
                row["id"],
                row["title"],
                row["type"],
                row["status"],
                row["dueDate"],
                row["locationName"] or NO_LOCATION_NAME,
                row["ownerName"],
                row["documentsCount"],
                "Sí" if row["hasApprovedReview"] else "No",
            )))
        return "\n".join(lines) + "\n"

    def export_filename(self) -> str:
        return f"obligaciones_{self.clock.today().isoformat()}.csv"
