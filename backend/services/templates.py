# services/templates.py — Template catalog and rubric application
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import Field, field_validator
from sqlalchemy import select, func, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clock import Clock
from compliance_engine import (
    ObligationType, ObligationStatus, Periodicity, TemplateSeverity, TaskStatus,
    initial_due_date, recurrence_rule, checklist_task_title, select_new_templates,
    DEFAULT_CHECKLIST_DESCRIPTION,
)
from errors import BadRequestError, ConflictError, NotFoundError
from models import (
    ObligationTemplate, ChecklistTemplateItem, Jurisdiction, Organization, Location,
    Obligation, Task, TaskItem, UserOrg,
)
from pagination import APIModel, PaginationParams
from services.audit import AuditService, AuditActions, RequestMeta
from services.jurisdictions import JurisdictionsService

logger = logging.getLogger("cumpliros.templates")

RUBRIC_DISPLAY_NAMES = {
    "gastronomia": "Gastronomía",
    "comercio": "Comercio General",
    "estetica": "Estética y Spa",
    "farmacia": "Farmacia",
    "salud": "Salud",
    "educacion": "Educación",
    "hoteleria": "Hotelería",
    "construccion": "Construcción",
    "transporte": "Transporte",
    "otros": "Otros",
}


def rubric_display_name(rubric: str) -> str:
    return RUBRIC_DISPLAY_NAMES.get(rubric, rubric[:1].upper() + rubric[1:])


# ── Schemas ──

class ChecklistItemIn(APIModel):
    description: str = Field(..., min_length=1, max_length=500)
    is_required: bool = True


class TemplateCreate(APIModel):
    jurisdiction_id: str
    template_key: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9_.-]+$")
    rubric: str = Field(..., min_length=1, max_length=100)
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    type: ObligationType
    default_periodicity: Periodicity
    default_due_rule: Optional[str] = Field(None, max_length=255)
    requires_review: bool = False
    required_evidence_count: int = Field(0, ge=0, le=10)
    severity: TemplateSeverity = TemplateSeverity.MEDIUM
    references: Optional[Any] = None
    checklist_items: Optional[List[ChecklistItemIn]] = None

    @field_validator("rubric")
    @classmethod
    def lower_rubric(cls, v: str) -> str:
        return v.strip().lower()


class TemplateUpdate(APIModel):
    rubric: Optional[str] = Field(None, min_length=1, max_length=100)
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    type: Optional[ObligationType] = None
    default_periodicity: Optional[Periodicity] = None
    default_due_rule: Optional[str] = Field(None, max_length=255)
    requires_review: Optional[bool] = None
    required_evidence_count: Optional[int] = Field(None, ge=0, le=10)
    severity: Optional[TemplateSeverity] = None
    references: Optional[Any] = None
    changelog: Optional[str] = None
    is_active: Optional[bool] = None
    checklist_items: Optional[List[ChecklistItemIn]] = None

    @field_validator("rubric")
    @classmethod
    def lower_rubric(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if v is not None else v


class ApplyTemplatesRequest(APIModel):
    rubric: str = Field(..., min_length=1, max_length=100)
    jurisdiction_id: Optional[str] = None
    template_ids: Optional[List[str]] = None
    location_id: Optional[str] = None
    owner_user_id: Optional[str] = None


class ApplyTemplatesResult(APIModel):
    obligations_created: int = 0
    tasks_created: int = 0
    obligation_ids: List[str] = Field(default_factory=list)


# ── Service ──

class TemplatesService:
    def __init__(self, db: AsyncSession, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()

    async def create(self, data: TemplateCreate) -> ObligationTemplate:
        if not await self.db.get(Jurisdiction, data.jurisdiction_id):
            raise NotFoundError(f"Jurisdicción no encontrada: {data.jurisdiction_id}")
        if await self._by_key(data.template_key):
            raise ConflictError(f"Ya existe una plantilla con la clave: {data.template_key}")

        template = ObligationTemplate(
            jurisdiction_id=data.jurisdiction_id,
            template_key=data.template_key,
            rubric=data.rubric,
            title=data.title,
            description=data.description,
            type=data.type,
            default_periodicity=data.default_periodicity,
            default_due_rule=data.default_due_rule,
            requires_review=data.requires_review,
            required_evidence_count=data.required_evidence_count,
            severity=data.severity,
            references=data.references,
            version=1,
            is_active=True,
        )
        self.db.add(template)
        await self.db.flush()
        self._add_checklist(template.id, data.checklist_items or [])
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(f"Ya existe una plantilla con la clave: {data.template_key}")
        await self.db.refresh(template)
        logger.info(f"Template created: {template.template_key} v{template.version}")
        return template

    async def find_all(
        self,
        params: PaginationParams,
        jurisdiction_id: Optional[str] = None,
        rubric: Optional[str] = None,
        type: Optional[ObligationType] = None,
        is_active: Optional[bool] = True,
        search: Optional[str] = None,
    ) -> Tuple[List[ObligationTemplate], int]:
        conditions = []
        if jurisdiction_id:
            conditions.append(ObligationTemplate.jurisdiction_id == jurisdiction_id)
        if rubric:
            conditions.append(ObligationTemplate.rubric == rubric.lower())
        if type:
            conditions.append(ObligationTemplate.type == type)
        if is_active is not None:
            conditions.append(ObligationTemplate.is_active.is_(is_active))
        if search:
            conditions.append(ObligationTemplate.title.ilike(f"%{search}%"))

        total = (await self.db.execute(select(func.count(ObligationTemplate.id)).where(*conditions))).scalar() or 0
        order = ObligationTemplate.title.desc() if params.descending else ObligationTemplate.title.asc()
        stmt = (
            select(ObligationTemplate)
            .where(*conditions)
            .order_by(ObligationTemplate.rubric, order)
            .offset(params.offset)
            .limit(params.limit)
        )
        return list((await self.db.execute(stmt)).scalars().all()), total

    async def find_one(self, template_id: str) -> ObligationTemplate:
        template = await self.db.get(ObligationTemplate, template_id)
        if not template:
            raise NotFoundError(f"Plantilla no encontrada: {template_id}")
        return template

    async def find_by_key(self, template_key: str) -> ObligationTemplate:
        template = await self._by_key(template_key)
        if not template:
            raise NotFoundError(f"Plantilla no encontrada con clave: {template_key}")
        return template

    async def find_by_jurisdiction_and_rubric(self, jurisdiction_id: str, rubric: str) -> List[ObligationTemplate]:
        stmt = (
            select(ObligationTemplate)
            .where(
                ObligationTemplate.jurisdiction_id == jurisdiction_id,
                ObligationTemplate.rubric == rubric.lower(),
                ObligationTemplate.is_active.is_(True),
            )
            .order_by(ObligationTemplate.title)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def checklists(self, template_ids: List[str]) -> Dict[str, List[ChecklistTemplateItem]]:
        """Checklist items per template id, in order."""
        out: Dict[str, List[ChecklistTemplateItem]] = {tid: [] for tid in template_ids}
        if not template_ids:
            return out
        stmt = (
            select(ChecklistTemplateItem)
            .where(ChecklistTemplateItem.template_id.in_(template_ids))
            .order_by(ChecklistTemplateItem.template_id, ChecklistTemplateItem.order)
        )
        for item in (await self.db.execute(stmt)).scalars().all():
            out[item.template_id].append(item)
        return out

    async def get_rubrics(self, jurisdiction_id: Optional[str] = None) -> List[Dict[str, Any]]:
        conditions = [ObligationTemplate.is_active.is_(True)]
        if jurisdiction_id:
            conditions.append(ObligationTemplate.jurisdiction_id == jurisdiction_id)
        stmt = (
            select(ObligationTemplate.rubric, func.count(ObligationTemplate.id))
            .where(*conditions)
            .group_by(ObligationTemplate.rubric)
            .order_by(ObligationTemplate.rubric)
        )
        return [
            {"rubric": rubric, "displayName": rubric_display_name(rubric), "templateCount": count}
            for rubric, count in (await self.db.execute(stmt)).all()
        ]

    async def update(self, template_id: str, data: TemplateUpdate) -> ObligationTemplate:
        template = await self.find_one(template_id)
        changes = data.model_dump(exclude_unset=True, exclude={"checklist_items"})

        # Substantive edits bump the version
        if {"title", "description"} & changes.keys() or data.checklist_items is not None:
            template.version = (template.version or 1) + 1

        for field, value in changes.items():
            setattr(template, field, value)

        if data.checklist_items is not None:
            await self.db.execute(
                delete(ChecklistTemplateItem).where(ChecklistTemplateItem.template_id == template.id)
            )
            self._add_checklist(template.id, data.checklist_items)

        await self.db.commit()
        await self.db.refresh(template)
        return template

    async def deactivate(self, template_id: str) -> None:
        template = await self.find_one(template_id)
        template.is_active = False
        await self.db.commit()

    async def apply_to_organization(
        self,
        organization_id: str,
        data: ApplyTemplatesRequest,
        requesting_user_id: str,
        meta: Optional[RequestMeta] = None,
    ) -> ApplyTemplatesResult:
        """Expand matching templates into obligations, checklist tasks and items.

        The whole request is one transaction: either every surviving template
        is applied or nothing is written.
        """
        organization = await self.db.get(Organization, organization_id)
        if not organization:
            raise NotFoundError("Organización no encontrada")

        owner_user_id = data.owner_user_id or requesting_user_id
        await self._check_scope(organization_id, data.location_id, owner_user_id)

        jurisdiction_id = await self._resolve_jurisdiction(data.jurisdiction_id, organization)
        templates = await self._resolve_templates(jurisdiction_id, data)
        if not templates:
            raise BadRequestError(
                f'No se encontraron plantillas para el rubro "{data.rubric}" en la jurisdicción seleccionada'
            )

        location_condition = (
            Obligation.location_id == data.location_id if data.location_id else Obligation.location_id.is_(None)
        )
        existing = await self.db.execute(
            select(Obligation.title).where(Obligation.organization_id == organization_id, location_condition)
        )
        fresh = select_new_templates(templates, set(existing.scalars().all()))
        checklists = await self.checklists([t.id for t in fresh])

        audit = AuditService(self.db)
        now = self.clock.now()
        result = ApplyTemplatesResult()
        for template in fresh:
            due_date = initial_due_date(template.default_periodicity, now)
            obligation = Obligation(
                organization_id=organization_id,
                location_id=data.location_id,
                template_id=template.id,
                title=template.title,
                description=template.description,
                type=template.type,
                status=ObligationStatus.PENDING,
                due_date=due_date,
                recurrence_rule=recurrence_rule(template.default_periodicity),
                requires_review=template.requires_review,
                required_evidence_count=template.required_evidence_count,
                owner_user_id=owner_user_id,
            )
            self.db.add(obligation)
            await self.db.flush()
            result.obligations_created += 1
            result.obligation_ids.append(obligation.id)
            audit.log(
                organization_id, AuditActions.OBLIGATION_CREATED, "Obligation", obligation.id, requesting_user_id,
                {"title": obligation.title, "templateId": template.id, "templateKey": template.template_key}, meta,
            )

            items = checklists.get(template.id) or []
            if items:
                task = Task(
                    obligation_id=obligation.id,
                    assigned_to_user_id=owner_user_id,
                    title=checklist_task_title(template.title),
                    description=template.default_due_rule or DEFAULT_CHECKLIST_DESCRIPTION,
                    status=TaskStatus.OPEN,
                    due_date=due_date,
                )
                self.db.add(task)
                await self.db.flush()
                for item in items:
                    self.db.add(TaskItem(task_id=task.id, description=item.description, order=item.order, done=False))
                result.tasks_created += 1

        audit.log(
            organization_id, AuditActions.TEMPLATES_APPLIED, "Organization", organization_id, requesting_user_id,
            {
                "rubric": data.rubric,
                "jurisdictionId": jurisdiction_id,
                "locationId": data.location_id,
                "obligationsCreated": result.obligations_created,
                "tasksCreated": result.tasks_created,
                "skipped": len(templates) - len(fresh),
            },
            meta,
        )
        await self.db.commit()
        logger.info(
            f"Templates applied to org {organization_id}: rubric={data.rubric} "
            f"obligations={result.obligations_created} tasks={result.tasks_created}"
        )
        return result

    # ── helpers ──

    def _add_checklist(self, template_id: str, items: List[ChecklistItemIn]) -> None:
        for index, item in enumerate(items):
            self.db.add(ChecklistTemplateItem(
                template_id=template_id,
                description=item.description,
                order=index,
                is_required=item.is_required,
            ))

    async def _by_key(self, template_key: str) -> Optional[ObligationTemplate]:
        result = await self.db.execute(select(ObligationTemplate).where(ObligationTemplate.template_key == template_key))
        return result.scalar_one_or_none()

    async def _resolve_jurisdiction(self, jurisdiction_id: Optional[str], organization: Organization) -> str:
        if jurisdiction_id:
            return jurisdiction_id
        if organization.jurisdiction_id:
            return organization.jurisdiction_id
        return (await JurisdictionsService(self.db).get_or_create_default()).id

    async def _resolve_templates(self, jurisdiction_id: str, data: ApplyTemplatesRequest) -> List[ObligationTemplate]:
        if data.template_ids:
            stmt = (
                select(ObligationTemplate)
                .where(ObligationTemplate.id.in_(data.template_ids), ObligationTemplate.is_active.is_(True))
                .order_by(ObligationTemplate.title)
            )
            return list((await self.db.execute(stmt)).scalars().all())
        return await self.find_by_jurisdiction_and_rubric(jurisdiction_id, data.rubric)

    async def _check_scope(self, organization_id: str, location_id: Optional[str], owner_user_id: str) -> None:
        if location_id:
            location = await self.db.get(Location, location_id)
            if not location or location.organization_id != organization_id or not location.active:
                raise BadRequestError("Local no encontrado o no pertenece a esta organización")
        membership = await self.db.execute(
            select(UserOrg.id).where(UserOrg.user_id == owner_user_id, UserOrg.organization_id == organization_id)
        )
        if membership.scalar_one_or_none() is None:
            raise BadRequestError("El usuario responsable no pertenece a esta organización")
