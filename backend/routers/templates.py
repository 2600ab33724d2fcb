# routers/templates.py — Obligation template catalog and rubric application
from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from auth import OrgContext, require_org_role, require_platform_admin
from clock import Clock, get_clock
from compliance_engine import Role, ObligationType, Periodicity, TemplateSeverity
from database import get_db_session
from models import ObligationTemplate, ChecklistTemplateItem
from pagination import APIModel, PaginationParams, get_pagination, ok, paginated
from services.audit import RequestMeta
from services.templates import TemplatesService, TemplateCreate, TemplateUpdate, ApplyTemplatesRequest

router = APIRouter(prefix="/api/v1/templates", tags=["Templates"])
apply_router = APIRouter(prefix="/api/v1/organizations/{organization_id}/templates", tags=["Templates"])


# --- Schemas ---

class ChecklistItemOut(APIModel):
    id: str
    description: str
    order: int
    is_required: bool


class TemplateOut(APIModel):
    id: str
    jurisdiction_id: str
    template_key: str
    rubric: str
    title: str
    description: Optional[str] = None
    type: ObligationType
    default_periodicity: Periodicity
    default_due_rule: Optional[str] = None
    requires_review: bool
    required_evidence_count: int
    severity: TemplateSeverity
    references: Optional[Any] = None
    version: int
    changelog: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    checklist_items: Optional[List[ChecklistItemOut]] = None


def _template_out(template: ObligationTemplate, items: Optional[List[ChecklistTemplateItem]] = None) -> TemplateOut:
    out = TemplateOut.model_validate(template)
    if items is not None:
        out.checklist_items = [ChecklistItemOut.model_validate(i) for i in items]
    return out


async def _with_checklist(service: TemplatesService, template: ObligationTemplate) -> TemplateOut:
    checklists = await service.checklists([template.id])
    return _template_out(template, checklists[template.id])


# --- Catalog ---

@router.get("")
async def list_templates(
    jurisdiction_id: Optional[str] = Query(None, alias="jurisdictionId"),
    rubric: Optional[str] = None,
    type: Optional[ObligationType] = None,
    is_active: bool = Query(True, alias="isActive"),
    search: Optional[str] = None,
    params: PaginationParams = Depends(get_pagination),
    db: AsyncSession = Depends(get_db_session),
):
    items, total = await TemplatesService(db).find_all(params, jurisdiction_id, rubric, type, is_active, search)
    return paginated([_template_out(t) for t in items], total, params)


@router.get("/rubrics")
async def list_rubrics(
    jurisdiction_id: Optional[str] = Query(None, alias="jurisdictionId"),
    db: AsyncSession = Depends(get_db_session),
):
    return ok(await TemplatesService(db).get_rubrics(jurisdiction_id))


@router.get("/by-key/{template_key}")
async def get_template_by_key(template_key: str, db: AsyncSession = Depends(get_db_session)):
    service = TemplatesService(db)
    return ok(await _with_checklist(service, await service.find_by_key(template_key)))


@router.get("/jurisdiction/{jurisdiction_id}/rubric/{rubric}")
async def list_templates_for_rubric(jurisdiction_id: str, rubric: str, db: AsyncSession = Depends(get_db_session)):
    service = TemplatesService(db)
    templates = await service.find_by_jurisdiction_and_rubric(jurisdiction_id, rubric)
    checklists = await service.checklists([t.id for t in templates])
    return ok([_template_out(t, checklists[t.id]) for t in templates])


@router.get("/{template_id}")
async def get_template(template_id: str, db: AsyncSession = Depends(get_db_session)):
    service = TemplatesService(db)
    return ok(await _with_checklist(service, await service.find_one(template_id)))


@router.post("", status_code=201)
async def create_template(
    data: TemplateCreate,
    _admin=Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db_session),
):
    service = TemplatesService(db)
    return ok(await _with_checklist(service, await service.create(data)))


@router.patch("/{template_id}")
async def update_template(
    template_id: str,
    data: TemplateUpdate,
    _admin=Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db_session),
):
    service = TemplatesService(db)
    return ok(await _with_checklist(service, await service.update(template_id, data)))


@router.delete("/{template_id}")
async def deactivate_template(
    template_id: str,
    _admin=Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db_session),
):
    await TemplatesService(db).deactivate(template_id)
    return ok({"success": True})


# --- Application ---

@apply_router.post("/apply")
async def apply_templates(
    data: ApplyTemplatesRequest,
    request: Request,
    ctx: OrgContext = Depends(require_org_role(Role.OWNER, Role.ADMIN, Role.MANAGER)),
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    """Create obligations and checklist tasks from every template of a rubric"""
    result = await TemplatesService(db, clock).apply_to_organization(
        ctx.organization_id, data, ctx.user_id, RequestMeta.from_request(request)
    )
    return ok(result)
