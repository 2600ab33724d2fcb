# routers/tasks.py — Tasks and their checklist items
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from auth import OrgContext, require_org_member
from compliance_engine import TaskStatus
from database import get_db_session
from pagination import APIModel, PaginationParams, get_pagination, ok, paginated
from services.audit import RequestMeta
from services.tasks import TasksService, TaskCreate, TaskUpdate, TaskItemCreate, TaskItemUpdate, TaskFilters, TaskView

router = APIRouter(prefix="/api/v1/organizations/{organization_id}/tasks", tags=["Tasks"])


# --- Schemas ---

class TaskItemOut(APIModel):
    id: str
    description: str
    done: bool
    order: int


class TaskOut(APIModel):
    id: str
    obligation_id: str
    assigned_to_user_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    status: TaskStatus
    due_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[TaskItemOut] = []
    progress: int = 0


def _task_out(view: TaskView) -> TaskOut:
    out = TaskOut.model_validate(view.task)
    out.items = [TaskItemOut.model_validate(item) for item in view.items]
    out.progress = view.progress
    return out


# --- Tasks ---

@router.post("", status_code=201)
async def create_task(
    data: TaskCreate,
    request: Request,
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
):
    return ok(_task_out(await TasksService(db).create(ctx, data, RequestMeta.from_request(request))))


@router.get("")
async def list_tasks(
    obligation_id: Optional[str] = Query(None, alias="obligationId"),
    status: Optional[TaskStatus] = None,
    assigned_to_user_id: Optional[str] = Query(None, alias="assignedToUserId"),
    params: PaginationParams = Depends(get_pagination),
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
):
    filters = TaskFilters(obligation_id=obligation_id, status=status, assigned_to_user_id=assigned_to_user_id)
    views, total = await TasksService(db).find_all(ctx.organization_id, params, filters)
    return paginated([_task_out(v) for v in views], total, params)


@router.get("/{task_id}")
async def get_task(
    task_id: str,
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
):
    return ok(_task_out(await TasksService(db).find_one(ctx.organization_id, task_id)))


@router.patch("/{task_id}")
async def update_task(
    task_id: str,
    data: TaskUpdate,
    request: Request,
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
):
    return ok(_task_out(await TasksService(db).update(ctx, task_id, data, RequestMeta.from_request(request))))


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    request: Request,
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
):
    await TasksService(db).delete(ctx, task_id, RequestMeta.from_request(request))
    return ok({"success": True})


# --- Checklist items ---

@router.post("/{task_id}/items", status_code=201)
async def add_task_item(
    task_id: str,
    data: TaskItemCreate,
    request: Request,
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
):
    return ok(_task_out(await TasksService(db).add_item(ctx, task_id, data, RequestMeta.from_request(request))))


@router.patch("/{task_id}/items/{item_id}")
async def update_task_item(
    task_id: str,
    item_id: str,
    data: TaskItemUpdate,
    request: Request,
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
):
    view = await TasksService(db).update_item(ctx, task_id, item_id, data, RequestMeta.from_request(request))
    return ok(_task_out(view))


@router.post("/{task_id}/items/{item_id}/toggle")
async def toggle_task_item(
    task_id: str,
    item_id: str,
    request: Request,
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
):
    view = await TasksService(db).toggle_item(ctx, task_id, item_id, RequestMeta.from_request(request))
    return ok(_task_out(view))


@router.delete("/{task_id}/items/{item_id}")
async def delete_task_item(
    task_id: str,
    item_id: str,
    request: Request,
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
):
    view = await TasksService(db).delete_item(ctx, task_id, item_id, RequestMeta.from_request(request))
    return ok(_task_out(view))
