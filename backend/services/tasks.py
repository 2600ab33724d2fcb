# services/tasks.py — Tasks and checklist items
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from pydantic import Field
from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import AsyncSession

from auth import OrgContext
from compliance_engine import TaskStatus, task_progress
from errors import BadRequestError, NotFoundError
from models import Task, TaskItem, Obligation, UserOrg
from pagination import APIModel, PaginationParams
from services.audit import AuditService, AuditActions, RequestMeta


class TaskItemCreate(APIModel):
    description: str = Field(..., min_length=1, max_length=500)
    order: Optional[int] = Field(None, ge=0)


class TaskItemUpdate(APIModel):
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    done: Optional[bool] = None
    order: Optional[int] = Field(None, ge=0)


class TaskCreate(APIModel):
    obligation_id: str
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    assigned_to_user_id: Optional[str] = None
    due_date: Optional[datetime] = None
    items: Optional[List[TaskItemCreate]] = None


class TaskUpdate(APIModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    assigned_to_user_id: Optional[str] = None
    status: Optional[TaskStatus] = None
    due_date: Optional[datetime] = None


@dataclass
class TaskFilters:
    obligation_id: Optional[str] = None
    status: Optional[TaskStatus] = None
    assigned_to_user_id: Optional[str] = None


@dataclass
class TaskView:
    task: Task
    items: List[TaskItem] = field(default_factory=list)

    @property
    def progress(self) -> int:
        return task_progress(sum(1 for item in self.items if item.done), len(self.items))


class TasksService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    async def create(self, ctx: OrgContext, data: TaskCreate, meta: Optional[RequestMeta] = None) -> TaskView:
        await self._obligation(ctx.organization_id, data.obligation_id)
        await self._check_assignee(ctx.organization_id, data.assigned_to_user_id)

        task = Task(
            obligation_id=data.obligation_id,
            assigned_to_user_id=data.assigned_to_user_id,
            title=data.title.strip(),
            description=data.description,
            status=TaskStatus.OPEN,
            due_date=data.due_date,
        )
        self.db.add(task)
        await self.db.flush()
        for index, item in enumerate(data.items or []):
            self.db.add(TaskItem(
                task_id=task.id,
                description=item.description,
                order=item.order if item.order is not None else index,
                done=False,
            ))
        self.audit.log(
            ctx.organization_id, AuditActions.TASK_CREATED, "Task", task.id, ctx.user_id,
            {"title": task.title, "obligationId": data.obligation_id, "items": len(data.items or [])}, meta,
        )
        await self.db.commit()
        return await self.find_one(ctx.organization_id, task.id)

    async def find_all(
        self, organization_id: str, params: PaginationParams, filters: TaskFilters
    ) -> Tuple[List[TaskView], int]:
        conditions = [Obligation.organization_id == organization_id]
        if filters.obligation_id:
            conditions.append(Task.obligation_id == filters.obligation_id)
        if filters.status:
            conditions.append(Task.status == filters.status)
        if filters.assigned_to_user_id:
            conditions.append(Task.assigned_to_user_id == filters.assigned_to_user_id)

        base = select(Task).join(Obligation, Obligation.id == Task.obligation_id).where(*conditions)
        total = (await self.db.execute(select(func.count()).select_from(base.subquery()))).scalar() or 0
        order = Task.created_at.desc() if params.descending else Task.created_at.asc()
        tasks = list((await self.db.execute(base.order_by(order).offset(params.offset).limit(params.limit))).scalars().all())

        items = await self._items([t.id for t in tasks])
        return [TaskView(task, items.get(task.id, [])) for task in tasks], total

    async def find_one(self, organization_id: str, task_id: str) -> TaskView:
        task = await self._task(organization_id, task_id)
        items = await self._items([task.id])
        return TaskView(task, items.get(task.id, []))

    async def update(
        self, ctx: OrgContext, task_id: str, data: TaskUpdate, meta: Optional[RequestMeta] = None
    ) -> TaskView:
        task = await self._task(ctx.organization_id, task_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("assigned_to_user_id"):
            await self._check_assignee(ctx.organization_id, changes["assigned_to_user_id"])

        old_status = TaskStatus(task.status)
        for name, value in changes.items():
            setattr(task, name, value)

        completed = data.status == TaskStatus.COMPLETED and old_status != TaskStatus.COMPLETED
        self.audit.log(
            ctx.organization_id,
            AuditActions.TASK_COMPLETED if completed else AuditActions.TASK_UPDATED,
            "Task", task.id, ctx.user_id,
            {"fields": sorted(changes.keys())}, meta,
        )
        await self.db.commit()
        return await self.find_one(ctx.organization_id, task.id)

    async def delete(self, ctx: OrgContext, task_id: str, meta: Optional[RequestMeta] = None) -> None:
        task = await self._task(ctx.organization_id, task_id)
        await self.db.execute(delete(TaskItem).where(TaskItem.task_id == task.id))
        await self.db.delete(task)
        self.audit.log(
            ctx.organization_id, AuditActions.TASK_DELETED, "Task", task.id, ctx.user_id, {"title": task.title}, meta,
        )
        await self.db.commit()

    # ── Checklist ──

    async def add_item(
        self, ctx: OrgContext, task_id: str, data: TaskItemCreate, meta: Optional[RequestMeta] = None
    ) -> TaskView:
        task = await self._task(ctx.organization_id, task_id)
        order = data.order
        if order is None:
            highest = await self.db.execute(select(func.max(TaskItem.order)).where(TaskItem.task_id == task.id))
            current = highest.scalar()
            order = 0 if current is None else current + 1

        item = TaskItem(task_id=task.id, description=data.description, order=order, done=False)
        self.db.add(item)
        await self.db.flush()
        self.audit.log(
            ctx.organization_id, AuditActions.TASK_ITEM_ADDED, "Task", task.id, ctx.user_id,
            {"itemId": item.id, "description": item.description}, meta,
        )
        await self.db.commit()
        return await self.find_one(ctx.organization_id, task.id)

    async def update_item(
        self, ctx: OrgContext, task_id: str, item_id: str, data: TaskItemUpdate, meta: Optional[RequestMeta] = None
    ) -> TaskView:
        task = await self._task(ctx.organization_id, task_id)
        item = await self._item(task.id, item_id)
        changes = data.model_dump(exclude_unset=True)
        for name, value in changes.items():
            setattr(item, name, value)
        self.audit.log(
            ctx.organization_id, AuditActions.TASK_ITEM_UPDATED, "Task", task.id, ctx.user_id,
            {"itemId": item.id, "fields": sorted(changes.keys())}, meta,
        )
        await self.db.commit()
        return await self.find_one(ctx.organization_id, task.id)

    async def toggle_item(
        self, ctx: OrgContext, task_id: str, item_id: str, meta: Optional[RequestMeta] = None
    ) -> TaskView:
        task = await self._task(ctx.organization_id, task_id)
        item = await self._item(task.id, item_id)
        item.done = not item.done
        self.audit.log(
            ctx.organization_id, AuditActions.TASK_ITEM_TOGGLED, "Task", task.id, ctx.user_id,
            {"itemId": item.id, "done": item.done}, meta,
        )
        await self.db.commit()
        return await self.find_one(ctx.organization_id, task.id)

    async def delete_item(
        self, ctx: OrgContext, task_id: str, item_id: str, meta: Optional[RequestMeta] = None
    ) -> TaskView:
        task = await self._task(ctx.organization_id, task_id)
        item = await self._item(task.id, item_id)
        await self.db.delete(item)
        self.audit.log(
            ctx.organization_id, AuditActions.TASK_ITEM_DELETED, "Task", task.id, ctx.user_id,
            {"itemId": item.id}, meta,
        )
        await self.db.commit()
        return await self.find_one(ctx.organization_id, task.id)

    # ── helpers ──

    async def _obligation(self, organization_id: str, obligation_id: str) -> Obligation:
        obligation = await self.db.get(Obligation, obligation_id)
        if not obligation or obligation.organization_id != organization_id:
            raise NotFoundError("Obligación no encontrada")
        return obligation

    async def _task(self, organization_id: str, task_id: str) -> Task:
        stmt = (
            select(Task)
            .join(Obligation, Obligation.id == Task.obligation_id)
            .where(Task.id == task_id, Obligation.organization_id == organization_id)
        )
        task = (await self.db.execute(stmt)).scalar_one_or_none()
        if not task:
            raise NotFoundError("Tarea no encontrada")
        return task

    async def _item(self, task_id: str, item_id: str) -> TaskItem:
        item = await self.db.get(TaskItem, item_id)
        if not item or item.task_id != task_id:
            raise NotFoundError("Ítem no encontrado")
        return item

    async def _items(self, task_ids: List[str]) -> Dict[str, List[TaskItem]]:
        if not task_ids:
            return {}
        stmt = (
            select(TaskItem)
            .where(TaskItem.task_id.in_(task_ids))
            .order_by(TaskItem.task_id, TaskItem.order, TaskItem.created_at)
        )
        grouped: Dict[str, List[TaskItem]] = {}
        for item in (await self.db.execute(stmt)).scalars().all():
            grouped.setdefault(item.task_id, []).append(item)
        return grouped

    async def _check_assignee(self, organization_id: str, user_id: Optional[str]) -> None:
        if not user_id:
            return
        result = await self.db.execute(
            select(UserOrg.id).where(UserOrg.organization_id == organization_id, UserOrg.user_id == user_id)
        )
        if result.scalar_one_or_none() is None:
            raise BadRequestError("El usuario asignado no pertenece a esta organización")
