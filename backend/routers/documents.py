# routers/documents.py — Evidence documents via pre-signed object storage URLs
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from auth import OrgContext, require_org_member
from clock import Clock, get_clock
from database import get_db_session
from pagination import APIModel, PaginationParams, get_pagination, ok, paginated
from services.audit import RequestMeta
from services.documents import DocumentsService, UploadUrlRequest, DocumentCreate
from storage import ObjectStore, get_object_store

router = APIRouter(prefix="/api/v1/organizations/{organization_id}/documents", tags=["Documents"])


class DocumentOut(APIModel):
    id: str
    organization_id: str
    obligation_id: Optional[str] = None
    task_id: Optional[str] = None
    uploaded_by_user_id: str
    file_name: str
    file_key: str
    mime_type: str
    size_bytes: int
    uploaded_at: Optional[datetime] = None


class DocumentDetailOut(DocumentOut):
    signed_url: str


@router.post("/upload-url")
async def create_upload_url(
    data: UploadUrlRequest,
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
    store: ObjectStore = Depends(get_object_store),
    clock: Clock = Depends(get_clock),
):
    """Pre-signed PUT URL; the client uploads directly to storage"""
    return ok(await DocumentsService(db, store, clock).create_upload_url(ctx.organization_id, data))


@router.post("", status_code=201)
async def register_document(
    data: DocumentCreate,
    request: Request,
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
    store: ObjectStore = Depends(get_object_store),
    clock: Clock = Depends(get_clock),
):
    """Register an uploaded object after checking it against storage"""
    document = await DocumentsService(db, store, clock).register(ctx, data, RequestMeta.from_request(request))
    return ok(DocumentOut.model_validate(document))


@router.get("")
async def list_documents(
    obligation_id: Optional[str] = Query(None, alias="obligationId"),
    task_id: Optional[str] = Query(None, alias="taskId"),
    params: PaginationParams = Depends(get_pagination),
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
    store: ObjectStore = Depends(get_object_store),
):
    items, total = await DocumentsService(db, store).find_all(ctx.organization_id, params, obligation_id, task_id)
    return paginated([DocumentOut.model_validate(d) for d in items], total, params)


@router.get("/{document_id}")
async def get_document(
    document_id: str,
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
    store: ObjectStore = Depends(get_object_store),
):
    document, signed_url = await DocumentsService(db, store).find_one(ctx.organization_id, document_id)
    return ok(DocumentDetailOut(**DocumentOut.model_validate(document).model_dump(), signed_url=signed_url))


@router.delete("/{document_id}")
async def delete_document(
    document_id: str,
    request: Request,
    ctx: OrgContext = Depends(require_org_member),
    db: AsyncSession = Depends(get_db_session),
    store: ObjectStore = Depends(get_object_store),
):
    await DocumentsService(db, store).delete(ctx, document_id, RequestMeta.from_request(request))
    return ok({"success": True})
