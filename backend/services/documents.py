# services/documents.py — Evidence documents (metadata here, bytes in object storage)
import logging
from typing import Any, Dict, List, Optional, Tuple

from dateutil.relativedelta import relativedelta
from pydantic import Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import OrgContext
from clock import Clock
from compliance_engine import (
    MAX_FILE_SIZE_BYTES, normalize_mime, is_allowed_mime, extension_matches,
    document_key, organization_prefix,
)
from errors import BadRequestError, ForbiddenError, NotFoundError
from models import Document, Obligation, Organization, Task
from pagination import APIModel, PaginationParams
from services.audit import AuditService, AuditActions, RequestMeta
from storage import ObjectStore, SIGNED_URL_EXPIRE_SECONDS, delete_quietly

logger = logging.getLogger("cumpliros.documents")


class UploadUrlRequest(APIModel):
    file_name: str = Field(..., min_length=1, max_length=255)
    mime_type: str = Field(..., min_length=1, max_length=100)


class DocumentCreate(APIModel):
    file_name: str = Field(..., min_length=1, max_length=255)
    file_key: str = Field(..., min_length=1, max_length=500)
    mime_type: Optional[str] = Field(None, max_length=100)
    size_bytes: Optional[int] = Field(None, ge=0)
    obligation_id: Optional[str] = None
    task_id: Optional[str] = None


class DocumentsService:
    def __init__(self, db: AsyncSession, store: ObjectStore, clock: Optional[Clock] = None):
        self.db = db
        self.store = store
        self.clock = clock or Clock()
        self.audit = AuditService(db)

    async def create_upload_url(self, organization_id: str, data: UploadUrlRequest) -> Dict[str, Any]:
        mime_type = normalize_mime(data.mime_type)
        if not is_allowed_mime(mime_type):
            raise BadRequestError("Tipo de archivo no permitido")
        if not extension_matches(data.file_name, mime_type):
            raise BadRequestError("La extensión del archivo no coincide con el tipo declarado")

        file_key = document_key(organization_id, data.file_name, self.clock.now())
        upload_url = await self.store.presigned_upload_url(file_key, mime_type, SIGNED_URL_EXPIRE_SECONDS)
        return {"uploadUrl": upload_url, "fileKey": file_key, "expiresIn": SIGNED_URL_EXPIRE_SECONDS}

    async def register(self, ctx: OrgContext, data: DocumentCreate, meta: Optional[RequestMeta] = None) -> Document:
        """Record an object the client already uploaded, after checking it against storage."""
        if not data.file_key.startswith(organization_prefix(ctx.organization_id)):
            raise ForbiddenError("El archivo no pertenece a esta organización")

        stored = await self.store.head(data.file_key)
        if stored is None:
            raise BadRequestError("No se encontró el archivo subido o no es accesible")

        stored_mime = normalize_mime(stored.content_type)
        if not is_allowed_mime(stored_mime):
            await delete_quietly(self.store, data.file_key)
            raise BadRequestError("Tipo de archivo no permitido")
        if stored.size_bytes > MAX_FILE_SIZE_BYTES:
            await delete_quietly(self.store, data.file_key)
            raise BadRequestError("El archivo excede el tamaño máximo permitido (10 MB)")
        if data.mime_type and normalize_mime(data.mime_type) != stored_mime:
            raise BadRequestError("El tipo de archivo no coincide con el declarado")
        if not extension_matches(data.file_name, stored_mime):
            raise BadRequestError("La extensión del archivo no coincide con el tipo declarado")

        if data.obligation_id:
            obligation = await self.db.get(Obligation, data.obligation_id)
            if not obligation or obligation.organization_id != ctx.organization_id:
                raise BadRequestError("Obligación no encontrada o no pertenece a esta organización")
        if data.task_id:
            task = (await self.db.execute(
                select(Task)
                .join(Obligation, Obligation.id == Task.obligation_id)
                .where(Task.id == data.task_id, Obligation.organization_id == ctx.organization_id)
            )).scalar_one_or_none()
            if not task:
                raise BadRequestError("Tarea no encontrada o no pertenece a esta organización")

        document = Document(
            organization_id=ctx.organization_id,
            obligation_id=data.obligation_id,
            task_id=data.task_id,
            uploaded_by_user_id=ctx.user_id,
            file_name=data.file_name,
            file_key=data.file_key,
            mime_type=stored_mime,
            size_bytes=stored.size_bytes,
            uploaded_at=self.clock.now(),
        )
        self.db.add(document)
        await self.db.flush()
        self.audit.log(
            ctx.organization_id, AuditActions.DOCUMENT_UPLOADED, "Document", document.id, ctx.user_id,
            {
                "fileName": document.file_name,
                "mimeType": document.mime_type,
                "sizeBytes": document.size_bytes,
                "obligationId": document.obligation_id,
                "taskId": document.task_id,
            },
            meta,
        )
        await self.db.commit()
        await self.db.refresh(document)
        return document

    async def find_all(
        self,
        organization_id: str,
        params: PaginationParams,
        obligation_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> Tuple[List[Document], int]:
        conditions = [Document.organization_id == organization_id]
        if obligation_id:
            conditions.append(Document.obligation_id == obligation_id)
        if task_id:
            conditions.append(Document.task_id == task_id)

        total = (await self.db.execute(select(func.count(Document.id)).where(*conditions))).scalar() or 0
        stmt = (
            select(Document)
            .where(*conditions)
            .order_by(Document.uploaded_at.desc())
            .offset(params.offset)
            .limit(params.limit)
        )
        return list((await self.db.execute(stmt)).scalars().all()), total

    async def get(self, organization_id: str, document_id: str) -> Document:
        document = await self.db.get(Document, document_id)
        if not document or document.organization_id != organization_id:
            raise NotFoundError("Documento no encontrado")
        return document

    async def find_one(self, organization_id: str, document_id: str) -> Tuple[Document, str]:
        document = await self.get(organization_id, document_id)
        signed_url = await self.store.presigned_download_url(document.file_key, SIGNED_URL_EXPIRE_SECONDS)
        return document, signed_url

    async def delete(self, ctx: OrgContext, document_id: str, meta: Optional[RequestMeta] = None) -> None:
        document = await self.get(ctx.organization_id, document_id)
        await delete_quietly(self.store, document.file_key)
        await self.db.delete(document)
        self.audit.log(
            ctx.organization_id, AuditActions.DOCUMENT_DELETED, "Document", document.id, ctx.user_id,
            {"fileName": document.file_name}, meta,
        )
        await self.db.commit()

    async def purge_expired_documents(self) -> int:
        """Delete documents older than each organisation's retention window.

        A document whose object could not be removed stays registered and is
        retried on the next run.
        """
        now = self.clock.now()
        orgs = await self.db.execute(
            select(Organization).where(Organization.active.is_(True), Organization.retention_months > 0)
        )
        purged = 0
        for org in orgs.scalars().all():
            cutoff = now - relativedelta(months=org.retention_months)
            expired = await self.db.execute(
                select(Document).where(Document.organization_id == org.id, Document.uploaded_at < cutoff)
            )
            for document in expired.scalars().all():
                if not await delete_quietly(self.store, document.file_key):
                    continue
                await self.db.delete(document)
                self.audit.log(
                    org.id, AuditActions.DOCUMENT_DELETED, "Document", document.id, None,
                    {
                        "fileName": document.file_name,
                        "reason": "retention_policy",
                        "retentionMonths": org.retention_months,
                    },
                )
                purged += 1
            await self.db.commit()
        logger.info(f"Retention purge: {purged} document(s) removed")
        return purged
