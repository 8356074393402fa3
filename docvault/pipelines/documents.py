"""Owner-facing document operations: list, download, delete, storage stats."""
from __future__ import annotations

import asyncio
import logging
import math
import re
from dataclasses import dataclass
from typing import Literal, Sequence
from urllib.parse import quote

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models
from ..errors import DocumentNotFound
from ..quota import StorageAccountant, StorageUsage
from ..repository import DocumentRepository
from ..storage import LocalFileStore

logger = logging.getLogger(__name__)


class DocumentListQuery(BaseModel):
    """Validated list filters."""
    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=20, ge=1, le=200)
    type: models.DocumentType | None = None
    q: str | None = Field(default=None, min_length=1, max_length=255)
    sort_by: Literal["uploaded_at", "original_name", "size", "type"] = "uploaded_at"
    sort_order: Literal["asc", "desc"] = "desc"


@dataclass
class DocumentListResult:
    items: list[models.Document]
    page: int
    per_page: int
    total_items: int

    @property
    def total_pages(self) -> int:
        if self.total_items == 0:
            return 0
        return math.ceil(self.total_items / max(self.per_page, 1))


@dataclass
class DocumentDownload:
    data: bytes
    mime_type: str
    file_name: str


def build_content_disposition(file_name: str) -> str:
    """``attachment`` header with an ASCII fallback and the exact UTF-8 name."""
    fallback = re.sub(r"[\r\n]+", " ", file_name)
    fallback = re.sub(r'["\\]', "", fallback).strip()
    ascii_safe = re.sub(r"[^\x20-\x7E]+", "", fallback)
    ascii_safe = re.sub(r"[\s-]+", "_", ascii_safe).strip()
    safe_name = ascii_safe or "document"
    encoded = quote(file_name, safe="-_.!~*'()")
    return f"attachment; filename=\"{safe_name}\"; filename*=UTF-8''{encoded}"


class DocumentService:
    """Document queries and deletions scoped to one owner."""

    def __init__(self, session: AsyncSession, store: LocalFileStore, default_limit_bytes: int):
        self.session = session
        self.store = store
        self.repository = DocumentRepository(session)
        self.accountant = StorageAccountant(self.repository, default_limit_bytes)

    async def list(self, owner_id: str, query: DocumentListQuery) -> DocumentListResult:
        page = await self.repository.find_by_owner(
            owner_id,
            type=query.type,
            q=query.q,
            sort_by=query.sort_by,
            sort_order=query.sort_order,
            page=query.page,
            per_page=query.per_page,
        )
        return DocumentListResult(
            items=page.items,
            page=query.page,
            per_page=query.per_page,
            total_items=page.total_items,
        )

    async def get(self, owner_id: str, document_id: str) -> models.Document:
        document = await self.repository.find_owned(owner_id, document_id)
        if document is None:
            raise DocumentNotFound()
        return document

    async def download(self, owner_id: str, document_id: str) -> DocumentDownload:
        document = await self.get(owner_id, document_id)
        if not document.path:
            raise DocumentNotFound("Document is not available")
        try:
            data = await asyncio.to_thread(self.store.read, document.path)
        except FileNotFoundError as e:
            logger.warning(f"Document {document.id} file missing at {document.path}")
            raise DocumentNotFound("Document file not found on server") from e
        return DocumentDownload(data=data, mime_type=document.mime_type, file_name=document.original_name)

    async def delete(self, owner_id: str, document_id: str) -> None:
        document = await self.get(owner_id, document_id)
        await self._remove_file(document.path)
        await self.repository.delete(owner_id, [document.id])
        await self.session.commit()

    async def mass_delete(self, owner_id: str, ids: Sequence[str]) -> int:
        unique_ids = list(dict.fromkeys(ids))
        if not unique_ids:
            raise DocumentNotFound("Select at least one document")
        documents = await self.repository.find_many_owned(owner_id, unique_ids)
        if len(documents) != len(unique_ids):
            raise DocumentNotFound("Some documents were not found or are not yours")

        for document in documents:
            await self._remove_file(document.path)
        deleted = await self.repository.delete(owner_id, unique_ids)
        await self.session.commit()
        logger.info(f"Deleted {deleted} documents for owner {owner_id}")
        return deleted

    async def storage_stats(self, owner_id: str) -> StorageUsage:
        return await self.accountant.usage(owner_id)

    async def _remove_file(self, public_path: str) -> None:
        try:
            await asyncio.to_thread(self.store.remove, public_path)
        except OSError as e:
            logger.warning(f"Failed to delete document file {public_path}: {e}")
