"""Document metadata store on top of an async SQLAlchemy session."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import models

logger = logging.getLogger(__name__)

SORT_FIELDS = {
    "uploaded_at": models.Document.created_at,
    "original_name": models.Document.original_name,
    "size": models.Document.size,
    "type": models.Document.type,
}


def escape_like(value: str) -> str:
    """Make ``%`` and ``_`` match literally in a LIKE pattern."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass
class DocumentPage:
    items: list[models.Document]
    total_items: int


class DocumentRepository:
    """Create, find, sum and delete Document rows for one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        *,
        owner_id: str,
        type: models.DocumentType,
        original_name: str,
        path: str,
        mime_type: str,
        size: int,
    ) -> models.Document:
        document = models.Document(
            owner_id=owner_id,
            type=type,
            original_name=original_name,
            path=path,
            mime_type=mime_type,
            size=size,
        )
        self.session.add(document)
        await self.session.flush()
        return document

    async def find_owned(self, owner_id: str, document_id: str) -> models.Document | None:
        query = select(models.Document).where(
            models.Document.id == document_id,
            models.Document.owner_id == owner_id,
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def find_many_owned(self, owner_id: str, ids: Sequence[str]) -> list[models.Document]:
        query = select(models.Document).where(
            models.Document.id.in_(list(ids)),
            models.Document.owner_id == owner_id,
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def find_by_owner(
        self,
        owner_id: str,
        *,
        type: models.DocumentType | None = None,
        q: str | None = None,
        sort_by: str = "uploaded_at",
        sort_order: str = "desc",
        page: int = 1,
        per_page: int = 20,
    ) -> DocumentPage:
        conditions = [models.Document.owner_id == owner_id]
        if type is not None:
            conditions.append(models.Document.type == type)
        if q:
            pattern = f"%{escape_like(q)}%"
            conditions.append(
                or_(
                    models.Document.original_name.ilike(pattern, escape="\\"),
                    models.Document.mime_type.ilike(pattern, escape="\\"),
                )
            )

        column = SORT_FIELDS.get(sort_by, models.Document.created_at)
        order = column.asc() if sort_order == "asc" else column.desc()

        total = await self.session.scalar(
            select(func.count()).select_from(models.Document).where(*conditions)
        )
        result = await self.session.execute(
            select(models.Document)
            .where(*conditions)
            .order_by(order, models.Document.id)
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        return DocumentPage(items=list(result.scalars().all()), total_items=int(total or 0))

    async def sum_size_by_owner(self, owner_id: str) -> int:
        total = await self.session.scalar(
            select(func.coalesce(func.sum(models.Document.size), 0)).where(
                models.Document.owner_id == owner_id
            )
        )
        return int(total or 0)

    async def delete(self, owner_id: str, ids: Sequence[str]) -> int:
        result = await self.session.execute(
            delete(models.Document).where(
                models.Document.id.in_(list(ids)),
                models.Document.owner_id == owner_id,
            )
        )
        return result.rowcount or 0

    async def owner_limit(self, owner_id: str) -> int | None:
        """Configured limit override for an owner, if any."""
        return await self.session.scalar(
            select(models.OwnerQuota.limit_bytes).where(models.OwnerQuota.owner_id == owner_id)
        )
