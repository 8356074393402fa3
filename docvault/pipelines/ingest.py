"""Upload ingestion: validate, transform, gate on quota, store, persist.

Reusable from both the HTTP upload handler and scripts.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from pathlib import PurePosixPath
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from .. import models
from ..errors import FileRequired, FileTooLarge, UnsupportedCompressionTarget, UnsupportedFileType
from ..quota import StorageAccountant
from ..repository import DocumentRepository
from ..storage import LocalFileStore, resolve_extension
from ..transform import (
    PDF_MIME_TYPE,
    CompressionTier,
    InputFile,
    MediaTransformer,
    is_image_mime,
    is_pdf_mime,
    parse_compression,
)

logger = logging.getLogger(__name__)

DOCUMENT_MIME_TYPES = frozenset({
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "text/plain",
    "application/rtf",
})

_owner_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()


def _owner_lock(owner_id: str) -> asyncio.Lock:
    lock = _owner_locks.get(owner_id)
    if lock is None:
        lock = asyncio.Lock()
        _owner_locks[owner_id] = lock
    return lock


def is_allowed_document_mime(mime_type: str) -> bool:
    normalized = (mime_type or "").lower()
    return normalized.startswith("image/") or normalized in DOCUMENT_MIME_TYPES


def merged_file_name(files: Sequence[InputFile]) -> str:
    stem = PurePosixPath((files[0].original_name or "").replace("\\", "/")).stem
    return f"{stem or 'document'}-merged.pdf"


class UploadIngestor:
    """Turns uploaded files into stored Documents.

    Args:
        session: Database session; committed on success, rolled back on failure
        transformer: Image/PDF transformer
        store: Permanent file store
        documents_prefix: Public prefix for stored documents
        default_limit_bytes: Storage limit for owners without an override
        max_upload_bytes: Per-file size limit
    """

    def __init__(
        self,
        session: AsyncSession,
        transformer: MediaTransformer,
        store: LocalFileStore,
        *,
        documents_prefix: str,
        default_limit_bytes: int,
        max_upload_bytes: int,
    ):
        self.session = session
        self.transformer = transformer
        self.store = store
        self.documents_prefix = documents_prefix
        self.max_upload_bytes = max_upload_bytes
        self.repository = DocumentRepository(session)
        self.accountant = StorageAccountant(self.repository, default_limit_bytes)

    async def ingest(
        self,
        owner_id: str,
        files: InputFile | Sequence[InputFile] | None,
        declared_type: models.DocumentType,
        compression: CompressionTier | str | None = None,
        merge: bool = False,
    ) -> models.Document | list[models.Document]:
        """Ingest one or more files.

        Returns a single Document for one file or a merge, otherwise a list
        with one Document per file in input order.

        Raises:
            FileRequired: No files supplied
            UnsupportedCompressionOption: Unknown compression tier
            UnsupportedFileType / FileTooLarge: A file fails upload validation
            UnsupportedCompressionTarget: Compression requested for a non image/PDF
            UnsupportedMergeInput: Merge requested with a non image/PDF
            StorageLimitExceeded: The result does not fit the owner's quota
            PdfOptimizerError: Ghostscript failed
        """
        if isinstance(files, InputFile):
            batch = [files]
            single = True
        else:
            batch = list(files or [])
            single = len(batch) == 1
        if not batch:
            raise FileRequired()

        tier = parse_compression(compression)
        for item in batch:
            self._validate(item)

        if merge and len(batch) > 1:
            logger.info(f"Merging {len(batch)} files for owner {owner_id}")
            data = await asyncio.to_thread(self.transformer.merge_into_single_pdf, batch, tier)
            prepared = [InputFile(data=data, mime_type=PDF_MIME_TYPE, original_name=merged_file_name(batch))]
            documents = await self._persist(owner_id, prepared, declared_type)
            return documents[0]

        prepared = [await self._transform(item, tier) for item in batch]
        documents = await self._persist(owner_id, prepared, declared_type)
        return documents[0] if single else documents

    def _validate(self, item: InputFile) -> None:
        if not is_allowed_document_mime(item.mime_type):
            raise UnsupportedFileType()
        if len(item.data) > self.max_upload_bytes:
            raise FileTooLarge.over_limit(self.max_upload_bytes)

    async def _transform(self, item: InputFile, tier: CompressionTier | None) -> InputFile:
        if tier is None:
            return item
        if is_pdf_mime(item.mime_type):
            data = await asyncio.to_thread(self.transformer.compress_pdf, item.data, tier)
        elif is_image_mime(item.mime_type):
            data = await asyncio.to_thread(self.transformer.compress_image, item.data, item.mime_type, tier)
        else:
            raise UnsupportedCompressionTarget()
        return InputFile(data=data, mime_type=item.mime_type, original_name=item.original_name)

    async def _persist(
        self,
        owner_id: str,
        items: Sequence[InputFile],
        declared_type: models.DocumentType,
    ) -> list[models.Document]:
        total = sum(len(item.data) for item in items)
        written: list[str] = []

        async with _owner_lock(owner_id):
            await self.accountant.assert_within_quota(owner_id, total)
            try:
                documents = []
                for item in items:
                    extension = resolve_extension(item.original_name, item.mime_type)
                    path = await asyncio.to_thread(
                        self.store.write, self.documents_prefix, owner_id, item.data, extension
                    )
                    written.append(path)
                    documents.append(
                        await self.repository.create(
                            owner_id=owner_id,
                            type=declared_type,
                            original_name=item.original_name or PurePosixPath(path).name,
                            path=path,
                            mime_type=item.mime_type,
                            size=len(item.data),
                        )
                    )
                await self.session.commit()
            except BaseException:
                await self.session.rollback()
                for path in written:
                    try:
                        await asyncio.to_thread(self.store.remove, path)
                    except OSError:
                        logger.exception(f"Failed to remove {path} after aborted upload")
                raise

        logger.info(f"Stored {len(documents)} document(s) for owner {owner_id} ({total:,} bytes)")
        return documents
