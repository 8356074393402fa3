"""FastAPI app with health, document upload/download, and temp upload endpoints.

Domain errors are mapped to JSON error bodies by a single exception handler.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from . import models
from .config import Settings, get_settings
from .db import get_session
from .errors import DocvaultError, FileRequired, FileTooLarge, InvalidMergeOption
from .logging_config import setup_logging
from .pipelines.documents import DocumentListQuery, DocumentService, build_content_disposition
from .pipelines.ingest import UploadIngestor
from .storage import FilePromoter, LocalFileStore
from .transform import InputFile, MediaTransformer, PdfOptimizer

logger = logging.getLogger(__name__)


# Pydantic response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None
    details: dict | list | str | None = None


class DocumentResponse(BaseModel):
    """Stored document descriptor."""
    id: str
    owner_id: str
    type: models.DocumentType
    original_name: str
    path: str
    mime_type: str
    size: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, document: models.Document) -> DocumentResponse:
        return cls(
            id=document.id,
            owner_id=document.owner_id,
            type=document.type,
            original_name=document.original_name,
            path=document.path,
            mime_type=document.mime_type,
            size=document.size,
            created_at=document.created_at,
            updated_at=document.updated_at,
        )


class PaginationDTO(BaseModel):
    page: int
    per_page: int
    total_items: int
    total_pages: int


class DocumentListResponse(BaseModel):
    items: list[DocumentResponse]
    pagination: PaginationDTO


class MassDeleteRequest(BaseModel):
    ids: list[str] = Field(min_length=1)


class MassDeleteResponse(BaseModel):
    message: str
    deleted_count: int


class StorageStatsResponse(BaseModel):
    limit: int
    used: int
    remaining: int


class UploadResultResponse(BaseModel):
    """Temp upload descriptor."""
    path: str
    original_name: str
    size: int
    mime_type: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    config = get_settings()
    setup_logging(config.logging)
    store = get_store(config)
    for prefix in (
        config.storage.temp_prefix,
        config.storage.documents_prefix,
        config.storage.photos_prefix,
        config.storage.signatures_prefix,
    ):
        store.directory(prefix).mkdir(parents=True, exist_ok=True)
    logger.info(f"Application starting up, storage root {store.public_root}")

    yield

    # Shutdown
    logger.info("Application shutting down")


app = FastAPI(
    title="Docvault",
    version="0.1.0",
    description="Document upload, compression, merge and storage",
    lifespan=lifespan,
)


# Exception handlers
@app.exception_handler(DocvaultError)
async def docvault_error_handler(request: Request, exc: DocvaultError):
    """Handle domain errors."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=exc.code,
            detail=exc.message,
            details=exc.details,
        ).model_dump(),
    )


# Dependencies
def get_store(config: Settings = Depends(get_settings)) -> LocalFileStore:
    return LocalFileStore(config.storage.public_root)


def get_transformer(config: Settings = Depends(get_settings)) -> MediaTransformer:
    optimizer = PdfOptimizer(config.optimizer.binary, config.optimizer.timeout_seconds)
    return MediaTransformer(optimizer)


def get_owner_id(x_owner_id: str | None = Header(default=None)) -> str:
    """Authenticated owner id, set by the upstream auth layer."""
    owner_id = (x_owner_id or "").strip()
    if not owner_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return owner_id


async def read_upload(upload: UploadFile, limit_bytes: int) -> bytes:
    """Read an upload, never buffering more than ``limit_bytes + 1`` bytes.

    Raises:
        FileTooLarge: The upload is bigger than ``limit_bytes``
    """
    if upload.size is not None and upload.size > limit_bytes:
        raise FileTooLarge.over_limit(limit_bytes)
    data = await upload.read(limit_bytes + 1)
    if len(data) > limit_bytes:
        raise FileTooLarge.over_limit(limit_bytes)
    return data


def parse_merge_flag(value: str | None) -> bool:
    if value is None:
        return False
    normalized = value.strip().lower()
    if normalized in ("1", "true", "yes"):
        return True
    if normalized in ("0", "false", "no", ""):
        return False
    raise InvalidMergeOption()


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    config = get_settings()

    return HealthResponse(
        status="ok",
        version=config.version,
    )


@app.post(
    "/documents",
    response_model=DocumentResponse | list[DocumentResponse],
    status_code=status.HTTP_201_CREATED,
)
async def upload_documents(
    type: models.DocumentType = Form(..., description="Document category"),
    files: list[UploadFile] | None = File(default=None, description="One or more files"),
    file: UploadFile | None = File(default=None, description="Single file"),
    compression: str | None = Query(default=None, description="auto, light, medium or strong"),
    merge: str | None = Query(default=None, description="Merge all files into one PDF"),
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
    store: LocalFileStore = Depends(get_store),
    transformer: MediaTransformer = Depends(get_transformer),
    config: Settings = Depends(get_settings),
) -> DocumentResponse | list[DocumentResponse]:
    """Upload documents.

    This endpoint:
    1. Validates the files and options
    2. Compresses images/PDFs or merges everything into one PDF
    3. Checks the owner's storage quota
    4. Stores the bytes and persists document metadata
    """
    uploads = list(files or [])
    if file is not None:
        uploads.append(file)
    if not uploads:
        raise FileRequired()
    merge_flag = parse_merge_flag(merge)

    logger.info(f"Received {len(uploads)} document upload(s) from owner {owner_id}")

    try:
        inputs = [
            InputFile(
                data=await read_upload(upload, config.storage.max_upload_bytes),
                mime_type=upload.content_type or "application/octet-stream",
                original_name=upload.filename or "",
            )
            for upload in uploads
        ]
    finally:
        for upload in uploads:
            await upload.close()

    ingestor = UploadIngestor(
        session,
        transformer,
        store,
        documents_prefix=config.storage.documents_prefix,
        default_limit_bytes=config.storage.default_limit_bytes,
        max_upload_bytes=config.storage.max_upload_bytes,
    )
    result = await ingestor.ingest(
        owner_id,
        inputs if len(inputs) > 1 else inputs[0],
        type,
        compression=compression,
        merge=merge_flag,
    )

    if isinstance(result, list):
        return [DocumentResponse.from_model(doc) for doc in result]
    return DocumentResponse.from_model(result)


@app.get("/documents", response_model=DocumentListResponse)
async def list_documents(
    query: Annotated[DocumentListQuery, Query()],
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
    store: LocalFileStore = Depends(get_store),
    config: Settings = Depends(get_settings),
) -> DocumentListResponse:
    """List the owner's documents with filters and pagination."""
    service = DocumentService(session, store, config.storage.default_limit_bytes)
    result = await service.list(owner_id, query)
    return DocumentListResponse(
        items=[DocumentResponse.from_model(doc) for doc in result.items],
        pagination=PaginationDTO(
            page=result.page,
            per_page=result.per_page,
            total_items=result.total_items,
            total_pages=result.total_pages,
        ),
    )


@app.get("/documents/storage", response_model=StorageStatsResponse)
async def storage_stats(
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
    store: LocalFileStore = Depends(get_store),
    config: Settings = Depends(get_settings),
) -> StorageStatsResponse:
    """Storage limit, usage and remaining bytes for the owner."""
    service = DocumentService(session, store, config.storage.default_limit_bytes)
    usage = await service.storage_stats(owner_id)
    return StorageStatsResponse(limit=usage.limit, used=usage.used, remaining=usage.remaining)


@app.get("/documents/{document_id}/download")
async def download_document(
    document_id: str,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
    store: LocalFileStore = Depends(get_store),
    config: Settings = Depends(get_settings),
) -> Response:
    """Stream a stored document back with its original name."""
    service = DocumentService(session, store, config.storage.default_limit_bytes)
    download = await service.download(owner_id, document_id)
    return Response(
        content=download.data,
        media_type=download.mime_type,
        headers={"Content-Disposition": build_content_disposition(download.file_name)},
    )


@app.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(
    document_id: str,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
    store: LocalFileStore = Depends(get_store),
    config: Settings = Depends(get_settings),
) -> Response:
    service = DocumentService(session, store, config.storage.default_limit_bytes)
    await service.delete(owner_id, document_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/documents/mass-delete", response_model=MassDeleteResponse)
async def mass_delete_documents(
    request: MassDeleteRequest,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
    store: LocalFileStore = Depends(get_store),
    config: Settings = Depends(get_settings),
) -> MassDeleteResponse:
    service = DocumentService(session, store, config.storage.default_limit_bytes)
    deleted = await service.mass_delete(owner_id, request.ids)
    return MassDeleteResponse(message=f"{deleted} documents deleted", deleted_count=deleted)


@app.post(
    "/uploads/temp",
    response_model=UploadResultResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_temp(
    file: UploadFile | None = File(default=None),
    owner_id: str = Depends(get_owner_id),
    store: LocalFileStore = Depends(get_store),
    config: Settings = Depends(get_settings),
) -> UploadResultResponse:
    """Hold a file in the temp area until a CV/letter save promotes it."""
    if file is None:
        raise FileRequired()
    try:
        data = await read_upload(file, config.storage.max_temp_upload_bytes)
    finally:
        await file.close()

    promoter = FilePromoter(store, config.storage.temp_prefix)
    result = await asyncio.to_thread(
        promoter.write_temp,
        owner_id,
        data,
        file.filename or "",
        file.content_type or "application/octet-stream",
    )
    return UploadResultResponse(
        path=result.path,
        original_name=result.original_name,
        size=result.size,
        mime_type=result.mime_type,
    )


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": "Docvault",
        "version": "0.1.0",
        "endpoints": {
            "health": "/health",
            "documents": "/documents",
            "download": "/documents/{document_id}/download",
            "storage": "/documents/storage",
            "temp_upload": "/uploads/temp",
            "docs": "/docs",
        },
    }
