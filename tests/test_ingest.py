import asyncio
import threading

import pytest
from sqlalchemy import func, select

from conftest import make_jpeg, make_pdf, make_png
from docvault import models
from docvault.errors import (
    FileRequired,
    FileTooLarge,
    StorageLimitExceeded,
    UnsupportedCompressionOption,
    UnsupportedCompressionTarget,
    UnsupportedFileType,
    UnsupportedMergeInput,
)
from docvault.pipelines.ingest import UploadIngestor, is_allowed_document_mime, merged_file_name
from docvault.repository import DocumentRepository
from docvault.storage import LocalFileStore
from docvault.transform import InputFile, page_count

DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
MB = 1024 * 1024


def build_ingestor(session, transformer, store, *, limit=100 * MB, max_upload=25 * MB):
    return UploadIngestor(
        session,
        transformer,
        store,
        documents_prefix="uploads/documents",
        default_limit_bytes=limit,
        max_upload_bytes=max_upload,
    )


def stored_files(public_root):
    directory = public_root / "uploads" / "documents"
    return sorted(directory.iterdir()) if directory.exists() else []


async def count_documents(session) -> int:
    return await session.scalar(select(func.count()).select_from(models.Document))


@pytest.fixture
def ingestor(session, transformer, store):
    return build_ingestor(session, transformer, store)


@pytest.mark.parametrize(
    "mime_type, allowed",
    [
        ("image/png", True),
        ("image/heic", True),
        ("application/pdf", True),
        (DOCX, True),
        ("TEXT/PLAIN", True),
        ("application/zip", False),
        ("", False),
    ],
)
def test_is_allowed_document_mime(mime_type, allowed):
    assert is_allowed_document_mime(mime_type) is allowed


def test_merged_file_name():
    assert merged_file_name([InputFile(b"", "image/png", "scan 1.png")]) == "scan 1-merged.pdf"
    assert merged_file_name([InputFile(b"", "image/png", "")]) == "document-merged.pdf"


async def test_single_image_becomes_one_document(ingestor, store, public_root):
    data = make_png(40, 30)

    document = await ingestor.ingest("owner-1", InputFile(data, "image/png", "photo.png"), models.DocumentType.CV)

    assert isinstance(document, models.Document)
    assert document.owner_id == "owner-1"
    assert document.type == models.DocumentType.CV
    assert document.original_name == "photo.png"
    assert document.size == len(data)
    assert document.path.startswith("/uploads/documents/")
    assert document.path.endswith(".png")
    assert store.read(document.path) == data
    assert len(stored_files(public_root)) == 1


async def test_list_of_one_returns_single_document(ingestor):
    result = await ingestor.ingest("owner-1", [InputFile(make_pdf(1), "application/pdf", "cv.pdf")], "cv")
    assert isinstance(result, models.Document)


async def test_multiple_files_return_documents_in_order(ingestor, session, public_root):
    files = [
        InputFile(make_pdf(1), "application/pdf", "cv.pdf"),
        InputFile(b"PK\x03\x04 docx", DOCX, "letter.docx"),
        InputFile(make_png(10, 10), "image/png", "badge.png"),
    ]

    documents = await ingestor.ingest("owner-1", files, models.DocumentType.CERTIFICATE)

    assert [d.original_name for d in documents] == ["cv.pdf", "letter.docx", "badge.png"]
    assert documents[1].path.endswith(".docx")
    assert len(stored_files(public_root)) == 3
    assert await count_documents(session) == 3


async def test_compression_applies_per_file(ingestor, store, gs_log):
    jpeg = make_jpeg(300, 200, quality=95)
    files = [
        InputFile(jpeg, "image/jpeg", "scan.jpg"),
        InputFile(make_pdf(2), "application/pdf", "cv.pdf"),
    ]

    image_doc, pdf_doc = await ingestor.ingest("owner-1", files, models.DocumentType.CV, compression="strong")

    assert image_doc.size < len(jpeg)
    assert image_doc.size == len(store.read(image_doc.path))
    assert page_count(store.read(pdf_doc.path)) == 2
    assert len(gs_log.calls()) == 1


async def test_merge_produces_one_pdf(ingestor, store, public_root):
    files = [
        InputFile(make_png(100, 50), "image/png", "front.png"),
        InputFile(make_pdf(2), "application/pdf", "rest.pdf"),
    ]

    document = await ingestor.ingest("owner-1", files, models.DocumentType.PORTFOLIO, merge=True)

    assert isinstance(document, models.Document)
    assert document.original_name == "front-merged.pdf"
    assert document.mime_type == "application/pdf"
    assert document.path.endswith(".pdf")
    assert page_count(store.read(document.path)) == 3
    assert len(stored_files(public_root)) == 1


async def test_merge_with_single_file_stores_it_unchanged(ingestor, store):
    data = make_png(10, 10)
    document = await ingestor.ingest("owner-1", [InputFile(data, "image/png", "a.png")], "cv", merge=True)
    assert document.mime_type == "image/png"
    assert store.read(document.path) == data


async def test_merge_rejects_documents_that_are_not_pdf(ingestor, public_root):
    files = [
        InputFile(make_pdf(1), "application/pdf", "cv.pdf"),
        InputFile(b"PK", DOCX, "letter.docx"),
    ]
    with pytest.raises(UnsupportedMergeInput):
        await ingestor.ingest("owner-1", files, "cv", merge=True)
    assert stored_files(public_root) == []


@pytest.mark.parametrize("files", [None, []])
async def test_file_required(ingestor, files):
    with pytest.raises(FileRequired):
        await ingestor.ingest("owner-1", files, models.DocumentType.CV)


async def test_unknown_compression_tier(ingestor, public_root):
    with pytest.raises(UnsupportedCompressionOption):
        await ingestor.ingest("owner-1", InputFile(make_png(4, 4), "image/png", "a.png"), "cv", compression="max")
    assert stored_files(public_root) == []


async def test_compression_of_office_document_is_rejected(ingestor, session, public_root):
    with pytest.raises(UnsupportedCompressionTarget):
        await ingestor.ingest("owner-1", InputFile(b"PK", DOCX, "cv.docx"), "cv", compression="auto")
    assert stored_files(public_root) == []
    assert await count_documents(session) == 0


async def test_unsupported_type(ingestor):
    with pytest.raises(UnsupportedFileType):
        await ingestor.ingest("owner-1", InputFile(b"PK", "application/zip", "a.zip"), "other")


async def test_file_too_large(session, transformer, store):
    ingestor = build_ingestor(session, transformer, store, max_upload=1024)
    with pytest.raises(FileTooLarge, match="less than or equal to"):
        await ingestor.ingest("owner-1", InputFile(b"x" * 2048, "text/plain", "a.txt"), "other")


async def test_over_quota_writes_nothing(session, transformer, store, public_root):
    ingestor = build_ingestor(session, transformer, store, limit=1000)

    with pytest.raises(StorageLimitExceeded):
        await ingestor.ingest("owner-1", InputFile(b"x" * 1001, "text/plain", "notes.txt"), "other")

    assert stored_files(public_root) == []
    assert await count_documents(session) == 0


async def test_quota_counts_the_whole_batch(session, transformer, store, public_root):
    ingestor = build_ingestor(session, transformer, store, limit=1000)
    files = [InputFile(b"x" * 600, "text/plain", f"{i}.txt") for i in range(2)]

    with pytest.raises(StorageLimitExceeded):
        await ingestor.ingest("owner-1", files, "other")
    assert stored_files(public_root) == []


async def test_quota_uses_compressed_size(session, transformer, store):
    jpeg = make_jpeg(400, 400, quality=95)
    compressed = transformer.compress_image(jpeg, "image/jpeg", "strong")
    ingestor = build_ingestor(session, transformer, store, limit=len(compressed))

    document = await ingestor.ingest("owner-1", InputFile(jpeg, "image/jpeg", "big.jpg"), "cv", compression="strong")

    assert document.size == len(compressed)


async def test_failed_insert_leaves_no_files(ingestor, session, public_root, monkeypatch):
    original_create = DocumentRepository.create
    calls = 0

    async def create(self, **kwargs):
        nonlocal calls
        calls += 1
        if calls == 2:
            raise RuntimeError("database went away")
        return await original_create(self, **kwargs)

    monkeypatch.setattr(DocumentRepository, "create", create)
    files = [InputFile(make_png(4, 4), "image/png", f"{i}.png") for i in range(3)]

    with pytest.raises(RuntimeError, match="database went away"):
        await ingestor.ingest("owner-1", files, "cv")

    assert stored_files(public_root) == []
    assert await count_documents(session) == 0


async def test_concurrent_uploads_for_one_owner_respect_quota(session_maker, transformer, store, public_root):
    async def upload():
        async with session_maker() as session:
            ingestor = build_ingestor(session, transformer, store, limit=1500)
            return await ingestor.ingest("owner-1", InputFile(b"x" * 1000, "text/plain", "a.txt"), "other")

    results = await asyncio.gather(upload(), upload(), return_exceptions=True)

    assert sum(isinstance(r, models.Document) for r in results) == 1
    assert sum(isinstance(r, StorageLimitExceeded) for r in results) == 1
    assert len(stored_files(public_root)) == 1


async def test_file_writes_and_cleanup_run_off_the_event_loop(ingestor, store, monkeypatch):
    loop_thread = threading.get_ident()
    seen: list[tuple[str, int]] = []
    original_write, original_remove = LocalFileStore.write, LocalFileStore.remove

    def write(self, *args, **kwargs):
        seen.append(("write", threading.get_ident()))
        return original_write(self, *args, **kwargs)

    def remove(self, *args, **kwargs):
        seen.append(("remove", threading.get_ident()))
        return original_remove(self, *args, **kwargs)

    async def create(self, **kwargs):
        raise RuntimeError("insert failed")

    monkeypatch.setattr(LocalFileStore, "write", write)
    monkeypatch.setattr(LocalFileStore, "remove", remove)
    monkeypatch.setattr(DocumentRepository, "create", create)

    with pytest.raises(RuntimeError):
        await ingestor.ingest("owner-1", InputFile(b"hello", "text/plain", "a.txt"), "other")

    assert [name for name, _ in seen] == ["write", "remove"]
    assert all(ident != loop_thread for _, ident in seen)
