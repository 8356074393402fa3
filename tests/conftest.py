from __future__ import annotations

import asyncio
import io
import json
import os
import stat
import struct
import sys
import zlib
from pathlib import Path

os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "plain")

import pytest
from PIL import Image
from pypdf import PdfWriter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from docvault.models import Base
from docvault.storage import FilePromoter, LocalFileStore
from docvault.transform import MediaTransformer, PdfOptimizer

# Stand-in for Ghostscript: concatenates the inputs after "-f" into the
# -sOutputFile target and appends its argv to a JSON-lines log.
FAKE_GS = """#!{python}
import json
import os
import sys
from pypdf import PdfWriter

args = sys.argv[1:]
with open({log!r}, "a", encoding="utf-8") as fh:
    inputs = args[args.index("-f") + 1:]
    fh.write(json.dumps({{"args": args, "inputs_exist": [os.path.exists(p) for p in inputs]}}) + "\\n")

output = next(a.split("=", 1)[1] for a in args if a.startswith("-sOutputFile="))
writer = PdfWriter()
for path in inputs:
    writer.append(path)
with open(output, "wb") as fh:
    writer.write(fh)
"""

FAILING_GS = """#!{python}
import sys
sys.stderr.write("Error: /syntaxerror in --run--\\n")
sys.exit(1)
"""

LATIN1_GS = """#!{python}
import sys
sys.stderr.buffer.write(b"Error: font /Caf\\xe9 not found\\n")
sys.exit(1)
"""

SLOW_GS = """#!{python}
import time
time.sleep(10)
"""


def _write_script(path: Path, body: str) -> Path:
    path.write_text(body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IEXEC | stat.S_IXGRP | stat.S_IXOTH)
    return path


def make_png(width: int, height: int, mode: str = "RGB") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, (width, height), color="white" if mode != "RGBA" else (255, 0, 0, 128)).save(buf, format="PNG")
    return buf.getvalue()


def make_jpeg(width: int, height: int, quality: int = 95, progressive: bool = False) -> bytes:
    image = Image.effect_noise((width, height), 64).convert("RGB")
    buf = io.BytesIO()
    image.save(buf, format="JPEG", quality=quality, progressive=progressive)
    return buf.getvalue()


def _png_chunk(kind: bytes, payload: bytes) -> bytes:
    return struct.pack(">I", len(payload)) + kind + payload + struct.pack(">I", zlib.crc32(kind + payload))


def make_oversized_png(width: int, height: int) -> bytes:
    """A PNG whose header claims ``width`` x ``height`` but carries almost no pixel data."""
    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + _png_chunk(b"IHDR", ihdr)
        + _png_chunk(b"IDAT", zlib.compress(b"\x00" * 16))
        + _png_chunk(b"IEND", b"")
    )


def make_pdf(pages: int, width: float = 595, height: float = 842) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=width, height=height)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


class GsLog:
    """Reads the argv records written by the fake Ghostscript."""

    def __init__(self, path: Path):
        self.path = path

    def calls(self) -> list[dict]:
        if not self.path.exists():
            return []
        return [json.loads(line) for line in self.path.read_text(encoding="utf-8").splitlines() if line]


@pytest.fixture
def gs_log(tmp_path) -> GsLog:
    return GsLog(tmp_path / "gs-calls.jsonl")


@pytest.fixture
def fake_gs(tmp_path, gs_log) -> Path:
    return _write_script(tmp_path / "fake-gs", FAKE_GS.format(python=sys.executable, log=str(gs_log.path)))


@pytest.fixture
def failing_gs(tmp_path) -> Path:
    return _write_script(tmp_path / "failing-gs", FAILING_GS.format(python=sys.executable))


@pytest.fixture
def latin1_gs(tmp_path) -> Path:
    return _write_script(tmp_path / "latin1-gs", LATIN1_GS.format(python=sys.executable))


@pytest.fixture
def slow_gs(tmp_path) -> Path:
    return _write_script(tmp_path / "slow-gs", SLOW_GS.format(python=sys.executable))


@pytest.fixture
def scratch_dir(tmp_path) -> Path:
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def transformer(fake_gs, scratch_dir) -> MediaTransformer:
    return MediaTransformer(PdfOptimizer(str(fake_gs), timeout_seconds=30), scratch_dir=scratch_dir)


@pytest.fixture
def public_root(tmp_path) -> Path:
    path = tmp_path / "public"
    path.mkdir()
    return path


@pytest.fixture
def store(public_root) -> LocalFileStore:
    return LocalFileStore(public_root)


@pytest.fixture
def promoter(store) -> FilePromoter:
    return FilePromoter(store, "uploads/temp")


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'docvault.db'}"


@pytest.fixture
async def db_engine(db_url):
    engine = create_async_engine(db_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sync_db_engine(db_url):
    """Engine for TestClient tests, which run the app on their own loop."""
    engine = create_async_engine(db_url, poolclass=NullPool)

    async def create_all():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(create_all())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture
def session_maker(db_engine):
    return async_sessionmaker(bind=db_engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session
