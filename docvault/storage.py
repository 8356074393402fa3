"""Local file storage: temp uploads, promotion into permanent storage, cleanup.

Public paths look like ``/uploads/temp/<name>`` and resolve against a public
root directory. Roots and prefixes are passed in at construction.
"""
from __future__ import annotations

import logging
import os
import posixpath
import re
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from types import TracebackType

from .errors import InvalidTempPath, TempFileNotFound

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = ".bin"

_SAFE_EXTENSION = re.compile(r"^\.[a-z0-9]{1,8}$", re.IGNORECASE)
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")

MIME_EXTENSIONS: dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "video/x-msvideo": ".avi",
    "video/x-matroska": ".mkv",
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "application/vnd.ms-powerpoint": ".ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": ".pptx",
    "text/plain": ".txt",
    "application/rtf": ".rtf",
}


@dataclass(frozen=True)
class UploadResult:
    """Stored file descriptor handed to the persistence layer."""
    path: str
    original_name: str
    size: int
    mime_type: str


@dataclass(frozen=True)
class ResolvedPath:
    absolute: Path
    relative: str
    public_path: str


class _MonotonicClock:
    """Millisecond timestamps that never repeat or go backwards in-process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = 0

    def next_ms(self) -> int:
        with self._lock:
            now = time.time_ns() // 1_000_000
            self._last = max(now, self._last + 1)
            return self._last


_clock = _MonotonicClock()


def build_file_name(owner_id: str, extension: str) -> str:
    """``<timestamp>-<owner segment>-<uuid4><ext>``, unique across concurrent writers."""
    if extension and not extension.startswith("."):
        extension = "." + extension
    owner_segment = _NON_ALNUM.sub("", owner_id or "")[-12:] or "anon"
    return f"{_clock.next_ms()}-{owner_segment}-{uuid.uuid4()}{extension}"


def is_safe_extension(extension: str) -> bool:
    return bool(extension) and bool(_SAFE_EXTENSION.match(extension))


def resolve_extension(original_name: str, mime_type: str) -> str:
    """Extension from the original name when safe, else from the mime type."""
    ext = PurePosixPath((original_name or "").replace("\\", "/")).suffix.lower()
    if is_safe_extension(ext):
        return ext
    return MIME_EXTENSIONS.get((mime_type or "").lower(), DEFAULT_EXTENSION)


def resolve_public_path(value: str | None, prefix: str, directory: Path) -> ResolvedPath | None:
    """Resolve a public path strictly inside ``directory``.

    Returns None for empty input, a missing or different prefix, an empty
    remainder, or a remainder that normalizes outside the directory.
    """
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None

    normalized_prefix = prefix.replace("\\", "/").strip("/")
    normalized_input = trimmed.replace("\\", "/").lstrip("/")
    lower_prefix = normalized_prefix.lower() + "/"
    if not normalized_input.lower().startswith(lower_prefix):
        return None

    relative_raw = normalized_input[len(lower_prefix):]
    if not relative_raw:
        return None

    safe_relative = posixpath.normpath(relative_raw)
    if (
        safe_relative in (".", "..")
        or safe_relative.startswith("../")
        or posixpath.isabs(safe_relative)
        or "\x00" in safe_relative
    ):
        return None

    return ResolvedPath(
        absolute=directory / safe_relative,
        relative=safe_relative,
        public_path=posixpath.join("/", normalized_prefix, safe_relative),
    )


def remove_file(path: Path) -> bool:
    """Delete ``path``; an already absent file is not an error.

    Returns True if a file was removed. Any other OSError propagates.
    """
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


class TempFileTracker:
    """Registers scratch files at creation time and deletes them all on exit.

    Usage:
        with TempFileTracker() as tracker:
            source = tracker.write(data, ".pdf")
            target = tracker.reserve(".pdf")
            ...
    """

    def __init__(self, directory: Path | None = None):
        self.directory = directory
        self.paths: list[Path] = []

    def reserve(self, suffix: str = "") -> Path:
        """Create an empty scratch file and track it."""
        fd, name = tempfile.mkstemp(prefix="docvault-", suffix=suffix, dir=self.directory)
        os.close(fd)
        path = Path(name)
        self.paths.append(path)
        return path

    def write(self, data: bytes, suffix: str = "") -> Path:
        path = self.reserve(suffix)
        path.write_bytes(data)
        return path

    def cleanup(self) -> None:
        errors: list[OSError] = []
        while self.paths:
            path = self.paths.pop()
            try:
                remove_file(path)
            except OSError as exc:
                logger.error(f"Failed to remove temp file {path}: {exc}")
                errors.append(exc)
        if errors:
            raise errors[0]

    def __enter__(self) -> TempFileTracker:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc is None:
            self.cleanup()
            return
        # Keep the original failure; a cleanup fault is only logged here.
        try:
            self.cleanup()
        except OSError:
            logger.exception("Temp file cleanup failed after an earlier error")


class LocalFileStore:
    """Reads and writes files under public prefixes of one public root."""

    def __init__(self, public_root: Path):
        self.public_root = Path(public_root).resolve()

    def directory(self, prefix: str) -> Path:
        return self.public_root / prefix.strip("/")

    def absolute_path(self, public_path: str) -> Path | None:
        """Absolute location of any public path under the root."""
        relative = (public_path or "").strip().replace("\\", "/").lstrip("/")
        if not relative:
            return None
        safe = posixpath.normpath(relative)
        if safe.startswith("../") or safe in (".", ".."):
            return None
        return self.public_root / safe

    def write(self, prefix: str, owner_id: str, data: bytes, extension: str) -> str:
        """Write bytes under a generated name and return the public path."""
        directory = self.directory(prefix)
        directory.mkdir(parents=True, exist_ok=True)
        file_name = build_file_name(owner_id, extension)
        (directory / file_name).write_bytes(data)
        return posixpath.join("/", prefix.strip("/"), file_name)

    def read(self, public_path: str) -> bytes:
        path = self.absolute_path(public_path)
        if path is None:
            raise FileNotFoundError(public_path)
        return path.read_bytes()

    def remove(self, public_path: str | None) -> bool:
        if not public_path:
            return False
        path = self.absolute_path(public_path)
        if path is None:
            return False
        return remove_file(path)


class FilePromoter:
    """Moves temp uploads into permanent storage.

    Args:
        store: File store rooted at the public directory
        temp_prefix: Public prefix of the temp holding area (e.g. ``uploads/temp``)
    """

    def __init__(self, store: LocalFileStore, temp_prefix: str):
        self.store = store
        self.temp_prefix = temp_prefix.strip("/")
        self.temp_dir = store.directory(self.temp_prefix)

    def resolve_temp(self, temp_public_path: str | None) -> ResolvedPath:
        resolved = resolve_public_path(temp_public_path, self.temp_prefix, self.temp_dir)
        if resolved is None:
            raise InvalidTempPath()
        return resolved

    def write_temp(self, owner_id: str, data: bytes, original_name: str, mime_type: str) -> UploadResult:
        """Store an upload in the temp area for a later promotion."""
        extension = resolve_extension(original_name, mime_type)
        public_path = self.store.write(self.temp_prefix, owner_id, data, extension)
        logger.info(f"Stored temp upload {public_path} ({len(data)} bytes)")
        return UploadResult(
            path=public_path,
            original_name=original_name,
            size=len(data),
            mime_type=mime_type,
        )

    def promote(self, temp_public_path: str, owner_id: str, target_prefix: str) -> str:
        """Atomically move a temp file under ``target_prefix``.

        Raises:
            InvalidTempPath: Path is empty, outside the temp root, or traverses out of it
            TempFileNotFound: Path is well formed but the file is gone
        """
        resolved = self.resolve_temp(temp_public_path)

        target_dir = self.store.directory(target_prefix)
        target_dir.mkdir(parents=True, exist_ok=True)

        extension = resolved.absolute.suffix or DEFAULT_EXTENSION
        file_name = build_file_name(owner_id, extension)
        destination = target_dir / file_name

        try:
            os.rename(resolved.absolute, destination)
        except FileNotFoundError as e:
            raise TempFileNotFound() from e

        public_path = posixpath.join("/", target_prefix.strip("/"), file_name)
        logger.info(f"Promoted {resolved.public_path} -> {public_path}")
        return public_path
