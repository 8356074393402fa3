"""Domain errors raised by the document pipeline.

Every error carries the HTTP status it maps to; the API installs a single
exception handler for the base class.
"""
from __future__ import annotations

from typing import Any


class DocvaultError(Exception):
    """Base class for errors that surface to API clients."""

    status_code: int = 400
    code: str = "docvault_error"
    default_message: str = "Request could not be processed"

    def __init__(self, message: str | None = None, *, details: Any = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class FileRequired(DocvaultError):
    code = "file_required"
    default_message = "At least one file is required"


class UnsupportedCompressionOption(DocvaultError):
    code = "unsupported_compression_option"
    default_message = "Unknown compression option. Choose one of: auto, light, medium, strong"


class UnsupportedCompressionTarget(DocvaultError):
    code = "unsupported_compression_target"
    default_message = "Compression is only available for images and PDF documents"


class UnsupportedMergeInput(DocvaultError):
    code = "unsupported_merge_input"
    default_message = "Only images and PDF documents can be merged"


class InvalidMergeOption(DocvaultError):
    code = "invalid_merge_option"
    default_message = "Unknown merge option"


class UnsupportedFileType(DocvaultError):
    code = "unsupported_file_type"
    default_message = "File must be an image or document"


class FileTooLarge(DocvaultError):
    code = "file_too_large"
    default_message = "File is too large"

    @classmethod
    def over_limit(cls, limit_bytes: int) -> FileTooLarge:
        limit_mb = limit_bytes / (1024 * 1024)
        return cls(
            f"File size must be less than or equal to {limit_mb:g} MB",
            details={"limit_bytes": limit_bytes},
        )


class StorageLimitExceeded(DocvaultError):
    """Raised when a write would push an owner past their storage limit."""

    code = "storage_limit_exceeded"

    def __init__(self, limit_bytes: int):
        self.limit_bytes = limit_bytes
        self.limit_mb = round(limit_bytes / (1024 * 1024), 1)
        super().__init__(
            f"Document storage limit of {self.limit_mb:g} MB exceeded",
            details={"limit_bytes": limit_bytes, "limit_mb": self.limit_mb},
        )


class InvalidTempPath(DocvaultError):
    code = "invalid_temp_path"
    default_message = "Path must reference an uploaded temp file"


class TempFileNotFound(DocvaultError):
    code = "temp_file_not_found"
    default_message = "Temp file not found"


class UnsupportedSignatureOrPhotoFormat(DocvaultError):
    code = "unsupported_image_format"
    default_message = "Image must be in PNG or JPG format"


class DocumentNotFound(DocvaultError):
    status_code = 404
    code = "document_not_found"
    default_message = "Document not found"


class PdfOptimizerError(DocvaultError):
    """Ghostscript exited non-zero, produced no output, or timed out."""

    status_code = 502
    code = "pdf_optimizer_error"
    default_message = "PDF optimizer failed"

    def __init__(self, message: str | None = None, *, output: str = "", returncode: int | None = None):
        self.output = output
        self.returncode = returncode
        super().__init__(message, details={"returncode": returncode, "output": output})
