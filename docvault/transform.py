"""Image recompression, PDF compression and multi-file PDF merge.

Images are re-encoded with Pillow. PDFs are rewritten by Ghostscript run as a
subprocess with a bounded timeout. Every scratch file is tracked from the
moment it is created and deleted when the operation finishes, whether it
succeeded or not.
"""
from __future__ import annotations

import io
import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Sequence

from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from .errors import (
    PdfOptimizerError,
    UnsupportedCompressionOption,
    UnsupportedCompressionTarget,
    UnsupportedMergeInput,
)
from .storage import TempFileTracker

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"

# Formats Pillow re-encodes for us, keyed by mime type.
IMAGE_FORMATS: dict[str, str] = {
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/pjpeg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
}


class CompressionTier(str, Enum):
    """Caller-facing compression levels."""
    AUTO = "auto"
    LIGHT = "light"
    MEDIUM = "medium"
    STRONG = "strong"


IMAGE_QUALITY: dict[CompressionTier, int] = {
    CompressionTier.AUTO: 70,
    CompressionTier.LIGHT: 85,
    CompressionTier.MEDIUM: 60,
    CompressionTier.STRONG: 40,
}


@dataclass(frozen=True)
class PdfProfile:
    """Ghostscript parameters for one compression tier."""
    pdf_settings: str
    dpi: int
    jpeg_quality: int

    @property
    def mono_dpi(self) -> int:
        return self.dpi * 2

    @property
    def qfactor(self) -> float:
        # Ghostscript DCT QFactor: ~0.15 is near lossless, ~1.0 is heavy.
        return round(max(0.1, (100 - self.jpeg_quality) / 60), 2)


PDF_PROFILES: dict[CompressionTier, PdfProfile] = {
    CompressionTier.AUTO: PdfProfile("/ebook", 150, 70),
    CompressionTier.LIGHT: PdfProfile("/printer", 220, 85),
    CompressionTier.MEDIUM: PdfProfile("/ebook", 120, 60),
    CompressionTier.STRONG: PdfProfile("/screen", 72, 40),
}


@dataclass(frozen=True)
class InputFile:
    """An uploaded file held in memory."""
    data: bytes
    mime_type: str
    original_name: str = ""


def parse_compression(value: str | CompressionTier | None) -> CompressionTier | None:
    """Parse a caller-supplied tier; blank means no compression."""
    if value is None or isinstance(value, CompressionTier):
        return value
    normalized = str(value).strip().lower()
    if not normalized:
        return None
    try:
        return CompressionTier(normalized)
    except ValueError as e:
        raise UnsupportedCompressionOption() from e


def is_image_mime(mime_type: str) -> bool:
    return (mime_type or "").lower() in IMAGE_FORMATS


def is_pdf_mime(mime_type: str) -> bool:
    return (mime_type or "").lower() == PDF_MIME_TYPE


def page_count(data: bytes) -> int | None:
    """Number of pages in a PDF buffer, None if it cannot be parsed."""
    try:
        return len(PdfReader(io.BytesIO(data)).pages)
    except (PdfReadError, ValueError, OSError):
        return None


def _quantize_colors(quality: int) -> int:
    return max(16, min(256, round(256 * quality / 100)))


def _encode_image(image: Image.Image, fmt: str, quality: int) -> bytes:
    buf = io.BytesIO()
    if fmt == "JPEG":
        if image.mode not in ("RGB", "L", "CMYK"):
            image = image.convert("RGB")
        image.save(buf, format="JPEG", quality=quality, optimize=True)
    elif fmt == "PNG":
        if image.mode not in ("RGB", "RGBA"):
            image = image.convert("RGBA")
        palette = image.quantize(colors=_quantize_colors(quality), method=Image.Quantize.FASTOCTREE)
        palette.save(buf, format="PNG", optimize=True)
    else:
        image.save(buf, format=fmt, quality=quality)
    return buf.getvalue()


class PdfOptimizer:
    """Thin wrapper around the Ghostscript command line."""

    def __init__(self, binary: str = "gs", timeout_seconds: float = 120.0):
        self.binary = binary
        self.timeout_seconds = timeout_seconds

    def build_command(self, inputs: Sequence[Path], output: Path, profile: PdfProfile | None) -> list[str]:
        cmd = [
            self.binary,
            "-sDEVICE=pdfwrite",
            "-dCompatibilityLevel=1.4",
            "-dNOPAUSE",
            "-dBATCH",
            "-dQUIET",
            "-dSAFER",
            f"-sOutputFile={output}",
        ]
        if profile is not None:
            cmd += [
                f"-dPDFSETTINGS={profile.pdf_settings}",
                "-dDetectDuplicateImages=true",
                "-dDownsampleColorImages=true",
                "-dColorImageDownsampleType=/Bicubic",
                f"-dColorImageResolution={profile.dpi}",
                "-dDownsampleGrayImages=true",
                "-dGrayImageDownsampleType=/Bicubic",
                f"-dGrayImageResolution={profile.dpi}",
                "-dDownsampleMonoImages=true",
                f"-dMonoImageResolution={profile.mono_dpi}",
                "-dAutoFilterColorImages=false",
                "-dAutoFilterGrayImages=false",
                "-dColorImageFilter=/DCTEncode",
                "-dGrayImageFilter=/DCTEncode",
                "-c",
                (
                    f"<< /ColorImageDict << /QFactor {profile.qfactor} /Blend 1 /HSamples [2 1 1 2] /VSamples [2 1 1 2] >>"
                    f" /GrayImageDict << /QFactor {profile.qfactor} /Blend 1 /HSamples [2 1 1 2] /VSamples [2 1 1 2] >>"
                    " >> setdistillerparams"
                ),
            ]
        cmd.append("-f")
        cmd.extend(str(path) for path in inputs)
        return cmd

    def run(self, inputs: Sequence[Path], output: Path, profile: PdfProfile | None = None) -> bytes:
        """Run Ghostscript over ``inputs`` (in order) and return the output bytes.

        Raises:
            PdfOptimizerError: Non-zero exit, timeout, or no output produced
        """
        cmd = self.build_command(inputs, output, profile)
        logger.debug(f"Running PDF optimizer: {' '.join(cmd)}")

        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            output_text = _decode_output(e.stderr) or _decode_output(e.stdout)
            logger.error(f"PDF optimizer timed out after {self.timeout_seconds}s")
            raise PdfOptimizerError(
                f"PDF optimizer timed out after {self.timeout_seconds:g}s",
                output=output_text,
            ) from e
        except OSError as e:
            logger.error(f"PDF optimizer could not be started: {e}")
            raise PdfOptimizerError(f"PDF optimizer could not be started: {e}", output=str(e)) from e

        # Ghostscript output is not guaranteed to be UTF-8.
        diagnostic = _decode_output(proc.stderr) or _decode_output(proc.stdout)
        if proc.returncode != 0:
            logger.error(f"PDF optimizer failed (rc={proc.returncode}): {diagnostic}")
            raise PdfOptimizerError(
                f"PDF optimizer exited with status {proc.returncode}",
                output=diagnostic,
                returncode=proc.returncode,
            )

        data = output.read_bytes() if output.exists() else b""
        if not data:
            raise PdfOptimizerError("PDF optimizer produced no output", output=diagnostic, returncode=proc.returncode)
        return data


def _decode_output(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace").strip()
    return value.strip()


class MediaTransformer:
    """Compresses images and PDFs and merges files into one PDF.

    Args:
        optimizer: Ghostscript wrapper used for PDF compression and merging
        scratch_dir: Directory for intermediate files (system temp dir if None)
    """

    def __init__(self, optimizer: PdfOptimizer, scratch_dir: Path | None = None):
        self.optimizer = optimizer
        self.scratch_dir = scratch_dir

    def compress_image(self, data: bytes, mime_type: str, tier: CompressionTier | str) -> bytes:
        """Re-encode an image at the tier's quality.

        Best effort: any codec failure returns ``data`` unchanged.

        Raises:
            UnsupportedCompressionTarget: ``mime_type`` is not a recognized image type
        """
        fmt = IMAGE_FORMATS.get((mime_type or "").lower())
        if fmt is None:
            raise UnsupportedCompressionTarget(f"Cannot compress {mime_type or 'unknown'} as an image")

        quality = IMAGE_QUALITY[parse_compression(tier) or CompressionTier.AUTO]
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.load()
                compressed = _encode_image(image, fmt, quality)
        except Exception as e:
            logger.warning(f"Image compression failed, keeping original ({mime_type}): {e}", exc_info=True)
            return data

        logger.info(f"Compressed {mime_type} at quality {quality}: {len(data):,} -> {len(compressed):,} bytes")
        return compressed

    def compress_pdf(self, data: bytes, tier: CompressionTier | str) -> bytes:
        """Rewrite a PDF through Ghostscript with the tier's profile.

        Raises:
            PdfOptimizerError: Ghostscript failed; the input is never returned instead
        """
        profile = PDF_PROFILES[parse_compression(tier) or CompressionTier.AUTO]
        with TempFileTracker(self.scratch_dir) as tracker:
            source = tracker.write(data, ".pdf")
            target = tracker.reserve(".pdf")
            compressed = self.optimizer.run([source], target, profile)

        logger.info(
            f"Compressed PDF with {profile.pdf_settings} @ {profile.dpi}dpi: "
            f"{len(data):,} -> {len(compressed):,} bytes"
        )
        return compressed

    def image_to_pdf(self, data: bytes) -> bytes:
        """Wrap an image in a single full-bleed page sized to its pixel dimensions."""
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            page = image if image.mode in ("RGB", "L", "CMYK") else image.convert("RGB")
            buf = io.BytesIO()
            # 72 dpi: one pixel per PDF point.
            page.save(buf, format="PDF", resolution=72.0)
        return buf.getvalue()

    def merge_into_single_pdf(self, files: Sequence[InputFile], tier: CompressionTier | str | None = None) -> bytes:
        """Merge images and PDFs, in order, into one PDF.

        Raises:
            UnsupportedMergeInput: An input is neither an image nor a PDF
            PdfOptimizerError: Ghostscript failed
        """
        tier = parse_compression(tier)
        for item in files:
            if not (is_image_mime(item.mime_type) or is_pdf_mime(item.mime_type)):
                raise UnsupportedMergeInput(
                    f"Cannot merge {item.original_name or item.mime_type}: only images and PDFs are supported"
                )

        with TempFileTracker(self.scratch_dir) as tracker:
            parts: list[Path] = []
            for item in files:
                if is_image_mime(item.mime_type):
                    try:
                        page = self.image_to_pdf(item.data)
                    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
                        raise UnsupportedMergeInput(
                            f"Cannot read image {item.original_name or item.mime_type}"
                        ) from e
                else:
                    page = item.data
                parts.append(tracker.write(page, ".pdf"))

            # The tier profile is applied once, on the merge run.

            target = tracker.reserve(".pdf")
            merged = self.optimizer.run(parts, target, PDF_PROFILES[tier] if tier else None)

        logger.info(f"Merged {len(files)} files into one PDF ({page_count(merged)} pages, {len(merged):,} bytes)")
        return merged
