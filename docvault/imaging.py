"""Image header inspection without a full decode.

Reads width/height straight from PNG and JPEG headers so photos and
signatures can be sized when they are embedded into generated documents.
Malformed input never raises; callers get ``None`` and fall back to a square
aspect ratio.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

# IHDR is always the first chunk: 8 byte signature, 4 byte length, 4 byte type.
PNG_WIDTH_OFFSET = 16
PNG_HEIGHT_OFFSET = 20

JPEG_SOI = b"\xff\xd8"
JPEG_SOS = 0xDA
JPEG_EOI = 0xD9

# SOF0-SOF15 minus DHT (C4), JPG (C8) and DAC (CC).
JPEG_SOF_MARKERS = frozenset(
    [*range(0xC0, 0xC4), *range(0xC5, 0xC8), *range(0xC9, 0xCC), *range(0xCD, 0xD0)]
)

MIN_ASPECT_RATIO = 0.1


@dataclass(frozen=True)
class ImageDimensions:
    """Pixel dimensions read from an image header."""
    width: int
    height: int


def extract_png_dimensions(data: bytes) -> ImageDimensions | None:
    if len(data) < PNG_HEIGHT_OFFSET + 4:
        return None
    if data[:8] != PNG_SIGNATURE:
        return None

    width, height = struct.unpack_from(">II", data, PNG_WIDTH_OFFSET)
    return ImageDimensions(width=width, height=height)


def extract_jpeg_dimensions(data: bytes) -> ImageDimensions | None:
    """Walk JPEG segments until the first Start-Of-Frame marker.

    Bytes between segments that are not a 0xFF prefix are skipped. The walk
    stops at SOS/EOI, on a bogus segment length, or before any read past the
    end of the buffer.
    """
    size = len(data)
    if size < 4 or data[:2] != JPEG_SOI:
        return None

    offset = 2
    while offset < size:
        if data[offset] != 0xFF:
            offset += 1
            continue

        if offset + 1 >= size:
            return None
        marker = data[offset + 1]
        offset += 2

        if marker in (JPEG_SOS, JPEG_EOI):
            return None

        if offset + 2 > size:
            return None
        (segment_length,) = struct.unpack_from(">H", data, offset)
        if segment_length < 2 or offset + segment_length > size:
            return None

        if marker in JPEG_SOF_MARKERS:
            # length(2) + precision(1), then height and width.
            if offset + 7 > size:
                return None
            height, width = struct.unpack_from(">HH", data, offset + 3)
            return ImageDimensions(width=width, height=height)

        offset += segment_length

    return None


def normalize_image_extension(extension: str) -> str | None:
    """Map a file extension to ``.png``/``.jpg``, or ``None`` if unsupported."""
    ext = extension.lower()
    if not ext.startswith("."):
        ext = "." + ext
    if ext == ".png":
        return ".png"
    if ext in (".jpg", ".jpeg"):
        return ".jpg"
    return None


def extract_dimensions(data: bytes, extension: str) -> ImageDimensions | None:
    """Read pixel dimensions for a PNG or JPEG buffer.

    Args:
        data: Raw file content
        extension: File extension, with or without the leading dot

    Returns:
        ImageDimensions, or None for unsupported or malformed input
    """
    kind = normalize_image_extension(extension)
    if kind == ".png":
        return extract_png_dimensions(data)
    if kind == ".jpg":
        return extract_jpeg_dimensions(data)
    return None


def aspect_ratio(dimensions: ImageDimensions | None) -> float:
    """Width/height ratio, 1.0 when dimensions are missing or degenerate."""
    if dimensions is None or dimensions.width <= 0 or dimensions.height <= 0:
        return 1.0
    return dimensions.width / dimensions.height


def height_for_width(width: float, ratio: float) -> float:
    return width / max(ratio, MIN_ASPECT_RATIO)


def width_for_height(height: float, ratio: float) -> float:
    return max(ratio, MIN_ASPECT_RATIO) * height
