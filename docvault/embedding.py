"""Photo and signature images for generated CV and letter documents.

The DOCX renderer asks for an image by its stored public path and gets back
the raw bytes plus a physical size in centimetres. Sizing uses only the image
header, so a broken image still renders at a square default ratio.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import PurePosixPath

from .errors import UnsupportedSignatureOrPhotoFormat
from .imaging import aspect_ratio, extract_dimensions, height_for_width, normalize_image_extension, width_for_height
from .storage import FilePromoter, resolve_public_path

logger = logging.getLogger(__name__)

PHOTO_TARGET_WIDTH_CM = 3.0
SIGNATURE_TARGET_HEIGHT_CM = 2.0


@dataclass(frozen=True)
class EmbeddedImageDescriptor:
    """Image payload for the DOCX image module."""
    width: float
    height: float
    data: bytes
    extension: str


class EmbeddedImageService:
    """Promotes and loads CV photos and letter signatures.

    Args:
        promoter: Temp-to-permanent file mover
        photos_prefix: Public prefix for CV photos
        signatures_prefix: Public prefix for letter signatures
    """

    def __init__(self, promoter: FilePromoter, photos_prefix: str, signatures_prefix: str):
        self.promoter = promoter
        self.store = promoter.store
        self.photos_prefix = photos_prefix.strip("/")
        self.signatures_prefix = signatures_prefix.strip("/")

    def promote_photo(self, owner_id: str, temp_public_path: str) -> str:
        return self._promote(owner_id, temp_public_path, self.photos_prefix)

    def promote_signature(self, owner_id: str, temp_public_path: str) -> str:
        return self._promote(owner_id, temp_public_path, self.signatures_prefix)

    def _promote(self, owner_id: str, temp_public_path: str, target_prefix: str) -> str:
        resolved = self.promoter.resolve_temp(temp_public_path)
        if normalize_image_extension(PurePosixPath(resolved.relative).suffix) is None:
            raise UnsupportedSignatureOrPhotoFormat()
        return self.promoter.promote(temp_public_path, owner_id, target_prefix)

    def photo_image(self, public_path: str | None) -> EmbeddedImageDescriptor | None:
        """Photo at a fixed width, height following the aspect ratio."""
        loaded = self._load(public_path, self.photos_prefix)
        if loaded is None:
            return None
        data, extension = loaded
        ratio = aspect_ratio(extract_dimensions(data, extension))
        width = PHOTO_TARGET_WIDTH_CM
        return EmbeddedImageDescriptor(
            width=round(width, 2),
            height=round(height_for_width(width, ratio), 2),
            data=data,
            extension=extension,
        )

    def signature_image(self, public_path: str | None) -> EmbeddedImageDescriptor | None:
        """Signature at a fixed height, width following the aspect ratio."""
        loaded = self._load(public_path, self.signatures_prefix)
        if loaded is None:
            return None
        data, extension = loaded
        ratio = aspect_ratio(extract_dimensions(data, extension))
        height = SIGNATURE_TARGET_HEIGHT_CM
        return EmbeddedImageDescriptor(
            width=round(width_for_height(height, ratio), 2),
            height=height,
            data=data,
            extension=extension,
        )

    def _load(self, public_path: str | None, prefix: str) -> tuple[bytes, str] | None:
        resolved = resolve_public_path(public_path, prefix, self.store.directory(prefix))
        if resolved is None:
            return None
        extension = normalize_image_extension(resolved.absolute.suffix)
        if extension is None:
            return None
        try:
            data = resolved.absolute.read_bytes()
        except OSError as e:
            logger.warning(f"Cannot read embedded image {resolved.public_path}: {e}")
            return None
        return data, extension
