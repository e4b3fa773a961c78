from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import cloudinary.uploader

from huddle.errors import TooLarge, UnsupportedType

LOGGER = logging.getLogger("huddle.uploads")

DEFAULT_MAX_UPLOAD_MB = 50


class MediaHostError(Exception):
    pass


@dataclass(frozen=True)
class MediaRef:
    url: str
    kind: str
    content_type: str
    original_filename: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "kind": self.kind,
            "contentType": self.content_type,
            "originalFilename": self.original_filename,
        }


def media_kind_from_mime(mime: Optional[str]) -> str:
    mime = (mime or "").lower().strip()
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("video/"):
        return "video"
    return ""


class UploadGateway:
    """Validates uploads and hands them to Cloudinary; only the URL comes back."""

    def __init__(self, max_upload_mb: int = DEFAULT_MAX_UPLOAD_MB, folder: str = "huddle/uploads"):
        self.max_upload_mb = int(max_upload_mb)
        self.max_upload_bytes = self.max_upload_mb * 1024 * 1024
        self.folder = folder

    def classify(self, declared_mime: Optional[str]) -> str:
        kind = media_kind_from_mime(declared_mime)
        if not kind:
            raise UnsupportedType(f"Unsupported file type: {declared_mime or 'unknown'}")
        return kind

    def store(self, data: bytes, declared_mime: Optional[str], original_name: Optional[str]) -> MediaRef:
        kind = self.classify(declared_mime)
        if len(data) > self.max_upload_bytes:
            raise TooLarge(f"File too large (max {self.max_upload_mb}MB)")

        try:
            res = cloudinary.uploader.upload(
                data,
                folder=self.folder,
                resource_type=kind,
                use_filename=True,
                unique_filename=True,
            )
        except Exception as e:
            LOGGER.exception("cloudinary upload failed kind=%s size=%s", kind, len(data))
            raise MediaHostError(f"Cloudinary upload failed: {e}") from e

        url = res.get("secure_url") or res.get("url")
        if not url:
            raise MediaHostError("Cloudinary upload returned no URL")

        ref = MediaRef(
            url=url,
            kind=kind,
            content_type=(declared_mime or "").lower().strip(),
            original_filename=(original_name or "").strip()[:120],
        )
        LOGGER.info("stored %s upload name=%s size=%s", kind, ref.original_filename or "-", len(data))
        return ref
