import os
from dataclasses import dataclass
from typing import Optional

EXTENSION_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "jfif": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "tif": "image/tiff",
    "tiff": "image/tiff",
    "heic": "image/heic",
    "heif": "image/heif",
    "avif": "image/avif",
}

TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "image/tiff": "tiff",
}

PIL_FORMAT_TYPES = {
    "JPEG": "image/jpeg",
    "MPO": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}

MIN_IMAGE_BYTES = 10


@dataclass
class DetectedType:
    mime_type: Optional[str]
    confidence: str  # "high" (signature) | "low" (extension only) | "none"

    @property
    def valid(self) -> bool:
        return self.mime_type is not None


def sniff_image_type(data: bytes) -> Optional[str]:
    """Identify a raster format from its leading signature bytes."""
    if len(data) < 4:
        return None
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:4] == b"\x89PNG":
        return "image/png"
    if data[:3] == b"GIF":
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:2] == b"BM":
        return "image/bmp"
    if data[:4] in (b"II*\x00", b"MM\x00*"):
        return "image/tiff"
    return None


def detect_image_type(data: bytes, filename: Optional[str] = None) -> DetectedType:
    sniffed = sniff_image_type(data)
    if sniffed:
        return DetectedType(sniffed, "high")
    if filename:
        ext = os.path.splitext(filename)[1].lstrip(".").lower()
        if ext in EXTENSION_TYPES:
            return DetectedType(EXTENSION_TYPES[ext], "low")
    return DetectedType(None, "none")


def extension_for(mime_type: str) -> str:
    return TYPE_EXTENSIONS.get(mime_type, "bin")


def is_safe_file_path(file_path: str) -> bool:
    return bool(file_path) and ".." not in file_path and "/" not in file_path and "\\" not in file_path
