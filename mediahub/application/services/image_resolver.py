import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Dict, Optional
from urllib.parse import urlencode

from ..ports.image_repo import VARIANT_NAMES, ImageRecordDto, ImageRepository
from ..ports.storage_repo import StorageRepository
from ...exceptions import InvalidFilePath, NotFound
from ...media_utils import is_safe_file_path

logger = logging.getLogger(__name__)

ORIGINAL = "original"
IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


def cache_token(record: ImageRecordDto) -> int:
    """Version token for cache busting: ``updated_at`` in epoch milliseconds."""
    return int(_as_utc(record.updated_at).timestamp() * 1000)


def build_url(record: ImageRecordDto, variant: Optional[str] = None) -> str:
    params = {}
    if variant and variant != ORIGINAL:
        params["variant"] = variant
    params["v"] = cache_token(record)
    return f"/images/{record.file_path}?{urlencode(params)}"


def etag_matches(if_none_match: Optional[str], etag: str) -> bool:
    if not if_none_match:
        return False
    if if_none_match.strip() == "*":
        return True
    for candidate in if_none_match.split(","):
        candidate = candidate.strip()
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == etag:
            return True
    return False


@dataclass
class ResolvedImage:
    data: bytes
    content_type: str
    variant: str
    fell_back: bool = False
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def etag(self) -> str:
        return self.headers["ETag"]


@dataclass
class ImageResolver:
    image_repo: ImageRepository
    storage: StorageRepository
    cache_max_age: int = 3600

    def _lookup(self, file_path: str) -> ImageRecordDto:
        if not is_safe_file_path(file_path):
            raise InvalidFilePath(f"Invalid file path: {file_path!r}")
        record = self.image_repo.get_by_path(file_path)
        if record is None:
            raise NotFound(f"Image {file_path} not found")
        return record

    async def resolve(
        self, file_path: str, variant: Optional[str] = None, version: Optional[str] = None
    ) -> ResolvedImage:
        record = self._lookup(file_path)
        requested = variant or ORIGINAL
        served = ORIGINAL
        data = None
        content_type = record.mime_type

        if requested != ORIGINAL:
            stored = record.variants.get(requested) if requested in VARIANT_NAMES else None
            if stored is not None:
                data = await asyncio.to_thread(self.storage.read_bytes, stored.file_path)
                if data is not None:
                    served = requested
                    content_type = f"image/{stored.format}"
            if served == ORIGINAL:
                logger.info(f"Variant {requested} unavailable for {file_path}, serving original")

        if served == ORIGINAL:
            data = await asyncio.to_thread(self.storage.read_bytes, record.file_path)
            if data is None:
                logger.error(f"Original bytes missing from storage for {file_path}")
                raise NotFound(f"Image {file_path} not found")

        token = cache_token(record)
        if version is not None and str(version) == str(token):
            cache_control = IMMUTABLE_CACHE_CONTROL
        else:
            cache_control = f"public, max-age={self.cache_max_age}, must-revalidate"
        headers = {
            "Content-Type": content_type,
            "ETag": f'"{record.id}-{token}-{served}"',
            "Last-Modified": format_datetime(_as_utc(record.updated_at), usegmt=True),
            "Cache-Control": cache_control,
        }
        return ResolvedImage(
            data=data,
            content_type=content_type,
            variant=served,
            fell_back=requested != served,
            headers=headers,
        )

    def urls_for(self, record: ImageRecordDto) -> Dict[str, str]:
        urls = {ORIGINAL: build_url(record)}
        for name in record.variant_names:
            urls[name] = build_url(record, name)
        return urls
