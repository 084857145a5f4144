import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from ..ports.codec import ImageCodec
from ..ports.image_repo import ImageRecordDto, ImageRepository, NewImage
from ..ports.storage_repo import StorageRepository
from .memory_governor import MemoryGovernor, MemoryPressure
from .variant_generator import VariantBatch, VariantGenerator
from ...exceptions import (
    MediaError,
    MemoryPressureCritical,
    NotFound,
    StorageWriteFailed,
    UnsupportedFormat,
)
from ...media_utils import detect_image_type, extension_for

logger = logging.getLogger(__name__)

METADATA_FIELDS = ("title", "description", "alt_text", "tags", "category")


@dataclass
class UploadItem:
    file_name: str
    data: bytes
    content_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestResult:
    image_id: int
    file_path: str
    file_name: str
    file_size: int
    mime_type: str
    width: int
    height: int
    variants: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    processing_time_ms: float = 0.0
    strategy: str = "standard"

    def to_dict(self) -> dict:
        return {
            "id": self.image_id,
            "file_path": self.file_path,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "width": self.width,
            "height": self.height,
            "variants": self.variants,
            "warnings": self.warnings,
            "processing_time_ms": self.processing_time_ms,
            "strategy": self.strategy,
        }


@dataclass
class BulkUploadResult:
    uploaded: List[IngestResult] = field(default_factory=list)
    failed: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "uploaded": [r.to_dict() for r in self.uploaded],
            "failed": self.failed,
            "total": len(self.uploaded) + len(self.failed),
            "success_count": len(self.uploaded),
            "failure_count": len(self.failed),
        }


@dataclass
class BulkDeleteResult:
    deleted: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"deleted": self.deleted, "failed": self.failed, "deleted_count": len(self.deleted)}


@dataclass
class ImageService:
    image_repo: ImageRepository
    storage: StorageRepository
    codec: ImageCodec
    variants: VariantGenerator
    governor: Optional[MemoryGovernor] = None
    allowed_types: Iterable[str] = ("image/jpeg", "image/png", "image/gif", "image/webp", "image/bmp", "image/tiff")
    storage_retry_attempts: int = 3
    storage_retry_delay: float = 1.0
    bulk_upload_delay: float = 1.0
    bulk_delete_delay: float = 0.5
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def _get(self, file_path: str) -> ImageRecordDto:
        record = self.image_repo.get_by_path(file_path)
        if record is None:
            raise NotFound(f"Image {file_path} not found")
        return record

    async def _store_with_retry(self, key: str, data: bytes) -> None:
        attempts = max(1, self.storage_retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                await asyncio.to_thread(self.storage.save_bytes, key, data)
                return
            except OSError as e:
                if attempt == attempts:
                    logger.error(f"Storing {key} failed after {attempts} attempts: {e}")
                    raise StorageWriteFailed(
                        "Failed to store image after multiple attempts",
                        suggestions=["Try uploading again in a moment"],
                        retry_after=5,
                    ) from e
                delay = self.storage_retry_delay * 2 ** (attempt - 1)
                logger.warning(f"Storing {key} failed (attempt {attempt}/{attempts}), retrying in {delay}s: {e}")
                await self.sleep(delay)

    async def _prepare_memory(self, file_name: str, warnings: List[str]) -> None:
        if self.governor is None:
            return
        if self.governor.is_under_pressure():
            await self.governor.emergency_cleanup(f"before processing {file_name}")
            warnings.append("Image processed under memory pressure")

    async def ingest(
        self,
        file_name: str,
        data: bytes,
        content_type: Optional[str] = None,
        metadata: Optional[dict] = None,
        uploaded_by: Optional[str] = None,
    ) -> IngestResult:
        started = time.perf_counter()
        metadata = metadata or {}
        warnings: List[str] = []

        detected = detect_image_type(data, file_name)
        if not detected.valid:
            raise UnsupportedFormat(
                "Unable to detect a supported image format",
                suggestions=["Convert the image to JPEG or PNG format"],
            )
        if detected.mime_type not in self.allowed_types:
            raise UnsupportedFormat(f"Image type {detected.mime_type} is not allowed")
        if detected.confidence != "high":
            warnings.append(f"Image type guessed from file name as {detected.mime_type}")
        if content_type and content_type != detected.mime_type and content_type != "application/octet-stream":
            warnings.append(f"Declared type {content_type} differs from detected {detected.mime_type}")

        await self._prepare_memory(file_name, warnings)

        mime_type, width, height = self.variants.check_limits(data, detected.mime_type)
        available_mb = self.governor.sample_memory().available_mb if self.governor is not None else None
        decoded = await self.codec.decode_with_fallbacks(data, mime_type, available_mb)
        bitmap = decoded.bitmap
        alpha = self.codec.has_alpha(bitmap)
        if decoded.reduced:
            warnings.append(f"Variants were generated from a reduced-resolution decode ({decoded.strategy})")

        file_path = f"{uuid.uuid4().hex}.{extension_for(mime_type)}"
        await self._store_with_retry(file_path, data)

        try:
            record = self.image_repo.create(
                NewImage(
                    file_name=file_name,
                    file_path=file_path,
                    file_size=len(data),
                    original_size=len(data),
                    mime_type=mime_type,
                    width=width,
                    height=height,
                    has_alpha=alpha,
                    title=metadata.get("title"),
                    description=metadata.get("description"),
                    alt_text=metadata.get("alt_text"),
                    tags=list(metadata.get("tags") or []),
                    category=metadata.get("category"),
                    uploaded_by=uploaded_by,
                    processing_info={
                        "detected_type": detected.mime_type,
                        "confidence": detected.confidence,
                        "strategy": decoded.strategy,
                        "attempted_strategies": decoded.attempted,
                        "warnings": warnings,
                    },
                )
            )
        except Exception as e:
            logger.error(f"Saving metadata for {file_path} failed, removing stored original: {e}")
            try:
                await asyncio.to_thread(self.storage.delete, file_path)
            except OSError as cleanup_error:
                logger.warning(f"Failed to remove orphaned original {file_path}: {cleanup_error}")
            raise StorageWriteFailed("Failed to save image metadata", retry_after=5) from e

        batch = await self.variants.generate_variants(record, data, bitmap)
        if batch.error is not None:
            warnings.append(batch.error.message)

        elapsed = round((time.perf_counter() - started) * 1000, 1)
        logger.info(f"Image uploaded: {file_name} -> {file_path} ({len(data)} bytes, {elapsed}ms)")
        return IngestResult(
            image_id=record.id,
            file_path=file_path,
            file_name=file_name,
            file_size=len(data),
            mime_type=mime_type,
            width=width,
            height=height,
            variants=[name for name in batch.variants],
            warnings=warnings,
            processing_time_ms=elapsed,
            strategy=decoded.strategy,
        )

    async def bulk_upload(self, items: List[UploadItem], uploaded_by: Optional[str] = None) -> BulkUploadResult:
        if self.governor is not None:
            state = self.governor.sample_memory()
            if state.pressure == MemoryPressure.CRITICAL:
                raise MemoryPressureCritical(
                    "Server memory is critically high, bulk upload refused",
                    retry_after=30,
                    suggestions=["Upload fewer images at once", "Try again in a few minutes"],
                )

        result = BulkUploadResult()
        for position, item in enumerate(items):
            if position and self.bulk_upload_delay > 0:
                await self.sleep(self.bulk_upload_delay)
            try:
                ingested = await self.ingest(
                    item.file_name, item.data, item.content_type, item.metadata, uploaded_by
                )
                result.uploaded.append(ingested)
            except MediaError as e:
                logger.warning(f"Bulk upload item {item.file_name} failed: {e.message}")
                result.failed.append({"file_name": item.file_name, **e.to_dict()})
        logger.info(f"Bulk upload finished: {len(result.uploaded)} ok, {len(result.failed)} failed")
        return result

    async def regenerate_variants(self, file_path: str) -> VariantBatch:
        record = self._get(file_path)
        data = await asyncio.to_thread(self.storage.read_bytes, record.file_path)
        if data is None:
            raise NotFound(f"Original bytes for {file_path} are missing")
        return await self.variants.generate_variants(record, data)

    def update_metadata(self, file_path: str, **fields) -> ImageRecordDto:
        record = self._get(file_path)
        changes = {k: v for k, v in fields.items() if k in METADATA_FIELDS and v is not None}
        updated = self.image_repo.update_metadata(record.id, changes)
        if updated is None:
            raise NotFound(f"Image {file_path} not found")
        logger.info(f"Metadata updated for {file_path}: {sorted(changes)}")
        return updated

    async def _remove_object(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.storage.delete, key)
        except OSError as e:
            logger.warning(f"Failed to remove stored object {key}: {e}")

    async def delete(self, file_path: str) -> None:
        record = self._get(file_path)
        await self._remove_object(record.file_path)
        for variant in record.variants.values():
            await self._remove_object(variant.file_path)
        self.image_repo.delete(record.id)
        logger.info(f"Image deleted: {file_path}")

    async def bulk_delete(self, file_paths: List[str], delay: Optional[float] = None) -> BulkDeleteResult:
        delay = self.bulk_delete_delay if delay is None else delay
        result = BulkDeleteResult()
        for position, file_path in enumerate(file_paths):
            if position and delay > 0:
                await self.sleep(delay)
            try:
                await self.delete(file_path)
                result.deleted.append(file_path)
            except MediaError as e:
                result.failed[file_path] = e.message
        logger.info(f"Bulk delete finished: {len(result.deleted)} deleted, {len(result.failed)} failed")
        return result
