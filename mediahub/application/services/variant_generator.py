"""Derive the fixed set of resized renditions for a stored original.

Variants are a cache: each one is a pure function of the original bytes, the
preset and ``GENERATOR_VERSION``, so regeneration simply overwrites the same
storage keys and replaces the same metadata rows.
"""
import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple

from ..ports.codec import Bitmap, ImageCodec
from ..ports.image_repo import ImageRecordDto, ImageRepository, ImageVariantDto
from ..ports.storage_repo import StorageRepository
from ...exceptions import ImageTooLarge, PartialVariantFailure

logger = logging.getLogger(__name__)

MB = 1024 * 1024

GENERATOR_VERSION = 1


@dataclass(frozen=True)
class VariantPreset:
    name: str
    size: int
    quality: int


PRESETS: Tuple[VariantPreset, ...] = (
    VariantPreset("thumbnail", 150, 75),
    VariantPreset("small", 400, 80),
    VariantPreset("medium", 800, 85),
    VariantPreset("large", 1600, 85),
)


@dataclass
class VariantBatch:
    image_id: int
    variants: Dict[str, ImageVariantDto] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    updated_at: Optional[datetime] = None
    duration_ms: float = 0.0

    @property
    def error(self) -> Optional[PartialVariantFailure]:
        return PartialVariantFailure(self.failures) if self.failures else None

    @property
    def complete(self) -> bool:
        return not self.failures


def output_format(alpha: bool) -> Tuple[str, str]:
    return ("PNG", "png") if alpha else ("JPEG", "jpg")


def variant_key(file_path: str, preset: str, ext: str) -> str:
    stem = os.path.splitext(file_path)[0]
    return f"variants/{stem}_{preset}.{ext}"


@dataclass
class VariantGenerator:
    codec: ImageCodec
    storage: StorageRepository
    image_repo: ImageRepository
    max_file_size: int = 200 * MB
    max_dimension: int = 8192
    presets: Tuple[VariantPreset, ...] = PRESETS

    def check_limits(self, data: bytes, declared_type: Optional[str] = None) -> Tuple[str, int, int]:
        if len(data) > self.max_file_size:
            raise ImageTooLarge(
                f"Image is {len(data) / MB:.1f}MB, the limit is {self.max_file_size / MB:.0f}MB",
                suggestions=["Compress the image before uploading"],
            )
        mime_type, width, height = self.codec.probe(data, declared_type)
        if width > self.max_dimension or height > self.max_dimension:
            raise ImageTooLarge(
                f"Image is {width}x{height}, the limit is {self.max_dimension}px per side",
                suggestions=[f"Resize the image to at most {self.max_dimension}px on the longer side"],
            )
        return mime_type, width, height

    async def generate_variants(
        self, record: ImageRecordDto, original: bytes, bitmap: Optional[Bitmap] = None
    ) -> VariantBatch:
        started = time.perf_counter()
        if bitmap is None:
            self.check_limits(original, record.mime_type)
            bitmap = await self.codec.decode(original, record.mime_type)

        fmt, ext = output_format(self.codec.has_alpha(bitmap))
        batch = VariantBatch(image_id=record.id)
        for preset in self.presets:
            try:
                resized = await self.codec.resize(bitmap, preset.size)
                data = await self.codec.encode(resized, fmt, preset.quality)
                key = variant_key(record.file_path, preset.name, ext)
                await asyncio.to_thread(self.storage.save_bytes, key, data)
                variant = ImageVariantDto(
                    image_id=record.id,
                    variant_type=preset.name,
                    file_path=key,
                    width=resized.width,
                    height=resized.height,
                    file_size=len(data),
                    format=fmt.lower(),
                    quality=preset.quality,
                    generator_version=GENERATOR_VERSION,
                )
                self.image_repo.upsert_variant(variant)
                batch.variants[preset.name] = variant
            except Exception as e:
                logger.error(f"Variant {preset.name} failed for {record.file_path}: {e}")
                batch.failures[preset.name] = str(e)

        if batch.variants:
            batch.updated_at = self.image_repo.touch(record.id)
        batch.duration_ms = round((time.perf_counter() - started) * 1000, 1)
        if batch.failures:
            logger.warning(
                f"Generated {len(batch.variants)}/{len(self.presets)} variants for {record.file_path}"
            )
        else:
            logger.info(f"Generated {len(batch.variants)} variants for {record.file_path} in {batch.duration_ms}ms")
        return batch
