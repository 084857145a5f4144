import io
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest
from PIL import Image

from mediahub.application.ports.image_repo import ImageRecordDto, ImageVariantDto, NewImage
from mediahub.application.ports.memory_sampler import MemorySample


def make_image_bytes(width=640, height=480, fmt="JPEG", mode="RGB", color=(200, 30, 30)) -> bytes:
    if mode == "RGBA" and len(color) == 3:
        color = color + (128,)
    img = Image.new(mode, (width, height), color)
    # a gradient stripe so resizes are not trivially uniform
    for x in range(0, width, max(1, width // 16)):
        img.putpixel((x, height // 2), (0, 0, 0, 255) if mode == "RGBA" else (0, 0, 0))
    out = io.BytesIO()
    img.save(out, format=fmt)
    return out.getvalue()


class FakeImageRepo:
    def __init__(self):
        self.records: Dict[int, ImageRecordDto] = {}
        self.variants: Dict[int, Dict[str, ImageVariantDto]] = {}
        self.fail_create = False
        self.created: List[NewImage] = []
        self._id = 1

    def _with_variants(self, rec: ImageRecordDto) -> ImageRecordDto:
        rec.variants = dict(self.variants.get(rec.id, {}))
        return rec

    def create(self, image: NewImage) -> ImageRecordDto:
        if self.fail_create:
            raise RuntimeError("database is locked")
        self.created.append(image)
        now = datetime.utcnow()
        rec = ImageRecordDto(
            id=self._id,
            file_name=image.file_name,
            file_path=image.file_path,
            file_size=image.file_size,
            original_size=image.original_size,
            mime_type=image.mime_type,
            width=image.width,
            height=image.height,
            created_at=now,
            updated_at=now,
            has_alpha=image.has_alpha,
            title=image.title,
            description=image.description,
            alt_text=image.alt_text,
            tags=list(image.tags),
            category=image.category,
            uploaded_by=image.uploaded_by,
        )
        self.records[rec.id] = rec
        self._id += 1
        return self._with_variants(rec)

    def get_by_path(self, file_path: str) -> Optional[ImageRecordDto]:
        for rec in self.records.values():
            if rec.file_path == file_path:
                return self._with_variants(rec)
        return None

    def get_by_id(self, image_id: int) -> Optional[ImageRecordDto]:
        rec = self.records.get(image_id)
        return self._with_variants(rec) if rec else None

    def list_variants(self, image_id: int) -> List[ImageVariantDto]:
        return list(self.variants.get(image_id, {}).values())

    def upsert_variant(self, variant: ImageVariantDto) -> None:
        self.variants.setdefault(variant.image_id, {})[variant.variant_type] = variant

    def delete_variants(self, image_id: int) -> None:
        self.variants.pop(image_id, None)

    def touch(self, image_id: int) -> datetime:
        rec = self.records[image_id]
        rec.updated_at = max(datetime.utcnow(), rec.updated_at + timedelta(milliseconds=1))
        return rec.updated_at

    def update_metadata(self, image_id: int, fields: dict) -> Optional[ImageRecordDto]:
        rec = self.records.get(image_id)
        if rec is None:
            return None
        for key, value in fields.items():
            setattr(rec, key, value)
        self.touch(image_id)
        return self._with_variants(rec)

    def delete(self, image_id: int) -> bool:
        self.variants.pop(image_id, None)
        return self.records.pop(image_id, None) is not None


class FakeStorage:
    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.fail_writes = 0
        self.fail_keys: List[str] = []
        self.write_attempts = 0
        self.io_threads: set = set()

    def save_bytes(self, key: str, data: bytes) -> str:
        self.io_threads.add(threading.get_ident())
        self.write_attempts += 1
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise OSError("disk unavailable")
        if any(part in key for part in self.fail_keys):
            raise OSError(f"cannot write {key}")
        self.objects[key] = data
        return f"/tmp/{key}"

    def read_bytes(self, key: str) -> Optional[bytes]:
        return self.objects.get(key)

    def delete(self, key: str) -> bool:
        self.io_threads.add(threading.get_ident())
        return self.objects.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        return key in self.objects


class FakeSampler:
    def __init__(self, heap_percent: float = 20.0, rss_mb: int = 10):
        self.heap_percent = heap_percent
        self.rss_mb = rss_mb
        self.heap_total = 16 * 1024 * 1024 * 1024

    def sample(self) -> MemorySample:
        return MemorySample(
            heap_used=int(self.heap_percent / 100 * self.heap_total),
            heap_total=self.heap_total,
            rss=self.rss_mb * 1024 * 1024,
        )


@pytest.fixture
def make_image():
    return make_image_bytes


@pytest.fixture
def image_repo():
    return FakeImageRepo()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def sampler():
    return FakeSampler()
