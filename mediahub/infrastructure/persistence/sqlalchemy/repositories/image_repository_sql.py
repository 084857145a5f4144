import json
from datetime import datetime, timedelta
from typing import List, Optional

from sqlmodel import Session, select

from .....db.models import ImageRecord, ImageVariant
from .....application.ports.image_repo import (
    ImageRecordDto,
    ImageRepository,
    ImageVariantDto,
    NewImage,
)


def _next_timestamp(previous: Optional[datetime]) -> datetime:
    # cache tokens are millisecond based, so every bump must move at least 1ms
    now = datetime.utcnow()
    if previous is not None and now < previous + timedelta(milliseconds=1):
        return previous + timedelta(milliseconds=1)
    return now


class SqlImageRepository(ImageRepository):
    def __init__(self, session: Session):
        self.session = session

    def _to_variant(self, v: ImageVariant) -> ImageVariantDto:
        return ImageVariantDto(
            image_id=v.image_id,
            variant_type=v.variant_type,
            file_path=v.file_path,
            width=v.width,
            height=v.height,
            file_size=v.file_size,
            format=v.format,
            quality=v.quality,
            generator_version=v.generator_version,
        )

    def _to_record(self, r: ImageRecord) -> ImageRecordDto:
        try:
            tags = json.loads(r.tags or "[]")
        except ValueError:
            tags = []
        return ImageRecordDto(
            id=r.id,
            file_name=r.file_name,
            file_path=r.file_path,
            file_size=r.file_size,
            original_size=r.original_size,
            mime_type=r.mime_type,
            width=r.width,
            height=r.height,
            created_at=r.created_at,
            updated_at=r.updated_at,
            has_alpha=r.has_alpha,
            title=r.title,
            description=r.description,
            alt_text=r.alt_text,
            tags=tags,
            category=r.category,
            uploaded_by=r.uploaded_by,
            variants={v.variant_type: v for v in self.list_variants(r.id)},
        )

    def create(self, image: NewImage) -> ImageRecordDto:
        aspect_ratio = None
        if image.width and image.height:
            aspect_ratio = round(image.width / image.height, 4)
        row = ImageRecord(
            file_name=image.file_name,
            file_path=image.file_path,
            file_size=image.file_size,
            original_size=image.original_size,
            mime_type=image.mime_type,
            width=image.width,
            height=image.height,
            aspect_ratio=aspect_ratio,
            has_alpha=image.has_alpha,
            title=image.title,
            description=image.description,
            alt_text=image.alt_text,
            tags=json.dumps(image.tags or []),
            category=image.category,
            uploaded_by=image.uploaded_by,
            processing_info=json.dumps(image.processing_info) if image.processing_info else None,
        )
        self.session.add(row)
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(row)
        return self._to_record(row)

    def get_by_path(self, file_path: str) -> Optional[ImageRecordDto]:
        row = self.session.exec(select(ImageRecord).where(ImageRecord.file_path == file_path)).first()
        return self._to_record(row) if row else None

    def get_by_id(self, image_id: int) -> Optional[ImageRecordDto]:
        row = self.session.get(ImageRecord, image_id)
        return self._to_record(row) if row else None

    def list_variants(self, image_id: int) -> List[ImageVariantDto]:
        rows = self.session.exec(select(ImageVariant).where(ImageVariant.image_id == image_id)).all()
        return [self._to_variant(v) for v in rows]

    def upsert_variant(self, variant: ImageVariantDto) -> None:
        row = self.session.exec(
            select(ImageVariant)
            .where(ImageVariant.image_id == variant.image_id)
            .where(ImageVariant.variant_type == variant.variant_type)
        ).first()
        if row is None:
            row = ImageVariant(image_id=variant.image_id, variant_type=variant.variant_type)
        row.file_path = variant.file_path
        row.width = variant.width
        row.height = variant.height
        row.file_size = variant.file_size
        row.format = variant.format
        row.quality = variant.quality
        row.generator_version = variant.generator_version
        row.created_at = datetime.utcnow()
        self.session.add(row)
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def delete_variants(self, image_id: int) -> None:
        for row in self.session.exec(select(ImageVariant).where(ImageVariant.image_id == image_id)).all():
            self.session.delete(row)
        self.session.commit()

    def touch(self, image_id: int) -> datetime:
        row = self.session.get(ImageRecord, image_id)
        if row is None:
            raise LookupError(f"Image {image_id} not found")
        row.updated_at = _next_timestamp(row.updated_at)
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row.updated_at

    def update_metadata(self, image_id: int, fields: dict) -> Optional[ImageRecordDto]:
        row = self.session.get(ImageRecord, image_id)
        if row is None:
            return None
        for key, value in fields.items():
            if key == "tags":
                value = json.dumps(list(value))
            setattr(row, key, value)
        row.updated_at = _next_timestamp(row.updated_at)
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return self._to_record(row)

    def delete(self, image_id: int) -> bool:
        row = self.session.get(ImageRecord, image_id)
        if row is None:
            return False
        for variant in self.session.exec(select(ImageVariant).where(ImageVariant.image_id == image_id)).all():
            self.session.delete(variant)
        self.session.delete(row)
        self.session.commit()
        return True
