from typing import Dict, List, Optional, Protocol
from dataclasses import dataclass, field
from datetime import datetime

VARIANT_NAMES = ("thumbnail", "small", "medium", "large")


@dataclass
class ImageVariantDto:
    image_id: int
    variant_type: str
    file_path: str
    width: int
    height: int
    file_size: int
    format: str
    quality: Optional[int] = None
    generator_version: int = 1


@dataclass
class ImageRecordDto:
    id: int
    file_name: str
    file_path: str
    file_size: int
    original_size: int
    mime_type: str
    width: Optional[int]
    height: Optional[int]
    created_at: datetime
    updated_at: datetime
    has_alpha: bool = False
    title: Optional[str] = None
    description: Optional[str] = None
    alt_text: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    category: Optional[str] = None
    uploaded_by: Optional[str] = None
    variants: Dict[str, ImageVariantDto] = field(default_factory=dict)

    @property
    def variant_names(self) -> List[str]:
        return [name for name in VARIANT_NAMES if name in self.variants]


@dataclass
class NewImage:
    file_name: str
    file_path: str
    file_size: int
    original_size: int
    mime_type: str
    width: Optional[int] = None
    height: Optional[int] = None
    has_alpha: bool = False
    title: Optional[str] = None
    description: Optional[str] = None
    alt_text: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    category: Optional[str] = None
    uploaded_by: Optional[str] = None
    processing_info: Optional[dict] = None


class ImageRepository(Protocol):
    def create(self, image: NewImage) -> ImageRecordDto:
        ...

    def get_by_path(self, file_path: str) -> Optional[ImageRecordDto]:
        ...

    def get_by_id(self, image_id: int) -> Optional[ImageRecordDto]:
        ...

    def list_variants(self, image_id: int) -> List[ImageVariantDto]:
        ...

    def upsert_variant(self, variant: ImageVariantDto) -> None:
        ...

    def delete_variants(self, image_id: int) -> None:
        ...

    def touch(self, image_id: int) -> datetime:
        ...

    def update_metadata(self, image_id: int, fields: dict) -> Optional[ImageRecordDto]:
        ...

    def delete(self, image_id: int) -> bool:
        ...
