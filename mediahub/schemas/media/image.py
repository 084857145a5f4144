# mediahub/schemas/media/image.py
from pydantic import BaseModel, Field, field_validator
from typing import List, Optional


class ImageMetadataUpdate(BaseModel):
    title: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    alt_text: Optional[str] = Field(default=None, max_length=300)
    tags: Optional[List[str]] = None
    category: Optional[str] = Field(default=None, max_length=100)

    @field_validator("tags")
    @classmethod
    def strip_tags(cls, v):
        if v is None:
            return v
        return [t.strip() for t in v if t and t.strip()]


class UploadPlanRequest(BaseModel):
    total_size: int = Field(gt=0)
    chunk_size: Optional[int] = Field(default=None, gt=0)


class UploadSessionCreate(BaseModel):
    file_name: str = Field(min_length=1, max_length=255)
    content_type: str
    total_size: int = Field(gt=0)
    chunk_size: Optional[int] = Field(default=None, gt=0)
    title: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    alt_text: Optional[str] = Field(default=None, max_length=300)
    tags: List[str] = []
    category: Optional[str] = Field(default=None, max_length=100)

    def metadata(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "alt_text": self.alt_text,
            "tags": self.tags,
            "category": self.category,
        }


class BulkDeleteRequest(BaseModel):
    file_paths: List[str] = Field(min_length=1, max_length=500)
    delay_seconds: Optional[float] = Field(default=None, ge=0, le=10)
