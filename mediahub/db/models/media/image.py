# mediahub/db/models/media/image.py
from typing import Optional
from sqlmodel import SQLModel, Field
from datetime import datetime
from sqlalchemy import Column, Text, UniqueConstraint


class ImageRecord(SQLModel, table=True):
    __tablename__ = "images"
    id: Optional[int] = Field(default=None, primary_key=True)
    file_name: str = Field(max_length=255)
    file_path: str = Field(max_length=255, unique=True, index=True)
    file_size: int
    original_size: int
    mime_type: str = Field(max_length=100)
    width: Optional[int] = None
    height: Optional[int] = None
    aspect_ratio: Optional[float] = None
    has_alpha: bool = False
    title: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    alt_text: Optional[str] = Field(default=None, max_length=300)
    tags: str = Field(default="[]", sa_column=Column(Text, nullable=False, default="[]"))
    category: Optional[str] = Field(default=None, max_length=100)
    uploaded_by: Optional[str] = Field(default=None, max_length=100)
    processing_info: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ImageVariant(SQLModel, table=True):
    __tablename__ = "image_variants"
    __table_args__ = (UniqueConstraint("image_id", "variant_type", name="uq_image_variant_type"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    image_id: int = Field(foreign_key="images.id", index=True)
    variant_type: str = Field(max_length=20)
    file_path: str = Field(max_length=255)
    width: int
    height: int
    file_size: int
    format: str = Field(max_length=10)
    quality: Optional[int] = None
    generator_version: int = 1
    created_at: datetime = Field(default_factory=datetime.utcnow)
