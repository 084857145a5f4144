# Models package (re-export feature modules for stable imports)
from .media.image import ImageRecord, ImageVariant

__all__ = [
    "ImageRecord",
    "ImageVariant",
]
