from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, Tuple

# Decoded raster; the Pillow adapter uses PIL.Image.Image.
Bitmap = Any


@dataclass(frozen=True)
class DecodeStrategy:
    name: str
    max_edge: Optional[int]  # None decodes at full resolution
    min_available_mb: int
    max_file_size: int


@dataclass
class DecodedImage:
    bitmap: Bitmap
    strategy: str
    attempted: List[str] = field(default_factory=list)
    reduced: bool = False


class ImageCodec(Protocol):
    def probe(self, data: bytes, declared_type: Optional[str] = None) -> Tuple[str, int, int]:
        ...

    async def decode(self, data: bytes, declared_type: Optional[str] = None) -> Bitmap:
        ...

    async def decode_with_fallbacks(
        self, data: bytes, declared_type: Optional[str] = None, available_mb: Optional[float] = None
    ) -> DecodedImage:
        ...

    def has_alpha(self, bitmap: Bitmap) -> bool:
        ...

    async def resize(self, bitmap: Bitmap, target: int) -> Bitmap:
        ...

    async def encode(self, bitmap: Bitmap, fmt: str, quality: int) -> bytes:
        ...

    def clear_cache(self) -> None:
        ...

    def disable_cache(self) -> None:
        ...

    def enable_cache(self, size_mb: Optional[int] = None) -> None:
        ...

    def set_load_shedding(self, enabled: bool) -> None:
        ...
