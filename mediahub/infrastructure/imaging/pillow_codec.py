"""Pillow-backed codec adapter.

All decode/resize/encode work runs on a small dedicated thread pool so a
burst of uploads cannot starve request handling on the event loop. Callers
beyond ``max_pending`` are refused instead of queued, and the memory governor
can switch the adapter into load-shedding mode under critical pressure.

Decoded bitmaps are kept in a bounded LRU keyed by the SHA-256 of the input
bytes, so regenerating variants for a just-uploaded image does not decode it
twice. The cache is a pure performance aid: clearing or disabling it at any
time is safe.

Uploads go through ``decode_with_fallbacks``, which walks ``DECODE_STRATEGIES``
in priority order. Strategies that need more memory than is available, or
that do not accept the file size, are skipped. A strategy that runs out of
memory hands over to the next one, which decodes at a reduced resolution.
"""
import asyncio
import gc
import hashlib
import io
import logging
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from ...application.ports.codec import Bitmap, DecodedImage, DecodeStrategy, ImageCodec
from ...exceptions import CorruptImage, ImageTooLarge, MemoryPressureCritical, UnsupportedFormat
from ...media_utils import MIN_IMAGE_BYTES, PIL_FORMAT_TYPES, sniff_image_type

logger = logging.getLogger(__name__)

MB = 1024 * 1024

_DECODE_ERRORS = (UnidentifiedImageError, OSError, SyntaxError, ValueError, EOFError)

DECODE_STRATEGIES = (
    DecodeStrategy("standard", max_edge=None, min_available_mb=512, max_file_size=25 * MB),
    DecodeStrategy("memory-efficient", max_edge=1600, min_available_mb=256, max_file_size=50 * MB),
    DecodeStrategy("emergency-fallback", max_edge=800, min_available_mb=128, max_file_size=200 * MB),
)


def viable_strategies(
    file_size: int,
    available_mb: Optional[float] = None,
    strategies: Tuple[DecodeStrategy, ...] = DECODE_STRATEGIES,
) -> List[DecodeStrategy]:
    viable = [
        s for s in strategies
        if file_size <= s.max_file_size and (available_mb is None or available_mb >= s.min_available_mb)
    ]
    # the last strategy is always attempted
    return viable or [strategies[-1]]


def fit_within(width: int, height: int, target: int) -> Tuple[int, int]:
    """Scale (width, height) so the longer edge is at most ``target``."""
    longer = max(width, height)
    if longer <= target:
        return width, height
    scale = target / longer
    return max(1, round(width * scale)), max(1, round(height * scale))


def has_alpha(bitmap: Bitmap) -> bool:
    return bitmap.mode in ("RGBA", "LA")


class PillowCodec(ImageCodec):
    def __init__(
        self,
        concurrency: int = 2,
        cache_size_mb: int = 50,
        max_pending: int = 16,
        allowed_types: Optional[Iterable[str]] = None,
        max_pixels: Optional[int] = None,
    ) -> None:
        self.concurrency = concurrency
        self.max_pending = max_pending
        self.allowed_types = set(allowed_types or PIL_FORMAT_TYPES.values())
        self.max_pixels = max_pixels
        self._executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="codec")
        self._semaphore = asyncio.Semaphore(concurrency)
        self._pending = 0
        self._shedding = False
        self._default_cache_mb = cache_size_mb
        self._cache_limit = cache_size_mb * MB
        self._cache_enabled = cache_size_mb > 0
        self._cache: "OrderedDict[str, Tuple[Bitmap, int]]" = OrderedDict()
        self._cache_bytes = 0

    # -- scheduling -------------------------------------------------------

    async def _run(self, fn, *args):
        if self._shedding:
            raise MemoryPressureCritical(
                "Image processing is paused while memory pressure is critical",
                retry_after=30,
                suggestions=["Wait a moment and try again", "Upload images one at a time"],
            )
        if self._pending >= self.max_pending:
            raise MemoryPressureCritical(
                "Too many images are being processed right now",
                retry_after=10,
                suggestions=["Wait a moment and try again"],
            )
        self._pending += 1
        try:
            async with self._semaphore:
                loop = asyncio.get_running_loop()
                return await loop.run_in_executor(self._executor, fn, *args)
        finally:
            self._pending -= 1

    @property
    def pending(self) -> int:
        return self._pending

    def set_load_shedding(self, enabled: bool) -> None:
        if enabled != self._shedding:
            logger.warning(f"Codec load shedding {'enabled' if enabled else 'disabled'}")
        self._shedding = enabled

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    # -- cache ------------------------------------------------------------

    def _cache_get(self, key: str) -> Optional[Bitmap]:
        if not self._cache_enabled:
            return None
        entry = self._cache.get(key)
        if entry is None:
            return None
        self._cache.move_to_end(key)
        return entry[0]

    def _cache_put(self, key: str, bitmap: Bitmap) -> None:
        if not self._cache_enabled:
            return
        size = bitmap.width * bitmap.height * len(bitmap.getbands())
        if size > self._cache_limit:
            return
        if key in self._cache:
            self._cache_bytes -= self._cache.pop(key)[1]
        self._cache[key] = (bitmap, size)
        self._cache_bytes += size
        while self._cache_bytes > self._cache_limit and self._cache:
            _, (_, evicted) = self._cache.popitem(last=False)
            self._cache_bytes -= evicted

    def clear_cache(self) -> None:
        self._cache.clear()
        self._cache_bytes = 0

    def disable_cache(self) -> None:
        self.clear_cache()
        self._cache_enabled = False

    def enable_cache(self, size_mb: Optional[int] = None) -> None:
        mb = self._default_cache_mb if size_mb is None else size_mb
        self._cache_limit = mb * MB
        self._cache_enabled = mb > 0

    def cache_stats(self) -> dict:
        return {
            "enabled": self._cache_enabled,
            "items": len(self._cache),
            "used_mb": round(self._cache_bytes / MB, 2),
            "limit_mb": round(self._cache_limit / MB, 2),
            "concurrency": self.concurrency,
            "pending": self._pending,
            "load_shedding": self._shedding,
        }

    # -- codec operations -------------------------------------------------

    def _classify_failure(self, data: bytes, declared_type: Optional[str], exc: Exception):
        if sniff_image_type(data) or (declared_type and declared_type in self.allowed_types):
            return CorruptImage(
                f"Image data could not be decoded: {exc}",
                suggestions=["Try opening and re-saving the image in an image editor", "Upload a different file"],
            )
        return UnsupportedFormat(
            "Unable to detect a supported image format",
            suggestions=["Convert the image to JPEG or PNG format"],
        )

    def probe(self, data: bytes, declared_type: Optional[str] = None) -> Tuple[str, int, int]:
        """Read format and dimensions from the header without decoding pixels."""
        if len(data) < MIN_IMAGE_BYTES:
            raise CorruptImage("File too small to be a valid image")
        try:
            with Image.open(io.BytesIO(data)) as img:
                fmt, (width, height) = img.format, img.size
        except Image.DecompressionBombError as e:
            raise ImageTooLarge(str(e)) from e
        except _DECODE_ERRORS as e:
            raise self._classify_failure(data, declared_type, e) from e
        mime_type = PIL_FORMAT_TYPES.get(fmt or "")
        if mime_type is None or mime_type not in self.allowed_types:
            raise UnsupportedFormat(f"Image format {fmt} is not supported")
        return mime_type, width, height

    def _decode_sync(self, data: bytes, declared_type: Optional[str], max_edge: Optional[int] = None) -> Bitmap:
        try:
            img = Image.open(io.BytesIO(data))
            if self.max_pixels and img.width * img.height > self.max_pixels:
                raise ImageTooLarge(f"Image has {img.width}x{img.height} pixels")
            if max_edge is not None:
                # JPEG decodes at 1/2, 1/4 or 1/8 scale; other formats ignore the hint
                img.draft(None, (max_edge, max_edge))
            img.load()
            img = ImageOps.exif_transpose(img)
            if max_edge is not None and max(img.size) > max_edge:
                img.thumbnail((max_edge, max_edge), Image.Resampling.LANCZOS)
        except Image.DecompressionBombError as e:
            raise ImageTooLarge(str(e)) from e
        except _DECODE_ERRORS as e:
            raise self._classify_failure(data, declared_type, e) from e
        if img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info):
            return img.convert("RGBA")
        if img.mode != "RGB":
            return img.convert("RGB")
        return img

    async def decode(self, data: bytes, declared_type: Optional[str] = None) -> Bitmap:
        if len(data) < MIN_IMAGE_BYTES:
            raise CorruptImage("File too small to be a valid image")
        key = hashlib.sha256(data).hexdigest()
        cached = self._cache_get(key)
        if cached is not None:
            return cached
        bitmap = await self._run(self._decode_sync, data, declared_type)
        self._cache_put(key, bitmap)
        return bitmap

    async def decode_with_fallbacks(
        self, data: bytes, declared_type: Optional[str] = None, available_mb: Optional[float] = None
    ) -> DecodedImage:
        if len(data) < MIN_IMAGE_BYTES:
            raise CorruptImage("File too small to be a valid image")
        attempted: List[str] = []
        for strategy in viable_strategies(len(data), available_mb):
            attempted.append(strategy.name)
            try:
                if strategy.max_edge is None:
                    bitmap = await self.decode(data, declared_type)
                else:
                    bitmap = await self._run(self._decode_sync, data, declared_type, strategy.max_edge)
            except MemoryError:
                logger.warning(f"Decode strategy {strategy.name} ran out of memory ({len(data)} bytes)")
                self.clear_cache()
                gc.collect()
                continue
            if len(attempted) > 1 or strategy.max_edge is not None:
                logger.info(f"Decoded {len(data)} bytes with {strategy.name} after trying {attempted}")
            return DecodedImage(
                bitmap=bitmap,
                strategy=strategy.name,
                attempted=attempted,
                reduced=strategy.max_edge is not None,
            )
        raise MemoryPressureCritical(
            f"Not enough memory to decode the image (tried {', '.join(attempted)})",
            retry_after=30,
            suggestions=["Reduce the image dimensions and try again", "Try again in a few minutes"],
        )

    def has_alpha(self, bitmap: Bitmap) -> bool:
        return has_alpha(bitmap)

    def _resize_sync(self, bitmap: Bitmap, target: int) -> Bitmap:
        size = fit_within(bitmap.width, bitmap.height, target)
        if size == bitmap.size:
            return bitmap.copy()
        return bitmap.resize(size, Image.Resampling.LANCZOS)

    async def resize(self, bitmap: Bitmap, target: int) -> Bitmap:
        return await self._run(self._resize_sync, bitmap, target)

    def _encode_sync(self, bitmap: Bitmap, fmt: str, quality: int) -> bytes:
        fmt = fmt.upper()
        out = io.BytesIO()
        if fmt == "JPEG":
            image = bitmap.convert("RGB") if bitmap.mode != "RGB" else bitmap
            image.save(out, format="JPEG", quality=quality, optimize=False, progressive=False)
        elif fmt == "PNG":
            bitmap.save(out, format="PNG", compress_level=6)
        elif fmt == "WEBP":
            bitmap.save(out, format="WEBP", quality=quality, method=4)
        else:
            raise UnsupportedFormat(f"Cannot encode to {fmt}")
        return out.getvalue()

    async def encode(self, bitmap: Bitmap, fmt: str, quality: int) -> bytes:
        return await self._run(self._encode_sync, bitmap, fmt, quality)
