"""Dependency providers shared by the routers.

Process-wide objects (codec pool, memory governor, upload sessions) are
created once per process; repositories are built per request around the
request's database session.
"""
import logging
from functools import lru_cache

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from .application.services.image_resolver import ImageResolver
from .application.services.image_service import ImageService
from .application.services.memory_governor import MemoryGovernor
from .application.services.upload_sessions import UploadSessionManager
from .application.services.variant_generator import VariantGenerator
from .core.config import settings
from .database import get_session
from .infrastructure.imaging.pillow_codec import PillowCodec
from .infrastructure.persistence.sqlalchemy.repositories.image_repository_sql import SqlImageRepository
from .infrastructure.storage.local_storage import LocalChunkStaging, LocalStorageRepository
from .infrastructure.system.psutil_sampler import PsutilMemorySampler
from .utils import decode_jwt_token

logger = logging.getLogger(__name__)

oauth2_scheme = HTTPBearer()


@lru_cache()
def get_codec() -> PillowCodec:
    return PillowCodec(
        concurrency=settings.CODEC_CONCURRENCY,
        cache_size_mb=settings.CODEC_CACHE_SIZE_MB,
        max_pending=settings.CODEC_MAX_PENDING,
        allowed_types=settings.ALLOWED_IMAGE_TYPES,
        max_pixels=settings.IMAGE_MAX_DIMENSION * settings.IMAGE_MAX_DIMENSION,
    )


@lru_cache()
def get_governor() -> MemoryGovernor:
    return MemoryGovernor(
        PsutilMemorySampler(),
        get_codec(),
        rss_limit_mb=settings.IMAGE_PROCESSING_MEMORY_LIMIT_MB,
        interval=settings.MEMORY_CHECK_INTERVAL_SECONDS,
        cooldown=settings.MEMORY_CRITICAL_COOLDOWN_SECONDS,
    )


@lru_cache()
def get_storage() -> LocalStorageRepository:
    return LocalStorageRepository(settings.UPLOAD_DIR)


@lru_cache()
def get_upload_manager() -> UploadSessionManager:
    return UploadSessionManager.from_settings(settings, LocalChunkStaging(settings.UPLOAD_DIR))


def get_image_repo(session: Session = Depends(get_session)) -> SqlImageRepository:
    return SqlImageRepository(session)


def get_image_service(
    image_repo: SqlImageRepository = Depends(get_image_repo),
    storage: LocalStorageRepository = Depends(get_storage),
    codec: PillowCodec = Depends(get_codec),
    governor: MemoryGovernor = Depends(get_governor),
) -> ImageService:
    variants = VariantGenerator(
        codec=codec,
        storage=storage,
        image_repo=image_repo,
        max_file_size=settings.UPLOAD_MAX_FILE_SIZE,
        max_dimension=settings.IMAGE_MAX_DIMENSION,
    )
    return ImageService(
        image_repo=image_repo,
        storage=storage,
        codec=codec,
        variants=variants,
        governor=governor,
        allowed_types=settings.ALLOWED_IMAGE_TYPES,
        storage_retry_attempts=settings.UPLOAD_RETRY_ATTEMPTS,
        storage_retry_delay=settings.UPLOAD_RETRY_DELAY_SECONDS,
        bulk_upload_delay=settings.BULK_UPLOAD_DELAY_SECONDS,
        bulk_delete_delay=settings.BULK_DELETE_DELAY_SECONDS,
    )


def get_resolver(
    image_repo: SqlImageRepository = Depends(get_image_repo),
    storage: LocalStorageRepository = Depends(get_storage),
) -> ImageResolver:
    return ImageResolver(image_repo=image_repo, storage=storage, cache_max_age=settings.IMAGE_CACHE_MAX_AGE)


def require_admin(credentials: HTTPAuthorizationCredentials = Depends(oauth2_scheme)) -> str:
    payload = decode_jwt_token(credentials.credentials)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    if payload.get("role") != "admin":
        logger.warning(f"Non-admin token rejected for subject {payload.get('sub')}")
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return str(payload.get("sub") or "admin")
