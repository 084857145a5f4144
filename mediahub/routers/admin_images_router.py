import logging

from fastapi import APIRouter, Depends

from ..application.services.image_resolver import build_url
from ..application.services.image_service import ImageService
from ..application.services.memory_governor import MemoryGovernor
from ..application.services.upload_sessions import UploadSessionManager
from ..dependencies import get_codec, get_governor, get_image_service, get_upload_manager, require_admin
from ..exceptions import create_success_response
from ..infrastructure.imaging.pillow_codec import PillowCodec
from ..schemas.common.common import SuccessResponse
from ..schemas.media.image import BulkDeleteRequest, ImageMetadataUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.patch("/images/{file_path}", response_model=SuccessResponse)
def update_image_metadata(
    file_path: str,
    body: ImageMetadataUpdate,
    admin: str = Depends(require_admin),
    service: ImageService = Depends(get_image_service),
):
    record = service.update_metadata(file_path, **body.model_dump(exclude_none=True))
    return create_success_response({
        "file_path": record.file_path,
        "title": record.title,
        "description": record.description,
        "alt_text": record.alt_text,
        "tags": record.tags,
        "category": record.category,
        "updated_at": record.updated_at.isoformat(),
        "url": build_url(record),
    })


@router.post("/images/{file_path}/variants", response_model=SuccessResponse)
async def regenerate_variants(
    file_path: str,
    admin: str = Depends(require_admin),
    service: ImageService = Depends(get_image_service),
):
    batch = await service.regenerate_variants(file_path)
    return create_success_response({
        "file_path": file_path,
        "variants": sorted(batch.variants),
        "failures": batch.failures,
        "duration_ms": batch.duration_ms,
    })


@router.delete("/images/{file_path}", response_model=SuccessResponse)
async def delete_image(
    file_path: str,
    admin: str = Depends(require_admin),
    service: ImageService = Depends(get_image_service),
):
    await service.delete(file_path)
    logger.info(f"Image {file_path} deleted by {admin}")
    return create_success_response({"file_path": file_path, "deleted": True})


@router.post("/images/bulk-delete", response_model=SuccessResponse)
async def bulk_delete_images(
    body: BulkDeleteRequest,
    admin: str = Depends(require_admin),
    service: ImageService = Depends(get_image_service),
):
    result = await service.bulk_delete(body.file_paths, delay=body.delay_seconds)
    return create_success_response(result.to_dict())


@router.get("/system/memory", response_model=SuccessResponse)
def memory_status(
    admin: str = Depends(require_admin),
    governor: MemoryGovernor = Depends(get_governor),
    codec: PillowCodec = Depends(get_codec),
    manager: UploadSessionManager = Depends(get_upload_manager),
):
    return create_success_response({
        **governor.stats(),
        "codec": codec.cache_stats(),
        "active_upload_sessions": manager.active_count,
    })


@router.post("/system/memory/cleanup", response_model=SuccessResponse)
async def force_memory_cleanup(
    admin: str = Depends(require_admin),
    governor: MemoryGovernor = Depends(get_governor),
):
    await governor.emergency_cleanup(f"requested by {admin}")
    return create_success_response(governor.sample_memory().to_dict())
