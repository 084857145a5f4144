from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, File, Form, Header, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response

from ..application.services.image_resolver import ImageResolver, etag_matches
from ..application.services.image_service import ImageService, UploadItem
from ..application.services.upload_sessions import UploadSession, UploadSessionManager
from ..core.config import settings
from ..dependencies import get_image_service, get_resolver, get_upload_manager, require_admin
from ..exceptions import ImageTooLarge, InvalidChunk, create_success_response
from ..schemas.common.common import ErrorResponse, SuccessResponse
from ..schemas.media.image import UploadPlanRequest, UploadSessionCreate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/images", tags=["Images"])

MB = 1024 * 1024


def _tags(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [t.strip() for t in raw.split(",") if t.strip()]


@router.post(
    "/upload",
    response_model=SuccessResponse,
    responses={413: {"model": ErrorResponse}, 415: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def upload_image(
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    alt_text: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    admin: str = Depends(require_admin),
    service: ImageService = Depends(get_image_service),
):
    data = await file.read()
    if len(data) > settings.PROGRESSIVE_UPLOAD_THRESHOLD:
        raise ImageTooLarge(
            f"File is {len(data) / MB:.1f}MB, single uploads are limited to "
            f"{settings.PROGRESSIVE_UPLOAD_THRESHOLD / MB:.0f}MB",
            suggestions=["Use the chunked upload endpoints for large files"],
        )
    result = await service.ingest(
        file.filename or "upload",
        data,
        file.content_type,
        {"title": title, "description": description, "alt_text": alt_text, "tags": _tags(tags), "category": category},
        uploaded_by=admin,
    )
    return create_success_response(result.to_dict())


@router.post("/upload/bulk", response_model=SuccessResponse)
async def bulk_upload_images(
    files: List[UploadFile] = File(...),
    category: Optional[str] = Form(None),
    admin: str = Depends(require_admin),
    service: ImageService = Depends(get_image_service),
):
    items = []
    for f in files:
        data = await f.read()
        items.append(UploadItem(file_name=f.filename or "upload", data=data, content_type=f.content_type, metadata={"category": category}))
    result = await service.bulk_upload(items, uploaded_by=admin)
    return create_success_response(result.to_dict())


@router.post("/uploads/plan", response_model=SuccessResponse)
def plan_upload(
    body: UploadPlanRequest,
    admin: str = Depends(require_admin),
    manager: UploadSessionManager = Depends(get_upload_manager),
):
    return create_success_response(manager.plan(body.total_size, body.chunk_size).to_dict())


@router.post("/uploads", status_code=201)
def create_upload_session(
    body: UploadSessionCreate,
    admin: str = Depends(require_admin),
    manager: UploadSessionManager = Depends(get_upload_manager),
):
    session = manager.create_session(
        body.file_name,
        body.content_type,
        body.total_size,
        chunk_size=body.chunk_size,
        metadata=body.metadata(),
        uploaded_by=admin,
    )
    return JSONResponse(status_code=201, content=create_success_response(session.to_dict()))


@router.put("/uploads/{session_id}/chunks/{index}", response_model=SuccessResponse)
async def upload_chunk(
    session_id: str,
    index: int,
    request: Request,
    total_chunks: Optional[int] = Query(None),
    admin: str = Depends(require_admin),
    manager: UploadSessionManager = Depends(get_upload_manager),
    service: ImageService = Depends(get_image_service),
):
    if request.headers.get("content-type", "").startswith("multipart/form-data"):
        form = await request.form()
        chunk = form.get("chunk")
        if chunk is None or isinstance(chunk, str):
            raise InvalidChunk("Multipart chunk uploads need a 'chunk' file field")
        data = await chunk.read()
    else:
        data = await request.body()

    async def ingest_completed(session: UploadSession, payload: bytes):
        return await service.ingest(
            session.file_name, payload, session.content_type, session.metadata, uploaded_by=session.uploaded_by
        )

    ack = await manager.receive_chunk(session_id, index, data, total_chunks, on_complete=ingest_completed)
    return create_success_response(ack.to_dict())


@router.get("/uploads/{session_id}", response_model=SuccessResponse)
def get_upload_session(
    session_id: str,
    admin: str = Depends(require_admin),
    manager: UploadSessionManager = Depends(get_upload_manager),
):
    return create_success_response(manager.get(session_id).to_dict())


@router.delete("/uploads/{session_id}", response_model=SuccessResponse)
def cancel_upload_session(
    session_id: str,
    admin: str = Depends(require_admin),
    manager: UploadSessionManager = Depends(get_upload_manager),
):
    return create_success_response(manager.cancel(session_id).to_dict())


@router.get("/{file_path}")
async def get_image(
    file_path: str,
    variant: Optional[str] = Query(None),
    v: Optional[str] = Query(None),
    if_none_match: Optional[str] = Header(None),
    resolver: ImageResolver = Depends(get_resolver),
):
    resolved = await resolver.resolve(file_path, variant, v)
    headers = {k: val for k, val in resolved.headers.items() if k != "Content-Type"}
    headers["X-Image-Variant"] = resolved.variant
    if resolved.fell_back:
        headers["X-Image-Fallback"] = "original"
    if etag_matches(if_none_match, resolved.etag):
        return Response(status_code=304, headers=headers)
    return Response(content=resolved.data, media_type=resolved.content_type, headers=headers)
