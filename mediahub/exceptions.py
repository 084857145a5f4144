from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from typing import List, Optional


class MediaError(Exception):
    """Base class for image pipeline failures.

    ``retriable`` tells the caller whether repeating the same request can
    succeed (transient storage or memory conditions) or whether the input
    itself has to change (corrupt file, too large, expired session).
    """

    status_code: int = 400
    code: str = "media_error"
    retriable: bool = False

    def __init__(
        self,
        message: str,
        *,
        retriable: Optional[bool] = None,
        suggestions: Optional[List[str]] = None,
        retry_after: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        if retriable is not None:
            self.retriable = retriable
        self.suggestions = suggestions or []
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retriable": self.retriable,
            "suggestions": self.suggestions,
        }


class UnsupportedFormat(MediaError):
    status_code = 415
    code = "unsupported_format"


class CorruptImage(MediaError):
    status_code = 422
    code = "corrupt_image"


class ImageTooLarge(MediaError):
    status_code = 413
    code = "image_too_large"


class SessionNotFound(MediaError):
    status_code = 404
    code = "session_not_found"


class SessionExpired(MediaError):
    status_code = 410
    code = "session_expired"


class ChunkMismatch(MediaError):
    status_code = 422
    code = "chunk_mismatch"


class InvalidChunk(MediaError):
    status_code = 400
    code = "invalid_chunk"


class ChunkWriteFailed(MediaError):
    status_code = 503
    code = "chunk_write_failed"
    retriable = True


class StorageWriteFailed(MediaError):
    status_code = 503
    code = "storage_write_failed"
    retriable = True


class NotFound(MediaError):
    status_code = 404
    code = "not_found"


class InvalidFilePath(MediaError):
    status_code = 400
    code = "invalid_file_path"


class MemoryPressureCritical(MediaError):
    status_code = 503
    code = "memory_pressure_critical"
    retriable = True


class PartialVariantFailure(MediaError):
    """Some presets failed; the original and the other variants are usable."""

    status_code = 200
    code = "partial_variant_failure"

    def __init__(self, failures: dict):
        names = ", ".join(sorted(failures))
        super().__init__(f"Variant generation failed for: {names}")
        self.failures = dict(failures)


def create_error_response(error_message: str, status_code: int = 400) -> dict:
    """Create a standardized error response"""
    return {
        "success": False,
        "data": None,
        "error": error_message
    }


def create_success_response(data: dict) -> dict:
    """Create a standardized success response"""
    return {
        "success": True,
        "data": data,
        "error": None
    }


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Custom exception handler for HTTPException"""
    # Convert 403 from HTTPBearer to 401 for missing authentication
    if exc.status_code == 403 and "Not authenticated" in str(exc.detail):
        return JSONResponse(
            status_code=401,
            content=create_error_response("Authentication required", 401)
        )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc.detail, exc.status_code),
        headers=getattr(exc, "headers", None),
    )


async def media_exception_handler(request: Request, exc: MediaError) -> JSONResponse:
    """Render pipeline errors with enough detail to decide whether to retry"""
    content = create_error_response(exc.message, exc.status_code)
    content["code"] = exc.code
    content["retriable"] = exc.retriable
    content["suggestions"] = exc.suggestions
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)
