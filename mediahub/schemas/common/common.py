# mediahub/schemas/common/common.py
from pydantic import BaseModel
from typing import Any, List, Optional


class ErrorResponse(BaseModel):
    success: bool = False
    data: Optional[Any] = None
    error: str
    code: Optional[str] = None
    retriable: Optional[bool] = None
    suggestions: List[str] = []


class SuccessResponse(BaseModel):
    success: bool = True
    data: Any = None
    error: Optional[str] = None
