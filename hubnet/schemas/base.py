# hubnet/schemas/base.py
from typing import Any, Optional

from pydantic import BaseModel


class BaseResponse(BaseModel):
    """Generic acknowledgement"""
    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Body of every error returned by the admin API"""
    error: str
    error_code: str
