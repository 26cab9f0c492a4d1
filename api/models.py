"""
API response models for WebAuth JSON endpoints.

The HTML account flows never return JSON; these models cover the health
probe and the error envelope used for anything under /api/.
"""

from typing import Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """status is "healthy" when every component reports "ok", else "degraded"."""

    status: str
    version: str
    components: dict[str, str]


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope: {"error": {"code", "message", "detail"}}."""

    error: ErrorDetail
