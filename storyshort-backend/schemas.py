"""
Pydantic models for data validation in the StoryShort render service.
"""

from datetime import datetime
from pydantic import BaseModel
from typing import List, Optional


class RenderRequest(BaseModel):
    """Request body naming the job to finalize or render."""
    id: str


class FinalizeResponse(BaseModel):
    """Response when a render has been handed to the worker."""
    success: bool
    message: str
    status: str  # "rendering"


class RenderResponse(BaseModel):
    """Response of a synchronous render."""
    ok: bool
    status: str  # "completed"
    final_video_url: Optional[str] = None
    total_duration: Optional[int] = None


class AssetReadinessResponse(BaseModel):
    images: bool
    audio: bool
    captions: bool


class StatusResponse(BaseModel):
    """Response for polling a job's render status."""
    id: str
    status: str
    progress: int
    ready: AssetReadinessResponse
    can_finalize: bool
    can_view: bool
    image_urls: List[str] = []
    final_video_url: Optional[str] = None
    total_duration: Optional[int] = None
    error_message: Optional[str] = None
    render_started_at: Optional[datetime] = None
    render_done_at: Optional[datetime] = None


class CancelResponse(BaseModel):
    ok: bool
    message: str
    status: str


class CleanupResponse(BaseModel):
    cleaned: bool
    removed_files: int = 0
    kept_logs: int = 0
    reason: Optional[str] = None
