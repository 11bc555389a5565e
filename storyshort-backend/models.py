# models.py

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo on the way in anyway."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus:
    """Closed set of job statuses."""

    PENDING = "pending"
    SCRIPT_GENERATED = "script_generated"
    SCRIPT_APPROVED = "script_approved"
    STORYBOARD_GENERATED = "storyboard_generated"
    ASSETS_GENERATING = "assets_generating"
    ASSETS_GENERATED = "assets_generated"
    RENDERING = "rendering"
    COMPLETED = "completed"
    SCRIPT_FAILED = "script_failed"
    STORYBOARD_FAILED = "storyboard_failed"
    ASSETS_FAILED = "assets_failed"
    RENDER_FAILED = "render_failed"
    CANCELLED = "cancelled"

    ALL = (
        PENDING, SCRIPT_GENERATED, SCRIPT_APPROVED, STORYBOARD_GENERATED,
        ASSETS_GENERATING, ASSETS_GENERATED, RENDERING, COMPLETED,
        SCRIPT_FAILED, STORYBOARD_FAILED, ASSETS_FAILED, RENDER_FAILED, CANCELLED,
    )


class Job(Base):
    """Job model for tracking one video generation request."""

    __tablename__ = "jobs"

    id = Column(String, primary_key=True, index=True)
    status = Column(String, default=JobStatus.PENDING, nullable=False)
    input_text = Column(Text, nullable=True)
    image_urls = Column(JSON, default=list)  # ordered, index = scene number - 1
    audio_url = Column(String, nullable=True)
    captions_url = Column(String, nullable=True)
    final_video_url = Column(String, nullable=True)
    total_duration = Column(Integer, nullable=True)
    progress = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    render_started_at = Column(DateTime, nullable=True)
    render_done_at = Column(DateTime, nullable=True)
    render_lease_owner = Column(String, nullable=True)
    render_lease_expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
