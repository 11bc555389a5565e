"""
Configuration file for the StoryShort render service.
Contains all global constants, read from the environment where it makes sense.
"""

import os


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


# --- Paths ---
PROJECT_ROOT = os.getenv("STORYSHORT_ROOT", os.getcwd())
MEDIA_DIR = os.getenv("MEDIA_DIR", os.path.join(PROJECT_ROOT, "media"))
RENDERS_DIR = os.getenv("RENDERS_DIR", os.path.join(PROJECT_ROOT, "renders"))

# --- Infrastructure ---
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///" + os.path.join(PROJECT_ROOT, "storyshort.db"))
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")

# --- Storage ---
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://127.0.0.1:8000").rstrip("/")
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local")  # local | http
# Templates receive {job_id}
STORAGE_UPLOAD_URL = os.getenv("STORAGE_UPLOAD_URL", "")
STORAGE_PUBLIC_URL = os.getenv("STORAGE_PUBLIC_URL", "")

# --- Encoder ---
FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "ffmpeg")
FFPROBE_BINARY = os.getenv("FFPROBE_BINARY", "ffprobe")
DEBUG_FFMPEG = _env_bool("DEBUG_FFMPEG")
CANCEL_POLL_SECONDS = float(os.getenv("CANCEL_POLL_SECONDS", "0.5"))

# --- Output video ---
VIDEO_WIDTH = int(os.getenv("VIDEO_WIDTH", "1080"))
VIDEO_HEIGHT = int(os.getenv("VIDEO_HEIGHT", "1920"))
FINAL_VIDEO_OPTIONS = {
    "c:v": "libx264",
    "profile:v": "high",
    "preset": "medium",
    "crf": 23,
    "c:a": "aac",
    "b:a": "192k",
}
STATIC_SLIDESHOW_OPTIONS = {"c:v": "libx264", "preset": "fast", "crf": 23}
MOTION_CLIP_OPTIONS = {"c:v": "libx264", "preset": "fast", "crf": 20}

# --- Ken Burns motion ---
ENABLE_KENBURNS = _env_bool("RENDER_ENABLE_KENBURNS")
KENBURNS_MAX_ZOOM = float(os.getenv("KENBURNS_MAX_ZOOM", "1.12"))
MIN_SECONDS_PER_IMAGE = float(os.getenv("KENBURNS_MIN_SEC_PER_IMAGE", "1.6"))
KENBURNS_FPS = int(os.getenv("KENBURNS_FPS", "30"))
KENBURNS_PAN_AMOUNT = 0.06  # fraction of input width

# --- Subtitles ---
SUBTITLE_FORCE_STYLE = (
    "FontSize=20,"
    "Outline=1,"
    "Shadow=0,"
    "BorderStyle=1,"
    "BackColour=&H00000000,"
    "PrimaryColour=&H00FFFFFF,"
    "Alignment=2,"
    "MarginV=80,"
    "MarginL=20,"
    "MarginR=20,"
    "WrapStyle=2"
)
SUBTITLE_FONTS_DIR = os.getenv("SUBTITLE_FONTS_DIR", "")

# --- Network retries ---
RETRY_MAX_RETRIES = int(os.getenv("RETRY_MAX_RETRIES", "2"))
RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "0.5"))
RETRY_MAX_JITTER = 0.2
DOWNLOAD_TIMEOUT = float(os.getenv("DOWNLOAD_TIMEOUT", "60"))

# --- Job bookkeeping ---
ERROR_MESSAGE_MAX_CHARS = 900
RENDER_INITIAL_PROGRESS = 10
RENDER_LEASE_SECONDS = int(os.getenv("RENDER_LEASE_SECONDS", "1800"))
STALE_RENDER_SWEEP_SECONDS = int(os.getenv("STALE_RENDER_SWEEP_SECONDS", "300"))

# Progress milestones persisted while a render is in flight.
PROGRESS = {
    "start": RENDER_INITIAL_PROGRESS,
    "images_downloaded": 20,
    "audio_downloaded": 30,
    "captions_downloaded": 40,
    "manifest_built": 45,
    "captions_converted": 50,
    "slideshow_started": 65,
    "motion_concat": 70,
    "before_final_encode": 75,
    "after_final_encode": 80,
    "uploaded": 90,
    "completed": 100,
}
