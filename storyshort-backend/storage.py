"""
Where finished videos go once a render succeeds.
"""

import logging
import os
import shutil
import time

import requests

from config import (
    DOWNLOAD_TIMEOUT,
    MEDIA_DIR,
    PUBLIC_BASE_URL,
    STORAGE_BACKEND,
    STORAGE_PUBLIC_URL,
    STORAGE_UPLOAD_URL,
)
from errors import RenderError
from retry import with_retry


class UploadError(RenderError):
    def __init__(self, url: str, status_code: int):
        self.url = url
        self.status_code = status_code
        super().__init__(f"Failed to upload rendered video: {url} ({status_code})")


class LocalStorage:
    """Copies finals under MEDIA_DIR, which main.py serves at /media."""

    def __init__(self, media_dir: str = MEDIA_DIR, base_url: str = PUBLIC_BASE_URL):
        self.media_dir = media_dir
        self.base_url = base_url.rstrip("/")

    def upload(self, job_id: str, file_path: str) -> str:
        finals_dir = os.path.join(self.media_dir, "finals")
        os.makedirs(finals_dir, exist_ok=True)
        dest = os.path.join(finals_dir, f"{job_id}.mp4")
        shutil.copyfile(file_path, dest)
        logging.info(f"📤 Stored final video at {dest}")
        return f"{self.base_url}/media/finals/{job_id}.mp4"


class HttpStorage:
    """PUTs finals to an object store that answers on a per-job URL."""

    def __init__(self, upload_url: str = STORAGE_UPLOAD_URL, public_url: str = STORAGE_PUBLIC_URL, session=None, timeout: float = DOWNLOAD_TIMEOUT, sleep=time.sleep):
        if not upload_url or not public_url:
            raise ValueError("STORAGE_UPLOAD_URL and STORAGE_PUBLIC_URL must be set for http storage")
        self.upload_url = upload_url
        self.public_url = public_url
        self.session = session or requests.Session()
        self.timeout = timeout
        self.sleep = sleep

    def _put(self, url: str, file_path: str) -> None:
        with open(file_path, "rb") as f:
            response = self.session.put(url, data=f, headers={"Content-Type": "video/mp4"}, timeout=self.timeout)
        if response.status_code >= 400:
            raise UploadError(url, response.status_code)

    def upload(self, job_id: str, file_path: str) -> str:
        url = self.upload_url.format(job_id=job_id)
        logging.info("📤 Uploading rendered video...")
        with_retry(lambda: self._put(url, file_path), label=f"upload {job_id}", sleep=self.sleep)
        return self.public_url.format(job_id=job_id)


def get_storage():
    if STORAGE_BACKEND == "http":
        return HttpStorage()
    return LocalStorage()
