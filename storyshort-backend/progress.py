"""
Progress checkpoints and failure diagnostics for a render attempt.
"""

import json
import logging
import os
import traceback
from datetime import datetime, timezone
from typing import List, Optional

from config import RENDER_INITIAL_PROGRESS


class ProgressReporter:
    """Best-effort progress persistence. Never raises, never goes backwards."""

    def __init__(self, store, job_id: str, start: int = RENDER_INITIAL_PROGRESS):
        self.store = store
        self.job_id = job_id
        self.current = start

    def checkpoint(self, percent: int, stage: str = "") -> None:
        if percent < self.current:
            return
        self.current = percent
        try:
            self.store.safe_update(self.job_id, progress=percent)
            logging.info(f"📊 Job {self.job_id} progress {percent}%{f' ({stage})' if stage else ''}")
        except Exception as e:
            logging.warning(f"[progress] Failed to update job {self.job_id}: {e}")


class FailureRecorder:
    """Writes full diagnostics to timestamped .log files under one directory."""

    def __init__(self, log_dir: str):
        self.log_dir = log_dir

    @staticmethod
    def _timestamp() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")

    def write(self, prefix: str, text: str) -> str:
        os.makedirs(self.log_dir, exist_ok=True)
        path = os.path.join(self.log_dir, f"{prefix}-{self._timestamp()}.log")
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
        return path

    def record_encoder_failure(self, args: List[str], stderr: str, label: str = "") -> Optional[str]:
        text = f"FFmpeg args: {json.dumps(args)}\n"
        if label:
            text += f"Stage: {label}\n"
        text += f"\nStderr:\n{stderr}"
        try:
            return self.write("ffmpeg-error", text)
        except OSError as e:
            logging.warning(f"[FailureRecorder] Failed to write error log: {e}")
            return None

    def record_exception(self, exc: BaseException, context: str = "") -> Optional[str]:
        text = ""
        if context:
            text += f"{context}\n\n"
        text += f"{type(exc).__name__}: {exc}\n\n"
        text += "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        try:
            return self.write("render-error", text)
        except OSError as e:
            logging.warning(f"[FailureRecorder] Failed to write error log: {e}")
            return None
