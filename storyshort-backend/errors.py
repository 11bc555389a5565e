"""
Exception types raised by the render pipeline.
Routers turn these into HTTPException responses.
"""

import json
import os
from typing import List, Optional


class RenderError(Exception):
    """Base class for fatal render failures."""

    @property
    def user_message(self) -> str:
        return str(self)


class DownloadError(RenderError):
    """An asset URL answered with a non-success status."""

    def __init__(self, url: str, status_code: int):
        self.url = url
        self.status_code = status_code
        super().__init__(f"download_failed: {url} ({status_code})")


class MissingInputError(RenderError):
    """A file the pipeline needs is absent or unreadable."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"missing_input:{name}")


class EncoderError(RenderError):
    """The external encoder (or inspector) failed."""

    def __init__(self, returncode: Optional[int], args: List[str], label: str = "", log_path: str = "", detail: str = ""):
        self.returncode = returncode
        self.args_list = list(args)
        self.label = label
        self.log_path = log_path
        self.detail = detail
        super().__init__(self._format())

    def _format(self) -> str:
        if self.returncode is None:
            msg = "ffmpeg failed"
        else:
            msg = f"ffmpeg exited with code {self.returncode}"
        if self.label:
            msg += f" ({self.label})"
        if self.detail:
            msg += f": {self.detail}"
        msg += f" | args: {json.dumps(self.args_list)}"
        if self.log_path:
            msg += f" | error log: {self.log_path}"
        return msg

    @property
    def user_message(self) -> str:
        msg = f"Video encoding failed ({self.label or 'ffmpeg'}"
        msg += f", exit code {self.returncode})" if self.returncode is not None else ")"
        if self.log_path:
            msg += f"; see {os.path.basename(self.log_path)}"
        return msg


class MotionSynthesisError(RenderError):
    """Ken Burns clip rendering failed; callers fall back to static images."""


class RenderCancelled(RenderError):
    """The job was cancelled while its render was in flight."""

    def __init__(self, job_id: str = ""):
        self.job_id = job_id
        super().__init__("cancelled_by_user")


class RenderGateError(Exception):
    """A render request was refused before anything started."""

    def __init__(self, code: str, message: str = ""):
        self.code = code
        super().__init__(message or code)


class InvalidTransitionError(Exception):
    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(f"invalid status transition: {source} -> {target}")
