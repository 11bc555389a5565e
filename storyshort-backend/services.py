"""
Service classes for the StoryShort render pipeline.
Contains the encoder wrapper and the asset, timing, subtitle and compositing stages.
"""

import logging
import math
import os
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, List, Optional
from urllib.parse import urlparse

import ffmpeg
import requests

from config import (
    CANCEL_POLL_SECONDS,
    DEBUG_FFMPEG,
    DOWNLOAD_TIMEOUT,
    FFMPEG_BINARY,
    FFPROBE_BINARY,
    FINAL_VIDEO_OPTIONS,
    MIN_SECONDS_PER_IMAGE,
    PROGRESS,
    RENDERS_DIR,
    STATIC_SLIDESHOW_OPTIONS,
    SUBTITLE_FONTS_DIR,
    SUBTITLE_FORCE_STYLE,
)
from errors import DownloadError, EncoderError, MissingInputError, RenderCancelled
from progress import FailureRecorder
from retry import with_retry

CancelCheck = Optional[Callable[[], bool]]


# --------------------------------------------------------------------------
# --- Paths ---
# --------------------------------------------------------------------------

def scratch_dir_for(job_id: str) -> str:
    """Per-job scratch workspace. Job ids never contain path separators."""
    if not job_id or "/" in job_id or "\\" in job_id or job_id in (".", ".."):
        raise ValueError(f"invalid job id: {job_id!r}")
    return os.path.join(RENDERS_DIR, job_id, "temp")


def to_ff_path(path: str) -> str:
    return str(path).replace("\\", "/")


def to_filter_path(path: str) -> str:
    """Escape a path for use inside a filter-graph argument."""
    return to_ff_path(path).replace(":", "\\:").replace("'", "\\'")


def _check_cancel(cancel_check: CancelCheck) -> None:
    if cancel_check is not None and cancel_check():
        raise RenderCancelled()


def _checkpoint(progress, key: str) -> None:
    if progress is not None:
        progress.checkpoint(PROGRESS[key], key)


# --------------------------------------------------------------------------
# --- FFmpeg Runner ---
# --------------------------------------------------------------------------

class FFmpegRunner:
    """Runs ffmpeg-python streams and ffprobe, capturing diagnostics on failure."""

    def __init__(
        self,
        recorder: FailureRecorder,
        cmd: str = FFMPEG_BINARY,
        probe_cmd: str = FFPROBE_BINARY,
        poll_seconds: float = CANCEL_POLL_SECONDS,
    ):
        self.recorder = recorder
        self.cmd = cmd
        self.probe_cmd = probe_cmd
        self.poll_seconds = poll_seconds

    def compile(self, stream) -> List[str]:
        return ffmpeg.compile(stream, cmd=self.cmd)

    def run(self, stream, label: str, cancel_check: CancelCheck = None) -> None:
        args = self.compile(stream)
        logging.info(f"🔧 FFmpeg ({label}): {' '.join(args)}")

        try:
            process = ffmpeg.run_async(stream, cmd=self.cmd, pipe_stdout=True, pipe_stderr=True)
        except OSError as e:
            log_path = self.recorder.record_encoder_failure(args, str(e), label)
            raise EncoderError(None, args, label, log_path or "", detail=str(e)) from e

        stderr = self._wait(process, cancel_check)
        if process.returncode != 0:
            log_path = self.recorder.record_encoder_failure(args, stderr, label)
            last_line = stderr.strip().splitlines()[-1] if stderr.strip() else "no stderr"
            logging.error(f"❌ FFmpeg ({label}) exited with code {process.returncode}: {last_line}")
            raise EncoderError(process.returncode, args, label, log_path or "")

    def _wait(self, process, cancel_check: CancelCheck) -> str:
        while True:
            try:
                _, err = process.communicate(timeout=self.poll_seconds)
                return (err or b"").decode("utf-8", errors="replace")
            except subprocess.TimeoutExpired:
                if cancel_check is not None and cancel_check():
                    logging.warning("🛑 Cancellation requested; killing ffmpeg")
                    process.kill()
                    process.communicate()
                    raise RenderCancelled()

    def probe_duration(self, path: str) -> float:
        """Container duration in seconds, 0.0 when ffprobe reports nothing usable."""
        try:
            info = ffmpeg.probe(path, cmd=self.probe_cmd)
        except (ffmpeg.Error, OSError) as e:
            stderr = getattr(e, "stderr", None)
            stderr = stderr.decode("utf-8", errors="replace") if isinstance(stderr, bytes) else str(e)
            args = [self.probe_cmd, "-show_format", "-show_streams", "-of", "json", path]
            log_path = self.recorder.record_encoder_failure(args, stderr, "ffprobe")
            raise EncoderError(None, args, "ffprobe", log_path or "") from e

        try:
            duration = float(info.get("format", {}).get("duration", "nan"))
        except (TypeError, ValueError):
            duration = float("nan")
        if not math.isfinite(duration) or duration < 0:
            logging.warning(f"⚠️ ffprobe returned no usable duration for {path}")
            return 0.0
        return duration


# --------------------------------------------------------------------------
# --- Asset Materializer ---
# --------------------------------------------------------------------------

VTT = "vtt"
SRT = "srt"


def detect_caption_format(url: str) -> str:
    return VTT if urlparse(url).path.lower().endswith(".vtt") else SRT


def image_extension(url: str) -> str:
    return ".png" if ".png" in url.lower() else ".jpg"


@dataclass
class MaterializedAssets:
    images: List[str]
    audio: str
    captions: str
    caption_format: str


class AssetMaterializer:
    """Downloads a job's remote assets into its scratch workspace."""

    def __init__(self, session=None, progress=None, timeout: float = DOWNLOAD_TIMEOUT, sleep=time.sleep):
        self.session = session or requests.Session()
        self.progress = progress
        self.timeout = timeout
        self.sleep = sleep

    def _download_once(self, url: str, dest: str) -> None:
        with self.session.get(url, stream=True, timeout=self.timeout) as response:
            if response.status_code >= 400:
                raise DownloadError(url, response.status_code)
            with open(dest, "wb") as f:
                for chunk in response.iter_content(chunk_size=64 * 1024):
                    if chunk:
                        f.write(chunk)

    def download(self, url: str, dest: str) -> str:
        with_retry(
            lambda: self._download_once(url, dest),
            label=f"download {os.path.basename(dest)}",
            sleep=self.sleep,
        )
        return dest

    def materialize(
        self,
        image_urls: List[str],
        audio_url: str,
        captions_url: str,
        scratch_dir: str,
        cancel_check: CancelCheck = None,
    ) -> MaterializedAssets:
        os.makedirs(scratch_dir, exist_ok=True)

        logging.info(f"📥 Downloading {len(image_urls)} images...")
        images = []
        for i, url in enumerate(image_urls):
            _check_cancel(cancel_check)
            dest = os.path.join(scratch_dir, f"scene-{i + 1:02d}{image_extension(url)}")
            images.append(self.download(url, dest))
        _checkpoint(self.progress, "images_downloaded")

        logging.info("📥 Downloading audio...")
        _check_cancel(cancel_check)
        audio = self.download(audio_url, os.path.join(scratch_dir, "audio.mp3"))
        _checkpoint(self.progress, "audio_downloaded")

        logging.info("📥 Downloading captions...")
        _check_cancel(cancel_check)
        caption_format = detect_caption_format(captions_url)
        captions = self.download(captions_url, os.path.join(scratch_dir, f"captions.{caption_format}"))
        _checkpoint(self.progress, "captions_downloaded")

        assert_readable(images + [audio, captions])
        return MaterializedAssets(images=images, audio=audio, captions=captions, caption_format=caption_format)


def assert_readable(paths: List[str]) -> None:
    for path in paths:
        if not os.path.isfile(path) or not os.access(path, os.R_OK):
            raise MissingInputError(os.path.basename(path))


# --------------------------------------------------------------------------
# --- Timing Allocator ---
# --------------------------------------------------------------------------

def per_image_seconds(audio_duration: float, image_count: int, min_seconds: float = MIN_SECONDS_PER_IMAGE) -> float:
    if image_count <= 0:
        raise ValueError("at least one image is required")
    if not audio_duration or not math.isfinite(audio_duration) or audio_duration < 0:
        audio_duration = 0.0
    return max(min_seconds, audio_duration / image_count)


def format_manifest_duration(seconds: float) -> str:
    """Milliseconds, rounded up so the schedule never falls short of the audio."""
    return f"{math.ceil(round(seconds * 1000, 6)) / 1000:.3f}"


def concat_quote(path: str) -> str:
    return "'" + to_ff_path(os.path.abspath(path)).replace("'", "'\\''") + "'"


class TimingAllocator:
    """Builds the ffconcat manifest that paces the still images to the narration."""

    def __init__(self, min_seconds: float = MIN_SECONDS_PER_IMAGE):
        self.min_seconds = min_seconds

    def per_image_seconds(self, audio_duration: float, image_count: int) -> float:
        return per_image_seconds(audio_duration, image_count, self.min_seconds)

    def build_manifest_lines(self, image_paths: List[str], per_image: float) -> List[str]:
        duration = format_manifest_duration(per_image)
        lines = ["ffconcat version 1.0"]
        for path in image_paths:
            lines.append(f"file {concat_quote(path)}")
            lines.append(f"duration {duration}")
        # The concat demuxer ignores the last duration unless the last file is repeated
        lines.append(f"file {concat_quote(image_paths[-1])}")
        return lines

    def write_manifest(self, image_paths: List[str], audio_duration: float, manifest_path: str) -> float:
        per_image = self.per_image_seconds(audio_duration, len(image_paths))
        logging.info(f"[render] audio = {audio_duration:.2f}s, perImage = {per_image:.3f}s ({len(image_paths)} images)")

        content = "\n".join(self.build_manifest_lines(image_paths, per_image))
        content = content.replace("\r\n", "\n").strip() + "\n"
        with open(manifest_path, "w", encoding="utf-8", newline="\n") as f:
            f.write(content)
        return per_image


def build_static_slideshow(runner: FFmpegRunner, manifest_path: str, output_path: str, cancel_check: CancelCheck = None) -> str:
    stream = (
        ffmpeg
        .input(to_ff_path(manifest_path), f="concat", safe=0)
        .output(to_ff_path(output_path), **STATIC_SLIDESHOW_OPTIONS)
        .overwrite_output()
    )
    runner.run(stream, "static-images", cancel_check)
    return output_path


# --------------------------------------------------------------------------
# --- Subtitle Normalizer ---
# --------------------------------------------------------------------------

def build_subtitles_filter(srt_path: str, style: str = SUBTITLE_FORCE_STYLE, fonts_dir: str = SUBTITLE_FONTS_DIR) -> str:
    vf = f"subtitles='{to_filter_path(os.path.abspath(srt_path))}'"
    if fonts_dir:
        vf += f":fontsdir='{to_filter_path(fonts_dir)}'"
    vf += f":force_style='{style}'"
    return vf


def looks_like_srt(text: str) -> bool:
    return "-->" in text and not text.lstrip("\ufeff").startswith("WEBVTT")


@dataclass
class PreparedSubtitles:
    path: str
    filter: str


class SubtitleNormalizer:
    """Makes sure the burn-in filter gets a SubRip file."""

    def __init__(self, runner: FFmpegRunner, progress=None):
        self.runner = runner
        self.progress = progress

    def convert_vtt(self, vtt_path: str, cancel_check: CancelCheck = None) -> str:
        srt_path = os.path.splitext(vtt_path)[0] + ".srt"
        logging.info("🔄 Converting VTT → SRT...")
        stream = ffmpeg.input(to_ff_path(vtt_path)).output(to_ff_path(srt_path)).overwrite_output()
        self.runner.run(stream, "vtt-to-srt", cancel_check)

        assert_readable([srt_path])
        with open(srt_path, "r", encoding="utf-8", errors="replace") as f:
            if not looks_like_srt(f.read()):
                raise MissingInputError(os.path.basename(srt_path))
        return srt_path

    def normalize(self, caption_path: str, caption_format: str, cancel_check: CancelCheck = None) -> PreparedSubtitles:
        if caption_format == VTT:
            srt_path = self.convert_vtt(caption_path, cancel_check)
        else:
            srt_path = caption_path
        _checkpoint(self.progress, "captions_converted")
        return PreparedSubtitles(path=srt_path, filter=build_subtitles_filter(srt_path))


# --------------------------------------------------------------------------
# --- Compositor ---
# --------------------------------------------------------------------------

class Compositor:
    """Muxes slideshow, narration and burned-in captions into the final MP4."""

    def __init__(self, runner: FFmpegRunner, progress=None, debug: bool = DEBUG_FFMPEG):
        self.runner = runner
        self.progress = progress
        self.debug = debug

    def build_stream(self, slideshow_path: str, audio_path: str, subtitles: PreparedSubtitles, output_path: str):
        video = ffmpeg.input(to_ff_path(slideshow_path)).video
        audio = ffmpeg.input(to_ff_path(audio_path)).audio
        global_args = ["-nostdin"]
        if self.debug:
            global_args.append("-report")
        return (
            ffmpeg
            .output(
                video,
                audio,
                to_ff_path(output_path),
                vf=subtitles.filter,
                shortest=None,
                movflags="+faststart",
                **FINAL_VIDEO_OPTIONS,
            )
            .global_args(*global_args)
            .overwrite_output()
        )

    def compose(
        self,
        slideshow_path: str,
        audio_path: str,
        subtitles: PreparedSubtitles,
        output_path: str,
        cancel_check: CancelCheck = None,
    ) -> float:
        _checkpoint(self.progress, "before_final_encode")
        logging.info(f"🎬 Composing final video → {output_path}")
        logging.info(f"🔧 Video filter string: {subtitles.filter}")

        stream = self.build_stream(slideshow_path, audio_path, subtitles, output_path)
        self.runner.run(stream, "final-render", cancel_check)

        assert_readable([output_path])
        duration = self.runner.probe_duration(output_path)
        logging.info(f"✅ Video rendered successfully: {duration:.2f}s")
        _checkpoint(self.progress, "after_final_encode")
        return duration


def cleanup_scratch_dir(job_id: str) -> dict:
    """Delete a job's intermediate files, keeping its .log diagnostics."""
    scratch_dir = scratch_dir_for(job_id)
    if not os.path.isdir(scratch_dir):
        return {"cleaned": False, "reason": "directory_not_found"}

    names = os.listdir(scratch_dir)
    kept_logs = [n for n in names if n.endswith(".log")]
    removed = 0
    for name in names:
        path = os.path.join(scratch_dir, name)
        if name.endswith(".log") or not os.path.isfile(path):
            continue
        try:
            os.remove(path)
            removed += 1
        except OSError as e:
            logging.warning(f"[cleanup] Failed to remove {name}: {e}")

    logging.info(f"[cleanup] Cleaned {removed} files from {scratch_dir}, kept {len(kept_logs)} log files")
    return {"cleaned": True, "removed_files": removed, "kept_logs": len(kept_logs)}
