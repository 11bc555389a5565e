"""
Ken Burns motion: turns each still into a short pan/zoom clip and joins them
into a silent slideshow.
"""

import glob
import logging
import math
import os
from typing import List, Tuple

import ffmpeg

from config import (
    KENBURNS_FPS,
    KENBURNS_MAX_ZOOM,
    KENBURNS_PAN_AMOUNT,
    MIN_SECONDS_PER_IMAGE,
    MOTION_CLIP_OPTIONS,
    PROGRESS,
    VIDEO_HEIGHT,
    VIDEO_WIDTH,
)
from errors import EncoderError, MotionSynthesisError
from services import FFmpegRunner, concat_quote, per_image_seconds, to_ff_path

ZOOM_IN = "zoom_in"
ZOOM_OUT = "zoom_out"
PAN_LEFT = "pan_left"
PAN_RIGHT = "pan_right"

MOTION_PROFILES = (ZOOM_IN, ZOOM_OUT, PAN_LEFT, PAN_RIGHT)


def motion_profile(index: int) -> str:
    return MOTION_PROFILES[index % len(MOTION_PROFILES)]


def clip_frames(seconds: float, fps: int) -> int:
    return max(1, int(round(seconds * fps)))


def zoompan_expressions(profile: str, frames: int, max_zoom: float, pan_amount: float = KENBURNS_PAN_AMOUNT) -> Tuple[str, str, str]:
    """(zoom, x, y) expressions for ffmpeg's zoompan filter."""
    if profile == ZOOM_OUT:
        z = f"max(1.0, {max_zoom} - (on/{frames})*({max_zoom}-1.0))"
    else:
        z = f"min({max_zoom}, 1.0 + (on/{frames})*({max_zoom}-1.0))"

    if profile == PAN_LEFT:
        x = f"max(0, (iw*{pan_amount})*(1 - on/{frames}))"
    elif profile == PAN_RIGHT:
        x = f"min(iw*{pan_amount}, (iw*{pan_amount})*(on/{frames}))"
    else:
        x = "iw/2 - (iw/zoom/2)"
    y = "ih/2 - (ih/zoom/2)"
    return z, x, y


def build_motion_filter(profile: str, seconds: float, width: int, height: int, fps: int, max_zoom: float) -> str:
    frames = clip_frames(seconds, fps)
    z, x, y = zoompan_expressions(profile, frames, max_zoom)
    return ",".join([
        # upscale first so the move never exposes borders
        f"scale={math.ceil(width * 1.25)}:-1",
        f"scale='if(gte(a,{width}/{height}),-2,{width})':'if(gte(a,{width}/{height}),{height},-2)'",
        f"zoompan=z='{z}':x='{x}':y='{y}':d={frames}:s={width}x{height}",
        f"fps={fps}",
    ])


class MotionSynthesizer:
    """Renders per-image motion clips and concatenates them without re-encoding."""

    def __init__(
        self,
        runner: FFmpegRunner,
        progress=None,
        width: int = VIDEO_WIDTH,
        height: int = VIDEO_HEIGHT,
        fps: int = KENBURNS_FPS,
        max_zoom: float = KENBURNS_MAX_ZOOM,
        min_seconds: float = MIN_SECONDS_PER_IMAGE,
    ):
        self.runner = runner
        self.progress = progress
        self.width = width
        self.height = height
        self.fps = fps
        self.max_zoom = max_zoom
        self.min_seconds = min_seconds

    def clip_stream(self, image_path: str, clip_path: str, seconds: float, index: int):
        vf = build_motion_filter(motion_profile(index), seconds, self.width, self.height, self.fps, self.max_zoom)
        return (
            ffmpeg
            .input(to_ff_path(image_path), loop=1)
            .output(
                to_ff_path(clip_path),
                t=f"{seconds:.3f}",
                r=self.fps,
                vf=vf,
                an=None,
                movflags="+faststart",
                **MOTION_CLIP_OPTIONS,
            )
            .overwrite_output()
        )

    def concat_stream(self, list_path: str, output_path: str):
        return (
            ffmpeg
            .input(to_ff_path(list_path), f="concat", safe=0)
            .output(to_ff_path(output_path), c="copy")
            .overwrite_output()
        )

    def synthesize(self, image_paths: List[str], audio_duration: float, scratch_dir: str, output_path: str, cancel_check=None) -> str:
        """Build `output_path` from motion clips. Any encoder failure raises MotionSynthesisError."""
        seconds = per_image_seconds(audio_duration, len(image_paths), self.min_seconds)
        if self.progress is not None:
            self.progress.checkpoint(PROGRESS["slideshow_started"], "kenburns")

        try:
            clip_paths = []
            for i, image in enumerate(image_paths):
                clip = os.path.join(scratch_dir, f"kb-{i + 1:02d}.mp4")
                logging.info(f"[kenburns] Rendering scene {i + 1}/{len(image_paths)} with {motion_profile(i)} motion...")
                self.runner.run(self.clip_stream(image, clip, seconds, i), f"kenburns-{i + 1:02d}", cancel_check)
                clip_paths.append(clip)

            if self.progress is not None:
                self.progress.checkpoint(PROGRESS["motion_concat"], "kenburns-concat")
            list_path = os.path.join(scratch_dir, "kb-list.txt")
            with open(list_path, "w", encoding="utf-8", newline="\n") as f:
                f.write("\n".join(f"file {concat_quote(p)}" for p in clip_paths) + "\n")
            self.runner.run(self.concat_stream(list_path, output_path), "kenburns-concat", cancel_check)
        except (EncoderError, OSError) as e:
            raise MotionSynthesisError(str(e)) from e

        if not os.path.isfile(output_path):
            raise MotionSynthesisError(f"missing_input:{os.path.basename(output_path)}")
        logging.info("✅ Ken Burns motion clips rendered successfully")
        return output_path

    @staticmethod
    def discard(scratch_dir: str, output_path: str) -> None:
        """Remove every artifact a (partial) motion run left behind."""
        leftovers = glob.glob(os.path.join(scratch_dir, "kb-*.mp4")) + [
            os.path.join(scratch_dir, "kb-list.txt"),
            output_path,
        ]
        for path in leftovers:
            try:
                if os.path.exists(path):
                    os.remove(path)
            except OSError as e:
                logging.warning(f"Could not delete motion artifact {path}: {e}")
