"""
Render pipeline orchestrator.

`RenderOrchestrator.render` assembles one job's video from its downloaded
assets. `start_render` / `execute_render` wrap it with the state machine so
every attempt ends in a recorded terminal status.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from config import ENABLE_KENBURNS, MIN_SECONDS_PER_IMAGE, PROGRESS, RENDER_INITIAL_PROGRESS
from errors import MissingInputError, MotionSynthesisError, RenderCancelled, RenderError, RenderGateError
from models import JobStatus
from motion import MotionSynthesizer
from progress import FailureRecorder, ProgressReporter
from services import (
    AssetMaterializer,
    Compositor,
    FFmpegRunner,
    SubtitleNormalizer,
    TimingAllocator,
    assert_readable,
    build_static_slideshow,
    scratch_dir_for,
)
from state_machine import RenderOutcome, RenderStateMachine, derive_asset_readiness, truncate_error
from storage import get_storage
from store import JobStore


@dataclass
class SlideshowResult:
    """How the silent slideshow was produced."""

    SUCCESS = "success"    # motion clips
    STATIC = "static"      # motion disabled
    DEGRADED = "degraded"  # motion failed, static fallback used

    status: str
    path: str
    reason: Optional[str] = None


@dataclass
class RenderResult:
    duration_seconds: float
    final_file_path: str
    slideshow: SlideshowResult


class RenderOrchestrator:
    """Runs the render stages for one job, strictly in order."""

    def __init__(
        self,
        store: JobStore,
        runner_factory: Optional[Callable[[FailureRecorder], FFmpegRunner]] = None,
        session=None,
        enable_motion: bool = ENABLE_KENBURNS,
        min_seconds: float = MIN_SECONDS_PER_IMAGE,
        sleep=time.sleep,
    ):
        self.store = store
        self.runner_factory = runner_factory or FFmpegRunner
        self.session = session
        self.enable_motion = enable_motion
        self.min_seconds = min_seconds
        self.sleep = sleep

    def render(self, job_id: str, cancel_check=None) -> RenderResult:
        job = self.store.get(job_id)
        if job is None:
            raise RenderGateError("not_found", f"job {job_id} not found")

        # the stored status is not trusted to mean the assets are there
        readiness = derive_asset_readiness(job)
        if not readiness.images:
            raise MissingInputError("image_urls")
        if not readiness.audio:
            raise MissingInputError("audio_url")
        if not readiness.captions:
            raise MissingInputError("captions_url")

        logging.info(f"🎬 Starting render for job {job_id} ({len(job.image_urls)} scenes)")
        scratch_dir = scratch_dir_for(job_id)
        progress = ProgressReporter(self.store, job_id, start=job.progress or RENDER_INITIAL_PROGRESS)
        runner = self.runner_factory(FailureRecorder(scratch_dir))

        # 1) Download everything into the scratch workspace
        materializer = AssetMaterializer(session=self.session, progress=progress, sleep=self.sleep)
        assets = materializer.materialize(job.image_urls, job.audio_url, job.captions_url, scratch_dir, cancel_check)

        # 2) Pace the images to the narration
        audio_duration = runner.probe_duration(assets.audio)
        manifest_path = os.path.join(scratch_dir, "images.txt")
        TimingAllocator(self.min_seconds).write_manifest(assets.images, audio_duration, manifest_path)
        progress.checkpoint(PROGRESS["manifest_built"], "manifest")

        # 3) Captions → SubRip + burn-in filter
        subtitles = SubtitleNormalizer(runner, progress).normalize(assets.captions, assets.caption_format, cancel_check)

        assert_readable([assets.audio, subtitles.path, manifest_path] + assets.images)

        # 4) Silent slideshow, with motion when enabled
        slideshow = self._build_slideshow(runner, progress, assets.images, audio_duration, scratch_dir, manifest_path, cancel_check)

        # 5) Final mux with burned-in captions
        output_path = os.path.join(scratch_dir, "output.mp4")
        duration = Compositor(runner, progress).compose(slideshow.path, assets.audio, subtitles, output_path, cancel_check)
        return RenderResult(duration_seconds=duration, final_file_path=output_path, slideshow=slideshow)

    def _build_slideshow(self, runner, progress, images, audio_duration, scratch_dir, manifest_path, cancel_check) -> SlideshowResult:
        slideshow_path = os.path.join(scratch_dir, "slideshow.mp4")
        reason = None

        if self.enable_motion:
            motion = MotionSynthesizer(runner, progress, min_seconds=self.min_seconds)
            try:
                motion.synthesize(images, audio_duration, scratch_dir, slideshow_path, cancel_check)
                return SlideshowResult(SlideshowResult.SUCCESS, slideshow_path)
            except MotionSynthesisError as e:
                logging.warning(f"[kenburns] falling back to static images due to error: {e}")
                motion.discard(scratch_dir, slideshow_path)
                reason = str(e)

        logging.info("🎬 Using static images (no motion)...")
        progress.checkpoint(PROGRESS["slideshow_started"], "static-images")
        build_static_slideshow(runner, manifest_path, slideshow_path, cancel_check)
        status = SlideshowResult.DEGRADED if reason else SlideshowResult.STATIC
        return SlideshowResult(status, slideshow_path, reason)


def failure_message(error: BaseException, log_path: Optional[str] = None) -> str:
    """Short, user-presentable error text. Full diagnostics stay in the log file."""
    if isinstance(error, RenderError):
        message = error.user_message
    else:
        message = f"{type(error).__name__}: {error}"
    if log_path and os.path.basename(log_path) not in message:
        message += f" (log: {os.path.basename(log_path)})"
    return truncate_error(message)


def start_render(job_id: str, store: Optional[JobStore] = None) -> Tuple[object, str]:
    """Gate the job and move it to `rendering`. Returns (job, lease owner)."""
    state = RenderStateMachine(store or JobStore())
    job = state.check_gate(job_id)
    return state.begin_render(job)


def execute_render(
    job_id: str,
    owner: str,
    store: Optional[JobStore] = None,
    storage=None,
    orchestrator: Optional[RenderOrchestrator] = None,
) -> RenderOutcome:
    """
    Run the pipeline for a job already moved to `rendering`, upload the result
    and record the outcome. Pipeline failures are recorded, not raised.
    """
    store = store or JobStore()
    state = RenderStateMachine(store)

    job = store.get(job_id)
    if job is None or job.status != JobStatus.RENDERING or job.render_lease_owner != owner:
        logging.warning(f"⚠️ Job {job_id} is not rendering under lease {owner}; skipping")
        return RenderOutcome.failure("render_lease_lost")

    orchestrator = orchestrator or RenderOrchestrator(store)
    storage = storage or get_storage()

    def cancel_check() -> bool:
        return state.is_cancel_requested(job_id)

    try:
        result = orchestrator.render(job_id, cancel_check)
        if cancel_check():
            raise RenderCancelled(job_id)
        final_url = storage.upload(job_id, result.final_file_path)
        ProgressReporter(store, job_id, start=PROGRESS["after_final_encode"]).checkpoint(PROGRESS["uploaded"], "upload")
        outcome = RenderOutcome.success(final_url, result.duration_seconds)
    except RenderCancelled:
        outcome = RenderOutcome.cancelled()
    except Exception as e:
        if cancel_check():
            outcome = RenderOutcome.cancelled()
        else:
            log_path = getattr(e, "log_path", None) or FailureRecorder(scratch_dir_for(job_id)).record_exception(
                e, context=f"Render failed for job {job_id}"
            )
            logging.error(f"❌ Video rendering failed for job {job_id}: {e}")
            outcome = RenderOutcome.failure(failure_message(e, log_path), log_path)

    return state.apply_render_outcome(job_id, outcome)


def render_now(job_id: str, store: Optional[JobStore] = None, storage=None, orchestrator: Optional[RenderOrchestrator] = None) -> RenderOutcome:
    """Gate, start and run a render inside the current request."""
    store = store or JobStore()
    _, owner = start_render(job_id, store)
    return execute_render(job_id, owner, store=store, storage=storage, orchestrator=orchestrator)
