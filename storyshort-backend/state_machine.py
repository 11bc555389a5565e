"""
Job status state machine.

Decides whether a job may render and what a render attempt leaves behind.
All status writes made by the render core go through `RenderStateMachine`.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Optional, Tuple

from config import ERROR_MESSAGE_MAX_CHARS, RENDER_INITIAL_PROGRESS, RENDER_LEASE_SECONDS
from errors import InvalidTransitionError, RenderGateError
from models import Job, JobStatus, utcnow

S = JobStatus

_PRE_RENDER = (
    S.PENDING, S.SCRIPT_GENERATED, S.SCRIPT_APPROVED,
    S.STORYBOARD_GENERATED, S.ASSETS_GENERATING, S.ASSETS_GENERATED,
)

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    S.PENDING: frozenset({S.SCRIPT_GENERATED, S.SCRIPT_FAILED}),
    S.SCRIPT_GENERATED: frozenset({S.SCRIPT_APPROVED, S.SCRIPT_FAILED}),
    S.SCRIPT_APPROVED: frozenset({S.STORYBOARD_GENERATED, S.STORYBOARD_FAILED}),
    S.STORYBOARD_GENERATED: frozenset({S.ASSETS_GENERATING, S.STORYBOARD_FAILED}),
    S.ASSETS_GENERATING: frozenset({S.ASSETS_GENERATED}),
    S.ASSETS_GENERATED: frozenset({S.RENDERING, S.ASSETS_GENERATING}),
    S.RENDERING: frozenset({S.COMPLETED, S.RENDER_FAILED, S.ASSETS_GENERATED, S.CANCELLED}),
}
# assets_failed is reachable from every pre-render state
for _status in _PRE_RENDER:
    TRANSITIONS[_status] = TRANSITIONS[_status] | {S.ASSETS_FAILED}

TERMINAL_STATES = frozenset({
    S.COMPLETED, S.RENDER_FAILED, S.SCRIPT_FAILED,
    S.STORYBOARD_FAILED, S.ASSETS_FAILED, S.CANCELLED,
})


def can_transition(source: str, target: str) -> bool:
    return target in TRANSITIONS.get(source, frozenset())


def check_transition(source: str, target: str) -> None:
    if not can_transition(source, target):
        raise InvalidTransitionError(source, target)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


@dataclass(frozen=True)
class AssetReadiness:
    images: bool
    audio: bool
    captions: bool

    @property
    def all_ready(self) -> bool:
        return self.images and self.audio and self.captions


def derive_asset_readiness(job: Job) -> AssetReadiness:
    """What the row actually holds, regardless of its status."""
    image_urls = job.image_urls if isinstance(job.image_urls, list) else []
    return AssetReadiness(
        images=len(image_urls) > 0,
        audio=bool(job.audio_url),
        captions=bool(job.captions_url),
    )


def is_render_eligible(job: Job) -> bool:
    return job.status == S.ASSETS_GENERATED and derive_asset_readiness(job).all_ready


def reconcile_status(job: Job) -> Optional[str]:
    """Return the corrected status when the stored one contradicts the assets, else None."""
    ready = derive_asset_readiness(job).all_ready
    if job.status == S.ASSETS_GENERATING and ready:
        return S.ASSETS_GENERATED
    if job.status == S.ASSETS_GENERATED and not ready:
        return S.ASSETS_GENERATING
    return None


def truncate_error(message: Optional[str], limit: int = ERROR_MESSAGE_MAX_CHARS) -> str:
    message = (message or "").strip() or "render_failed"
    return message[:limit]


def round_duration(seconds: float) -> int:
    """Whole seconds, half rounds up, never below 1."""
    if not seconds or not math.isfinite(seconds):
        return 1
    return max(1, int(math.floor(seconds + 0.5)))


@dataclass(frozen=True)
class RenderOutcome:
    """Tagged result of one render attempt."""

    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"

    kind: str
    final_video_url: Optional[str] = None
    duration_seconds: Optional[float] = None
    error_message: Optional[str] = None
    log_path: Optional[str] = None

    @classmethod
    def success(cls, final_video_url: str, duration_seconds: float) -> "RenderOutcome":
        return cls(cls.SUCCESS, final_video_url=final_video_url, duration_seconds=duration_seconds)

    @classmethod
    def failure(cls, error_message: str, log_path: Optional[str] = None) -> "RenderOutcome":
        return cls(cls.FAILURE, error_message=error_message, log_path=log_path)

    @classmethod
    def cancelled(cls) -> "RenderOutcome":
        return cls(cls.CANCELLED, error_message="cancelled_by_user")

    @property
    def ok(self) -> bool:
        return self.kind == self.SUCCESS


def begin_render_patch(now: datetime, owner: str, lease_seconds: int = RENDER_LEASE_SECONDS) -> dict:
    return {
        "status": S.RENDERING,
        "render_started_at": now,
        "render_done_at": None,
        "error_message": None,
        "final_video_url": None,
        "progress": RENDER_INITIAL_PROGRESS,
        "render_lease_owner": owner,
        "render_lease_expires_at": now + timedelta(seconds=lease_seconds),
    }


def render_outcome_patch(outcome: RenderOutcome, now: datetime) -> dict:
    """Fields to persist for an outcome. Progress is left alone on failure."""
    patch = {
        "render_done_at": now,
        "render_lease_owner": None,
        "render_lease_expires_at": None,
    }
    if outcome.kind == RenderOutcome.SUCCESS:
        patch.update(
            status=S.COMPLETED,
            final_video_url=outcome.final_video_url,
            total_duration=round_duration(outcome.duration_seconds or 0),
            progress=100,
            error_message=None,
        )
    elif outcome.kind == RenderOutcome.CANCELLED:
        patch.update(status=S.CANCELLED, final_video_url=None, error_message=outcome.error_message)
    else:
        patch.update(
            status=S.RENDER_FAILED,
            final_video_url=None,
            error_message=truncate_error(outcome.error_message),
        )
    return patch


class RenderStateMachine:
    """Named mutations over a `JobStore` for the render part of the lifecycle."""

    def __init__(self, store):
        self.store = store

    def check_gate(self, job_id: str) -> Job:
        """Return the job if it may render now, correcting drifted statuses on the way."""
        job = self.store.get(job_id)
        if job is None:
            raise RenderGateError("not_found", f"job {job_id} not found")

        corrected = reconcile_status(job)
        if corrected:
            logging.warning(
                f"⚠️ Job {job_id} status '{job.status}' contradicts its assets; correcting to '{corrected}'"
            )
            self.store.safe_update(job_id, status=corrected)
            job.status = corrected

        if job.status == S.RENDERING:
            raise RenderGateError("already_rendering", f"job {job_id} is already rendering")
        if not is_render_eligible(job):
            raise RenderGateError("assets_not_ready", f"job {job_id} is not ready to render")
        return job

    def begin_render(self, job: Job, owner: Optional[str] = None) -> Tuple[Job, str]:
        check_transition(job.status, S.RENDERING)
        owner = owner or uuid.uuid4().hex
        now = utcnow()
        if not self.store.try_begin_render(job.id, begin_render_patch(now, owner), now):
            raise RenderGateError("already_rendering", f"job {job.id} render lease is held elsewhere")
        logging.info(f"🎬 Job {job.id} moved to rendering (lease {owner})")
        return self.store.get(job.id), owner

    def apply_render_outcome(self, job_id: str, outcome: RenderOutcome) -> RenderOutcome:
        """Persist an outcome and return the one actually recorded."""
        job = self.store.get(job_id)
        if job is not None and job.status == S.CANCELLED and outcome.kind != RenderOutcome.CANCELLED:
            # a cancel that landed after the last check wins over the late result
            logging.warning(f"🛑 Job {job_id} was cancelled before its {outcome.kind} could be recorded")
            outcome = RenderOutcome.cancelled()
        target = render_outcome_patch(outcome, utcnow())
        if job is not None and job.status != target["status"]:
            check_transition(job.status, target["status"])
        self.store.safe_update(job_id, **target)
        if outcome.ok:
            logging.info(f"✅ Job {job_id} completed: {outcome.final_video_url}")
        elif outcome.kind == RenderOutcome.CANCELLED:
            logging.info(f"🛑 Job {job_id} cancelled")
        else:
            logging.error(f"❌ Job {job_id} render failed: {target['error_message']}")
        return outcome

    def revert_render_start(self, job_id: str, reason: str) -> None:
        """The render never got going; hand the job back to `assets_generated`."""
        check_transition(S.RENDERING, S.ASSETS_GENERATED)
        logging.warning(f"↩️ Job {job_id} render could not start ({reason}); reverting to assets_generated")
        self.store.safe_update(
            job_id,
            status=S.ASSETS_GENERATED,
            render_lease_owner=None,
            render_lease_expires_at=None,
        )

    def cancel(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise RenderGateError("not_found", f"job {job_id} not found")
        if job.status != S.RENDERING:
            raise RenderGateError("cannot_cancel", f"Cannot cancel job in status: {job.status}")
        self.store.safe_update(
            job_id,
            status=S.CANCELLED,
            error_message="cancelled_by_user",
            render_done_at=utcnow(),
            render_lease_owner=None,
            render_lease_expires_at=None,
        )
        job.status = S.CANCELLED
        return job

    def is_cancel_requested(self, job_id: str) -> bool:
        job = self.store.get(job_id)
        return job is not None and job.status == S.CANCELLED

    def expire_stale_renders(self, now: Optional[datetime] = None) -> int:
        """Fail `rendering` jobs whose lease ran out. Returns how many were failed."""
        now = now or utcnow()
        expired = self.store.list_expired_leases(now)
        for job in expired:
            logging.warning(f"⏰ Job {job.id} render lease expired at {job.render_lease_expires_at}")
            self.store.safe_update(job.id, **render_outcome_patch(RenderOutcome.failure("render_lease_expired"), now))
        return len(expired)
