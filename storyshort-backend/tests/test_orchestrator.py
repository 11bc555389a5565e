# storyshort-backend/tests/test_orchestrator.py

import glob
import os

import pytest

from errors import MissingInputError
from fakes import AUDIO_URL, FakeRunner, FakeSession
from models import JobStatus
from orchestrator import RenderOrchestrator, SlideshowResult, execute_render, render_now, start_render
from services import scratch_dir_for
from state_machine import RenderStateMachine
from storage import LocalStorage


def _orchestrator(store, runner, session=None, enable_motion=False):
    return RenderOrchestrator(
        store,
        runner_factory=lambda recorder: _bind(runner, recorder),
        session=session or FakeSession(),
        enable_motion=enable_motion,
        min_seconds=1.6,
        sleep=lambda _: None,
    )


def _bind(runner, recorder):
    runner.recorder = recorder
    return runner


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(media_dir=str(tmp_path / "media"), base_url="http://render.test")


def test_render_completes_job(store, make_job, storage):
    """
    Three images with 9 seconds of narration: the job completes with a
    9 second video and a public URL.
    """
    job = make_job()
    runner = FakeRunner(audio_duration=9.0, output_duration=9.02)

    outcome = render_now(job.id, store=store, storage=storage, orchestrator=_orchestrator(store, runner))

    assert outcome.ok
    done = store.get(job.id)
    assert done.status == JobStatus.COMPLETED
    assert done.total_duration == 9
    assert done.progress == 100
    assert done.final_video_url == f"http://render.test/media/finals/{job.id}.mp4"
    assert done.render_done_at is not None
    assert os.path.isfile(os.path.join(storage.media_dir, "finals", f"{job.id}.mp4"))

    scratch = scratch_dir_for(job.id)
    with open(os.path.join(scratch, "images.txt"), encoding="utf-8") as f:
        manifest = f.read().splitlines()
    assert manifest.count("duration 3.000") == 3
    assert runner.labels == ["static-images", "final-render"]


def test_stages_run_in_order(store, make_job, storage):
    job = make_job(captions_url="https://cdn.example.com/story/captions.vtt")
    runner = FakeRunner()

    render_now(job.id, store=store, storage=storage, orchestrator=_orchestrator(store, runner))

    assert runner.labels == ["vtt-to-srt", "static-images", "final-render"]
    assert runner.probed[0].endswith("audio.mp3")
    assert runner.probed[-1].endswith("output.mp4")
    assert "captions.srt" in runner.args_for("final-render")[runner.args_for("final-render").index("-vf") + 1]


def test_audio_outage_fails_job_with_log(store, make_job, storage):
    """
    Audio answering 503 on every attempt: three tries, then render_failed
    with a short message and a diagnostic log in the scratch directory.
    """
    job = make_job()
    session = FakeSession(statuses={AUDIO_URL: [503, 503, 503]})
    runner = FakeRunner()

    outcome = render_now(job.id, store=store, storage=storage, orchestrator=_orchestrator(store, runner, session))

    assert not outcome.ok
    assert session.count(AUDIO_URL) == 3
    failed = store.get(job.id)
    assert failed.status == JobStatus.RENDER_FAILED
    assert 0 < len(failed.error_message) <= 900
    assert "download_failed" in failed.error_message
    assert failed.final_video_url is None
    assert failed.progress == 20
    logs = glob.glob(os.path.join(scratch_dir_for(job.id), "render-error-*.log"))
    assert len(logs) == 1
    assert outcome.log_path == logs[0]


def test_encoder_failure_points_at_its_log(store, make_job, storage):
    job = make_job()
    runner = FakeRunner(fail_labels={"final-render"})

    outcome = render_now(job.id, store=store, storage=storage, orchestrator=_orchestrator(store, runner))

    failed = store.get(job.id)
    assert failed.status == JobStatus.RENDER_FAILED
    assert os.path.basename(outcome.log_path).startswith("ffmpeg-error-")
    assert os.path.basename(outcome.log_path) in failed.error_message
    assert "final-render" in failed.error_message


def test_motion_renders_clips(store, make_job, storage):
    job = make_job()
    runner = FakeRunner()
    orchestrator = _orchestrator(store, runner, enable_motion=True)

    start_render(job.id, store)
    result = orchestrator.render(job.id)

    assert result.slideshow.status == SlideshowResult.SUCCESS
    assert runner.labels == ["kenburns-01", "kenburns-02", "kenburns-03", "kenburns-concat", "final-render"]


def test_motion_failure_falls_back_to_static(store, make_job, storage):
    """
    Motion dies after half of the clips: the partial clips are removed and
    the final render is built exactly like a render without motion.
    """
    images = [f"https://cdn.example.com/story/{n}.jpg" for n in ("a", "b", "c", "d")]
    degraded_job = make_job(image_urls=images)
    static_job = make_job(image_urls=images)
    degraded_runner = FakeRunner(fail_labels={"kenburns-03"})
    static_runner = FakeRunner()

    start_render(degraded_job.id, store)
    degraded = _orchestrator(store, degraded_runner, enable_motion=True).render(degraded_job.id)
    start_render(static_job.id, store)
    static = _orchestrator(store, static_runner, enable_motion=False).render(static_job.id)

    assert degraded.slideshow.status == SlideshowResult.DEGRADED
    assert "kenburns-03" in degraded.slideshow.reason
    assert static.slideshow.status == SlideshowResult.STATIC
    assert degraded_runner.labels == ["kenburns-01", "kenburns-02", "kenburns-03", "static-images", "final-render"]

    degraded_dir = scratch_dir_for(degraded_job.id)
    assert glob.glob(os.path.join(degraded_dir, "kb-*")) == []
    for label in ("static-images", "final-render"):
        degraded_args = [a.replace(degraded_job.id, "JOB") for a in degraded_runner.args_for(label)]
        static_args = [a.replace(static_job.id, "JOB") for a in static_runner.args_for(label)]
        assert degraded_args == static_args


def test_cancel_during_render(store, make_job, storage):
    job = make_job()
    state = RenderStateMachine(store)

    def cancel_after_slideshow(label, args):
        if label == "static-images":
            state.cancel(job.id)

    runner = FakeRunner(on_run=cancel_after_slideshow)
    _, owner = start_render(job.id, store)

    outcome = execute_render(job.id, owner, store=store, storage=storage, orchestrator=_orchestrator(store, runner))

    assert outcome.kind == "cancelled"
    assert "final-render" not in runner.labels
    cancelled = store.get(job.id)
    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.error_message == "cancelled_by_user"
    assert cancelled.final_video_url is None


def test_execute_render_requires_the_lease(store, make_job, storage):
    job = make_job()
    start_render(job.id, store)
    runner = FakeRunner()

    outcome = execute_render(job.id, "someone-else", store=store, storage=storage, orchestrator=_orchestrator(store, runner))

    assert not outcome.ok
    assert runner.calls == []
    assert store.get(job.id).status == JobStatus.RENDERING


def test_render_rechecks_assets(store, make_job):
    job = make_job()
    store.safe_update(job.id, status=JobStatus.RENDERING, captions_url=None)

    with pytest.raises(MissingInputError) as exc:
        _orchestrator(store, FakeRunner()).render(job.id)

    assert str(exc.value) == "missing_input:captions_url"


class CancellingStorage(LocalStorage):
    """Local storage whose upload is interrupted by a user cancel."""

    def __init__(self, store, **kwargs):
        super().__init__(**kwargs)
        self.store = store

    def upload(self, job_id, file_path):
        url = super().upload(job_id, file_path)
        RenderStateMachine(self.store).cancel(job_id)
        return url


def test_cancel_during_upload_is_recorded(store, make_job, tmp_path):
    """
    A cancel that arrives while the finished video uploads wins over the
    late success, and the job keeps no lease and no final URL.
    """
    job = make_job()
    storage = CancellingStorage(store, media_dir=str(tmp_path / "media"), base_url="http://render.test")
    _, owner = start_render(job.id, store)

    outcome = execute_render(job.id, owner, store=store, storage=storage, orchestrator=_orchestrator(store, FakeRunner()))

    assert outcome.kind == "cancelled"
    cancelled = store.get(job.id)
    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.error_message == "cancelled_by_user"
    assert cancelled.final_video_url is None
    assert cancelled.render_lease_owner is None
    assert cancelled.render_lease_expires_at is None
    assert cancelled.render_done_at is not None
