# tasks.py

from celery import Celery
import logging
import traceback

from config import CELERY_BROKER_URL, CELERY_RESULT_BACKEND, STALE_RENDER_SWEEP_SECONDS
from orchestrator import execute_render, failure_message
from state_machine import RenderOutcome, RenderStateMachine
from store import JobStore

celery = Celery('tasks', broker=CELERY_BROKER_URL, backend=CELERY_RESULT_BACKEND)
celery.conf.beat_schedule = {
    "expire-stale-renders": {
        "task": "tasks.expire_stale_renders_task",
        "schedule": float(STALE_RENDER_SWEEP_SECONDS),
    },
}
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")


@celery.task(name="tasks.render_job_task", acks_late=True)
def render_job_task(job_id: str, owner: str):
    """
    Background render for a job the finalize endpoint already moved to `rendering`.
    Whatever happens, the job leaves `rendering` with a recorded outcome.
    """
    logging.info(f"📝 Worker received render for job {job_id}")
    store = JobStore()
    try:
        outcome = execute_render(job_id, owner, store=store)
    except Exception as e:
        logging.error(f"❌ Worker crashed rendering job {job_id}. Error: {e}")
        traceback.print_exc()
        outcome = RenderOutcome.failure(failure_message(e))
        job = store.get(job_id)
        if job is not None and job.render_lease_owner == owner:
            outcome = RenderStateMachine(store).apply_render_outcome(job_id, outcome)

    if outcome.ok:
        logging.info(f"✅ Worker finished job {job_id}. Video at: {outcome.final_video_url}")
    return {
        "job_id": job_id,
        "status": outcome.kind,
        "final_video_url": outcome.final_video_url,
        "error": outcome.error_message,
    }


@celery.task(name="tasks.expire_stale_renders_task")
def expire_stale_renders_task():
    count = RenderStateMachine(JobStore()).expire_stale_renders()
    if count:
        logging.warning(f"⏰ Failed {count} render(s) whose lease expired")
    return count
