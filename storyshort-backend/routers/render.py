"""
Router for render endpoints.
Handles finalize/render triggers, status polling, cancellation and diagnostics.
"""

import os
import logging
from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import FileResponse
from tasks import render_job_task
from schemas import (
    RenderRequest, FinalizeResponse, RenderResponse, StatusResponse,
    AssetReadinessResponse, CancelResponse, CleanupResponse,
)
from errors import RenderGateError
from models import JobStatus
from orchestrator import render_now
from services import scratch_dir_for, cleanup_scratch_dir
from state_machine import RenderStateMachine, derive_asset_readiness, is_render_eligible
from store import JobStore, get_store


# Create the router
router = APIRouter(tags=["render"])

GATE_ERROR_STATUS = {
    "not_found": 404,
    "assets_not_ready": 409,
    "already_rendering": 409,
    "cannot_cancel": 409,
}


def _gate_http_error(e: RenderGateError) -> HTTPException:
    return HTTPException(status_code=GATE_ERROR_STATUS.get(e.code, 400), detail={"error": e.code, "message": str(e)})


@router.post("/finalize", response_model=FinalizeResponse)
def finalize(request: RenderRequest, store: JobStore = Depends(get_store)):
    """
    Checks the render gate, moves the job to `rendering` and hands the
    render to the Celery worker. Returns immediately.
    """
    state = RenderStateMachine(store)
    try:
        job = state.check_gate(request.id)
        job, owner = state.begin_render(job)
    except RenderGateError as e:
        raise _gate_http_error(e)

    try:
        render_job_task.delay(request.id, owner)
    except Exception as e:
        logging.error(f"Failed to submit render task to Celery: {e}")
        state.revert_render_start(request.id, str(e))
        raise HTTPException(status_code=500, detail="render_start_failed")

    logging.info(f"✨ Job {request.id} submitted for rendering")
    return {"success": True, "message": "Video rendering started", "status": JobStatus.RENDERING}


@router.post("/render", response_model=RenderResponse)
def render(request: RenderRequest, store: JobStore = Depends(get_store)):
    """Renders inside this request and answers with the outcome."""
    try:
        outcome = render_now(request.id, store=store)
    except RenderGateError as e:
        raise _gate_http_error(e)

    job = store.get(request.id)
    if not outcome.ok:
        raise HTTPException(status_code=500, detail=outcome.error_message)
    return {
        "ok": True,
        "status": JobStatus.COMPLETED,
        "final_video_url": outcome.final_video_url,
        "total_duration": job.total_duration if job else None,
    }


@router.get("/video-status/{job_id}", response_model=StatusResponse)
def get_video_status(job_id: str, store: JobStore = Depends(get_store)):
    """
    Reports a job's status, progress and whether its assets are ready.
    """
    job = store.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found.")

    ready = derive_asset_readiness(job)
    return StatusResponse(
        id=job.id,
        status=job.status,
        progress=job.progress or 0,
        ready=AssetReadinessResponse(images=ready.images, audio=ready.audio, captions=ready.captions),
        can_finalize=is_render_eligible(job),
        can_view=job.status == JobStatus.COMPLETED and bool(job.final_video_url),
        image_urls=job.image_urls or [],
        final_video_url=job.final_video_url,
        total_duration=job.total_duration,
        error_message=job.error_message,
        render_started_at=job.render_started_at,
        render_done_at=job.render_done_at,
    )


@router.post("/render/cancel", response_model=CancelResponse)
def cancel_render(id: str, store: JobStore = Depends(get_store)):
    """Cancels an in-flight render; the worker notices and stops ffmpeg."""
    try:
        RenderStateMachine(store).cancel(id)
    except RenderGateError as e:
        raise _gate_http_error(e)

    logging.info(f"[render/cancel] Job {id} cancelled by user")
    return {"ok": True, "message": "Render cancelled successfully", "status": JobStatus.CANCELLED}


@router.get("/download-log")
def download_log(id: str, file: str):
    """
    Serves one diagnostic log from a job's scratch directory.
    """
    # Security Check: only plain .log file names, never a path
    if "/" in file or "\\" in file or not file.endswith(".log"):
        raise HTTPException(status_code=400, detail="invalid_filename")
    try:
        log_dir = scratch_dir_for(id)
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid_id")

    log_path = os.path.join(log_dir, file)
    if not os.path.isfile(log_path):
        raise HTTPException(status_code=404, detail="log_file_not_found")

    return FileResponse(log_path, media_type="text/plain", filename=file, headers={"Cache-Control": "no-cache"})


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup(request: RenderRequest):
    """Removes a job's intermediate render files but keeps its logs."""
    try:
        return cleanup_scratch_dir(request.id)
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid_id")
