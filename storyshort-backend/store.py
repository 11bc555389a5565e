"""
Single-row access to the job table.
Every pipeline write goes through here so schema drift never stops a render.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError

from database import SessionLocal
from models import Job, JobStatus, utcnow

JOB_COLUMNS = frozenset(c.name for c in Job.__table__.columns)


class JobStore:
    """Read-by-id and partial update-by-id over the jobs table."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def get(self, job_id: str) -> Optional[Job]:
        db = self.session_factory()
        try:
            job = db.get(Job, job_id)
            if job is not None:
                db.expunge(job)
            return job
        finally:
            db.close()

    def create(self, **fields) -> Job:
        db = self.session_factory()
        try:
            job = Job(**fields)
            db.add(job)
            db.commit()
            db.refresh(job)
            db.expunge(job)
            return job
        finally:
            db.close()

    def safe_update(self, job_id: str, **fields) -> bool:
        """
        Apply a partial update. Unknown fields are dropped and database errors
        are logged, never raised.
        """
        unknown = set(fields) - JOB_COLUMNS
        if unknown:
            logging.warning(f"[safe_update] ignoring unknown job fields: {sorted(unknown)}")
        patch = {k: v for k, v in fields.items() if k in JOB_COLUMNS}
        if not patch:
            return False
        patch.setdefault("updated_at", utcnow())

        db = self.session_factory()
        try:
            result = db.execute(update(Job).where(Job.id == job_id).values(**patch))
            db.commit()
            return result.rowcount == 1
        except SQLAlchemyError as e:
            db.rollback()
            logging.warning(f"[safe_update] job {job_id} update failed: {e}")
            return False
        finally:
            db.close()

    def try_begin_render(self, job_id: str, patch: dict, now: datetime) -> bool:
        """
        Move a job into `rendering` only if it is still `assets_generated` and
        no unexpired lease is held. Returns True when this caller won.
        """
        patch = dict(patch)
        patch.setdefault("updated_at", now)
        db = self.session_factory()
        try:
            stmt = (
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.ASSETS_GENERATED,
                    or_(Job.render_lease_expires_at.is_(None), Job.render_lease_expires_at < now),
                )
                .values(**patch)
            )
            result = db.execute(stmt)
            db.commit()
            return result.rowcount == 1
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def list_expired_leases(self, now: datetime) -> List[Job]:
        db = self.session_factory()
        try:
            jobs = (
                db.query(Job)
                .filter(Job.status == JobStatus.RENDERING)
                .filter(Job.render_lease_expires_at.isnot(None))
                .filter(Job.render_lease_expires_at < now)
                .all()
            )
            for job in jobs:
                db.expunge(job)
            return jobs
        finally:
            db.close()


# Dependency for FastAPI to get a job store
def get_store() -> JobStore:
    return JobStore()
