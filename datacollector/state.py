"""
Persistent job state.

StateStore is the only component that writes Job rows. Every status change
runs in its own transaction: the row is loaded with SELECT ... FOR UPDATE,
checked against the transition table and written back, so concurrent
writers on one job id commit one at a time. Writers inside one process also
share a per-job lock that stays held through the broadcast, which keeps the
order of emitted events equal to the order of commits.
"""

import threading
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select

from .errors import InvalidTransitionError, JobNotFoundError
from .events import JOB_PROGRESS, JOB_STATUS
from .models import (
    ANONYMOUS_USER,
    TERMINAL_STATES,
    Job,
    JobStatus,
    JobType,
    is_terminal,
    is_valid_transition,
    utcnow,
)

STAGE_LABELS = {
    JobStatus.ANALYZING: 'Analyzing query',
    JobStatus.SEARCHING: 'Searching sources',
    JobStatus.DOWNLOADING: 'Downloading content',
    JobStatus.PROCESSING: 'Processing files',
    JobStatus.INDEXING: 'Indexing content',
}


def stage_label(status):
    return STAGE_LABELS.get(status, 'Processing')


class _JobLocks:
    """Per-job re-entrant locks for writers living in the same process."""

    def __init__(self):
        self._locks = {}
        self._guard = threading.Lock()

    def get(self, job_id):
        with self._guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = self._locks[job_id] = threading.RLock()
            return lock

    def discard(self, job_id):
        with self._guard:
            self._locks.pop(job_id, None)


class StateStore:

    def __init__(self, session_factory, notifier, logger):
        self._session_factory = session_factory
        self._notifier = notifier
        self._log = logger
        self._locks = _JobLocks()

    def create_job(self, job_id, job_type, query, user_id=None, metadata=None) -> Job:
        job = Job(
            id=job_id,
            type=JobType(job_type),
            status=JobStatus.PENDING,
            query=query,
            progress=0,
            user_id=user_id or ANONYMOUS_USER,
            meta=dict(metadata or {}),
            results={},
            created_at=utcnow(),
            version=1,
        )
        with self._locks.get(job_id):
            try:
                with self._session_factory.begin() as session:
                    session.add(job)
            except Exception:
                self._log.exception("Failed to create job", job_id=job_id)
                raise

            self._log.info("Job created in database", job_id=job.id, type=job.type.value, status=job.status.value)
            self._notifier.broadcast(job.id, job.status, 'Job created and queued', {'progress': 0, 'version': job.version})
        return job

    def update_status(self, job_id, new_status, message=None, progress=None,
                      error_message=None, results=None, data=None) -> Job:
        """
        Move job_id to new_status and apply the optional field updates in the
        same transaction. Raises InvalidTransitionError (nothing persisted)
        when the move is not in the transition table.
        """
        new_status = JobStatus(new_status)
        with self._locks.get(job_id):
            with self._session_factory() as session:
                try:
                    with session.begin():
                        job = self._load_for_update(session, job_id)
                        old_status = job.status
                        if not is_valid_transition(old_status, new_status):
                            raise InvalidTransitionError(job_id, old_status, new_status)

                        now = utcnow()
                        job.status = new_status
                        if old_status == JobStatus.PENDING and new_status == JobStatus.RUNNING and job.started_at is None:
                            job.started_at = now
                        if progress is not None:
                            job.progress = max(job.progress, _clamp(progress))
                        if new_status == JobStatus.COMPLETED:
                            job.progress = 100
                        if error_message:
                            job.error_message = error_message
                        if results:
                            job.results = {**(job.results or {}), **results}
                        if is_terminal(new_status) and job.completed_at is None:
                            job.completed_at = now
                        job.updated_at = now
                        job.version = (job.version or 0) + 1
                except InvalidTransitionError:
                    self._log.error("Rejected job status transition", job_id=job_id,
                                    current_status=old_status.value, new_status=new_status.value)
                    raise
                except JobNotFoundError:
                    raise
                except Exception:
                    self._log.exception("Failed to update job status", job_id=job_id, new_status=new_status.value)
                    raise

            self._log.info("Job status updated", job_id=job_id, old_status=old_status.value,
                           new_status=job.status.value, progress=job.progress)

            event = {'progress': job.progress, 'version': job.version}
            if data:
                event.update(data)
            if job.error_message and new_status == JobStatus.FAILED:
                event.setdefault('error', job.error_message)
            self._notifier.broadcast(job_id, job.status, message, event, event=JOB_STATUS)

        if is_terminal(job.status):
            self._locks.discard(job_id)
        return job

    def update_progress(self, job_id, progress, message=None, stage=None) -> Job:
        """
        Record progress without touching status. Lower values than the stored
        one are ignored and terminal jobs are left untouched.
        """
        with self._locks.get(job_id):
            with self._session_factory() as session:
                with session.begin():
                    job = self._load_for_update(session, job_id)
                    if is_terminal(job.status):
                        self._log.debug("Ignoring progress for finished job", job_id=job_id,
                                        status=job.status.value, progress=progress)
                        return job
                    new_progress = max(job.progress, _clamp(progress))
                    if new_progress != job.progress:
                        job.progress = new_progress
                        job.updated_at = utcnow()
                        job.version = (job.version or 0) + 1

            eta = _eta_seconds(job.started_at, job.progress)
            self._log.debug("Job progress updated", job_id=job_id, progress=job.progress, message=message, stage=stage)
            self._notifier.broadcast(
                job_id, job.status, message,
                {'progress': job.progress, 'stage': stage or stage_label(job.status), 'eta': eta, 'version': job.version},
                event=JOB_PROGRESS,
            )
        return job

    def update_results(self, job_id, partial) -> Job:
        """Merge partial into the job's results bag."""
        with self._locks.get(job_id):
            with self._session_factory() as session:
                with session.begin():
                    job = self._load_for_update(session, job_id)
                    job.results = {**(job.results or {}), **(partial or {})}
                    job.updated_at = utcnow()
                    job.version = (job.version or 0) + 1
        return job

    def get_by_id(self, job_id) -> Optional[Job]:
        with self._session_factory() as session:
            return session.get(Job, job_id)

    def get_by_user(self, user_id, limit=20, offset=0) -> Tuple[List[Job], int]:
        with self._session_factory() as session:
            total = session.scalar(select(func.count()).select_from(Job).where(Job.user_id == user_id))
            jobs = session.scalars(
                select(Job)
                .where(Job.user_id == user_id)
                .order_by(Job.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return list(jobs), int(total or 0)

    def get_by_status(self, status) -> List[Job]:
        with self._session_factory() as session:
            return list(session.scalars(
                select(Job).where(Job.status == JobStatus(status)).order_by(Job.created_at.asc())
            ).all())

    def get_stale(self, started_before) -> List[Job]:
        """Non-terminal jobs that started before the cutoff."""
        with self._session_factory() as session:
            return list(session.scalars(
                select(Job)
                .where(Job.status.not_in(TERMINAL_STATES))
                .where(Job.started_at.is_not(None))
                .where(Job.started_at < started_before)
                .order_by(Job.started_at.asc())
            ).all())

    def delete_job(self, job_id) -> bool:
        with self._locks.get(job_id):
            with self._session_factory.begin() as session:
                job = session.get(Job, job_id)
                if job is None:
                    return False
                session.delete(job)
        self._locks.discard(job_id)
        self._notifier.clear_events(job_id)
        self._log.info("Job deleted", job_id=job_id)
        return True

    def cleanup(self, older_than_days=30) -> int:
        """Delete finished jobs created more than older_than_days ago."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        with self._session_factory.begin() as session:
            doomed = list(session.scalars(
                select(Job.id)
                .where(Job.status.in_(TERMINAL_STATES))
                .where(Job.created_at < cutoff)
            ).all())
            if doomed:
                session.execute(Job.__table__.delete().where(Job.id.in_(doomed)))

        for job_id in doomed:
            self._notifier.clear_events(job_id)
        self._log.info("Old jobs cleaned up", deleted_count=len(doomed), older_than_days=older_than_days)
        return len(doomed)

    def statistics(self, window=timedelta(hours=24)) -> Dict:
        since = utcnow() - window
        with self._session_factory() as session:
            rows = session.execute(
                select(Job.status, func.count()).where(Job.created_at > since).group_by(Job.status)
            ).all()
            finished = session.execute(
                select(Job.started_at, Job.completed_at)
                .where(Job.created_at > since)
                .where(Job.started_at.is_not(None))
                .where(Job.completed_at.is_not(None))
            ).all()

        by_status = {status.value: 0 for status in JobStatus}
        for status, count in rows:
            by_status[status.value] = count
        total = sum(by_status.values())

        durations = [(done - started).total_seconds() for started, done in finished]
        avg_duration = sum(durations) / len(durations) if durations else None

        completed = by_status[JobStatus.COMPLETED.value]
        settled = completed + by_status[JobStatus.FAILED.value]
        window_hours = window.total_seconds() / 3600 or 1

        return {
            'total': total,
            'by_status': by_status,
            'avg_duration_seconds': avg_duration,
            'success_rate': (completed / settled) if settled else None,
            'throughput_per_hour': completed / window_hours,
        }

    def _load_for_update(self, session, job_id):
        job = session.execute(
            select(Job)
            .where(Job.id == job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(job_id)
        return job


def _clamp(progress):
    return max(0, min(100, int(round(progress))))


def _eta_seconds(started_at, progress):
    if started_at is None or progress <= 0 or progress >= 100:
        return None
    elapsed = (utcnow() - started_at).total_seconds()
    return round(elapsed * (100 - progress) / progress, 1)
