import uuid
from datetime import timedelta

from .errors import InvalidTransitionError, JobNotFoundError, ValidationError
from .models import MAX_QUERY_LENGTH, JobStatus, JobType


class Orchestrator:
    """Entry point for callers: submit, cancel and inspect jobs."""

    def __init__(self, state_store, notifier, queue, processor, logger, retention_days=30):
        self.state_store = state_store
        self.notifier = notifier
        self.queue = queue
        self.processor = processor
        self.retention_days = retention_days
        self._log = logger

    def submit(self, job_type, query, user_id=None, metadata=None):
        """
        Validate, persist and enqueue a job. Returns the job record as a dict
        plus its queue position and estimated start time. Raises
        ValidationError before anything is persisted when the input is bad.
        """
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise ValidationError(f"Unsupported job type: {job_type}", field='type') from None
        job_class = self.processor.job_class_for(job_type)
        if job_class is None:
            raise ValidationError(f"No handler registered for job type: {job_type.value}", field='type')
        if not isinstance(query, str):
            raise ValidationError("Query must be a string", field='query')
        if not query.strip():
            raise ValidationError("Query is required", field='query')
        if len(query) > MAX_QUERY_LENGTH:
            raise ValidationError(f"Query exceeds maximum length of {MAX_QUERY_LENGTH} characters", field='query')
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("Metadata must be an object", field='metadata')

        job_class.validate_input(query, metadata or {})

        job_id = str(uuid.uuid4())
        record = self.state_store.create_job(job_id, job_type, query, user_id=user_id, metadata=metadata)
        try:
            submission = self.queue.submit(record.to_payload())
        except Exception:
            self._log.exception("Enqueue failed, removing job record", job_id=job_id)
            self.state_store.delete_job(job_id)
            raise

        self._log.info("Job submitted", job_id=job_id, job_type=job_type.value, user_id=record.user_id,
                       queue_position=submission.queue_position)
        result = record.to_dict()
        result['queuePosition'] = submission.queue_position
        result['estimatedStartTime'] = submission.estimated_start_time.isoformat()
        return result

    def cancel(self, job_id, reason=None) -> bool:
        """
        Cancel a job. A job still waiting in the queue is removed and marked
        CANCELLED right away; a running job is asked to stop at its next
        checkpoint. Returns False for jobs that already finished.
        """
        record = self.state_store.get_by_id(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        if record.is_terminal:
            return False

        if record.status == JobStatus.PENDING and self.queue.cancel(job_id, record.type):
            try:
                self.state_store.update_status(job_id, JobStatus.CANCELLED, reason or 'Job was cancelled')
            except InvalidTransitionError:
                return False
            return True

        return self.processor.cancel_job(job_id, reason)

    def get_by_id(self, job_id):
        return self.state_store.get_by_id(job_id)

    def get_by_user(self, user_id, limit=20, offset=0):
        return self.state_store.get_by_user(user_id, limit=limit, offset=offset)

    def get_events(self, job_id, last_id=-1):
        return self.notifier.get_events(job_id, last_id)

    def queue_stats(self):
        return self.queue.stats()

    def pause_queue(self, job_type):
        self.queue.pause(job_type)

    def resume_queue(self, job_type):
        self.queue.resume(job_type)

    def job_details(self, job_id):
        """Persisted record plus the queue's view of it (None once RQ dropped it)."""
        record = self.state_store.get_by_id(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        details = record.to_dict()
        details['queue'] = self.queue.job_details(job_id)
        return details

    def processor_health(self):
        return self.processor.get_health_info()

    def statistics(self, window_hours=24):
        return self.state_store.statistics(window=timedelta(hours=window_hours))

    def cleanup(self, older_than_days=None, trim_queue=True):
        days = self.retention_days if older_than_days is None else older_than_days
        deleted = self.state_store.cleanup(older_than_days=days)
        trimmed = self.queue.clean() if trim_queue else 0
        return {'deleted_jobs': deleted, 'trimmed_queue_entries': trimmed}
