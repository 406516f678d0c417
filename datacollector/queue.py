"""
Durable work queue on RQ.

Every job type gets one RQ queue per priority lane, named
"{type}-queue:{lane}". Workers listen to a type's lanes in priority order,
so a waiting urgent job is always picked before a normal one while jobs in
the same lane stay FIFO.

Pausing a type only sets a flag in Redis: submissions are still accepted
and the supervisor stops that type's workers until the type is resumed.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from rq import Queue, Retry
from rq.exceptions import NoSuchJobError
from rq.job import Job as RQJob
from rq.job import JobStatus as RQJobStatus
from rq.results import Result

from .models import JobPriority, JobType, parse_priority, utcnow

TASK_PATH = 'datacollector.tasks.run_job'
PAUSED_KEY = "datacollector:queue:paused"

LANES = (
    (JobPriority.URGENT, 'urgent'),
    (JobPriority.HIGH, 'high'),
    (JobPriority.NORMAL, 'normal'),
    (JobPriority.LOW, 'low'),
)
LANE_BY_PRIORITY = dict(LANES)

DEFAULT_CONCURRENCY = {
    JobType.COLLECTION: 3,
    JobType.PROCESSING: 2,
    JobType.INDEXING: 2,
    JobType.SEARCH: 1,
}

AVERAGE_JOB_SECONDS = 120
TIMEOUT_MARGIN_SECONDS = 60
RESULT_TTL_SECONDS = 24 * 3600
FAILURE_TTL_SECONDS = 7 * 24 * 3600

_CANCELLABLE = {RQJobStatus.QUEUED, RQJobStatus.SCHEDULED, RQJobStatus.DEFERRED}


@dataclass
class SubmissionResult:
    job_id: str
    queue_position: int
    estimated_start_time: datetime


def queue_name(job_type, lane):
    return f"{JobType(job_type).value}-queue:{lane}"


class WorkQueue:

    def __init__(self, redis_client, logger, concurrency=None, default_concurrency=1,
                 job_timeout=3600, max_attempts=3, backoff_seconds=5,
                 keep_completed=100, keep_failed=50):
        self._redis = redis_client
        self._log = logger
        self._concurrency = dict(DEFAULT_CONCURRENCY)
        self._concurrency.update({JobType(k): int(v) for k, v in (concurrency or {}).items()})
        self._default_concurrency = default_concurrency
        self.job_timeout = job_timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self._queues: Dict[str, Queue] = {}

    @property
    def connection(self):
        return self._redis

    def lane_names(self, job_type) -> List[str]:
        return [queue_name(job_type, lane) for _, lane in LANES]

    def queues_for(self, job_type) -> List[Queue]:
        """The type's lanes, highest priority first."""
        return [self._queue(name) for name in self.lane_names(job_type)]

    def concurrency_for(self, job_type) -> int:
        try:
            return self._concurrency.get(JobType(job_type), self._default_concurrency)
        except ValueError:
            return self._default_concurrency

    def _queue(self, name) -> Queue:
        queue = self._queues.get(name)
        if queue is None:
            queue = self._queues[name] = Queue(name, connection=self._redis)
        return queue

    def _retry(self):
        if self.max_attempts <= 1:
            return None
        retries = self.max_attempts - 1
        return Retry(max=retries, interval=[self.backoff_seconds * 2 ** i for i in range(retries)])

    def submit(self, payload) -> SubmissionResult:
        job_id = payload['id']
        job_type = JobType(payload['type'])
        options = (payload.get('metadata') or {}).get('options') or {}
        priority = parse_priority(options.get('priority'))
        lane = LANE_BY_PRIORITY[priority]
        queue = self._queue(queue_name(job_type, lane))

        try:
            queue.enqueue(
                TASK_PATH,
                payload,
                job_id=job_id,
                job_timeout=int(self.job_timeout + TIMEOUT_MARGIN_SECONDS),
                retry=self._retry(),
                result_ttl=RESULT_TTL_SECONDS,
                failure_ttl=FAILURE_TTL_SECONDS,
                description=f"{job_type.value} job {job_id}",
            )
        except Exception:
            self._log.exception("Failed to enqueue job", job_id=job_id, queue=queue.name)
            raise

        position = self._queue_position(job_type, lane, job_id)
        concurrency = self.concurrency_for(job_type)
        wait = math.ceil(position / concurrency) * AVERAGE_JOB_SECONDS
        estimated_start = utcnow() + timedelta(seconds=wait)

        self._log.info("Job added to queue", job_id=job_id, queue=queue.name,
                       priority=priority.name.lower(), queue_position=position)
        return SubmissionResult(job_id=job_id, queue_position=position, estimated_start_time=estimated_start)

    def _queue_position(self, job_type, lane, job_id):
        ahead = 0
        for _, other in LANES:
            queue = self._queue(queue_name(job_type, other))
            if other == lane:
                ids = queue.job_ids
                if job_id in ids:
                    return ahead + ids.index(job_id) + 1
                return ahead + len(ids) + 1
            ahead += queue.count
        return ahead + 1

    def cancel(self, job_id, job_type=None) -> bool:
        """
        Cancel a job that is still waiting. Returns False when the queue
        entry is gone or a worker already picked it up.
        """
        try:
            rq_job = RQJob.fetch(job_id, connection=self._redis)
        except NoSuchJobError:
            self._log.warning("Job not found in queue", job_id=job_id)
            return False

        status = rq_job.get_status()
        if status not in _CANCELLABLE:
            self._log.info("Job not cancellable in queue", job_id=job_id, rq_status=str(status))
            return False

        rq_job.cancel()
        rq_job.delete()
        self._log.info("Job cancelled in queue", job_id=job_id, job_type=getattr(job_type, 'value', job_type))
        return True

    def pause(self, job_type):
        """Stop handing out jobs of this type. Waiting jobs stay queued; running ones finish."""
        job_type = JobType(job_type)
        self._redis.sadd(PAUSED_KEY, job_type.value)
        self._log.info("Queue paused", job_type=job_type.value)

    def resume(self, job_type):
        job_type = JobType(job_type)
        self._redis.srem(PAUSED_KEY, job_type.value)
        self._log.info("Queue resumed", job_type=job_type.value)

    def is_paused(self, job_type) -> bool:
        return bool(self._redis.sismember(PAUSED_KEY, JobType(job_type).value))

    def paused_types(self) -> Set[JobType]:
        paused = set()
        for value in self._redis.smembers(PAUSED_KEY):
            try:
                paused.add(JobType(value.decode('utf-8') if isinstance(value, bytes) else value))
            except ValueError:
                continue
        return paused

    def job_details(self, job_id) -> Optional[Dict]:
        """Queue-side view of one job, or None when RQ no longer holds it."""
        try:
            rq_job = RQJob.fetch(job_id, connection=self._redis)
        except NoSuchJobError:
            return None

        status = rq_job.get_status()
        position = None
        if status == RQJobStatus.QUEUED and rq_job.origin:
            job_type, _, lane = rq_job.origin.partition('-queue:')
            position = self._queue_position(job_type, lane, job_id)
        result = rq_job.latest_result()
        last_error = result.exc_string if result is not None and result.type == Result.Type.FAILED else None

        return {
            'id': rq_job.id,
            'queue': rq_job.origin,
            'status': status.value if status is not None else None,
            'position': position,
            'payload': rq_job.args[0] if rq_job.args else None,
            'enqueuedAt': _isoformat(rq_job.enqueued_at),
            'startedAt': _isoformat(rq_job.started_at),
            'endedAt': _isoformat(rq_job.ended_at),
            'retriesLeft': rq_job.retries_left,
            'lastError': last_error,
        }

    def stats(self) -> Dict[str, Dict[str, int]]:
        result = {}
        for job_type in JobType:
            counts = {'waiting': 0, 'active': 0, 'completed': 0, 'failed': 0, 'scheduled': 0}
            for queue in self.queues_for(job_type):
                counts['waiting'] += queue.count
                counts['active'] += queue.started_job_registry.count
                counts['completed'] += queue.finished_job_registry.count
                counts['failed'] += queue.failed_job_registry.count
                counts['scheduled'] += queue.scheduled_job_registry.count
            result[job_type.value] = counts
        return result

    def clean(self) -> int:
        """Trim finished and failed history down to the configured sizes."""
        removed = 0
        for job_type in JobType:
            for queue in self.queues_for(job_type):
                removed += _trim(queue.finished_job_registry, self.keep_completed)
                removed += _trim(queue.failed_job_registry, self.keep_failed)
        if removed:
            self._log.info("Queue history trimmed", removed=removed)
        return removed

    def close(self):
        try:
            self._redis.close()
        except Exception:
            self._log.exception("Error closing queue connection")


def _trim(registry, keep):
    # registry ids are ordered by expiry, oldest first
    ids = registry.get_job_ids()
    excess = ids[:-keep] if keep > 0 else ids
    for job_id in excess:
        registry.remove(job_id, delete_job=True)
    return len(excess)


def _isoformat(value):
    return value.isoformat() if value is not None else None
