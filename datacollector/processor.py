"""
Job processor.

The supervisor side (initialize, run_forever, shutdown) keeps a fixed pool of
RQ worker processes per job type: one process per concurrency slot, each
listening on the type's priority lanes. RQ runs every dequeued job in a work
horse that calls tasks.run_job, which lands in Processor.execute_job.

execute_job never lets a job error escape: whatever happens inside the job,
the record ends in a terminal status. Only infrastructure failures while
recording that outcome propagate, so RQ's retry policy can take over.
"""

import multiprocessing
import os
import socket
import threading
import time
import uuid
from datetime import timedelta

import redis
from redis.exceptions import RedisError
from rq import Queue, Worker

from .cancellation import CancellationToken, request_cancel
from .errors import InvalidTransitionError, JobTimeoutError, ProcessorStateError
from .jobs.base import BaseJob, ExecutionState, JobContext
from .models import JobData, JobStatus, JobType, utcnow
from .queue import TIMEOUT_MARGIN_SECONDS
from .services import ServiceRegistry

STATS_KEY = "datacollector:processor:stats"
ACTIVE_KEY = "datacollector:processor:active"


def _run_worker(redis_url, queue_names, name):
    connection = redis.from_url(redis_url)
    queues = [Queue(queue_name, connection=connection) for queue_name in queue_names]
    Worker(queues, connection=connection, name=name).work(with_scheduler=True)


def launch_worker_process(redis_url, job_type, queue_names, name):
    process = multiprocessing.Process(target=_run_worker, args=(redis_url, queue_names, name), name=name)
    process.start()
    return process


def _owner_tag(pid=None):
    # Work horses are forked by their RQ worker, so the parent pid names the slot.
    return f"{socket.gethostname()}:{pid if pid is not None else os.getppid()}"


class WorkerSlot:

    def __init__(self, job_type, name, handle):
        self.job_type = job_type
        self.name = name
        self.handle = handle

    @property
    def pid(self):
        return getattr(self.handle, 'pid', None)

    def is_alive(self):
        return self.handle.is_alive()

    def to_dict(self):
        return {'name': self.name, 'job_type': self.job_type.value, 'pid': self.pid, 'alive': self.is_alive()}


class Processor:

    def __init__(self, state_store, notifier, queue, logger, config, redis_client,
                 job_timeout=3600, shutdown_grace=30, worker_launcher=None):
        self.state_store = state_store
        self.notifier = notifier
        self.queue = queue
        self.config = config
        self.services = ServiceRegistry()
        self.job_timeout = job_timeout
        self.shutdown_grace = shutdown_grace
        self._log = logger
        self._redis = redis_client
        self._launcher = worker_launcher or self._launch_default
        self._job_classes = {}
        self._workers = []
        self._initialized = False
        self._running_jobs = {}
        self._running_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._paused = set()

    @property
    def initialized(self):
        return self._initialized

    def register_job_class(self, job_type, job_class):
        if self._initialized:
            raise ProcessorStateError("Cannot register job classes after the processor is initialized")
        if not (isinstance(job_class, type) and issubclass(job_class, BaseJob)):
            raise TypeError(f"{job_class!r} is not a BaseJob subclass")
        self._job_classes[JobType(job_type)] = job_class
        self._log.info("Job class registered", job_type=JobType(job_type).value, job_class=job_class.__name__)

    def register_service(self, key, instance):
        if self._initialized:
            raise ProcessorStateError("Cannot register services after the processor is initialized")
        self.services.register(key, instance)

    def job_class_for(self, job_type):
        return self._job_classes.get(JobType(job_type))

    @property
    def registered_job_types(self):
        return list(self._job_classes)

    def initialize(self):
        if self._initialized:
            raise ProcessorStateError("Processor already initialized")
        for job_type in self._job_classes:
            for index in range(self.queue.concurrency_for(job_type)):
                self._workers.append(self._spawn(job_type, index))
        self._initialized = True
        self._stop_event.clear()
        self.sync_paused()
        self._log.info("Job processor initialized", job_types=[t.value for t in self._job_classes],
                       workers=len(self._workers))

    def _spawn(self, job_type, index):
        name = f"{job_type.value}-worker-{index}-{uuid.uuid4().hex[:8]}"
        handle = self._launcher(job_type, self.queue.lane_names(job_type), name)
        self._log.info("Worker started", worker=name, job_type=job_type.value, pid=getattr(handle, 'pid', None))
        return WorkerSlot(job_type, name, handle)

    def _launch_default(self, job_type, queue_names, name):
        redis_url = self.config.get('REDIS_URL')
        return launch_worker_process(redis_url, job_type, queue_names, name)

    def execute_job(self, payload) -> bool:
        """Run one dequeued job to a terminal status. Returns True on success."""
        job_data = JobData.from_payload(payload)
        log = self._log.bind(job_id=job_data.id, job_type=job_data.type.value)

        job_class = self._job_classes.get(job_data.type)
        if job_class is None:
            log.error("No job class registered for type")
            self._force_fail(job_data.id, f"No handler registered for job type: {job_data.type.value}", log)
            self._record_finished(job_data.id, False, 0)
            return False

        token = CancellationToken(job_data.id, self._redis, log)
        context = JobContext(
            job_data=job_data,
            logger=self._log,
            notifier=self.notifier,
            services=self.services,
            config=self.config,
            state_store=self.state_store,
            token=token,
        )
        watchdog = threading.Timer(self.job_timeout, self._on_timeout, args=(job_data.id, token, log))
        watchdog.daemon = True

        self._mark_active(job_data.id)
        started = time.monotonic()
        job = None
        succeeded = False
        try:
            job = job_class(context)
            with self._running_lock:
                self._running_jobs[job_data.id] = job
            watchdog.start()
            job.process()
            succeeded = job.state == ExecutionState.SUCCEEDED
        except Exception as exc:
            log.exception("Job execution crashed")
            self._force_fail(job_data.id, str(exc) or exc.__class__.__name__, log)
        finally:
            watchdog.cancel()
            with self._running_lock:
                self._running_jobs.pop(job_data.id, None)
            token.clear()
            elapsed_ms = (time.monotonic() - started) * 1000
            if job is not None and job.skipped:
                self._unmark_active(job_data.id)
            else:
                self._record_finished(job_data.id, succeeded, elapsed_ms)

        log.info("Job execution finished", succeeded=succeeded, state=job.state.value if job else None)
        return succeeded

    def _on_timeout(self, job_id, token, log):
        error = JobTimeoutError(job_id, self.job_timeout)
        log.error("Job timed out", timeout_seconds=self.job_timeout)
        try:
            self._force_fail(job_id, str(error), log, data={'timeout': True})
        except Exception:
            log.exception("Failed to record job timeout")
        token.cancel(str(error))

    def _force_fail(self, job_id, message, log=None, data=None) -> bool:
        """Drive a non-terminal record to FAILED, passing through RUNNING if it never started."""
        log = log or self._log.bind(job_id=job_id)
        record = self.state_store.get_by_id(job_id)
        if record is None or record.is_terminal:
            return False
        try:
            if record.status == JobStatus.PENDING:
                self.state_store.update_status(job_id, JobStatus.RUNNING, 'Job started')
            self.state_store.update_status(job_id, JobStatus.FAILED, message, error_message=message, data=data)
        except InvalidTransitionError:
            log.warning("Job finished before it could be marked failed")
            return False
        return True

    def cancel_job(self, job_id, reason=None) -> bool:
        with self._running_lock:
            job = self._running_jobs.get(job_id)
        if job is not None:
            return job.cancel(reason)
        request_cancel(self._redis, job_id, reason)
        self._log.info("Cancellation requested", job_id=job_id, reason=reason)
        return True

    def _mark_active(self, job_id):
        try:
            self._redis.hset(ACTIVE_KEY, job_id, _owner_tag())
        except RedisError:
            self._log.exception("Failed to mark job active", job_id=job_id)

    def _unmark_active(self, job_id):
        try:
            self._redis.hdel(ACTIVE_KEY, job_id)
        except RedisError:
            self._log.exception("Failed to clear active job", job_id=job_id)

    def _record_finished(self, job_id, succeeded, elapsed_ms):
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.hincrby(STATS_KEY, 'total_processed', 1)
            pipe.hincrby(STATS_KEY, 'success_count' if succeeded else 'failure_count', 1)
            pipe.hincrbyfloat(STATS_KEY, 'total_processing_time_ms', elapsed_ms)
            pipe.hdel(ACTIVE_KEY, job_id)
            pipe.execute()
        except RedisError:
            self._log.exception("Failed to update processor stats", job_id=job_id)

    def get_stats(self):
        raw = {_text(k): _text(v) for k, v in (self._redis.hgetall(STATS_KEY) or {}).items()}
        total = int(raw.get('total_processed', 0))
        total_time = float(raw.get('total_processing_time_ms', 0))
        return {
            'total_processed': total,
            'success_count': int(raw.get('success_count', 0)),
            'failure_count': int(raw.get('failure_count', 0)),
            'average_processing_time_ms': total_time / total if total else 0.0,
            'active_jobs': int(self._redis.hlen(ACTIVE_KEY)),
        }

    def get_health_info(self):
        return {
            'initialized': self._initialized,
            'registered_job_types': [job_type.value for job_type in self._job_classes],
            'queue_stats': self.queue.stats(),
            'processor_stats': self.get_stats(),
            'workers': [slot.to_dict() for slot in self._workers],
            'paused_job_types': sorted(job_type.value for job_type in self._paused),
        }

    def reap_timed_out(self) -> int:
        """Fail records still running past the timeout whose work horse never finalized them."""
        cutoff = utcnow() - timedelta(seconds=self.job_timeout + TIMEOUT_MARGIN_SECONDS)
        reaped = 0
        for record in self.state_store.get_stale(cutoff):
            message = str(JobTimeoutError(record.id, self.job_timeout))
            if self._force_fail(record.id, message, data={'timeout': True}):
                self._unmark_active(record.id)
                reaped += 1
        if reaped:
            self._log.warning("Timed out jobs reaped", count=reaped)
        return reaped

    def restart_dead_workers(self) -> int:
        restarted = 0
        for index, slot in enumerate(self._workers):
            if self._stop_event.is_set():
                break
            if slot.job_type in self._paused:
                continue
            if not slot.is_alive():
                self._log.warning("Worker died, restarting", worker=slot.name, job_type=slot.job_type.value)
                self._fail_jobs_owned_by([slot], "Job interrupted: worker process exited")
                self._workers[index] = self._spawn(slot.job_type, index)
                restarted += 1
        return restarted

    def sync_paused(self):
        """Stop the workers of newly paused types and respawn those of resumed ones."""
        paused = self.queue.paused_types()
        for index, slot in enumerate(self._workers):
            if slot.job_type in paused and slot.job_type not in self._paused:
                if slot.is_alive():
                    # SIGTERM is a warm shutdown: the current job finishes first
                    self._log.info("Queue paused, stopping worker", worker=slot.name, job_type=slot.job_type.value)
                    slot.handle.terminate()
            elif slot.job_type in self._paused and slot.job_type not in paused and not slot.is_alive():
                self._log.info("Queue resumed, starting worker", job_type=slot.job_type.value)
                self._workers[index] = self._spawn(slot.job_type, index)
        self._paused = paused

    def run_forever(self, poll_interval=5.0):
        self._log.info("Supervisor loop started", poll_interval=poll_interval)
        while not self._stop_event.is_set():
            self.reap_timed_out()
            self.sync_paused()
            self.restart_dead_workers()
            self._stop_event.wait(poll_interval)
        self._log.info("Supervisor loop stopped")

    def stop(self):
        self._stop_event.set()

    def shutdown(self, grace_period=None):
        grace = self.shutdown_grace if grace_period is None else grace_period
        self._stop_event.set()
        self._log.info("Shutting down job processor", workers=len(self._workers), grace_period=grace)

        for slot in self._workers:
            if slot.is_alive():
                slot.handle.terminate()

        deadline = time.monotonic() + grace
        for slot in self._workers:
            slot.handle.join(max(0.0, deadline - time.monotonic()))

        killed = [slot for slot in self._workers if slot.is_alive()]
        for slot in killed:
            self._log.warning("Worker did not stop in time, killing", worker=slot.name)
            slot.handle.kill()
            slot.handle.join(5)
        if killed:
            self._fail_jobs_owned_by(killed, "Job interrupted by processor shutdown")

        with self._running_lock:
            local = list(self._running_jobs)
        for job_id in local:
            self._force_fail(job_id, "Job interrupted by processor shutdown")

        self._workers = []
        self._initialized = False
        self.queue.close()
        self._log.info("Job processor shut down")

    def _fail_jobs_owned_by(self, slots, message):
        owners = {_owner_tag(slot.pid) for slot in slots if slot.pid is not None}
        if not owners:
            return
        active = {_text(k): _text(v) for k, v in (self._redis.hgetall(ACTIVE_KEY) or {}).items()}
        for job_id, owner in active.items():
            if owner in owners:
                self._force_fail(job_id, message)
                self._unmark_active(job_id)


def _text(value):
    return value.decode('utf-8') if isinstance(value, bytes) else value
