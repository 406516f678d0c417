"""
Job lifecycle framework.

BaseJob.process() drives every job through the same template:

    RUNNING -> validate() -> execute() -> COMPLETED | FAILED | CANCELLED

Subclasses implement validate() and execute(), report progress through a
StepTracker and check for cancellation at their own checkpoints. The
finalizers persist exactly one terminal status per job instance; if the
record was already finalized elsewhere (timeout watchdog, external cancel)
the instance adopts that outcome instead.
"""

import abc
import enum
import threading
import time
import traceback
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from rq.timeouts import JobTimeoutException

from ..cancellation import CancellationToken
from ..errors import InvalidTransitionError, StepNotFoundError
from ..models import STAGE_CHAIN, JobStatus, is_terminal, utcnow
from ..state import stage_label


class ExecutionState(enum.Enum):
    CREATED = "created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


_OUTCOME_BY_STATUS = {
    JobStatus.COMPLETED: ExecutionState.SUCCEEDED,
    JobStatus.FAILED: ExecutionState.FAILED,
    JobStatus.CANCELLED: ExecutionState.CANCELLED,
}


class JobCancelled(Exception):
    """Raised at a checkpoint once cancellation was requested."""


# Never swallow these in a collaborator fallback.
PROPAGATE = (JobCancelled, JobTimeoutException)


@dataclass
class JobContext:
    job_data: Any
    logger: Any
    notifier: Any
    services: Any
    config: Any
    state_store: Any
    token: Optional[CancellationToken] = None


class StepStatus(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class JobStep:
    name: str
    description: str
    weight: int
    stage: Optional[JobStatus] = None
    status: StepStatus = StepStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self):
        return {
            'name': self.name,
            'description': self.description,
            'weight': self.weight,
            'status': self.status.value,
            'error': self.error,
        }


PROGRESS_CAP = 95


class StepTracker:
    """
    Ordered step plan with weighted progress. Overall progress is the sum of
    completed step weights, held at 95 until the job's success path sets 100.
    """

    def __init__(self, job, steps: List[JobStep]):
        names = [step.name for step in steps]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate step names in plan: {names}")
        if steps and sum(step.weight for step in steps) != 100:
            raise ValueError(f"Step weights must sum to 100, got {sum(step.weight for step in steps)}")
        self._job = job
        self.steps = list(steps)
        self.current: Optional[JobStep] = None

    def get(self, name) -> JobStep:
        for step in self.steps:
            if step.name == name:
                return step
        raise StepNotFoundError(name)

    @property
    def progress(self) -> int:
        done = sum(step.weight for step in self.steps if step.status == StepStatus.COMPLETED)
        return min(PROGRESS_CAP, done)

    def start_step(self, name):
        step = self.get(name)
        if step.stage is not None:
            self._job.enter_stage(step.stage)
        step.status = StepStatus.RUNNING
        step.start_time = utcnow()
        self.current = step
        self._job.update_progress(self.progress, step.description)

    def complete_step(self, name):
        step = self.get(name)
        step.status = StepStatus.COMPLETED
        step.end_time = utcnow()
        self._job.update_progress(self.progress, f"Completed: {step.description}")

    def fail_step(self, name, error):
        step = self.get(name)
        step.status = StepStatus.FAILED
        step.end_time = utcnow()
        step.error = str(error)

    def skip_step(self, name, reason=None):
        step = self.get(name)
        step.status = StepStatus.SKIPPED
        step.end_time = utcnow()
        step.error = reason


class BaseJob(abc.ABC):
    job_type = None

    def __init__(self, context: JobContext):
        self.context = context
        self.job_data = context.job_data
        self.job_id = context.job_data.id
        self.logger = context.logger.bind(job_id=self.job_id, job_type=self.job_data.type.value)
        self.notifier = context.notifier
        self.services = context.services
        self.config = context.config
        self.state_store = context.state_store
        self.token = context.token or CancellationToken(self.job_id)

        self._lock = threading.Lock()
        self._state = ExecutionState.CREATED
        self.skipped = False
        self._running = False
        self._cancel_requested = False
        self._cancel_reason = None
        self._finalized = False
        self._start_time = None
        self._status = self.job_data.status
        self._progress = self.job_data.progress
        self._results: Dict[str, Any] = {}
        self._warnings: List[str] = []

        self.steps = StepTracker(self, self.define_steps())

    @abc.abstractmethod
    def validate(self):
        """Check the job's own input. Raise to fail the job before execute()."""

    @abc.abstractmethod
    def execute(self):
        """Do the work, reporting progress and checking for cancellation."""

    def define_steps(self) -> List[JobStep]:
        return []

    @classmethod
    def validate_input(cls, query, metadata):
        """Structural input checks, also run at submission time. Raises ValidationError."""
        return None

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def is_running(self):
        return self._running

    @property
    def is_cancelled(self):
        return self._cancel_requested or self.token.is_cancelled()

    @property
    def results(self):
        return dict(self._results)

    @property
    def warnings(self):
        return list(self._warnings)

    def process(self):
        record = self.state_store.get_by_id(self.job_id)
        if record is None:
            self.logger.warning("Job record missing, skipping")
            self.skipped = True
            return
        if is_terminal(record.status):
            self.logger.info("Job already finished, skipping", status=record.status.value)
            self.skipped = True
            self._adopt(record.status)
            return

        self.logger.info("Starting job processing", query=self.job_data.query)
        self._running = True
        self._start_time = time.monotonic()
        self._state = ExecutionState.RUNNING
        try:
            if record.status == JobStatus.PENDING:
                try:
                    self._set_status(JobStatus.RUNNING, 'Job started')
                except InvalidTransitionError:
                    if not self._adopt_persisted_outcome():
                        self.logger.warning("Job was started by another attempt, skipping")
                        self.skipped = True
                    return
            else:
                self._resume(record)

            self.validate()
            self.logger.debug("Job validation completed")

            if self.is_cancelled:
                self._finalize_cancelled()
                return

            self.execute()

            if self.is_cancelled:
                self._finalize_cancelled()
            else:
                self._finalize_success()
        except JobCancelled:
            self._finalize_cancelled()
        except Exception as exc:
            self.logger.error("Job processing failed", error=str(exc), exc_info=True)
            self._finalize_failure(exc)
        finally:
            self._running = False

    def cancel(self, reason=None) -> bool:
        with self._lock:
            if self._cancel_requested or self._finalized:
                return False
            self._cancel_requested = True
            self._cancel_reason = reason
            running = self._running

        self.logger.info("Cancelling job", reason=reason, running=running)
        if not running:
            self._finalize_cancelled()
        self.token.cancel(reason)
        return True

    def should_continue(self) -> bool:
        return self._running and not self.is_cancelled

    def check_cancelled(self):
        if self.is_cancelled:
            raise JobCancelled(self._cancel_reason or self.token.reason or 'Job was cancelled')

    def enter_stage(self, status, message=None):
        """Advance along the stage chain up to status; never moves backwards."""
        status = JobStatus(status)
        if status not in STAGE_CHAIN or status == JobStatus.COMPLETED:
            raise ValueError(f"Not a working stage: {status.value}")
        try:
            current = STAGE_CHAIN.index(self._status)
        except ValueError:
            return
        target = STAGE_CHAIN.index(status)
        for next_status in STAGE_CHAIN[current + 1:target + 1]:
            self._set_status(next_status, message if next_status == status else None)

    def update_progress(self, progress, message=None):
        self._progress = max(self._progress, max(0, min(100, int(progress))))
        self.state_store.update_progress(self.job_id, self._progress, message, stage=self.current_stage())

    def update_results(self, partial):
        self._results.update(partial)
        self.state_store.update_results(self.job_id, partial)

    def add_warning(self, message):
        if message in self._warnings:
            return
        self._warnings.append(message)
        self.logger.warning("Job warning", warning=message)
        self.update_results({'warnings': list(self._warnings)})

    def current_stage(self):
        return stage_label(self._status)

    def get_execution_stats(self):
        return {
            'state': self._state.value,
            'is_running': self._running,
            'is_cancelled': self.is_cancelled,
            'status': self._status.value,
            'progress': self._progress,
            'duration_ms': self._duration_ms(),
            'steps': [step.to_dict() for step in self.steps.steps],
            'warnings': list(self._warnings),
        }

    def _duration_ms(self):
        if self._start_time is None:
            return 0
        return int((time.monotonic() - self._start_time) * 1000)

    def _set_status(self, status, message=None, **kwargs):
        job = self.state_store.update_status(self.job_id, status, message, **kwargs)
        self._status = job.status
        self._progress = job.progress
        return job

    def _resume(self, record):
        # An earlier attempt died after leaving PENDING (RQ retry or a requeued
        # work horse). Run again from the persisted stage; stages only move forward.
        self._status = record.status
        self._progress = max(self._progress, record.progress or 0)
        self.logger.warning("Resuming job after an interrupted attempt", status=record.status.value,
                            progress=self._progress)
        self.state_store.update_progress(self.job_id, self._progress, 'Job restarted after an interrupted attempt',
                                         stage=self.current_stage())

    def _claim_finalization(self):
        with self._lock:
            if self._finalized:
                return False
            self._finalized = True
            return True

    def _finalize_success(self):
        if not self._claim_finalization():
            return
        duration = self._duration_ms()
        try:
            self.enter_stage(JobStatus.INDEXING)
            self._set_status(
                JobStatus.COMPLETED,
                'Job completed successfully',
                progress=100,
                data={'duration_ms': duration, 'results': self._results},
            )
        except InvalidTransitionError:
            self._recover_rejected_status()
            return
        self._state = ExecutionState.SUCCEEDED
        self.logger.info("Job completed successfully", duration_ms=duration)

    def _finalize_failure(self, exc):
        if not self._claim_finalization():
            return
        duration = self._duration_ms()
        message = str(exc) or exc.__class__.__name__
        details = {'name': exc.__class__.__name__, 'message': message}
        if self.config.get_optional('APP_ENV', 'development') != 'production':
            details['stack'] = ''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        try:
            self._set_status(
                JobStatus.FAILED,
                message,
                error_message=message,
                data={'duration_ms': duration, 'errorDetails': details},
            )
        except InvalidTransitionError:
            self._recover_rejected_status()
            return
        self._state = ExecutionState.FAILED
        self.logger.error("Job failed", error=message, duration_ms=duration)

    def _finalize_cancelled(self):
        if not self._claim_finalization():
            return
        reason = self._cancel_reason or self.token.reason or 'Job was cancelled'
        try:
            self._set_status(JobStatus.CANCELLED, reason, data={'duration_ms': self._duration_ms()})
        except InvalidTransitionError:
            self._recover_rejected_status()
            return
        self._state = ExecutionState.CANCELLED
        self.logger.info("Job cancelled", reason=reason)

    def _adopt_persisted_outcome(self) -> bool:
        """Take over a terminal status persisted by someone else. False if the record is still in progress."""
        record = self.state_store.get_by_id(self.job_id)
        if record is None:
            self._state = ExecutionState.FAILED
            return True
        if not is_terminal(record.status):
            self.logger.error("Job status rejected while the record is still in progress",
                              status=record.status.value)
            return False
        self.logger.warning("Job was finalized elsewhere", status=record.status.value)
        self._status = record.status
        self._adopt(record.status)
        return True

    def _recover_rejected_status(self):
        if self._adopt_persisted_outcome() or not self._running:
            return
        # Never leave a record this attempt owns in a working status.
        message = "Job status could not be recorded"
        try:
            self._set_status(JobStatus.FAILED, message, error_message=message)
        except InvalidTransitionError:
            self._adopt_persisted_outcome()
            return
        self._state = ExecutionState.FAILED

    def _adopt(self, status):
        self._state = _OUTCOME_BY_STATUS.get(status, self._state)
        with self._lock:
            if is_terminal(status):
                self._finalized = True
