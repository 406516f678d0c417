import threading

from redis.exceptions import RedisError

CANCEL_KEY = "datacollector:cancel:{job_id}"
CANCEL_TTL_SECONDS = 24 * 3600


def cancel_key(job_id):
    return CANCEL_KEY.format(job_id=job_id)


class CancellationToken:
    """
    Cooperative cancellation flag for one job.

    The local event covers callers in the same process (the timeout watchdog,
    Processor.cancel_job). The Redis key lets a caller in another process ask
    a running work horse to stop; the job sees it at its next checkpoint.
    """

    def __init__(self, job_id, redis_client=None, logger=None):
        self.job_id = job_id
        self.reason = None
        self._event = threading.Event()
        self._redis = redis_client
        self._log = logger

    def cancel(self, reason=None):
        if self.reason is None:
            self.reason = reason
        self._event.set()
        if self._redis is None:
            return
        try:
            request_cancel(self._redis, self.job_id, reason)
        except RedisError:
            if self._log is not None:
                self._log.warning("Failed to publish cancellation", job_id=self.job_id, exc_info=True)

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._redis is None:
            return False
        try:
            reason = self._redis.get(cancel_key(self.job_id))
        except RedisError:
            if self._log is not None:
                self._log.warning("Cancellation check failed", job_id=self.job_id, exc_info=True)
            return False
        if reason is None:
            return False
        if isinstance(reason, bytes):
            reason = reason.decode('utf-8')
        self.reason = self.reason or reason or None
        self._event.set()
        return True

    def clear(self):
        if self._redis is None:
            return
        try:
            self._redis.delete(cancel_key(self.job_id))
        except RedisError:
            if self._log is not None:
                self._log.warning("Failed to clear cancellation key", job_id=self.job_id, exc_info=True)


def request_cancel(redis_client, job_id, reason=None):
    """Raise the cross-process cancellation flag for job_id."""
    redis_client.set(cancel_key(job_id), reason or '', ex=CANCEL_TTL_SECONDS)
