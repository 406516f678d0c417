"""
Events module.

StatusNotifier fans job events out to three places:
 - a bounded per-job event buffer (Redis list, in-memory fallback) that polling
   gateways read with get_events(job_id, last_id),
 - a Redis pub/sub channel 'jobs:{job_id}' for push gateways (websocket relays),
 - callbacks registered in this process with subscribe(job_id, callback).

Behavioral notes:
 - Events carry a numeric incremental 'id' per job. Clients pass last_id to receive events with id > last_id.
 - In Redis mode events are JSON strings in 'events:{job_id}:list' and the id counter is 'events:{job_id}:id'.
 - Stored events are trimmed to max_events_per_job to avoid unbounded growth.
 - Notification is best-effort. broadcast() logs every failure and never raises,
   so a lost event can never undo the state change that produced it.
 - Subscribers only see events published after they attach; there is no replay.
"""

import json
import time
from collections import defaultdict
from threading import Lock

JOB_STATUS = 'job_status'
JOB_PROGRESS = 'job_progress'

_TRIM_RATIO = 2


def channel_for(job_id):
    return f"jobs:{job_id}"


class StatusNotifier:

    def __init__(self, redis_client=None, logger=None, max_events_per_job=1000):
        self._redis = redis_client
        self._log = logger
        self._max_events = max_events_per_job
        self._memory_events = {}  # fallback buffer
        self._memory_lock = Lock()
        self._subscribers = defaultdict(list)
        self._subscribers_lock = Lock()

    def _use_redis(self):
        return self._redis is not None

    def _redis_keys(self, job_id):
        return f"events:{job_id}:list", f"events:{job_id}:id"

    def broadcast(self, job_id, status, message=None, data=None, event=JOB_STATUS):
        """
        Publish an event for job_id. `status` is a JobStatus (or its value);
        `data` is merged into the event body.
        """
        try:
            ev = self._build_event(job_id, status, message, data, event)
        except Exception:
            self._log_failure("Failed to build job event", job_id, event)
            return None

        self._store(job_id, ev)
        self._publish(job_id, ev)
        self._dispatch(job_id, ev)
        return ev

    def _build_event(self, job_id, status, message, data, event):
        data = dict(data or {})
        status_value = getattr(status, 'value', status)
        if event == JOB_PROGRESS:
            progress = data.pop('progress', None)
            ev = {
                'type': JOB_PROGRESS,
                'jobId': job_id,
                'status': status_value,
                'progress': progress,
                'message': message or f"Progress: {progress}%",
                'stage': data.pop('stage', None) or 'Processing',
                'eta': data.pop('eta', None),
            }
        else:
            ev = {
                'type': JOB_STATUS,
                'jobId': job_id,
                'status': status_value,
                'message': message or f"Job status: {status_value}",
                'progress': data.pop('progress', None),
            }
        ev.update(data)
        ev['timestamp'] = time.time()
        # Round-trip through JSON so every sink sees the same plain types.
        return json.loads(json.dumps(ev, default=str))

    def _store(self, job_id, ev):
        if self._use_redis():
            try:
                list_key, id_key = self._redis_keys(job_id)
                # ids start at 0 like the in-memory buffer
                ev['id'] = self._redis.incr(id_key) - 1
                pipe = self._redis.pipeline()
                pipe.rpush(list_key, json.dumps(ev))
                pipe.ltrim(list_key, -self._max_events, -1)
                pipe.execute()
                return
            except Exception:
                self._log_failure("Redis event store failed, using in-memory buffer", job_id, ev.get('type'))

        with self._memory_lock:
            lst = self._memory_events.setdefault(job_id, [])
            ev['id'] = lst[-1]['id'] + 1 if lst else 0
            lst.append(ev)
            if len(lst) > self._max_events:
                self._memory_events[job_id] = lst[-(self._max_events // _TRIM_RATIO):]

    def _publish(self, job_id, ev):
        if not self._use_redis():
            return
        try:
            self._redis.publish(channel_for(job_id), json.dumps(ev))
        except Exception:
            self._log_failure("Failed to publish job event", job_id, ev.get('type'))

    def _dispatch(self, job_id, ev):
        with self._subscribers_lock:
            callbacks = list(self._subscribers.get(job_id, ()))
        for callback in callbacks:
            try:
                callback(dict(ev))
            except Exception:
                self._log_failure("Job event subscriber raised", job_id, ev.get('type'))

    def subscribe(self, job_id, callback):
        with self._subscribers_lock:
            self._subscribers[job_id].append(callback)
        if self._log:
            self._log.debug("Job subscription added", job_id=job_id)

    def unsubscribe(self, job_id, callback=None):
        """Drop one callback, or every callback for the job when none is given."""
        with self._subscribers_lock:
            if callback is None:
                self._subscribers.pop(job_id, None)
            else:
                callbacks = self._subscribers.get(job_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(job_id, None)
        if self._log:
            self._log.debug("Job subscription removed", job_id=job_id)

    def subscriber_count(self, job_id):
        with self._subscribers_lock:
            return len(self._subscribers.get(job_id, ()))

    def get_events(self, job_id, last_id=-1):
        """
        Return buffered events for job_id with id > last_id.
        """
        if self._use_redis():
            try:
                list_key, _ = self._redis_keys(job_id)
                events = []
                for item in self._redis.lrange(list_key, 0, -1):
                    if isinstance(item, bytes):
                        item = item.decode('utf-8')
                    try:
                        ev = json.loads(item)
                    except ValueError:
                        # skip malformed entries
                        continue
                    if ev.get('id', -1) > last_id:
                        events.append(ev)
                if events:
                    return events
            except Exception:
                self._log_failure("Failed to read events from Redis", job_id, None)

        with self._memory_lock:
            lst = self._memory_events.get(job_id, [])
            return [e for e in lst if e['id'] > last_id]

    def clear_events(self, job_id):
        """
        Remove stored events for a job.
        """
        if self._use_redis():
            try:
                list_key, id_key = self._redis_keys(job_id)
                self._redis.delete(list_key, id_key)
            except Exception:
                self._log_failure("Failed to clear events in Redis", job_id, None)

        with self._memory_lock:
            self._memory_events.pop(job_id, None)

    def _log_failure(self, message, job_id, event_type):
        if self._log is None:
            return
        try:
            self._log.exception(message, job_id=job_id, event_type=event_type)
        except Exception:
            pass
