import threading
import uuid
from datetime import datetime, timedelta

import pytest

from datacollector import state as state_module
from datacollector.errors import InvalidTransitionError, JobNotFoundError
from datacollector.models import (
    JOB_STATE_TRANSITIONS,
    STAGE_CHAIN,
    JobStatus,
    JobType,
    utcnow,
)

# Shortest path from PENDING to every status.
PATHS = {
    JobStatus.PENDING: [],
    JobStatus.FAILED: [JobStatus.RUNNING, JobStatus.FAILED],
    JobStatus.CANCELLED: [JobStatus.CANCELLED],
}
for _index, _status in enumerate(STAGE_CHAIN):
    PATHS[_status] = list(STAGE_CHAIN[:_index + 1])


def new_job(store, job_type=JobType.COLLECTION, user_id=None, query='rare earth mining'):
    return store.create_job(str(uuid.uuid4()), job_type, query, user_id=user_id)


def walk_to(store, job_id, status):
    for step in PATHS[status]:
        store.update_status(job_id, step)
    return store.get_by_id(job_id)


class TestCreate:

    def test_create_job_persists_pending(self, store, events_for):
        job = new_job(store, user_id=None)

        record = store.get_by_id(job.id)
        assert record.status == JobStatus.PENDING
        assert record.progress == 0
        assert record.user_id == 'anonymous'
        assert record.version == 1

        events = events_for(job.id)
        assert events[0]['message'] == 'Job created and queued'
        assert events[0]['jobId'] == job.id

    def test_unknown_job(self, store):
        assert store.get_by_id('missing') is None
        with pytest.raises(JobNotFoundError):
            store.update_status('missing', JobStatus.RUNNING)


class TestTransitions:

    def test_pending_to_completed_is_rejected(self, store):
        job = new_job(store)

        with pytest.raises(InvalidTransitionError):
            store.update_status(job.id, JobStatus.COMPLETED)

        record = store.get_by_id(job.id)
        assert record.status == JobStatus.PENDING
        assert record.version == 1
        assert record.completed_at is None

    @pytest.mark.parametrize("from_status", list(JobStatus))
    def test_rejected_transitions_leave_state_unchanged(self, store, from_status):
        invalid = [s for s in JobStatus if s not in JOB_STATE_TRANSITIONS[from_status]]
        job = new_job(store)
        before = walk_to(store, job.id, from_status)

        for target in invalid:
            with pytest.raises(InvalidTransitionError):
                store.update_status(job.id, target, progress=50, error_message='nope')

        after = store.get_by_id(job.id)
        assert after.status == from_status
        assert after.version == before.version
        assert after.progress == before.progress
        assert after.error_message == before.error_message

    def test_timestamps(self, store):
        job = new_job(store)
        running = store.update_status(job.id, JobStatus.RUNNING)
        assert running.started_at is not None
        assert running.completed_at is None

        failed = store.update_status(job.id, JobStatus.FAILED, 'boom', error_message='boom')
        assert failed.completed_at is not None
        assert failed.started_at == running.started_at
        assert failed.error_message == 'boom'

    def test_completed_forces_full_progress(self, store):
        job = new_job(store)
        walk_to(store, job.id, JobStatus.INDEXING)
        store.update_progress(job.id, 30)

        done = store.update_status(job.id, JobStatus.COMPLETED)

        assert done.progress == 100
        assert store.get_by_id(job.id).progress == 100

    def test_results_are_merged(self, store):
        job = new_job(store)
        store.update_results(job.id, {'a': 1})
        store.update_status(job.id, JobStatus.RUNNING, results={'b': 2})

        assert store.get_by_id(job.id).results == {'a': 1, 'b': 2}

    def test_status_events_carry_increasing_versions(self, store, events_for):
        job = new_job(store)
        walk_to(store, job.id, JobStatus.DOWNLOADING)

        statuses = [e['status'] for e in events_for(job.id, 'job_status')]
        versions = [e['version'] for e in events_for(job.id, 'job_status')]
        assert statuses == ['pending', 'running', 'analyzing', 'searching', 'downloading']
        assert versions == sorted(versions)
        assert len(set(versions)) == len(versions)


class TestProgress:

    def test_progress_never_decreases(self, store):
        job = new_job(store)
        store.update_status(job.id, JobStatus.RUNNING)

        store.update_progress(job.id, 60)
        store.update_progress(job.id, 30)

        assert store.get_by_id(job.id).progress == 60

    def test_progress_is_clamped(self, store):
        job = new_job(store)
        store.update_status(job.id, JobStatus.RUNNING)

        store.update_progress(job.id, -5)
        assert store.get_by_id(job.id).progress == 0
        store.update_progress(job.id, 250)
        assert store.get_by_id(job.id).progress == 100

    def test_progress_ignored_after_terminal(self, store):
        job = new_job(store)
        store.update_status(job.id, JobStatus.CANCELLED)

        store.update_progress(job.id, 50)

        record = store.get_by_id(job.id)
        assert record.status == JobStatus.CANCELLED
        assert record.progress == 0

    def test_progress_event_has_stage_and_eta(self, store, events_for):
        job = new_job(store)
        walk_to(store, job.id, JobStatus.SEARCHING)

        store.update_progress(job.id, 40, 'Looking around')

        event = events_for(job.id, 'job_progress')[-1]
        assert event['progress'] == 40
        assert event['message'] == 'Looking around'
        assert event['stage'] == 'Searching sources'
        assert 'eta' in event


class TestQueries:

    def test_get_by_user_is_newest_first_and_paginated(self, store, monkeypatch):
        clock = iter(datetime(2026, 1, 1) + timedelta(minutes=i) for i in range(100))
        monkeypatch.setattr(state_module, 'utcnow', lambda: next(clock))
        first = new_job(store, user_id='alice')
        second = new_job(store, user_id='alice')
        third = new_job(store, user_id='alice')
        new_job(store, user_id='bob')

        jobs, total = store.get_by_user('alice', limit=2)
        assert total == 3
        assert [j.id for j in jobs] == [third.id, second.id]

        jobs, total = store.get_by_user('alice', limit=2, offset=2)
        assert [j.id for j in jobs] == [first.id]

    def test_get_by_status_is_oldest_first(self, store, monkeypatch):
        clock = iter(datetime(2026, 1, 1) + timedelta(minutes=i) for i in range(100))
        monkeypatch.setattr(state_module, 'utcnow', lambda: next(clock))
        older = new_job(store)
        newer = new_job(store)
        running = new_job(store)
        store.update_status(running.id, JobStatus.RUNNING)

        pending = store.get_by_status(JobStatus.PENDING)
        assert [j.id for j in pending] == [older.id, newer.id]

    def test_get_stale(self, store, backdate):
        stale = new_job(store)
        store.update_status(stale.id, JobStatus.RUNNING)
        backdate(stale.id, hours=3, column='started_at')
        fresh = new_job(store)
        store.update_status(fresh.id, JobStatus.RUNNING)

        found = store.get_stale(utcnow() - timedelta(hours=1))

        assert [j.id for j in found] == [stale.id]

    def test_delete_job(self, store, events_for):
        job = new_job(store)

        assert store.delete_job(job.id) is True
        assert store.get_by_id(job.id) is None
        assert events_for(job.id) == []
        assert store.delete_job(job.id) is False


class TestRetention:

    def test_cleanup_only_removes_old_terminal_jobs(self, store, backdate):
        old_done = new_job(store)
        walk_to(store, old_done.id, JobStatus.FAILED)
        backdate(old_done.id, days=40)

        old_pending = new_job(store)
        backdate(old_pending.id, days=40)

        recent_done = new_job(store)
        store.update_status(recent_done.id, JobStatus.CANCELLED)

        deleted = store.cleanup(older_than_days=30)

        assert deleted == 1
        assert store.get_by_id(old_done.id) is None
        assert store.get_by_id(old_pending.id) is not None
        assert store.get_by_id(recent_done.id) is not None


class TestStatistics:

    def test_statistics(self, store):
        for _ in range(2):
            job = new_job(store)
            walk_to(store, job.id, JobStatus.COMPLETED)
        failed = new_job(store)
        walk_to(store, failed.id, JobStatus.FAILED)
        new_job(store)

        stats = store.statistics()

        assert stats['total'] == 4
        assert stats['by_status']['completed'] == 2
        assert stats['by_status']['failed'] == 1
        assert stats['by_status']['pending'] == 1
        assert stats['success_rate'] == pytest.approx(2 / 3)
        assert stats['avg_duration_seconds'] is not None
        assert stats['throughput_per_hour'] == pytest.approx(2 / 24)

    def test_statistics_empty(self, store):
        stats = store.statistics()
        assert stats['total'] == 0
        assert stats['success_rate'] is None
        assert stats['avg_duration_seconds'] is None


def run_concurrently(target, args_list):
    """Start one thread per argument tuple behind a barrier and collect results or errors."""
    barrier = threading.Barrier(len(args_list))
    outcomes = [None] * len(args_list)

    def _run(index, args):
        barrier.wait()
        try:
            outcomes[index] = target(*args)
        except Exception as exc:
            outcomes[index] = exc

    threads = [threading.Thread(target=_run, args=(i, args)) for i, args in enumerate(args_list)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(30)
    return outcomes


class TestConcurrentUpdates:

    def test_racing_transitions_commit_once(self, store, events_for):
        job = walk_to(store, new_job(store).id, JobStatus.RUNNING)

        outcomes = run_concurrently(store.update_status, [(job.id, JobStatus.ANALYZING)] * 4)

        committed = [o for o in outcomes if not isinstance(o, Exception)]
        rejected = [o for o in outcomes if isinstance(o, InvalidTransitionError)]
        assert len(committed) == 1
        assert len(rejected) == 3
        statuses = [e['status'] for e in events_for(job.id, 'job_status')]
        assert statuses.count('analyzing') == 1

    def test_progress_updates_serialize(self, store, events_for):
        job = walk_to(store, new_job(store).id, JobStatus.RUNNING)
        version_before = store.get_by_id(job.id).version

        def report(start):
            for value in range(start, 90, 8):
                store.update_progress(job.id, value)

        run_concurrently(report, [(start,) for start in range(1, 9)])

        record = store.get_by_id(job.id)
        assert record.progress == 89
        versions = [e['version'] for e in events_for(job.id, 'job_progress')]
        assert len(versions) == sum(len(range(start, 90, 8)) for start in range(1, 9))
        assert versions == sorted(versions)
        assert versions[-1] == record.version
        # one bump per committed increase, none lost
        assert record.version - version_before == len(set(versions) - {version_before})

    def test_result_merges_are_not_lost(self, store):
        job = new_job(store)

        run_concurrently(store.update_results, [(job.id, {f"key{i}": i}) for i in range(8)])

        record = store.get_by_id(job.id)
        assert record.results == {f"key{i}": i for i in range(8)}
        assert record.version == 1 + 8
