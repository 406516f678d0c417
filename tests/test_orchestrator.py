import pytest
from rq.job import Job as RQJob
from rq.job import JobStatus as RQJobStatus

from datacollector.cancellation import cancel_key
from datacollector.cleanup import cleanup_jobs
from datacollector.errors import JobNotFoundError, ValidationError
from datacollector.models import JobStatus


def submit_collection(engine, query='lithium recycling', user_id='alice', **options):
    return engine.submit('collection', query, user_id=user_id, metadata={'options': options})


class TestSubmit:

    def test_submit_persists_and_enqueues(self, engine, redis_client):
        result = submit_collection(engine, maxResults=20)

        assert result['status'] == 'pending'
        assert result['userId'] == 'alice'
        assert result['queuePosition'] == 1
        assert result['estimatedStartTime']
        assert engine.get_by_id(result['id']).status == JobStatus.PENDING
        assert RQJob.fetch(result['id'], connection=redis_client).get_status() == RQJobStatus.QUEUED
        assert engine.queue_stats()['collection']['waiting'] == 1

    @pytest.mark.parametrize("job_type,query,metadata", [
        ('collection', '', None),
        ('collection', 'ok', {'options': {'maxResults': 0}}),
        ('processing', 'ok', {'options': {'downloadUrls': []}}),
        ('processing', '', {'options': {'downloadUrls': ['https://example.org/a.pdf']}}),
        ('processing', '   ', {'options': {'downloadUrls': ['https://example.org/a.pdf']}}),
        ('processing', 'x' * 1001, {'options': {'downloadUrls': ['https://example.org/a.pdf']}}),
        ('indexing', 'ok', None),
        ('teleport', 'ok', None),
        ('collection', 42, None),
        ('collection', 'ok', ['not', 'a', 'dict']),
    ])
    def test_invalid_submissions_are_rejected_up_front(self, engine, job_type, query, metadata):
        with pytest.raises(ValidationError):
            engine.submit(job_type, query, user_id='bob', metadata=metadata)

        jobs, total = engine.get_by_user('bob')
        assert total == 0
        assert all(stats['waiting'] == 0 for stats in engine.queue_stats().values())

    def test_query_at_length_limit_is_accepted(self, engine):
        result = engine.submit('processing', 'x' * 1000,
                               metadata={'options': {'downloadUrls': ['https://example.org/a.pdf']}})

        assert len(engine.get_by_id(result['id']).query) == 1000

    def test_enqueue_failure_removes_record(self, engine, monkeypatch):
        def refuse(payload):
            raise ConnectionError("redis unavailable")

        monkeypatch.setattr(engine.queue, 'submit', refuse)

        with pytest.raises(ConnectionError):
            submit_collection(engine, user_id='carol')

        assert engine.get_by_user('carol') == ([], 0)


class TestCancel:

    def test_cancel_pending_job(self, engine):
        result = submit_collection(engine)

        assert engine.cancel(result['id'], 'changed my mind') is True

        record = engine.get_by_id(result['id'])
        assert record.status == JobStatus.CANCELLED
        assert engine.queue_stats()['collection']['waiting'] == 0

    def test_cancelled_job_never_executes(self, engine):
        result = submit_collection(engine)
        engine.cancel(result['id'])

        ran = engine.processor.execute_job(engine.get_by_id(result['id']).to_payload())

        assert ran is False
        assert engine.get_by_id(result['id']).status == JobStatus.CANCELLED

    def test_cancel_finished_job(self, engine):
        result = submit_collection(engine)
        engine.processor.execute_job(engine.get_by_id(result['id']).to_payload())

        assert engine.cancel(result['id']) is False

    def test_cancel_unknown_job(self, engine):
        with pytest.raises(JobNotFoundError):
            engine.cancel('missing')

    def test_cancel_picked_up_job_raises_flag(self, engine, redis_client):
        result = submit_collection(engine)
        RQJob.fetch(result['id'], connection=redis_client).set_status(RQJobStatus.STARTED)

        assert engine.cancel(result['id'], 'stop') is True

        assert redis_client.get(cancel_key(result['id'])) == b'stop'
        ran = engine.processor.execute_job(engine.get_by_id(result['id']).to_payload())
        assert ran is False
        assert engine.get_by_id(result['id']).status == JobStatus.CANCELLED


class TestEndToEnd:

    def test_submit_execute_and_inspect(self, engine):
        result = submit_collection(engine)

        assert engine.processor.execute_job(engine.get_by_id(result['id']).to_payload()) is True

        jobs, total = engine.get_by_user('alice')
        assert total == 1
        assert jobs[0].status == JobStatus.COMPLETED
        assert jobs[0].progress == 100
        events = engine.get_events(result['id'])
        assert events[0]['message'] == 'Job created and queued'
        assert events[-1]['status'] == 'completed'
        assert engine.statistics()['by_status']['completed'] == 1
        assert engine.processor_health()['processor_stats']['success_count'] == 1


class TestCleanup:

    def test_cleanup_jobs(self, app, engine, backdate):
        old = submit_collection(engine)
        engine.cancel(old['id'])
        backdate(old['id'], days=45)
        recent = submit_collection(engine)

        deleted, trimmed = cleanup_jobs(app)

        assert deleted == 1
        assert trimmed == 0
        assert engine.get_by_id(old['id']) is None
        assert engine.get_by_id(recent['id']) is not None


class TestJobDetails:

    def test_details_combine_record_and_queue(self, engine):
        result = submit_collection(engine)

        details = engine.job_details(result['id'])

        assert details['status'] == 'pending'
        assert details['queue']['status'] == 'queued'
        assert details['queue']['position'] == 1

    def test_details_after_queue_entry_is_gone(self, engine):
        result = submit_collection(engine)
        engine.cancel(result['id'])

        details = engine.job_details(result['id'])

        assert details['status'] == 'cancelled'
        assert details['queue'] is None

    def test_unknown_job(self, engine):
        with pytest.raises(JobNotFoundError):
            engine.job_details('missing')
