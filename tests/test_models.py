import pytest

from datacollector.models import (
    JOB_STATE_TRANSITIONS,
    STAGE_CHAIN,
    TERMINAL_STATES,
    JobData,
    JobPriority,
    JobStatus,
    JobType,
    is_terminal,
    is_valid_transition,
    parse_priority,
)


class TestTransitionTable:

    def test_every_status_has_an_entry(self):
        assert set(JOB_STATE_TRANSITIONS) == set(JobStatus)

    def test_terminal_states_have_no_exits(self):
        for status in TERMINAL_STATES:
            assert JOB_STATE_TRANSITIONS[status] == frozenset()
            assert is_terminal(status)

    def test_pending_cannot_skip_to_completed(self):
        assert not is_valid_transition(JobStatus.PENDING, JobStatus.COMPLETED)
        assert not is_valid_transition(JobStatus.PENDING, JobStatus.FAILED)
        assert is_valid_transition(JobStatus.PENDING, JobStatus.RUNNING)
        assert is_valid_transition(JobStatus.PENDING, JobStatus.CANCELLED)

    def test_stage_chain_is_a_valid_path(self):
        for current, following in zip(STAGE_CHAIN, STAGE_CHAIN[1:]):
            assert is_valid_transition(current, following)

    def test_completed_only_reachable_from_indexing(self):
        sources = [s for s in JobStatus if is_valid_transition(s, JobStatus.COMPLETED)]
        assert sources == [JobStatus.INDEXING]

    @pytest.mark.parametrize("status", [s for s in JobStatus if s not in TERMINAL_STATES and s != JobStatus.PENDING])
    def test_working_states_can_fail_or_cancel(self, status):
        assert is_valid_transition(status, JobStatus.FAILED)
        assert is_valid_transition(status, JobStatus.CANCELLED)

    def test_no_backwards_moves(self):
        for index, status in enumerate(STAGE_CHAIN):
            for earlier in STAGE_CHAIN[:index]:
                assert not is_valid_transition(status, earlier)


class TestPriority:

    @pytest.mark.parametrize("value,expected", [
        (None, JobPriority.NORMAL),
        ("high", JobPriority.HIGH),
        ("URGENT", JobPriority.URGENT),
        (1, JobPriority.LOW),
        ("3", JobPriority.HIGH),
        ("bogus", JobPriority.NORMAL),
        (42, JobPriority.NORMAL),
    ])
    def test_parse_priority(self, value, expected):
        assert parse_priority(value) == expected


class TestJobData:

    def test_from_payload_reads_camel_case_fields(self):
        data = JobData.from_payload({
            'id': 'abc',
            'type': 'collection',
            'status': 'pending',
            'query': 'solar panels',
            'progress': 0,
            'userId': 'user-1',
            'metadata': {'options': {'priority': 'high', 'maxResults': 10}},
            'createdAt': '2026-01-02T03:04:05',
        })

        assert data.type == JobType.COLLECTION
        assert data.user_id == 'user-1'
        assert data.options == {'priority': 'high', 'maxResults': 10}
        assert data.priority == JobPriority.HIGH
        assert data.created_at.year == 2026

    def test_missing_user_falls_back_to_anonymous(self):
        data = JobData.from_payload({'id': 'abc', 'type': 'processing', 'query': ''})
        assert data.user_id == 'anonymous'
        assert data.options == {}
