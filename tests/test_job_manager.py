import pytest
from pydantic import ValidationError as PydanticValidationError

from research_relay.errors import InvalidTransitionError, NotFoundError, ValidationError
from research_relay.models.job import JobStatus, ResearchRequestData
from research_relay.services.job_manager import JobManager

RESULT = {"content": "x", "citations": ["https://example.com"], "model": "sonar"}


@pytest.fixture
def manager(dt_clock):
    return JobManager(max_jobs=100, retention_seconds=3600, clock=dt_clock)


def _data(query="What is the state of fusion research?"):
    return ResearchRequestData(query=query, session_id="session_1")


def test_create_job_starts_queued(manager, dt_clock):
    job = manager.create_job(_data())
    assert job.status == JobStatus.QUEUED
    assert job.progress == 0
    assert job.data.query == "What is the state of fusion research?"
    assert job.result is None and job.error is None
    assert job.created_at == dt_clock.now
    assert job.completed_at is None
    assert manager.job_count() == 1


def test_create_job_ids_are_unique(manager):
    ids = {manager.create_job(_data()).job_id for _ in range(20)}
    assert len(ids) == 20


def test_create_job_accepts_plain_dict(manager):
    job = manager.create_job({"query": "Plain dict query", "options": {"deep": True}})
    assert job.data.options.deep is True


@pytest.mark.parametrize("data", [None, {}, {"query": ""}, {"query": "   "}, {"options": {}}])
def test_create_job_rejects_missing_query(manager, data):
    with pytest.raises(ValidationError):
        manager.create_job(data)
    assert manager.job_count() == 0


def test_full_lifecycle_to_completed(manager, dt_clock):
    job = manager.create_job(_data())
    manager.update_job_status(job.job_id, "processing", progress=30)
    assert manager.get_job_status(job.job_id).progress == 30

    dt_clock.advance(5)
    manager.complete_job(job.job_id, RESULT)

    done = manager.get_job_status(job.job_id)
    assert done.status == JobStatus.COMPLETED
    assert done.result.content == "x"
    assert done.progress == 100
    assert done.completed_at == dt_clock.now


def test_lifecycle_to_failed(manager):
    job = manager.create_job(_data())
    manager.update_job_status(job.job_id, JobStatus.PROCESSING)
    manager.fail_job(job.job_id, "Perplexity API error: HTTP 500")

    failed = manager.get_job_status(job.job_id)
    assert failed.status == JobStatus.FAILED
    assert failed.error == "Perplexity API error: HTTP 500"
    assert failed.result is None
    assert failed.completed_at is not None


def _job_in(manager, status):
    job = manager.create_job(_data())
    if status == JobStatus.QUEUED:
        return job.job_id
    manager.update_job_status(job.job_id, JobStatus.PROCESSING)
    if status == JobStatus.COMPLETED:
        manager.complete_job(job.job_id, RESULT)
    elif status == JobStatus.FAILED:
        manager.fail_job(job.job_id, "boom")
    return job.job_id


@pytest.mark.parametrize("start, target", [
    (JobStatus.QUEUED, JobStatus.QUEUED),
    (JobStatus.QUEUED, JobStatus.COMPLETED),
    (JobStatus.QUEUED, JobStatus.FAILED),
    (JobStatus.PROCESSING, JobStatus.QUEUED),
    (JobStatus.PROCESSING, JobStatus.PROCESSING),
    (JobStatus.COMPLETED, JobStatus.PROCESSING),
    (JobStatus.COMPLETED, JobStatus.FAILED),
    (JobStatus.FAILED, JobStatus.PROCESSING),
    (JobStatus.FAILED, JobStatus.COMPLETED),
])
def test_invalid_transitions_are_rejected_and_leave_job_unchanged(manager, start, target):
    job_id = _job_in(manager, start)
    before = manager.get_job_status(job_id)

    fields = {"result": RESULT} if target == JobStatus.COMPLETED else {}
    with pytest.raises(InvalidTransitionError):
        manager.update_job_status(job_id, target, **fields)

    assert manager.get_job_status(job_id) == before


def test_completed_job_requires_result(manager):
    job_id = _job_in(manager, JobStatus.PROCESSING)
    with pytest.raises(ValidationError):
        manager.update_job_status(job_id, JobStatus.COMPLETED)
    assert manager.get_job_status(job_id).status == JobStatus.PROCESSING


def test_result_and_error_only_on_matching_state(manager):
    job_id = _job_in(manager, JobStatus.PROCESSING)
    with pytest.raises(ValidationError):
        manager.update_job_status(job_id, JobStatus.FAILED, error="x", result=RESULT)

    queued_id = _job_in(manager, JobStatus.QUEUED)
    with pytest.raises(ValidationError):
        manager.update_job_status(queued_id, JobStatus.PROCESSING, error="too early")
    assert manager.get_job_status(queued_id).status == JobStatus.QUEUED


def test_unknown_status_and_fields(manager):
    job_id = _job_in(manager, JobStatus.QUEUED)
    with pytest.raises(ValidationError):
        manager.update_job_status(job_id, "running")
    with pytest.raises(ValidationError):
        manager.update_job_status(job_id, JobStatus.PROCESSING, data={"query": "swap"})


def test_unknown_job_raises_not_found(manager):
    with pytest.raises(NotFoundError):
        manager.get_job_status("missing")
    with pytest.raises(NotFoundError):
        manager.update_job_status("missing", JobStatus.PROCESSING)
    with pytest.raises(NotFoundError):
        manager.delete_job("missing")


def test_get_job_status_returns_snapshot(manager):
    job_id = _job_in(manager, JobStatus.QUEUED)
    snapshot = manager.get_job_status(job_id)
    snapshot.status = JobStatus.FAILED
    snapshot.progress = 99

    stored = manager.get_job_status(job_id)
    assert stored.status == JobStatus.QUEUED
    assert stored.progress == 0


def test_job_data_is_immutable(manager):
    job = manager.create_job(_data())
    with pytest.raises(PydanticValidationError):
        job.data.query = "changed"


def test_update_progress(manager):
    job_id = _job_in(manager, JobStatus.PROCESSING)
    manager.update_progress(job_id, 55)
    assert manager.get_job_status(job_id).progress == 55

    with pytest.raises(ValidationError):
        manager.update_progress(job_id, 101)

    manager.complete_job(job_id, RESULT)
    manager.update_progress(job_id, 10)
    assert manager.get_job_status(job_id).progress == 100


def test_counts_listing_and_delete(manager):
    queued = _job_in(manager, JobStatus.QUEUED)
    _job_in(manager, JobStatus.PROCESSING)
    _job_in(manager, JobStatus.COMPLETED)
    _job_in(manager, JobStatus.FAILED)

    assert manager.get_job_counts() == {"queued": 1, "processing": 1, "completed": 1, "failed": 1}
    assert [job.job_id for job in manager.list_jobs("queued")] == [queued]
    assert len(manager.list_jobs()) == 4

    manager.delete_job(queued)
    assert manager.job_count() == 3


def test_scan_stuck_jobs(manager, dt_clock):
    stuck = _job_in(manager, JobStatus.PROCESSING)
    _job_in(manager, JobStatus.COMPLETED)
    dt_clock.advance(700)
    fresh = _job_in(manager, JobStatus.QUEUED)

    stuck_ids = [job.job_id for job in manager.scan_stuck_jobs(600)]
    assert stuck_ids == [stuck]
    assert fresh not in stuck_ids


def test_terminal_jobs_expire_after_retention(manager, dt_clock):
    done = _job_in(manager, JobStatus.COMPLETED)
    live = _job_in(manager, JobStatus.PROCESSING)
    dt_clock.advance(3601)

    assert manager.prune_expired() == 1
    with pytest.raises(NotFoundError):
        manager.get_job_status(done)
    assert manager.get_job_status(live).status == JobStatus.PROCESSING


def test_max_jobs_evicts_oldest_finished_jobs_only(dt_clock):
    manager = JobManager(max_jobs=2, retention_seconds=None, clock=dt_clock)
    finished = _job_in(manager, JobStatus.FAILED)
    live = _job_in(manager, JobStatus.PROCESSING)
    newest = _job_in(manager, JobStatus.QUEUED)

    assert manager.job_count() == 2
    with pytest.raises(NotFoundError):
        manager.get_job_status(finished)

    # With nothing finished left to evict, unfinished jobs are kept over the limit.
    _job_in(manager, JobStatus.QUEUED)
    assert manager.job_count() == 3
    assert manager.get_job_status(live).status == JobStatus.PROCESSING
    assert manager.get_job_status(newest).status == JobStatus.QUEUED


@pytest.mark.parametrize("bad_result", [{"citations": []}, {"content": "x"}, "not a result"])
def test_malformed_result_raises_typed_error(manager, bad_result):
    job_id = _job_in(manager, JobStatus.PROCESSING)

    with pytest.raises(ValidationError):
        manager.complete_job(job_id, bad_result)

    assert manager.get_job_status(job_id).status == JobStatus.PROCESSING
