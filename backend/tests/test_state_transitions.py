"""State transition tests for GenerationJob model.

Tests focus on validating the job lifecycle state machine:
- Valid transitions between states
- Invalid transitions are rejected with clear error messages
- Terminal states are never overwritten
- finish() applies callback statuses, including callbacks racing the start
"""

from uuid import uuid4

import pytest

from blumpo.models.generation_job import GenerationJob, InvalidStateTransition, JobStatus


def _job(status: JobStatus = JobStatus.QUEUED) -> GenerationJob:
    return GenerationJob(user_id=uuid4(), status=status, formats=["1:1"])


def test_valid_state_transitions():
    """Happy path: queued → running → succeeded, with timestamps set."""
    job = _job()

    job.mark_running()
    assert job.status == JobStatus.RUNNING
    assert job.started_at is not None

    job.mark_succeeded()
    assert job.status == JobStatus.SUCCEEDED
    assert job.completed_at is not None
    assert job.is_terminal


def test_mark_running_requires_queued():
    job = _job(JobStatus.RUNNING)

    with pytest.raises(InvalidStateTransition) as exc_info:
        job.mark_running()

    assert "RUNNING" in str(exc_info.value)
    assert "QUEUED" in str(exc_info.value)


def test_mark_succeeded_requires_running():
    job = _job()

    with pytest.raises(InvalidStateTransition):
        job.mark_succeeded()
    assert job.status == JobStatus.QUEUED


@pytest.mark.parametrize("status", [JobStatus.QUEUED, JobStatus.RUNNING])
def test_failed_reachable_from_any_non_terminal_state(status):
    job = _job(status)

    job.mark_failed("TIMEOUT", "Generation exceeded maximum wait time of 420 seconds")

    assert job.status == JobStatus.FAILED
    assert job.error_code == "TIMEOUT"
    assert job.error_message.startswith("Generation exceeded")


@pytest.mark.parametrize(
    "terminal", [JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED]
)
def test_terminal_states_are_never_overwritten(terminal):
    """A finished job rejects every further terminal transition."""
    job = _job(terminal)

    with pytest.raises(InvalidStateTransition):
        job.mark_failed("TIMEOUT")
    with pytest.raises(InvalidStateTransition):
        job.mark_canceled()
    with pytest.raises(InvalidStateTransition):
        job.finish(JobStatus.FAILED, "WEBHOOK_ERROR", "late")

    assert job.status == terminal


def test_finish_from_queued_moves_through_running():
    """A callback arriving before the start claim still follows the forward path."""
    job = _job()

    job.finish(JobStatus.SUCCEEDED)

    assert job.status == JobStatus.SUCCEEDED
    assert job.started_at is not None
    assert job.completed_at is not None


def test_finish_canceled_keeps_engine_error():
    job = _job(JobStatus.RUNNING)

    job.finish(JobStatus.CANCELED, "USER_CANCELED", "Canceled in the engine")

    assert job.status == JobStatus.CANCELED
    assert job.error_code == "USER_CANCELED"
    assert job.error_message == "Canceled in the engine"


def test_finish_failed_without_code_uses_generic_code():
    job = _job(JobStatus.RUNNING)

    job.finish(JobStatus.FAILED)

    assert job.error_code == "GENERATION_FAILED"


def test_finish_rejects_non_terminal_status():
    job = _job(JobStatus.RUNNING)

    with pytest.raises(InvalidStateTransition, match="not a terminal status"):
        job.finish(JobStatus.RUNNING)
