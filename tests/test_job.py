"""Tests for job state transitions and cancellation tokens."""

import pytest

from termtune.exceptions import InvalidJobTransition, JobCancelled
from termtune.models.job import CancelToken, Job, JobState


def test_job_moves_queued_running_succeeded() -> None:
    job = Job(id="a", source_ref="src")
    job.transition(JobState.RUNNING)
    job.transition(JobState.SUCCEEDED)

    assert job.is_terminal
    assert job.finished_at is not None


@pytest.mark.parametrize(
    ("start", "target"),
    [
        (JobState.QUEUED, JobState.SUCCEEDED),
        (JobState.QUEUED, JobState.FAILED),
        (JobState.SUCCEEDED, JobState.RUNNING),
        (JobState.CANCELLED, JobState.QUEUED),
    ],
)
def test_invalid_transitions_raise(start: JobState, target: JobState) -> None:
    job = Job(id="a", source_ref="src", state=start)
    with pytest.raises(InvalidJobTransition):
        job.transition(target)


def test_cancel_queued_job_is_immediate() -> None:
    job = Job(id="a", source_ref="src")

    assert job.cancel()
    assert job.state == JobState.CANCELLED
    assert job.cancel_token.is_cancelled


def test_cancel_running_job_only_sets_token() -> None:
    job = Job(id="a", source_ref="src")
    job.transition(JobState.RUNNING)

    assert job.cancel()
    assert job.state == JobState.RUNNING
    with pytest.raises(JobCancelled):
        job.cancel_token.raise_if_cancelled()


def test_cancel_finished_job_returns_false() -> None:
    job = Job(id="a", source_ref="src")
    job.transition(JobState.RUNNING)
    job.transition(JobState.FAILED)

    assert not job.cancel()
    assert not job.cancel_token.is_cancelled


def test_display_name_falls_back_to_id() -> None:
    assert Job(id="abc", source_ref="src").display_name == "abc"
    assert Job(id="abc", source_ref="src", title="Song").display_name == "Song"


def test_token_stays_cancelled() -> None:
    token = CancelToken()
    token.cancel()
    token.cancel()
    assert token.is_cancelled
