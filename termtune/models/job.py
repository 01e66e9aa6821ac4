"""
Data model for download jobs and the cooperative cancellation token they carry.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum

from termtune.exceptions import InvalidJobTransition, JobCancelled


class JobState(str, Enum):
    """Lifecycle states of a download job."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobPriority(IntEnum):
    """Higher values are dequeued first."""

    PREFETCH = 0
    NOW_PLAYING = 1


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED})

_ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.QUEUED: frozenset({JobState.RUNNING, JobState.CANCELLED}),
    JobState.RUNNING: TERMINAL_STATES,
}


class CancelToken:
    """
    Cancellation flag shared between whoever owns a piece of work and the code
    doing it. Checked at well-defined points (e.g. before each chunk) rather
    than interrupting I/O.

    Tokens are single-use: once cancelled, they stay cancelled. A child token
    also reports cancellation when its parent is cancelled, but cancelling the
    child leaves the parent alone.
    """

    __slots__ = ("_event", "_parent")

    def __init__(self, parent: "CancelToken | None" = None) -> None:
        self._event = asyncio.Event()
        self._parent = parent

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)

    def cancel(self) -> None:
        """Signal that the operation should stop at its next checkpoint."""
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.is_cancelled

    def raise_if_cancelled(self) -> None:
        """Raises JobCancelled if cancellation has been requested."""
        if self.is_cancelled:
            raise JobCancelled("Operation was cancelled.")

    async def wait(self) -> None:
        """Blocks until the token (or one of its ancestors) is cancelled."""
        if self._parent is None:
            await self._event.wait()
            return
        waiters = {
            asyncio.ensure_future(self._event.wait()),
            asyncio.ensure_future(self._parent.wait()),
        }
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()


@dataclass(eq=False)
class Job:
    """One scheduled download task for a single track."""

    id: str
    source_ref: str
    priority: JobPriority = JobPriority.PREFETCH
    title: str = ""
    attempt: int = 0
    state: JobState = JobState.QUEUED
    error: str | None = None
    cached: bool = True
    cancel_token: CancelToken = field(default_factory=CancelToken, repr=False)
    created_at: float = field(default_factory=time.time, repr=False)
    finished_at: float | None = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def display_name(self) -> str:
        return self.title or self.id

    def transition(self, new_state: JobState) -> None:
        """
        Moves the job to a new state, enforcing the strict
        QUEUED -> RUNNING -> terminal ordering.

        Raises:
            InvalidJobTransition: If the transition is not allowed.
        """
        allowed = _ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidJobTransition(
                f"Job '{self.id}' cannot move from {self.state.value} "
                f"to {new_state.value}."
            )
        self.state = new_state
        if new_state in TERMINAL_STATES:
            self.finished_at = time.time()

    def cancel(self) -> bool:
        """
        Requests cancellation. A queued job is marked cancelled immediately; a
        running job only has its token set and is cancelled by its worker at
        the next checkpoint.

        Returns:
            False if the job had already finished.
        """
        if self.is_terminal:
            return False
        self.cancel_token.cancel()
        if self.state == JobState.QUEUED:
            self.transition(JobState.CANCELLED)
        return True
