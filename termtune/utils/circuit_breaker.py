"""
Circuit breaker guarding a remote audio source, so a dead host fails fast
instead of burning every job's retry budget on connection timeouts.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from enum import Enum

from termtune.exceptions import (
    JobCancelled,
    PermanentFetchError,
    TransientFetchError,
)

log = logging.getLogger(__name__)


class CircuitState(Enum):
    """States of the circuit breaker."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking fetches
    HALF_OPEN = "half_open"  # Letting a few trial fetches through


class CircuitOpenError(TransientFetchError):
    """Raised when the circuit for a source is open. Treated as a transient failure."""


class CircuitBreaker:
    """
    Per-source circuit breaker used as an async context manager around a fetch::

        async with breaker:
            await fetch(...)

    States:
    - CLOSED: fetches pass through; consecutive failures are counted
    - OPEN: fetches are rejected until `recovery_timeout` has passed
    - HALF_OPEN: at most `success_threshold` trial fetches run at once; that
      many successes close the circuit, any failure reopens it

    Permanent failures (a missing track, say) and cancellations say nothing
    about the health of the source and do not count against it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            name: Label for log messages (usually the host).
            failure_threshold: Consecutive failures before opening the circuit.
            recovery_timeout: Seconds to wait before allowing trial fetches.
            success_threshold: Consecutive successes needed to close the circuit.
            clock: Monotonic time source.
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._trials = 0
        self._opened_at: float | None = None
        self._trial_tasks: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._successes = 0

    def _admit(self) -> None:
        """Lets a fetch through or raises CircuitOpenError. Lock held."""
        if self._state == CircuitState.OPEN:
            waited = self._clock() - (self._opened_at or 0.0)
            if waited < self.recovery_timeout:
                raise CircuitOpenError(
                    f"Circuit for {self.name} is open; retrying the source in "
                    f"{self.recovery_timeout - waited:.0f}s."
                )
            log.info(
                f"[yellow]Circuit for {self.name} half-open "
                f"(testing recovery after {waited:.0f}s)[/yellow]"
            )
            self._state = CircuitState.HALF_OPEN
            self._successes = 0
            self._trials = 0

        if self._state == CircuitState.HALF_OPEN:
            if self._trials >= self.success_threshold:
                raise CircuitOpenError(
                    f"Circuit for {self.name} is testing recovery; try again shortly."
                )
            self._trials += 1

    async def _record(self, failed: bool, trial: bool) -> None:
        async with self._lock:
            if trial:
                self._trials = max(0, self._trials - 1)

            if not failed:
                self._failures = 0
                if self._state == CircuitState.HALF_OPEN:
                    self._successes += 1
                    if self._successes >= self.success_threshold:
                        log.info(f"[green]✓ Circuit for {self.name} closed.[/green]")
                        self._state = CircuitState.CLOSED
                        self._successes = 0
                return

            self._failures += 1
            if self._state == CircuitState.HALF_OPEN:
                log.warning(
                    f"[yellow]Circuit for {self.name}: recovery test failed, "
                    "reopening.[/yellow]"
                )
                self._failures = 0
                self._open()
            elif (
                self._state == CircuitState.CLOSED
                and self._failures >= self.failure_threshold
            ):
                log.error(
                    f"[red]✗ Circuit for {self.name} opened after "
                    f"{self._failures} consecutive failures. "
                    f"Fetches blocked for {self.recovery_timeout:.0f}s.[/red]"
                )
                self._open()

    async def __aenter__(self) -> "CircuitBreaker":
        async with self._lock:
            self._admit()
            # Trial slots are tracked per task so __aexit__ can release them.
            task = asyncio.current_task()
            if self._state == CircuitState.HALF_OPEN and task is not None:
                self._trial_tasks.add(task)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        task = asyncio.current_task()
        trial = task in self._trial_tasks
        self._trial_tasks.discard(task)
        if exc_type is not None and issubclass(
            exc_type, (PermanentFetchError, JobCancelled, asyncio.CancelledError)
        ):
            if trial:
                async with self._lock:
                    self._trials = max(0, self._trials - 1)
            return False
        await self._record(failed=exc_type is not None, trial=trial)
        return False
