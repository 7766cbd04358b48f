"""
Lifecycle Guard
===============

Owns one archive job from request entry to response end:

- Job state machine: PENDING -> LISTING -> FETCHING -> FINALIZING ->
  {COMPLETED | FAILED | TIMED_OUT | CANCELLED}; terminal states are sticky
- One deadline armed at job start; every phase awaits under the remaining
  budget
- Single-response invariant (``try_commit``)
- Cleanup callbacks (temp file removal) and tracked tasks, released exactly
  once on every exit path
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Set, TypeVar

from services.errors import JobTimeoutError
from services.models import FileEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JobState(str, Enum):
    PENDING = "PENDING"
    LISTING = "LISTING"
    FETCHING = "FETCHING"
    FINALIZING = "FINALIZING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = {
    JobState.COMPLETED,
    JobState.FAILED,
    JobState.TIMED_OUT,
    JobState.CANCELLED,
}

_FAILURE_STATES = {JobState.FAILED, JobState.TIMED_OUT, JobState.CANCELLED}

ALLOWED_TRANSITIONS = {
    JobState.PENDING: {JobState.LISTING} | _FAILURE_STATES,
    JobState.LISTING: {JobState.FETCHING} | _FAILURE_STATES,
    JobState.FETCHING: {JobState.FINALIZING} | _FAILURE_STATES,
    JobState.FINALIZING: {JobState.COMPLETED} | _FAILURE_STATES,
}


@dataclass
class ArchiveJob:
    """Request-scoped archive job state."""

    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    entries: List[FileEntry] = field(default_factory=list)
    processed_count: int = 0
    skipped_count: int = 0
    bytes_processed: int = 0
    response_committed: bool = False
    state: JobState = JobState.PENDING
    temp_path: Optional[Path] = None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def accounted(self) -> int:
        return self.processed_count + self.skipped_count

    @property
    def is_complete(self) -> bool:
        return self.accounted == len(self.entries)

    def _check_room(self):
        if self.accounted >= len(self.entries):
            raise RuntimeError(
                f"[{self.job_id}] All {len(self.entries)} entries already accounted for"
            )

    def record_processed(self, size: int) -> bool:
        """Count one archived entry. Returns True when every entry is accounted for."""
        self._check_room()
        self.processed_count += 1
        self.bytes_processed += size
        return self.is_complete

    def record_skipped(self) -> bool:
        """Count one skipped entry. Returns True when every entry is accounted for."""
        self._check_room()
        self.skipped_count += 1
        return self.is_complete

    def try_commit(self) -> bool:
        """Claim the right to send the response; True only for the first caller."""
        if self.response_committed:
            return False
        self.response_committed = True
        return True

    def summary(self) -> dict:
        return {
            "job_id": self.job_id,
            "state": self.state.value,
            "total": len(self.entries),
            "processed": self.processed_count,
            "skipped": self.skipped_count,
            "bytes": self.bytes_processed,
            "elapsed_s": round(time.monotonic() - self.started_at, 2),
        }


class LifecycleGuard:
    """Deadline, state transitions and cleanup for one ArchiveJob."""

    def __init__(self, job: ArchiveJob, deadline_seconds: float):
        self.job = job
        self.deadline_seconds = deadline_seconds
        self._deadline: Optional[float] = None
        self._cleanup_callbacks: List[Callable[[], None]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._cleaned_up = False
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    # =========================================================================
    # DEADLINE
    # =========================================================================

    def arm(self):
        """Start the job deadline."""
        self._deadline = asyncio.get_running_loop().time() + self.deadline_seconds

    def disarm(self):
        self._deadline = None

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, None when not armed."""
        if self._deadline is None:
            return None
        return max(self._deadline - asyncio.get_running_loop().time(), 0.0)

    async def within_deadline(self, awaitable: Awaitable[T]) -> T:
        """
        Await under the remaining job budget.

        Raises:
            JobTimeoutError: Deadline expired (state moves to TIMED_OUT)
        """
        try:
            return await asyncio.wait_for(awaitable, timeout=self.remaining())
        except asyncio.TimeoutError:
            self.transition(JobState.TIMED_OUT)
            raise JobTimeoutError(
                f"Job exceeded its {self.deadline_seconds:.0f}s deadline", job_id=self.job.job_id
            ) from None

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def state(self) -> JobState:
        return self.job.state

    def transition(self, state: JobState) -> bool:
        """
        Move the job to ``state``.

        Returns:
            False if the job is already terminal (terminal states are sticky)

        Raises:
            RuntimeError: On a transition the state machine does not allow
        """
        current = self.job.state
        if current.is_terminal:
            return False
        if state not in ALLOWED_TRANSITIONS[current]:
            raise RuntimeError(
                f"[{self.job.job_id}] Invalid transition {current.value} -> {state.value}"
            )
        self.job.state = state
        if state.is_terminal:
            self.disarm()
            self.logger.info(f"[{self.job.job_id}] {current.value} -> {state.value}")
        else:
            self.logger.debug(f"[{self.job.job_id}] {current.value} -> {state.value}")
        return True

    def try_commit(self) -> bool:
        return self.job.try_commit()

    # =========================================================================
    # RESOURCES
    # =========================================================================

    def track(self, task: asyncio.Task) -> asyncio.Task:
        """Cancel ``task`` on cleanup if it is still running."""
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def register_cleanup(self, callback: Callable[[], None]):
        """Run ``callback`` once at cleanup (LIFO)."""
        self._cleanup_callbacks.append(callback)

    def cancel(self, reason: str = "client disconnected"):
        """Abandon the job: CANCELLED (unless already terminal) and cleanup."""
        if self.transition(JobState.CANCELLED):
            self.logger.info(f"[{self.job.job_id}] Cancelled: {reason}")
        self.cleanup()

    def cleanup(self):
        """Cancel tracked tasks and run cleanup callbacks; idempotent."""
        if self._cleaned_up:
            return
        self._cleaned_up = True

        for task in list(self._tasks):
            if not task.done():
                task.cancel()

        while self._cleanup_callbacks:
            callback = self._cleanup_callbacks.pop()
            try:
                callback()
            except Exception as e:
                self.logger.error(f"[{self.job.job_id}] Cleanup step failed: {e}", exc_info=True)

        self.logger.debug(f"[{self.job.job_id}] Cleanup complete: {self.job.summary()}")

    @property
    def cleaned_up(self) -> bool:
        return self._cleaned_up
