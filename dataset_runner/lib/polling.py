"""Polling contract for execution consumers.

A consumer repeatedly reads an execution record until it reaches a
terminal state. Each read produces a PollSnapshot:

    LOADING      record not visible yet, or still pending
    IN_PROGRESS  record is running
    ERROR        the store could not be read (retryable)
    FAILED       execution failed (terminal; re-trigger to retry)
    SUCCESS      execution completed, data available (terminal)
    TIMED_OUT    max_poll_count reached without a terminal record (terminal)

Progress is derived from the poll count and capped at 99 until SUCCESS.
Polling only reads; stopping it never affects the running execution.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from dataset_runner.lib.errors import NotFoundError, StorageError
from dataset_runner.lib.models import ExecutionStatus, ExecutionSummary, utc_now
from dataset_runner.lib.settings import RunnerSettings, get_settings
from dataset_runner.lib.store import ExecutionStore, read_status

logger = logging.getLogger(__name__)

__all__ = [
    "ExecutionPoller",
    "PollSnapshot",
    "PollState",
    "PollingConfig",
    "STUCK_THRESHOLD",
    "compute_progress",
    "is_stuck",
]

STUCK_THRESHOLD = timedelta(minutes=3)


class PollState(Enum):
    """What a consumer should show for the current read."""

    LOADING = "loading"
    IN_PROGRESS = "in_progress"
    ERROR = "error"
    FAILED = "failed"
    SUCCESS = "success"
    TIMED_OUT = "timed_out"


@dataclass
class PollingConfig:
    """Polling bounds.

    Examples:
        # Default: poll every 2s for up to 4 minutes
        config = PollingConfig()

        # Tight loop for tests
        config = PollingConfig(max_poll_count=5, poll_interval=0)
    """

    max_poll_count: int = 120
    poll_interval: float = 2.0
    max_consecutive_errors: int = 3
    stuck_threshold: timedelta = STUCK_THRESHOLD

    @classmethod
    def from_settings(cls, settings: Optional[RunnerSettings] = None) -> "PollingConfig":
        """Bounds from ``RunnerSettings`` (the environment when omitted)."""
        settings = settings or get_settings()
        return cls(
            max_poll_count=settings.max_poll_count,
            poll_interval=settings.poll_interval,
            max_consecutive_errors=settings.max_consecutive_errors,
        )


def compute_progress(poll_count: int, max_poll_count: int) -> int:
    """Percentage shown while an execution is not yet successful (0-99)."""
    if max_poll_count <= 0:
        return 0
    # Halves round up; round() would send 12.5 to 12
    return min(int(poll_count / max_poll_count * 100 + 0.5), 99)


def is_stuck(
    summary: ExecutionSummary,
    *,
    threshold: timedelta = STUCK_THRESHOLD,
    now: Optional[datetime] = None,
) -> bool:
    """Check whether a non-terminal execution has been open too long."""
    if summary.status.is_terminal or summary.start_time is None:
        return False
    return (now or utc_now()) - summary.start_time > threshold


@dataclass(frozen=True)
class PollSnapshot:
    """Result of one poll."""

    state: PollState
    poll_count: int
    progress: int
    summary: Optional[ExecutionSummary] = None
    error: Optional[str] = None
    consecutive_errors: int = 0
    errors_exhausted: bool = False
    stuck: bool = False

    @property
    def is_terminal(self) -> bool:
        """Polling should stop."""
        if self.state in (PollState.SUCCESS, PollState.FAILED, PollState.TIMED_OUT):
            return True
        return self.state == PollState.ERROR and self.errors_exhausted

    @property
    def can_retry(self) -> bool:
        """The consumer may re-trigger a fresh execution."""
        return self.state in (PollState.FAILED, PollState.TIMED_OUT) or self.stuck or self.errors_exhausted

    @property
    def display_message(self) -> Optional[str]:
        """Message to show the user, preferring the structured error text."""
        if self.state == PollState.FAILED and self.summary is not None:
            detail = self.summary.error_detail or {}
            return detail.get("message") or self.summary.error_message
        if self.state == PollState.ERROR:
            return self.error
        if self.state == PollState.TIMED_OUT:
            return "Execution did not finish in time"
        if self.stuck:
            return "Execution appears to be stuck"
        return None


class ExecutionPoller:
    """Observe one execution until it reaches a terminal state.

    Example:
        poller = ExecutionPoller(store, execution_id)
        snapshot = await poller.poll(on_update=lambda s: print(s.state, s.progress))
        if snapshot.state == PollState.SUCCESS:
            rows = snapshot.summary.data

    Without a config, bounds come from ``RunnerSettings`` (``DATASET_RUNNER_MAX_POLL_COUNT``,
    ``DATASET_RUNNER_POLL_INTERVAL``, ``DATASET_RUNNER_MAX_CONSECUTIVE_ERRORS``).
    """

    def __init__(
        self,
        store: ExecutionStore,
        execution_id: str,
        config: Optional[PollingConfig] = None,
    ) -> None:
        self.store = store
        self.execution_id = execution_id
        self.config = config or PollingConfig.from_settings()
        self.poll_count = 0
        self.consecutive_errors = 0
        self.last: Optional[PollSnapshot] = None
        self._stopped = False

    def stop(self) -> None:
        """Stop polling after the current read."""
        self._stopped = True

    def observe(self) -> PollSnapshot:
        """Perform one read and return the resulting snapshot."""
        if self.last is not None and self.last.is_terminal:
            return self.last

        self.poll_count += 1
        progress = compute_progress(self.poll_count, self.config.max_poll_count)

        summary: Optional[ExecutionSummary] = None
        error: Optional[str] = None

        try:
            summary = read_status(self.store, self.execution_id)
        except NotFoundError:
            # Not visible yet right after creation
            self.consecutive_errors = 0
            state = PollState.LOADING
        except StorageError as exc:
            self.consecutive_errors += 1
            error = exc.message
            state = PollState.ERROR
            logger.warning(
                "Poll %d for execution %s failed (%d in a row): %s",
                self.poll_count,
                self.execution_id,
                self.consecutive_errors,
                exc.message,
            )
        else:
            self.consecutive_errors = 0
            state = {
                ExecutionStatus.PENDING: PollState.LOADING,
                ExecutionStatus.RUNNING: PollState.IN_PROGRESS,
                ExecutionStatus.COMPLETED: PollState.SUCCESS,
                ExecutionStatus.FAILED: PollState.FAILED,
            }[summary.status]

        if state == PollState.SUCCESS:
            progress = 100
        elif state != PollState.FAILED and self.poll_count >= self.config.max_poll_count:
            state = PollState.TIMED_OUT
            logger.warning(
                "Execution %s not finished after %d polls",
                self.execution_id,
                self.poll_count,
            )

        snapshot = PollSnapshot(
            state=state,
            poll_count=self.poll_count,
            progress=progress,
            summary=summary,
            error=error,
            consecutive_errors=self.consecutive_errors,
            errors_exhausted=self.consecutive_errors >= self.config.max_consecutive_errors,
            stuck=summary is not None and is_stuck(summary, threshold=self.config.stuck_threshold),
        )
        self.last = snapshot
        return snapshot

    async def poll(
        self,
        on_update: Optional[Callable[[PollSnapshot], None]] = None,
    ) -> PollSnapshot:
        """Poll until a terminal snapshot, or until stop() is called."""
        while True:
            snapshot = self.observe()
            if on_update is not None:
                on_update(snapshot)
            if snapshot.is_terminal or self._stopped:
                return snapshot
            await asyncio.sleep(self.config.poll_interval)
