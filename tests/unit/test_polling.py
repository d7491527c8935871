"""Unit tests for the polling contract.

Tests cover:
- State mapping from execution status
- Progress derived from poll count, capped below 100 until success
- Timeout after max_poll_count
- Store read errors and the consecutive-error cap
- Stuck detection and retry affordances
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from dataset_runner.lib.errors import StorageError
from dataset_runner.lib.models import ExecutionRecord, ExecutionStatus, ExecutionSummary, utc_now
from dataset_runner.lib.polling import (
    ExecutionPoller,
    PollingConfig,
    PollState,
    compute_progress,
    is_stuck,
)
from dataset_runner.lib.settings import RunnerSettings
from dataset_runner.lib.store import InMemoryExecutionStore


class FlakyStore(InMemoryExecutionStore):
    """Store whose reads fail a scripted number of times."""

    def __init__(self, failures=0):
        super().__init__()
        self.failures = failures

    def _load(self, execution_id):
        if self.failures:
            self.failures -= 1
            raise StorageError("Backend unavailable", operation="read", execution_id=execution_id)
        return super()._load(execution_id)


def _complete(store, execution_id):
    if store.get(execution_id).status == ExecutionStatus.PENDING:
        store.update(execution_id, status=ExecutionStatus.RUNNING)
    store.update(
        execution_id,
        status=ExecutionStatus.COMPLETED,
        data=[{"id": "1"}],
        row_count=1,
        end_time=utc_now(),
    )


# ============================================================================
# Progress helpers
# ============================================================================


class TestProgress:
    """Tests for compute_progress and is_stuck."""

    @pytest.mark.parametrize(
        "poll_count,max_poll_count,expected",
        [(0, 120, 0), (1, 120, 1), (60, 120, 50), (119, 120, 99), (120, 120, 99), (500, 120, 99), (3, 0, 0)],
    )
    def test_compute_progress(self, poll_count, max_poll_count, expected):
        assert compute_progress(poll_count, max_poll_count) == expected

    @pytest.mark.parametrize("poll_count,max_poll_count,expected", [(1, 8, 13), (3, 8, 38), (5, 8, 63)])
    def test_halves_round_up(self, poll_count, max_poll_count, expected):
        """12.5 shows as 13, not the 12 that banker's rounding gives."""
        assert compute_progress(poll_count, max_poll_count) == expected

    def test_running_past_threshold_is_stuck(self):
        summary = ExecutionSummary(
            execution_id="x",
            status=ExecutionStatus.RUNNING,
            start_time=utc_now() - timedelta(minutes=5),
        )
        assert is_stuck(summary)
        assert not is_stuck(summary, threshold=timedelta(minutes=10))

    def test_terminal_is_never_stuck(self):
        summary = ExecutionSummary(
            execution_id="x",
            status=ExecutionStatus.FAILED,
            start_time=utc_now() - timedelta(hours=1),
        )
        assert not is_stuck(summary)


# ============================================================================
# observe()
# ============================================================================


class TestObserve:
    """One read at a time."""

    def test_unknown_execution_is_loading(self):
        snapshot = ExecutionPoller(InMemoryExecutionStore(), "not-yet").observe()
        assert snapshot.state == PollState.LOADING
        assert snapshot.summary is None
        assert not snapshot.is_terminal

    def test_status_mapping(self):
        store = InMemoryExecutionStore()
        execution_id = store.create("ds-1")
        poller = ExecutionPoller(store, execution_id)

        assert poller.observe().state == PollState.LOADING
        store.update(execution_id, status="running")
        assert poller.observe().state == PollState.IN_PROGRESS
        _complete(store, execution_id)
        snapshot = poller.observe()

        assert snapshot.state == PollState.SUCCESS
        assert snapshot.progress == 100
        assert snapshot.summary.data == [{"id": "1"}]
        assert snapshot.is_terminal
        assert snapshot.poll_count == 3

    def test_progress_increases_while_running(self):
        store = InMemoryExecutionStore()
        execution_id = store.create("ds-1")
        store.update(execution_id, status="running")
        poller = ExecutionPoller(store, execution_id, PollingConfig(max_poll_count=10))

        progress = [poller.observe().progress for _ in range(5)]
        assert progress == [10, 20, 30, 40, 50]

    def test_failed_shows_structured_message(self):
        store = InMemoryExecutionStore()
        execution_id = store.create("ds-1")
        store.update(
            execution_id,
            status="failed",
            error_message="QueryError: GraphQL error: Throttled",
            error_detail={"error_type": "QueryError", "message": "GraphQL error: Throttled"},
            end_time=utc_now(),
        )

        snapshot = ExecutionPoller(store, execution_id).observe()

        assert snapshot.state == PollState.FAILED
        assert snapshot.is_terminal
        assert snapshot.can_retry
        assert snapshot.progress < 100
        assert snapshot.display_message == "GraphQL error: Throttled"

    def test_failed_without_detail_uses_error_message(self):
        store = InMemoryExecutionStore()
        execution_id = store.create("ds-1")
        store.update(execution_id, status="failed", error_message="boom", end_time=utc_now())

        assert ExecutionPoller(store, execution_id).observe().display_message == "boom"

    def test_times_out_after_max_polls(self):
        store = InMemoryExecutionStore()
        execution_id = store.create("ds-1")
        store.update(execution_id, status="running")
        poller = ExecutionPoller(store, execution_id, PollingConfig(max_poll_count=3))

        states = [poller.observe().state for _ in range(3)]

        assert states == [PollState.IN_PROGRESS, PollState.IN_PROGRESS, PollState.TIMED_OUT]
        assert poller.last.can_retry
        assert poller.last.display_message == "Execution did not finish in time"

    def test_success_on_last_poll_is_not_a_timeout(self):
        store = InMemoryExecutionStore()
        execution_id = store.create("ds-1")
        poller = ExecutionPoller(store, execution_id, PollingConfig(max_poll_count=2))

        poller.observe()
        _complete(store, execution_id)
        assert poller.observe().state == PollState.SUCCESS

    def test_terminal_snapshot_is_sticky(self):
        store = InMemoryExecutionStore()
        execution_id = store.create("ds-1")
        _complete(store, execution_id)
        poller = ExecutionPoller(store, execution_id)

        first = poller.observe()
        assert poller.observe() is first
        assert poller.poll_count == 1

    def test_read_error_then_recovery(self):
        store = FlakyStore()
        execution_id = store.create("ds-1")
        store.failures = 1
        poller = ExecutionPoller(store, execution_id)

        snapshot = poller.observe()
        assert snapshot.state == PollState.ERROR
        assert snapshot.display_message == "Backend unavailable"
        assert snapshot.consecutive_errors == 1
        assert not snapshot.is_terminal

        snapshot = poller.observe()
        assert snapshot.state == PollState.LOADING
        assert snapshot.consecutive_errors == 0

    def test_consecutive_errors_exhaust(self):
        store = FlakyStore(failures=10)
        poller = ExecutionPoller(store, "abc", PollingConfig(max_consecutive_errors=3))

        snapshots = [poller.observe() for _ in range(3)]

        assert [s.is_terminal for s in snapshots] == [False, False, True]
        assert snapshots[-1].errors_exhausted
        assert snapshots[-1].can_retry

    def test_stuck_execution_can_be_retried(self):
        store = InMemoryExecutionStore()
        record = ExecutionRecord(
            dataset_id="ds-1",
            status=ExecutionStatus.RUNNING,
            start_time=utc_now() - timedelta(minutes=5),
        )
        store._save(record)

        snapshot = ExecutionPoller(store, record.id).observe()

        assert snapshot.state == PollState.IN_PROGRESS
        assert snapshot.stuck
        assert snapshot.can_retry
        assert snapshot.display_message == "Execution appears to be stuck"


# ============================================================================
# poll()
# ============================================================================


class TestPoll:
    """The polling loop."""

    def test_polls_until_terminal(self):
        store = InMemoryExecutionStore()
        execution_id = store.create("ds-1")
        seen = []

        def on_update(snapshot):
            seen.append(snapshot.state)
            if len(seen) == 1:
                store.update(execution_id, status="running")
            elif len(seen) == 2:
                _complete(store, execution_id)

        async def _inner():
            with patch("dataset_runner.lib.polling.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
                poller = ExecutionPoller(store, execution_id, PollingConfig(poll_interval=2.0))
                snapshot = await poller.poll(on_update)
                return snapshot, mock_sleep

        snapshot, mock_sleep = asyncio.run(_inner())

        assert seen == [PollState.LOADING, PollState.IN_PROGRESS, PollState.SUCCESS]
        assert snapshot.state == PollState.SUCCESS
        assert mock_sleep.await_count == 2
        mock_sleep.assert_awaited_with(2.0)

    def test_stop_ends_polling_without_touching_execution(self):
        store = InMemoryExecutionStore()
        execution_id = store.create("ds-1")
        store.update(execution_id, status="running")
        poller = ExecutionPoller(store, execution_id, PollingConfig(poll_interval=0))

        def on_update(snapshot):
            if snapshot.poll_count == 2:
                poller.stop()

        snapshot = asyncio.run(poller.poll(on_update))

        assert snapshot.poll_count == 2
        assert snapshot.state == PollState.IN_PROGRESS
        assert store.get(execution_id).status == ExecutionStatus.RUNNING

    def test_times_out(self):
        store = InMemoryExecutionStore()
        execution_id = store.create("ds-1")
        poller = ExecutionPoller(store, execution_id, PollingConfig(max_poll_count=4, poll_interval=0))

        snapshot = asyncio.run(poller.poll())

        assert snapshot.state == PollState.TIMED_OUT
        assert snapshot.poll_count == 4
        assert snapshot.progress == 99


# ============================================================================
# Settings
# ============================================================================


class TestPollingSettings:
    """Polling bounds follow RunnerSettings when no config is given."""

    def test_from_settings(self):
        config = PollingConfig.from_settings(RunnerSettings(max_poll_count=7, poll_interval=0.25, max_consecutive_errors=2))

        assert config.max_poll_count == 7
        assert config.poll_interval == 0.25
        assert config.max_consecutive_errors == 2

    def test_default_poller_reads_environment(self, monkeypatch):
        monkeypatch.setenv("DATASET_RUNNER_MAX_POLL_COUNT", "2")
        monkeypatch.setenv("DATASET_RUNNER_POLL_INTERVAL", "0")
        store = InMemoryExecutionStore()
        execution_id = store.create("ds-1")
        poller = ExecutionPoller(store, execution_id)

        snapshot = asyncio.run(poller.poll())

        assert poller.config.max_poll_count == 2
        assert snapshot.state == PollState.TIMED_OUT
        assert snapshot.poll_count == 2
