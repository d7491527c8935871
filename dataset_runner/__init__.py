"""Asynchronous dataset executions over paginated GraphQL APIs.

Primary records are paged out of the upstream API, optionally enriched
with batched secondary lookups, and published through an execution record
that consumers poll until it is completed or failed.

Usage:
    from dataset_runner import ExecutionOrchestrator, JsonFileExecutionStore

    orchestrator = ExecutionOrchestrator(JsonFileExecutionStore())
    execution_id = await orchestrator.trigger(dataset)
"""

__version__ = "0.1.0"

from dataset_runner.lib.models import DatasetDefinition, ExecutionRecord, ExecutionStatus
from dataset_runner.lib.orchestrator import ExecutionOrchestrator
from dataset_runner.lib.polling import ExecutionPoller, PollState
from dataset_runner.lib.store import InMemoryExecutionStore, JsonFileExecutionStore

__all__ = [
    "__version__",
    "DatasetDefinition",
    "ExecutionOrchestrator",
    "ExecutionPoller",
    "ExecutionRecord",
    "ExecutionStatus",
    "InMemoryExecutionStore",
    "JsonFileExecutionStore",
    "PollState",
]
