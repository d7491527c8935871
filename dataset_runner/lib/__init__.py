"""Dataset runner library modules.

This package contains the extraction pipeline (client, pagination,
batching, merge), the execution record store, the orchestrator that ties
them together and the polling contract consumers use to observe it.
"""

from dataset_runner.lib.auth import SourceCredentials, TokenStyle, build_request_headers, resolve_endpoint
from dataset_runner.lib.batcher import EnrichmentResult, build_batches, enrich, render_query, secondary_nodes
from dataset_runner.lib.client import GraphQLClient, PageResult, resolve_payload_field
from dataset_runner.lib.env import expand_env_vars, load_env_file
from dataset_runner.lib.errors import (
    ConfigurationError,
    NotFoundError,
    PaginationError,
    QueryError,
    RunnerError,
    SchemaMismatchError,
    StateTransitionError,
    StorageError,
    TransportError,
    UpstreamError,
)
from dataset_runner.lib.extract import extract_ids
from dataset_runner.lib.logging import (
    ExecutionLogger,
    JSONFormatter,
    configure_logging,
    get_execution_logger,
    setup_logging,
)
from dataset_runner.lib.merge import merge_results
from dataset_runner.lib.models import (
    BatchRequest,
    DatasetDefinition,
    EnrichmentConfig,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionSummary,
    MergeStrategy,
)
from dataset_runner.lib.orchestrator import ExecutionOrchestrator
from dataset_runner.lib.pagination import ApiCallCounter, PaginatedResult, PaginationConfig, paginate
from dataset_runner.lib.polling import ExecutionPoller, PollingConfig, PollSnapshot, PollState
from dataset_runner.lib.settings import RunnerSettings, get_settings
from dataset_runner.lib.store import (
    ExecutionStore,
    InMemoryExecutionStore,
    JsonFileExecutionStore,
    read_latest,
    read_status,
    reset_stuck_executions,
)

__all__ = [
    # Auth
    "SourceCredentials",
    "TokenStyle",
    "build_request_headers",
    "resolve_endpoint",
    # Upstream
    "GraphQLClient",
    "PageResult",
    "resolve_payload_field",
    "ApiCallCounter",
    "PaginatedResult",
    "PaginationConfig",
    "paginate",
    # Enrichment
    "EnrichmentResult",
    "build_batches",
    "enrich",
    "render_query",
    "secondary_nodes",
    "extract_ids",
    "merge_results",
    # Models
    "BatchRequest",
    "DatasetDefinition",
    "EnrichmentConfig",
    "ExecutionRecord",
    "ExecutionStatus",
    "ExecutionSummary",
    "MergeStrategy",
    # Execution
    "ExecutionOrchestrator",
    "ExecutionPoller",
    "PollingConfig",
    "PollSnapshot",
    "PollState",
    # Store
    "ExecutionStore",
    "InMemoryExecutionStore",
    "JsonFileExecutionStore",
    "read_latest",
    "read_status",
    "reset_stuck_executions",
    # Errors
    "ConfigurationError",
    "NotFoundError",
    "PaginationError",
    "QueryError",
    "RunnerError",
    "SchemaMismatchError",
    "StateTransitionError",
    "StorageError",
    "TransportError",
    "UpstreamError",
    # Ambient
    "ExecutionLogger",
    "JSONFormatter",
    "RunnerSettings",
    "configure_logging",
    "expand_env_vars",
    "get_execution_logger",
    "get_settings",
    "load_env_file",
    "setup_logging",
]
