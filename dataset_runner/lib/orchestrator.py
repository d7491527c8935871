"""End-to-end execution of a dataset.

One execution runs as a single sequential task:

    pending -> running -> paginate primary query
                       -> extract ids -> batched secondary queries -> merge
                       -> completed | failed

Every failure inside a run becomes one terminal ``failed`` write with a
structured ``error_detail``. Nothing raised during a run escapes to the
caller that triggered it.

Example:
    store = JsonFileExecutionStore()
    orchestrator = ExecutionOrchestrator(store)

    execution_id = await orchestrator.trigger(dataset)   # returns immediately
    record = await orchestrator.execute(dataset)         # runs inline
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from dataset_runner.lib.auth import SourceCredentials, build_request_headers
from dataset_runner.lib.batcher import enrich
from dataset_runner.lib.client import GraphQLClient
from dataset_runner.lib.errors import RunnerError, StateTransitionError
from dataset_runner.lib.extract import extract_ids
from dataset_runner.lib.logging import ExecutionLogger, get_execution_logger
from dataset_runner.lib.merge import merge_results
from dataset_runner.lib.models import (
    DatasetDefinition,
    ExecutionRecord,
    ExecutionStatus,
    utc_now,
)
from dataset_runner.lib.pagination import ApiCallCounter, PaginationConfig, paginate
from dataset_runner.lib.settings import RunnerSettings
from dataset_runner.lib.store import ExecutionStore

logger = logging.getLogger(__name__)

__all__ = ["ExecutionOrchestrator", "ClientFactory", "describe_error"]

ClientFactory = Callable[[SourceCredentials], GraphQLClient]


def describe_error(exc: BaseException) -> Dict[str, Any]:
    """Structured error detail for a failed execution record."""
    if isinstance(exc, RunnerError):
        return exc.to_dict()
    return {
        "error_type": type(exc).__name__,
        "message": str(exc) or type(exc).__name__,
        "details": {},
        "suggestion": None,
    }


def _error_message(exc: BaseException) -> str:
    detail = describe_error(exc)
    return f"{detail['error_type']}: {detail['message']}"


class ExecutionOrchestrator:
    """Runs dataset executions and owns their records while they run.

    Args:
        store: Execution record store shared with pollers
        settings: Runner settings (pagination, batching, HTTP)
        client_factory: Builds an upstream client from credentials
    """

    def __init__(
        self,
        store: ExecutionStore,
        *,
        settings: Optional[RunnerSettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.store = store
        self.settings = settings or RunnerSettings()
        self._client_factory = client_factory or self._default_client
        self._tasks: Set["asyncio.Task[None]"] = set()

    def _default_client(self, credentials: SourceCredentials) -> GraphQLClient:
        return GraphQLClient(
            credentials,
            timeout=self.settings.timeout,
            max_retries=self.settings.max_retries,
            backoff_factor=self.settings.backoff_factor,
        )

    def _prepare(self, dataset: DatasetDefinition) -> str:
        # Raises ConfigurationError before any record exists
        dataset.credentials.require_complete()
        build_request_headers(dataset.credentials)
        return self.store.create(dataset.id)

    async def trigger(self, dataset: DatasetDefinition) -> str:
        """Start an execution in the background.

        Returns:
            The new execution id

        Raises:
            ConfigurationError: If the dataset's credentials are unusable
            StorageError: If the execution record cannot be created
        """
        execution_id = self._prepare(dataset)
        task = asyncio.get_running_loop().create_task(
            self.run(execution_id, dataset),
            name=f"execution-{execution_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Triggered execution %s for dataset %s", execution_id, dataset.id)
        return execution_id

    async def execute(self, dataset: DatasetDefinition) -> ExecutionRecord:
        """Run an execution to completion and return its final record."""
        execution_id = self._prepare(dataset)
        await self.run(execution_id, dataset)
        return self.store.get(execution_id)

    @property
    def active_executions(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every background execution to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def run(self, execution_id: str, dataset: DatasetDefinition) -> None:
        """Drive one execution to a terminal state."""
        log = get_execution_logger(__name__, execution_id=execution_id, dataset_id=dataset.id)
        counter = ApiCallCounter()

        try:
            self.store.update(
                execution_id,
                status=ExecutionStatus.RUNNING,
                metadata={"started_at": utc_now().isoformat()},
            )
            log.info("Execution started")
            rows, truncated = await self._extract(dataset, counter, log)
        except asyncio.CancelledError as exc:
            self._record_failure(execution_id, exc, counter, log)
            raise
        except Exception as exc:
            self._record_failure(execution_id, exc, counter, log)
            return

        try:
            self._record_success(execution_id, rows, counter, log, truncated=truncated)
        except StateTransitionError as exc:
            log.warning("Execution was finalized elsewhere; result discarded: %s", exc.message)
        except Exception as exc:
            log.exception("Could not store execution result")
            self._record_failure(execution_id, exc, counter, log)

    async def _extract(
        self,
        dataset: DatasetDefinition,
        counter: ApiCallCounter,
        log: ExecutionLogger,
    ) -> Tuple[List[Dict[str, Any]], bool]:
        """Fetch, enrich and merge. Returns the rows and whether max_pages cut them short."""
        client = self._client_factory(dataset.credentials)
        try:
            primary = await paginate(
                client,
                dataset.query,
                PaginationConfig(
                    page_size=self.settings.page_size,
                    delay_seconds=self.settings.page_delay_seconds,
                    max_pages=self.settings.max_pages,
                ),
                dataset.resource,
                variables=dataset.variables,
                counter=counter,
            )
            rows = primary.records
            log.info("Primary query returned %d records in %d pages", len(rows), primary.pages_fetched)
            if primary.truncated:
                log.warning("Stopped at max_pages=%d; result is incomplete", self.settings.max_pages)

            enrichment = dataset.enrichment
            if enrichment is None:
                return rows, primary.truncated

            ids = extract_ids(rows, enrichment.id_path)
            log.info("Extracted %d ids using path '%s'", len(ids), enrichment.id_path)

            secondary = await enrich(
                ids,
                enrichment.query_template,
                client,
                batch_size=enrichment.batch_size or self.settings.batch_size,
                delay_seconds=(
                    enrichment.delay_seconds
                    if enrichment.delay_seconds is not None
                    else self.settings.batch_delay_seconds
                ),
                on_api_call=counter.record_secondary,
            )

            merged = merge_results(
                rows,
                secondary.records,
                enrichment.merge_strategy,
                primary_key=enrichment.primary_key,
                foreign_key=enrichment.foreign_key,
            )
            return merged, primary.truncated
        finally:
            await client.aclose()

    def _record_success(
        self,
        execution_id: str,
        rows: List[Dict[str, Any]],
        counter: ApiCallCounter,
        log: ExecutionLogger,
        *,
        truncated: bool = False,
    ) -> None:
        record = self.store.get(execution_id)
        end_time = utc_now()
        elapsed_ms = int((end_time - record.start_time).total_seconds() * 1000)

        metadata = counter.to_metadata()
        metadata["completed_at"] = end_time.isoformat()
        metadata["truncated"] = truncated

        self.store.update(
            execution_id,
            status=ExecutionStatus.COMPLETED,
            data=rows,
            row_count=len(rows),
            end_time=end_time,
            execution_time_ms=elapsed_ms,
            metadata=metadata,
        )
        log.info(
            "Execution completed with %d rows in %dms (%d API calls)",
            len(rows),
            elapsed_ms,
            counter.total,
        )

    def _record_failure(
        self,
        execution_id: str,
        exc: BaseException,
        counter: ApiCallCounter,
        log: ExecutionLogger,
    ) -> None:
        message = _error_message(exc)
        log.error("Execution failed: %s", message)

        try:
            record = self.store.get(execution_id)
            if record.is_terminal:
                log.warning("Execution already %s; failure not recorded", record.status.value)
                return

            end_time = utc_now()
            metadata = counter.to_metadata()
            metadata["failed_at"] = end_time.isoformat()

            self.store.update(
                execution_id,
                status=ExecutionStatus.FAILED,
                error_message=message,
                error_detail=describe_error(exc),
                end_time=end_time,
                execution_time_ms=int((end_time - record.start_time).total_seconds() * 1000),
                metadata=metadata,
            )
        except Exception:
            log.exception("Could not record failure for execution")
