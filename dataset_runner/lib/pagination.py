"""Cursor pagination over GraphQL connections.

Connections follow the ``pageInfo { hasNextPage endCursor }`` convention:
each request passes the previous page's ``endCursor`` as ``$after`` until
``hasNextPage`` is false.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from dataset_runner.lib.client import GraphQLClient, PageResult, extract_query_cost
from dataset_runner.lib.errors import PaginationError

logger = logging.getLogger(__name__)

__all__ = [
    "ApiCallCounter",
    "CursorPaginationState",
    "PaginatedResult",
    "PaginationConfig",
    "paginate",
]


@dataclass
class PaginationConfig:
    """Configuration for connection pagination.

    Examples:
        # Defaults: 250 records per page, 0.5s between pages
        config = PaginationConfig()

        # Small pages, no delay, stop after 10 pages
        config = PaginationConfig(page_size=50, delay_seconds=0, max_pages=10)
    """

    page_size: int = 250
    page_size_param: str = "first"
    delay_seconds: float = 0.5
    max_pages: Optional[int] = None


@dataclass
class ApiCallCounter:
    """API call accounting for one execution.

    Owned by the orchestrator and passed to each component that talks to
    the upstream API.
    """

    primary_calls: int = 0
    secondary_calls: int = 0
    pages_fetched: int = 0
    enrichment_batches: int = 0
    query_cost: float = 0.0

    @property
    def total(self) -> int:
        return self.primary_calls + self.secondary_calls

    def _add_cost(self, response: Any) -> None:
        cost = extract_query_cost(response)
        if cost is not None:
            self.query_cost += cost

    def record_primary(self, response: Any) -> None:
        self.primary_calls += 1
        self.pages_fetched += 1
        self._add_cost(response)

    def record_secondary(self, response: Any) -> None:
        self.secondary_calls += 1
        self.enrichment_batches += 1
        self._add_cost(response)

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "api_call_count": self.total,
            "primary_calls": self.primary_calls,
            "secondary_calls": self.secondary_calls,
            "pages_fetched": self.pages_fetched,
            "enrichment_batches": self.enrichment_batches,
            "query_cost": self.query_cost,
        }


class CursorPaginationState:
    """State for GraphQL cursor pagination.

    Typical pattern:
        products(first: 250)               -> pageInfo {hasNextPage: true, endCursor: "abc"}
        products(first: 250, after: "abc") -> pageInfo {hasNextPage: false}
    """

    def __init__(
        self,
        config: PaginationConfig,
        base_variables: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.config = config
        self.base_variables = dict(base_variables or {})
        self.cursor: Optional[str] = None
        self.pages = 0
        self._has_next = True
        self._max_pages_reached = False

    def should_fetch_more(self) -> bool:
        if not self._has_next:
            return False
        if self.config.max_pages and self.pages >= self.config.max_pages:
            self._max_pages_reached = True
            return False
        return True

    def build_variables(self) -> Dict[str, Any]:
        variables = dict(self.base_variables)
        variables[self.config.page_size_param] = self.config.page_size
        return variables

    def on_response(self, page: PageResult) -> bool:
        """Advance past ``page``.

        Returns:
            True if there are more pages to fetch

        Raises:
            PaginationError: If the page claims more data but has no cursor
        """
        self.pages += 1
        if page.has_next_page and not page.next_cursor:
            raise PaginationError(
                "Upstream reported hasNextPage without an endCursor",
                page=self.pages,
                cursor=self.cursor,
            )
        if page.has_next_page and page.next_cursor == self.cursor:
            raise PaginationError(
                "Upstream returned the same cursor twice",
                page=self.pages,
                cursor=self.cursor,
            )
        self._has_next = page.has_next_page
        self.cursor = page.next_cursor if page.has_next_page else None
        return self._has_next

    def describe(self) -> str:
        if self.cursor:
            return f"(cursor={self.cursor[:20]}...)" if len(self.cursor) > 20 else f"(cursor={self.cursor})"
        return "(first page)"

    @property
    def max_pages_limit_hit(self) -> bool:
        """Check if max_pages limit was reached."""
        return self._max_pages_reached


@dataclass
class PaginatedResult:
    """All records of a paged connection."""

    records: List[Dict[str, Any]]
    counter: ApiCallCounter
    pages_fetched: int = 0
    truncated: bool = False
    field_name: Optional[str] = None


async def paginate(
    client: GraphQLClient,
    query: str,
    config: Optional[PaginationConfig] = None,
    resource: Optional[str] = None,
    *,
    variables: Optional[Dict[str, Any]] = None,
    counter: Optional[ApiCallCounter] = None,
) -> PaginatedResult:
    """Fetch every page of a connection.

    Args:
        client: Upstream client
        query: GraphQL document declaring ``$first`` and ``$after``
        config: Pagination options
        resource: Logical resource name used to locate the payload
        variables: Extra variables sent with every page
        counter: Accumulator for API calls (a new one is created if omitted)

    Returns:
        PaginatedResult with records in page order and the call counter
    """
    config = config or PaginationConfig()
    counter = counter if counter is not None else ApiCallCounter()
    state = CursorPaginationState(config, variables)

    records: List[Dict[str, Any]] = []
    field_name: Optional[str] = None

    while state.should_fetch_more():
        if state.pages and config.delay_seconds > 0:
            await asyncio.sleep(config.delay_seconds)

        page = await client.fetch_page(
            query,
            state.cursor,
            resource=resource,
            variables=state.build_variables(),
            on_response=counter.record_primary,
        )
        field_name = page.field_name
        records.extend(page.nodes)

        logger.info(
            "Fetched %d records %s (total: %d)",
            len(page.nodes),
            state.describe(),
            len(records),
        )

        state.on_response(page)

    if state.max_pages_limit_hit:
        logger.info("Reached max_pages limit of %d", config.max_pages)

    logger.info(
        "Successfully fetched %d records in %d pages",
        len(records),
        state.pages,
    )

    return PaginatedResult(
        records=records,
        counter=counter,
        pages_fetched=state.pages,
        truncated=state.max_pages_limit_hit,
        field_name=field_name,
    )
