"""GraphQL client for the upstream API.

Issues authenticated POSTs to a per-tenant endpoint with:
- Retry with exponential backoff for 429/5xx and network failures
- Retry-After support when rate limited
- Structured errors (UpstreamError, TransportError, QueryError)
- Explicit payload resolution for paged connections

Example:
    from dataset_runner.lib.auth import SourceCredentials
    from dataset_runner.lib.client import GraphQLClient

    credentials = SourceCredentials(store_name="acme", access_token="${SHOPIFY_TOKEN}")
    async with GraphQLClient(credentials) as client:
        page = await client.fetch_page(PRODUCTS_QUERY, resource="Product")
        print(len(page.nodes), page.has_next_page, page.next_cursor)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx
import requests_toolbelt
import tenacity
from requests_toolbelt.utils.user_agent import user_agent
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from dataset_runner import __version__
from dataset_runner.lib.auth import SourceCredentials, build_request_headers, resolve_endpoint
from dataset_runner.lib.errors import (
    QueryError,
    SchemaMismatchError,
    TransportError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

__all__ = [
    "GraphQLClient",
    "PageResult",
    "RESOURCE_FIELDS",
    "RETRYABLE_STATUS_CODES",
    "ResponseHook",
    "connection_nodes",
    "extract_query_cost",
    "resolve_payload_field",
]

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

ResponseHook = Callable[[Dict[str, Any]], Any]

# Known logical resource names and the connection field they are returned under
RESOURCE_FIELDS: Dict[str, str] = {
    "Product": "products",
    "Customer": "customers",
    "Order": "orders",
    "Collection": "collections",
    "Inventory": "inventoryItems",
    "InventoryLevel": "inventoryLevels",
}

_USER_AGENT = user_agent(
    "dataset-runner",
    __version__,
    extras=[
        ("httpx", getattr(httpx, "__version__", "unknown")),
        ("tenacity", getattr(tenacity, "__version__", "unknown")),
        ("requests-toolbelt", getattr(requests_toolbelt, "__version__", "unknown")),
    ],
)


@dataclass
class PageResult:
    """One page of a paged connection."""

    payload: Dict[str, Any]  # the resolved connection object
    nodes: List[Dict[str, Any]]
    has_next_page: bool
    next_cursor: Optional[str]
    response: Dict[str, Any] = field(repr=False, default_factory=dict)
    field_name: Optional[str] = None

    @property
    def query_cost(self) -> Optional[float]:
        return extract_query_cost(self.response)


def extract_query_cost(response: Any) -> Optional[float]:
    """Read ``extensions.cost.actualQueryCost`` from a raw response."""
    if not isinstance(response, dict):
        return None
    cost = (response.get("extensions") or {}).get("cost") or {}
    value = cost.get("actualQueryCost")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


def _is_connection(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    has_items = isinstance(value.get("edges"), list) or isinstance(value.get("nodes"), list)
    return has_items and isinstance(value.get("pageInfo"), dict)


def resolve_payload_field(data: Dict[str, Any], resource: Optional[str] = None) -> str:
    """Find the field of ``data`` that holds the paged payload.

    Resolution order:
        1. Static map from logical resource name to field name
        2. Pluralized lowercase guess ("Product" -> "products")
        3. First field exposing both edges (or nodes) and pageInfo

    A field found by name in steps 1 or 2 must itself be a connection.

    Raises:
        SchemaMismatchError: If no field matches, or a named field is not
            a connection
    """
    if resource:
        candidates: List[str] = []
        if resource in RESOURCE_FIELDS:
            candidates.append(RESOURCE_FIELDS[resource])
        candidates.append(resource.lower() + "s")
        candidates.append(resource[:1].lower() + resource[1:] + "s")
        for name in candidates:
            if name not in data:
                continue
            if _is_connection(data[name]):
                return name
            raise SchemaMismatchError(
                f"Field '{name}' for resource '{resource}' is not a connection with edges and pageInfo",
                resource=resource,
                fields=list(data.keys()),
                details={"field": name},
            )

    for name, value in data.items():
        if _is_connection(value):
            if resource:
                logger.debug("Resolved payload for resource '%s' by shape: '%s'", resource, name)
            return name

    raise SchemaMismatchError(
        "Response payload shape not recognized",
        resource=resource,
        fields=list(data.keys()),
    )


def connection_nodes(connection: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten a connection's edges (or nodes) into a list of nodes."""
    edges = connection.get("edges")
    if isinstance(edges, list):
        return [edge["node"] for edge in edges if isinstance(edge, dict) and edge.get("node") is not None]
    nodes = connection.get("nodes")
    if isinstance(nodes, list):
        return [node for node in nodes if node is not None]
    return []


class GraphQLClient:
    """Async client for one upstream tenant.

    Args:
        credentials: Tenant credentials (endpoint and token)
        timeout: Request timeout in seconds
        max_retries: Attempts for retryable failures (1 disables retry)
        backoff_factor: Multiplier for exponential backoff between attempts
        headers: Extra request headers
        transport: Optional httpx transport (used by tests)
    """

    def __init__(
        self,
        credentials: SourceCredentials,
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_factor: float = 1.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.credentials = credentials
        self.endpoint = resolve_endpoint(credentials)
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self._headers = build_request_headers(credentials, extra_headers=headers)
        self._headers.setdefault("User-Agent", _USER_AGENT)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "GraphQLClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self._headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def execute(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        *,
        on_response: Optional[ResponseHook] = None,
    ) -> Dict[str, Any]:
        """POST a GraphQL document and return the decoded response.

        ``on_response`` is called with every decoded JSON object, including
        ones that carry a GraphQL error envelope, before errors are raised.

        Raises:
            UpstreamError: Non-success HTTP status (after retries for 429/5xx)
            TransportError: Network failure (after retries) or undecodable body
            QueryError: Response carries a GraphQL error envelope
        """
        body: Dict[str, Any] = {"query": query}
        if variables is not None:
            body["variables"] = variables

        response = await self._post_with_retry(body)

        try:
            result = response.json()
        except ValueError as exc:
            raise TransportError(
                "Upstream API returned a body that is not JSON",
                endpoint=self.endpoint,
                cause=exc,
            ) from exc

        if not isinstance(result, dict):
            raise SchemaMismatchError(
                f"Expected a JSON object from the upstream API, got {type(result).__name__}"
            )

        if on_response is not None:
            on_response(result)

        errors = result.get("errors")
        if errors:
            first = errors[0] if isinstance(errors, list) else errors
            message = first.get("message", str(first)) if isinstance(first, dict) else str(first)
            raise QueryError(message, errors=errors if isinstance(errors, list) else [errors])

        return result

    async def fetch_page(
        self,
        query: str,
        cursor: Optional[str] = None,
        *,
        resource: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        on_response: Optional[ResponseHook] = None,
    ) -> PageResult:
        """Fetch one page of a paged connection.

        Args:
            query: GraphQL document declaring ``$after`` (and usually ``$first``)
            cursor: ``endCursor`` of the previous page, None for the first page
            resource: Logical resource name used to locate the payload
            variables: Additional variables
            on_response: Called with the raw response (see ``execute``)

        Returns:
            PageResult with the page's nodes and continuation token
        """
        page_variables = dict(variables or {})
        page_variables["after"] = cursor

        result = await self.execute(query, page_variables, on_response=on_response)

        data = result.get("data")
        if not isinstance(data, dict):
            raise SchemaMismatchError(
                "Response has no data object",
                resource=resource,
                fields=list(result.keys()),
            )

        field_name = resolve_payload_field(data, resource)
        payload = data[field_name]
        page_info = payload.get("pageInfo") or {}

        return PageResult(
            payload=payload,
            nodes=connection_nodes(payload),
            has_next_page=bool(page_info.get("hasNextPage")),
            next_cursor=page_info.get("endCursor"),
            response=result,
            field_name=field_name,
        )

    async def _post_with_retry(self, body: Dict[str, Any]) -> httpx.Response:
        client = self._get_client()

        @retry(
            stop=stop_after_attempt(max(self.max_retries, 1)),
            wait=wait_exponential(
                multiplier=self.backoff_factor,
                min=0,
                max=30,
            ),
            retry=retry_if_exception(self._should_retry),
            reraise=True,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        async def do_request() -> httpx.Response:
            logger.debug("POST %s", self.endpoint)
            try:
                response = await client.post(self.endpoint, json=body)
            except httpx.RequestError as exc:
                raise TransportError(
                    f"Could not reach upstream API: {exc}",
                    endpoint=self.endpoint,
                    cause=exc,
                ) from exc

            if not response.is_success:
                if response.status_code == 429:
                    await self._respect_retry_after(response)
                raise UpstreamError(response.status_code, response.text, endpoint=self.endpoint)
            return response

        return await do_request()

    def _should_retry(self, exc: BaseException) -> bool:
        if isinstance(exc, UpstreamError):
            return exc.status_code in RETRYABLE_STATUS_CODES
        return isinstance(exc, TransportError) and isinstance(exc.cause, httpx.RequestError)

    async def _respect_retry_after(self, response: httpx.Response) -> None:
        if self.max_retries <= 1:
            return
        retry_after = response.headers.get("Retry-After")
        if not retry_after:
            return
        try:
            wait_seconds = float(retry_after)
        except (TypeError, ValueError):
            return
        if wait_seconds > 0:
            logger.warning(
                "Rate limited by upstream API; sleeping %.1f seconds before retrying",
                wait_seconds,
            )
            await asyncio.sleep(wait_seconds)
