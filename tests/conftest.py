"""Pytest configuration and fixtures."""

import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dataset_runner.lib.auth import SourceCredentials  # noqa: E402
from dataset_runner.lib.client import GraphQLClient  # noqa: E402


class FakeGraphQLServer:
    """Scripted upstream API for httpx.MockTransport.

    Each queued reply is one of:
        dict                      -> 200 with that JSON body
        (status, body)            -> status with a JSON (dict) or text (str) body
        Exception                 -> raised as a transport failure
        callable(body) -> reply   -> computed from the request body

    Every request body is recorded in ``requests``.
    """

    def __init__(self) -> None:
        self.replies: List[Any] = []
        self.requests: List[Dict[str, Any]] = []
        self.headers: List[httpx.Headers] = []
        self.urls: List[str] = []
        self.default: Optional[Any] = None

    def queue(self, *replies: Any) -> "FakeGraphQLServer":
        self.replies.extend(replies)
        return self

    def handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content.decode("utf-8"))
        self.requests.append(body)
        self.headers.append(request.headers)
        self.urls.append(str(request.url))

        if self.replies:
            reply = self.replies.pop(0)
        elif self.default is not None:
            reply = self.default
        else:
            raise AssertionError(f"Unexpected upstream request: {body}")

        if callable(reply) and not isinstance(reply, Exception):
            reply = reply(body)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, tuple):
            status, payload = reply
            if isinstance(payload, str):
                return httpx.Response(status, text=payload)
            return httpx.Response(status, json=payload)
        return httpx.Response(200, json=reply)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self, credentials: SourceCredentials, **kwargs: Any) -> GraphQLClient:
        kwargs.setdefault("max_retries", 1)
        kwargs.setdefault("backoff_factor", 0)
        return GraphQLClient(credentials, transport=self.transport, **kwargs)


@pytest.fixture
def credentials() -> SourceCredentials:
    """Credentials for a test tenant."""
    return SourceCredentials(store_name="acme", api_version="2024-01", access_token="shpat_test")


@pytest.fixture
def graphql_server() -> FakeGraphQLServer:
    """Scripted upstream API."""
    return FakeGraphQLServer()


@pytest.fixture
def make_page() -> Callable[..., Dict[str, Any]]:
    """Build a connection page response."""

    def _make_page(
        nodes: List[Dict[str, Any]],
        *,
        has_next: bool = False,
        cursor: Optional[str] = None,
        field: str = "products",
        cost: Optional[float] = None,
    ) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            "data": {
                field: {
                    "edges": [{"cursor": f"c-{i}", "node": node} for i, node in enumerate(nodes)],
                    "pageInfo": {"hasNextPage": has_next, "endCursor": cursor},
                }
            }
        }
        if cost is not None:
            response["extensions"] = {"cost": {"requestedQueryCost": cost, "actualQueryCost": cost}}
        return response

    return _make_page


@pytest.fixture
def make_products() -> Callable[..., List[Dict[str, Any]]]:
    """Build product nodes with sequential ids."""

    def _make_products(count: int, start: int = 0) -> List[Dict[str, Any]]:
        return [
            {"id": f"gid://shopify/Product/{start + i}", "title": f"Product {start + i}"}
            for i in range(count)
        ]

    return _make_products
