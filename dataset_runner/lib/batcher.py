"""Batched secondary lookups.

Ids extracted from primary records are sorted, split into chunks of at
most ``batch_size`` and substituted into a query template as a JSON array
literal. Chunks are sent one at a time with a fixed delay between them.
The first failing chunk aborts the whole enrichment.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from dataset_runner.lib.client import GraphQLClient, ResponseHook, connection_nodes
from dataset_runner.lib.errors import ConfigurationError, SchemaMismatchError
from dataset_runner.lib.models import IDS_PLACEHOLDER, BatchRequest

logger = logging.getLogger(__name__)

__all__ = [
    "EnrichmentResult",
    "build_batches",
    "enrich",
    "render_query",
    "secondary_nodes",
]


@dataclass
class EnrichmentResult:
    """Secondary records returned by all batches, in batch order."""

    records: List[Dict[str, Any]] = field(default_factory=list)
    batches: List[BatchRequest] = field(default_factory=list)
    id_count: int = 0

    @property
    def call_count(self) -> int:
        return len(self.batches)


def render_query(query_template: str, ids: Iterable[str]) -> str:
    """Substitute ``ids`` into the template as a JSON array literal."""
    if IDS_PLACEHOLDER not in query_template:
        raise ConfigurationError(
            f"Secondary query has no {IDS_PLACEHOLDER} placeholder",
            field="query_template",
        )
    return query_template.replace(IDS_PLACEHOLDER, json.dumps(list(ids)))


def build_batches(ids: Iterable[str], query_template: str, batch_size: int = 50) -> List[BatchRequest]:
    """Partition ids (sorted) into rendered batch requests."""
    if batch_size < 1:
        raise ConfigurationError(f"batch_size must be at least 1, got {batch_size}", field="batch_size")

    ordered = sorted(set(ids))
    batches: List[BatchRequest] = []
    for index, start in enumerate(range(0, len(ordered), batch_size)):
        chunk = tuple(ordered[start : start + batch_size])
        batches.append(BatchRequest(index=index, ids=chunk, query=render_query(query_template, chunk)))
    return batches


def secondary_nodes(response: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Pull the node list out of a secondary query response.

    Accepts ``data.nodes`` directly, or the first root field when it is a
    list, a ``nodes`` list, or an edges connection. Null entries (ids the
    upstream could not resolve) are dropped.

    Raises:
        SchemaMismatchError: If the response has no recognizable node list
    """
    data = response.get("data")
    if data is None:
        raise SchemaMismatchError("Secondary response has no data object", fields=list(response.keys()))
    if not isinstance(data, dict):
        raise SchemaMismatchError(f"Secondary response data is a {type(data).__name__}, expected an object")
    if not data:
        return []

    if isinstance(data.get("nodes"), list):
        value: Any = data["nodes"]
    else:
        value = next(iter(data.values()))

    if isinstance(value, list):
        return [node for node in value if node is not None]
    if isinstance(value, dict) and ("nodes" in value or "edges" in value):
        return connection_nodes(value)

    raise SchemaMismatchError(
        "Secondary response payload shape not recognized",
        fields=list(data.keys()),
        suggestion="Secondary queries should select nodes(ids: {{IDS}}) { ... }.",
    )


async def enrich(
    ids: Iterable[str],
    query_template: str,
    client: GraphQLClient,
    *,
    batch_size: int = 50,
    delay_seconds: float = 0.5,
    on_api_call: Optional[ResponseHook] = None,
) -> EnrichmentResult:
    """Run the secondary query for every id, one batch at a time.

    Args:
        ids: Ids to look up (duplicates are ignored)
        query_template: Query containing the {{IDS}} placeholder
        client: Upstream client
        batch_size: Maximum ids per request
        delay_seconds: Pause between consecutive requests
        on_api_call: Called with each raw response, error replies included
            (call accounting)

    Returns:
        EnrichmentResult with all secondary records

    Raises:
        Any upstream or payload error from the first failing batch
    """
    batches = build_batches(ids, query_template, batch_size)
    result = EnrichmentResult(id_count=sum(batch.size for batch in batches))

    if not batches:
        logger.info("No ids to enrich; skipping secondary queries")
        return result

    logger.info(
        "Enriching %d ids in %d batches of up to %d",
        result.id_count,
        len(batches),
        batch_size,
    )

    for batch in batches:
        if batch.index > 0 and delay_seconds > 0:
            await asyncio.sleep(delay_seconds)

        response = await client.execute(batch.query, on_response=on_api_call)

        nodes = secondary_nodes(response)
        result.records.extend(nodes)
        result.batches.append(batch)

        logger.debug(
            "Batch %d/%d: %d ids -> %d records",
            batch.index + 1,
            len(batches),
            batch.size,
            len(nodes),
        )

    logger.info("Enrichment returned %d records", len(result.records))
    return result
