"""Dotted-path id extraction from nested documents.

A path such as ``variants.edges.node.id`` is walked segment by segment.
Lists fan out across their elements, mappings descend into the named
field, and documents where a segment is missing are skipped silently.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Mapping, Set

logger = logging.getLogger(__name__)

__all__ = ["extract_ids", "resolve_path"]

_MISSING = object()


def _step(value: Any, segment: str) -> Any:
    if isinstance(value, list):
        projected: List[Any] = []
        for element in value:
            child = _step(element, segment)
            if child is _MISSING:
                continue
            projected.append(child)
        return projected
    if isinstance(value, Mapping):
        child = value.get(segment, _MISSING)
        return _MISSING if child is None else child
    return _MISSING


def resolve_path(document: Any, path: str) -> Any:
    """Walk ``path`` through ``document``.

    Returns the resolved value (a list when any segment fanned out), or
    None when the path does not exist in the document.
    """
    current: Any = document
    for segment in path.split("."):
        current = _step(current, segment)
        if current is _MISSING:
            return None
    return current


def _string_leaves(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, list):
        for item in value:
            yield from _string_leaves(item)


def extract_ids(documents: Iterable[Any], path: str) -> Set[str]:
    """Collect the distinct string values found at ``path``.

    Args:
        documents: Primary records
        path: Dotted field path (e.g. "variants.edges.node.id")

    Returns:
        Set of ids. Non-string leaves are ignored.
    """
    ids: Set[str] = set()
    skipped = 0

    for index, document in enumerate(documents or []):
        try:
            ids.update(_string_leaves(resolve_path(document, path)))
        except Exception as exc:
            skipped += 1
            logger.warning("Skipping document %d while extracting '%s': %s", index, path, exc)

    logger.debug("Extracted %d ids using path '%s' (%d documents skipped)", len(ids), path, skipped)
    return ids
