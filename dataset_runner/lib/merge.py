"""Merge secondary records into primary records."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence, Union

from dataset_runner.lib.extract import resolve_path
from dataset_runner.lib.models import MergeStrategy

logger = logging.getLogger(__name__)

__all__ = ["merge_results", "SECONDARY_FIELD", "HAS_SECONDARY_FIELD"]

SECONDARY_FIELD = "secondaryData"
HAS_SECONDARY_FIELD = "hasSecondaryData"


def _match_key(record: Dict[str, Any], key: str) -> Any:
    value = resolve_path(record, key)
    # Only scalar values can be join keys
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return value
    return None


def _group_by_key(records: Sequence[Dict[str, Any]], key: str) -> Dict[Any, List[Dict[str, Any]]]:
    groups: Dict[Any, List[Dict[str, Any]]] = {}
    for record in records:
        value = _match_key(record, key)
        if value is None:
            continue
        groups.setdefault(value, []).append(record)
    return groups


def merge_results(
    primary: Sequence[Dict[str, Any]],
    secondary: Sequence[Dict[str, Any]],
    strategy: Union[MergeStrategy, str] = MergeStrategy.NESTED,
    *,
    primary_key: str = "id",
    foreign_key: str = "primaryId",
) -> List[Dict[str, Any]]:
    """Combine primary and secondary records.

    Args:
        primary: Primary records in page order
        secondary: Secondary records from enrichment
        strategy: nested, flat or reference
        primary_key: Field (or dotted path) of a primary record to match on
        foreign_key: Field (or dotted path) of a secondary record holding
            the primary key

    Returns:
        Merged rows. Primary records are copied, never mutated.

    Example:
        >>> merge_results([{"id": "p1"}], [{"primaryId": "p1", "sku": "A"}], "flat")
        [{'id': 'p1', 'primaryId': 'p1', 'sku': 'A', 'hasSecondaryData': True}]
    """
    strategy = MergeStrategy(strategy)

    if strategy == MergeStrategy.REFERENCE:
        return [dict(record) for record in primary]

    related = _group_by_key(secondary, foreign_key)
    merged: List[Dict[str, Any]] = []

    if strategy == MergeStrategy.NESTED:
        for record in primary:
            row = dict(record)
            row[SECONDARY_FIELD] = list(related.get(_match_key(record, primary_key), []))
            merged.append(row)
    else:
        for record in primary:
            matches = related.get(_match_key(record, primary_key), [])
            if not matches:
                merged.append({**record, HAS_SECONDARY_FIELD: False})
                continue
            for match in matches:
                merged.append({**record, **match, HAS_SECONDARY_FIELD: True})

    logger.debug(
        "Merged %d primary and %d secondary records (%s) into %d rows",
        len(primary),
        len(secondary),
        strategy.value,
        len(merged),
    )
    return merged
