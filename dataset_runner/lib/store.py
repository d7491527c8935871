"""Execution record persistence.

The store is the only state shared between the orchestrator (writer) and
pollers (readers). Records are keyed by execution id.

Backends:
- InMemoryExecutionStore: process-local, used by tests and embedded runs
- JsonFileExecutionStore: one JSON file per execution under a state dir

Example:
    store = JsonFileExecutionStore("./.state/executions")
    execution_id = store.create("ds-products")
    store.update(execution_id, status="running")
    latest = store.get_latest_for_dataset("ds-products")
"""

from __future__ import annotations

import copy
import dataclasses
import json
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from dataset_runner.lib.errors import NotFoundError, StateTransitionError, StorageError
from dataset_runner.lib.models import (
    ExecutionRecord,
    ExecutionStatus,
    ExecutionSummary,
    utc_now,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ExecutionStore",
    "InMemoryExecutionStore",
    "JsonFileExecutionStore",
    "RESET_MESSAGE",
    "read_latest",
    "read_status",
    "reset_stuck_executions",
]

RESET_MESSAGE = "Execution timed out and was automatically reset"

_IMMUTABLE_FIELDS = {"id", "dataset_id", "start_time"}
_UPDATABLE_FIELDS = {f.name for f in dataclasses.fields(ExecutionRecord)} - _IMMUTABLE_FIELDS
_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class ExecutionStore(ABC):
    """Base class for execution record stores.

    Subclasses provide raw load/save/iterate; lifecycle rules live here so
    every backend refuses the same invalid writes.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @abstractmethod
    def _load(self, execution_id: str) -> Optional[ExecutionRecord]:
        """Return the stored record, or None if it does not exist."""
        ...

    @abstractmethod
    def _save(self, record: ExecutionRecord) -> None:
        ...

    @abstractmethod
    def _iter_records(self) -> Iterator[ExecutionRecord]:
        ...

    def create(self, dataset_id: str) -> str:
        """Create a pending record for ``dataset_id`` and return its id."""
        record = ExecutionRecord(dataset_id=dataset_id)
        with self._lock:
            self._save(record)
        logger.debug("Created execution %s for dataset %s", record.id, dataset_id)
        return record.id

    def get(self, execution_id: str) -> ExecutionRecord:
        """Return a record.

        Raises:
            NotFoundError: If no record has this id
            StorageError: If the backend cannot be read
        """
        record = self._load(execution_id)
        if record is None:
            raise NotFoundError(f"Execution not found: {execution_id}", execution_id=execution_id)
        return record

    def update(self, execution_id: str, **fields: Any) -> ExecutionRecord:
        """Apply a partial update.

        ``metadata`` is merged into the existing annotations rather than
        replacing them. ``status`` may be an ExecutionStatus or its value.

        Raises:
            NotFoundError: If no record has this id
            StateTransitionError: If the record is terminal, the status
                would move backwards, or the result breaks record invariants
            ValueError: For unknown or immutable fields
        """
        immutable = set(fields) & _IMMUTABLE_FIELDS
        if immutable:
            raise ValueError(f"Cannot update immutable fields: {sorted(immutable)}")
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown execution record fields: {sorted(unknown)}")

        with self._lock:
            current = self.get(execution_id)

            if current.is_terminal:
                raise StateTransitionError(
                    f"Execution {execution_id} is already {current.status.value}",
                    execution_id=execution_id,
                    current=current.status.value,
                    requested=ExecutionStatus(fields["status"]).value if "status" in fields else None,
                )

            changes = dict(fields)
            if "status" in changes:
                new_status = ExecutionStatus(changes["status"])
                if not current.status.can_transition_to(new_status):
                    raise StateTransitionError(
                        f"Cannot move execution {execution_id} from "
                        f"{current.status.value} to {new_status.value}",
                        execution_id=execution_id,
                        current=current.status.value,
                        requested=new_status.value,
                    )
                changes["status"] = new_status
            if "metadata" in changes:
                merged = dict(current.metadata)
                merged.update(changes["metadata"] or {})
                changes["metadata"] = merged

            updated = dataclasses.replace(current, **changes)
            violations = updated.validate()
            if violations:
                raise StateTransitionError(
                    f"Invalid update for execution {execution_id}: " + "; ".join(violations),
                    execution_id=execution_id,
                    current=current.status.value,
                    requested=updated.status.value,
                )

            self._save(updated)

        logger.debug("Updated execution %s (%s)", execution_id, ", ".join(sorted(fields)))
        return updated

    def list_for_dataset(self, dataset_id: str, limit: Optional[int] = None) -> List[ExecutionRecord]:
        """Return a dataset's executions, newest first."""
        records = [r for r in self._iter_records() if r.dataset_id == dataset_id]
        records.sort(key=lambda r: r.start_time, reverse=True)
        return records[:limit] if limit is not None else records

    def get_latest_for_dataset(self, dataset_id: str) -> Optional[ExecutionRecord]:
        """Return the most recently started execution, or None if there are none."""
        records = self.list_for_dataset(dataset_id, limit=1)
        return records[0] if records else None


class InMemoryExecutionStore(ExecutionStore):
    """Process-local store.

    Records are kept in serialized form so callers never share mutable
    state with the store.
    """

    def __init__(self) -> None:
        super().__init__()
        self._records: Dict[str, Dict[str, Any]] = {}

    def _load(self, execution_id: str) -> Optional[ExecutionRecord]:
        data = self._records.get(execution_id)
        if data is None:
            return None
        return ExecutionRecord.from_dict(copy.deepcopy(data))

    def _save(self, record: ExecutionRecord) -> None:
        self._records[record.id] = copy.deepcopy(record.to_dict())

    def _iter_records(self) -> Iterator[ExecutionRecord]:
        for execution_id in list(self._records):
            record = self._load(execution_id)
            if record is not None:
                yield record

    def __len__(self) -> int:
        return len(self._records)


class JsonFileExecutionStore(ExecutionStore):
    """One ``<execution_id>.json`` file per execution.

    Writes go to a temporary file first and are moved into place, so a
    reader never sees a half-written record.
    """

    def __init__(self, state_dir: Optional[Union[str, Path]] = None) -> None:
        super().__init__()
        if state_dir is None:
            from dataset_runner.lib.settings import get_settings

            state_dir = get_settings().state_dir
        self.state_dir = Path(state_dir)

    def _path(self, execution_id: str) -> Path:
        return self.state_dir / f"{execution_id}.json"

    def _load(self, execution_id: str) -> Optional[ExecutionRecord]:
        if not _SAFE_ID.match(execution_id or ""):
            return None

        path = self._path(execution_id)
        if not path.exists():
            return None

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return ExecutionRecord.from_dict(data)
        except OSError as exc:
            raise StorageError(
                f"Could not read execution record {execution_id}",
                operation="read",
                execution_id=execution_id,
                cause=exc,
            ) from exc
        except (json.JSONDecodeError, ValueError, KeyError, TypeError, AttributeError) as exc:
            raise StorageError(
                f"Corrupt execution record {execution_id}",
                operation="read",
                execution_id=execution_id,
                cause=exc,
                suggestion=f"Inspect or remove {path}",
            ) from exc

    def _save(self, record: ExecutionRecord) -> None:
        path = self._path(record.id)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(record.to_dict(), indent=2, default=str), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StorageError(
                f"Could not write execution record {record.id}",
                operation="write",
                execution_id=record.id,
                cause=exc,
            ) from exc

    def _iter_records(self) -> Iterator[ExecutionRecord]:
        if not self.state_dir.exists():
            return
        try:
            paths = sorted(self.state_dir.glob("*.json"))
        except OSError as exc:
            raise StorageError(
                f"Could not list execution records in {self.state_dir}",
                operation="list",
                cause=exc,
            ) from exc

        for path in paths:
            try:
                yield ExecutionRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (json.JSONDecodeError, ValueError, KeyError, TypeError, AttributeError) as exc:
                logger.warning("Invalid execution record file %s: %s", path, exc)


def read_status(store: ExecutionStore, execution_id: str) -> ExecutionSummary:
    """Status read for one execution.

    Raises:
        NotFoundError: If the execution does not exist
        StorageError: If the store cannot be read
    """
    return ExecutionSummary.from_record(store.get(execution_id))


def read_latest(store: ExecutionStore, dataset_id: str) -> Optional[ExecutionSummary]:
    """Latest execution summary for a dataset, or None if it never ran."""
    record = store.get_latest_for_dataset(dataset_id)
    return ExecutionSummary.from_record(record) if record else None


def reset_stuck_executions(
    store: ExecutionStore,
    dataset_id: str,
    *,
    older_than: timedelta = timedelta(minutes=10),
    now: Optional[datetime] = None,
) -> List[str]:
    """Fail executions left pending or running for longer than ``older_than``.

    Returns:
        Ids of the executions that were reset
    """
    now = now or utc_now()
    reset: List[str] = []

    for record in store.list_for_dataset(dataset_id):
        if record.is_terminal or now - record.start_time < older_than:
            continue
        try:
            store.update(
                record.id,
                status=ExecutionStatus.FAILED,
                error_message=RESET_MESSAGE,
                error_detail={
                    "error_type": "ExecutionTimeout",
                    "message": RESET_MESSAGE,
                    "details": {"previous_status": record.status.value},
                },
                end_time=now,
                execution_time_ms=int((now - record.start_time).total_seconds() * 1000),
                metadata={"failed_at": now.isoformat(), "reset": True},
            )
        except StateTransitionError:
            # Finished between listing and update
            continue
        reset.append(record.id)
        logger.warning(
            "Reset execution %s for dataset %s (stuck in %s since %s)",
            record.id,
            dataset_id,
            record.status.value,
            record.start_time.isoformat(),
        )

    return reset
