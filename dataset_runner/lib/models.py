"""Execution record and dataset definition models.

The execution record is the only persisted entity: the orchestrator
writes it, pollers read it. Dataset definitions are supplied by an
external collaborator and validated here with pydantic.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dataset_runner.lib.auth import SourceCredentials

logger = logging.getLogger(__name__)

__all__ = [
    "ExecutionStatus",
    "ExecutionRecord",
    "ExecutionSummary",
    "BatchRequest",
    "MergeStrategy",
    "EnrichmentConfig",
    "DatasetDefinition",
    "IDS_PLACEHOLDER",
    "utc_now",
]

# Placeholder in a secondary query template that receives the id batch
IDS_PLACEHOLDER = "{{IDS}}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(Enum):
    """Lifecycle of an execution record.

    Transitions only move forward:
        pending -> running -> completed | failed
        pending -> failed (run could not start)
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)

    def can_transition_to(self, other: "ExecutionStatus") -> bool:
        """Check whether moving from this status to ``other`` is allowed."""
        if other == self:
            return not self.is_terminal
        return other in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS: Dict[ExecutionStatus, Tuple[ExecutionStatus, ...]] = {
    ExecutionStatus.PENDING: (ExecutionStatus.RUNNING, ExecutionStatus.FAILED),
    ExecutionStatus.RUNNING: (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED),
    ExecutionStatus.COMPLETED: (),
    ExecutionStatus.FAILED: (),
}


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass
class ExecutionRecord:
    """One run of a dataset's extraction job.

    ``data`` and ``row_count`` are only set on a completed record.
    ``error_message`` and ``error_detail`` are only set on a failed one.
    ``metadata`` belongs to the orchestrator (API call counters, query
    cost, transition timestamps).
    """

    dataset_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: ExecutionStatus = ExecutionStatus.PENDING
    data: Optional[List[Dict[str, Any]]] = None
    row_count: Optional[int] = None
    execution_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    error_detail: Optional[Dict[str, Any]] = None
    start_time: datetime = field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def validate(self) -> List[str]:
        """Check record invariants.

        Returns:
            List of violations. Empty list means the record is consistent.
        """
        errors: List[str] = []
        completed = self.status == ExecutionStatus.COMPLETED
        failed = self.status == ExecutionStatus.FAILED

        if (self.data is None) != (self.row_count is None):
            errors.append("data and row_count must be set together")
        if self.data is not None and not completed:
            errors.append(f"data set while status is {self.status.value}")
        if completed and self.data is None:
            errors.append("completed record has no data")
        if self.data is not None and self.row_count != len(self.data):
            errors.append(f"row_count {self.row_count} does not match {len(self.data)} data rows")

        if failed and not self.error_message:
            errors.append("failed record has no error_message")
        if self.error_message is not None and not failed:
            errors.append(f"error_message set while status is {self.status.value}")
        if self.error_detail is not None and not failed:
            errors.append(f"error_detail set while status is {self.status.value}")

        if self.status.is_terminal and self.end_time is None:
            errors.append("terminal record has no end_time")
        if self.end_time is not None and not self.status.is_terminal:
            errors.append(f"end_time set while status is {self.status.value}")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for persistence."""
        return {
            "id": self.id,
            "dataset_id": self.dataset_id,
            "status": self.status.value,
            "data": self.data,
            "row_count": self.row_count,
            "execution_time_ms": self.execution_time_ms,
            "error_message": self.error_message,
            "error_detail": self.error_detail,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionRecord":
        """Deserialize a persisted record."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = ExecutionStatus(values.get("status", ExecutionStatus.PENDING.value))
        values["start_time"] = _parse_datetime(values.get("start_time")) or utc_now()
        values["end_time"] = _parse_datetime(values.get("end_time"))
        values["metadata"] = dict(values.get("metadata") or {})
        return cls(**values)


@dataclass(frozen=True)
class ExecutionSummary:
    """Status-read view of an execution record."""

    execution_id: str
    status: ExecutionStatus
    data: Optional[List[Dict[str, Any]]] = None
    row_count: Optional[int] = None
    execution_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    error_detail: Optional[Dict[str, Any]] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: ExecutionRecord) -> "ExecutionSummary":
        return cls(
            execution_id=record.id,
            status=record.status,
            data=record.data,
            row_count=record.row_count,
            execution_time_ms=record.execution_time_ms,
            error_message=record.error_message,
            error_detail=record.error_detail,
            start_time=record.start_time,
            end_time=record.end_time,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "status": self.status.value,
            "data": self.data,
            "row_count": self.row_count,
            "execution_time_ms": self.execution_time_ms,
            "error_message": self.error_message,
            "error_detail": self.error_detail,
        }


@dataclass(frozen=True)
class BatchRequest:
    """One secondary query: a slice of ids and the rendered query."""

    index: int
    ids: Tuple[str, ...]
    query: str

    @property
    def size(self) -> int:
        return len(self.ids)


class MergeStrategy(Enum):
    """How secondary records are combined with primary records."""

    NESTED = "nested"  # secondary records under primary["secondaryData"]
    FLAT = "flat"  # one row per primary/secondary pair
    REFERENCE = "reference"  # primary rows unchanged


class EnrichmentConfig(BaseModel):
    """Secondary lookup declared by a dataset.

    Example:
        EnrichmentConfig(
            id_path="variants.edges.node.id",
            query_template='{ nodes(ids: {{IDS}}) { ... on ProductVariant { id } } }',
            merge_strategy=MergeStrategy.NESTED,
        )
    """

    model_config = ConfigDict(populate_by_name=True)

    id_path: str = Field(..., alias="idPath", description="Dotted path to ids in primary records")
    query_template: str = Field(..., alias="secondaryQuery", description="Query with an {{IDS}} placeholder")
    batch_size: Optional[int] = Field(default=None, ge=1, description="Overrides the runner batch size")
    delay_seconds: Optional[float] = Field(default=None, ge=0.0, description="Overrides the runner batch delay")
    merge_strategy: MergeStrategy = Field(default=MergeStrategy.NESTED, alias="mergeStrategy")
    primary_key: str = "id"
    foreign_key: str = "primaryId"

    @field_validator("id_path")
    @classmethod
    def validate_id_path(cls, v: str) -> str:
        """Reject empty paths and empty segments."""
        if not v or any(not part for part in v.split(".")):
            raise ValueError(f"id_path must be a dotted field path, got '{v}'")
        return v

    @field_validator("query_template")
    @classmethod
    def validate_placeholder(cls, v: str) -> str:
        """Ensure the template can receive an id batch."""
        if IDS_PLACEHOLDER not in v:
            raise ValueError(f"query_template must contain the {IDS_PLACEHOLDER} placeholder")
        return v


class DatasetDefinition(BaseModel):
    """What to run for one dataset.

    Example:
        DatasetDefinition(
            id="ds-products",
            credentials=SourceCredentials(store_name="acme", access_token="${SHOPIFY_TOKEN}"),
            query="query($first: Int!, $after: String) { products(first: $first, after: $after) { ... } }",
            resource="Product",
        )
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    credentials: SourceCredentials
    query: str = Field(..., alias="primaryQuery", min_length=1)
    resource: Optional[str] = Field(default=None, description="Logical resource name, e.g. 'Product'")
    variables: Dict[str, Any] = Field(default_factory=dict)
    enrichment: Optional[EnrichmentConfig] = None
