"""Core checkpoint data types and the abstract checkpointer interface."""

from __future__ import annotations

import abc
import copy
import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

# Rough fixed costs used by Checkpoint.size_estimate.
_CHECKPOINT_BASE_SIZE = 256
_CHANNEL_VALUE_SIZE = 100
_NODE_EXECUTION_SIZE = 160


class CheckpointError(Exception):
    """Raised when a checkpoint operation fails."""


class SerializationError(CheckpointError):
    """Raised when checkpoint data cannot be encoded or decoded."""


class CheckpointSource(str, Enum):
    """Where a checkpoint came from."""

    INPUT = "Input"
    LOOP = "Loop"
    UPDATE = "Update"
    FORK = "Fork"
    INTERRUPT = "Interrupt"


class ExecutionStatus(str, Enum):
    """Lifecycle state of a node execution."""

    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    INTERRUPTED = "Interrupted"


class WriteOperation(str, Enum):
    """Kind of pending channel write."""

    SET = "Set"
    APPEND = "Append"
    CLEAR = "Clear"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_time(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_json_value(value: Any) -> Any:
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"value is not JSON serializable: {exc}") from exc


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return int((end - start) / timedelta(milliseconds=1))


@dataclass
class NodeExecution:
    """Record of one node's execution."""

    node_name: str
    input_state: Any
    started_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    output_state: Any = None
    error: str | None = None
    duration_ms: int | None = None

    def start(self) -> None:
        """Mark the execution as running."""
        self.status = ExecutionStatus.RUNNING
        self.started_at = _now()

    def _finish(self, status: ExecutionStatus) -> None:
        now = _now()
        self.status = status
        self.completed_at = now
        self.duration_ms = _elapsed_ms(self.started_at, now)

    def complete(self, output_state: Any) -> None:
        """Mark the execution as completed with its output."""
        self.output_state = output_state
        self._finish(ExecutionStatus.COMPLETED)

    def fail(self, error: str) -> None:
        """Mark the execution as failed."""
        self.error = str(error)
        self._finish(ExecutionStatus.FAILED)

    def interrupt(self) -> None:
        """Mark the execution as interrupted."""
        self._finish(ExecutionStatus.INTERRUPTED)

    def is_failed(self) -> bool:
        return self.status in (ExecutionStatus.FAILED, ExecutionStatus.INTERRUPTED)

    def is_running(self) -> bool:
        return self.status is ExecutionStatus.RUNNING

    def is_successful(self) -> bool:
        return self.status is ExecutionStatus.COMPLETED

    def duration(self) -> timedelta | None:
        """Time between start and completion, or None while unfinished."""
        if self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_name": self.node_name,
            "started_at": _format_time(self.started_at),
            "completed_at": _format_time(self.completed_at),
            "status": self.status.value,
            "input_state": self.input_state,
            "output_state": self.output_state,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodeExecution:
        try:
            return cls(
                node_name=data["node_name"],
                input_state=data["input_state"],
                started_at=_parse_time(data["started_at"]),
                completed_at=_parse_time(data.get("completed_at")),
                status=ExecutionStatus(data["status"]),
                output_state=data.get("output_state"),
                error=data.get("error"),
                duration_ms=data.get("duration_ms"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise SerializationError(f"invalid node execution: {exc!r}") from exc


@dataclass
class CheckpointMetadata:
    """Metadata attached to a checkpoint."""

    source: CheckpointSource = CheckpointSource.LOOP
    thread_id: str | None = None
    user_id: str | None = None
    parents: dict[str, str] = field(default_factory=dict)
    custom: dict[str, Any] = field(default_factory=dict)

    def with_source(self, source: CheckpointSource) -> CheckpointMetadata:
        return replace(self, source=CheckpointSource(source))

    def with_thread_id(self, thread_id: str) -> CheckpointMetadata:
        return replace(self, thread_id=str(thread_id))

    def with_user_id(self, user_id: str) -> CheckpointMetadata:
        return replace(self, user_id=str(user_id))

    def with_parent(self, namespace: str, checkpoint_id: str) -> CheckpointMetadata:
        return replace(self, parents={**self.parents, str(namespace): str(checkpoint_id)})

    def with_custom(self, key: str, value: Any) -> CheckpointMetadata:
        """Return a copy holding a JSON-normalised custom value."""
        return replace(self, custom={**self.custom, str(key): _to_json_value(value)})

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source.value,
            "thread_id": self.thread_id,
            "user_id": self.user_id,
            "parents": dict(self.parents),
            "custom": copy.deepcopy(self.custom),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckpointMetadata:
        try:
            return cls(
                source=CheckpointSource(data["source"]),
                thread_id=data.get("thread_id"),
                user_id=data.get("user_id"),
                parents=dict(data["parents"]),
                custom=dict(data["custom"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise SerializationError(f"invalid checkpoint metadata: {exc!r}") from exc


@dataclass
class Checkpoint:
    """Snapshot of graph state at one execution step."""

    id: str
    state: Any
    step: int
    version: int = 1
    timestamp: datetime = field(default_factory=_now)
    next_nodes: list[str] = field(default_factory=list)
    channel_values: dict[str, Any] = field(default_factory=dict)
    channel_versions: dict[str, int] = field(default_factory=dict)
    node_history: list[NodeExecution] = field(default_factory=list)
    metadata: CheckpointMetadata = field(default_factory=CheckpointMetadata)

    def age(self) -> timedelta:
        return _now() - self.timestamp

    def is_older_than(self, duration: timedelta) -> bool:
        return self.age() > duration

    def add_node_execution(self, execution: NodeExecution) -> None:
        self.node_history.append(execution)

    def latest_node_execution(self) -> NodeExecution | None:
        return self.node_history[-1] if self.node_history else None

    def node_executions(self, node_name: str) -> list[NodeExecution]:
        return [e for e in self.node_history if e.node_name == node_name]

    def size_estimate(self) -> int:
        """Rough in-memory size estimate in bytes."""
        return (
            _CHECKPOINT_BASE_SIZE
            + len(self.channel_values) * _CHANNEL_VALUE_SIZE
            + len(self.node_history) * _NODE_EXECUTION_SIZE
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "id": self.id,
            "timestamp": _format_time(self.timestamp),
            "state": copy.deepcopy(self.state),
            "step": self.step,
            "next_nodes": list(self.next_nodes),
            "channel_values": copy.deepcopy(self.channel_values),
            "channel_versions": dict(self.channel_versions),
            "node_history": [e.to_dict() for e in self.node_history],
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        try:
            return cls(
                id=data["id"],
                state=data["state"],
                step=int(data["step"]),
                version=int(data["version"]),
                timestamp=_parse_time(data["timestamp"]),
                next_nodes=list(data["next_nodes"]),
                channel_values=dict(data["channel_values"]),
                channel_versions={k: int(v) for k, v in data["channel_versions"].items()},
                node_history=[NodeExecution.from_dict(e) for e in data["node_history"]],
                metadata=CheckpointMetadata.from_dict(data["metadata"]),
            )
        except SerializationError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise SerializationError(f"invalid checkpoint: {exc!r}") from exc


@dataclass
class PendingWrite:
    """A channel write waiting to be applied to a checkpoint."""

    channel: str
    operation: WriteOperation
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "operation": self.operation.value,
            "value": copy.deepcopy(self.value),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingWrite:
        try:
            return cls(
                channel=data["channel"],
                operation=WriteOperation(data["operation"]),
                value=data["value"],
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise SerializationError(f"invalid pending write: {exc!r}") from exc


@dataclass
class CheckpointConfig:
    """Per-thread checkpointing configuration."""

    thread_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    compress: bool = False
    max_checkpoints: int | None = 100
    store_deltas: bool = False
    custom: dict[str, Any] = field(default_factory=dict)


@dataclass
class CheckpointTuple:
    """A stored checkpoint together with its writes and config."""

    checkpoint: Checkpoint
    pending_writes: list[PendingWrite]
    config: CheckpointConfig


@dataclass
class CheckpointerStats:
    """Storage statistics for a checkpointer."""

    total_checkpoints: int = 0
    unique_threads: int = 0
    storage_size_bytes: int = 0
    avg_checkpoint_size_bytes: int = 0
    oldest_checkpoint: datetime | None = None
    newest_checkpoint: datetime | None = None


@dataclass
class CleanupResult:
    """Outcome of a cleanup pass."""

    checkpoints_removed: int = 0
    space_freed_bytes: int = 0
    duration_ms: int = 0


class Checkpointer(abc.ABC):
    """Abstract asynchronous checkpoint storage backend."""

    @abc.abstractmethod
    async def put(
        self,
        config: CheckpointConfig,
        checkpoint: Checkpoint,
        metadata: CheckpointMetadata,
    ) -> None:
        """Save a checkpoint."""

    @abc.abstractmethod
    async def get(self, config: CheckpointConfig, checkpoint_id: str) -> CheckpointTuple | None:
        """Fetch a checkpoint by id."""

    @abc.abstractmethod
    async def get_latest(self, config: CheckpointConfig) -> CheckpointTuple | None:
        """Fetch the latest checkpoint of a thread."""

    @abc.abstractmethod
    async def list(
        self,
        config: CheckpointConfig,
        limit: int | None = None,
        before: str | None = None,
    ) -> list[CheckpointTuple]:
        """List checkpoints of a thread, newest first."""

    @abc.abstractmethod
    async def delete(self, config: CheckpointConfig, checkpoint_id: str) -> bool:
        """Delete a checkpoint; return whether it existed."""

    @abc.abstractmethod
    async def clear_thread(self, thread_id: str) -> int:
        """Delete every checkpoint of a thread; return how many were removed."""

    async def apply_writes(self, checkpoint: Checkpoint, writes: list[PendingWrite]) -> None:
        """Apply pending writes to a checkpoint's channel values in order."""
        values = checkpoint.channel_values
        for write in writes:
            if write.operation is WriteOperation.SET:
                values[write.channel] = copy.deepcopy(write.value)
            elif write.operation is WriteOperation.APPEND:
                if write.channel in values:
                    existing = values[write.channel]
                    if isinstance(existing, list) and isinstance(write.value, list):
                        existing.extend(copy.deepcopy(write.value))
                else:
                    values[write.channel] = copy.deepcopy(write.value)
            elif write.operation is WriteOperation.CLEAR:
                values.pop(write.channel, None)

    @abc.abstractmethod
    async def stats(self) -> CheckpointerStats:
        """Return storage statistics."""

    @abc.abstractmethod
    async def cleanup(self) -> CleanupResult:
        """Remove stale data."""