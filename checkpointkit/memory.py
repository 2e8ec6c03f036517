"""In-memory checkpointer for development and testing."""

from __future__ import annotations

import asyncio
import contextlib
import copy
import json
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from itertools import count
from typing import Any

from checkpointkit.base import (
    Checkpoint,
    CheckpointConfig,
    CheckpointerStats,
    CheckpointMetadata,
    Checkpointer,
    CheckpointTuple,
    CleanupResult,
    PendingWrite,
    SerializationError,
)

logger = logging.getLogger(__name__)

# Fixed per-node cost used when estimating the memory size of a JSON value.
_JSON_NODE_SIZE = 32


def json_memory_size(value: Any) -> int:
    """Estimate the in-memory size in bytes of a JSON-compatible value."""
    if value is None or isinstance(value, (bool, int, float)):
        return _JSON_NODE_SIZE
    if isinstance(value, str):
        return _JSON_NODE_SIZE + len(value.encode("utf-8"))
    if isinstance(value, (list, tuple)):
        return _JSON_NODE_SIZE + sum(json_memory_size(item) for item in value)
    if isinstance(value, dict):
        return _JSON_NODE_SIZE + sum(
            len(str(key).encode("utf-8")) + json_memory_size(item) for key, item in value.items()
        )
    raise SerializationError(f"value of type {type(value).__name__} is not JSON compatible")


@dataclass
class InMemoryConfig:
    """Limits and housekeeping settings for the in-memory checkpointer."""

    max_checkpoints_per_thread: int = 100
    max_total_checkpoints: int = 10000
    auto_cleanup: bool = True
    cleanup_interval_seconds: float = 300


@dataclass
class _StoredCheckpoint:
    checkpoint_json: dict[str, Any]
    stored_at: datetime
    sequence: int
    size_bytes: int
    pending_writes: list[PendingWrite] = field(default_factory=list)

    @property
    def order_key(self) -> tuple[datetime, int]:
        return (self.stored_at, self.sequence)


def _to_json(checkpoint: Checkpoint) -> dict[str, Any]:
    try:
        return json.loads(json.dumps(checkpoint.to_dict()))
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"failed to serialize checkpoint: {exc}") from exc


class InMemoryCheckpointer(Checkpointer):
    """Checkpointer that keeps serialized checkpoints in process memory.

    With ``auto_cleanup`` enabled, a periodic cleanup task runs once
    :meth:`start` is called (or the checkpointer is used as an async
    context manager) until :meth:`close`.
    """

    def __init__(self, config: InMemoryConfig | None = None) -> None:
        self.config = config if config is not None else InMemoryConfig()
        self._storage: dict[str, dict[str, _StoredCheckpoint]] = {}
        self._stats = CheckpointerStats()
        self._sequence = count()
        self._cleanup_task: asyncio.Task[None] | None = None

    # -- lifecycle -----------------------------------------------------

    def start(self) -> None:
        """Start the periodic cleanup task if auto cleanup is enabled."""
        if not self.config.auto_cleanup or self._cleanup_task is not None:
            return
        if self.config.cleanup_interval_seconds <= 0:
            raise ValueError("cleanup_interval_seconds must be positive")
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def close(self) -> None:
        """Stop the periodic cleanup task."""
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def __aenter__(self) -> InMemoryCheckpointer:
        self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def running(self) -> bool:
        """Whether the periodic cleanup task is active."""
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def _cleanup_loop(self) -> None:
        while True:
            try:
                await self.cleanup()
            except Exception as exc:  # keep the housekeeping loop alive
                logger.warning("Cleanup task failed: %s", exc)
            await asyncio.sleep(self.config.cleanup_interval_seconds)

    # -- internals -----------------------------------------------------

    def _thread_storage(self, thread_id: str) -> dict[str, _StoredCheckpoint]:
        return self._storage.setdefault(thread_id, {})

    def _enforce_limits(self, thread_id: str) -> None:
        thread_storage = self._thread_storage(thread_id)
        excess = len(thread_storage) - self.config.max_checkpoints_per_thread
        if excess > 0:
            oldest = sorted(thread_storage.items(), key=lambda item: item[1].order_key)
            for checkpoint_id, _ in oldest[:excess]:
                del thread_storage[checkpoint_id]

        total = sum(len(entries) for entries in self._storage.values())
        excess = total - self.config.max_total_checkpoints
        if excess > 0:
            everything = sorted(
                (
                    (data.order_key, tid, checkpoint_id)
                    for tid, entries in self._storage.items()
                    for checkpoint_id, data in entries.items()
                ),
                key=lambda item: item[0],
            )
            for _, tid, checkpoint_id in everything[:excess]:
                self._storage[tid].pop(checkpoint_id, None)

    def _update_stats(self) -> None:
        entries = [data for thread in self._storage.values() for data in thread.values()]
        total = len(entries)
        size = sum(data.size_bytes for data in entries)
        stamps = [data.stored_at for data in entries]
        self._stats = CheckpointerStats(
            total_checkpoints=total,
            unique_threads=len(self._storage),
            storage_size_bytes=size,
            avg_checkpoint_size_bytes=size // total if total else 0,
            oldest_checkpoint=min(stamps) if stamps else None,
            newest_checkpoint=max(stamps) if stamps else None,
        )

    @staticmethod
    def _to_tuple(data: _StoredCheckpoint, config: CheckpointConfig) -> CheckpointTuple:
        checkpoint = Checkpoint.from_dict(copy.deepcopy(data.checkpoint_json))
        return CheckpointTuple(
            checkpoint=checkpoint,
            pending_writes=copy.deepcopy(data.pending_writes),
            config=replace(config, custom=dict(config.custom)),
        )

    # -- Checkpointer interface ----------------------------------------

    async def put(
        self,
        config: CheckpointConfig,
        checkpoint: Checkpoint,
        metadata: CheckpointMetadata | None = None,
    ) -> None:
        checkpoint_json = _to_json(checkpoint)
        data = _StoredCheckpoint(
            checkpoint_json=checkpoint_json,
            stored_at=datetime.now(timezone.utc),
            sequence=next(self._sequence),
            size_bytes=json_memory_size(checkpoint_json),
        )
        self._thread_storage(config.thread_id)[checkpoint.id] = data
        self._enforce_limits(config.thread_id)
        self._update_stats()

    async def get(self, config: CheckpointConfig, checkpoint_id: str) -> CheckpointTuple | None:
        data = self._thread_storage(config.thread_id).get(checkpoint_id)
        return None if data is None else self._to_tuple(data, config)

    async def get_latest(self, config: CheckpointConfig) -> CheckpointTuple | None:
        thread_storage = self._thread_storage(config.thread_id)
        if not thread_storage:
            return None
        latest = max(thread_storage.values(), key=lambda data: data.order_key)
        return self._to_tuple(latest, config)

    async def list(
        self,
        config: CheckpointConfig,
        limit: int | None = None,
        before: str | None = None,
    ) -> list[CheckpointTuple]:
        thread_storage = self._thread_storage(config.thread_id)
        entries = sorted(thread_storage.values(), key=lambda data: data.order_key, reverse=True)
        if before is not None and before in thread_storage:
            cutoff = thread_storage[before].stored_at
            entries = [data for data in entries if data.stored_at < cutoff]
        if limit is not None:
            entries = entries[:limit]
        return [self._to_tuple(data, config) for data in entries]

    async def delete(self, config: CheckpointConfig, checkpoint_id: str) -> bool:
        removed = self._thread_storage(config.thread_id).pop(checkpoint_id, None) is not None
        if removed:
            self._update_stats()
        return removed

    async def clear_thread(self, thread_id: str) -> int:
        thread_storage = self._storage.pop(thread_id, None)
        if thread_storage is None:
            return 0
        self._update_stats()
        return len(thread_storage)

    async def stats(self) -> CheckpointerStats:
        self._update_stats()
        return replace(self._stats)

    async def cleanup(self) -> CleanupResult:
        started = time.monotonic()
        for thread_id in [tid for tid, entries in self._storage.items() if not entries]:
            del self._storage[thread_id]
        self._update_stats()
        return CleanupResult(
            checkpoints_removed=0,
            space_freed_bytes=0,
            duration_ms=int((time.monotonic() - started) * 1000),
        )