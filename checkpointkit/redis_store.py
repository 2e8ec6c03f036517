"""Redis-backed checkpointer."""

from __future__ import annotations

import contextlib
import gzip
import json
import logging
import time
import zlib
from collections.abc import Iterator
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

import msgpack
import redis.asyncio as aioredis
import redis.exceptions

from checkpointkit.base import (
    Checkpoint,
    CheckpointConfig,
    CheckpointError,
    CheckpointerStats,
    CheckpointMetadata,
    Checkpointer,
    CheckpointTuple,
    CleanupResult,
    PendingWrite,
    SerializationError,
)

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def _redis_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (redis.exceptions.RedisError, OSError) as exc:
        logger.error("Failed to %s: %s", action, exc)
        raise CheckpointError(f"Failed to {action}: {exc}") from exc


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return str(value)


def _as_int(value: Any) -> int:
    if value is None:
        return 0
    try:
        return int(_text(value))
    except ValueError:
        return 0


@dataclass
class RedisCheckpointerConfig:
    """Settings for the Redis checkpointer."""

    redis_url: str = "redis://127.0.0.1:6379"
    key_prefix: str = "langgraph:checkpoint"
    compress: bool = True
    default_ttl_seconds: int | None = 24 * 60 * 60
    max_checkpoints_per_thread: int | None = 100
    pool_size: int | None = 10
    connect_timeout_ms: int | None = 5000
    command_timeout_ms: int | None = 5000


class RedisCheckpointer(Checkpointer):
    """Checkpointer storing checkpoints as Redis keys with per-thread lists.

    Create connected instances with :meth:`connect` or :meth:`from_config`,
    or pass an existing asynchronous Redis client to the constructor.
    """

    def __init__(self, client: Any, config: RedisCheckpointerConfig | None = None) -> None:
        self._client = client
        self.config = config if config is not None else RedisCheckpointerConfig()

    @classmethod
    async def connect(cls, redis_url: str) -> RedisCheckpointer:
        """Connect to the given URL with otherwise default settings."""
        return await cls.from_config(RedisCheckpointerConfig(redis_url=redis_url))

    @classmethod
    async def from_config(cls, config: RedisCheckpointerConfig) -> RedisCheckpointer:
        """Connect using the given configuration."""
        options: dict[str, Any] = {}
        if config.pool_size is not None:
            options["max_connections"] = config.pool_size
        if config.connect_timeout_ms is not None:
            options["socket_connect_timeout"] = config.connect_timeout_ms / 1000
        if config.command_timeout_ms is not None:
            options["socket_timeout"] = config.command_timeout_ms / 1000
        try:
            client = aioredis.from_url(config.redis_url, **options)
        except ValueError as exc:
            raise CheckpointError(f"Invalid Redis URL: {exc}") from exc
        try:
            with _redis_errors("connect to Redis"):
                await client.ping()
        except BaseException:
            await client.aclose()
            raise
        logger.info("Connected to Redis at %s", config.redis_url)
        return cls(client, config)

    async def close(self) -> None:
        """Close the underlying client."""
        await self._client.aclose()

    async def __aenter__(self) -> RedisCheckpointer:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # -- keys ----------------------------------------------------------

    def checkpoint_key(self, thread_id: str, checkpoint_id: str) -> str:
        return f"{self.config.key_prefix}:{thread_id}:{checkpoint_id}"

    def thread_list_key(self, thread_id: str) -> str:
        return f"{self.config.key_prefix}:thread:{thread_id}:list"

    def thread_metadata_key(self, thread_id: str) -> str:
        return f"{self.config.key_prefix}:thread:{thread_id}:meta"

    def stats_key(self) -> str:
        return f"{self.config.key_prefix}:stats"

    # -- serialization -------------------------------------------------

    def compress_data(self, data: bytes) -> bytes:
        """Gzip the data when compression is enabled."""
        return gzip.compress(data) if self.config.compress else bytes(data)

    def decompress_data(self, data: bytes) -> bytes:
        """Reverse :meth:`compress_data`."""
        if not self.config.compress:
            return bytes(data)
        try:
            return gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as exc:
            raise SerializationError(f"Decompression failed: {exc}") from exc

    def serialize_checkpoint(
        self,
        checkpoint: Checkpoint,
        pending_writes: list[PendingWrite],
        metadata: CheckpointMetadata,
    ) -> bytes:
        """Encode a checkpoint with its writes and metadata into a stored record."""
        try:
            packed = msgpack.packb(checkpoint.to_dict(), use_bin_type=True)
        except (TypeError, ValueError, OverflowError) as exc:
            raise SerializationError(f"Failed to serialize checkpoint: {exc}") from exc
        record = {
            "checkpoint_data": list(self.compress_data(packed)),
            "pending_writes": [write.to_dict() for write in pending_writes],
            "stored_at": datetime.now(timezone.utc).isoformat(),
            "original_size_bytes": len(packed),
            "metadata": metadata.to_dict(),
        }
        try:
            return json.dumps(record).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"Failed to serialize Redis data: {exc}") from exc

    def deserialize_checkpoint(
        self, data: bytes
    ) -> tuple[Checkpoint, list[PendingWrite], CheckpointMetadata]:
        """Decode a stored record into checkpoint, pending writes and metadata."""
        try:
            record = json.loads(data)
            blob = bytes(record["checkpoint_data"])
            raw_writes = record["pending_writes"]
            raw_metadata = record["metadata"]
        except (ValueError, TypeError, KeyError) as exc:
            raise SerializationError(f"Failed to deserialize Redis data: {exc!r}") from exc
        packed = self.decompress_data(blob)
        try:
            payload = msgpack.unpackb(packed, raw=False)
        except (ValueError, TypeError, msgpack.exceptions.UnpackException) as exc:
            raise SerializationError(f"Failed to deserialize checkpoint: {exc}") from exc
        checkpoint = Checkpoint.from_dict(payload)
        writes = [PendingWrite.from_dict(write) for write in raw_writes]
        metadata = CheckpointMetadata.from_dict(raw_metadata)
        return checkpoint, writes, metadata

    # -- internals -----------------------------------------------------

    async def _update_thread_list(self, thread_id: str, checkpoint_id: str) -> None:
        list_key = self.thread_list_key(thread_id)
        with _redis_errors("update thread list"):
            await self._client.lpush(list_key, checkpoint_id)
        if self.config.max_checkpoints_per_thread is not None:
            with _redis_errors("trim thread list"):
                await self._client.ltrim(list_key, 0, self.config.max_checkpoints_per_thread - 1)
        if self.config.default_ttl_seconds is not None:
            with _redis_errors("set TTL on thread list"):
                await self._client.expire(list_key, self.config.default_ttl_seconds)

    async def _thread_checkpoint_ids(self, thread_id: str, limit: int | None = None) -> list[str]:
        end = limit - 1 if limit is not None else -1
        with _redis_errors("get thread checkpoint IDs"):
            ids = await self._client.lrange(self.thread_list_key(thread_id), 0, end)
        return [_text(checkpoint_id) for checkpoint_id in ids]

    async def _update_stats(self, size_delta: int, count_delta: int) -> None:
        stats_key = self.stats_key()
        if count_delta:
            with _redis_errors("update checkpoint count"):
                await self._client.hincrby(stats_key, "total_checkpoints", count_delta)
        if size_delta:
            with _redis_errors("update total size"):
                await self._client.hincrby(stats_key, "total_size_bytes", size_delta)
        with _redis_errors("update stats timestamp"):
            await self._client.hset(stats_key, "last_updated", int(time.time()))

    # -- Checkpointer interface ----------------------------------------

    async def put(
        self,
        config: CheckpointConfig,
        checkpoint: Checkpoint,
        metadata: CheckpointMetadata | None = None,
    ) -> None:
        logger.debug("Storing checkpoint %s for thread %s", checkpoint.id, config.thread_id)
        metadata = metadata if metadata is not None else CheckpointMetadata()
        serialized = self.serialize_checkpoint(checkpoint, [], metadata)
        key = self.checkpoint_key(config.thread_id, checkpoint.id)
        with _redis_errors("store checkpoint"):
            await self._client.set(key, serialized)
        if self.config.default_ttl_seconds is not None:
            with _redis_errors("set TTL"):
                await self._client.expire(key, self.config.default_ttl_seconds)
        await self._update_thread_list(config.thread_id, checkpoint.id)
        await self._update_stats(len(serialized), 1)
        logger.info("Stored checkpoint %s for thread %s", checkpoint.id, config.thread_id)

    async def get(self, config: CheckpointConfig, checkpoint_id: str) -> CheckpointTuple | None:
        key = self.checkpoint_key(config.thread_id, checkpoint_id)
        with _redis_errors("retrieve checkpoint"):
            data = await self._client.get(key)
        if data is None:
            logger.debug("Checkpoint %s not found for thread %s", checkpoint_id, config.thread_id)
            return None
        if isinstance(data, str):
            data = data.encode("utf-8")
        checkpoint, writes, _metadata = self.deserialize_checkpoint(data)
        return CheckpointTuple(
            checkpoint=checkpoint,
            pending_writes=writes,
            config=replace(config, custom=dict(config.custom)),
        )

    async def get_latest(self, config: CheckpointConfig) -> CheckpointTuple | None:
        ids = await self._thread_checkpoint_ids(config.thread_id, 1)
        if not ids:
            logger.debug("No checkpoints found for thread %s", config.thread_id)
            return None
        return await self.get(config, ids[0])

    async def list(
        self,
        config: CheckpointConfig,
        limit: int | None = None,
        before: str | None = None,
    ) -> list[CheckpointTuple]:
        ids = await self._thread_checkpoint_ids(config.thread_id)
        if before is not None and before in ids:
            ids = ids[ids.index(before) + 1 :]
        if limit is not None:
            ids = ids[:limit]
        result = []
        for checkpoint_id in ids:
            found = await self.get(config, checkpoint_id)
            if found is not None:
                result.append(found)
        return result

    async def delete(self, config: CheckpointConfig, checkpoint_id: str) -> bool:
        key = self.checkpoint_key(config.thread_id, checkpoint_id)
        with _redis_errors("delete checkpoint"):
            deleted = await self._client.delete(key)
        if not deleted:
            logger.debug("Checkpoint %s not found for deletion", checkpoint_id)
            return False
        with _redis_errors("remove from thread list"):
            await self._client.lrem(self.thread_list_key(config.thread_id), 0, checkpoint_id)
        await self._update_stats(0, -1)
        logger.info("Deleted checkpoint %s for thread %s", checkpoint_id, config.thread_id)
        return True

    async def clear_thread(self, thread_id: str) -> int:
        ids = await self._thread_checkpoint_ids(thread_id)
        deleted_count = 0
        for checkpoint_id in ids:
            with _redis_errors(f"delete checkpoint {checkpoint_id}"):
                if await self._client.delete(self.checkpoint_key(thread_id, checkpoint_id)):
                    deleted_count += 1
        with _redis_errors("delete thread list"):
            await self._client.delete(self.thread_list_key(thread_id))
        with _redis_errors("delete thread metadata"):
            await self._client.delete(self.thread_metadata_key(thread_id))
        await self._update_stats(0, -deleted_count)
        logger.info("Cleared %d checkpoints for thread %s", deleted_count, thread_id)
        return deleted_count

    async def stats(self) -> CheckpointerStats:
        with _redis_errors("get statistics"):
            raw = await self._client.hgetall(self.stats_key())
        values = {_text(key): value for key, value in raw.items()}
        total = max(0, _as_int(values.get("total_checkpoints")))
        size = max(0, _as_int(values.get("total_size_bytes")))
        return CheckpointerStats(
            total_checkpoints=total,
            unique_threads=0,
            storage_size_bytes=size,
            avg_checkpoint_size_bytes=size // total if total else 0,
            oldest_checkpoint=None,
            newest_checkpoint=None,
        )

    async def cleanup(self) -> CleanupResult:
        # Redis expires keys itself through their TTLs.
        started = time.monotonic()
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Cleanup completed: removed 0 checkpoints, freed 0 bytes in %dms", duration_ms)
        return CleanupResult(checkpoints_removed=0, space_freed_bytes=0, duration_ms=duration_ms)