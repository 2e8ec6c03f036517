"""SQLite-backed checkpointer."""

from __future__ import annotations

import contextlib
import gzip
import json
import logging
import sqlite3
import time
import zlib
from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import aiosqlite

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

_SCHEMA = """
CREATE TABLE IF NOT EXISTS checkpoints (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    checkpoint_data BLOB NOT NULL,
    metadata TEXT NOT NULL,
    pending_writes TEXT NOT NULL,
    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    step_number INTEGER NOT NULL,
    size_bytes INTEGER NOT NULL,
    compressed BOOLEAN NOT NULL DEFAULT FALSE
);

CREATE INDEX IF NOT EXISTS idx_checkpoints_thread_id ON checkpoints(thread_id);
CREATE INDEX IF NOT EXISTS idx_checkpoints_created_at ON checkpoints(created_at);
CREATE INDEX IF NOT EXISTS idx_checkpoints_step ON checkpoints(step_number);
"""

_SELECT_COLUMNS = "id, checkpoint_data, metadata, pending_writes, compressed"
_DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


@contextlib.contextmanager
def _db_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        logger.error("Failed to %s: %s", action, exc)
        raise CheckpointError(f"Failed to {action}: {exc}") from exc


def _parse_db_time(value: Any) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class SqliteConfig:
    """Settings for the SQLite checkpointer."""

    database_path: Path = field(default_factory=lambda: Path("checkpoints.db"))
    max_connections: int = 10
    enable_wal: bool = True
    compress: bool = True
    cleanup_days: int = 30


class SqliteCheckpointer(Checkpointer):
    """Checkpointer persisting checkpoints in an SQLite database.

    Create instances with :meth:`open` or :meth:`from_config`.
    """

    def __init__(self, connection: aiosqlite.Connection, config: SqliteConfig) -> None:
        self._connection = connection
        self.config = config

    @classmethod
    async def open(cls, database_path: str | Path) -> SqliteCheckpointer:
        """Open a checkpointer on the given database file with default settings."""
        return await cls.from_config(SqliteConfig(database_path=Path(database_path)))

    @classmethod
    async def from_config(cls, config: SqliteConfig) -> SqliteCheckpointer:
        """Open a checkpointer using the given configuration."""
        with _db_errors("connect to SQLite database"):
            connection = await aiosqlite.connect(str(config.database_path))
        connection.row_factory = aiosqlite.Row
        try:
            if config.enable_wal:
                with _db_errors("enable WAL mode"):
                    await connection.execute("PRAGMA journal_mode = WAL")
            checkpointer = cls(connection, config)
            await checkpointer._init_schema()
        except BaseException:
            await connection.close()
            raise
        return checkpointer

    async def close(self) -> None:
        """Close the database connection."""
        await self._connection.close()

    async def __aenter__(self) -> SqliteCheckpointer:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _init_schema(self) -> None:
        with _db_errors("initialize schema"):
            await self._connection.executescript(_SCHEMA)
            await self._connection.commit()
        logger.info("SQLite checkpointer initialized successfully")

    # -- serialization -------------------------------------------------

    def serialize_checkpoint(self, checkpoint: Checkpoint) -> bytes:
        """Encode a checkpoint as JSON, gzip-compressed when configured."""
        try:
            data = json.dumps(checkpoint.to_dict()).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"Failed to serialize checkpoint: {exc}") from exc
        return gzip.compress(data) if self.config.compress else data

    def deserialize_checkpoint(self, data: bytes, compressed: bool) -> Checkpoint:
        """Decode checkpoint bytes, decompressing them first when flagged."""
        if compressed:
            try:
                data = gzip.decompress(data)
            except (OSError, EOFError, zlib.error) as exc:
                raise SerializationError(f"Failed to decompress data: {exc}") from exc
        try:
            payload = json.loads(data)
        except (UnicodeDecodeError, ValueError) as exc:
            raise SerializationError(f"Failed to deserialize checkpoint: {exc}") from exc
        return Checkpoint.from_dict(payload)

    def _row_to_tuple(self, row: aiosqlite.Row, config: CheckpointConfig) -> CheckpointTuple:
        checkpoint = self.deserialize_checkpoint(bytes(row["checkpoint_data"]), bool(row["compressed"]))
        try:
            CheckpointMetadata.from_dict(json.loads(row["metadata"]))
            writes = json.loads(row["pending_writes"])
        except ValueError as exc:
            raise SerializationError(f"Failed to deserialize checkpoint row: {exc}") from exc
        return CheckpointTuple(
            checkpoint=checkpoint,
            pending_writes=[PendingWrite.from_dict(w) for w in writes],
            config=replace(config, custom=dict(config.custom)),
        )

    # -- Checkpointer interface ----------------------------------------

    async def put(
        self,
        config: CheckpointConfig,
        checkpoint: Checkpoint,
        metadata: CheckpointMetadata | None = None,
    ) -> None:
        logger.debug("Storing checkpoint %s for thread %s", checkpoint.id, config.thread_id)
        metadata = metadata if metadata is not None else CheckpointMetadata()
        checkpoint_data = self.serialize_checkpoint(checkpoint)
        metadata_json = json.dumps(metadata.to_dict())
        with _db_errors("store checkpoint"):
            await self._connection.execute(
                "INSERT INTO checkpoints (id, thread_id, checkpoint_data, metadata, "
                "pending_writes, step_number, size_bytes, compressed) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    checkpoint.id,
                    config.thread_id,
                    checkpoint_data,
                    metadata_json,
                    "[]",
                    checkpoint.step,
                    len(checkpoint_data),
                    self.config.compress,
                ),
            )
            await self._connection.commit()

    async def get(self, config: CheckpointConfig, checkpoint_id: str) -> CheckpointTuple | None:
        with _db_errors("retrieve checkpoint"):
            async with self._connection.execute(
                f"SELECT {_SELECT_COLUMNS} FROM checkpoints WHERE id = ? AND thread_id = ?",
                (checkpoint_id, config.thread_id),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            logger.debug("Checkpoint %s not found", checkpoint_id)
            return None
        return self._row_to_tuple(row, config)

    async def get_latest(self, config: CheckpointConfig) -> CheckpointTuple | None:
        with _db_errors("retrieve latest checkpoint"):
            async with self._connection.execute(
                f"SELECT {_SELECT_COLUMNS} FROM checkpoints WHERE thread_id = ? "
                "ORDER BY step_number DESC, created_at DESC LIMIT 1",
                (config.thread_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            logger.debug("No checkpoints found for thread %s", config.thread_id)
            return None
        return self._row_to_tuple(row, config)

    async def list(
        self,
        config: CheckpointConfig,
        limit: int | None = None,
        before: str | None = None,
    ) -> list[CheckpointTuple]:
        query = f"SELECT {_SELECT_COLUMNS} FROM checkpoints WHERE thread_id = ?"
        params: list[Any] = [config.thread_id]
        if before is not None:
            query += " AND created_at < (SELECT created_at FROM checkpoints WHERE id = ?)"
            params.append(before)
        query += " ORDER BY step_number DESC, created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with _db_errors("list checkpoints"):
            async with self._connection.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_tuple(row, config) for row in rows]

    async def delete(self, config: CheckpointConfig, checkpoint_id: str) -> bool:
        with _db_errors("delete checkpoint"):
            cursor = await self._connection.execute(
                "DELETE FROM checkpoints WHERE id = ? AND thread_id = ?",
                (checkpoint_id, config.thread_id),
            )
            await self._connection.commit()
        deleted = cursor.rowcount > 0
        if not deleted:
            logger.warning("Checkpoint %s not found for deletion", checkpoint_id)
        return deleted

    async def clear_thread(self, thread_id: str) -> int:
        with _db_errors("clear thread"):
            cursor = await self._connection.execute(
                "DELETE FROM checkpoints WHERE thread_id = ?", (thread_id,)
            )
            await self._connection.commit()
        logger.info("Cleared %d checkpoints for thread %s", cursor.rowcount, thread_id)
        return cursor.rowcount

    async def stats(self) -> CheckpointerStats:
        with _db_errors("gather statistics"):
            async with self._connection.execute(
                "SELECT COUNT(*) AS total, COUNT(DISTINCT thread_id) AS unique_threads, "
                "SUM(size_bytes) AS storage_size, AVG(size_bytes) AS avg_size, "
                "MIN(created_at) AS oldest, MAX(created_at) AS newest FROM checkpoints"
            ) as cursor:
                row = await cursor.fetchone()
        return CheckpointerStats(
            total_checkpoints=int(row["total"]),
            unique_threads=int(row["unique_threads"]),
            storage_size_bytes=int(row["storage_size"] or 0),
            avg_checkpoint_size_bytes=int(row["avg_size"] or 0.0),
            oldest_checkpoint=_parse_db_time(row["oldest"]),
            newest_checkpoint=_parse_db_time(row["newest"]),
        )

    async def cleanup(self) -> CleanupResult:
        started = time.monotonic()
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.config.cleanup_days)
        cutoff_text = cutoff.strftime(_DB_TIME_FORMAT)
        with _db_errors("calculate cleanup size"):
            async with self._connection.execute(
                "SELECT SUM(size_bytes) AS total_size FROM checkpoints WHERE created_at < ?",
                (cutoff_text,),
            ) as cursor:
                row = await cursor.fetchone()
        space_freed = int(row["total_size"] or 0)
        with _db_errors("cleanup"):
            cursor = await self._connection.execute(
                "DELETE FROM checkpoints WHERE created_at < ?", (cutoff_text,)
            )
            await self._connection.commit()
        removed = cursor.rowcount
        duration_ms = int((time.monotonic() - started) * 1000)
        with _db_errors("vacuum database"):
            await self._connection.execute("VACUUM")
        logger.info(
            "Cleanup completed: removed %d checkpoints, freed %d bytes in %dms",
            removed,
            space_freed,
            duration_ms,
        )
        return CleanupResult(
            checkpoints_removed=removed,
            space_freed_bytes=space_freed,
            duration_ms=duration_ms,
        )