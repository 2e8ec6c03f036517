# checkpointkit

Asynchronous checkpoint storage for stateful graph workflows. A checkpoint
holds the state of a run at one step, together with the nodes to run next,
channel values and versions, and a record of the nodes that have run. Stored
checkpoints can be fetched again later, listed, or deleted.

## Installation

```
pip install checkpointkit
```

## Modules

| Module                      | Contents                                                      |
|-----------------------------|---------------------------------------------------------------|
| `checkpointkit.base`        | data types, errors and the abstract `Checkpointer` interface  |
| `checkpointkit.memory`      | `InMemoryCheckpointer`, `InMemoryConfig`, `json_memory_size`  |
| `checkpointkit.sqlite`      | `SqliteCheckpointer`, `SqliteConfig`                          |
| `checkpointkit.redis_store` | `RedisCheckpointer`, `RedisCheckpointerConfig`                |

## The `Checkpointer` interface

Every backend is an async `Checkpointer`:

- `put(config, checkpoint, metadata)`: store a checkpoint
- `get(config, checkpoint_id)`: a `CheckpointTuple`, or `None`
- `get_latest(config)`: the latest checkpoint of the thread, or `None`
- `list(config, limit=None, before=None)`: checkpoints of the thread, newest first
- `delete(config, checkpoint_id)`: `True` if the checkpoint existed
- `clear_thread(thread_id)`: remove a thread's checkpoints, returning how many
- `apply_writes(checkpoint, writes)`: apply `PendingWrite`s to `checkpoint.channel_values` in place
- `stats()`: a `CheckpointerStats`
- `cleanup()`: a `CleanupResult`

Checkpoints are grouped by `CheckpointConfig.thread_id` (a fresh UUID by
default). A `CheckpointTuple` holds the `checkpoint`, its `pending_writes` and
the `config` it was fetched with.

`apply_writes` handles three `WriteOperation`s: `SET` replaces a channel value,
`APPEND` extends an existing list value (or sets the value if the channel is
absent; a non-list existing value is left alone), and `CLEAR` removes the
channel.

## Data types

`Checkpoint(id, state, step)` also carries `version`, `timestamp`,
`next_nodes`, `channel_values`, `channel_versions`, `node_history` and
`metadata`. It offers `age()`, `is_older_than(duration)`,
`add_node_execution(execution)`, `latest_node_execution()`,
`node_executions(node_name)`, `size_estimate()`, and `to_dict()` /
`from_dict()`. The state and channel values must be JSON-compatible.

`CheckpointMetadata` holds a `CheckpointSource` (`LOOP` by default), optional
thread and user ids, parent checkpoints by namespace and custom values. Its
`with_source`, `with_thread_id`, `with_user_id`, `with_parent` and
`with_custom` methods return modified copies.

`NodeExecution(node_name, input_state)` records one node run:

```python
from checkpointkit.base import NodeExecution

run = NodeExecution(node_name="agent", input_state={"value": 1})
run.start()
run.complete({"value": 2})
checkpoint.add_node_execution(run)
assert checkpoint.latest_node_execution().is_successful()
```

`fail(error)` and `interrupt()` end a run otherwise; `is_failed()` is true for
both. `duration()` is `None` until the run ends.

## In memory

```python
import asyncio

from checkpointkit.base import Checkpoint, CheckpointConfig, CheckpointMetadata
from checkpointkit.memory import InMemoryCheckpointer


async def main():
    async with InMemoryCheckpointer() as store:
        config = CheckpointConfig(thread_id="conversation-1")
        checkpoint = Checkpoint(id="step-1", state={"value": 42}, step=1)
        await store.put(config, checkpoint, CheckpointMetadata())

        found = await store.get(config, "step-1")
        print(found.checkpoint.state)          # {'value': 42}

        latest = await store.get_latest(config)
        print(latest.checkpoint.id)            # step-1

        stats = await store.stats()
        print(stats.total_checkpoints)         # 1


asyncio.run(main())
```

`InMemoryConfig` sets `max_checkpoints_per_thread` (100) and
`max_total_checkpoints` (10000); when either is exceeded, the oldest stored
checkpoints are dropped. "Latest" and list order go by the time a checkpoint
was stored. With `auto_cleanup` on, `start()` (or entering the `async with`
block) runs `cleanup()` every `cleanup_interval_seconds` until `close()`;
cleanup here only drops empty threads. Sizes in the stats are estimates from
`json_memory_size`.

## SQLite

```python
from checkpointkit.sqlite import SqliteCheckpointer

async with await SqliteCheckpointer.open("checkpoints.db") as store:
    await store.put(config, checkpoint, CheckpointMetadata())
```

`SqliteCheckpointer.from_config(SqliteConfig(...))` takes `database_path`,
`enable_wal` (on by default), `compress` (gzip, on by default) and
`cleanup_days` (30). Checkpoints are stored as JSON. A checkpoint id can be
stored only once: putting the same id again raises `CheckpointError`.
`get_latest` and `list` order by step number, then by time stored.
`cleanup()` deletes checkpoints older than `cleanup_days` and vacuums the
database.

## Redis

```python
from checkpointkit.redis_store import RedisCheckpointer

store = await RedisCheckpointer.connect("redis://localhost:6379")
try:
    await store.put(config, checkpoint, CheckpointMetadata())
finally:
    await store.close()
```

`RedisCheckpointer.from_config(RedisCheckpointerConfig(...))` takes
`redis_url`, `key_prefix`, `compress`, `default_ttl_seconds` (24 hours),
`max_checkpoints_per_thread` (100), `pool_size` and the connect and command
timeouts. An already connected `redis.asyncio` client can also be passed to
`RedisCheckpointer(client, config)`. Checkpoints are packed with MessagePack
and gzipped when `compress` is on; each thread keeps a list of its ids, newest
first. Keys expire by their time-to-live, so `cleanup()` removes nothing.
`stats()` reports counts and sizes only: `unique_threads` is 0 and the
timestamps are `None`.

## Errors

Storage failures raise `CheckpointError`. Data that cannot be encoded or
decoded raises `SerializationError`, a subclass of `CheckpointError`.

## What it does not do

- Pending writes are not persisted: every backend stores and returns an empty
  list of them. Use `apply_writes` to fold writes into a checkpoint before
  calling `put`.
- The metadata passed to `put` is kept by the SQLite and Redis backends but is
  not returned by `get`; the metadata carried on the `Checkpoint` itself is.
- There are no backends besides memory, SQLite and Redis, and no command-line
  tool.

## Running the tests

```
pip install -e ".[test]"
pytest
```