import pytest
import redis.exceptions

from checkpointkit.base import (
    Checkpoint,
    CheckpointConfig,
    CheckpointError,
    CheckpointMetadata,
    CheckpointSource,
    PendingWrite,
    SerializationError,
    WriteOperation,
)
from checkpointkit.redis_store import RedisCheckpointer, RedisCheckpointerConfig


def _b(value):
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


def _window(items, start, end):
    if end < 0:
        end = len(items) + end
    return items[start : end + 1]


class FakeRedis:
    def __init__(self):
        self.strings = {}
        self.lists = {}
        self.hashes = {}
        self.ttls = {}
        self.closed = False

    async def ping(self):
        return True

    async def set(self, name, value):
        self.strings[name] = _b(value)
        return True

    async def get(self, name):
        return self.strings.get(name)

    async def expire(self, name, seconds):
        self.ttls[name] = seconds
        return True

    async def lpush(self, name, *values):
        items = self.lists.setdefault(name, [])
        for value in values:
            items.insert(0, _b(value))
        return len(items)

    async def ltrim(self, name, start, end):
        self.lists[name] = _window(self.lists.get(name, []), start, end)
        return True

    async def lrange(self, name, start, end):
        return list(_window(self.lists.get(name, []), start, end))

    async def lrem(self, name, count, value):
        items = self.lists.get(name, [])
        kept = [item for item in items if item != _b(value)]
        self.lists[name] = kept
        return len(items) - len(kept)

    async def delete(self, *names):
        removed = 0
        for name in names:
            for store in (self.strings, self.lists, self.hashes):
                if name in store:
                    del store[name]
                    removed += 1
        return removed

    async def hincrby(self, name, key, amount):
        table = self.hashes.setdefault(name, {})
        new = int(table.get(_b(key), b"0")) + amount
        table[_b(key)] = _b(new)
        return new

    async def hset(self, name, key, value):
        self.hashes.setdefault(name, {})[_b(key)] = _b(value)
        return 1

    async def hgetall(self, name):
        return dict(self.hashes.get(name, {}))

    async def aclose(self):
        self.closed = True


class BrokenRedis(FakeRedis):
    async def set(self, name, value):
        raise redis.exceptions.ConnectionError("connection refused")

    async def lrange(self, name, start, end):
        raise redis.exceptions.ConnectionError("connection refused")


@pytest.fixture
def fake():
    return FakeRedis()


@pytest.fixture
def store(fake):
    return RedisCheckpointer(fake, RedisCheckpointerConfig())


@pytest.fixture
def config():
    return CheckpointConfig(thread_id="thread-a")


async def _put_many(store, config, count):
    for i in range(count):
        await store.put(config, Checkpoint(f"checkpoint-{i}", {"value": i}, i), CheckpointMetadata())


def test_key_layout(store):
    assert store.checkpoint_key("t1", "c1") == "langgraph:checkpoint:t1:c1"
    assert store.thread_list_key("t1") == "langgraph:checkpoint:thread:t1:list"
    assert store.thread_metadata_key("t1") == "langgraph:checkpoint:thread:t1:meta"
    assert store.stats_key() == "langgraph:checkpoint:stats"


def test_compression_round_trip(store):
    data = b"checkpoint payload" * 20
    compressed = store.compress_data(data)
    assert compressed[:2] == b"\x1f\x8b"
    assert store.decompress_data(compressed) == data


def test_no_compression_passes_through(fake):
    plain = RedisCheckpointer(fake, RedisCheckpointerConfig(compress=False))
    assert plain.compress_data(b"abc") == b"abc"
    assert plain.decompress_data(b"abc") == b"abc"


def test_decompress_garbage_raises(store):
    with pytest.raises(SerializationError):
        store.decompress_data(b"not gzip")


def test_serialize_round_trip(store):
    checkpoint = Checkpoint("cp", {"value": 42, "items": [1, 2]}, 3)
    checkpoint.channel_values["messages"] = ["hi"]
    writes = [PendingWrite("messages", WriteOperation.APPEND, ["there"])]
    metadata = CheckpointMetadata().with_source(CheckpointSource.INPUT).with_user_id("user")
    data = store.serialize_checkpoint(checkpoint, writes, metadata)
    restored, restored_writes, restored_metadata = store.deserialize_checkpoint(data)
    assert restored.to_dict() == checkpoint.to_dict()
    assert restored_writes == writes
    assert restored_metadata == metadata


def test_deserialize_invalid_json_raises(store):
    with pytest.raises(SerializationError):
        store.deserialize_checkpoint(b"{broken")


@pytest.mark.asyncio
async def test_basic_operations(store, config):
    checkpoint = Checkpoint("test-1", {"value": 42}, 1)
    await store.put(config, checkpoint, CheckpointMetadata())

    found = await store.get(config, "test-1")
    assert found.checkpoint.id == "test-1"
    assert found.checkpoint.state == {"value": 42}
    assert found.pending_writes == []
    assert found.config.thread_id == "thread-a"

    latest = await store.get_latest(config)
    assert latest.checkpoint.id == "test-1"

    listed = await store.list(config, 10, None)
    assert [t.checkpoint.id for t in listed] == ["test-1"]

    assert (await store.stats()).total_checkpoints == 1

    assert await store.delete(config, "test-1") is True
    assert await store.get(config, "test-1") is None
    assert await store.delete(config, "test-1") is False


@pytest.mark.asyncio
async def test_get_missing_and_latest_empty(store, config):
    assert await store.get(config, "missing") is None
    assert await store.get_latest(config) is None


@pytest.mark.asyncio
async def test_threads_are_isolated(store, config):
    await store.put(config, Checkpoint("cp", {"value": 1}, 0), CheckpointMetadata())
    other = CheckpointConfig(thread_id="thread-b")
    assert await store.get(other, "cp") is None
    assert await store.list(other) == []


@pytest.mark.asyncio
async def test_list_newest_first_with_limit_and_before(store, config):
    await _put_many(store, config, 5)
    all_ids = [t.checkpoint.id for t in await store.list(config)]
    assert all_ids == [f"checkpoint-{i}" for i in (4, 3, 2, 1, 0)]

    limited = await store.list(config, 3)
    assert [t.checkpoint.id for t in limited] == all_ids[:3]

    before = await store.list(config, None, "checkpoint-3")
    assert [t.checkpoint.id for t in before] == all_ids[2:]

    unknown_before = await store.list(config, None, "nope")
    assert [t.checkpoint.id for t in unknown_before] == all_ids

    latest = await store.get_latest(config)
    assert latest.checkpoint.id == all_ids[0]


@pytest.mark.asyncio
async def test_thread_list_trimmed_to_max(fake, config):
    store = RedisCheckpointer(fake, RedisCheckpointerConfig(max_checkpoints_per_thread=2))
    await _put_many(store, config, 4)
    ids = [t.checkpoint.id for t in await store.list(config)]
    assert ids == ["checkpoint-3", "checkpoint-2"]


@pytest.mark.asyncio
async def test_ttl_applied_to_keys(fake, store, config):
    await store.put(config, Checkpoint("cp", {}, 0), CheckpointMetadata())
    ttl = store.config.default_ttl_seconds
    assert fake.ttls[store.checkpoint_key("thread-a", "cp")] == ttl
    assert fake.ttls[store.thread_list_key("thread-a")] == ttl


@pytest.mark.asyncio
async def test_no_ttl_when_disabled(fake, config):
    store = RedisCheckpointer(fake, RedisCheckpointerConfig(default_ttl_seconds=None))
    await store.put(config, Checkpoint("cp", {}, 0), CheckpointMetadata())
    assert fake.ttls == {}


@pytest.mark.asyncio
async def test_stats_track_counts_and_sizes(store, config):
    initial = await store.stats()
    assert initial.total_checkpoints == 0
    assert initial.avg_checkpoint_size_bytes == 0

    await _put_many(store, config, 3)
    stats = await store.stats()
    assert stats.total_checkpoints == 3
    assert stats.storage_size_bytes > 0
    assert stats.avg_checkpoint_size_bytes == stats.storage_size_bytes // 3
    assert stats.unique_threads == 0
    assert stats.oldest_checkpoint is None

    await store.delete(config, "checkpoint-0")
    assert (await store.stats()).total_checkpoints == 2


@pytest.mark.asyncio
async def test_clear_thread(fake, store, config):
    await _put_many(store, config, 3)
    assert await store.clear_thread("thread-a") == 3
    assert await store.list(config) == []
    assert store.thread_list_key("thread-a") not in fake.lists
    assert (await store.stats()).total_checkpoints == 0
    assert await store.clear_thread("thread-a") == 0


@pytest.mark.asyncio
async def test_cleanup_removes_nothing(store, config):
    await _put_many(store, config, 2)
    result = await store.cleanup()
    assert result.checkpoints_removed == 0
    assert result.space_freed_bytes == 0
    assert len(await store.list(config)) == 2


@pytest.mark.asyncio
async def test_redis_errors_become_checkpoint_errors(config):
    store = RedisCheckpointer(BrokenRedis(), RedisCheckpointerConfig())
    with pytest.raises(CheckpointError, match="store checkpoint"):
        await store.put(config, Checkpoint("cp", {}, 0), CheckpointMetadata())
    with pytest.raises(CheckpointError):
        await store.list(config)


@pytest.mark.asyncio
async def test_corrupt_stored_value_raises(fake, store, config):
    fake.strings[store.checkpoint_key("thread-a", "bad")] = b"garbage"
    with pytest.raises(SerializationError):
        await store.get(config, "bad")


@pytest.mark.asyncio
async def test_context_manager_closes_client(fake):
    async with RedisCheckpointer(fake) as store:
        assert store.config.key_prefix == "langgraph:checkpoint"
    assert fake.closed is True


@pytest.mark.asyncio
async def test_from_config_rejects_invalid_url():
    with pytest.raises(CheckpointError, match="Invalid Redis URL"):
        await RedisCheckpointer.from_config(RedisCheckpointerConfig(redis_url="not-a-url"))