import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from sessionchat.models import MAX_TURNS, ChatTurn, truncate_history
from sessionchat.services.redis import RedisCrudService
from sessionchat.services.session_store import (
    InMemorySessionStore,
    RedisSessionStore,
    build_session_store,
)
from sessionchat.settings import Settings


def _exchange(i: int) -> list[ChatTurn]:
    return [ChatTurn(role="user", content=f"Q{i}"), ChatTurn(role="assistant", content=f"A{i}")]


def test_truncate_keeps_most_recent() -> None:
    """Oldest turns are dropped first."""
    turns = [t for i in range(12) for t in _exchange(i)]
    result = truncate_history(turns, MAX_TURNS)
    assert len(result) == 20
    assert result[0].content == "Q2"
    assert result[-1].content == "A11"


def test_truncate_no_trimming_needed() -> None:
    turns = _exchange(0)
    assert truncate_history(turns, 5) == turns


@pytest.mark.asyncio
async def test_memory_get_unknown_is_empty() -> None:
    """get on a never-written key returns an empty history."""
    store = InMemorySessionStore()
    assert await store.get("never-written") == []


@pytest.mark.asyncio
async def test_memory_put_then_get_preserves_order() -> None:
    store = InMemorySessionStore()
    turns = _exchange(1) + _exchange(2)
    await store.put("s1", turns)
    assert await store.get("s1") == turns


@pytest.mark.asyncio
async def test_memory_get_returns_copy() -> None:
    """Mutating a loaded history does not change the stored one."""
    store = InMemorySessionStore()
    await store.put("s1", _exchange(1))
    loaded = await store.get("s1")
    loaded.append(ChatTurn(role="user", content="stray"))
    assert len(await store.get("s1")) == 2


@pytest.mark.asyncio
async def test_memory_put_enforces_cap() -> None:
    store = InMemorySessionStore(max_turns=4)
    await store.put("s1", [t for i in range(3) for t in _exchange(i)])
    stored = await store.get("s1")
    assert [t.content for t in stored] == ["Q1", "A1", "Q2", "A2"]


@pytest.mark.asyncio
async def test_memory_delete_then_get_is_empty() -> None:
    store = InMemorySessionStore()
    await store.put("s1", _exchange(1))
    await store.delete("s1")
    assert await store.get("s1") == []


@pytest.mark.asyncio
async def test_memory_delete_is_idempotent() -> None:
    store = InMemorySessionStore()
    await store.delete("ghost")
    await store.delete("ghost")
    assert await store.get("ghost") == []


@pytest.mark.asyncio
async def test_memory_keys_are_independent() -> None:
    store = InMemorySessionStore()
    await store.put("a", _exchange(1))
    await store.put("b", _exchange(2))
    await store.delete("a")
    assert await store.get("a") == []
    assert await store.get("b") == _exchange(2)


@pytest.mark.asyncio
async def test_memory_concurrent_puts_are_not_torn() -> None:
    """Concurrent writers on one key leave exactly one complete record."""
    store = InMemorySessionStore()
    candidates = [_exchange(i) for i in range(10)]
    await asyncio.gather(*(store.put("s1", turns) for turns in candidates))
    assert await store.get("s1") in candidates


@pytest.mark.asyncio
async def test_memory_locks_do_not_outlive_operations() -> None:
    """Per-key locks are released once no operation holds them, so reset sessions leave nothing behind."""
    store = InMemorySessionStore()
    for i in range(50):
        await store.put(f"tab-{i}", _exchange(i))
        await store.delete(f"tab-{i}")
    assert len(store._locks) == 0
    assert store._records == {}


@pytest.mark.asyncio
async def test_memory_lock_shared_while_held() -> None:
    """Concurrent operations on one key share a single lock."""
    store = InMemorySessionStore()
    lock = store._lock("s1")
    async with lock:
        assert store._lock("s1") is lock


@pytest.fixture
def mock_redis_crud() -> MagicMock:
    """Mock Redis CRUD with async get/set/delete."""
    m = MagicMock(spec=RedisCrudService)
    m.get = AsyncMock(return_value=None)
    m.set = AsyncMock(return_value=None)
    m.delete = AsyncMock(return_value=None)
    m.close = AsyncMock(return_value=None)
    return m


@pytest.fixture
def redis_store(mock_redis_crud: MagicMock) -> RedisSessionStore:
    """RedisSessionStore with mocked Redis and TTL 3600."""
    return RedisSessionStore(redis_crud=mock_redis_crud, ttl_seconds=3600)


@pytest.mark.asyncio
async def test_redis_get_missing(redis_store: RedisSessionStore, mock_redis_crud: MagicMock) -> None:
    """get returns [] when key is not in Redis."""
    assert await redis_store.get("session-1") == []
    mock_redis_crud.get.assert_called_once_with("session:session-1")


@pytest.mark.asyncio
async def test_redis_get_present(redis_store: RedisSessionStore, mock_redis_crud: MagicMock) -> None:
    mock_redis_crud.get.return_value = json.dumps(
        [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
    )
    result = await redis_store.get("s1")
    assert result == [ChatTurn(role="user", content="hi"), ChatTurn(role="assistant", content="hello")]


@pytest.mark.asyncio
async def test_redis_get_invalid_json(redis_store: RedisSessionStore, mock_redis_crud: MagicMock) -> None:
    """Corrupt records read as an empty history."""
    mock_redis_crud.get.return_value = "not json"
    assert await redis_store.get("s1") == []
    mock_redis_crud.get.return_value = json.dumps({"role": "user"})
    assert await redis_store.get("s1") == []


@pytest.mark.asyncio
async def test_redis_get_skips_malformed_turns(redis_store: RedisSessionStore, mock_redis_crud: MagicMock) -> None:
    mock_redis_crud.get.return_value = json.dumps(
        [{"role": "system", "content": "x"}, "junk", {"role": "user", "content": "ok"}]
    )
    assert await redis_store.get("s1") == [ChatTurn(role="user", content="ok")]


@pytest.mark.asyncio
async def test_redis_put(redis_store: RedisSessionStore, mock_redis_crud: MagicMock) -> None:
    """put serializes the capped history and sets it with TTL."""
    turns = [t for i in range(11) for t in _exchange(i)]
    await redis_store.put("s1", turns)
    mock_redis_crud.set.assert_called_once()
    call_args = mock_redis_crud.set.call_args
    assert call_args[0][0] == "session:s1"
    stored = json.loads(call_args[0][1])
    assert len(stored) == 20
    assert stored[0] == {"role": "user", "content": "Q1"}
    assert stored[-1] == {"role": "assistant", "content": "A10"}
    assert call_args[1]["ttl_seconds"] == 3600


@pytest.mark.asyncio
async def test_redis_delete(redis_store: RedisSessionStore, mock_redis_crud: MagicMock) -> None:
    await redis_store.delete("session-x")
    mock_redis_crud.delete.assert_called_once_with("session:session-x")


@pytest.mark.asyncio
async def test_build_session_store_without_url_is_memory() -> None:
    store = await build_session_store(Settings(redis_url=None, _env_file=None))
    assert isinstance(store, InMemorySessionStore)


@pytest.mark.asyncio
async def test_build_session_store_with_url_connects() -> None:
    with patch("sessionchat.services.session_store.RedisCrudService") as crud_cls:
        crud = crud_cls.return_value
        crud.connect = AsyncMock(return_value=None)
        store = await build_session_store(
            Settings(redis_url="redis://localhost:6379/0", session_ttl_seconds=60, _env_file=None)
        )
    crud_cls.assert_called_once_with("redis://localhost:6379/0")
    crud.connect.assert_awaited_once()
    assert isinstance(store, RedisSessionStore)
