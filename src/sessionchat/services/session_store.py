import asyncio
import json
import logging
import weakref
from abc import ABC, abstractmethod
from typing import Dict, MutableMapping, Sequence, Tuple

from ..models import MAX_TURNS, ChatTurn, SessionHistory, history_from_records, history_to_records, truncate_history
from ..settings import Settings
from .redis import RedisCrudService

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"


class SessionStore(ABC):
    """Keyed store of turn histories, one record per session id.

    ``get`` on an unknown key returns an empty history. ``put`` replaces the
    whole record and caps it to ``max_turns``. ``delete`` is idempotent.
    """

    def __init__(self, max_turns: int = MAX_TURNS) -> None:
        self._max_turns = max_turns

    @abstractmethod
    async def get(self, session_id: str) -> SessionHistory:
        ...

    @abstractmethod
    async def put(self, session_id: str, history: Sequence[ChatTurn]) -> None:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        ...

    async def close(self) -> None:
        """Release backend resources. No-op by default."""


class InMemorySessionStore(SessionStore):
    """Process-local store; operations on one key are serialized by a per-key lock."""

    def __init__(self, max_turns: int = MAX_TURNS) -> None:
        super().__init__(max_turns)
        self._records: Dict[str, Tuple[ChatTurn, ...]] = {}
        # A lock lives only while some operation on its key holds or awaits it
        self._locks: MutableMapping[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def get(self, session_id: str) -> SessionHistory:
        async with self._lock(session_id):
            return list(self._records.get(session_id, ()))

    async def put(self, session_id: str, history: Sequence[ChatTurn]) -> None:
        capped = tuple(truncate_history(history, self._max_turns))
        async with self._lock(session_id):
            self._records[session_id] = capped

    async def delete(self, session_id: str) -> None:
        async with self._lock(session_id):
            self._records.pop(session_id, None)


class RedisSessionStore(SessionStore):
    """Session histories as JSON arrays in Redis, with an optional TTL.

    Each operation is a single GET/SET/DEL command, so writes for one key are
    never torn and concurrent writers resolve as last-write-wins.
    """

    def __init__(
        self,
        redis_crud: RedisCrudService,
        ttl_seconds: int | None = None,
        max_turns: int = MAX_TURNS,
    ) -> None:
        super().__init__(max_turns)
        self._redis = redis_crud
        self._ttl = ttl_seconds

    def _key(self, session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    async def get(self, session_id: str) -> SessionHistory:
        """Load history for session_id. Corrupt records read as empty."""
        raw = await self._redis.get(self._key(session_id))
        if raw is None:
            return []
        try:
            return history_from_records(json.loads(raw))
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Invalid history data for %s: %s", session_id, e)
            return []

    async def put(self, session_id: str, history: Sequence[ChatTurn]) -> None:
        capped = truncate_history(history, self._max_turns)
        payload = json.dumps(history_to_records(capped), ensure_ascii=False)
        await self._redis.set(self._key(session_id), payload, ttl_seconds=self._ttl)

    async def delete(self, session_id: str) -> None:
        await self._redis.delete(self._key(session_id))

    async def close(self) -> None:
        await self._redis.close()


async def build_session_store(settings: Settings) -> SessionStore:
    """Return a connected Redis store if REDIS_URL is set, else an in-memory store."""
    url = (settings.redis_url or "").strip()
    if not url:
        logger.info("REDIS_URL not set; keeping session history in memory")
        return InMemorySessionStore(max_turns=settings.max_turns)
    redis_crud = RedisCrudService(url)
    await redis_crud.connect()
    return RedisSessionStore(
        redis_crud=redis_crud,
        ttl_seconds=settings.session_ttl_seconds,
        max_turns=settings.max_turns,
    )
