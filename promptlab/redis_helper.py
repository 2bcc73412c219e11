import time
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError

from .config import Settings

# Key names
JOBS_HASH = "jobs"
JOBS_BY_CREATED_ZSET = "jobs:created"
QUEUED_ZSET = "jobs:queued"
DELAYED_ZSET = "jobs:delayed"
RUNNING_ZSET = "jobs:running"
TEMPLATES_HASH = "templates"


def hash_index_key(input_hash: str) -> str:
    return f"jobs:hash:{input_hash}"


def owner_index_key(owner_id: str) -> str:
    return f"jobs:owner:{owner_id}"


def claim_key(job_id: str, attempt: int) -> str:
    return f"jobs:claim:{job_id}:{attempt}"


class AsyncInMemoryRedis:
    """Async stand-in for the subset of redis-py used by promptlab.

    Values are stored decoded (``decode_responses=True`` semantics). Setting
    ``available = False`` makes every command raise a redis ``ConnectionError``
    so outage handling can be exercised without a server.
    """

    def __init__(self):
        self._strings: Dict[str, str] = {}
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._expiry: Dict[str, float] = {}
        self.available = True

    def _touch(self, name: str):
        if not self.available:
            raise RedisConnectionError("in-memory redis unavailable")
        deadline = self._expiry.get(name)
        if deadline is not None and deadline <= time.time():
            self._drop(name)

    def _drop(self, name: str) -> bool:
        existed = False
        for store in (self._strings, self._hashes, self._sets, self._zsets):
            if name in store:
                del store[name]
                existed = True
        self._expiry.pop(name, None)
        return existed

    async def ping(self) -> bool:
        if not self.available:
            raise RedisConnectionError("in-memory redis unavailable")
        return True

    async def aclose(self):
        return None

    # string methods
    async def get(self, name: str) -> Optional[str]:
        self._touch(name)
        return self._strings.get(name)

    async def set(self, name: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> Optional[bool]:
        self._touch(name)
        if nx and name in self._strings:
            return None
        self._strings[name] = str(value)
        if ex is not None:
            self._expiry[name] = time.time() + ex
        else:
            self._expiry.pop(name, None)
        return True

    async def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            self._touch(name)
            if self._drop(name):
                removed += 1
        return removed

    async def expire(self, name: str, seconds: int) -> bool:
        self._touch(name)
        if not any(name in store for store in (self._strings, self._hashes, self._sets, self._zsets)):
            return False
        self._expiry[name] = time.time() + seconds
        return True

    # hash methods
    async def hset(self, name: str, key: str, value: str):
        self._touch(name)
        h = self._hashes.setdefault(name, {})
        added = 0 if key in h else 1
        h[key] = value
        return added

    async def hget(self, name: str, key: str) -> Optional[str]:
        self._touch(name)
        return self._hashes.get(name, {}).get(key)

    async def hmget(self, name: str, keys: Iterable[str]) -> List[Optional[str]]:
        self._touch(name)
        h = self._hashes.get(name, {})
        return [h.get(k) for k in keys]

    async def hgetall(self, name: str) -> Dict[str, str]:
        self._touch(name)
        return dict(self._hashes.get(name, {}))

    # set methods
    async def sadd(self, name: str, *values: str) -> int:
        self._touch(name)
        s = self._sets.setdefault(name, set())
        added = len(set(values) - s)
        s.update(values)
        return added

    async def smembers(self, name: str) -> Set[str]:
        self._touch(name)
        return set(self._sets.get(name, set()))

    async def srem(self, name: str, *values: str) -> int:
        self._touch(name)
        s = self._sets.get(name, set())
        removed = len(s & set(values))
        s.difference_update(values)
        return removed

    # zset methods
    def _sorted(self, name: str) -> List[Tuple[str, float]]:
        z = self._zsets.get(name, {})
        return sorted(z.items(), key=lambda kv: (kv[1], kv[0]))

    @staticmethod
    def _slice(items: List[Any], start: int, end: int) -> List[Any]:
        if end < 0:
            end = len(items) + end
        return items[start:end + 1]

    async def zadd(self, name: str, mapping: Dict[str, float]):
        self._touch(name)
        z = self._zsets.setdefault(name, {})
        added = 0
        for member, score in mapping.items():
            if member not in z:
                added += 1
            z[member] = float(score)
        return added

    async def zrem(self, name: str, *members: str) -> int:
        self._touch(name)
        z = self._zsets.get(name, {})
        removed = 0
        for m in members:
            if m in z:
                del z[m]
                removed += 1
        return removed

    async def zcard(self, name: str) -> int:
        self._touch(name)
        return len(self._zsets.get(name, {}))

    async def zrange(
        self, name: str, start: int, end: int, withscores: bool = False
    ) -> Union[List[str], List[Tuple[str, float]]]:
        self._touch(name)
        items = self._slice(self._sorted(name), start, end)
        if withscores:
            return items
        return [m for m, _ in items]

    async def zrevrange(self, name: str, start: int, end: int) -> List[str]:
        self._touch(name)
        items = list(reversed(self._sorted(name)))
        return [m for m, _ in self._slice(items, start, end)]

    async def zrangebyscore(
        self, name: str, min_score: Any, max_score: Any, start: Optional[int] = None, num: Optional[int] = None
    ) -> List[str]:
        self._touch(name)
        low, high = float(min_score), float(max_score)
        members = [m for m, s in self._sorted(name) if low <= s <= high]
        if start is not None and num is not None:
            members = members[start:start + num]
        return members

    async def zremrangebyscore(self, name: str, min_score: float, max_score: float) -> int:
        self._touch(name)
        z = self._zsets.get(name, {})
        doomed = [m for m, s in z.items() if min_score <= s <= max_score]
        for m in doomed:
            del z[m]
        return len(doomed)

    def pipeline(self, transaction: bool = True) -> "InMemoryPipeline":
        return InMemoryPipeline(self)


class InMemoryPipeline:
    """Buffers commands and replays them in order on ``execute``.

    Nothing else runs on the event loop between the buffered commands, which
    gives the same all-or-nothing view a MULTI/EXEC block has on a server.
    """

    def __init__(self, client: AsyncInMemoryRedis):
        self._client = client
        self._commands: List[Tuple[str, tuple, dict]] = []

    def __getattr__(self, command: str):
        if not hasattr(self._client, command):
            raise AttributeError(command)

        def queue(*args, **kwargs):
            self._commands.append((command, args, kwargs))
            return self

        return queue

    async def execute(self) -> List[Any]:
        commands, self._commands = self._commands, []
        results = []
        for command, args, kwargs in commands:
            results.append(await getattr(self._client, command)(*args, **kwargs))
        return results

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self._commands = []


def create_redis(settings: Settings):
    """Build the shared client once per process; the caller owns closing it."""
    if settings.testing:
        return AsyncInMemoryRedis()
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)
