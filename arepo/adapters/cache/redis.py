"""Redis cache store for arepo.

Entries and tag indexes live in Redis; every change to an entry and its
tag memberships runs as one Lua script. A tag index is a sorted set of
entry keys scored by their expiry in milliseconds, so expired members are
pruned whenever the index is written and the index itself expires with
its last live member. Each entry also keeps a ``links`` set naming the
tag indexes it belongs to, which lets rewrites, deletes and TTL refreshes
update those indexes without decoding the record.

Requirements:
    - Redis 5 or newer (standalone)
    - coredis (install the ``redis`` extra)
"""

import time
from collections.abc import Iterable

import typing as t
from coredis import Redis
from coredis.exceptions import RedisError
from msgspec import msgpack

from arepo.logger import get_logger

from ._base import CacheBase, CacheEntry, CacheSettings

logger = get_logger(__name__)

INDEX_FUNCTIONS = """
local function now_ms()
  local time = redis.call('TIME')
  return tonumber(time[1]) * 1000 + math.floor(tonumber(time[2]) / 1000)
end

local function settle(tag_key, now)
  redis.call('ZREMRANGEBYSCORE', tag_key, '-inf', '(' .. now)
  local last = redis.call('ZRANGE', tag_key, -1, -1, 'WITHSCORES')
  if #last == 0 then
    return
  end
  if last[2] == 'inf' then
    redis.call('PERSIST', tag_key)
  else
    redis.call('PEXPIREAT', tag_key, math.ceil(tonumber(last[2])))
  end
end

local function unlink(entry_key, links_key, now)
  for _, tag_key in ipairs(redis.call('SMEMBERS', links_key)) do
    redis.call('ZREM', tag_key, entry_key)
    settle(tag_key, now)
  end
  redis.call('DEL', links_key)
  return redis.call('DEL', entry_key)
end
"""

# KEYS[1] entry, KEYS[2] links, KEYS[3..n] tag indexes; ARGV[1] record, ARGV[2] ttl ms (0 = none)
PUT_SCRIPT = INDEX_FUNCTIONS + """
local now = now_ms()
local ttl = tonumber(ARGV[2])
unlink(KEYS[1], KEYS[2], now)
local score = '+inf'
if ttl > 0 then
  redis.call('SET', KEYS[1], ARGV[1], 'PX', ttl)
  score = now + ttl
else
  redis.call('SET', KEYS[1], ARGV[1])
end
for i = 3, #KEYS do
  redis.call('SADD', KEYS[2], KEYS[i])
  redis.call('ZADD', KEYS[i], score, KEYS[1])
  settle(KEYS[i], now)
end
if ttl > 0 and #KEYS > 2 then
  redis.call('PEXPIRE', KEYS[2], ttl)
end
return 1
"""

# KEYS[1..n] tag indexes; ARGV[1] entry prefix, ARGV[2] links prefix.
# Returns the number of live entries removed.
INVALIDATE_SCRIPT = INDEX_FUNCTIONS + """
local now = now_ms()
local removed = 0
for i = 1, #KEYS do
  for _, entry_key in ipairs(redis.call('ZRANGE', KEYS[i], 0, -1)) do
    local links_key = ARGV[2] .. string.sub(entry_key, #ARGV[1] + 1)
    removed = removed + unlink(entry_key, links_key, now)
  end
  redis.call('DEL', KEYS[i])
end
return removed
"""

# KEYS[1] entry, KEYS[2] links; ARGV[1] ttl ms
TOUCH_SCRIPT = INDEX_FUNCTIONS + """
local ttl = tonumber(ARGV[1])
if redis.call('PEXPIRE', KEYS[1], ttl) == 0 then
  return 0
end
redis.call('PEXPIRE', KEYS[2], ttl)
local now = now_ms()
for _, tag_key in ipairs(redis.call('SMEMBERS', KEYS[2])) do
  redis.call('ZADD', tag_key, now + ttl, KEYS[1])
  settle(tag_key, now)
end
return 1
"""

# KEYS[1] entry, KEYS[2] links
DELETE_SCRIPT = INDEX_FUNCTIONS + """
return unlink(KEYS[1], KEYS[2], now_ms())
"""

# KEYS[1] entry key; returns {record, pttl} or nil
GET_SCRIPT = """
local record = redis.call('GET', KEYS[1])
if not record then
  return nil
end
return {record, redis.call('PTTL', KEYS[1])}
"""


class RedisCache(CacheBase):
    # server-side refusals count as unavailability too
    unavailable_errors = (
        RedisError,
        ConnectionError,
        TimeoutError,
        OSError,
    )

    def __init__(
        self,
        settings: CacheSettings | None = None,
        client: t.Any = None,
        **kwargs: t.Any,
    ) -> None:
        super().__init__(settings)
        self._init_kwargs = kwargs
        self._client = client
        if client is not None:
            self.register_resource(client)

    def _create_client(self) -> t.Any:
        settings = self.settings
        redis_kwargs: dict[str, t.Any] = self._init_kwargs | {
            "decode_responses": False,
            "connect_timeout": settings.connect_timeout,
            "max_connections": settings.max_connections,
        }
        if settings.connection_string:
            logger.info(
                f"Connecting Redis cache to {self._mask(settings.connection_string)}",
            )
            return Redis.from_url(settings.connection_string, **redis_kwargs)
        redis_kwargs |= {
            "host": settings.host.get_secret_value(),
            "port": settings.port,
            "db": settings.db,
        }
        if settings.user:
            redis_kwargs["username"] = settings.user.get_secret_value()
        if settings.password:
            redis_kwargs["password"] = settings.password.get_secret_value()
        logger.info(
            f"Connecting Redis cache to {redis_kwargs['host']}:{settings.port}",
        )
        return Redis(**redis_kwargs)

    def get_client(self) -> t.Any:
        if self._client is None:
            self._client = self._create_client()
            self.register_resource(self._client)
        return self._client

    @staticmethod
    def _mask(connection_string: str) -> str:
        if "@" not in connection_string:
            return connection_string
        credentials, _, location = connection_string.rpartition("@")
        scheme, _, _ = credentials.partition("://")
        return f"{scheme}://***@{location}"

    @staticmethod
    def _encode_record(entry: CacheEntry) -> bytes:
        return msgpack.encode([entry.payload, sorted(entry.tags)])

    @staticmethod
    def _ttl_ms(ttl: float | None) -> int:
        return 0 if ttl is None else max(int(ttl * 1000), 1)

    def _links_key(self, key: str) -> str:
        return f"{self.namespace}links:{key}"

    def _entry_keys(self, key: str) -> list[str]:
        return [self._entry_key(key), self._links_key(key)]

    def _tag_keys(self, tags: Iterable[str]) -> list[str]:
        return [self._tag_key(tag) for tag in sorted(tags)]

    async def _get(self, key: str) -> CacheEntry | None:
        result = await self.get_client().eval(
            GET_SCRIPT,
            keys=[self._entry_key(key)],
            args=[],
        )
        if not result:
            return None
        record, pttl = result
        payload, tags = msgpack.decode(record)
        expires_at = None
        if pttl is not None and int(pttl) >= 0:
            expires_at = time.time() + int(pttl) / 1000
        return CacheEntry(
            key=key,
            tags=frozenset(tags),
            payload=payload,
            expires_at=expires_at,
        )

    async def _put(self, entry: CacheEntry) -> None:
        ttl = entry.remaining_ttl()
        if ttl is not None and ttl <= 0:
            return
        await self.get_client().eval(
            PUT_SCRIPT,
            keys=[*self._entry_keys(entry.key), *self._tag_keys(entry.tags)],
            args=[self._encode_record(entry), self._ttl_ms(ttl)],
        )

    async def _invalidate_tags(self, tags: frozenset[str]) -> int:
        removed = await self.get_client().eval(
            INVALIDATE_SCRIPT,
            keys=self._tag_keys(tags),
            args=[self._entry_key(""), self._links_key("")],
        )
        return int(removed or 0)

    async def _delete(self, key: str) -> bool:
        removed = await self.get_client().eval(
            DELETE_SCRIPT,
            keys=self._entry_keys(key),
            args=[],
        )
        return bool(removed)

    async def _touch(self, key: str, ttl: float) -> bool:
        refreshed = await self.get_client().eval(
            TOUCH_SCRIPT,
            keys=self._entry_keys(key),
            args=[self._ttl_ms(ttl)],
        )
        return bool(refreshed)

    async def _clear(self) -> None:
        client = self.get_client()
        keys = [key async for key in client.scan_iter(match=f"{self.namespace}*")]
        if keys:
            await client.delete(keys)

    async def ping(self) -> bool:
        async with self._guard("ping"):
            return bool(await self.get_client().ping())
