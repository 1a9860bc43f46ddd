import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager

import brotli
import typing as t
from aiocache.serializers import BaseSerializer, PickleSerializer
from dataclasses import dataclass, field, replace
from msgspec import msgpack
from pydantic import Field, SecretStr
from pydantic_settings import SettingsConfigDict

from arepo.cleanup import CleanupMixin
from arepo.config import Settings
from arepo.logger import get_logger

logger = get_logger(__name__)


class CacheError(Exception):
    """Base exception for cache store failures."""


class CacheUnavailableError(CacheError):
    """Raised when the cache backend cannot be reached."""

    def __init__(self, operation: str, reason: str | None = None) -> None:
        self.operation = operation
        self.reason = reason
        msg = f"Cache backend unavailable during {operation}"
        super().__init__(f"{msg}: {reason}" if reason else msg)


class CacheInvalidationError(CacheError):
    """Raised when tag invalidation still fails after every retry."""

    def __init__(self, tags: Iterable[str], attempts: int) -> None:
        self.tags = frozenset(tags)
        self.attempts = attempts
        super().__init__(
            f"Invalidation of {sorted(self.tags)} failed after {attempts} attempt(s)",
        )


class CacheSettings(Settings):
    model_config = SettingsConfigDict(env_prefix="AREPO_CACHE_")

    namespace: str = "arepo"
    default_ttl: int = Field(default=1800, ge=1, description="Entry TTL in seconds")
    refresh_ttl_on_hit: bool = False

    serializer: t.Literal["pickle", "msgpack"] = "pickle"
    compress_large_objects: bool = True
    compression_threshold: int = Field(
        default=1024,
        description="Compress payloads larger than this many bytes",
    )
    compression_level: int = Field(default=4, ge=0, le=11)

    host: SecretStr = SecretStr("127.0.0.1")
    port: int = 6379
    db: int = 0
    user: SecretStr | None = None
    password: SecretStr | None = None
    connection_string: str | None = None
    connect_timeout: float | None = 3.0
    max_connections: int | None = 50


@dataclass(frozen=True)
class CacheEntry:
    """A cached payload together with its invalidation tags."""

    key: str
    tags: frozenset[str]
    payload: bytes
    expires_at: float | None = None

    @classmethod
    def create(
        cls,
        key: str,
        tags: Iterable[str],
        payload: bytes,
        ttl: float | None,
    ) -> "CacheEntry":
        expires_at = time.time() + ttl if ttl else None
        return cls(key=key, tags=frozenset(tags), payload=payload, expires_at=expires_at)

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at

    def remaining_ttl(self, now: float | None = None) -> float | None:
        if self.expires_at is None:
            return None
        return max(self.expires_at - (now if now is not None else time.time()), 0.0)

    def refreshed(self, ttl: float) -> "CacheEntry":
        return replace(self, expires_at=time.time() + ttl)


class MsgPackSerializer(BaseSerializer):  # type: ignore[misc]
    DEFAULT_ENCODING = None

    def dumps(self, value: t.Any) -> bytes:
        return msgpack.encode(value)

    def loads(self, value: bytes | None) -> t.Any:
        if value is None:
            return None
        return msgpack.decode(value)


_RAW = b"\x00"
_BROTLI = b"\x01"


@dataclass
class PayloadCodec:
    """Turns cached values into payload bytes and back.

    Payloads carry a one byte header telling whether the body was brotli
    compressed.
    """

    serializer: BaseSerializer = field(default_factory=PickleSerializer)
    compress: bool = True
    threshold: int = 1024
    level: int = 4

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> "PayloadCodec":
        serializer = (
            MsgPackSerializer() if settings.serializer == "msgpack" else PickleSerializer()
        )
        return cls(
            serializer=serializer,
            compress=settings.compress_large_objects,
            threshold=settings.compression_threshold,
            level=settings.compression_level,
        )

    def encode(self, value: t.Any) -> bytes:
        body = self.serializer.dumps(value)
        if isinstance(body, str):
            body = body.encode()
        if self.compress and len(body) > self.threshold:
            return _BROTLI + brotli.compress(body, quality=self.level)
        return _RAW + body

    def decode(self, payload: bytes) -> t.Any:
        header, body = payload[:1], payload[1:]
        if header == _BROTLI:
            body = brotli.decompress(body)
        elif header != _RAW:
            msg = f"Unknown payload header {header!r}"
            raise ValueError(msg)
        return self.serializer.loads(body)


@t.runtime_checkable
class CacheStoreProtocol(t.Protocol):
    async def get(self, key: str) -> CacheEntry | None: ...

    async def put(self, entry: CacheEntry) -> None: ...

    async def invalidate_tags(self, tags: Iterable[str]) -> int: ...

    async def delete(self, key: str) -> bool: ...

    async def touch(self, key: str, ttl: float) -> bool: ...

    async def clear(self) -> None: ...


class CacheBase(CleanupMixin, ABC):
    """Shared behaviour for tag-aware cache stores.

    Subclasses implement the underscored primitives; the public methods
    translate backend connectivity errors into ``CacheUnavailableError``.
    """

    unavailable_errors: t.ClassVar[tuple[type[BaseException], ...]] = (
        ConnectionError,
        TimeoutError,
        OSError,
    )

    def __init__(self, settings: CacheSettings | None = None) -> None:
        super().__init__()
        self.settings = settings or CacheSettings()

    @property
    def namespace(self) -> str:
        return f"{self.settings.namespace}:"

    def _entry_key(self, key: str) -> str:
        return f"{self.namespace}entry:{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.namespace}tag:{tag}"

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except CacheError:
            raise
        except self.unavailable_errors as e:
            logger.debug(f"Cache {operation} failed: {e}")
            raise CacheUnavailableError(operation, str(e)) from e

    async def get(self, key: str) -> CacheEntry | None:
        async with self._guard("get"):
            return await self._get(key)

    async def put(self, entry: CacheEntry) -> None:
        if not entry.tags:
            msg = f"Cache entry {entry.key!r} must carry at least one tag"
            raise ValueError(msg)
        async with self._guard("put"):
            await self._put(entry)

    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        tags = frozenset(tags)
        if not tags:
            return 0
        async with self._guard("invalidate"):
            return await self._invalidate_tags(tags)

    async def delete(self, key: str) -> bool:
        async with self._guard("delete"):
            return await self._delete(key)

    async def touch(self, key: str, ttl: float) -> bool:
        async with self._guard("touch"):
            return await self._touch(key, ttl)

    async def clear(self) -> None:
        async with self._guard("clear"):
            await self._clear()

    @abstractmethod
    async def _get(self, key: str) -> CacheEntry | None: ...

    @abstractmethod
    async def _put(self, entry: CacheEntry) -> None: ...

    @abstractmethod
    async def _invalidate_tags(self, tags: frozenset[str]) -> int: ...

    @abstractmethod
    async def _delete(self, key: str) -> bool: ...

    @abstractmethod
    async def _touch(self, key: str, ttl: float) -> bool: ...

    @abstractmethod
    async def _clear(self) -> None: ...
